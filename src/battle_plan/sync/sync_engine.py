# src/battle_plan/sync/sync_engine.py

from __future__ import annotations

"""
Sync engine.

Keeps the local store and the remote backup document in step:
- startup restore decision (once per sign-in),
- debounced push after local task mutations,
- manual backup / restore commands.

State machine per session:

    IDLE -> CHECKING -> (RESTORING | BACKING_UP) -> IDLE

One asyncio.Lock serialises every use of the backup transport, so a slow
manual restore can never interleave with a scheduled backup.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import StrEnum

from ..core.errors import AuthExpiredError, NotFoundError, RestoreNotConfirmedError, SyncError
from ..core.ports import AuthState, BackupTransport, TaskRepo
from ..tasks.task_models import now_ms
from ..tasks.task_store import StoreChange
from .debounce import Debouncer
from .envelope import BackupEnvelope
from .sync_config import Credentials, SyncConfig, load_credentials

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    IDLE = "idle"
    CHECKING = "checking"
    RESTORING = "restoring"
    BACKING_UP = "backing_up"


@dataclass(slots=True, frozen=True)
class RestoreDecision:
    restore: bool
    reason: str


def decide_restore(
    *,
    remote_timestamp: int,
    last_sync_ms: int,
    local_count: int,
    has_credential: bool,
    stale_max_local: int = 1,
) -> RestoreDecision:
    """
    Restore iff the device is empty, has never been configured, or holds at most
    `stale_max_local` tasks while the cloud copy is newer than our last sync.

    A device with more local tasks than that keeps them even when the cloud copy
    is newer: unsynced local work is never wiped here.
    """
    if local_count == 0:
        return RestoreDecision(True, "no local tasks")
    if not has_credential:
        return RestoreDecision(True, "no AI credential on this device")
    if remote_timestamp > last_sync_ms and local_count <= stale_max_local:
        return RestoreDecision(True, f"cloud copy is newer and only {local_count} local task(s)")
    if remote_timestamp > last_sync_ms:
        return RestoreDecision(False, f"cloud copy is newer but {local_count} local tasks are kept")
    return RestoreDecision(False, "local data is up to date")


class SyncEngine:
    def __init__(
        self,
        store: TaskRepo,
        transport: BackupTransport,
        session: AuthState,
        config: SyncConfig,
        credentials: Credentials,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._transport = transport
        self._session = session
        self.config = config
        self._credentials = credentials
        self._clock = clock

        self._lock = asyncio.Lock()
        self._state = SyncState.IDLE
        self._applying_restore = False
        self._auto_sync_halted = False
        self._debouncer = Debouncer(config.debounce_seconds, self._auto_backup, name="backup-debounce")
        self._unsubscribe: Callable[[], None] | None = None
        self._background: set[asyncio.Task[object]] = set()

    # ---- read-only status ----

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_sync_ms(self) -> int:
        return self._credentials.last_sync_ms

    @property
    def auto_sync_halted(self) -> bool:
        return self._auto_sync_halted

    @property
    def backup_pending(self) -> bool:
        return self._debouncer.pending

    # ---- wiring ----

    def start(self) -> None:
        """Subscribe to store mutations. Call once after construction."""
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_store_change)

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._debouncer.aclose()
        for task in list(self._background):
            task.cancel()

    def _on_store_change(self, change: StoreChange) -> None:
        if self._applying_restore:
            return
        self.notify_change()

    def on_auth_change(self, signed_in: bool) -> None:
        """AuthSession listener: a sign-in re-runs the startup check, a sign-out halts auto-sync."""
        if signed_in:
            task = asyncio.get_running_loop().create_task(self.on_sign_in())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        else:
            self._halt_auto_sync()

    def _halt_auto_sync(self) -> None:
        self._auto_sync_halted = True
        self._debouncer.cancel()

    async def _handle_auth_expired(self, err: AuthExpiredError) -> None:
        logger.warning("Backup transport rejected credentials (%s); signing out.", err)
        self._halt_auto_sync()
        await self._session.sign_out()

    # ---- debounced backup ----

    def notify_change(self) -> None:
        """A local task mutation happened: (re)start the quiet-period timer."""
        if self._auto_sync_halted or not self._session.is_signed_in:
            logger.debug("Auto-backup not scheduled (halted=%s)", self._auto_sync_halted)
            return
        self._debouncer.schedule()

    async def _auto_backup(self) -> None:
        if self._auto_sync_halted or not self._session.is_signed_in:
            return
        try:
            envelope = await self._backup()
        except AuthExpiredError as e:
            await self._handle_auth_expired(e)
        except Exception:
            # No retry of its own: the next mutation schedules another backup.
            logger.exception("Auto-backup failed")
        else:
            if envelope is None:
                logger.info("Auto-backup skipped: no local tasks.")

    async def flush(self) -> None:
        """Run a pending auto-backup now (used at shutdown)."""
        await self._debouncer.flush()

    # ---- core procedures (caller holds no lock) ----

    async def _snapshot(self) -> BackupEnvelope | None:
        tasks = await self._store.query()
        if not tasks:
            return None
        settings = [s for s in await self._store.list_settings() if s.key not in self.config.device_local_keys]
        return BackupEnvelope.build(
            tasks,
            settings,
            timestamp=self._clock(),
            version=self.config.envelope_version,
        )

    async def _backup(self) -> BackupEnvelope | None:
        async with self._lock:
            self._state = SyncState.BACKING_UP
            try:
                envelope = await self._snapshot()
                if envelope is None:
                    return None
                await self._transport.save(envelope)
                await self._mark_synced(envelope.timestamp)
                logger.info("Backup written ts=%s tasks=%d", envelope.timestamp, len(envelope.tasks))
                return envelope
            finally:
                self._state = SyncState.IDLE

    async def _apply_restore(self, envelope: BackupEnvelope) -> int:
        """Replace local tasks with the envelope's, upsert its settings, record its timestamp."""
        self._state = SyncState.RESTORING
        self._applying_restore = True
        try:
            await self._store.clear_tasks()
            ids = await self._store.bulk_add(replace(t, id=None) for t in envelope.tasks)
            for setting in envelope.settings:
                if setting.key in self.config.device_local_keys:
                    continue
                await self._store.put_setting(setting.key, setting.value)
            await self._mark_synced(envelope.timestamp)
            self._credentials = replace(
                self._credentials,
                has_ai_credential=self._credentials.has_ai_credential
                or any(s.key == self.config.ai_credential_key and s.value.strip() for s in envelope.settings),
            )
        finally:
            self._applying_restore = False
        logger.info("Restored %d tasks from backup ts=%s", len(ids), envelope.timestamp)
        return len(ids)

    async def reload_credentials(self) -> None:
        """Re-read the AI credential and last-sync marker (after the user edits settings)."""
        self._credentials = await load_credentials(self._store, self.config)

    async def _mark_synced(self, timestamp: int) -> None:
        self._credentials = replace(self._credentials, last_sync_ms=int(timestamp))
        await self._store.put_setting(self.config.last_sync_key, str(int(timestamp)))

    # ---- startup restore decision ----

    async def startup_check(self) -> bool:
        """
        Fetch the remote backup and restore it if decide_restore() says so.

        Background operation: failures are logged, never raised. Returns True
        when a restore happened.
        """
        if not self._session.is_signed_in:
            logger.info("Startup sync check skipped: not signed in.")
            return False
        try:
            async with self._lock:
                self._state = SyncState.CHECKING
                try:
                    envelope = await self._transport.load()
                    if envelope is None:
                        logger.info("Startup sync check: no remote backup.")
                        return False

                    local_count = await self._store.count()
                    decision = decide_restore(
                        remote_timestamp=envelope.timestamp,
                        last_sync_ms=self._credentials.last_sync_ms,
                        local_count=local_count,
                        has_credential=self._credentials.has_ai_credential,
                        stale_max_local=self.config.stale_max_local,
                    )
                    logger.info("Startup sync check: restore=%s (%s)", decision.restore, decision.reason)
                    if not decision.restore:
                        return False
                    await self._apply_restore(envelope)
                    return True
                finally:
                    self._state = SyncState.IDLE
        except AuthExpiredError as e:
            await self._handle_auth_expired(e)
        except Exception:
            logger.exception("Startup sync check failed")
        return False

    async def on_sign_in(self) -> bool:
        self._auto_sync_halted = False
        return await self.startup_check()

    # ---- manual commands ----

    async def backup_now(self) -> BackupEnvelope:
        """User-initiated backup. Raises on any failure."""
        if not self._session.is_signed_in:
            raise AuthExpiredError("sign in to Google to back up")
        self._debouncer.cancel()
        try:
            envelope = await self._backup()
        except AuthExpiredError as e:
            await self._handle_auth_expired(e)
            raise
        if envelope is None:
            raise SyncError("nothing to back up: there are no local tasks")
        return envelope

    async def restore_now(self, *, confirmed: bool) -> int:
        """
        User-initiated restore. Destructive to local tasks, so the caller must
        pass confirmed=True after asking the user. Returns the restored task count.
        """
        if not confirmed:
            raise RestoreNotConfirmedError("restore replaces all local tasks and must be confirmed")
        if not self._session.is_signed_in:
            raise AuthExpiredError("sign in to Google to restore")
        self._debouncer.cancel()
        try:
            async with self._lock:
                try:
                    envelope = await self._transport.load()
                    if envelope is None:
                        raise NotFoundError("there is no remote backup to restore")
                    return await self._apply_restore(envelope)
                finally:
                    self._state = SyncState.IDLE
        except AuthExpiredError as e:
            await self._handle_auth_expired(e)
            raise
