# src/battle_plan/remote/session.py

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable

from ..core.ports import SettingsRepo

logger = logging.getLogger(__name__)

AuthListener = Callable[[bool], None]

TOKEN_SETTING_KEY = "google_access_token"


class AuthSession:
    """
    Holds the Google access token shared by the tasks, drive and calendar adapters.

    The OAuth flow itself lives outside this package: whoever obtains a token
    calls sign_in(). Any adapter that sees the token rejected calls sign_out(),
    which notifies listeners (the sync engine halts auto-sync until the next sign-in).
    """

    def __init__(self, store: SettingsRepo | None = None, *, token: str | None = None) -> None:
        self._store = store
        self._token = token or None
        self._listeners: list[AuthListener] = []

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def is_signed_in(self) -> bool:
        return bool(self._token)

    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def _notify(self, signed_in: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(signed_in)
            except Exception:
                logger.exception("Auth listener failed signed_in=%s", signed_in)

    async def load(self) -> None:
        """Pick up a token persisted by a previous run (an explicit token wins)."""
        if self._token or self._store is None:
            return
        self._token = await self._store.get_setting(TOKEN_SETTING_KEY) or None
        if self._token:
            logger.info("Restored Google session from settings.")

    async def sign_in(self, token: str) -> None:
        token = (token or "").strip()
        if not token:
            raise ValueError("access token is required")
        self._token = token
        if self._store is not None:
            await self._store.put_setting(TOKEN_SETTING_KEY, token)
        logger.info("Google session signed in.")
        self._notify(True)

    async def sign_out(self) -> None:
        was_signed_in = self.is_signed_in
        self._token = None
        if self._store is not None:
            await self._store.delete_setting(TOKEN_SETTING_KEY)
        if was_signed_in:
            logger.warning("Google session signed out.")
            self._notify(False)
