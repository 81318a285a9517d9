# src/battle_plan/remote/drive_backup.py

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from ..core.errors import RemoteError
from ..sync.envelope import BackupEnvelope
from .http import GoogleApiClient

logger = logging.getLogger(__name__)

DRIVE_FILES_API = "https://www.googleapis.com/drive/v3/files"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3/files"


def _multipart_related(metadata: dict[str, Any], document: str) -> tuple[str, str]:
    """Build a multipart/related body (metadata part + JSON media part)."""
    boundary = f"battle-plan-{uuid.uuid4().hex}"
    body = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{document}\r\n"
        f"--{boundary}--"
    )
    return body, f"multipart/related; boundary={boundary}"


class DriveBackupTransport:
    """
    Backup blob in the Drive app-data folder, addressed by a fixed file name.

    load() returns None when no backup exists yet; save() always writes the whole
    document (create on first save, overwrite afterwards).
    """

    def __init__(
        self,
        api: GoogleApiClient,
        *,
        file_name: str = "battle_plan_data.json",
        files_url: str = DRIVE_FILES_API,
        upload_url: str = DRIVE_UPLOAD_API,
    ) -> None:
        self._api = api
        self.file_name = file_name
        self._files_url = files_url.rstrip("/")
        self._upload_url = upload_url.rstrip("/")

    async def _find_file_id(self) -> str | None:
        response = await self._api.request(
            "GET",
            self._files_url,
            params={
                "spaces": "appDataFolder",
                "q": f"name = '{self.file_name}'",
                "fields": "files(id, name)",
                "pageSize": 1,
            },
        )
        files = (response.json() or {}).get("files") or []
        if not files:
            return None
        return str(files[0]["id"])

    async def load(self) -> BackupEnvelope | None:
        file_id = await self._find_file_id()
        if file_id is None:
            logger.info("No remote backup named %s", self.file_name)
            return None
        response = await self._api.request("GET", f"{self._files_url}/{file_id}", params={"alt": "media"})
        try:
            envelope = BackupEnvelope.from_json(response.content)
        except ValueError as e:
            raise RemoteError(f"remote backup is unreadable: {e}") from e
        logger.info(
            "Loaded remote backup ts=%s tasks=%d settings=%d",
            envelope.timestamp,
            len(envelope.tasks),
            len(envelope.settings),
        )
        return envelope

    async def save(self, envelope: BackupEnvelope) -> None:
        file_id = await self._find_file_id()
        metadata: dict[str, Any] = {"name": self.file_name, "mimeType": "application/json"}
        if file_id is None:
            metadata["parents"] = ["appDataFolder"]

        body, content_type = _multipart_related(metadata, envelope.to_json())
        if file_id is None:
            method, url = "POST", self._upload_url
        else:
            method, url = "PATCH", f"{self._upload_url}/{file_id}"

        await self._api.request(
            method,
            url,
            params={"uploadType": "multipart"},
            content=body.encode("utf-8"),
            headers={"Content-Type": content_type},
        )
        logger.info("Saved remote backup ts=%s tasks=%d", envelope.timestamp, len(envelope.tasks))
