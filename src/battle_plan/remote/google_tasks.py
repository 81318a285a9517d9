# src/battle_plan/remote/google_tasks.py

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any
from urllib.parse import quote

from ..tasks.task_models import (
    RemoteTask,
    RemoteTaskList,
    RemoteTaskPatch,
    TaskStatus,
    parse_date,
)
from .http import GoogleApiClient

logger = logging.getLogger(__name__)

TASKS_API = "https://tasks.googleapis.com/tasks/v1"


def _rfc3339_to_ms(raw: Any) -> int:
    if not raw:
        return 0
    try:
        return int(datetime.fromisoformat(str(raw).replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        return 0


def map_remote_task(raw: Mapping[str, Any], list_id: str) -> RemoteTask:
    """
    Provider shape -> RemoteTask.

    The provider only knows "needsAction" and "completed"; `updated` stands in
    for the creation time it does not expose.
    """
    status = TaskStatus.COMPLETED if raw.get("status") == "completed" else TaskStatus.PENDING
    return RemoteTask(
        remote_id=str(raw["id"]),
        remote_list_id=list_id,
        title=str(raw.get("title") or ""),
        notes=str(raw.get("notes") or ""),
        status=status,
        due=parse_date(raw.get("due")),
        created_at=_rfc3339_to_ms(raw.get("updated")),
    )


class GoogleTasksProvider:
    """Google Tasks REST adapter (lists and tasks)."""

    def __init__(self, api: GoogleApiClient, *, base_url: str = TASKS_API) -> None:
        self._api = api
        self.base_url = base_url.rstrip("/")

    def _task_url(self, list_id: str, remote_id: str | None = None) -> str:
        url = f"{self.base_url}/lists/{quote(list_id, safe='@')}/tasks"
        if remote_id is not None:
            url += f"/{quote(remote_id, safe='')}"
        return url

    async def _get_paginated(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        params = params.copy() if params else {}
        while True:
            response = await self._api.request("GET", url, params=params)
            payload = response.json()
            if not isinstance(payload, dict):
                break
            items = payload.get("items")
            if isinstance(items, list):
                collected.extend(i for i in items if isinstance(i, dict))
            next_token = payload.get("nextPageToken")
            if not next_token:
                break
            params["pageToken"] = next_token
        return collected

    async def list_lists(self) -> list[RemoteTaskList]:
        raw = await self._get_paginated(f"{self.base_url}/users/@me/lists")
        return [RemoteTaskList(list_id=str(r["id"]), title=str(r.get("title") or "")) for r in raw if r.get("id")]

    async def list_tasks(self, list_id: str) -> list[RemoteTask]:
        raw = await self._get_paginated(
            self._task_url(list_id),
            {"showCompleted": "true", "showHidden": "true", "maxResults": 100},
        )
        tasks = [map_remote_task(r, list_id) for r in raw if r.get("id")]
        logger.debug("Fetched %d remote tasks list=%s", len(tasks), list_id)
        return tasks

    async def set_status(self, remote_id: str, list_id: str, status: TaskStatus) -> None:
        if status == TaskStatus.COMPLETED:
            body: dict[str, Any] = {"status": "completed"}
        elif status == TaskStatus.PENDING:
            body = {"status": "needsAction", "completed": None}
        else:
            raise ValueError(f"remote tasks cannot be {status.value}")
        await self._api.request("PATCH", self._task_url(list_id, remote_id), json=body)
        logger.info("Remote task %s -> %s", remote_id, status.value)

    async def update(self, remote_id: str, list_id: str, patch: RemoteTaskPatch) -> RemoteTask:
        body: dict[str, Any] = {}
        if patch.title is not None:
            body["title"] = patch.title
        if patch.notes is not None:
            body["notes"] = patch.notes
        if patch.due is not None:
            body["due"] = f"{patch.due.isoformat()}T00:00:00.000Z"
        response = await self._api.request("PATCH", self._task_url(list_id, remote_id), json=body)
        return map_remote_task(response.json(), list_id)

    async def delete(self, remote_id: str, list_id: str) -> None:
        await self._api.request("DELETE", self._task_url(list_id, remote_id))
        logger.info("Remote task %s deleted", remote_id)
