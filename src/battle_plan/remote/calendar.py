# src/battle_plan/remote/calendar.py

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from typing import Any
from urllib.parse import quote

from ..tasks.task_models import Task, lenient_time_of_day
from .http import GoogleApiClient

logger = logging.getLogger(__name__)

CALENDAR_EVENTS_API = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

DEFAULT_START = time(9, 0)
DEFAULT_DURATION_MINUTES = 60


def _parse_start_time(raw: str | None) -> time:
    if not raw:
        return DEFAULT_START
    parsed = lenient_time_of_day(raw)
    if parsed is None:
        logger.warning("Unreadable start time %r; event starts at %s", raw, DEFAULT_START.strftime("%H:%M"))
        return DEFAULT_START
    return parsed


def build_event(task: Task, *, time_zone: str, today: date, title_prefix: str = "[BATTLE PLAN] ") -> dict[str, Any]:
    """Calendar event body for a meeting record."""
    day = task.scheduled_date or task.deadline_date or today
    start = datetime.combine(day, _parse_start_time(task.start_time))
    minutes = task.remaining_duration or task.total_duration or DEFAULT_DURATION_MINUTES
    end = start + timedelta(minutes=int(minutes))

    description = task.description or ""
    if task.internal_notes:
        description = f"{description}\n\nInternal notes:\n{task.internal_notes}"

    return {
        "summary": f"{title_prefix}{task.title}",
        "description": description,
        "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
    }


class GoogleCalendarClient:
    """
    Pushes meeting records to the primary calendar.

    `origin_external_id` is the idempotency token: present -> update that event,
    absent -> insert a new one.
    """

    def __init__(
        self,
        api: GoogleApiClient,
        *,
        time_zone: str = "UTC",
        events_url: str = CALENDAR_EVENTS_API,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._api = api
        self.time_zone = time_zone
        self._events_url = events_url.rstrip("/")
        self._today = today

    async def push_event(self, task: Task) -> str:
        event = build_event(task, time_zone=self.time_zone, today=self._today())
        if task.origin_external_id:
            url = f"{self._events_url}/{quote(task.origin_external_id, safe='')}"
            response = await self._api.request("PUT", url, json=event)
        else:
            response = await self._api.request("POST", self._events_url, json=event)
        event_id = str(response.json()["id"])
        logger.info("Calendar event %s for task id=%s", event_id, task.id)
        return event_id

    async def delete_event(self, event_id: str) -> None:
        await self._api.request("DELETE", f"{self._events_url}/{quote(event_id, safe='')}")
        logger.info("Calendar event %s deleted", event_id)
