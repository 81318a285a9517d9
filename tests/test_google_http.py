# tests/test_google_http.py

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import date

import httpx
import pytest

from battle_plan.core.errors import AuthExpiredError, NotFoundError, RemoteError, TransientError
from battle_plan.remote.calendar import GoogleCalendarClient, build_event
from battle_plan.remote.drive_backup import DRIVE_FILES_API, DRIVE_UPLOAD_API, DriveBackupTransport
from battle_plan.remote.google_tasks import GoogleTasksProvider, map_remote_task
from battle_plan.remote.http import GoogleApiClient, classify_response
from battle_plan.remote.session import AuthSession
from battle_plan.sync.envelope import BackupEnvelope
from battle_plan.tasks.task_models import RemoteTaskPatch, Task, TaskKind, TaskStatus

Handler = Callable[[httpx.Request], httpx.Response]


class Recorder:
    """Collects requests and sleeps so tests can assert on retries without waiting."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.sleeps: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def _api(handler: Handler, rec: Recorder, *, token: str | None = "tok", max_attempts: int = 4) -> GoogleApiClient:
    def recording(request: httpx.Request) -> httpx.Response:
        rec.requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return GoogleApiClient(
        AuthSession(token=token),
        http=http,
        max_attempts=max_attempts,
        retry_base_seconds=2.0,
        sleep=rec.sleep,
    )


def test_classify_response() -> None:
    def resp(status: int, body: dict | None = None) -> httpx.Response:
        return httpx.Response(status, json=body or {})

    assert classify_response(resp(200)) is None
    assert isinstance(classify_response(resp(401)), AuthExpiredError)
    assert isinstance(classify_response(resp(400, {"error": {"status": "UNAUTHENTICATED"}})), AuthExpiredError)
    assert isinstance(classify_response(resp(429)), TransientError)
    assert isinstance(classify_response(resp(503)), TransientError)
    rate_limited = {"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}
    assert isinstance(classify_response(resp(403, rate_limited)), TransientError)
    assert isinstance(classify_response(resp(404)), NotFoundError)
    forbidden = classify_response(resp(403, {"error": {"message": "nope"}}))
    assert type(forbidden) is RemoteError
    assert str(forbidden) == "nope"


@pytest.mark.asyncio
async def test_request_retries_transient_with_linear_backoff() -> None:
    rec = Recorder()
    responses = iter([httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"ok": True})])
    api = _api(lambda _req: next(responses), rec)

    response = await api.request("GET", "https://example.test/x")

    assert response.json() == {"ok": True}
    assert len(rec.requests) == 3
    assert rec.sleeps == [2.0, 4.0]
    assert rec.requests[0].headers["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_request_honours_retry_after() -> None:
    rec = Recorder()
    responses = iter([httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json={})])
    api = _api(lambda _req: next(responses), rec)

    await api.request("GET", "https://example.test/x")

    assert rec.sleeps == [7.0]


@pytest.mark.asyncio
async def test_request_gives_up_after_max_attempts() -> None:
    rec = Recorder()
    api = _api(lambda _req: httpx.Response(500), rec, max_attempts=3)

    with pytest.raises(TransientError):
        await api.request("GET", "https://example.test/x")
    assert len(rec.requests) == 3
    assert rec.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_request_retries_network_errors() -> None:
    rec = Recorder()
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={})

    api = _api(handler, rec)
    await api.request("GET", "https://example.test/x")
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried() -> None:
    rec = Recorder()
    api = _api(lambda _req: httpx.Response(401), rec)

    with pytest.raises(AuthExpiredError):
        await api.request("GET", "https://example.test/x")
    assert len(rec.requests) == 1
    assert rec.sleeps == []


@pytest.mark.asyncio
async def test_request_without_token_fails_fast() -> None:
    rec = Recorder()
    api = _api(lambda _req: httpx.Response(200), rec, token=None)

    with pytest.raises(AuthExpiredError):
        await api.request("GET", "https://example.test/x")
    assert rec.requests == []


# ---- Google Tasks ----


def test_map_remote_task() -> None:
    task = map_remote_task(
        {"id": "abc", "title": "Buy", "notes": "milk", "status": "completed", "due": "2025-03-14T00:00:00.000Z"},
        "list1",
    )
    assert task.remote_id == "abc"
    assert task.remote_list_id == "list1"
    assert task.status is TaskStatus.COMPLETED
    assert task.due == date(2025, 3, 14)
    assert task.kind is TaskKind.TASK
    assert map_remote_task({"id": "x", "status": "needsAction"}, "l").status is TaskStatus.PENDING


@pytest.mark.asyncio
async def test_list_tasks_follows_pagination() -> None:
    rec = Recorder()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("pageToken") == "p2":
            return httpx.Response(200, json={"items": [{"id": "b", "title": "B"}]})
        return httpx.Response(200, json={"items": [{"id": "a", "title": "A"}], "nextPageToken": "p2"})

    provider = GoogleTasksProvider(_api(handler, rec))
    tasks = await provider.list_tasks("@default")

    assert [t.remote_id for t in tasks] == ["a", "b"]
    first = rec.requests[0]
    assert first.url.path == "/tasks/v1/lists/@default/tasks"
    assert first.url.params["showCompleted"] == "true"
    assert first.url.params["showHidden"] == "true"


@pytest.mark.asyncio
async def test_set_status_and_update_bodies() -> None:
    rec = Recorder()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "r1", "title": "T"})

    provider = GoogleTasksProvider(_api(handler, rec))
    await provider.set_status("r1", "L", TaskStatus.PENDING)
    await provider.update("r1", "L", RemoteTaskPatch(title="T", due=date(2025, 4, 1)))

    reopen = json.loads(rec.requests[0].content)
    assert rec.requests[0].method == "PATCH"
    assert reopen == {"status": "needsAction", "completed": None}
    assert json.loads(rec.requests[1].content) == {"title": "T", "due": "2025-04-01T00:00:00.000Z"}

    with pytest.raises(ValueError):
        await provider.set_status("r1", "L", TaskStatus.CANCELLED)


# ---- Drive backup ----


def _drive_handler(state: dict) -> Handler:
    """Tiny fake of the Drive app-data folder holding at most one file."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        if request.method == "GET" and url == DRIVE_FILES_API:
            files = [{"id": "f1", "name": "battle_plan_data.json"}] if state.get("doc") else []
            return httpx.Response(200, json={"files": files})
        if request.method == "GET" and url == f"{DRIVE_FILES_API}/f1":
            assert request.url.params["alt"] == "media"
            return httpx.Response(200, content=state["doc"].encode("utf-8"))
        if url in (DRIVE_UPLOAD_API, f"{DRIVE_UPLOAD_API}/f1"):
            state.setdefault("writes", []).append(request.method)
            body = request.content.decode("utf-8")
            # the media part is the last JSON object in the multipart body
            start = body.index('{"version"')
            end = body.rindex("}") + 1
            state["doc"] = body[start:end]
            return httpx.Response(200, json={"id": "f1"})
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_drive_load_returns_none_without_backup() -> None:
    transport = DriveBackupTransport(_api(_drive_handler({}), Recorder()))
    assert await transport.load() is None


@pytest.mark.asyncio
async def test_drive_save_creates_then_overwrites() -> None:
    state: dict = {}
    rec = Recorder()
    transport = DriveBackupTransport(_api(_drive_handler(state), rec))
    envelope = BackupEnvelope.build([Task(title="a", id=1, created_at=5)], [], timestamp=100)

    await transport.save(envelope)
    await transport.save(BackupEnvelope.build([Task(title="b", id=1, created_at=6)], [], timestamp=200))

    assert state["writes"] == ["POST", "PATCH"]
    upload = next(r for r in rec.requests if r.method == "POST")
    assert upload.url.params["uploadType"] == "multipart"
    assert upload.headers["Content-Type"].startswith("multipart/related; boundary=")
    assert '"parents": ["appDataFolder"]' in upload.content.decode("utf-8")

    loaded = await transport.load()
    assert loaded is not None
    assert loaded.timestamp == 200
    assert [t.title for t in loaded.tasks] == ["b"]


@pytest.mark.asyncio
async def test_drive_corrupt_backup_is_remote_error() -> None:
    transport = DriveBackupTransport(_api(_drive_handler({"doc": "not json"}), Recorder()))
    with pytest.raises(RemoteError):
        await transport.load()


# ---- Calendar ----


def test_build_event_defaults() -> None:
    task = Task(title="Sync", kind=TaskKind.MEETING, internal_notes="room 4")
    event = build_event(task, time_zone="Europe/Prague", today=date(2025, 3, 12))

    assert event["summary"] == "[BATTLE PLAN] Sync"
    assert event["start"] == {"dateTime": "2025-03-12T09:00:00", "timeZone": "Europe/Prague"}
    assert event["end"]["dateTime"] == "2025-03-12T10:00:00"
    assert "room 4" in event["description"]


@pytest.mark.asyncio
async def test_calendar_push_inserts_then_updates() -> None:
    rec = Recorder()
    client = GoogleCalendarClient(_api(lambda _req: httpx.Response(200, json={"id": "evt-1"}), rec))
    task = Task(title="Sync", id=1, kind=TaskKind.MEETING, scheduled_date=date(2025, 3, 12), start_time="14:30")

    assert await client.push_event(task) == "evt-1"
    task.origin_external_id = "evt-1"
    assert await client.push_event(task) == "evt-1"

    assert [r.method for r in rec.requests] == ["POST", "PUT"]
    assert rec.requests[1].url.path.endswith("/events/evt-1")
    assert json.loads(rec.requests[0].content)["start"]["dateTime"] == "2025-03-12T14:30:00"


@pytest.mark.parametrize(
    ("start_time", "expected"),
    [("9:30", "2025-03-12T09:30:00"), ("07:05:00", "2025-03-12T07:05:00"), ("lunch", "2025-03-12T09:00:00")],
)
def test_build_event_reads_unpadded_start_times(start_time: str, expected: str) -> None:
    task = Task(title="Sync", kind=TaskKind.MEETING, scheduled_date=date(2025, 3, 12), start_time=start_time)
    event = build_event(task, time_zone="UTC", today=date(2025, 3, 12))
    assert event["start"]["dateTime"] == expected


@pytest.mark.asyncio
async def test_calendar_delete_event() -> None:
    rec = Recorder()
    client = GoogleCalendarClient(_api(lambda _req: httpx.Response(204), rec))

    await client.delete_event("evt-1")

    assert [r.method for r in rec.requests] == ["DELETE"]
    assert rec.requests[0].url.path.endswith("/events/evt-1")
