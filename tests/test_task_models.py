# tests/test_task_models.py

from __future__ import annotations

from datetime import date

import pytest

from battle_plan.core.errors import OwnershipError
from battle_plan.tasks.task_models import (
    RemoteTaskPatch,
    SubItem,
    Task,
    TaskKind,
    TaskStatus,
    Urgency,
    coerce_task_fields,
    compute_progress,
    compute_remaining,
)


def _subs(*done: bool) -> list[SubItem]:
    return [SubItem(title=f"s{i}", completed=d) for i, d in enumerate(done)]


@pytest.mark.parametrize(
    ("done", "expected"),
    [
        ((), 0),
        ((True,), 100),
        ((True, False), 50),
        ((True, False, False), 33),
        ((True, True, False), 67),
    ],
)
def test_compute_progress_rounds_half_up(done: tuple[bool, ...], expected: int) -> None:
    assert compute_progress(_subs(*done)) == expected


def test_compute_remaining_rounds_half_up() -> None:
    assert compute_remaining(45, 50) == 23  # 22.5
    assert compute_remaining(60, 0) == 60
    assert compute_remaining(60, 100) == 0
    assert compute_remaining(90, 33) == 60  # 60.3


def test_merged_sub_items_recompute_progress_and_remaining() -> None:
    task = Task(title="Report", total_duration=60, remaining_duration=60)

    updated = task.merged({"sub_items": [{"title": "a", "completed": True}, {"title": "b"}]})

    assert updated.progress == 50
    assert updated.remaining_duration == 30
    assert updated.total_duration == 60
    # original untouched
    assert task.progress == 0


def test_merged_explicit_remaining_wins() -> None:
    task = Task(title="Report", total_duration=60, remaining_duration=60)
    updated = task.merged({"progress": 50, "remaining_duration": 5})
    assert updated.progress == 50
    assert updated.remaining_duration == 5


def test_merged_progress_without_total_uses_remaining_as_total() -> None:
    task = Task(title="Legacy", remaining_duration=40)
    updated = task.merged({"progress": 25})
    assert updated.total_duration == 40
    assert updated.remaining_duration == 30


def test_coerce_rejects_remote_and_unknown_fields() -> None:
    with pytest.raises(OwnershipError):
        coerce_task_fields({"remote_id": "abc"})
    with pytest.raises(ValueError):
        coerce_task_fields({"colour": "red"})


def test_coerce_normalises_values() -> None:
    out = coerce_task_fields(
        {"kind": "meeting", "urgency": "5", "scheduled_date": "2025-03-12T10:00:00Z", "progress": 250}
    )
    assert out["kind"] is TaskKind.MEETING
    assert out["urgency"] is Urgency.CRITICAL
    assert out["scheduled_date"] == date(2025, 3, 12)
    assert out["progress"] == 100


def test_urgency_coerce_fallbacks() -> None:
    assert Urgency.coerce(None) is Urgency.NORMAL
    assert Urgency.coerce("urgent") is Urgency.NORMAL
    assert Urgency.coerce(0) is Urgency.MINIMAL
    assert Urgency.coerce(3) is Urgency.NORMAL
    assert Urgency.coerce(9) is Urgency.CRITICAL


def test_urgency_survives_older_documents() -> None:
    # Older documents use the same 1..5 scale with 3 as the default.
    assert Task.from_dict({"title": "x", "urgency": 5}).urgency is Urgency.CRITICAL
    assert Task.from_dict({"title": "x", "urgency": 4}).urgency is Urgency.HIGH
    assert Task.from_dict({"title": "x", "urgency": 3}).urgency is Urgency.NORMAL
    assert Task.from_dict({"title": "x"}).urgency is Urgency.NORMAL


def test_from_dict_accepts_legacy_keys() -> None:
    raw = {
        "id": 7,
        "title": "Old entry",
        "type": "note",
        "date": "2024-05-01",
        "deadline": "2024-05-03",
        "subTasks": [{"id": "a1", "title": "step", "completed": True}],
        "duration": 30,
        "googleEventId": "evt-9",
        "createdAt": 1234,
    }
    task = Task.from_dict(raw)

    assert task.id == 7
    assert task.kind is TaskKind.THOUGHT
    assert task.scheduled_date == date(2024, 5, 1)
    assert task.deadline_date == date(2024, 5, 3)
    assert [s.id for s in task.sub_items] == ["a1"]
    assert task.remaining_duration == 30
    assert task.origin_external_id == "evt-9"
    assert task.created_at == 1234
    assert task.status is TaskStatus.PENDING


def test_to_dict_from_dict_preserves_record() -> None:
    task = Task(
        title="Plan",
        id=3,
        kind=TaskKind.MEETING,
        scheduled_date=date(2025, 1, 2),
        start_time="10:30",
        urgency=Urgency.HIGH,
        sub_items=_subs(True, False),
        progress=50,
        total_duration=60,
        remaining_duration=30,
        created_at=99,
    )
    assert Task.from_dict(task.to_dict()) == task


def test_effective_date_prefers_scheduled() -> None:
    assert Task(title="a", scheduled_date=date(2025, 1, 1), deadline_date=date(2025, 1, 5)).effective_date == date(
        2025, 1, 1
    )
    assert Task(title="b", deadline_date=date(2025, 1, 5)).effective_date == date(2025, 1, 5)
    assert Task(title="c").effective_date is None


def test_remote_patch_accepts_only_provider_fields() -> None:
    patch = RemoteTaskPatch.from_fields({"title": "New", "description": "n", "due": "2025-04-01"})
    assert patch == RemoteTaskPatch(title="New", notes="n", due=date(2025, 4, 1))
    assert RemoteTaskPatch().is_empty()

    with pytest.raises(OwnershipError):
        RemoteTaskPatch.from_fields({"urgency": 3})


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("9:30", "09:30"), ("09:30", "09:30"), ("7:05:00", "07:05"), ("23:59", "23:59"), ("", None)],
)
def test_coerce_normalises_start_time(raw: str, expected: str | None) -> None:
    assert coerce_task_fields({"start_time": raw})["start_time"] == expected


@pytest.mark.parametrize("raw", ["25:00", "9:60", "noon", "930", "9.30"])
def test_coerce_rejects_unreadable_start_time(raw: str) -> None:
    with pytest.raises(ValueError):
        coerce_task_fields({"start_time": raw})


def test_coerce_rejects_impossible_dates() -> None:
    with pytest.raises(ValueError, match="2025-02-30"):
        coerce_task_fields({"scheduled_date": "2025-02-30"})
    with pytest.raises(ValueError):
        coerce_task_fields({"deadline_date": "next friday"})
    assert coerce_task_fields({"scheduled_date": ""})["scheduled_date"] is None


def test_from_dict_tolerates_unreadable_dates_and_times() -> None:
    task = Task.from_dict({"title": "old", "date": "2025-02-30", "startTime": "noon"})
    assert task.scheduled_date is None
    assert task.start_time is None

    task = Task.from_dict({"title": "old", "startTime": "9:30"})
    assert task.start_time == "09:30"
