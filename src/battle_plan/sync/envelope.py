# src/battle_plan/sync/envelope.py

"""
Backup document exchanged with the backup transport.

    {"version": "1.2", "timestamp": <epoch ms>, "data": {"tasks": [...], "settings": [...]}}

`timestamp` is the time the document was written, not the age of its content.
Writers always send the whole document.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from ..tasks.task_models import Setting, Task

ENVELOPE_VERSION = "1.2"


@dataclass(slots=True, frozen=True)
class BackupEnvelope:
    version: str
    timestamp: int
    tasks: tuple[Task, ...]
    settings: tuple[Setting, ...]

    @classmethod
    def build(
        cls,
        tasks: Iterable[Task],
        settings: Iterable[Setting],
        *,
        timestamp: int,
        version: str = ENVELOPE_VERSION,
    ) -> BackupEnvelope:
        return cls(version=version, timestamp=int(timestamp), tasks=tuple(tasks), settings=tuple(settings))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "data": {
                "tasks": [t.to_dict() for t in self.tasks],
                "settings": [s.to_dict() for s in self.settings],
            },
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> BackupEnvelope:
        if not isinstance(raw, Mapping):
            raise ValueError("backup document must be a JSON object")
        data = raw.get("data")
        if not isinstance(data, Mapping):
            raise ValueError("backup document has no data section")
        try:
            timestamp = int(raw["timestamp"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError("backup document has no valid timestamp") from e

        tasks = [Task.from_dict(t) for t in data.get("tasks") or [] if isinstance(t, Mapping)]
        settings = [Setting.from_dict(s) for s in data.get("settings") or [] if isinstance(s, Mapping)]
        return cls(
            version=str(raw.get("version") or ENVELOPE_VERSION),
            timestamp=timestamp,
            tasks=tuple(tasks),
            settings=tuple(settings),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> BackupEnvelope:
        return cls.from_dict(json.loads(text))
