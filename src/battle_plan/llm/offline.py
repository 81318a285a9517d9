# src/battle_plan/llm/offline.py

from __future__ import annotations

from typing import Any

from ..core.errors import CaptureError
from ..tasks.task_models import Task


class OfflineCaptureStructurer:
    """
    Structurer used when no AI provider is configured.

    Voice capture needs a model, so every call fails with a readable CaptureError;
    typed input (/add) keeps working without one.
    """

    async def structure(
        self,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        existing: Task | None = None,
    ) -> dict[str, Any]:
        raise CaptureError(
            "Voice capture is offline: no AI provider is configured. "
            "Set BATTLE_PLAN_AI_BASE_URL if needed and store a key with /set ai_api_key <key>."
        )
