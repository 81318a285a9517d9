# src/battle_plan/llm/structurer.py

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import date
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from ..core.errors import CaptureError
from ..core.ports import SettingsRepo
from ..sync.sync_config import AI_KEY_SETTING, AI_MODEL_SETTING
from ..tasks.task_models import Task

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are the capture assistant of a personal planner.
You get the transcript of a short voice note (Czech or English) and return ONE JSON object
describing a single planner entry. Use only these keys, omit the ones you cannot infer:

- "title": short title
- "description": what the entry is about, in the speaker's language
- "internalNotes": context useful later (names, places, links)
- "type": "task" | "meeting" | "thought"
- "date": scheduled day, YYYY-MM-DD
- "deadline": due day, YYYY-MM-DD
- "startTime": HH:MM, meetings only
- "urgency": 1 (minimal) to 5 (critical); 3 is normal, use it when unsure
- "duration": estimated minutes as an integer
- "subTasks": list of {"title": "..."} steps

Today is {today}. Resolve relative dates ("tomorrow", "on Friday") against it.
Return JSON only, no commentary."""

EDIT_SUFFIX = """
The user is editing an existing entry (JSON below). Return only the keys that the
voice note changes; keys you leave out keep their current values.

{existing}"""


def _is_auth_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError))


def _is_rate_limit_error(exc: Exception) -> bool:
    return isinstance(exc, openai.RateLimitError)


def _is_connection_error(exc: Exception) -> bool:
    return isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError))


def friendly_capture_error_message(err: Exception) -> str:
    if _is_auth_error(err):
        return "AI provider rejected the API key. Update it with /set ai_api_key <key>."
    if _is_rate_limit_error(err):
        return "AI provider is rate-limited. Try again in a minute."
    if _is_connection_error(err):
        return "AI provider is unreachable (network/timeout). Try again later."
    return str(err).strip() or "Capture failed."


def parse_capture_json(raw: str | None) -> dict[str, Any]:
    """Parse the model output into a dict; tolerate a ```json fence around it."""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    if not text:
        raise CaptureError("AI returned an empty response")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise CaptureError(f"AI returned invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise CaptureError("AI returned JSON that is not an object")
    return data


class OpenAICaptureStructurer:
    """
    Voice capture via an OpenAI-compatible API: transcribe, then structure.

    The API key and the preferred model are user settings stored in the record
    store, so they are read per call; the client is rebuilt when the key changes.
    Retries on 429/5xx are left to the SDK (max_retries).
    """

    def __init__(
        self,
        store: SettingsRepo,
        *,
        base_url: str | None = None,
        transcription_model: str = "whisper-1",
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        max_attempts: int = 4,
        today: Callable[[], date] = date.today,
        client_factory: Callable[..., AsyncOpenAI] = AsyncOpenAI,
    ) -> None:
        self._store = store
        self._base_url = base_url
        self._transcription_model = transcription_model
        self._default_model = default_model
        self._timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
        self._max_retries = max(0, max_attempts - 1)
        self._today = today
        self._client_factory = client_factory

        self._client: AsyncOpenAI | None = None
        self._client_key: str | None = None

    async def _get_client(self) -> AsyncOpenAI:
        api_key = ((await self._store.get_setting(AI_KEY_SETTING)) or "").strip()
        if not api_key:
            raise CaptureError("AI API key is not set. Use /set ai_api_key <key>.")
        if self._client is None or api_key != self._client_key:
            self._client = self._client_factory(
                api_key=api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
            self._client_key = api_key
        return self._client

    async def _model(self) -> str:
        model = ((await self._store.get_setting(AI_MODEL_SETTING)) or "").strip()
        return model or self._default_model

    def _system_prompt(self, existing: Task | None) -> str:
        prompt = SYSTEM_PROMPT.replace("{today}", self._today().isoformat())
        if existing is not None:
            current = {k: v for k, v in existing.to_dict().items() if k != "id"}
            prompt += EDIT_SUFFIX.replace("{existing}", json.dumps(current, ensure_ascii=False))
        return prompt

    async def transcribe(self, audio: bytes, *, mime_type: str = "audio/webm") -> str:
        client = await self._get_client()
        ext = mime_type.split("/")[-1].split(";")[0] or "webm"
        try:
            result = await client.audio.transcriptions.create(
                model=self._transcription_model,
                file=(f"capture.{ext}", audio, mime_type),
            )
        except openai.OpenAIError as e:
            logger.warning("Transcription failed: %s", e.__class__.__name__)
            raise CaptureError(friendly_capture_error_message(e)) from e
        text = (getattr(result, "text", "") or "").strip()
        if not text:
            raise CaptureError("Nothing was recognised in the recording.")
        return text

    async def structure_text(self, transcript: str, *, existing: Task | None = None) -> dict[str, Any]:
        client = await self._get_client()
        model = await self._model()
        logger.info("Capture: structuring with model=%s (edit=%s)", model, existing is not None)
        try:
            completion = await client.chat.completions.create(
                model=model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": self._system_prompt(existing)},
                    {"role": "user", "content": transcript},
                ],
            )
        except openai.OpenAIError as e:
            logger.warning("Structuring failed on model=%s: %s", model, e.__class__.__name__)
            raise CaptureError(friendly_capture_error_message(e)) from e

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise CaptureError("AI returned no choices") from e
        return parse_capture_json(content)

    async def structure(
        self,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        existing: Task | None = None,
    ) -> dict[str, Any]:
        if not audio:
            raise CaptureError("Empty recording.")
        transcript = await self.transcribe(audio, mime_type=mime_type)
        logger.debug("Capture transcript chars=%d", len(transcript))
        return await self.structure_text(transcript, existing=existing)
