"""Translation of upstream SSE records into downstream NDJSON records."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ollama_proxy.core.config import DEFAULT_MODEL
from ollama_proxy.core.types import DownstreamRecord, RecordMessage

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Translation:
    """Outcome of translating one raw record.

    ``record`` is the line to emit, if any. ``done`` is set only for the
    terminal sentinel, which never produces a record of its own.
    """

    record: DownstreamRecord | None = None
    done: bool = False


IGNORED = Translation()
END_OF_STREAM = Translation(done=True)


def extract_delta_content(payload: Any) -> str:
    """Return ``choices[0].delta.content``, or ``""`` if any step is missing.

    Only the first choice is considered.
    """
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    choice = choices[0]
    if not isinstance(choice, dict):
        return ""
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


class RecordTranslator:
    """Maps one upstream record to zero or one downstream record.

    Stateless apart from the model name, so translating the same record twice
    with the same clock gives the same result.
    """

    def __init__(
        self,
        model: str | None = None,
        *,
        fallback_model: str = DEFAULT_MODEL,
        clock: Clock = utc_now,
    ) -> None:
        self.model = model or fallback_model
        self._clock = clock

    def translate(self, raw: str) -> Translation:
        if not raw.startswith(DATA_PREFIX):
            return IGNORED
        payload = raw[len(DATA_PREFIX):].strip()
        if not payload:
            return IGNORED
        if payload == DONE_SENTINEL:
            return END_OF_STREAM

        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.warning("Dropping malformed upstream record: %s (%.80r)", e, payload)
            return IGNORED

        content = extract_delta_content(data)
        if not content:
            return IGNORED
        return Translation(
            record=DownstreamRecord(
                model=self.model,
                created_at=iso_timestamp(self._clock()),
                message=RecordMessage(content=content),
                done=False,
            )
        )

    def terminal_record(self) -> DownstreamRecord:
        """Build the synthetic last record of every completed stream."""
        return DownstreamRecord(
            model=self.model,
            created_at=iso_timestamp(self._clock()),
            message=RecordMessage(content=""),
            done=True,
            total_duration=0,
            load_duration=0,
            prompt_eval_count=0,
            prompt_eval_duration=0,
            eval_count=0,
            eval_duration=0,
        )
