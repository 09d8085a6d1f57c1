"""Shared Pydantic models for the proxy's downstream (Ollama-shaped) wire format."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

# Static stand-ins reported by /api/tags; there is no local model registry.
PLACEHOLDER_MODIFIED_AT = "2025-05-22T13:17:33.539324157+08:00"
PLACEHOLDER_SIZE = 3200627168
PLACEHOLDER_DIGEST = "fb90415cde1ef08aa669ae74b082d49b158729b6db1ab183c941417d507e71a1"


class RecordMessage(BaseModel):
    """Message fragment carried by one downstream record."""

    role: Literal["assistant"] = "assistant"
    content: str = ""


class DownstreamRecord(BaseModel):
    """One line of the NDJSON stream written to the client.

    Intermediate records only carry the first four fields. The terminal record
    (``done=True``) also carries the timing and count fields, all zero since
    the upstream does not report them.
    """

    model: str
    created_at: str
    message: RecordMessage = Field(default_factory=RecordMessage)
    done: bool = False
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None

    def to_line(self) -> bytes:
        """Encode as one newline-terminated JSON line."""
        return (self.model_dump_json(exclude_none=True) + "\n").encode("utf-8")


class ModelDetails(BaseModel):
    parent_model: str = ""
    format: str = "gguf"
    family: str = "qwen"
    families: list[str] = Field(default_factory=lambda: ["qwen"])
    parameter_size: str = "3.8B"
    quantization_level: str = "Q4_K_M"


class ModelTag(BaseModel):
    """One entry of the /api/tags listing."""

    name: str
    model: str
    modified_at: str = PLACEHOLDER_MODIFIED_AT
    size: int = PLACEHOLDER_SIZE
    digest: str = PLACEHOLDER_DIGEST
    details: ModelDetails = Field(default_factory=ModelDetails)

    @classmethod
    def placeholder(cls, name: str) -> ModelTag:
        return cls(name=name, model=name)


class TagsResponse(BaseModel):
    models: list[ModelTag] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: str
    version: str


class ErrorDetail(BaseModel):
    message: str
    status: int
    details: Any = None
    stack: str | None = None


class ErrorResponse(BaseModel):
    """Body of every JSON error response."""

    error: ErrorDetail
