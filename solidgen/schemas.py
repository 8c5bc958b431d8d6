from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

LLM_NAMES = ("claude", "claude-sonnet", "claude-opus", "gemini", "remote")


class TurnJobStatus(str, Enum):
    queued = "queued"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    cancelled = "cancelled"


def _check_llm_name(value: str | None) -> None:
    if value is not None and value not in LLM_NAMES:
        raise ValueError(f"llm_name must be one of: {', '.join(LLM_NAMES)}")


# ---------------------------------------------------------------------------
# Shared pieces
# ---------------------------------------------------------------------------

class ImageAttachmentModel(BaseModel):
    data: str                                    # base64, optionally a data: URL
    mime_type: str


class ChatTurnIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


# ---------------------------------------------------------------------------
# POST /generate
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    """One raw generation call: no sandbox, no retries."""

    conversation_history: list[ChatTurnIn]
    current_script: str | None = None
    image_attachment: ImageAttachmentModel | None = None
    llm_name: str | None = None

    @model_validator(mode="after")
    def _validate_history(self) -> "GenerateRequest":
        _check_llm_name(self.llm_name)
        if not self.conversation_history:
            raise ValueError("conversation_history must not be empty")
        if self.conversation_history[-1].role != "user":
            raise ValueError("conversation_history must end with a user turn")
        return self


class GenerateResponse(BaseModel):
    code: str
    usage: dict[str, Any] = Field(default_factory=dict)
    elapsed_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Conversation turns
# ---------------------------------------------------------------------------

class TurnRequest(BaseModel):
    """Input for one conversational turn (sync, streamed or queued as a job)."""

    prompt: str
    image_attachment: ImageAttachmentModel | None = None

    # Jobs only: omitted → a new conversation is created
    conversation_id: str | None = None

    # LLM selection (defaults to settings.default_llm)
    llm_name: str | None = None

    # Pipeline config (overridable)
    max_attempts: int | None = Field(default=None, ge=1, le=10)

    # Caller-supplied job id and opaque metadata
    request_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

    @model_validator(mode="after")
    def _validate_prompt(self) -> "TurnRequest":
        _check_llm_name(self.llm_name)
        if not self.prompt.strip():
            raise ValueError("prompt is required")
        return self


class RetryEntry(BaseModel):
    attempt: int
    success: bool
    code_length: int
    error_text: str = ""
    timestamp: str = ""


class CostSummary(BaseModel):
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_usd: float = 0.0
    calls: int = 0
    details: list[dict[str, Any]] = Field(default_factory=list)


class MeshOut(BaseModel):
    positions: list[float]
    normals: list[float]
    triangle_count: int
    color: str | None = None
    name: str | None = None
    watertight: bool = False


class TurnResultOut(BaseModel):
    success: bool = False
    status: str = ""
    message: str = ""
    conversation_id: str = ""

    # The output
    code: str | None = None
    parameters: list[str] = Field(default_factory=list)
    meshes: list[MeshOut] = Field(default_factory=list)

    # What happened
    retry_log: list[RetryEntry] = Field(default_factory=list)
    error: str | None = None

    # Cost tracking
    cost_summary: CostSummary = Field(default_factory=CostSummary)
    llm_used: str = ""


# ---------------------------------------------------------------------------
# POST /execute, POST /export/{fmt}
# ---------------------------------------------------------------------------

class ExecuteRequest(BaseModel):
    code: str
    include_meshes: bool = True


class ExecuteResponse(BaseModel):
    ok: bool
    error: str | None = None
    kind: Literal["single", "parts"] | None = None
    part_count: int = 0
    parameters: list[str] = Field(default_factory=list)
    meshes: list[MeshOut] = Field(default_factory=list)
    elapsed_seconds: float = 0.0


class ExportRequest(BaseModel):
    code: str


# ---------------------------------------------------------------------------
# Conversations CRUD
# ---------------------------------------------------------------------------

class ConversationCreate(BaseModel):
    title: str | None = None
    turns: list[ChatTurnIn] = Field(default_factory=list)
    current_code: str | None = None
    last_prompt: str | None = None


class ConversationUpdate(BaseModel):
    title: str | None = None
    current_code: str | None = None
    last_prompt: str | None = None


class ConversationImport(BaseModel):
    conversations: list[ConversationCreate]

    @model_validator(mode="after")
    def _non_empty(self) -> "ConversationImport":
        if not self.conversations:
            raise ValueError("No conversations to import")
        return self


# ---------------------------------------------------------------------------
# Job views (for /jobs endpoints)
# ---------------------------------------------------------------------------

class JobRecordView(BaseModel):
    id: str
    status: TurnJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    detail: str = ""

    request_summary: dict[str, Any] = Field(default_factory=dict)
    result: TurnResultOut | None = None
    error: dict[str, Any] | None = None


class AsyncJobAccepted(BaseModel):
    job_id: str
    conversation_id: str
    status: TurnJobStatus = TurnJobStatus.queued
    status_url: str
    result_url: str
