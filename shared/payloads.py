from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ToolEnvelope(BaseModel):
    """
    Pipeline payload envelope accepted by every POST endpoint:
    { "data": { ...request body... }, "meta": { "llm_name": ..., ... } }
    """

    data: dict[str, Any] = Field(default_factory=dict)
    meta: dict[str, Any] = Field(default_factory=dict)


def unwrap_tool_payload(raw_body: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any], bool]:
    """
    Returns:
      - request data (a plain body is returned untouched)
      - envelope metadata ({} for a plain body)
      - whether the request was envelope-wrapped
    """
    if isinstance(raw_body, dict) and "data" in raw_body and isinstance(raw_body.get("data"), dict):
        envelope = ToolEnvelope.model_validate(raw_body)
        return dict(envelope.data), envelope.meta, True
    return raw_body, {}, False


def wrap_tool_result(result: dict[str, Any], wrapped: bool) -> dict[str, Any]:
    """Mirror the caller's shape: enveloped requests get ``{"result": ...}`` back."""
    return {"result": result} if wrapped else result
