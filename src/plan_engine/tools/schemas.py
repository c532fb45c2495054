"""Pydantic schemas for the remote tool invocation wire contract."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class ToolCallRequest(StrictModel):
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class ToolErrorPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str
    code: str | None = None
    details: Any = None


ToolCallStatus = Literal["completed", "failed", "pending"]


class ToolCallResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: ToolCallStatus
    result: Any = None
    error: ToolErrorPayload | None = None
