"""Pydantic request/response models for API endpoints."""

from typing import Any

from pydantic import BaseModel, Field


class CallBody(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class SubmitCallsBody(BaseModel):
    calls: list[CallBody]


class SessionSummary(BaseModel):
    id: str
    phase: str
    turn: int
    records: int
