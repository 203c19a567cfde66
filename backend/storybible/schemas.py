from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from storybible.agents.models import ExtractionOptions


class CreateExtractionRequest(BaseModel):
    text: str
    options: ExtractionOptions = Field(default_factory=ExtractionOptions)


class CreateExtractionResponse(BaseModel):
    session_id: str
    message: str


class StartResponse(BaseModel):
    session_id: str
    started: bool


class StageStatus(BaseModel):
    stage: float
    name: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None


class AgentTaskStatus(BaseModel):
    agent: str
    status: str
    result_count: int = 0
    error: str | None = None


class SessionDetail(BaseModel):
    session_id: str
    status: str
    state: str
    created_at: datetime
    document_length: int
    last_event_seq: int
    error: str | None = None
    stages: list[StageStatus]
    agent_tasks: list[AgentTaskStatus]


class ControlMessage(BaseModel):
    """Client -> server message on the WebSocket channel."""
    action: Literal["join", "start", "leave"]


class ArchivedResultSummary(BaseModel):
    session_id: str
    created_at_utc: str
    status: str
    document_length: int | None = None
    error: str | None = None
