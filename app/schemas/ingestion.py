from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class IngestionStatus(StrEnum):
    seen = "seen"
    processing = "processing"
    ok = "ok"
    error = "error"
    skipped = "skipped"


class ParsedEmailFields(BaseModel):
    start: datetime | None = None
    end: datetime | None = None
    time_source: str | None = None
    coach_hint: str | None = None
    student_name: str | None = None
    student_names: list[str] = Field(default_factory=list)
    lesson_type: str | None = None


class IngestionResponse(BaseModel):
    ok: bool
    action: str | None = None
    message_id: str | None = None
    duplicate: bool | None = None
    expired: bool | None = None
    reason: str | None = None
    error: str | None = None
    coach_id: str | None = None
    appointment_id: str | None = None
    created: bool | None = None
    deleted: bool | None = None
    ambiguous: bool | None = None
    match_phase: str | None = None
    parsed: ParsedEmailFields | None = None


class IngestionRecord(BaseModel):
    message_id: str
    status: IngestionStatus
    action: str | None = None
    appointment_id: str | None = None
    coach_id: str | None = None
    error: str | None = None
    attempts: int = 1
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime
    updated_at: datetime


class IngestionRecordsResponse(BaseModel):
    items: list[IngestionRecord]
