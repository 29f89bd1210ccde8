from datetime import datetime

from pydantic import BaseModel, Field


class AppointmentRecord(BaseModel):
    id: str
    coach_id: str
    title: str
    start: str
    end: str
    subject: str | None = None
    lesson_type: str | None = None
    notes: str | None = None
    student_names: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class AppointmentsResponse(BaseModel):
    coach_id: str
    items: list[AppointmentRecord]
