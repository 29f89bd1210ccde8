from datetime import datetime

from pydantic import BaseModel, Field


class CoachProfileRequest(BaseModel):
    email: str | None = None
    display_name: str | None = None
    extra_aliases: list[str] = Field(default_factory=list)


class CoachRecord(BaseModel):
    id: str
    email: str | None = None
    display_name: str
    aliases: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
