from datetime import datetime
from datetime import timezone
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_serializer
from pydantic import field_validator


def _clean_title(v):
    if not isinstance(v, str) or not v.strip():
        raise ValueError("title is required and cannot be empty")
    return v.strip()


class TaskCreate(BaseModel):
    title: str
    description: str = ""

    @field_validator("title", mode="before")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, v):
        return v.strip() if isinstance(v, str) else ""


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None

    # Validators only run for keys the caller sent, so an explicit null
    # title is an error and an explicit null description clears it.
    @field_validator("title", mode="before")
    @classmethod
    def title_not_blank(cls, v):
        return _clean_title(v)

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, v):
        return v.strip() if isinstance(v, str) else ""

    @field_validator("completed", mode="before")
    @classmethod
    def only_real_booleans(cls, v):
        # "yes", 1 and friends are ignored rather than coerced
        return v if isinstance(v, bool) else None


class TaskRead(BaseModel):
    id: int
    title: str
    description: str
    completed: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("created_at", "updated_at")
    def as_utc_iso(self, value: datetime) -> str:
        # SQLite hands back naive datetimes; they are stored as UTC
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(serialization_alias="totalPages")


class TaskPage(BaseModel):
    data: list[TaskRead]
    pagination: Pagination


class CsrfTokenRead(BaseModel):
    token: str
    header: str


class CsrfRejection(BaseModel):
    error: str
    code: str
    retry: bool
