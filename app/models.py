import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field as PydanticField, field_validator, model_validator
from sqlalchemy import DateTime, Text
from sqlmodel import Column, Field, SQLModel

logger = logging.getLogger(__name__)


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive values are taken as UTC; aware values are converted to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


# Sort ordinals; "priority asc" means most important first.
PRIORITY_ORDINALS = {
    Priority.HIGH.value: 1,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 3,
    Priority.NONE.value: 4,
}


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


# Statuses that can no longer be overdue or due soon.
CLOSED_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.ARCHIVED.value)


def _utc_column(nullable: bool = True) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class TaskRecord(SQLModel, table=True):
    """Database row for a task. Only `task_from_record` reads these."""

    __tablename__ = "tasks"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    owner_id: str = Field(index=True, max_length=64)
    title: str = Field(max_length=255)
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    category_id: str | None = Field(default=None, index=True, max_length=36)
    priority: str = Field(default=Priority.NONE.value, max_length=16)
    status: str = Field(default=TaskStatus.PENDING.value, index=True, max_length=16)
    due_date: datetime | None = Field(default=None, sa_column=_utc_column())
    reminder_date: datetime | None = Field(default=None, sa_column=_utc_column())
    start_date: datetime | None = Field(default=None, sa_column=_utc_column())
    estimated_minutes: int | None = Field(default=None)
    actual_minutes: int | None = Field(default=None)
    completed_at: datetime | None = Field(default=None, sa_column=_utc_column())
    completed_by: str | None = Field(default=None, max_length=64)
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    # Same tags, newline-framed ("\nhome\nwork\n"), for tag and free-text matching.
    tags_search: str = Field(default="", sa_column=Column(Text, nullable=False))
    sort_order: int = Field(default=0)
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=get_utc_now, sa_column=_utc_column(nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now, sa_column=_utc_column(nullable=False)
    )
    deleted_at: datetime | None = Field(default=None, sa_column=_utc_column())


class CategoryRecord(SQLModel, table=True):
    __tablename__ = "categories"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    owner_id: str = Field(index=True, max_length=64)
    name: str = Field(max_length=100)
    color: str | None = Field(default=None, max_length=16)
    created_at: datetime = Field(
        default_factory=get_utc_now, sa_column=_utc_column(nullable=False)
    )
    deleted_at: datetime | None = Field(default=None, sa_column=_utc_column())


# -- tag and metadata encoding ------------------------------------------------


def normalize_tags(tags: Iterable[str]) -> list[str]:
    # Whitespace runs collapse to one space, so a tag never holds TAG_DELIMITER.
    cleaned = {" ".join(str(tag).split()).lower() for tag in tags}
    return sorted(tag for tag in cleaned if tag)


TAG_DELIMITER = "\n"


def tag_token(tag: str) -> str:
    """One normalized tag as it appears inside `tags_search`."""
    return f"{TAG_DELIMITER}{tag}{TAG_DELIMITER}"


def encode_tags(tags: Iterable[str]) -> str:
    return json.dumps(normalize_tags(tags), ensure_ascii=False)


def index_tags(tags: Iterable[str]) -> str:
    """Newline-framed tag list; empty for no tags so nothing can match it."""
    tags = normalize_tags(tags)
    if not tags:
        return ""
    return TAG_DELIMITER + TAG_DELIMITER.join(tags) + TAG_DELIMITER


def decode_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable tags column")
        return []
    return [str(tag) for tag in value] if isinstance(value, list) else []


def encode_metadata(metadata: dict[str, Any] | None) -> str:
    return json.dumps(metadata or {}, default=str, sort_keys=True)


def decode_metadata(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable metadata column")
        return {}
    return value if isinstance(value, dict) else {}


# -- schemas ------------------------------------------------------------------

_DATETIME_FIELDS = ("due_date", "reminder_date", "start_date")

# Fields an update may omit but never set to null.
_NOT_NULLABLE_UPDATES = ("title", "priority", "status", "tags", "sort_order", "metadata")


class TaskBase(BaseModel):
    """Fields shared by create and read schemas"""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    title: str = PydanticField(min_length=1, max_length=255)
    description: str | None = None
    category_id: str | None = None
    priority: Priority = Priority.NONE
    status: TaskStatus = TaskStatus.PENDING
    due_date: datetime | None = None
    reminder_date: datetime | None = None
    start_date: datetime | None = None
    estimated_minutes: int | None = PydanticField(default=None, ge=0, le=99999)
    tags: list[str] = PydanticField(default_factory=list)
    metadata: dict[str, Any] = PydanticField(default_factory=dict)

    @field_validator(*_DATETIME_FIELDS)
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)


class TaskCreate(TaskBase):
    """Schema for creating a task"""

    sort_order: int | None = None


class TaskUpdate(BaseModel):
    """Schema for updating a task - all fields optional, only supplied ones apply"""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    title: str | None = PydanticField(default=None, min_length=1, max_length=255)
    description: str | None = None
    category_id: str | None = None
    priority: Priority | None = None
    status: TaskStatus | None = None
    due_date: datetime | None = None
    reminder_date: datetime | None = None
    start_date: datetime | None = None
    estimated_minutes: int | None = PydanticField(default=None, ge=0, le=99999)
    actual_minutes: int | None = PydanticField(default=None, ge=0, le=99999)
    tags: list[str] | None = None
    sort_order: int | None = None
    metadata: dict[str, Any] | None = None

    @field_validator(*_DATETIME_FIELDS)
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else normalize_tags(value)

    @model_validator(mode="after")
    def _reject_explicit_nulls(self) -> "TaskUpdate":
        for name in _NOT_NULLABLE_UPDATES:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class Task(BaseModel):
    """Task as seen by every caller above the store boundary"""

    id: str
    owner_id: str
    title: str
    description: str | None = None
    category_id: str | None = None
    priority: Priority
    status: TaskStatus
    due_date: datetime | None = None
    reminder_date: datetime | None = None
    start_date: datetime | None = None
    estimated_minutes: int | None = None
    actual_minutes: int | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None
    tags: list[str] = PydanticField(default_factory=list)
    sort_order: int = 0
    metadata: dict[str, Any] = PydanticField(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None


def task_from_record(record: TaskRecord) -> Task:
    """The single row -> entity mapping; all column decoding happens here."""
    return Task(
        id=record.id,
        owner_id=record.owner_id,
        title=record.title,
        description=record.description,
        category_id=record.category_id,
        priority=Priority(record.priority),
        status=TaskStatus(record.status),
        due_date=as_utc(record.due_date),
        reminder_date=as_utc(record.reminder_date),
        start_date=as_utc(record.start_date),
        estimated_minutes=record.estimated_minutes,
        actual_minutes=record.actual_minutes,
        completed_at=as_utc(record.completed_at),
        completed_by=record.completed_by,
        tags=decode_tags(record.tags_json),
        sort_order=record.sort_order or 0,
        metadata=decode_metadata(record.metadata_json),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        deleted_at=as_utc(record.deleted_at),
    )
