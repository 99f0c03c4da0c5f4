from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError
from app.models import Priority, TaskStatus, TaskUpdate

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class FilterSpec(BaseModel):
    """Structured task filter. Every field is optional; unset means "no constraint"."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    search: str | None = None
    statuses: list[TaskStatus] = Field(default_factory=list)
    priorities: list[Priority] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    due_from: datetime | None = None
    due_to: datetime | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    completed_from: datetime | None = None
    completed_to: datetime | None = None
    has_due_date: bool | None = None
    has_category: bool | None = None
    is_overdue: bool | None = None
    include_archived: bool = False
    include_deleted: bool = False


class SortSpec(BaseModel):
    # Free-form on purpose: unknown values fall back when resolved.
    field: str = "created_at"
    direction: str = "desc"


class Pagination(BaseModel):
    page: int = 1
    limit: int | None = None


class PageResult(BaseModel, Generic[T]):
    items: list[T]
    total: int
    limit: int
    offset: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, items: list[T], total: int, limit: int, offset: int) -> "PageResult[T]":
        return cls(
            items=items,
            total=total,
            limit=limit,
            offset=offset,
            has_next=offset + limit < total,
            has_previous=offset > 0,
        )


class BulkMutationResult(BaseModel):
    """Per-item outcome of a bulk mutation. Never collapsed into a single flag."""

    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)

    @computed_field
    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def fail(self, task_id: str, reason: str) -> None:
        self.failed.append(task_id)
        self.errors[task_id] = reason


class TaskOrder(BaseModel):
    id: str
    sort_order: int


class CategoryCount(BaseModel):
    category_id: str
    category_name: str
    task_count: int


class StatsSummary(BaseModel):
    total: int
    tasks_by_status: dict[str, int]
    tasks_by_priority: dict[str, int]
    overdue: int
    due_soon: int
    completion_rate: float
    avg_completion_hours: float | None = None
    tasks_by_category: list[CategoryCount] = Field(default_factory=list)


def coerce(model: type[M], value: Any) -> M:
    """Accept a model instance or raw mapping; raise ValidationError on bad input."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value if value is not None else {})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {model.__name__}",
            errors=exc.errors(include_url=False, include_context=False),
        ) from exc


class BulkUpdateRequest(BaseModel):
    task_ids: list[str] = Field(min_length=1)
    changes: TaskUpdate


class BulkDeleteRequest(BaseModel):
    task_ids: list[str] = Field(min_length=1)


class ReorderRequest(BaseModel):
    orders: list[TaskOrder]
