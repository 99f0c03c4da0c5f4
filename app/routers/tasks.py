from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from typing_extensions import Annotated

from app.models import Priority, Task, TaskCreate, TaskStatus, TaskUpdate
from app.schemas import (
    BulkDeleteRequest,
    BulkMutationResult,
    BulkUpdateRequest,
    FilterSpec,
    PageResult,
    Pagination,
    ReorderRequest,
    SortSpec,
    StatsSummary,
)
from app.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


def get_service(request: Request) -> TaskService:
    return request.app.state.task_service


def get_owner_id(x_user_id: Annotated[str, Header(min_length=1)]) -> str:
    """Owner id as asserted by the upstream auth layer."""
    return x_user_id


ServiceDep = Annotated[TaskService, Depends(get_service)]
OwnerDep = Annotated[str, Depends(get_owner_id)]


def get_filters(
    status_: Annotated[list[TaskStatus] | None, Query(alias="status")] = None,
    priority: Annotated[list[Priority] | None, Query()] = None,
    category_id: Annotated[list[str] | None, Query()] = None,
    tag: Annotated[list[str] | None, Query()] = None,
    due_from: datetime | None = None,
    due_to: datetime | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    completed_from: datetime | None = None,
    completed_to: datetime | None = None,
    has_due_date: bool | None = None,
    has_category: bool | None = None,
    is_overdue: bool | None = None,
    include_archived: bool = False,
) -> FilterSpec:
    return FilterSpec(
        statuses=status_ or [],
        priorities=priority or [],
        category_ids=category_id or [],
        tags=tag or [],
        due_from=due_from,
        due_to=due_to,
        created_from=created_from,
        created_to=created_to,
        completed_from=completed_from,
        completed_to=completed_to,
        has_due_date=has_due_date,
        has_category=has_category,
        is_overdue=is_overdue,
        include_archived=include_archived,
    )


def get_sort(sort_by: str = "created_at", sort_dir: str = "desc") -> SortSpec:
    return SortSpec(field=sort_by, direction=sort_dir)


def get_pagination(
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1, le=100),
) -> Pagination:
    return Pagination(page=page, limit=limit)


FilterDep = Annotated[FilterSpec, Depends(get_filters)]
SortDep = Annotated[SortSpec, Depends(get_sort)]
PaginationDep = Annotated[Pagination, Depends(get_pagination)]


def _not_found(task_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Task with id {task_id} not found",
    )


@router.post("/", response_model=Task, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, service: ServiceDep, owner_id: OwnerDep):
    """Create a new task"""
    return await service.create_task(owner_id, task_data)


@router.get("/", response_model=PageResult[Task])
async def list_tasks(
    service: ServiceDep,
    owner_id: OwnerDep,
    filters: FilterDep,
    sort: SortDep,
    pagination: PaginationDep,
):
    return await service.list_tasks(owner_id, filters, sort, pagination)


@router.get("/search", response_model=PageResult[Task])
async def search_tasks(
    service: ServiceDep,
    owner_id: OwnerDep,
    filters: FilterDep,
    sort: SortDep,
    pagination: PaginationDep,
    q: str = Query(min_length=1),
):
    return await service.search(owner_id, q, filters, sort, pagination)


@router.get("/stats", response_model=StatsSummary)
async def task_stats(service: ServiceDep, owner_id: OwnerDep):
    return await service.get_stats(owner_id)


@router.post("/bulk/update", response_model=BulkMutationResult)
async def bulk_update(body: BulkUpdateRequest, service: ServiceDep, owner_id: OwnerDep):
    return await service.bulk_update(owner_id, body.task_ids, body.changes)


@router.post("/bulk/delete", response_model=BulkMutationResult)
async def bulk_delete(body: BulkDeleteRequest, service: ServiceDep, owner_id: OwnerDep):
    return await service.bulk_delete(owner_id, body.task_ids)


@router.post("/reorder", status_code=status.HTTP_204_NO_CONTENT)
async def reorder_tasks(body: ReorderRequest, service: ServiceDep, owner_id: OwnerDep):
    await service.reorder(owner_id, body.orders)


@router.get("/{task_id}", response_model=Task)
async def get_task(task_id: str, service: ServiceDep, owner_id: OwnerDep):
    """Get a specific task by ID"""
    task = await service.find_by_id(task_id, owner_id)
    if not task:
        raise _not_found(task_id)
    return task


@router.patch("/{task_id}", response_model=Task)
async def update_task(task_id: str, task_data: TaskUpdate, service: ServiceDep, owner_id: OwnerDep):
    task = await service.update(task_id, owner_id, task_data)
    if not task:
        raise _not_found(task_id)
    return task


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_task(task_id: str, service: ServiceDep, owner_id: OwnerDep):
    """Soft-delete a task"""
    if not await service.delete(task_id, owner_id):
        raise _not_found(task_id)


@router.post("/{task_id}/restore", response_model=Task)
async def restore_task(task_id: str, service: ServiceDep, owner_id: OwnerDep):
    task = await service.restore(task_id, owner_id)
    if not task:
        raise _not_found(task_id)
    return task


@router.post("/{task_id}/complete", response_model=Task)
async def mark_task_complete(task_id: str, service: ServiceDep, owner_id: OwnerDep):
    """Mark a task as completed"""
    task = await service.complete(task_id, owner_id)
    if not task:
        raise _not_found(task_id)
    return task


@router.post("/{task_id}/duplicate", response_model=Task, status_code=status.HTTP_201_CREATED)
async def duplicate_task(task_id: str, service: ServiceDep, owner_id: OwnerDep):
    task = await service.duplicate(task_id, owner_id)
    if not task:
        raise _not_found(task_id)
    return task
