# routers/tasks.py — Project tasks: creation, assignment, status and removal
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from access_guard import Action, ResourceRef, guard
from auth import get_current_user, CurrentUser
from database import get_db_session
from exceptions import BadRequestError, ConflictError, NotFoundError
from models import Project, Task, TaskStatus, User, utcnow
from notification_engine import OverflowTracker, notification_engine

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])
logger = logging.getLogger("collab-api.tasks")


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    description: Optional[str] = None
    owner_id: Optional[int] = None


class TaskStatusUpdate(BaseModel):
    status: TaskStatus


class TaskOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: str
    project_id: int
    owner_id: Optional[int] = None
    created_at: Optional[str] = None


def _task_to_out(t: Task) -> TaskOut:
    return TaskOut(
        id=t.id,
        title=t.title,
        description=t.description,
        status=t.status.value if hasattr(t.status, "value") else str(t.status),
        project_id=t.project_id,
        owner_id=t.owner_id,
        created_at=t.created_at.isoformat() if t.created_at else None,
    )


async def _get_project(db: AsyncSession, project_id: int) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise NotFoundError("Project not found")
    return project


async def _get_task(db: AsyncSession, task_id: int) -> Task:
    task = await db.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")
    return task


async def _ensure_title_free(db: AsyncSession, project_id: int, title: str) -> None:
    clash = await db.execute(
        select(Task.id).where(Task.project_id == project_id, Task.title == title)
    )
    if clash.scalar_one_or_none() is not None:
        raise ConflictError(f"A task titled '{title}' already exists in this project")


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/projects/{project_id}", response_model=TaskOut, status_code=201)
async def create_task(
    project_id: int,
    data: TaskCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task in a project; the creator owns it"""
    project = await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.new_task(project_id), Action.CREATE)
    await _ensure_title_free(db, project_id, data.title)

    task = Task(
        title=data.title,
        description=data.description,
        status=TaskStatus.TO_DO,
        project_id=project_id,
        owner_id=user.id,
        created_at=utcnow(),
    )
    db.add(task)
    await db.flush()

    tracker = OverflowTracker()
    await tracker.run(notification_engine.notify_project(
        db, f"New task created: '{task.title}' in project {project.name}", project_id,
    ))
    await tracker.run(notification_engine.notify_user(
        db, f"You were assigned to the new task: '{task.title}'", user.id,
    ))
    logger.info(f"Task {task.id} created in project {project_id} by user={user.id}")
    tracker.raise_if_any()
    return _task_to_out(task)


@router.get("/projects/{project_id}", response_model=List[TaskOut])
async def list_project_tasks(
    project_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.new_task(project_id), Action.READ)
    result = await db.execute(select(Task).where(Task.project_id == project_id).order_by(Task.id))
    return [_task_to_out(t) for t in result.scalars().all()]


@router.get("/me", response_model=List[TaskOut])
async def list_my_tasks(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(Task).where(Task.owner_id == user.id).order_by(Task.id))
    return [_task_to_out(t) for t in result.scalars().all()]


@router.get("/user/{user_id}", response_model=List[TaskOut])
async def list_user_tasks(
    user_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Tasks owned by a given user (admin, or the user themself)"""
    await guard.require(db, user, ResourceRef.user(user_id), Action.LIST_TASKS)
    if not await db.get(User, user_id):
        raise NotFoundError("User not found")
    result = await db.execute(select(Task).where(Task.owner_id == user_id).order_by(Task.id))
    return [_task_to_out(t) for t in result.scalars().all()]


@router.patch("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: int,
    data: TaskUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update title, description or owner"""
    task = await _get_task(db, task_id)
    await guard.require(db, user, ResourceRef.task(task), Action.UPDATE)

    reassigned = data.owner_id is not None and data.owner_id != task.owner_id
    if reassigned:
        if not await db.get(User, data.owner_id):
            raise NotFoundError("User not found")
        await guard.require(db, user, ResourceRef.task(task), Action.ASSIGN, target_user_id=data.owner_id)
        task.owner_id = data.owner_id

    if data.title is not None and data.title != task.title:
        await _ensure_title_free(db, task.project_id, data.title)
        task.title = data.title
    if data.description is not None:
        task.description = data.description
    await db.flush()

    project = await _get_project(db, task.project_id)
    tracker = OverflowTracker()
    if reassigned:
        await tracker.run(notification_engine.notify_user(
            db, f"You were assigned to task '{task.title}'.", task.owner_id,
        ))
    await tracker.run(notification_engine.notify_project(
        db, f"Task '{task.title}' was updated in project {project.name}", project.id,
    ))
    tracker.raise_if_any()
    return _task_to_out(task)


@router.patch("/{task_id}/status", response_model=TaskOut)
async def change_task_status(
    task_id: int,
    data: TaskStatusUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await _get_task(db, task_id)
    await guard.require(db, user, ResourceRef.task(task), Action.CHANGE_STATUS)
    if task.status == data.status:
        raise BadRequestError(f"Task is already {data.status.value}")

    task.status = data.status
    await db.flush()

    await notification_engine.notify_project(
        db, f"Status of task '{task.title}' changed to {data.status.value}", task.project_id,
    )
    return _task_to_out(task)


@router.delete("/{task_id}", status_code=204)
async def delete_task(
    task_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    task = await _get_task(db, task_id)
    await guard.require(db, user, ResourceRef.task(task), Action.DELETE)

    project = await _get_project(db, task.project_id)
    title = task.title
    await db.delete(task)
    await db.flush()

    await notification_engine.notify_project(
        db, f"Task '{title}' was permanently deleted from project {project.name}", project.id,
    )
    logger.info(f"Task {task_id} deleted by user={user.id}")
