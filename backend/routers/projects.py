# routers/projects.py — Projects, membership and project lifecycle notices
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access_guard import Action, ResourceRef, guard
from auth import get_current_user, CurrentUser
from database import get_db_session
from exceptions import BadRequestError, ConflictError, NotFoundError
from membership import memberships
from models import (
    Project, ProjectMember, ProjectStatus, Task, Message, User,
    DEFAULT_PROJECT_DESCRIPTION, utcnow,
)
from notification_engine import OverflowTracker, notification_engine

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])
logger = logging.getLogger("collab-api.projects")


# ============================================================
# SCHEMAS
# ============================================================

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None


class ProjectStatusUpdate(BaseModel):
    status: ProjectStatus


class ProjectOut(BaseModel):
    id: int
    name: str
    description: str
    status: str
    member_ids: List[int]
    created_at: Optional[str] = None


# ============================================================
# HELPERS
# ============================================================

async def _project_to_out(db: AsyncSession, p: Project) -> ProjectOut:
    return ProjectOut(
        id=p.id,
        name=p.name,
        description=p.description,
        status=p.status.value if hasattr(p.status, "value") else str(p.status),
        member_ids=await memberships.member_ids(db, p.id),
        created_at=p.created_at.isoformat() if p.created_at else None,
    )


async def _get_project(db: AsyncSession, project_id: int) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise NotFoundError("Project not found")
    return project


async def _get_user(db: AsyncSession, user_id: int) -> User:
    target = await db.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")
    return target


async def _ensure_name_free(db: AsyncSession, name: str) -> None:
    clash = await db.execute(select(Project.id).where(Project.name == name))
    if clash.scalar_one_or_none() is not None:
        raise ConflictError(f"A project named '{name}' already exists")


async def _projects_of(db: AsyncSession, user_id: int) -> List[Project]:
    stmt = (
        select(Project)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .where(ProjectMember.user_id == user_id)
        .order_by(Project.id)
    )
    return list((await db.execute(stmt)).scalars().all())


# ============================================================
# PROJECT CRUD
# ============================================================

@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project; the creator becomes its first member"""
    await guard.require(db, user, ResourceRef.project(None), Action.CREATE)
    await _ensure_name_free(db, data.name)

    project = Project(
        name=data.name,
        description=data.description or DEFAULT_PROJECT_DESCRIPTION,
        status=ProjectStatus.ACTIVE,
        created_at=utcnow(),
    )
    db.add(project)
    await db.flush()
    await memberships.add(db, project.id, user.id)

    await notification_engine.notify_user(db, f"Project {project.name} created successfully!", user.id)
    logger.info(f"Project {project.id} created by user={user.id}")
    return await _project_to_out(db, project)


@router.get("", response_model=List[ProjectOut])
async def list_projects(
    user_id: Optional[int] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List the projects a user belongs to; defaults to the caller, or to every project for an admin"""
    await guard.require(db, user, ResourceRef.user(user_id), Action.LIST_PROJECTS)
    if user_id is None and user.is_admin:
        result = await db.execute(select(Project).order_by(Project.id))
        return [await _project_to_out(db, p) for p in result.scalars().all()]
    target_id = user_id if user_id is not None else user.id
    return [await _project_to_out(db, p) for p in await _projects_of(db, target_id)]


@router.get("/me", response_model=List[ProjectOut])
async def list_my_projects(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return [await _project_to_out(db, p) for p in await _projects_of(db, user.id)]


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.READ)
    return await _project_to_out(db, project)


@router.patch("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update name or description (admin only)"""
    project = await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.UPDATE)

    if data.name is not None and data.name != project.name:
        await _ensure_name_free(db, data.name)
        project.name = data.name
    if data.description is not None:
        project.description = data.description
    await db.flush()

    await notification_engine.notify_project(db, f"{user.name} updated project {project.name}.", project.id)
    return await _project_to_out(db, project)


@router.patch("/{project_id}/status", response_model=ProjectOut)
async def change_project_status(
    project_id: int,
    data: ProjectStatusUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.CHANGE_STATUS)
    if project.status == data.status:
        raise BadRequestError(f"Project is already {data.status.value}")

    project.status = data.status
    await db.flush()

    await notification_engine.notify_project(
        db, f"{user.name} changed the status of project {project.name}.", project.id,
    )
    logger.info(f"Project {project.id} status -> {data.status.value} by user={user.id}")
    return await _project_to_out(db, project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project after telling each member (admin only)"""
    project = await _get_project(db, project_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.DELETE)

    name = project.name
    member_ids = await memberships.member_ids(db, project_id)
    tracker = OverflowTracker()
    await tracker.run(notification_engine.notify_users(db, f"Project {name} was deleted.", member_ids))

    await memberships.clear_project(db, project_id)
    await db.execute(delete(Task).where(Task.project_id == project_id))
    await db.execute(delete(Message).where(Message.project_id == project_id))
    await db.delete(project)
    await db.commit()
    logger.info(f"Project {project_id} deleted by user={user.id}, {len(member_ids)} member(s) notified")
    tracker.raise_if_any()


# ============================================================
# MEMBERSHIP
# ============================================================

@router.put("/{project_id}/members/{user_id}", response_model=ProjectOut)
async def add_member(
    project_id: int,
    user_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(db, project_id)
    member = await _get_user(db, user_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.ADD_MEMBER)
    if await memberships.is_member(db, project_id, user_id):
        raise BadRequestError(f"{member.name} is already a member of project {project.name}")

    await memberships.add(db, project_id, user_id)
    await notification_engine.notify_project(db, f"{member.name} was added to project {project.name}.", project_id)
    return await _project_to_out(db, project)


@router.delete("/{project_id}/members/{user_id}", response_model=ProjectOut)
async def remove_member(
    project_id: int,
    user_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project(db, project_id)
    member = await _get_user(db, user_id)
    await guard.require(db, user, ResourceRef.project(project_id), Action.REMOVE_MEMBER)
    if not await memberships.is_member(db, project_id, user_id):
        raise BadRequestError(f"{member.name} is not a member of project {project.name}")

    await memberships.remove(db, project_id, user_id)
    await notification_engine.notify_project(
        db, f"{member.name} was removed from project {project.name}.", project_id,
    )
    return await _project_to_out(db, project)
