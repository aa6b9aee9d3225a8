# routers/users.py — User management: profile, password, roles, deletion
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from access_guard import Action, ResourceRef, guard
from auth import AuthService, CurrentUser, get_current_user, check_password_policy, role_value
from database import get_db_session
from exceptions import BadRequestError, ConflictError, NotFoundError
from membership import memberships
from models import User, UserRole, Task, Message, Notification
from notification_engine import OverflowTracker, notification_engine

router = APIRouter(prefix="/api/v1/users", tags=["Users"])
logger = logging.getLogger("collab-api.users")


# --- Schemas ---

class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: str


class UserUpdate(BaseModel):
    current_password: str
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    email: Optional[EmailStr] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str
    confirm_password: str


class RoleUpdate(BaseModel):
    role: str = Field(..., description="One of: user, admin")


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(id=u.id, name=u.name, email=u.email, role=role_value(u.role))


async def _get_user(db: AsyncSession, user_id: int) -> User:
    target = await db.get(User, user_id)
    if not target:
        raise NotFoundError("User not found")
    return target


async def _delete_user(db: AsyncSession, target: User) -> None:
    """Remove a user and everything that only exists through them"""
    await db.execute(delete(Notification).where(Notification.user_id == target.id))
    await db.execute(delete(Message).where(Message.author_id == target.id))
    await db.execute(update(Task).where(Task.owner_id == target.id).values(owner_id=None))
    await memberships.clear_user(db, target.id)
    await db.delete(target)
    await db.commit()
    logger.info(f"User {target.id} deleted")


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    role: Optional[str] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """List all users, optionally filtered by role (admin only)"""
    await guard.require(db, user, ResourceRef.user(None), Action.LIST)

    stmt = select(User).order_by(User.id)
    if role:
        try:
            stmt = stmt.where(User.role == UserRole(role.lower()))
        except ValueError:
            raise BadRequestError(f"Invalid role: {role}")

    result = await db.execute(stmt)
    return [_user_to_out(u) for u in result.scalars().all()]


@router.patch("/me", response_model=UserOut)
async def update_me(
    data: UserUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Update own name or email; requires the current password"""
    target = await _get_user(db, user.id)
    if not AuthService.verify_password(data.current_password, target.password_hash):
        raise BadRequestError("Incorrect password")

    if data.email is not None and data.email != target.email:
        clash = await db.execute(select(User.id).where(User.email == data.email))
        if clash.scalar_one_or_none() is not None:
            raise ConflictError("A user with this email is already registered")
        target.email = data.email
    if data.name is not None:
        target.name = data.name

    await db.commit()
    return _user_to_out(target)


@router.put("/me/password", response_model=UserOut)
async def change_password(
    data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change own password"""
    target = await _get_user(db, user.id)
    if not AuthService.verify_password(data.current_password, target.password_hash):
        raise BadRequestError("Incorrect password")
    if data.new_password != data.confirm_password:
        raise BadRequestError("Password confirmation does not match")
    if AuthService.verify_password(data.new_password, target.password_hash):
        raise BadRequestError("New password must differ from the current one")
    check_password_policy(data.new_password)

    target.password_hash = AuthService.hash_password(data.new_password)
    await db.commit()
    return _user_to_out(target)


@router.delete("/me", status_code=204)
async def delete_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete own account"""
    await guard.require(db, user, ResourceRef.user(user.id), Action.DELETE)
    await _delete_user(db, await _get_user(db, user.id))


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user (admin only)"""
    await guard.require(db, current_user, ResourceRef.user(user_id), Action.READ)
    return _user_to_out(await _get_user(db, user_id))


@router.patch("/{user_id}/role", response_model=UserOut)
async def update_user_role(
    user_id: int,
    role_update: RoleUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change a user's role and tell every project they belong to (admin only)"""
    await guard.require(db, current_user, ResourceRef.user(user_id), Action.CHANGE_ROLE)
    try:
        new_role = UserRole(role_update.role.lower())
    except ValueError:
        raise BadRequestError(f"Invalid role: {role_update.role}")

    target = await _get_user(db, user_id)
    if role_value(target.role) == new_role.value:
        raise BadRequestError("Role already assigned to this user")

    target.role = new_role
    await db.flush()

    project_ids = await memberships.project_ids_for(db, target.id)
    tracker = OverflowTracker()
    for project_id in project_ids:
        await tracker.run(notification_engine.notify_project(
            db, f"{target.name} is now {new_role.value.upper()}", project_id,
        ))
    if not project_ids:
        await db.commit()

    logger.info(f"User {target.id} role changed to {new_role.value} by user={current_user.id}")
    tracker.raise_if_any()
    return _user_to_out(target)


@router.delete("/{user_id}", status_code=204)
async def delete_user(
    user_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a user (admin only)"""
    await guard.require(db, current_user, ResourceRef.user(user_id), Action.DELETE)
    await _delete_user(db, await _get_user(db, user_id))
