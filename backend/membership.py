# membership.py — Project ↔ User membership index
#
# Memberships live in the project_members table; nothing else in the system
# embeds member lists. All reads run inside the caller's session so that a
# membership change flushed earlier in the same transaction is visible.

from typing import List

from sqlalchemy import select, delete, exists
from sqlalchemy.ext.asyncio import AsyncSession

from models import ProjectMember


class MembershipStore:
    """Answers membership queries and records membership changes"""

    async def is_member(self, db: AsyncSession, project_id: int, user_id: int) -> bool:
        stmt = select(
            exists().where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )
        return bool((await db.execute(stmt)).scalar())

    async def member_ids(self, db: AsyncSession, project_id: int) -> List[int]:
        stmt = (
            select(ProjectMember.user_id)
            .where(ProjectMember.project_id == project_id)
            .order_by(ProjectMember.user_id)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def project_ids_for(self, db: AsyncSession, user_id: int) -> List[int]:
        stmt = (
            select(ProjectMember.project_id)
            .where(ProjectMember.user_id == user_id)
            .order_by(ProjectMember.project_id)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def add(self, db: AsyncSession, project_id: int, user_id: int) -> None:
        db.add(ProjectMember(project_id=project_id, user_id=user_id))
        await db.flush()

    async def remove(self, db: AsyncSession, project_id: int, user_id: int) -> None:
        await db.execute(
            delete(ProjectMember).where(
                ProjectMember.project_id == project_id,
                ProjectMember.user_id == user_id,
            )
        )
        await db.flush()

    async def clear_project(self, db: AsyncSession, project_id: int) -> None:
        await db.execute(delete(ProjectMember).where(ProjectMember.project_id == project_id))

    async def clear_user(self, db: AsyncSession, user_id: int) -> None:
        await db.execute(delete(ProjectMember).where(ProjectMember.user_id == user_id))


memberships = MembershipStore()
