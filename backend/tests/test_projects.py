# tests/test_projects.py — Projects, membership and lifecycle notices
import pytest
from httpx import AsyncClient
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from delivery_channel import Subscriber, notification_stream
from models import Project, ProjectMember, Task, TaskStatus, Message, Notification, ReadStatus
from tests.conftest import get_auth_headers, make_project


async def _notices(db):
    stmt = select(Notification.user_id, Notification.text).order_by(Notification.id)
    return (await db.execute(stmt)).all()


@pytest.mark.asyncio
class TestProjectCrud:
    async def test_create_project(self, client: AsyncClient, db_session, alice):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(alice), json={"name": "Alpha"})
        assert res.status_code == 201
        data = res.json()
        assert data["name"] == "Alpha"
        assert data["status"] == "ACTIVE"
        assert data["description"] == "No description assigned to this project."
        assert data["member_ids"] == [alice.id]

        rows = await _notices(db_session)
        assert [(r.user_id, r.text) for r in rows] == [(alice.id, "Project Alpha created successfully!")]

    async def test_create_duplicate_name(self, client: AsyncClient, alice, alpha):
        res = await client.post("/api/v1/projects", headers=get_auth_headers(alice), json={"name": "Alpha"})
        assert res.status_code == 409

    async def test_member_reads_project(self, client: AsyncClient, alice, alpha):
        res = await client.get(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert res.json()["name"] == "Alpha"

    async def test_non_member_denied(self, client: AsyncClient, carol, alpha):
        res = await client.get(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(carol))
        assert res.status_code == 403
        assert res.json()["message"] == "access denied"

    async def test_admin_reads_any_project(self, client: AsyncClient, admin_user, alpha):
        res = await client.get(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200

    async def test_missing_project(self, client: AsyncClient, admin_user):
        res = await client.get("/api/v1/projects/9999", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
        assert res.json()["error"] == "NOT_FOUND"

    async def test_update_project_notifies_members(self, client: AsyncClient, db_session, admin_user, alice, bob, alpha):
        res = await client.patch(
            f"/api/v1/projects/{alpha.id}",
            headers=get_auth_headers(admin_user),
            json={"description": "Rewritten"},
        )
        assert res.status_code == 200
        assert res.json()["description"] == "Rewritten"
        rows = await _notices(db_session)
        assert sorted(r.user_id for r in rows) == sorted([alice.id, bob.id])
        assert {r.text for r in rows} == {"Admin updated project Alpha."}

    async def test_member_cannot_update(self, client: AsyncClient, alice, alpha):
        res = await client.patch(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(alice), json={"name": "Z"})
        assert res.status_code == 403


@pytest.mark.asyncio
class TestProjectStatus:
    async def test_change_status(self, client: AsyncClient, db_session, admin_user, alice, alpha):
        sub = Subscriber(principal_id=alice.id)
        notification_stream.register(sub)

        res = await client.patch(
            f"/api/v1/projects/{alpha.id}/status",
            headers=get_auth_headers(admin_user),
            json={"status": "COMPLETED"},
        )
        assert res.status_code == 200
        assert res.json()["status"] == "COMPLETED"
        # The delivered text carries the new status in its header line
        assert sub.queue.get_nowait() == "Alpha | COMPLETED\nAdmin changed the status of project Alpha."

    async def test_same_status_rejected(self, client: AsyncClient, admin_user, alpha):
        res = await client.patch(
            f"/api/v1/projects/{alpha.id}/status",
            headers=get_auth_headers(admin_user),
            json={"status": "ACTIVE"},
        )
        assert res.status_code == 400

    async def test_unknown_status(self, client: AsyncClient, admin_user, alpha):
        res = await client.patch(
            f"/api/v1/projects/{alpha.id}/status",
            headers=get_auth_headers(admin_user),
            json={"status": "PAUSED"},
        )
        assert res.status_code == 422


@pytest.mark.asyncio
class TestProjectListing:
    async def test_list_own_projects(self, client: AsyncClient, db_session, alice, bob, alpha):
        await make_project(db_session, "Beta", bob)
        res = await client.get("/api/v1/projects", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert [p["name"] for p in res.json()] == ["Alpha"]

    async def test_list_other_users_projects_forbidden(self, client: AsyncClient, alice, bob, alpha):
        res = await client.get(f"/api/v1/projects?user_id={bob.id}", headers=get_auth_headers(alice))
        assert res.status_code == 403

    async def test_list_own_id_explicitly(self, client: AsyncClient, alice, alpha):
        res = await client.get(f"/api/v1/projects?user_id={alice.id}", headers=get_auth_headers(alice))
        assert res.status_code == 200
        assert len(res.json()) == 1

    async def test_admin_lists_any_user(self, client: AsyncClient, db_session, admin_user, bob, alpha):
        await make_project(db_session, "Beta", bob)
        res = await client.get(f"/api/v1/projects?user_id={bob.id}", headers=get_auth_headers(admin_user))
        assert [p["name"] for p in res.json()] == ["Alpha", "Beta"]

    async def test_admin_without_user_id_lists_every_project(
        self, client: AsyncClient, db_session, admin_user, carol, alpha,
    ):
        await make_project(db_session, "Beta", carol)
        await make_project(db_session, "Gamma")
        res = await client.get("/api/v1/projects", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert [p["name"] for p in res.json()] == ["Alpha", "Beta", "Gamma"]

    async def test_list_me(self, client: AsyncClient, carol, alpha):
        res = await client.get("/api/v1/projects/me", headers=get_auth_headers(carol))
        assert res.status_code == 200
        assert res.json() == []


@pytest.mark.asyncio
class TestMembership:
    async def test_add_member(self, client: AsyncClient, db_session, admin_user, alice, bob, carol, alpha):
        res = await client.put(f"/api/v1/projects/{alpha.id}/members/{carol.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["member_ids"] == sorted([alice.id, bob.id, carol.id])

        rows = await _notices(db_session)
        # The new member is already part of the audience
        assert sorted(r.user_id for r in rows) == sorted([alice.id, bob.id, carol.id])
        assert {r.text for r in rows} == {"Carol was added to project Alpha."}

    async def test_add_existing_member(self, client: AsyncClient, admin_user, bob, alpha):
        res = await client.put(f"/api/v1/projects/{alpha.id}/members/{bob.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 400

    async def test_add_unknown_user(self, client: AsyncClient, admin_user, alpha):
        res = await client.put(f"/api/v1/projects/{alpha.id}/members/9999", headers=get_auth_headers(admin_user))
        assert res.status_code == 404

    async def test_member_cannot_add(self, client: AsyncClient, alice, carol, alpha):
        res = await client.put(f"/api/v1/projects/{alpha.id}/members/{carol.id}", headers=get_auth_headers(alice))
        assert res.status_code == 403

    async def test_remove_member(self, client: AsyncClient, db_session, admin_user, alice, bob, alpha):
        res = await client.delete(f"/api/v1/projects/{alpha.id}/members/{bob.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 200
        assert res.json()["member_ids"] == [alice.id]

        rows = await _notices(db_session)
        assert [(r.user_id, r.text) for r in rows] == [(alice.id, "Bob was removed from project Alpha.")]

    async def test_remove_non_member(self, client: AsyncClient, admin_user, carol, alpha):
        res = await client.delete(f"/api/v1/projects/{alpha.id}/members/{carol.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 400


@pytest.mark.asyncio
class TestProjectDeletion:
    async def test_delete_notifies_members_then_removes(self, client: AsyncClient, db_session, admin_user, alice, bob, alpha):
        db_session.add_all([
            Task(title="T1", status=TaskStatus.TO_DO, project_id=alpha.id, owner_id=alice.id),
            Message(text="hi", status=ReadStatus.NOT_READ, project_id=alpha.id, author_id=alice.id),
        ])
        await db_session.commit()
        sub = Subscriber(principal_id=bob.id)
        notification_stream.register(sub)

        res = await client.delete(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 204

        rows = await _notices(db_session)
        assert sorted(r.user_id for r in rows) == sorted([alice.id, bob.id])
        assert {r.text for r in rows} == {"Project Alpha was deleted."}
        assert sub.queue.get_nowait() == "Bob:\nProject Alpha was deleted."

        for model in (Project, Task, Message):
            assert (await db_session.execute(select(func.count()).select_from(model))).scalar() == 0
        assert (await db_session.execute(select(func.count()).select_from(ProjectMember))).scalar() == 0

    async def test_members_hear_before_rows_are_removed(
        self, client: AsyncClient, db_engine, monkeypatch, admin_user, alice, bob, alpha,
    ):
        observer = async_sessionmaker(db_engine, expire_on_commit=False)
        seen = []
        send = notification_stream.send_to_users

        async def observing_send(user_ids, text):
            async with observer() as db:
                project = await db.get(Project, alpha.id)
                members = (await db.execute(
                    select(func.count()).select_from(ProjectMember).where(ProjectMember.project_id == alpha.id)
                )).scalar()
                seen.append((project is not None, members))
            return await send(user_ids, text)

        monkeypatch.setattr(notification_stream, "send_to_users", observing_send)
        res = await client.delete(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(admin_user))
        assert res.status_code == 204
        assert seen == [(True, 2), (True, 2)]

    async def test_member_cannot_delete(self, client: AsyncClient, alice, alpha):
        res = await client.delete(f"/api/v1/projects/{alpha.id}", headers=get_auth_headers(alice))
        assert res.status_code == 403

    async def test_delete_missing(self, client: AsyncClient, admin_user):
        res = await client.delete("/api/v1/projects/9999", headers=get_auth_headers(admin_user))
        assert res.status_code == 404
