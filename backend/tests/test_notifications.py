"""Tests for the Notifications router."""
from contextlib import asynccontextmanager

import pytest
from sqlalchemy import select, func

import routers.notifications as notifications_router
from auth import AuthService
from delivery_channel import notification_stream
from models import Notification, ReadStatus
from tests.conftest import get_auth_headers


async def _seed(db, user, *texts, status=ReadStatus.NOT_READ):
    rows = [Notification(user_id=user.id, text=t, status=status) for t in texts]
    db.add_all(rows)
    await db.commit()
    return rows


@pytest.mark.asyncio
async def test_list_notifications_empty(client, alice):
    resp = await client.get("/api/v1/notifications", headers=get_auth_headers(alice))
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.asyncio
async def test_list_only_own_notifications(client, db_session, alice, bob):
    await _seed(db_session, alice, "for alice")
    await _seed(db_session, bob, "for bob")
    resp = await client.get("/api/v1/notifications", headers=get_auth_headers(alice))
    body = resp.json()
    assert [n["text"] for n in body] == ["for alice"]
    assert body[0]["user_id"] == alice.id
    assert body[0]["status"] == "NOT_READ"


@pytest.mark.asyncio
async def test_list_unread(client, db_session, alice):
    await _seed(db_session, alice, "old", status=ReadStatus.READ)
    await _seed(db_session, alice, "new")
    resp = await client.get("/api/v1/notifications/unread", headers=get_auth_headers(alice))
    assert [n["text"] for n in resp.json()] == ["new"]


@pytest.mark.asyncio
async def test_mark_notification_read(client, db_session, alice):
    (notif,) = await _seed(db_session, alice, "Read Me")
    resp = await client.post(f"/api/v1/notifications/{notif.id}/read", headers=get_auth_headers(alice))
    assert resp.status_code == 200
    assert resp.json()["status"] == "READ"


@pytest.mark.asyncio
async def test_mark_read_twice(client, db_session, alice):
    (notif,) = await _seed(db_session, alice, "Read Me")
    headers = get_auth_headers(alice)
    await client.post(f"/api/v1/notifications/{notif.id}/read", headers=headers)
    resp = await client.post(f"/api/v1/notifications/{notif.id}/read", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "already read"


@pytest.mark.asyncio
async def test_mark_someone_elses_notification(client, db_session, alice, bob):
    (notif,) = await _seed(db_session, bob, "private")
    resp = await client.post(f"/api/v1/notifications/{notif.id}/read", headers=get_auth_headers(alice))
    assert resp.status_code == 403
    assert resp.json()["message"] == "forbidden"
    status = (await db_session.execute(select(Notification.status).where(Notification.id == notif.id))).scalar_one()
    assert status == ReadStatus.NOT_READ


@pytest.mark.asyncio
async def test_mark_missing_notification(client, alice):
    resp = await client.post("/api/v1/notifications/9999/read", headers=get_auth_headers(alice))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_mark_all_read_skips_already_read(client, db_session, alice, bob):
    await _seed(db_session, alice, "seen", status=ReadStatus.READ)
    await _seed(db_session, alice, "one", "two")
    await _seed(db_session, bob, "bob's")

    resp = await client.post("/api/v1/notifications/read-all", headers=get_auth_headers(alice))
    assert resp.status_code == 200
    body = resp.json()
    assert len(body) == 3
    assert {n["status"] for n in body} == {"READ"}

    bob_unread = (await db_session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == bob.id, Notification.status == ReadStatus.NOT_READ,
        )
    )).scalar()
    assert bob_unread == 1


@pytest.mark.asyncio
async def test_delete_notification_admin_only(client, db_session, admin_user, alice):
    (notif,) = await _seed(db_session, alice, "remove me")
    denied = await client.delete(f"/api/v1/notifications/{notif.id}", headers=get_auth_headers(alice))
    assert denied.status_code == 403

    resp = await client.delete(f"/api/v1/notifications/{notif.id}", headers=get_auth_headers(admin_user))
    assert resp.status_code == 204
    assert (await db_session.execute(select(func.count(Notification.id)))).scalar() == 0


@pytest.mark.asyncio
async def test_delete_missing_notification(client, admin_user):
    resp = await client.delete("/api/v1/notifications/9999", headers=get_auth_headers(admin_user))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_stream_rejects_bad_token(client):
    resp = await client.get("/api/v1/notifications/stream?token=garbage")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_stream_requires_token(client):
    resp = await client.get("/api/v1/notifications/stream")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_delete_unknown_notification_as_user_is_forbidden(client, alice):
    resp = await client.delete("/api/v1/notifications/9999", headers=get_auth_headers(alice))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_stream_closes_session_before_first_event(monkeypatch, alice):
    sessions = []
    open_context = notifications_router.get_db_context

    @asynccontextmanager
    async def recording_context():
        async with open_context() as db:
            sessions.append(db)
            yield db

    monkeypatch.setattr(notifications_router, "get_db_context", recording_context)
    token = AuthService.create_access_token(AuthService.token_claims(alice))
    response = await notifications_router.notification_stream_endpoint(token=token)

    assert len(sessions) == 1
    assert not sessions[0].in_transaction()
    assert notification_stream.subscriber_count() == 1

    await notification_stream.send_to_users([alice.id], "Alice:\nhello")
    frame = await response.body_iterator.__anext__()
    assert frame == "event: notification\ndata: Alice:\ndata: hello\n\n"
    assert not sessions[0].in_transaction()

    await response.body_iterator.aclose()
    assert notification_stream.subscriber_count() == 0
