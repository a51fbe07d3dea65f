import pytest
from datetime import datetime, timedelta

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Notification, PushSubscription, SentDeadlineReminder, Task
from app.models.notification import NotificationType
from app.services.deadline_service import check_deadlines
from app.services.notification_service import notification_service


async def rows(db: AsyncSession, *columns, **filters):
    """Reads columns straight from the database, bypassing the session's identity map."""
    stmt = select(*columns)
    for name, value in filters.items():
        stmt = stmt.where(getattr(Notification, name) == value)
    return (await db.execute(stmt)).all()


async def add_notification(db: AsyncSession, user_id: int, is_read: bool = False, title: str = "Hello") -> Notification:
    notification = Notification(
        user_id=user_id, type=NotificationType.TASK_ASSIGNED.value, title=title,
        message="Task #1 has been assigned", is_read=is_read,
    )
    db.add(notification)
    await db.commit()
    await db.refresh(notification)
    return notification


# =================================================================================
# --- Fan-out service ---
# =================================================================================

@pytest.mark.asyncio
async def test_itc_001_task_created_fan_out(db_session: AsyncSession, org: dict, task: Task):
    """(ITC-001) TASK_CREATED reaches superadmins, team leads and writers, never the actor."""
    created = await notification_service.notify_task_created(db_session, task, created_by_id=org["admin"].id)

    recipients = {user_id for (user_id,) in await rows(db_session, Notification.user_id)}
    assert recipients == {org["admin2"].id, org["lead"].id, org["writer"].id, org["writer2"].id}
    assert len(created) == 4
    assert all(n.type == "TASK_CREATED" for n in created)
    assert all(n.triggered_by_id == org["admin"].id for n in created)
    assert created[0].message == f'Task #{task.id}: "Essay on Kant" has been created'


@pytest.mark.asyncio
async def test_itc_002_status_change_fan_out(db_session: AsyncSession, org: dict, task: Task):
    """(ITC-002) Status updates go to admins, creator and team lead when the writer acts."""
    created = await notification_service.notify_task_status_changed(
        db_session, task, "UNDER_REVIEW", changed_by_id=org["writer"].id
    )

    assert [n.user_id for n in created] == [org["admin"].id, org["admin2"].id, org["sales"].id, org["lead"].id]
    assert created[0].title == "Task Status Updated"
    assert created[0].message.endswith("status changed to UNDER REVIEW")
    assert all(n.is_read is False for n in created)


@pytest.mark.asyncio
async def test_itc_003_comment_and_file_messages(db_session: AsyncSession, org: dict, task: Task):
    comments = await notification_service.notify_comment_added(db_session, task, commented_by_id=org["sales"].id)
    files = await notification_service.notify_file_uploaded(
        db_session, task, "draft.docx", uploaded_by_id=org["sales"].id
    )

    assert {n.user_id for n in comments} == {org["admin"].id, org["admin2"].id, org["writer"].id, org["lead"].id}
    assert comments[0].message == f'New comment added to Task #{task.id}: "Essay on Kant"'
    assert files[0].message == f'File "draft.docx" uploaded to Task #{task.id}: "Essay on Kant"'
    assert files[0].type == NotificationType.TASK_FILE_UPLOADED.value


@pytest.mark.asyncio
async def test_itc_004_unassignment_reaches_previous_writer(db_session: AsyncSession, org: dict, task: Task):
    previous = task.assigned_to_id
    task.assigned_to_id = None
    await db_session.commit()

    created = await notification_service.notify_task_unassigned(
        db_session, task, previous_assignee_id=previous, unassigned_by_id=org["sales"].id
    )

    assert [n.user_id for n in created] == [org["admin"].id, org["admin2"].id, org["writer"].id, org["lead"].id]
    assert created[0].type == NotificationType.TASK_UNASSIGNED.value


@pytest.mark.asyncio
async def test_itc_005_push_failure_does_not_stop_fan_out(db_session: AsyncSession, org: dict, task: Task, mocker):
    """(ITC-005) Delivery errors are logged and swallowed; every row is still stored."""
    mocker.patch(
        "app.services.push_service.push_to_user",
        side_effect=RuntimeError("push service down"),
    )
    created = await notification_service.notify_task_assigned(db_session, task, assigned_by_id=org["sales"].id)
    assert len(created) == 4
    assert len(await rows(db_session, Notification.id)) == 4


@pytest.mark.asyncio
async def test_itc_006_fan_out_pushes_to_subscriptions(db_session: AsyncSession, org: dict, task: Task, mocker):
    db_session.add(PushSubscription(user_id=org["writer"].id, endpoint="https://push.example.com/w", p256dh="k", auth="a"))
    await db_session.commit()
    mocker.patch("app.services.push_service.is_push_configured", return_value=True)
    mock_send = mocker.patch("app.services.push_service.send_web_push", return_value="sent")

    created = await notification_service.notify_task_assigned(db_session, task, assigned_by_id=org["sales"].id)

    mock_send.assert_awaited_once()
    subscription, payload = mock_send.await_args.args
    writer_notification = next(n for n in created if n.user_id == org["writer"].id)
    assert subscription.endpoint == "https://push.example.com/w"
    assert payload.data.notificationId == writer_notification.id
    assert payload.data.url == f"/tasks?taskId={task.id}"


@pytest.mark.asyncio
async def test_itc_007_expired_subscription_is_pruned(db_session: AsyncSession, org: dict, task: Task, mocker):
    db_session.add(PushSubscription(user_id=org["writer"].id, endpoint="https://push.example.com/old", p256dh="k", auth="a"))
    await db_session.commit()
    mocker.patch("app.services.push_service.is_push_configured", return_value=True)
    mocker.patch("app.services.push_service.send_web_push", return_value="expired")

    await notification_service.notify_task_assigned(db_session, task, assigned_by_id=org["sales"].id)

    remaining = (await db_session.execute(select(PushSubscription.id))).all()
    assert remaining == []


# =================================================================================
# --- Deadline scanner ---
# =================================================================================

@pytest.mark.asyncio
async def test_itc_008_deadline_reminders_fire_once_per_threshold(patched_db_session: AsyncSession, org: dict, task: Task):
    """(ITC-008) 2-day and 1-day reminders are each sent exactly once."""
    db = patched_db_session
    now = datetime(2025, 6, 1, 9, 0)
    task.deadline = now + timedelta(hours=36)
    await db.commit()

    assert await check_deadlines(now=now) == 1
    assert await check_deadlines(now=now + timedelta(hours=1)) == 0

    assert await check_deadlines(now=now + timedelta(hours=20)) == 1
    assert await check_deadlines(now=now + timedelta(hours=30)) == 0

    reminders = await rows(db, Notification.user_id, Notification.message, type="DEADLINE_REMINDER")
    messages = sorted({message for _, message in reminders})
    assert messages == [
        f'Task #{task.id}: "Essay on Kant" is due in 1 day',
        f'Task #{task.id}: "Essay on Kant" is due in 2 days',
    ]
    # admins, creator, writer and team lead, no actor to exclude
    assert len(reminders) == 2 * 5


@pytest.mark.asyncio
async def test_itc_009_deadline_scan_ignores_other_distances(patched_db_session: AsyncSession, org: dict, task: Task):
    db = patched_db_session
    now = datetime(2025, 6, 1, 9, 0)
    task.deadline = now + timedelta(days=4)
    db.add(Task(title="Overdue", assigned_by_id=org["sales"].id, status="NEW", deadline=now - timedelta(days=1)))
    db.add(Task(title="No deadline", assigned_by_id=org["sales"].id, status="NEW"))
    await db.commit()

    assert await check_deadlines(now=now) == 0
    assert await rows(db, Notification.id) == []


@pytest.mark.asyncio
async def test_itc_010_failed_reminder_is_retried_next_sweep(patched_db_session: AsyncSession, org: dict, task: Task, mocker):
    """(ITC-010) One bad task does not abort the sweep, and its threshold stays open for the next one."""
    db = patched_db_session
    now = datetime(2025, 6, 1, 9, 0)
    task.deadline = now + timedelta(hours=30)
    second = Task(title="Second", assigned_by_id=org["sales"].id, status="NEW", deadline=now + timedelta(hours=30))
    db.add(second)
    await db.commit()
    first_id, second_id = task.id, second.id

    real_notify = notification_service.notify_deadline_reminder
    calls = []

    async def flaky_notify(session, t, days_left):
        calls.append(t.id)
        if len(calls) == 1:
            raise RuntimeError("boom")
        return await real_notify(session, t, days_left)

    mocker.patch.object(notification_service, "notify_deadline_reminder", side_effect=flaky_notify)

    assert await check_deadlines(now=now) == 1
    assert calls == [first_id, second_id]
    claims = (await db.execute(select(SentDeadlineReminder.task_id, SentDeadlineReminder.days_left))).all()
    assert claims == [(second_id, 2)]

    assert await check_deadlines(now=now + timedelta(hours=1)) == 1
    assert calls == [first_id, second_id, first_id]
    reminded = await rows(db, Notification.id, type="DEADLINE_REMINDER", related_task_id=first_id)
    assert len(reminded) == 5
    assert await check_deadlines(now=now + timedelta(hours=2)) == 0


@pytest.mark.asyncio
async def test_itc_011_deadline_change_rearms_reminders(patched_db_session: AsyncSession, org: dict, task: Task):
    db = patched_db_session
    now = datetime(2025, 6, 1, 9, 0)
    task.deadline = now + timedelta(hours=30)
    await db.commit()
    assert await check_deadlines(now=now) == 1

    task.deadline = now + timedelta(hours=40)
    await db.commit()
    changed = await notification_service.notify_task_due_date_changed(db, task, changed_by_id=org["sales"].id)
    assert changed[0].message.endswith("deadline changed to 2025-06-03 01:00")
    assert (await db.execute(select(SentDeadlineReminder.id))).all() == []

    assert await check_deadlines(now=now) == 1


# =================================================================================
# --- REST endpoints ---
# =================================================================================

@pytest.mark.asyncio
async def test_itc_012_list_requires_auth(client: AsyncClient):
    response = await client.get("/api/notifications")
    assert response.status_code == 401

    response = await client.get("/api/notifications", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_itc_013_list_only_own_notifications(client: AsyncClient, db_session: AsyncSession, org: dict, auth_headers):
    first = await add_notification(db_session, org["writer"].id, title="First")
    second = await add_notification(db_session, org["writer"].id, title="Second")
    await add_notification(db_session, org["lead"].id, title="Not yours")

    response = await client.get("/api/notifications", headers=auth_headers(org["writer"]))

    assert response.status_code == 200
    data = response.json()
    assert [n["id"] for n in data] == [second.id, first.id]
    assert data[0]["type"] == "TASK_ASSIGNED"
    assert data[0]["is_read"] is False


@pytest.mark.asyncio
async def test_itc_014_unread_count(client: AsyncClient, db_session: AsyncSession, org: dict, auth_headers):
    await add_notification(db_session, org["writer"].id)
    await add_notification(db_session, org["writer"].id)
    await add_notification(db_session, org["writer"].id, is_read=True)
    await add_notification(db_session, org["lead"].id)

    response = await client.get("/api/notifications/unread-count", headers=auth_headers(org["writer"]))

    assert response.status_code == 200
    assert response.json() == {"count": 2}


@pytest.mark.asyncio
async def test_itc_015_mark_one_read(client: AsyncClient, db_session: AsyncSession, org: dict, auth_headers):
    mine = await add_notification(db_session, org["writer"].id)
    theirs = await add_notification(db_session, org["lead"].id)

    response = await client.patch(f"/api/notifications/{mine.id}/read", headers=auth_headers(org["writer"]))
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = await client.patch(f"/api/notifications/{theirs.id}/read", headers=auth_headers(org["writer"]))
    assert response.status_code == 404

    response = await client.patch("/api/notifications/9999/read", headers=auth_headers(org["writer"]))
    assert response.status_code == 404

    response = await client.patch("/api/notifications/abc/read", headers=auth_headers(org["writer"]))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_itc_016_mark_all_read_touches_only_current_user(
        client: AsyncClient, db_session: AsyncSession, org: dict, auth_headers
):
    """(ITC-016) Every row of the user is read afterwards and no row of anyone else changes."""
    for _ in range(3):
        await add_notification(db_session, org["writer"].id)
    await add_notification(db_session, org["writer"].id, is_read=True)
    for _ in range(2):
        await add_notification(db_session, org["lead"].id)

    response = await client.patch("/api/notifications/mark-all-read", headers=auth_headers(org["writer"]))

    assert response.status_code == 200
    assert response.json() == {"updated": 3}
    state = await rows(db_session, Notification.user_id, Notification.is_read)
    assert all(is_read for user_id, is_read in state if user_id == org["writer"].id)
    assert not any(is_read for user_id, is_read in state if user_id == org["lead"].id)


@pytest.mark.asyncio
async def test_itc_017_vapid_public_key(client: AsyncClient, mocker):
    mocker.patch("app.controllers.push.is_push_configured", return_value=False)
    response = await client.get("/api/vapid-public-key")
    assert response.status_code == 503

    mocker.patch("app.controllers.push.is_push_configured", return_value=True)
    mocker.patch("app.controllers.push.VAPID_PUBLIC_KEY", "BPublicKey")
    response = await client.get("/api/vapid-public-key")
    assert response.status_code == 200
    assert response.json() == {"publicKey": "BPublicKey"}


@pytest.mark.asyncio
async def test_itc_018_subscribe_and_unsubscribe(client: AsyncClient, db_session: AsyncSession, org: dict, auth_headers):
    body = {"endpoint": "https://push.example.com/sub", "keys": {"p256dh": "k1", "auth": "a1"}}

    response = await client.post("/api/notifications/subscribe", json=body, headers=auth_headers(org["writer"]))
    assert response.status_code == 201

    body["keys"] = {"p256dh": "k2", "auth": "a2"}
    response = await client.post("/api/notifications/subscribe", json=body, headers=auth_headers(org["writer"]))
    assert response.status_code == 201

    stored = (await db_session.execute(select(PushSubscription.user_id, PushSubscription.p256dh))).all()
    assert stored == [(org["writer"].id, "k2")]

    response = await client.post(
        "/api/notifications/unsubscribe", json={"endpoint": body["endpoint"]}, headers=auth_headers(org["writer"])
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "removed": 1}


@pytest.mark.asyncio
async def test_itc_019_current_user_endpoint(client: AsyncClient, org: dict, auth_headers):
    response = await client.get("/api/user", headers=auth_headers(org["lead"]))
    assert response.status_code == 200
    assert response.json()["role"] == "TEAM_LEAD"
    assert response.json()["team_id"] == org["team"].id


# =================================================================================
# --- Realtime & health ---
# =================================================================================

@pytest.mark.asyncio
async def test_itc_020_open_socket_receives_notification(db_session: AsyncSession, org: dict, task: Task):
    """(ITC-020) A connected recipient gets a realtime frame for each stored notification."""
    from unittest.mock import AsyncMock
    from app.services.websocket_manager import ws_manager

    socket = AsyncMock()
    await ws_manager.connect(org["writer"].id, socket)
    try:
        await notification_service.notify_task_assigned(db_session, task, assigned_by_id=org["sales"].id)
    finally:
        ws_manager.disconnect(org["writer"].id, socket)

    socket.accept.assert_awaited_once()
    frame = socket.send_json.await_args.args[0]
    assert frame["type"] == "notification"
    assert frame["data"]["user_id"] == org["writer"].id
    assert frame["data"]["type"] == "TASK_ASSIGNED"
    assert frame["data"]["is_read"] is False


def test_itc_021_websocket_rejects_bad_token():
    from fastapi.testclient import TestClient
    from starlette.websockets import WebSocketDisconnect
    from main import app

    with pytest.raises(WebSocketDisconnect):
        with TestClient(app).websocket_connect("/ws/notifications?token=garbage"):
            pass


@pytest.mark.asyncio
async def test_itc_022_health_check(client: AsyncClient):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "deadline_checker": False}


@pytest.mark.asyncio
async def test_itc_023_failed_insert_skips_only_that_recipient(db_session: AsyncSession, org: dict, task: Task, mocker):
    """(ITC-023) A recipient whose row cannot be stored is skipped; earlier rows and the task stay usable."""
    real_flush = db_session.flush
    flushes = []

    async def flaky_flush(*args, **kwargs):
        flushes.append(1)
        if len(flushes) == 2:
            raise RuntimeError("disk full")
        return await real_flush(*args, **kwargs)

    mocker.patch.object(db_session, "flush", side_effect=flaky_flush)

    created = await notification_service.notify_task_assigned(db_session, task, assigned_by_id=org["sales"].id)

    assert [n.user_id for n in created] == [org["admin"].id, org["writer"].id, org["lead"].id]
    assert all(n.id is not None and n.created_at is not None for n in created)
    assert task.title == "Essay on Kant"
    assert len(await rows(db_session, Notification.id)) == 3


@pytest.mark.asyncio
async def test_itc_024_failed_reminder_reset_still_notifies(db_session: AsyncSession, org: dict, task: Task, mocker):
    mocker.patch("app.services.notification_service.delete", side_effect=RuntimeError("locked"))

    changed = await notification_service.notify_task_due_date_changed(db_session, task, changed_by_id=org["sales"].id)

    assert len(changed) == 4
    assert task.assigned_to_id == org["writer"].id
