# file: services/notification_service.py

import logging
from typing import List, Optional, Sequence

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.database.models import Notification, SentDeadlineReminder, Task, Team, User
from app.models.notification import NotificationResponse, NotificationType, PushPayload, PushPayloadData
from app.services import push_service
from app.services.recipients import task_creation_recipients, task_update_recipients
from app.services.websocket_manager import ws_manager

logger = logging.getLogger(__name__)


def task_url(task_id: Optional[int]) -> str:
    return f"/tasks?taskId={task_id}" if task_id else "/"


def build_push_payload(notification: Notification) -> PushPayload:
    return PushPayload(
        title=notification.title,
        body=notification.message,
        data=PushPayloadData(
            taskId=notification.related_task_id,
            type=notification.type,
            url=task_url(notification.related_task_id),
            notificationId=notification.id,
        ),
    )


class NotificationService:
    """
    Turns task events into one notification row per recipient.

    Delivery is fire-and-forget: each recipient is committed on its own, and
    any failure is logged and dropped so the task action that triggered the
    event never sees it.
    """

    async def _snapshot(self, db: AsyncSession):
        users = (await db.execute(select(User))).scalars().all()
        teams = (await db.execute(select(Team))).scalars().all()
        return users, teams

    async def _store(self, db: AsyncSession, notification: Notification):
        # A failed insert rolls back this row only
        async with db.begin_nested():
            db.add(notification)
            await db.flush()
        await db.commit()
        await db.refresh(notification)

    async def _deliver(self, db: AsyncSession, user_id: int, notification: Notification):
        try:
            await push_service.push_to_user(db, user_id, build_push_payload(notification))
        except Exception as e:
            logger.error(f"Push delivery failed for notification {notification.id}: {e}")

        try:
            await ws_manager.send_to_user(user_id, {
                "type": "notification",
                "data": NotificationResponse.model_validate(notification).model_dump(mode="json"),
            })
        except Exception as e:
            logger.error(f"Realtime delivery failed for notification {notification.id}: {e}")

    async def _fan_out(
            self,
            db: AsyncSession,
            recipients: Sequence[User],
            notification_type: NotificationType,
            title: str,
            message: str,
            task_id: int,
            actor_id: Optional[int],
    ) -> List[Notification]:
        recipient_ids = [recipient.id for recipient in recipients]
        created = []
        for user_id in recipient_ids:
            notification = Notification(
                user_id=user_id,
                type=notification_type.value,
                title=title,
                message=message,
                related_task_id=task_id,
                triggered_by_id=actor_id,
                is_read=False,
            )
            try:
                await self._store(db, notification)
            except Exception as e:
                logger.error(
                    f"Failed to notify user {user_id} about {notification_type.value} on task {task_id}: {e}"
                )
                continue
            created.append(notification)
            await self._deliver(db, user_id, notification)
        logger.info(f"{notification_type.value} for task {task_id}: notified {len(created)}/{len(recipient_ids)} users")
        return created

    async def _notify_update(
            self,
            db: AsyncSession,
            task: Task,
            notification_type: NotificationType,
            title: str,
            message: str,
            actor_id: Optional[int],
            assignee_id: Optional[int] = None,
    ) -> List[Notification]:
        try:
            task_id = task.id
            users, teams = await self._snapshot(db)
            recipients = task_update_recipients(users, teams, task, actor_id=actor_id, assignee_id=assignee_id)
        except Exception as e:
            logger.error(f"Could not load recipients for {notification_type.value}: {e}")
            return []
        return await self._fan_out(db, recipients, notification_type, title, message, task_id, actor_id)

    async def notify_task_created(self, db: AsyncSession, task: Task, created_by_id: int) -> List[Notification]:
        try:
            task_id = task.id
            message = f'Task #{task_id}: "{task.title}" has been created'
            users, _ = await self._snapshot(db)
            recipients = task_creation_recipients(users, created_by_id)
        except Exception as e:
            logger.error(f"Could not load recipients for task creation: {e}")
            return []
        return await self._fan_out(
            db, recipients, NotificationType.TASK_CREATED,
            "New Task Created", message,
            task_id, created_by_id,
        )

    async def notify_task_assigned(self, db: AsyncSession, task: Task, assigned_by_id: int) -> List[Notification]:
        return await self._notify_update(
            db, task, NotificationType.TASK_ASSIGNED,
            "Task Assigned", f'Task #{task.id}: "{task.title}" has been assigned',
            assigned_by_id,
        )

    async def notify_task_unassigned(
            self, db: AsyncSession, task: Task, previous_assignee_id: int, unassigned_by_id: int
    ) -> List[Notification]:
        return await self._notify_update(
            db, task, NotificationType.TASK_UNASSIGNED,
            "Task Unassigned", f'Task #{task.id}: "{task.title}" has been unassigned',
            unassigned_by_id, assignee_id=previous_assignee_id,
        )

    async def notify_task_status_changed(
            self, db: AsyncSession, task: Task, new_status: str, changed_by_id: int
    ) -> List[Notification]:
        readable_status = str(getattr(new_status, "value", new_status)).replace("_", " ", 1)
        return await self._notify_update(
            db, task, NotificationType.TASK_STATUS_CHANGED,
            "Task Status Updated", f'Task #{task.id}: "{task.title}" status changed to {readable_status}',
            changed_by_id,
        )

    async def notify_task_due_date_changed(
            self, db: AsyncSession, task: Task, changed_by_id: int
    ) -> List[Notification]:
        task_id = task.id
        deadline = task.deadline.strftime("%Y-%m-%d %H:%M") if task.deadline else "none"
        message = f'Task #{task.id}: "{task.title}" deadline changed to {deadline}'

        # A new deadline earns its own 2-day and 1-day reminders
        try:
            async with db.begin_nested():
                await db.execute(delete(SentDeadlineReminder).where(SentDeadlineReminder.task_id == task_id))
            await db.commit()
        except Exception as e:
            logger.error(f"Could not reset deadline reminders for task {task_id}: {e}")

        return await self._notify_update(
            db, task, NotificationType.TASK_DUE_DATE_CHANGED,
            "Task Deadline Changed", message,
            changed_by_id,
        )

    async def notify_comment_added(self, db: AsyncSession, task: Task, commented_by_id: int) -> List[Notification]:
        return await self._notify_update(
            db, task, NotificationType.TASK_COMMENT_ADDED,
            "New Comment Added", f'New comment added to Task #{task.id}: "{task.title}"',
            commented_by_id,
        )

    async def notify_file_uploaded(
            self, db: AsyncSession, task: Task, file_name: str, uploaded_by_id: int
    ) -> List[Notification]:
        return await self._notify_update(
            db, task, NotificationType.TASK_FILE_UPLOADED,
            "File Uploaded", f'File "{file_name}" uploaded to Task #{task.id}: "{task.title}"',
            uploaded_by_id,
        )

    async def notify_deadline_reminder(self, db: AsyncSession, task: Task, days_left: int) -> List[Notification]:
        plural = "s" if days_left > 1 else ""
        return await self._notify_update(
            db, task, NotificationType.DEADLINE_REMINDER,
            "Deadline Reminder", f'Task #{task.id}: "{task.title}" is due in {days_left} day{plural}',
            None,
        )


notification_service = NotificationService()
