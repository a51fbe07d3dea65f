# file: services/deadline_service.py

import asyncio
import logging
import math
from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import DEADLINE_CHECK_INTERVAL_SECONDS
from app.database.connection import get_db_session
from app.database.models import SentDeadlineReminder, Task
from app.models.user import TaskStatus
from app.services.notification_service import notification_service

logger = logging.getLogger(__name__)

REMINDER_THRESHOLDS = (2, 1)
SECONDS_PER_DAY = 24 * 60 * 60
FINISHED_STATUSES = {TaskStatus.COMPLETED.value, TaskStatus.SUBMITTED.value}


def days_until(deadline: datetime, now: datetime) -> int:
    """Whole days left before the deadline, rounded up (12 hours left is 1 day)."""
    return math.ceil((deadline - now).total_seconds() / SECONDS_PER_DAY)


async def reminder_already_sent(db: AsyncSession, task_id: int, days_left: int) -> bool:
    stmt = select(SentDeadlineReminder.id).where(
        SentDeadlineReminder.task_id == task_id,
        SentDeadlineReminder.days_left == days_left,
    )
    return (await db.execute(stmt)).scalars().first() is not None


async def check_task_deadline(db: AsyncSession, task: Task, now: datetime) -> Optional[int]:
    """
    Sends the reminder for one task if it sits exactly on a threshold.
    Returns the threshold that fired, or None.
    """
    if task.deadline is None or task.status in FINISHED_STATUSES:
        return None

    days_left = days_until(task.deadline, now)
    if days_left not in REMINDER_THRESHOLDS:
        return None

    if await reminder_already_sent(db, task.id, days_left):
        return None

    task_id = task.id
    # Claim the threshold before notifying; the unique constraint stops a concurrent sweep
    try:
        async with db.begin_nested():
            db.add(SentDeadlineReminder(task_id=task_id, days_left=days_left))
        await db.commit()
    except IntegrityError:
        return None

    try:
        created = await notification_service.notify_deadline_reminder(db, task, days_left)
    except Exception:
        await release_reminder(db, task_id, days_left)
        raise
    if not created:
        # Nobody got it, so the next sweep tries again
        await release_reminder(db, task_id, days_left)
        return None
    return days_left


async def release_reminder(db: AsyncSession, task_id: int, days_left: int):
    async with db.begin_nested():
        await db.execute(delete(SentDeadlineReminder).where(
            SentDeadlineReminder.task_id == task_id,
            SentDeadlineReminder.days_left == days_left,
        ))
    await db.commit()


async def check_deadlines(now: Optional[datetime] = None) -> int:
    """Runs one sweep over every task with a deadline. Returns the number of reminders sent."""
    now = now or datetime.utcnow()
    sent = 0
    async with get_db_session() as db:
        result = await db.execute(select(Task.id).where(Task.deadline != None))
        task_ids = result.scalars().all()
        logger.info(f"Deadline check at {now.isoformat()}: {len(task_ids)} tasks with deadlines")

        for task_id in task_ids:
            try:
                task = await db.get(Task, task_id)
                if task is None:
                    continue
                if await check_task_deadline(db, task, now) is not None:
                    sent += 1
            except Exception as e:
                # One bad task must not stop the sweep
                logger.error(f"Error checking deadline for task {task_id}: {e}", exc_info=True)
                await db.rollback()

    if sent:
        logger.info(f"Sent {sent} deadline reminder(s)")
    return sent


async def deadline_checker_loop(interval_seconds: int = DEADLINE_CHECK_INTERVAL_SECONDS):
    """Checks immediately, then once per interval until cancelled."""
    while True:
        try:
            await check_deadlines()
        except Exception as e:
            logger.error(f"An error occurred in the deadline checker loop: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)


def start_deadline_checker(interval_seconds: int = DEADLINE_CHECK_INTERVAL_SECONDS) -> asyncio.Task:
    logger.info(f"Starting deadline checker (every {interval_seconds}s)")
    return asyncio.create_task(deadline_checker_loop(interval_seconds))


async def stop_deadline_checker(task: Optional[asyncio.Task]):
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("Deadline checker stopped")
