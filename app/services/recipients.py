# file: services/recipients.py
"""
Recipient rules for task notifications.

Every function here is pure: it works on a snapshot of users and teams taken
at send time, so callers decide how fresh that snapshot is.
"""

from typing import Iterable, List, Optional

from app.database.models import Team, Task, User
from app.models.user import UserRole

TASK_CREATION_ROLES = {UserRole.SUPERADMIN.value, UserRole.TEAM_LEAD.value, UserRole.WRITER.value}


def task_creation_recipients(users: Iterable[User], actor_id: Optional[int]) -> List[User]:
    """Superadmins, team leads and writers, minus whoever created the task."""
    return [
        user for user in users
        if user.id != actor_id and user.role in TASK_CREATION_ROLES
    ]


def team_lead_for(user: Optional[User], teams: Iterable[Team]) -> Optional[int]:
    if user is None or user.team_id is None:
        return None
    for team in teams:
        if team.id == user.team_id:
            return team.team_lead_id
    return None


def task_update_recipients(
        users: Iterable[User],
        teams: Iterable[Team],
        task: Task,
        actor_id: Optional[int] = None,
        assignee_id: Optional[int] = None,
) -> List[User]:
    """
    Recipients for every task event other than creation.

    Order is superadmins, the task creator, the assignee, then the assignee's
    team lead. The actor is never included and nobody appears twice.
    `assignee_id` overrides the task's current assignee, which is how an
    unassignment still reaches the writer who just lost the task.
    """
    users = list(users)
    by_id = {user.id: user for user in users}
    if assignee_id is None:
        assignee_id = task.assigned_to_id

    recipients: List[User] = []
    seen = set()

    def add(user: Optional[User]):
        if user is None or user.id == actor_id or user.id in seen:
            return
        seen.add(user.id)
        recipients.append(user)

    for user in users:
        if user.role == UserRole.SUPERADMIN.value:
            add(user)

    if task.assigned_by_id:
        add(by_id.get(task.assigned_by_id))

    assignee = by_id.get(assignee_id) if assignee_id else None
    add(assignee)

    lead_id = team_lead_for(assignee, teams)
    if lead_id:
        add(by_id.get(lead_id))

    return recipients
