from enum import Enum
from pydantic import BaseModel, ConfigDict
from typing import Optional


class UserRole(str, Enum):
    SUPERADMIN = "SUPERADMIN"
    SALES = "SALES"
    TEAM_LEAD = "TEAM_LEAD"
    WRITER = "WRITER"
    PROOFREADER = "PROOFREADER"


class TaskStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    SUBMITTED = "SUBMITTED"


class UserResponse(BaseModel):
    id: int
    username: str
    full_name: str
    email: str
    role: UserRole
    team_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)
