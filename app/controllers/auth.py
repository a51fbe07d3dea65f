# file: controllers/auth.py

from fastapi import APIRouter, Depends

from app.database.models import User
from app.models.user import UserResponse
from app.services.auth import get_current_user

router = APIRouter()


@router.get("/user", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)
