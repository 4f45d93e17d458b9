from fastapi import APIRouter, Depends

from app.deps import get_current_user
from app.models.user import User
from app.schemas.actor import MeOut

router = APIRouter(tags=["auth"])


@router.get("/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)):
    return user
