from fastapi import APIRouter, Depends
from app.core.dependencies import get_current_user_id, get_store
from app.database.store import DataStore
from app.modules.auth.schemas import CurrentUserResponse
from app.modules.profiles.service import ProfileService
from typing import Dict

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    current_user: Dict = Depends(get_current_user_id),
    store: DataStore = Depends(get_store),
):
    """Get current authenticated user and their profile (for frontend UI)."""
    profile = await ProfileService(store).get_profile(current_user["id"])
    return CurrentUserResponse(id=current_user["id"], email=current_user.get("email"), profile=profile)
