from pydantic import BaseModel
from typing import Optional
from app.modules.profiles.schemas import ProfileResponse


class CurrentUserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    profile: Optional[ProfileResponse] = None
