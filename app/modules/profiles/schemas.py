from pydantic import BaseModel
from typing import Optional


class ProfileResponse(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True
