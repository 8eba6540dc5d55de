from enum import Enum
from pydantic import BaseModel
from typing import Optional
from datetime import datetime


class JoinRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ResolveAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class MembershipResponse(BaseModel):
    id: Optional[str] = None
    group_id: str
    user_id: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MemberResponse(BaseModel):
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    is_owner: bool = False


class JoinRequestResponse(BaseModel):
    id: str
    group_id: str
    user_id: str
    status: JoinRequestStatus
    created_at: datetime

    class Config:
        from_attributes = True


class JoinRequestWithProfile(JoinRequestResponse):
    name: Optional[str] = None
    email: Optional[str] = None


class JoinRequestOutcome(BaseModel):
    request: Optional[JoinRequestResponse] = None
    already_requested: bool = False


class Relationship(str, Enum):
    """A viewer's relationship to a group, in priority order."""
    OWNER = "owner"
    MEMBER = "member"
    PENDING_REQUESTER = "pending_requester"
    REJECTED_REQUESTER = "rejected_requester"
    STRANGER = "stranger"
