from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from app.modules.memberships.schemas import Relationship, MemberResponse, JoinRequestWithProfile

MIN_MEMBERS = 2
MAX_MEMBERS = 20


def _clean_skills(skills) -> List[str]:
    """Trim, drop blanks and de-duplicate while keeping the given order."""
    if isinstance(skills, str):
        skills = skills.split(",")
    cleaned = []
    for skill in skills or []:
        skill = (skill or "").strip()
        if skill and skill not in cleaned:
            cleaned.append(skill)
    return cleaned


class GroupCreate(BaseModel):
    project_name: str = Field(min_length=3, max_length=100)
    supervisor_name: str = Field(min_length=2, max_length=100)
    skills_required: List[str] = []
    skills_needed: List[str] = []
    project_outcomes: str = Field(default="", max_length=1000)
    max_members: int = Field(default=5, ge=MIN_MEMBERS, le=MAX_MEMBERS)

    @field_validator("project_name", "supervisor_name", "project_outcomes", mode="before")
    @classmethod
    def strip_text(cls, value):
        if value is None:
            return ""
        return value.strip() if isinstance(value, str) else value

    @field_validator("skills_required", "skills_needed", mode="before")
    @classmethod
    def clean_skills(cls, value):
        return _clean_skills(value)


class GroupResponse(BaseModel):
    id: str
    owner_id: str
    project_name: str
    supervisor_name: str
    skills_required: List[str] = []
    skills_needed: List[str] = []
    project_outcomes: Optional[str] = None
    max_members: int
    created_at: datetime

    @field_validator("skills_required", "skills_needed", mode="before")
    @classmethod
    def null_skills(cls, value):
        return _clean_skills(value)

    class Config:
        from_attributes = True


class GroupSummary(GroupResponse):
    member_count: int
    relationship: Relationship
    owner_name: Optional[str] = None


class GroupDetailResponse(GroupSummary):
    members: List[MemberResponse]
    join_requests: List[JoinRequestWithProfile]
