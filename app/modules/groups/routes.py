from fastapi import APIRouter, Depends, Query
from app.core.dependencies import get_current_user_id, get_store
from app.database.store import DataStore
from app.modules.groups.schemas import GroupCreate, GroupResponse, GroupSummary, GroupDetailResponse
from app.modules.groups.service import GroupService
from app.modules.memberships.service import MembershipService
from typing import List, Optional, Dict

router = APIRouter(prefix="/groups", tags=["groups"])


def get_group_service(store: DataStore = Depends(get_store)) -> GroupService:
    return GroupService(store)


def get_membership_service(store: DataStore = Depends(get_store)) -> MembershipService:
    return MembershipService(store)


@router.post("", response_model=GroupResponse, status_code=201)
async def create_group(
    group_data: GroupCreate,
    user_data: Dict = Depends(get_current_user_id),
    service: GroupService = Depends(get_group_service)
):
    """Create a new group owned by the current user"""
    return await service.create_group(group_data, user_data["id"])


@router.get("", response_model=List[GroupSummary])
async def list_groups(
    search: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_data: Dict = Depends(get_current_user_id),
    service: GroupService = Depends(get_group_service)
):
    """List groups, newest first. search matches project name, supervisor or skills."""
    return await service.list_groups(user_data["id"], search=search, limit=limit, offset=offset)


@router.get("/{group_id}", response_model=GroupDetailResponse)
async def get_group(
    group_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """Get group with members and the join requests visible to the current user"""
    return await service.get_group_detail(group_id, user_data["id"])


@router.delete("/{group_id}", status_code=204)
async def delete_group(
    group_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: GroupService = Depends(get_group_service)
):
    """Delete group (owner only)"""
    await service.delete_group(group_id, user_data["id"])
    return None
