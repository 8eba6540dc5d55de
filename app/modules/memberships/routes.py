from fastapi import APIRouter, Depends, Response
from app.core.dependencies import get_current_user_id, get_store
from app.core.errors import Conflict
from app.database.store import DataStore
from app.modules.memberships.schemas import (
    JoinRequestOutcome, JoinRequestResponse, JoinRequestStatus, JoinRequestWithProfile,
    MemberResponse, ResolveAction
)
from app.modules.memberships.service import MembershipService
from typing import List, Optional, Dict

router = APIRouter(prefix="/groups/{group_id}", tags=["memberships"])


def get_membership_service(store: DataStore = Depends(get_store)) -> MembershipService:
    return MembershipService(store)


@router.post("/join-requests", response_model=JoinRequestOutcome, status_code=201)
async def request_to_join(
    group_id: str,
    response: Response,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """Ask to join a group. A repeated request is reported as already requested, not as an error."""
    try:
        request = await service.request_to_join(group_id, user_data["id"])
    except Conflict:
        response.status_code = 200
        return JoinRequestOutcome(already_requested=True)
    return JoinRequestOutcome(request=request)


@router.get("/join-requests", response_model=List[JoinRequestWithProfile])
async def list_join_requests(
    group_id: str,
    status: Optional[JoinRequestStatus] = None,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """List join requests (all for the owner, own requests for anyone else)"""
    return await service.list_requests(group_id, user_data["id"], status)


@router.post("/join-requests/{request_id}/accept", response_model=JoinRequestResponse)
async def accept_join_request(
    group_id: str,
    request_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """Accept a pending request (owner only)"""
    return await service.resolve_request(group_id, request_id, ResolveAction.ACCEPT, user_data["id"])


@router.post("/join-requests/{request_id}/reject", response_model=JoinRequestResponse)
async def reject_join_request(
    group_id: str,
    request_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """Reject a pending request (owner only)"""
    return await service.resolve_request(group_id, request_id, ResolveAction.REJECT, user_data["id"])


@router.get("/members", response_model=List[MemberResponse])
async def list_members(
    group_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """List the owner and members of a group"""
    return await service.list_members(group_id)


@router.delete("/members/{user_id}", status_code=204)
async def remove_member(
    group_id: str,
    user_id: str,
    user_data: Dict = Depends(get_current_user_id),
    service: MembershipService = Depends(get_membership_service)
):
    """Remove a member from the group (owner only)"""
    await service.remove_member(group_id, user_id, user_data["id"])
    return None
