from app.config import settings
from app.core.errors import CapacityExceeded, Conflict, Forbidden, InvalidState, NotFound
from app.database.store import DataStore, StoreError
from app.database.tables import GROUP_MEMBERS, JOIN_REQUESTS
from app.modules.groups.schemas import GroupDetailResponse, GroupResponse
from app.modules.groups.service import GroupService
from app.modules.memberships.relationship import (
    GroupSnapshot, derive_relationship, has_capacity, member_count, member_user_ids
)
from app.modules.memberships.schemas import (
    JoinRequestResponse, JoinRequestStatus, JoinRequestWithProfile, MemberResponse,
    MembershipResponse, Relationship, ResolveAction
)
from app.modules.profiles.service import ProfileService
from typing import Awaitable, Callable, List, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MembershipService:
    def __init__(self, store: DataStore):
        self.store = store
        self.groups = GroupService(store)

    async def _memberships(self, group_id: str, user_id: Optional[str] = None) -> List[MembershipResponse]:
        filters = {"group_id": group_id}
        if user_id:
            filters["user_id"] = user_id
        return [MembershipResponse(**row) for row in await self.store.query(GROUP_MEMBERS, filters)]

    async def _requests(self, group_id: str, user_id: Optional[str] = None) -> List[JoinRequestResponse]:
        filters = {"group_id": group_id}
        if user_id:
            filters["user_id"] = user_id
        rows = await self.store.query(JOIN_REQUESTS, filters, order="created_at")
        return [JoinRequestResponse(**row) for row in rows]

    async def get_snapshot(self, group_id: str) -> GroupSnapshot:
        """Current rows for a group, for callers that keep state from change events."""
        group = await self.groups.get_group_by_id(group_id)
        return GroupSnapshot(group, await self._memberships(group_id), await self._requests(group_id))

    async def get_relationship(self, group_id: str, viewer_id: str) -> Relationship:
        group = await self.groups.get_group_by_id(group_id)
        return derive_relationship(
            group,
            await self._memberships(group_id, viewer_id),
            await self._requests(group_id, viewer_id),
            viewer_id,
        )

    async def request_to_join(self, group_id: str, viewer_id: str) -> JoinRequestResponse:
        """Create a pending join request. Capacity is not checked until acceptance."""
        relationship = await self.get_relationship(group_id, viewer_id)
        if relationship == Relationship.OWNER:
            raise InvalidState("You own this group")
        if relationship == Relationship.MEMBER:
            raise InvalidState("You are already a member of this group")
        if relationship == Relationship.PENDING_REQUESTER:
            raise Conflict()
        if relationship == Relationship.REJECTED_REQUESTER and not settings.allow_rerequest_after_rejection:
            raise InvalidState("Your request to join this group was declined")

        try:
            row = await self.store.insert(JOIN_REQUESTS, {
                "group_id": group_id,
                "user_id": viewer_id,
                "status": JoinRequestStatus.PENDING.value,
            })
        except StoreError as e:
            # Lost a race with another request from the same user
            if e.is_unique_violation:
                raise Conflict() from e
            logger.error(f"Failed to create join request for {viewer_id} in group {group_id}: {e.message}")
            raise
        logger.info(f"Join request {row['id']} created by {viewer_id} for group {group_id}")
        return JoinRequestResponse(**row)

    async def resolve_request(
        self,
        group_id: str,
        request_id: str,
        action: ResolveAction,
        actor_id: str
    ) -> JoinRequestResponse:
        """Accept or reject a pending request (owner only)."""
        group = await self.groups.get_group_by_id(group_id)
        if actor_id != group.owner_id:
            raise Forbidden("Only the group owner can resolve join requests")

        row = await self.store.get_one(JOIN_REQUESTS, {"id": request_id, "group_id": group_id})
        if not row:
            raise NotFound("Join request not found")
        request = JoinRequestResponse(**row)
        if request.status != JoinRequestStatus.PENDING:
            raise InvalidState(f"Join request is already {request.status.value}")

        if action == ResolveAction.REJECT:
            resolved = await self._reject(group, request)
        else:
            resolved = await self._accept(group, request)
        logger.info(f"Join request {request_id} {resolved.status.value} by {actor_id}")
        return resolved

    async def _reject(self, group: GroupResponse, request: JoinRequestResponse) -> JoinRequestResponse:
        # A membership next to a pending request is left over from an accept that
        # failed halfway; it was never granted, so it goes before the status flips
        if await self._memberships(group.id, request.user_id):
            logger.warning(f"Dropping unfinished membership of {request.user_id} in group {group.id} before reject")
            await self._delete_membership(group.id, request.user_id)
        return await self._set_status(request, JoinRequestStatus.REJECTED)

    async def _accept(self, group: GroupResponse, request: JoinRequestResponse) -> JoinRequestResponse:
        """Two-step accept: membership first, then status.

        There is no cross-table transaction, so each step is retried once on a
        store failure. Only a membership row created by this call is ever rolled
        back; a row left behind by an earlier partial accept is reused when the
        group still has room for it.
        """
        inserted = False
        memberships = await self._memberships(group.id)
        if request.user_id in member_user_ids(group, memberships):
            if member_count(group, memberships) > group.max_members:
                # Leftover of a capacity rollback that never went through
                await self._with_retry(
                    "capacity rollback", lambda: self._delete_membership(group.id, request.user_id)
                )
                raise CapacityExceeded(f"Group is full ({group.max_members} members)")
            logger.info(f"Membership for {request.user_id} in group {group.id} already present; completing accept")
        else:
            if not has_capacity(group, memberships):
                raise CapacityExceeded(f"Group is full ({group.max_members} members)")
            inserted = await self._insert_membership(group.id, request.user_id)

            # A concurrent accept may have taken the last seat between our check and insert
            if inserted and member_count(group, await self._memberships(group.id)) > group.max_members:
                logger.warning(f"Group {group.id} over capacity after accepting {request.id}; rolling back membership")
                await self._with_retry(
                    "capacity rollback", lambda: self._delete_membership(group.id, request.user_id)
                )
                raise CapacityExceeded(f"Group is full ({group.max_members} members)")

        try:
            return await self._with_retry(
                "status update", lambda: self._set_status(request, JoinRequestStatus.ACCEPTED)
            )
        except InvalidState:
            # Request was rejected concurrently; do not keep a membership it never granted
            if inserted:
                await self._delete_membership(group.id, request.user_id)
            raise
        except StoreError:
            if inserted:
                await self._undo_membership(group.id, request)
            raise

    async def _undo_membership(self, group_id: str, request: JoinRequestResponse) -> None:
        """Remove the membership of a failed accept unless the status update did commit."""
        try:
            current = await self.store.get_one(JOIN_REQUESTS, {"id": request.id})
            if current and current["status"] == JoinRequestStatus.PENDING.value:
                await self._delete_membership(group_id, request.user_id)
        except StoreError as e:
            # A later accept completes it, a later reject drops it
            logger.error(f"Could not undo membership for request {request.id}: {e.message}")

    async def _with_retry(self, step: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except StoreError as e:
            logger.warning(f"Accept {step} failed ({e.message}); retrying once")
        try:
            return await operation()
        except StoreError as e:
            logger.error(f"Accept {step} failed again: {e.message}")
            raise

    async def _insert_membership(self, group_id: str, user_id: str) -> bool:
        """Insert a membership, retrying once. Returns True when this call created the row.

        A unique violation on the first attempt means another caller created the
        row. On the retry it means the first attempt committed before its
        response was lost.
        """
        payload = {"group_id": group_id, "user_id": user_id}
        try:
            await self.store.insert(GROUP_MEMBERS, payload)
            return True
        except StoreError as e:
            if e.is_unique_violation:
                return False
            logger.warning(f"Accept membership insert failed ({e.message}); retrying once")
        try:
            await self.store.insert(GROUP_MEMBERS, payload)
        except StoreError as e:
            if not e.is_unique_violation:
                logger.error(f"Accept membership insert failed again: {e.message}")
                raise
        return True

    async def _delete_membership(self, group_id: str, user_id: str) -> List[dict]:
        return await self.store.delete(GROUP_MEMBERS, {"group_id": group_id, "user_id": user_id})

    async def _set_status(self, request: JoinRequestResponse, status: JoinRequestStatus) -> JoinRequestResponse:
        """Move a pending request to a terminal status; idempotent for the same target."""
        rows = await self.store.update(
            JOIN_REQUESTS,
            {"status": status.value},
            {"id": request.id, "status": JoinRequestStatus.PENDING.value},
        )
        if rows:
            return JoinRequestResponse(**rows[0])
        current = await self.store.get_one(JOIN_REQUESTS, {"id": request.id})
        if current and current["status"] == status.value:
            return JoinRequestResponse(**current)
        found = current["status"] if current else "deleted"
        raise InvalidState(f"Join request is already {found}")

    async def remove_member(self, group_id: str, target_user_id: str, actor_id: str) -> None:
        """Remove a member (owner only). Join request history is kept."""
        group = await self.groups.get_group_by_id(group_id)
        if actor_id != group.owner_id:
            raise Forbidden("Only the group owner can remove members")
        if target_user_id == group.owner_id:
            raise Forbidden("The group owner cannot be removed")
        deleted = await self._delete_membership(group_id, target_user_id)
        if not deleted:
            raise NotFound("Member not found")
        logger.info(f"Member {target_user_id} removed from group {group_id} by {actor_id}")

    async def list_members(self, group_id: str) -> List[MemberResponse]:
        """Owner first, then members, with profile names."""
        group = await self.groups.get_group_by_id(group_id)
        memberships = await self._memberships(group_id)
        return await self._member_list(group, memberships)

    async def _member_list(self, group: GroupResponse, memberships) -> List[MemberResponse]:
        user_ids = [group.owner_id, *sorted(member_user_ids(group, memberships))]
        profiles = await ProfileService(self.store).get_profiles(user_ids)
        members = []
        for user_id in user_ids:
            profile = profiles.get(user_id)
            members.append(MemberResponse(
                user_id=user_id,
                name=profile.name if profile else None,
                email=profile.email if profile else None,
                is_owner=user_id == group.owner_id,
            ))
        return members

    async def list_requests(
        self,
        group_id: str,
        viewer_id: str,
        status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequestWithProfile]:
        """Owner sees every request; anyone else sees only their own."""
        group = await self.groups.get_group_by_id(group_id)
        requests = await self._requests(group_id, None if viewer_id == group.owner_id else viewer_id)
        return await self._with_profiles(requests, status)

    async def _with_profiles(self, requests, status: Optional[JoinRequestStatus] = None) -> List[JoinRequestWithProfile]:
        if status is not None:
            requests = [r for r in requests if r.status == status]
        profiles = await ProfileService(self.store).get_profiles(r.user_id for r in requests)
        result = []
        for r in requests:
            profile = profiles.get(r.user_id)
            result.append(JoinRequestWithProfile(
                **r.model_dump(),
                name=profile.name if profile else None,
                email=profile.email if profile else None,
            ))
        return result

    async def get_group_detail(self, group_id: str, viewer_id: str) -> GroupDetailResponse:
        """Group with members, the viewer's relationship and the join requests visible to them."""
        snapshot = await self.get_snapshot(group_id)
        group = snapshot.group
        relationship = snapshot.relationship(viewer_id)
        members = await self._member_list(group, snapshot.memberships.values())
        visible = [
            r for r in sorted(snapshot.join_requests.values(), key=lambda r: (r.created_at, r.id))
            if relationship == Relationship.OWNER or r.user_id == viewer_id
        ]
        owner = next((m for m in members if m.is_owner), None)
        return GroupDetailResponse(
            **group.model_dump(),
            member_count=snapshot.member_count,
            relationship=relationship,
            owner_name=owner.name if owner else None,
            members=members,
            join_requests=await self._with_profiles(visible),
        )
