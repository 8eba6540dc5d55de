"""
Pure membership rules.

Nothing here touches the store. Callers pass in the rows they currently hold for
a group (group, memberships, join requests) and get back derived state.
"""

from typing import Dict, Iterable, Optional, Set

from app.database.store import ChangeEvent, DELETE
from app.database.tables import GROUPS, GROUP_MEMBERS, JOIN_REQUESTS
from app.modules.groups.schemas import GroupResponse
from app.modules.memberships.schemas import (
    JoinRequestResponse, JoinRequestStatus, MembershipResponse, Relationship
)

CHAT_ROLES = (Relationship.OWNER, Relationship.MEMBER)


def member_user_ids(group: GroupResponse, memberships: Iterable[MembershipResponse]) -> Set[str]:
    """Non-owner members of the group."""
    return {
        m.user_id for m in memberships
        if m.group_id == group.id and m.user_id != group.owner_id
    }


def member_count(group: GroupResponse, memberships: Iterable[MembershipResponse]) -> int:
    """Members including the owner."""
    return len(member_user_ids(group, memberships)) + 1


def has_capacity(group: GroupResponse, memberships: Iterable[MembershipResponse]) -> bool:
    return member_count(group, memberships) < group.max_members


def latest_request(
    join_requests: Iterable[JoinRequestResponse],
    user_id: str,
    group_id: Optional[str] = None,
) -> Optional[JoinRequestResponse]:
    """Most recent request by created_at, ties broken by id."""
    candidates = [
        r for r in join_requests
        if r.user_id == user_id and (group_id is None or r.group_id == group_id)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.created_at, r.id))


def derive_relationship(
    group: GroupResponse,
    memberships: Iterable[MembershipResponse],
    join_requests: Iterable[JoinRequestResponse],
    viewer_id: Optional[str],
) -> Relationship:
    if viewer_id is None:
        return Relationship.STRANGER
    if viewer_id == group.owner_id:
        return Relationship.OWNER
    if viewer_id in member_user_ids(group, memberships):
        return Relationship.MEMBER
    latest = latest_request(join_requests, viewer_id, group.id)
    if latest is None:
        return Relationship.STRANGER
    if latest.status == JoinRequestStatus.PENDING:
        return Relationship.PENDING_REQUESTER
    if latest.status == JoinRequestStatus.REJECTED:
        return Relationship.REJECTED_REQUESTER
    # accepted but no membership row: the member was removed
    return Relationship.STRANGER


def can_chat(relationship: Relationship) -> bool:
    return relationship in CHAT_ROLES


class GroupSnapshot:
    """Caller-owned view of one group's rows, kept current from change events."""

    def __init__(self, group: GroupResponse, memberships=(), join_requests=()):
        self.group = group
        self.deleted = False
        self.memberships: Dict[str, MembershipResponse] = {}
        self.join_requests: Dict[str, JoinRequestResponse] = {}
        for m in memberships:
            self.memberships[m.user_id] = m
        for r in join_requests:
            self.join_requests[r.id] = r

    @property
    def member_count(self) -> int:
        return member_count(self.group, self.memberships.values())

    def relationship(self, viewer_id: Optional[str]) -> Relationship:
        if self.deleted:
            return Relationship.STRANGER
        return derive_relationship(
            self.group, self.memberships.values(), self.join_requests.values(), viewer_id
        )

    def _belongs(self, row: Dict) -> bool:
        group_id = row.get("group_id")
        return group_id is None or group_id == self.group.id

    def apply(self, relation: str, event: ChangeEvent) -> bool:
        """Merge one change event; returns True when local state changed.

        Rows are keyed by their unique key so a replayed event is a no-op. Delete
        events may carry only the primary key.
        """
        row = event.row or event.old
        if relation == GROUPS:
            if row.get("id") != self.group.id:
                return False
            if event.op == DELETE:
                self.deleted = True
                return True
            merged = {**self.group.model_dump(), **event.row}
            self.group = GroupResponse(**merged)
            return True

        if not self._belongs(row):
            return False

        if relation == GROUP_MEMBERS:
            if event.op == DELETE:
                user_id = row.get("user_id")
                if user_id is None:
                    user_id = next(
                        (u for u, m in self.memberships.items() if m.id and m.id == row.get("id")),
                        None,
                    )
                return self.memberships.pop(user_id, None) is not None
            membership = MembershipResponse(**row)
            if self.memberships.get(membership.user_id) == membership:
                return False
            self.memberships[membership.user_id] = membership
            return True

        if relation == JOIN_REQUESTS:
            request_id = row.get("id")
            if event.op == DELETE:
                return self.join_requests.pop(request_id, None) is not None
            existing = self.join_requests.get(request_id)
            merged = {**existing.model_dump(), **row} if existing else row
            request = JoinRequestResponse(**merged)
            if existing == request:
                return False
            self.join_requests[request_id] = request
            return True

        return False
