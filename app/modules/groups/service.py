from app.config import settings
from app.core.errors import Forbidden, NotFound
from app.database.store import DataStore
from app.database.tables import GROUPS, GROUP_MEMBERS, JOIN_REQUESTS, MESSAGES
from app.modules.groups.schemas import GroupCreate, GroupResponse, GroupSummary
from app.modules.memberships.relationship import derive_relationship, member_count
from app.modules.memberships.schemas import JoinRequestResponse, MembershipResponse
from app.modules.profiles.service import ProfileService
from collections import defaultdict
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


def matches_search(group: GroupResponse, search: str) -> bool:
    """Case-insensitive match on project name, supervisor name or any skill."""
    term = search.strip().lower()
    if not term:
        return True
    haystack = [group.project_name, group.supervisor_name, *group.skills_required, *group.skills_needed]
    return any(term in (value or "").lower() for value in haystack)


class GroupService:
    def __init__(self, store: DataStore):
        self.store = store

    async def create_group(self, group_data: GroupCreate, owner_id: str) -> GroupResponse:
        """Create a new group owned by the caller. The owner is not stored in group_members."""
        row = await self.store.insert(GROUPS, {
            "owner_id": owner_id,
            "project_name": group_data.project_name,
            "supervisor_name": group_data.supervisor_name,
            "skills_required": group_data.skills_required,
            "skills_needed": group_data.skills_needed,
            "project_outcomes": group_data.project_outcomes,
            "max_members": group_data.max_members,
        })
        logger.info(f"Group {row['id']} created by {owner_id}")
        return GroupResponse(**row)

    async def get_group_by_id(self, group_id: str) -> GroupResponse:
        """Get group by ID"""
        row = await self.store.get_one(GROUPS, {"id": group_id})
        if not row:
            raise NotFound("Group not found")
        return GroupResponse(**row)

    async def list_groups(
        self,
        viewer_id: str,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> List[GroupSummary]:
        """List groups newest first with member counts and the viewer's relationship to each."""
        if search and search.strip():
            # Skills are arrays, so matching happens here over the whole table
            rows = await self.store.query(GROUPS, order="created_at", desc=True)
            groups = [g for g in (GroupResponse(**row) for row in rows) if matches_search(g, search)]
            page = groups[offset:offset + limit]
        else:
            rows = await self.store.query(GROUPS, order="created_at", desc=True, limit=limit, offset=offset)
            page = [GroupResponse(**row) for row in rows]
        if not page:
            return []

        group_ids = [g.id for g in page]
        memberships = defaultdict(list)
        for row in await self.store.query(GROUP_MEMBERS, {"group_id": group_ids}):
            memberships[row["group_id"]].append(MembershipResponse(**row))
        # Only the viewer's own requests are needed to derive the viewer's relationship
        requests = defaultdict(list)
        for row in await self.store.query(JOIN_REQUESTS, {"group_id": group_ids, "user_id": viewer_id}):
            requests[row["group_id"]].append(JoinRequestResponse(**row))
        profiles = await ProfileService(self.store).get_profiles(g.owner_id for g in page)

        summaries = []
        for group in page:
            owner = profiles.get(group.owner_id)
            summaries.append(GroupSummary(
                **group.model_dump(),
                member_count=member_count(group, memberships[group.id]),
                relationship=derive_relationship(group, memberships[group.id], requests[group.id], viewer_id),
                owner_name=owner.name if owner else None,
            ))
        return summaries

    async def delete_group(self, group_id: str, actor_id: str) -> None:
        """Delete group (owner only)"""
        group = await self.get_group_by_id(group_id)
        if actor_id != group.owner_id:
            raise Forbidden("Only the group owner can delete this group")

        if settings.purge_group_children:
            # Children first so no row is left pointing at a missing group
            for relation in (MESSAGES, JOIN_REQUESTS, GROUP_MEMBERS):
                await self.store.delete(relation, {"group_id": group_id})

        await self.store.delete(GROUPS, {"id": group_id})
        logger.info(f"Group {group_id} deleted by {actor_id}")
