from app.config import settings
from app.core.errors import InvalidMessage, Unauthorized
from app.database.store import DataStore
from app.database.tables import MESSAGES
from app.modules.chat.schemas import ChatEntry, EntryKind, MessageResponse
from app.modules.memberships.relationship import can_chat
from app.modules.memberships.service import MembershipService
from datetime import timezone, tzinfo
from typing import Iterable, List, Optional, Union
from zoneinfo import ZoneInfo
import logging

logger = logging.getLogger(__name__)


def sort_key(message: MessageResponse):
    return (message.created_at, message.id)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """ZoneInfo for name; raises ZoneInfoNotFoundError for unknown zones."""
    name = name or settings.chat_default_timezone
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def with_day_markers(
    messages: Iterable[MessageResponse],
    tz: Union[str, tzinfo, None] = None,
    previous: Optional[MessageResponse] = None,
) -> List[ChatEntry]:
    """Interleave a day marker wherever the calendar day in tz changes.

    previous is the message already shown before this batch, if any; no marker
    is emitted for a first message on the same day as it.
    """
    zone = tz if isinstance(tz, tzinfo) else resolve_timezone(tz)
    last_day = _local_day(previous, zone) if previous else None
    entries = []
    for message in messages:
        day = _local_day(message, zone)
        if day != last_day:
            entries.append(ChatEntry(kind=EntryKind.DAY, day=day))
            last_day = day
        entries.append(ChatEntry(kind=EntryKind.MESSAGE, message=message))
    return entries


def _local_day(message: MessageResponse, zone: tzinfo):
    created = message.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created.astimezone(zone).date()


class ChatService:
    def __init__(self, store: DataStore):
        self.store = store
        self.memberships = MembershipService(store)

    async def ensure_member(self, group_id: str, user_id: str) -> None:
        relationship = await self.memberships.get_relationship(group_id, user_id)
        if not can_chat(relationship):
            raise Unauthorized()

    async def load(self, group_id: str, viewer_id: str) -> List[MessageResponse]:
        """Messages of a group, oldest first."""
        await self.ensure_member(group_id, viewer_id)
        rows = await self.store.query(MESSAGES, {"group_id": group_id}, order="created_at")
        return sorted((MessageResponse(**row) for row in rows), key=sort_key)

    async def send(self, group_id: str, sender_id: str, text: str) -> MessageResponse:
        """Store a message. Subscribers receive it through the live feed."""
        text = (text or "").strip()
        if not text:
            raise InvalidMessage()
        if len(text) > settings.chat_max_message_length:
            raise InvalidMessage(f"Message must be at most {settings.chat_max_message_length} characters")
        await self.ensure_member(group_id, sender_id)
        row = await self.store.insert(MESSAGES, {
            "group_id": group_id,
            "sender_id": sender_id,
            "text": text,
        })
        logger.debug(f"Message {row['id']} sent to group {group_id} by {sender_id}")
        return MessageResponse(**row)
