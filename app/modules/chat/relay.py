"""
Per-viewer chat session for one group.

A relay merges a one-shot history load with live message inserts into one
ordered, de-duplicated list. The history load and the live feed can both deliver
the same row, so every merge goes through on_remote_insert, which drops ids it
has already seen.

Lifecycle: disconnected -> connecting -> live -> disconnected. There is no
reconnect; a closed relay stays closed. The relay also watches the group's
membership rows and closes itself when the viewer loses access.
"""

import asyncio
import bisect
import logging
from typing import AsyncIterator, Dict, List, Optional, Set, Union

from app.core.errors import InvalidState, Unauthorized
from app.database.store import ChangeEvent, DataStore, INSERT, Subscription
from app.database.tables import GROUPS, GROUP_MEMBERS, MESSAGES
from app.modules.chat.schemas import MessageResponse, RelayState
from app.modules.chat.service import ChatService, sort_key
from app.modules.memberships.relationship import GroupSnapshot, can_chat
from app.modules.memberships.service import MembershipService

logger = logging.getLogger(__name__)

GROUP_DELETED = "group_deleted"
ACCESS_REVOKED = "access_revoked"
FEED_FAILED = "feed_failed"


class ChatRelay:
    def __init__(self, store: DataStore, group_id: str, viewer_id: str):
        self.store = store
        self.group_id = group_id
        self.viewer_id = viewer_id
        self.chat = ChatService(store)
        self.state = RelayState.DISCONNECTED
        self.close_reason: Optional[str] = None
        self.messages: List[MessageResponse] = []
        self.snapshot: Optional[GroupSnapshot] = None
        self._ids: Set[str] = set()
        self._subscriptions: Dict[str, Subscription] = {}
        self._tasks: List[asyncio.Task] = []
        self._closing: Optional[asyncio.Task] = None
        self._updates: asyncio.Queue = asyncio.Queue()
        self._opened = False

    async def __aenter__(self) -> "ChatRelay":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_live(self) -> bool:
        return self.state == RelayState.LIVE

    async def open(self) -> None:
        if self._opened:
            raise InvalidState("Chat relay can only be opened once")
        self._opened = True
        self.state = RelayState.CONNECTING
        try:
            self.snapshot = await MembershipService(self.store).get_snapshot(self.group_id)
            if not can_chat(self.snapshot.relationship(self.viewer_id)):
                raise Unauthorized()
            # Subscribe before loading history so nothing committed in between is missed
            self._subscriptions[MESSAGES] = await self.store.subscribe(MESSAGES, {"group_id": self.group_id})
            self._subscriptions[GROUP_MEMBERS] = await self.store.subscribe(GROUP_MEMBERS, {"group_id": self.group_id})
            self._subscriptions[GROUPS] = await self.store.subscribe(GROUPS, {"id": self.group_id})
            for relation, subscription in self._subscriptions.items():
                task = asyncio.create_task(self._consume(relation, subscription))
                task.add_done_callback(self._on_consumer_done)
                self._tasks.append(task)
            history = await self.chat.load(self.group_id, self.viewer_id)
        except BaseException:
            await self._teardown()
            self.state = RelayState.DISCONNECTED
            raise
        if self.state != RelayState.CONNECTING:
            # Closed while history was loading
            return
        for message in history:
            self.on_remote_insert(message)
        self.state = RelayState.LIVE
        logger.info(f"Chat relay live for {self.viewer_id} in group {self.group_id} ({len(self.messages)} messages)")

    def on_remote_insert(self, message: Union[MessageResponse, dict]) -> bool:
        """Merge one message; returns False for duplicates and foreign rows."""
        if self.state == RelayState.DISCONNECTED:
            return False
        if isinstance(message, dict):
            message = MessageResponse(**message)
        if message.group_id != self.group_id or message.id in self._ids:
            return False
        self._ids.add(message.id)
        if not self.messages or sort_key(message) >= sort_key(self.messages[-1]):
            self.messages.append(message)
        else:
            bisect.insort(self.messages, message, key=sort_key)
        if self.state == RelayState.LIVE:
            self._updates.put_nowait(message)
        return True

    async def send(self, text: str) -> MessageResponse:
        """Store a message; it shows up locally only once the live feed echoes it."""
        if not self.is_live:
            raise InvalidState("Chat relay is not connected")
        return await self.chat.send(self.group_id, self.viewer_id, text)

    async def updates(self) -> AsyncIterator[MessageResponse]:
        """Messages merged after the relay went live, until it closes."""
        while True:
            message = await self._updates.get()
            if message is None:
                return
            yield message

    async def close(self, reason: Optional[str] = None) -> None:
        if self.state == RelayState.DISCONNECTED:
            return
        self.state = RelayState.DISCONNECTED
        self.close_reason = reason
        await self._teardown()
        self._updates.put_nowait(None)
        logger.info(f"Chat relay closed for {self.viewer_id} in group {self.group_id}" + (f" ({reason})" if reason else ""))

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        subscriptions, self._subscriptions = self._subscriptions, {}
        for subscription in subscriptions.values():
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Error closing {subscription.relation} subscription: {e}")

    def _on_consumer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if self.state == RelayState.DISCONNECTED:
            return
        if exc is not None:
            logger.error(f"Chat relay feed failed for {self.viewer_id} in group {self.group_id}: {exc!r}")
        else:
            logger.warning(f"Chat relay feed ended for {self.viewer_id} in group {self.group_id}")
        # No reconnect: a relay without its feed is closed
        self._closing = asyncio.ensure_future(self.close(FEED_FAILED))

    async def _consume(self, relation: str, subscription: Subscription) -> None:
        async for event in subscription:
            if self.state == RelayState.DISCONNECTED:
                return
            if relation == MESSAGES:
                if event.op == INSERT:
                    self.on_remote_insert(event.row)
                continue
            await self._apply_membership_event(relation, event)

    async def _apply_membership_event(self, relation: str, event: ChangeEvent) -> None:
        if not self.snapshot.apply(relation, event):
            return
        if self.snapshot.deleted:
            await self.close(GROUP_DELETED)
        elif not can_chat(self.snapshot.relationship(self.viewer_id)):
            await self.close(ACCESS_REVOKED)
