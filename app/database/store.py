"""
Data Store adapter.

The membership and chat modules talk to storage only through three operations:
query, mutate and subscribe. SupabaseStore implements them on the Supabase async
client; tests substitute an in-memory store with the same surface.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
MUTATIONS = (INSERT, UPDATE, DELETE)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"

Filters = Dict[str, Any]


class StoreError(Exception):
    """Underlying storage failure, transient or not."""

    def __init__(self, code: Optional[str], message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_unique_violation(self) -> bool:
        return self.code == UNIQUE_VIOLATION

    def __repr__(self) -> str:
        return f"StoreError(code={self.code!r}, message={self.message!r})"


@dataclass
class ChangeEvent:
    op: str
    row: Dict[str, Any]
    old: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Async iterator over change events for one relation.

    Events are pushed by the realtime callback and consumed with ``async for``.
    Iteration ends once ``close()`` is called.
    """

    def __init__(self, relation: str, on_close: Optional[Callable[[], Awaitable[None]]] = None):
        self.relation = relation
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close

    def push(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)
        if self._on_close is not None:
            await self._on_close()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self._queue.get()
        if event is None or self.closed:
            raise StopAsyncIteration
        return event


class DataStore(ABC):
    @abstractmethod
    async def query(
        self,
        relation: str,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Read rows matching equality filters; list values filter by membership."""

    @abstractmethod
    async def mutate(
        self,
        relation: str,
        op: str,
        payload: Optional[Dict[str, Any]] = None,
        filters: Optional[Filters] = None,
    ) -> List[Dict[str, Any]]:
        """Insert, update or delete; returns affected rows. Raises StoreError."""

    @abstractmethod
    async def subscribe(self, relation: str, filters: Optional[Filters] = None) -> Subscription:
        """Open a live change feed; the caller must close it."""

    async def get_one(self, relation: str, filters: Filters) -> Optional[Dict[str, Any]]:
        rows = await self.query(relation, filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, relation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.mutate(relation, INSERT, payload)
        if not rows:
            raise StoreError(None, f"Insert into {relation} returned no rows")
        return rows[0]

    async def update(self, relation: str, payload: Dict[str, Any], filters: Filters) -> List[Dict[str, Any]]:
        return await self.mutate(relation, UPDATE, payload, filters)

    async def delete(self, relation: str, filters: Filters) -> List[Dict[str, Any]]:
        return await self.mutate(relation, DELETE, filters=filters)


def _to_store_error(exc: APIError) -> StoreError:
    return StoreError(getattr(exc, "code", None), getattr(exc, "message", None) or str(exc))


def _realtime_filter(filters: Optional[Filters]) -> Optional[str]:
    """Realtime accepts a single column filter, e.g. ``group_id=eq.<id>``."""
    if not filters:
        return None
    if len(filters) > 1:
        raise ValueError("Realtime subscriptions support a single filter column")
    column, value = next(iter(filters.items()))
    if isinstance(value, (list, tuple, set)):
        return f"{column}=in.({','.join(str(v) for v in value)})"
    return f"{column}=eq.{value}"


def _change_event(payload: Dict[str, Any]) -> Optional[ChangeEvent]:
    data = payload.get("data", payload)
    op = (data.get("type") or data.get("eventType") or "").lower()
    if op not in MUTATIONS:
        return None
    old = data.get("old_record") or data.get("old") or {}
    row = data.get("record") or data.get("new") or {}
    if op == DELETE and not row:
        row = old
    return ChangeEvent(op=op, row=row, old=old)


class SupabaseStore(DataStore):
    def __init__(self, supabase: AsyncClient, schema: str = "public"):
        self.supabase = supabase
        self.schema = schema

    @staticmethod
    def _apply_filters(query, filters: Optional[Filters]):
        for column, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                query = query.in_(column, list(value))
            elif value is None:
                query = query.is_(column, "null")
            else:
                query = query.eq(column, value)
        return query

    async def query(self, relation, filters=None, order=None, desc=False, limit=None, offset=None):
        query = self._apply_filters(self.supabase.table(relation).select("*"), filters)
        if order:
            query = query.order(order, desc=desc)
        if limit is not None:
            query = query.limit(limit)
        if offset is not None:
            query = query.offset(offset)
        try:
            result = await query.execute()
        except APIError as e:
            raise _to_store_error(e) from e
        return result.data or []

    async def mutate(self, relation, op, payload=None, filters=None):
        table = self.supabase.table(relation)
        if op == INSERT:
            query = table.insert(payload)
        elif op in (UPDATE, DELETE):
            # PostgREST rejects unfiltered update/delete; fail early with a clear message
            if not filters:
                raise ValueError(f"{op} on {relation} requires filters")
            query = table.update(payload) if op == UPDATE else table.delete()
            query = self._apply_filters(query, filters)
        else:
            raise ValueError(f"Unknown mutation: {op}")
        try:
            result = await query.execute()
        except APIError as e:
            raise _to_store_error(e) from e
        return result.data or []

    async def subscribe(self, relation, filters=None):
        channel = self.supabase.channel(f"{relation}:{uuid.uuid4().hex[:12]}")
        subscription = Subscription(relation)

        def handle(payload):
            event = _change_event(payload)
            if event is not None:
                subscription.push(event)

        channel.on_postgres_changes(
            "*",
            callback=handle,
            table=relation,
            schema=self.schema,
            filter=_realtime_filter(filters),
        )
        await channel.subscribe()
        logger.debug(f"Subscribed to {relation} changes ({filters})")

        async def teardown():
            await self.supabase.remove_channel(channel)
            logger.debug(f"Unsubscribed from {relation} changes ({filters})")

        subscription._on_close = teardown
        return subscription
