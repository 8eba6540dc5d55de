import os

os.environ.setdefault("RATE_LIMIT", "10000/minute")

import asyncio
import uuid
from collections import defaultdict
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.dependencies import get_current_user_id, get_store
from app.database.store import (
    DELETE, INSERT, UNIQUE_VIOLATION, UPDATE, ChangeEvent, DataStore, StoreError, Subscription
)
from app.database.tables import GROUPS, GROUP_MEMBERS, JOIN_REQUESTS, PROFILES
from app.main import app
from app.modules.auth.service import clear_auth_cache
from app.modules.groups.schemas import GroupResponse

OWNER = "user-owner"
ALICE = "user-alice"
BOB = "user-bob"
CAROL = "user-carol"

# (columns, partial-index condition)
UNIQUE_KEYS = {
    PROFILES: [(("user_id",), None)],
    GROUP_MEMBERS: [(("group_id", "user_id"), None)],
    JOIN_REQUESTS: [(("group_id", "user_id"), {"status": "pending"})],
}


@dataclass
class InjectedFailure:
    relation: str
    op: str
    remaining: int
    code: str
    commit: bool


def _matches(row: dict, filters: dict | None) -> bool:
    for column, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set)):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


class InMemoryStore(DataStore):
    """In-memory DataStore for testing.

    Enforces the unique constraints of the real schema and publishes change
    events like Supabase Realtime does: deletes carry only the primary key and
    reach every subscriber of the relation.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = defaultdict(list)
        self.calls: list[tuple[str, str]] = []
        self.queries: list[dict] = []
        # Yield to the event loop before every call so concurrent callers interleave
        self.interleave = False
        self._subscriptions: dict[str, list[tuple[dict, Subscription]]] = defaultdict(list)
        self._failures: list[InjectedFailure] = []
        self._clock = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def fail_next(self, relation: str, op: str, times: int = 1, code: str = "08006", commit: bool = False):
        """Make the next `times` matching mutations raise StoreError.

        With commit=True the write is applied before the error is raised, like a
        response lost after the database committed.
        """
        self._failures.append(InjectedFailure(relation, op, times, code, commit))

    def rows(self, relation: str, **filters) -> list[dict]:
        return [dict(r) for r in self.tables[relation] if _matches(r, filters)]

    def _take_failure(self, relation: str, op: str) -> InjectedFailure | None:
        for failure in self._failures:
            if failure.relation == relation and failure.op == op and failure.remaining > 0:
                failure.remaining -= 1
                return failure
        return None

    def _tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def _check_unique(self, relation: str, row: dict, ignore: dict | None = None):
        for columns, condition in UNIQUE_KEYS.get(relation, []):
            if condition and not _matches(row, condition):
                continue
            for other in self.tables[relation]:
                if other is ignore:
                    continue
                if condition and not _matches(other, condition):
                    continue
                if all(other.get(c) == row.get(c) for c in columns):
                    raise StoreError(UNIQUE_VIOLATION, f"duplicate key value violates unique constraint on {relation}")

    def _publish(self, relation: str, event: ChangeEvent):
        for filters, subscription in list(self._subscriptions[relation]):
            if event.op == DELETE or _matches(event.row, filters):
                subscription.push(event)

    async def query(self, relation, filters=None, order=None, desc=False, limit=None, offset=None):
        if self.interleave:
            await asyncio.sleep(0)
        self.calls.append((relation, "select"))
        self.queries.append({"relation": relation, "filters": filters, "order": order, "limit": limit, "offset": offset})
        rows = [dict(r) for r in self.tables[relation] if _matches(r, filters)]
        if order:
            rows.sort(key=lambda r: r.get(order) or "", reverse=desc)
        if offset:
            rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def mutate(self, relation, op, payload=None, filters=None):
        if self.interleave:
            await asyncio.sleep(0)
        self.calls.append((relation, op))
        failure = self._take_failure(relation, op)
        if failure and not failure.commit:
            raise StoreError(failure.code, f"injected {op} failure on {relation}")

        result = []
        if op == INSERT:
            row = {"id": str(uuid.uuid4()), "created_at": self._tick(), **payload}
            if isinstance(row["created_at"], datetime):
                row["created_at"] = row["created_at"].isoformat()
            self._check_unique(relation, row)
            self.tables[relation].append(row)
            result.append(dict(row))
            self._publish(relation, ChangeEvent(op=INSERT, row=dict(row)))
        elif op == UPDATE:
            for row in self.tables[relation]:
                if _matches(row, filters):
                    self._check_unique(relation, {**row, **payload}, ignore=row)
                    old = dict(row)
                    row.update(payload)
                    result.append(dict(row))
                    self._publish(relation, ChangeEvent(op=UPDATE, row=dict(row), old={"id": old["id"]}))
        elif op == DELETE:
            kept = []
            for row in self.tables[relation]:
                if _matches(row, filters):
                    result.append(dict(row))
                    self._publish(relation, ChangeEvent(op=DELETE, row={}, old={"id": row["id"]}))
                else:
                    kept.append(row)
            self.tables[relation] = kept
        else:
            raise ValueError(f"Unknown mutation: {op}")

        if failure and failure.commit:
            raise StoreError(failure.code, f"injected {op} failure on {relation} after commit")
        return result

    async def subscribe(self, relation, filters=None):
        entry = {}

        async def unsubscribe():
            self._subscriptions[relation].remove(entry["item"])

        subscription = Subscription(relation, on_close=unsubscribe)
        entry["item"] = (dict(filters or {}), subscription)
        self._subscriptions[relation].append(entry["item"])
        return subscription

    def subscriber_count(self, relation: str) -> int:
        return len(self._subscriptions[relation])


async def make_group(store: InMemoryStore, owner_id: str = OWNER, max_members: int = 5, **fields) -> GroupResponse:
    row = await store.insert(GROUPS, {
        "owner_id": owner_id,
        "project_name": fields.pop("project_name", "Campus Navigator"),
        "supervisor_name": fields.pop("supervisor_name", "Dr. Okafor"),
        "skills_required": fields.pop("skills_required", ["Python", "React"]),
        "skills_needed": fields.pop("skills_needed", ["UX"]),
        "project_outcomes": fields.pop("project_outcomes", "Indoor maps for the library"),
        "max_members": max_members,
        **fields,
    })
    return GroupResponse(**row)


async def add_member(store: InMemoryStore, group_id: str, user_id: str) -> dict:
    return await store.insert(GROUP_MEMBERS, {"group_id": group_id, "user_id": user_id})


async def add_request(store: InMemoryStore, group_id: str, user_id: str, status: str = "pending") -> dict:
    return await store.insert(JOIN_REQUESTS, {"group_id": group_id, "user_id": user_id, "status": status})


@pytest.fixture
async def store() -> InMemoryStore:
    store = InMemoryStore()
    for user_id, name in ((OWNER, "Olivia Owner"), (ALICE, "Alice"), (BOB, "Bob"), (CAROL, "Carol")):
        await store.insert(PROFILES, {"user_id": user_id, "name": name, "email": f"{name.split()[0].lower()}@uni.test"})
    return store


@pytest.fixture
async def group(store) -> GroupResponse:
    return await make_group(store)


@pytest.fixture
def current_user() -> dict:
    """Mutable current user; set current_user["id"] to act as someone else."""
    return {"id": OWNER, "email": "olivia@uni.test"}


@pytest.fixture
async def client(store, current_user) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_current_user_id] = lambda: current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    clear_auth_cache()
