from datetime import datetime, timezone

import pytest

from app.config import settings
from app.core.errors import InvalidMessage, NotFound, Unauthorized
from app.database.tables import MESSAGES
from app.modules.chat.schemas import EntryKind, MessageResponse
from app.modules.chat.service import ChatService, resolve_timezone, with_day_markers

from tests.conftest import ALICE, BOB, CAROL, OWNER, add_member, add_request


@pytest.fixture
def service(store):
    return ChatService(store)


def _message(id, created_at, group_id="g1"):
    return MessageResponse(id=id, group_id=group_id, sender_id=OWNER, text=f"msg {id}", created_at=created_at)


@pytest.mark.asyncio
async def test_load_orders_by_created_at(service, store, group):
    for minute_hour in ("10:00", "10:05", "09:59"):
        hour, minute = map(int, minute_hour.split(":"))
        await store.insert(MESSAGES, {
            "group_id": group.id,
            "sender_id": OWNER,
            "text": minute_hour,
            "created_at": datetime(2024, 3, 4, hour, minute, tzinfo=timezone.utc),
        })
    messages = await service.load(group.id, OWNER)
    assert [m.text for m in messages] == ["09:59", "10:00", "10:05"]


@pytest.mark.asyncio
async def test_load_breaks_ties_by_id(service, store, group):
    same_time = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)
    for id in ("m-b", "m-a", "m-c"):
        await store.insert(MESSAGES, {
            "id": id, "group_id": group.id, "sender_id": OWNER, "text": id, "created_at": same_time,
        })
    messages = await service.load(group.id, OWNER)
    assert [m.id for m in messages] == ["m-a", "m-b", "m-c"]


@pytest.mark.asyncio
async def test_load_only_returns_this_group(service, store, group):
    await store.insert(MESSAGES, {"group_id": group.id, "sender_id": OWNER, "text": "mine"})
    await store.insert(MESSAGES, {"group_id": "other", "sender_id": OWNER, "text": "theirs"})
    assert [m.text for m in await service.load(group.id, OWNER)] == ["mine"]


@pytest.mark.asyncio
async def test_member_can_send_and_load(service, store, group):
    await add_member(store, group.id, ALICE)
    sent = await service.send(group.id, ALICE, "  hello team  ")
    assert sent.text == "hello team"
    assert sent.sender_id == ALICE
    assert [m.id for m in await service.load(group.id, OWNER)] == [sent.id]


@pytest.mark.asyncio
async def test_stranger_cannot_send(service, store, group):
    with pytest.raises(Unauthorized):
        await service.send(group.id, CAROL, "hi")
    assert store.rows(MESSAGES, group_id=group.id) == []


@pytest.mark.asyncio
async def test_requesters_cannot_read(service, store, group):
    await add_request(store, group.id, BOB)
    await add_request(store, group.id, CAROL, status="rejected")
    for user in (BOB, CAROL):
        with pytest.raises(Unauthorized):
            await service.load(group.id, user)


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
async def test_blank_messages_are_rejected(service, store, group, text):
    with pytest.raises(InvalidMessage):
        await service.send(group.id, OWNER, text)
    assert store.rows(MESSAGES) == []


@pytest.mark.asyncio
async def test_overlong_message_is_rejected(service, store, group, monkeypatch):
    monkeypatch.setattr(settings, "chat_max_message_length", 10)
    with pytest.raises(InvalidMessage):
        await service.send(group.id, OWNER, "x" * 11)
    assert (await service.send(group.id, OWNER, "x" * 10)).text == "x" * 10


@pytest.mark.asyncio
async def test_chat_of_missing_group(service):
    with pytest.raises(NotFound):
        await service.load("missing", OWNER)


def test_day_markers_follow_local_calendar_day():
    messages = [
        _message("1", datetime(2024, 3, 4, 22, 0, tzinfo=timezone.utc)),
        _message("2", datetime(2024, 3, 4, 23, 30, tzinfo=timezone.utc)),
        _message("3", datetime(2024, 3, 5, 1, 0, tzinfo=timezone.utc)),
    ]
    utc = with_day_markers(messages, "UTC")
    assert [e.kind for e in utc] == [
        EntryKind.DAY, EntryKind.MESSAGE, EntryKind.MESSAGE, EntryKind.DAY, EntryKind.MESSAGE,
    ]
    assert utc[0].day.isoformat() == "2024-03-04"
    assert utc[3].day.isoformat() == "2024-03-05"

    # UTC+9: all three fall on March 5th
    tokyo = with_day_markers(messages, "Asia/Tokyo")
    assert [e.kind for e in tokyo] == [EntryKind.DAY] + [EntryKind.MESSAGE] * 3
    assert tokyo[0].day.isoformat() == "2024-03-05"


def test_day_markers_continue_from_previous_message():
    previous = _message("1", datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc))
    same_day = _message("2", datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc))
    next_day = _message("3", datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc))
    assert [e.kind for e in with_day_markers([same_day], "UTC", previous=previous)] == [EntryKind.MESSAGE]
    assert [e.kind for e in with_day_markers([next_day], "UTC", previous=same_day)] == [EntryKind.DAY, EntryKind.MESSAGE]


def test_day_markers_empty():
    assert with_day_markers([], "UTC") == []


def test_resolve_timezone_defaults_to_settings():
    assert resolve_timezone(None) is timezone.utc
    assert resolve_timezone("Europe/Berlin").key == "Europe/Berlin"
