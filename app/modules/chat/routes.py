from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from app.core.dependencies import get_auth_service, get_current_user_id, get_store
from app.core.errors import DomainError
from app.database.store import DataStore
from app.modules.auth.service import AuthService
from app.modules.chat.relay import FEED_FAILED, ChatRelay
from app.modules.chat.schemas import ChatEntry, MessageCreate, MessageResponse
from app.modules.chat.service import ChatService, resolve_timezone, with_day_markers
from typing import List, Optional, Dict
from zoneinfo import ZoneInfoNotFoundError
import asyncio
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/groups/{group_id}", tags=["chat"])

# Application close codes sent to chat sockets
WS_UNAUTHENTICATED = 4401
WS_FORBIDDEN = 4403
WS_BAD_REQUEST = 4400
WS_INTERNAL_ERROR = 1011


def get_chat_service(store: DataStore = Depends(get_store)) -> ChatService:
    return ChatService(store)


def _timezone_or_422(tz: Optional[str]):
    try:
        return resolve_timezone(tz)
    except (ZoneInfoNotFoundError, ValueError):
        raise HTTPException(status_code=422, detail=f"Unknown timezone: {tz}")


@router.get("/messages", response_model=List[ChatEntry])
async def list_messages(
    group_id: str,
    tz: Optional[str] = None,
    user_data: Dict = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service)
):
    """Chat history, oldest first, with a day marker at each calendar day change in tz"""
    zone = _timezone_or_422(tz)
    messages = await service.load(group_id, user_data["id"])
    return with_day_markers(messages, zone)


@router.post("/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    group_id: str,
    message: MessageCreate,
    user_data: Dict = Depends(get_current_user_id),
    service: ChatService = Depends(get_chat_service)
):
    """Post a message to the group chat (owner and members only)"""
    return await service.send(group_id, user_data["id"], message.text)


async def _forward(websocket: WebSocket, relay: ChatRelay, zone, previous: Optional[MessageResponse]) -> None:
    """Send each message merged after the snapshot; previous is the last message the snapshot showed."""
    async for message in relay.updates():
        for entry in with_day_markers([message], zone, previous=previous):
            await websocket.send_json({"type": "entry", "entry": entry.model_dump(mode="json")})
        previous = message


async def _receive(websocket: WebSocket, relay: ChatRelay) -> None:
    while True:
        data = await websocket.receive_json()
        text = data.get("text") if isinstance(data, dict) else None
        try:
            await relay.send(text)
        except DomainError as e:
            await websocket.send_json({"type": "error", "detail": e.detail})


@router.websocket("/chat")
async def chat_socket(
    websocket: WebSocket,
    group_id: str,
    token: str = Query(...),
    tz: Optional[str] = None,
    store: DataStore = Depends(get_store),
    auth_service: AuthService = Depends(get_auth_service)
):
    """Live group chat. Sends a snapshot, then one entry per new message; accepts {"text": ...} to send."""
    await websocket.accept()
    try:
        user_data = await auth_service.get_current_user(token)
    except HTTPException as e:
        await websocket.close(code=WS_UNAUTHENTICATED, reason=e.detail)
        return
    try:
        zone = resolve_timezone(tz)
    except (ZoneInfoNotFoundError, ValueError):
        await websocket.close(code=WS_BAD_REQUEST, reason=f"Unknown timezone: {tz}")
        return

    relay = ChatRelay(store, group_id, user_data["id"])
    try:
        await relay.open()
    except DomainError as e:
        await websocket.close(code=WS_FORBIDDEN, reason=e.detail)
        return

    # Taken before the first await: later merges arrive through relay.updates()
    history = list(relay.messages)
    previous = history[-1] if history else None
    try:
        await websocket.send_json({
            "type": "snapshot",
            "entries": [e.model_dump(mode="json") for e in with_day_markers(history, zone)],
        })
        forwarder = asyncio.create_task(_forward(websocket, relay, zone, previous))
        receiver = asyncio.create_task(_receive(websocket, relay))
        done, pending = await asyncio.wait({forwarder, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error(f"Chat socket for group {group_id} failed: {exc}")
        if forwarder in done and relay.close_reason:
            code = WS_INTERNAL_ERROR if relay.close_reason == FEED_FAILED else WS_FORBIDDEN
            await websocket.close(code=code, reason=relay.close_reason)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.close()
