from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from starlette.concurrency import run_in_threadpool

from constants import ALLOWED_REACTIONS, HISTORY_PAGE_SIZE, SEARCH_LIMIT
from logging_config import get_logger
from realtime.errors import AuthenticationFailure
from realtime.gatekeeper import extract_token
from realtime.rooms import derive_private_key, is_private_key, is_private_participant
from schemas.chat import Envelope, Identity, Reaction, StoredMessage
from schemas.messages import (
    DeleteMessageResponse,
    EditMessageRequest,
    HistoryPage,
    ReactionRequest,
    SendMessageRequest,
)

logger = get_logger(__name__)

messages_router = APIRouter(prefix="/api/messages", tags=["messages"])


async def current_identity(request: Request) -> Identity:
    provider = request.app.state.hub.identity_provider
    try:
        return await provider.verify(extract_token(request))
    except AuthenticationFailure as e:
        logger.warning(f"Rejected {request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=401, detail=str(e))


def _require_owner(message: StoredMessage, identity: Identity, action: str) -> None:
    if message.is_deleted:
        logger.warning(f"{action} failed: message {message.id} not found")
        raise HTTPException(status_code=404, detail="Message not found")
    if message.sender_id != identity.id:
        logger.warning(f"{action} failed: {identity.id} does not own message {message.id}")
        raise HTTPException(status_code=403, detail=f"You can only {action} your own messages")


def _require_private_participant(room: str, identity: Identity) -> None:
    if is_private_key(room) and not is_private_participant(room, identity.id):
        logger.warning(f"{identity.id} denied access to private room {room}")
        raise HTTPException(status_code=403, detail="Not a participant of this private chat")


async def _update_message(request: Request, message_id: str, mutate) -> StoredMessage:
    """Run `mutate` inside the store's atomic update and push the result to live clients."""
    updated = await run_in_threadpool(request.app.state.store.update_message, message_id, mutate)
    if updated is None:
        logger.warning(f"Update failed: message {message_id} not found")
        raise HTTPException(status_code=404, detail="Message not found")
    await request.app.state.hub.bridge.message_updated(updated)
    return updated


@messages_router.get("/room/{room}", response_model=HistoryPage)
async def room_history(
    room: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=200),
    identity: Identity = Depends(current_identity),
):
    _require_private_participant(room, identity)
    logger.info(f"History request for room {room} from {identity.display_name}, page {page}")
    return await run_in_threadpool(request.app.state.store.query_history, room, page, limit)


@messages_router.get("/private/{other_id}", response_model=HistoryPage)
async def private_history(
    other_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=200),
    identity: Identity = Depends(current_identity),
):
    room = derive_private_key(identity.id, other_id)
    logger.info(f"Private history request between {identity.id} and {other_id}, page {page}")
    return await run_in_threadpool(request.app.state.store.query_history, room, page, limit)


@messages_router.post("/send", response_model=StoredMessage, status_code=201)
async def send_message(body: SendMessageRequest, request: Request, identity: Identity = Depends(current_identity)):
    if not body.content or not (body.room or body.receiver_id):
        raise HTTPException(status_code=400, detail="Content and room/receiver are required")
    if body.room and not body.receiver_id:
        _require_private_participant(body.room, identity)

    if body.receiver_id:
        envelope = Envelope(
            room=derive_private_key(identity.id, body.receiver_id),
            content=body.content,
            sender_id=identity.id,
            sender_name=identity.display_name,
            target_id=body.receiver_id,
            is_private=True,
            reply_to=body.reply_to,
        )
    else:
        envelope = Envelope(
            room=body.room,
            content=body.content,
            sender_id=identity.id,
            sender_name=identity.display_name,
            reply_to=body.reply_to,
        )

    stored = await run_in_threadpool(request.app.state.store.append, envelope)
    await request.app.state.hub.bridge.message_created(stored)
    logger.info(f"Message {stored.id} from {identity.display_name} persisted in room {stored.room}")
    return stored


@messages_router.put("/{message_id}", response_model=StoredMessage)
async def edit_message(message_id: str, body: EditMessageRequest, request: Request, identity: Identity = Depends(current_identity)):
    if not body.content:
        raise HTTPException(status_code=400, detail="Content is required")

    def apply_edit(message: StoredMessage) -> None:
        _require_owner(message, identity, "edit")
        message.content = body.content
        message.is_edited = True
        message.edited_at = datetime.now(timezone.utc)

    return await _update_message(request, message_id, apply_edit)


@messages_router.delete("/{message_id}", response_model=DeleteMessageResponse)
async def delete_message(message_id: str, request: Request, identity: Identity = Depends(current_identity)):
    def apply_delete(message: StoredMessage) -> None:
        _require_owner(message, identity, "delete")
        message.is_deleted = True
        message.deleted_at = datetime.now(timezone.utc)

    await _update_message(request, message_id, apply_delete)
    return DeleteMessageResponse(message="Message deleted successfully")


@messages_router.post("/{message_id}/reactions", response_model=StoredMessage)
async def add_reaction(message_id: str, body: ReactionRequest, request: Request, identity: Identity = Depends(current_identity)):
    if not body.emoji:
        raise HTTPException(status_code=400, detail="Emoji is required")
    if body.emoji not in ALLOWED_REACTIONS:
        raise HTTPException(status_code=400, detail="Emoji is not allowed")

    def apply_reaction(message: StoredMessage) -> None:
        if message.is_deleted or not message.visible_to(identity.id):
            raise HTTPException(status_code=404, detail="Message not found")
        # One reaction per user: a new one replaces the old
        message.reactions = [r for r in message.reactions if r.user_id != identity.id]
        message.reactions.append(Reaction(user_id=identity.id, user_name=identity.display_name, emoji=body.emoji))

    updated = await _update_message(request, message_id, apply_reaction)
    logger.info(f"{identity.display_name} reacted {body.emoji} to message {message_id}")
    return updated


@messages_router.get("/search/{query}", response_model=list[StoredMessage])
async def search_messages(
    query: str,
    request: Request,
    room: Optional[str] = None,
    limit: int = Query(SEARCH_LIMIT, ge=1, le=100),
    identity: Identity = Depends(current_identity),
):
    if room:
        _require_private_participant(room, identity)
    logger.info(f"Search request '{query}' in room {room or '*'} from {identity.display_name}")
    return await run_in_threadpool(request.app.state.store.search, query, room, limit, identity.id)
