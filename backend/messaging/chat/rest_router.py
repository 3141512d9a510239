"""Conversation and room HTTP endpoints.

Endpoints:
    GET    /conversations                      - Conversations, most recent first
    POST   /conversations                      - Get or create a direct conversation
    GET    /conversations/{id}/messages        - Paginated history (by seq cursor), marks read
    POST   /conversations/{id}/messages        - Send a message over HTTP
    GET    /rooms                              - Rooms the caller belongs to
    POST   /rooms                              - Create a group room
    GET    /rooms/{id}                         - One room with its members
    POST   /rooms/{id}/members                 - Add a member (admin/moderator)
    DELETE /rooms/{id}/members/{user_id}       - Remove a member (or leave)
    GET    /unread-count                       - Messages not yet read

All endpoints require ``Authorization: Bearer <jwt>``. Membership changes
are pushed to online members as ``conversation:update`` socket events.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from messaging.errors import MessagingError
from messaging.store.schemas import MessageType

from .hub import MessagingHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


# =============================================================================
# Dependencies
# =============================================================================


def http_error(error: MessagingError) -> HTTPException:
    """Convert a MessagingError to an HTTPException."""
    return HTTPException(
        status_code=error.status_code,
        detail={"message": error.message, "code": error.code, "retryable": error.retryable},
    )


def get_hub(request: Request) -> MessagingHub:
    return request.app.state.hub


def hidden_from_non_members(error: MessagingError) -> HTTPException:
    """Like :func:`http_error`, but 403 becomes 404 so ids cannot be discovered."""
    if error.status_code == 403:
        return HTTPException(status_code=404, detail={
            "message": "Conversation not found", "code": "conversation_not_found",
            "retryable": False,
        })
    return http_error(error)


def current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    try:
        return get_hub(request).authenticator.authenticate_header(authorization)
    except MessagingError as e:
        raise http_error(e)


# =============================================================================
# Request Models
# =============================================================================


class OpenConversationRequest(BaseModel):
    participantId: str = Field(..., min_length=1)


class CreateRoomRequest(BaseModel):
    """Request body for creating a group room.

    Attributes:
        name: Display name (1-100 characters after trimming).
        description: Optional description (up to 500 characters).
        members: Initial members besides the creator.
    """
    name: str
    description: Optional[str] = None
    members: List[str] = Field(default_factory=list)


class PostMessageRequest(BaseModel):
    """Request body for sending a message over HTTP."""
    content: str
    messageType: MessageType = MessageType.TEXT
    mentions: List[str] = Field(default_factory=list)
    clientMessageId: Optional[str] = None


class AddMemberRequest(BaseModel):
    userId: str = Field(..., min_length=1)


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/conversations")
async def list_conversations(
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        return {"conversations": await hub.list_conversations(user_id)}
    except MessagingError as e:
        raise http_error(e)


@router.post("/conversations")
async def open_conversation(
    body: OpenConversationRequest,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        conversation = await hub.open_direct(user_id, body.participantId)
    except MessagingError as e:
        raise http_error(e)
    return {"conversation": conversation.model_dump(mode="json")}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    before: Optional[int] = Query(None, ge=1, description="Return messages with seq below this"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (capped server-side)"),
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Get paginated history, oldest first.

    Clients fetch older pages by passing the ``seq`` of the oldest message they
    hold as ``before``. Non-members get 404 so room ids cannot be discovered.
    """
    try:
        return await hub.history(user_id, conversation_id, before_seq=before, limit=limit)
    except MessagingError as e:
        raise hidden_from_non_members(e)


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def post_message(
    conversation_id: str,
    body: PostMessageRequest,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    """Send a message without a socket.

    Online members receive it as ``message:receive`` like any socket send;
    retries with the same ``clientMessageId`` return the original message.
    """
    try:
        message = await hub.post_message(
            user_id,
            conversation_id,
            body.content,
            message_type=body.messageType,
            mentions=body.mentions,
            client_message_id=body.clientMessageId,
        )
    except MessagingError as e:
        raise hidden_from_non_members(e)
    return {"message": message.model_dump(mode="json")}


@router.get("/rooms")
async def list_rooms(
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        rooms = await hub.list_rooms(user_id)
    except MessagingError as e:
        raise http_error(e)
    return {"rooms": [r.model_dump(mode="json") for r in rooms]}


@router.get("/rooms/{room_id}")
async def get_room(
    room_id: str,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        room = await hub.get_room(user_id, room_id)
    except MessagingError as e:
        raise hidden_from_non_members(e)
    return {"room": room.model_dump(mode="json")}


@router.post("/rooms", status_code=201)
async def create_room(
    body: CreateRoomRequest,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        room = await hub.create_room(user_id, body.name, body.members, body.description)
    except MessagingError as e:
        raise http_error(e)
    return {"room": room.model_dump(mode="json")}


@router.post("/rooms/{room_id}/members")
async def add_member(
    room_id: str,
    body: AddMemberRequest,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        room = await hub.add_member(user_id, room_id, body.userId)
    except MessagingError as e:
        raise http_error(e)
    return {"room": room.model_dump(mode="json")}


@router.delete("/rooms/{room_id}/members/{member_id}")
async def remove_member(
    room_id: str,
    member_id: str,
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        room = await hub.remove_member(user_id, room_id, member_id)
    except MessagingError as e:
        raise http_error(e)
    return {"room": room.model_dump(mode="json")}


@router.get("/unread-count")
async def unread_count(
    user_id: str = Depends(current_user),
    hub: MessagingHub = Depends(get_hub),
) -> dict:
    try:
        return {"count": await hub.unread_count(user_id)}
    except MessagingError as e:
        raise http_error(e)
