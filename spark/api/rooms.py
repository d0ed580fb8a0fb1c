"""
SPARK — Rooms API

Active room list, messaging and the end-of-window decision.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from spark.api.deps import get_chat_service, get_current_user_id, get_room_service
from spark.schemas.room import (
    ActiveRoomsResponse,
    MarkMessagesResponse,
    MessagesResponse,
    RoomDecisionRequest,
    RoomDecisionResult,
    SendMessageRequest,
    SendMessageResponse,
)
from spark.services.chat_service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, ChatService
from spark.services.room_service import RoomService

router = APIRouter()


@router.get("", response_model=ActiveRoomsResponse, summary="Open rooms for the caller")
async def get_active_rooms(
    user_id: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> ActiveRoomsResponse:
    return await chat.get_active_rooms(user_id)


@router.get("/{room_id}/messages", response_model=MessagesResponse, summary="Message history")
async def get_messages(
    room_id: str,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    before: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> MessagesResponse:
    messages = await chat.get_messages(room_id, user_id, limit=limit, before=before)
    return MessagesResponse(messages=[m.to_document() for m in messages])


@router.post(
    "/{room_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> SendMessageResponse:
    message = await chat.send_message(
        room_id,
        user_id,
        text=body.text,
        message_type=body.type,
        media_url=body.media_url,
        duration=body.duration,
    )
    return SendMessageResponse(message_id=message.id)


@router.post("/{room_id}/delivered", response_model=MarkMessagesResponse)
async def mark_messages_delivered(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> MarkMessagesResponse:
    count = await chat.mark_messages_delivered(room_id, user_id)
    return MarkMessagesResponse(marked_count=count)


@router.post("/{room_id}/read", response_model=MarkMessagesResponse)
async def mark_messages_read(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    chat: ChatService = Depends(get_chat_service),
) -> MarkMessagesResponse:
    count = await chat.mark_messages_read(room_id, user_id)
    return MarkMessagesResponse(marked_count=count)


@router.post(
    "/{room_id}/decision",
    response_model=RoomDecisionResult,
    summary="Connect, pass or extend",
)
async def decide(
    room_id: str,
    body: RoomDecisionRequest,
    user_id: str = Depends(get_current_user_id),
    rooms: RoomService = Depends(get_room_service),
) -> RoomDecisionResult:
    return await rooms.decide(room_id, user_id, body.decision)
