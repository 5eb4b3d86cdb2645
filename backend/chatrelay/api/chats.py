"""Read-only chat history endpoints."""
from fastapi import APIRouter, HTTPException, Request
from typing import List

from chatrelay.middleware.logging import get_logger
from chatrelay.schemas.chat import ConversationRecord, MessageRecord
from chatrelay.services.message_store import StorageError

router = APIRouter(prefix="/api")
logger = get_logger()


@router.get("/chats", response_model=List[ConversationRecord])
async def list_chats(request: Request):
    """All conversations with their messages, newest conversation first."""
    try:
        conversations = await request.app.state.hub.store.list_conversations()
    except StorageError as e:
        logger.error("chats_list_failed", error=str(e))
        raise HTTPException(status_code=503, detail="Chat history is temporarily unavailable")
    logger.info("chats_listed", count=len(conversations))
    return conversations


@router.get("/chats/{conversation_id}", response_model=List[MessageRecord])
async def get_chat(conversation_id: str, request: Request):
    """
    Messages of one conversation, oldest first.

    Unknown conversations return an empty list rather than 404.
    """
    try:
        return await request.app.state.hub.store.list_messages(conversation_id)
    except StorageError as e:
        logger.error("chat_history_failed", conversation_id=conversation_id, error=str(e))
        raise HTTPException(status_code=503, detail="Chat history is temporarily unavailable")
