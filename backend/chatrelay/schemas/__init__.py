"""Pydantic schemas for request/response validation."""
from chatrelay.schemas.chat import ConversationRecord, MessageRecord
from chatrelay.schemas.realtime import (
    ChatMessagePayload,
    ConversationPayload,
    ConversationView,
    Envelope,
    InitSessionPayload,
    ToggleAutoModePayload,
)

__all__ = [
    "ConversationRecord",
    "MessageRecord",
    "ChatMessagePayload",
    "ConversationPayload",
    "ConversationView",
    "Envelope",
    "InitSessionPayload",
    "ToggleAutoModePayload",
]
