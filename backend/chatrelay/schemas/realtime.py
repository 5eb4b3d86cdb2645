"""Realtime event payload schemas."""
from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime


class Envelope(BaseModel):
    """Inbound WebSocket frame."""

    event: str = Field(..., min_length=1, max_length=64)
    data: Optional[Any] = None
    ack: Optional[Any] = Field(None, description="Client correlation id echoed back in the acknowledgment")


class InitSessionPayload(BaseModel):
    """Start or resume a visitor session."""

    conversation_id: Optional[str] = Field(None, max_length=64)


class ChatMessagePayload(BaseModel):
    """Message authored by a visitor or an administrator."""

    conversation_id: str = Field(..., min_length=1, max_length=64)
    content: str = Field(..., description="Raw text, normalized server side")


class ConversationPayload(BaseModel):
    """Event addressed to a single conversation."""

    conversation_id: str = Field(..., min_length=1, max_length=64)


class ToggleAutoModePayload(BaseModel):
    """Enable or disable automated responses for a conversation."""

    conversation_id: str = Field(..., min_length=1, max_length=64)
    enabled: bool


class ConversationView(BaseModel):
    """In-memory summary of a conversation's live state."""

    conversation_id: str
    label: str
    preview: str
    last_sender: Optional[str] = None
    last_activity: datetime
    is_active: bool = True
    auto_mode: bool = False
