"""Chat history response schemas."""
from pydantic import BaseModel, Field
from typing import List, Optional


class MessageRecord(BaseModel):
    """A persisted message."""

    id: str
    conversation_id: str
    sender: str = Field(..., description="'user' or 'admin'")
    content: str
    is_automated: bool = False
    created_at: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "123e4567-e89b-12d3-a456-426614174001",
                "conversation_id": "9b2f4c1e-5d7a-4e8b-9c3f-1a2b3c4d5e6f",
                "sender": "user",
                "content": "Hi, is my order shipped yet?",
                "is_automated": False,
                "created_at": "2025-12-12T15:38:12.123456"
            }
        }


class ConversationRecord(BaseModel):
    """A persisted conversation with its full transcript."""

    conversation_id: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None
    messages: List[MessageRecord] = Field(default_factory=list)
