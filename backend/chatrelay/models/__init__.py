"""Database models."""
from chatrelay.models.conversation import Conversation
from chatrelay.models.message import Message, SenderRole

__all__ = ["Conversation", "Message", "SenderRole"]
