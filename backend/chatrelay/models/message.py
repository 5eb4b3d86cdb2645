"""Message model."""
from sqlalchemy import Column, Boolean, Text, DateTime, ForeignKey, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum

from chatrelay.database import Base


class SenderRole(str, enum.Enum):
    """Who authored a message."""
    USER = "user"
    ADMIN = "admin"


class Message(Base):
    """Message in a conversation. Written once, never updated."""

    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id", ondelete="RESTRICT"), nullable=False, index=True)
    sender = Column(SQLEnum(SenderRole), nullable=False)
    content = Column(Text, nullable=False)
    is_automated = Column(Boolean, default=False, nullable=False)  # generated by the responder
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")

    def __repr__(self):
        return f"<Message {self.id} sender={self.sender.value}>"
