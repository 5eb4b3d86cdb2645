"""Message store: durable conversations and messages.

The database is the source of truth. Every public method runs its SQLAlchemy
work on a fresh session inside the default executor so the event loop never
blocks on I/O, and returns plain dicts so no ORM object outlives its session.
"""
import asyncio
from typing import Callable, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from chatrelay.models.conversation import Conversation
from chatrelay.models.message import Message, SenderRole

UNKNOWN = "unknown"


class StorageError(Exception):
    """Raised when the database rejects or fails an operation."""
    pass


def serialize_message(message: Message, public_id: str) -> Dict:
    """Wire shape of a persisted message."""
    return {
        "id": str(message.id),
        "conversation_id": public_id,
        "sender": message.sender.value,
        "content": message.content,
        "is_automated": bool(message.is_automated),
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }


def _find(db: Session, public_id: str) -> Optional[Conversation]:
    return db.query(Conversation).filter(Conversation.public_id == public_id).first()


def _create(db: Session, public_id: str, ip: Optional[str], user_agent: Optional[str]) -> Conversation:
    conversation = Conversation(public_id=public_id, ip=ip, user_agent=user_agent)
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def _find_or_create(db: Session, public_id: str) -> Conversation:
    """Tolerant create: an unknown public id gets a placeholder row."""
    conversation = _find(db, public_id)
    if conversation is not None:
        return conversation
    try:
        return _create(db, public_id, UNKNOWN, UNKNOWN)
    except IntegrityError:
        # Lost a race against another writer for the same public id
        db.rollback()
        conversation = _find(db, public_id)
        if conversation is None:
            raise
        return conversation


class MessageStore:
    """Async facade over the conversations/messages tables."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def _run(self, operation: Callable[[Session], object]):
        def _do():
            db = self._session_factory()
            try:
                return operation(db)
            except SQLAlchemyError:
                db.rollback()
                raise
            finally:
                db.close()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _do)
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def create_conversation(
        self,
        public_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Insert a new conversation row and return its public id."""
        def _do(db: Session) -> str:
            return _create(db, public_id, ip, user_agent).public_id

        return await self._run(_do)

    async def ensure_conversation(
        self,
        public_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Make sure a row exists for `public_id`.

        Returns True when the row had to be created.
        """
        def _do(db: Session) -> bool:
            if _find(db, public_id) is not None:
                return False
            try:
                _create(db, public_id, ip or UNKNOWN, user_agent or UNKNOWN)
            except IntegrityError:
                db.rollback()
                return False
            return True

        return await self._run(_do)

    async def save_message(
        self,
        public_id: str,
        sender: SenderRole,
        content: str,
        is_automated: bool = False,
    ) -> Dict:
        """Persist one message, creating the conversation first if it is unknown."""
        def _do(db: Session) -> Dict:
            conversation = _find_or_create(db, public_id)
            message = Message(
                conversation_id=conversation.id,
                sender=sender,
                content=content,
                is_automated=is_automated,
            )
            db.add(message)
            db.commit()
            db.refresh(message)
            return serialize_message(message, public_id)

        return await self._run(_do)

    async def list_messages(self, public_id: str) -> List[Dict]:
        """All messages of a conversation, oldest first. Unknown id gives []."""
        def _do(db: Session) -> List[Dict]:
            conversation = _find(db, public_id)
            if conversation is None:
                return []
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == conversation.id)
                .order_by(Message.created_at)
                .all()
            )
            return [serialize_message(r, public_id) for r in rows]

        return await self._run(_do)

    async def recent_messages(
        self,
        public_id: str,
        limit: int,
        exclude_id: Optional[str] = None,
    ) -> List[Dict]:
        """Last `limit` messages, oldest first, optionally skipping one message id."""
        def _do(db: Session) -> List[Dict]:
            conversation = _find(db, public_id)
            if conversation is None:
                return []
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == conversation.id)
                .order_by(desc(Message.created_at))
                .limit(limit + 1)
                .all()
            )
            messages = [serialize_message(r, public_id) for r in rows]
            messages = [m for m in messages if m["id"] != exclude_id][:limit]
            return list(reversed(messages))

        return await self._run(_do)

    async def list_conversations(self) -> List[Dict]:
        """Every conversation with its messages, newest conversation first."""
        def _do(db: Session) -> List[Dict]:
            rows = (
                db.query(Conversation)
                .options(selectinload(Conversation.messages))
                .order_by(desc(Conversation.created_at))
                .all()
            )
            return [
                {
                    "conversation_id": c.public_id,
                    "ip": c.ip,
                    "user_agent": c.user_agent,
                    "created_at": c.created_at.isoformat() if c.created_at else None,
                    "messages": [serialize_message(m, c.public_id) for m in c.messages],
                }
                for c in rows
            ]

        return await self._run(_do)

