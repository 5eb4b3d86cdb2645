"""Message intake pipeline.

Every inbound chat message passes through here:

1. empty content (after trimming) is dropped
2. content is trimmed and cut to the maximum length
3. visitor messages are checked against the in-flight marker and the
   duplicate window
4. the message is persisted, then fanned out to its room
5. the conversation preview is refreshed and admins get a new snapshot
6. for visitor messages in automated mode, a generated reply (or the
   fallback apology) goes through steps 4-5 as an automated admin message

The visitor's message is always persisted and delivered before the
responder is called.
"""
import enum
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from chatrelay.models.message import SenderRole
from chatrelay.services.broadcast import AdminBroadcast
from chatrelay.services.connections import ConnectionRouter
from chatrelay.services.message_store import MessageStore, StorageError
from chatrelay.services.registry import ConversationRegistry
from chatrelay.services.responder import ResponderError, ResponderGateway
from chatrelay.services.submission_guard import BaseSubmissionGuard, SubmissionInFlight

logger = structlog.get_logger()

TRUNCATION_MARKER = "..."
FALLBACK_REPLY = (
    "Sorry, I'm having trouble answering right now. "
    "A member of our team will get back to you shortly."
)


class SubmissionOutcome(str, enum.Enum):
    """What happened to a submission."""
    ACCEPTED = "accepted"
    REJECTED_EMPTY = "rejected_empty"
    REJECTED_DUPLICATE = "rejected_duplicate"
    REJECTED_IN_FLIGHT = "rejected_in_flight"


@dataclass
class SubmissionResult:
    outcome: SubmissionOutcome
    message: Optional[Dict] = None
    reply: Optional[Dict] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == SubmissionOutcome.ACCEPTED


def normalize_content(raw: object, max_length: int = 500) -> Optional[str]:
    """
    Trim and bound message content.

    Returns None for non-text or blank input. Content longer than
    `max_length` is cut and suffixed with the truncation marker.
    """
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    if len(text) > max_length:
        text = text[:max_length] + TRUNCATION_MARKER
    return text


def responder_history(messages: List[Dict]) -> List[Dict[str, str]]:
    """Map stored messages to the responder's two-role history."""
    return [
        {
            "role": "user" if m["sender"] == SenderRole.USER.value else "assistant",
            "content": m["content"],
        }
        for m in messages
    ]


class MessageIntake:
    """Validates, deduplicates, persists and routes chat messages."""

    def __init__(
        self,
        store: MessageStore,
        registry: ConversationRegistry,
        router: ConnectionRouter,
        broadcast: AdminBroadcast,
        guard: BaseSubmissionGuard,
        responder: ResponderGateway,
        max_length: int = 500,
        history_size: int = 6,
    ):
        self.store = store
        self.registry = registry
        self.router = router
        self.broadcast = broadcast
        self.guard = guard
        self.responder = responder
        self.max_length = max_length
        self.history_size = history_size

    async def submit(
        self,
        conversation_id: str,
        sender: SenderRole,
        raw_content: object,
        origin_id: Optional[str] = None,
    ) -> SubmissionResult:
        """
        Run one inbound message through the pipeline.

        Args:
            conversation_id: Public conversation id
            sender: Author role
            raw_content: Content as received from the client
            origin_id: Connection that sent the message, if any

        Returns:
            SubmissionResult; rejections are reported, never raised

        Raises:
            StorageError: If the message itself could not be persisted
        """
        content = normalize_content(raw_content, self.max_length)
        if content is None:
            logger.info("submission_rejected_empty", conversation_id=conversation_id, sender=sender.value)
            return SubmissionResult(SubmissionOutcome.REJECTED_EMPTY)

        if sender == SenderRole.ADMIN:
            message = await self._accept(conversation_id, SenderRole.ADMIN, content, origin_id)
            return SubmissionResult(SubmissionOutcome.ACCEPTED, message=message)

        try:
            async with self.guard.hold(conversation_id, content):
                if await self.guard.is_duplicate(conversation_id, content):
                    logger.info("submission_rejected_duplicate", conversation_id=conversation_id)
                    return SubmissionResult(SubmissionOutcome.REJECTED_DUPLICATE)
                message = await self._accept(conversation_id, SenderRole.USER, content, origin_id)
                await self.guard.remember(conversation_id, content)
        except SubmissionInFlight:
            logger.info("submission_rejected_in_flight", conversation_id=conversation_id)
            return SubmissionResult(SubmissionOutcome.REJECTED_IN_FLIGHT)

        await self.broadcast.new_message_notice(conversation_id, raw_content)

        reply = None
        if self.registry.is_auto_mode(conversation_id):
            reply = await self._auto_reply(conversation_id, content, message["id"])
        return SubmissionResult(SubmissionOutcome.ACCEPTED, message=message, reply=reply)

    async def _accept(
        self,
        conversation_id: str,
        sender: SenderRole,
        content: str,
        origin_id: Optional[str],
        is_automated: bool = False,
    ) -> Dict:
        """Persist, fan out, refresh the preview and push a snapshot."""
        message = await self.store.save_message(conversation_id, sender, content, is_automated)

        # Views are lost on restart; the first message afterwards restores it
        _, created = self.registry.ensure_active(conversation_id)
        if created:
            await self.broadcast.new_conversation(conversation_id)

        if sender == SenderRole.USER:
            delivered = await self.router.fan_out_user_message(conversation_id, message, origin_id)
        else:
            delivered = await self.router.fan_out_admin_message(conversation_id, message, origin_id)

        self.registry.update_preview(conversation_id, content, sender)
        await self.broadcast.push_snapshot()

        logger.info(
            "message_accepted",
            conversation_id=conversation_id,
            message_id=message["id"],
            sender=sender.value,
            is_automated=is_automated,
            content_length=len(content),
            delivered=delivered
        )
        return message

    async def _auto_reply(self, conversation_id: str, prompt: str, message_id: str) -> Optional[Dict]:
        """Generate and route an automated reply. Never raises."""
        try:
            prior = await self.store.recent_messages(conversation_id, self.history_size, exclude_id=message_id)
        except StorageError as e:
            logger.warning("responder_history_unavailable", conversation_id=conversation_id, error=str(e))
            prior = []

        try:
            text = await self.responder.generate(prompt, responder_history(prior))
        except ResponderError as e:
            logger.warning(
                "responder_failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__
            )
            text = FALLBACK_REPLY

        content = normalize_content(text, self.max_length) or FALLBACK_REPLY
        try:
            return await self._accept(conversation_id, SenderRole.ADMIN, content, None, is_automated=True)
        except StorageError as e:
            logger.error("automated_reply_not_stored", conversation_id=conversation_id, error=str(e))
            return None
