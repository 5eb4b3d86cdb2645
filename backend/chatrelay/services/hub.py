"""Realtime hub: dispatches client events to the relay services.

One hub exists per process. It owns the registry, the connection router and
the intake pipeline, and is handed to the WebSocket endpoint through
`app.state.hub`.
"""
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatrelay.config import Settings
from chatrelay.models.message import SenderRole
from chatrelay.schemas.realtime import (
    ChatMessagePayload,
    ConversationPayload,
    ConversationView,
    InitSessionPayload,
    ToggleAutoModePayload,
)
from chatrelay.services.broadcast import AdminBroadcast
from chatrelay.services.connections import Connection, ConnectionRole, ConnectionRouter
from chatrelay.services.identifiers import generate_conversation_id
from chatrelay.services.intake import MessageIntake
from chatrelay.services.message_store import MessageStore, StorageError
from chatrelay.services.registry import ConversationRegistry, conversation_label
from chatrelay.services.responder import ResponderGateway
from chatrelay.services.submission_guard import (
    BaseSubmissionGuard,
    RedisSubmissionGuard,
    SubmissionGuard,
)

logger = structlog.get_logger()

Handler = Callable[[Connection, Any], Awaitable[Optional[Dict]]]


def merge_conversations(persisted: List[Dict], views: List[ConversationView]) -> List[Dict]:
    """
    Combine stored conversations with the live registry.

    Live-only conversations (not stored yet) come first, then stored ones in
    store order. Live fields win over stored ones.
    """
    live = {view.conversation_id: view for view in views}
    merged = []
    for record in persisted:
        messages = record["messages"]
        last = messages[-1] if messages else None
        view = live.pop(record["conversation_id"], None)
        merged.append({
            "conversation_id": record["conversation_id"],
            "label": conversation_label(record["conversation_id"]),
            "ip": record["ip"],
            "user_agent": record["user_agent"],
            "created_at": record["created_at"],
            "message_count": len(messages),
            "preview": view.preview if view else (last["content"] if last else None),
            "last_sender": view.last_sender if view else (last["sender"] if last else None),
            "last_activity": view.last_activity.isoformat() if view else (
                last["created_at"] if last else record["created_at"]
            ),
            "is_active": view.is_active if view else False,
            "auto_mode": view.auto_mode if view else False,
        })
    live_only = [
        {
            "conversation_id": view.conversation_id,
            "label": view.label,
            "ip": None,
            "user_agent": None,
            "created_at": None,
            "message_count": 0,
            "preview": view.preview,
            "last_sender": view.last_sender,
            "last_activity": view.last_activity.isoformat(),
            "is_active": view.is_active,
            "auto_mode": view.auto_mode,
        }
        for view in live.values()
    ]
    return live_only + merged


class EventNotPermitted(Exception):
    """The sending connection's role does not allow this event."""
    pass


class RelayHub:
    """Entry point for connection lifecycle and inbound events."""

    def __init__(
        self,
        store: MessageStore,
        registry: ConversationRegistry,
        router: ConnectionRouter,
        broadcast: AdminBroadcast,
        intake: MessageIntake,
    ):
        self.store = store
        self.registry = registry
        self.router = router
        self.broadcast = broadcast
        self.intake = intake
        self._handlers: Dict[str, Handler] = {
            "init_session": self.init_session,
            "user_message": self.user_message,
            "admin_message": self.admin_message,
            "admin_identify": self.admin_identify,
            "admin_join_room": self.admin_join_room,
            "admin_leave_room": self.admin_leave_room,
            "list_active_conversations": self.list_active_conversations,
            "list_all_conversations": self.list_all_conversations,
            "list_messages": self.list_messages,
            "toggle_auto_mode": self.toggle_auto_mode,
        }

    # Connection lifecycle

    def connect(self, connection: Connection, client_ip: Optional[str] = None, user_agent: Optional[str] = None) -> None:
        self.router.register(connection, client_ip=client_ip, user_agent=user_agent)

    async def disconnect(self, connection_id: str) -> None:
        """Remove routing state; a visitor's conversation becomes inactive."""
        binding = self.router.disconnect(connection_id)
        if binding is None or binding.role != ConnectionRole.USER:
            return
        conversation_id = binding.conversation_id
        # A reconnect may already hold the same conversation
        for member_id in self.router.room_members(conversation_id):
            other = self.router.binding(member_id)
            if other is not None and other.role == ConnectionRole.USER:
                return
        self.registry.mark_inactive(conversation_id)
        await self.broadcast.push_snapshot()

    async def handle(self, connection: Connection, event: str, data: Any) -> Optional[Dict]:
        """
        Dispatch one inbound event.

        Returns the acknowledgment payload, or None. Malformed or forbidden
        events and storage failures are logged and dropped.
        """
        handler = self._handlers.get(event)
        if handler is None:
            logger.warning("unknown_event", connection_id=connection.id, event_name=event)
            return None
        try:
            return await handler(connection, data)
        except ValidationError as e:
            logger.warning("malformed_event", connection_id=connection.id, event_name=event, errors=e.error_count())
        except EventNotPermitted as e:
            logger.warning("event_not_permitted", connection_id=connection.id, event_name=event, reason=str(e))
        except StorageError as e:
            logger.error("event_handler_failed", connection_id=connection.id, event_name=event, error=str(e))
        return None

    # Visitor events

    async def init_session(self, connection: Connection, data: Any) -> Optional[Dict]:
        payload = InitSessionPayload.model_validate(data or {})
        binding = self.router.binding(connection.id)
        if binding is None:
            return None
        if binding.role == ConnectionRole.USER:
            # Rebinding is rejected; the first conversation stays bound
            logger.info(
                "session_rebind_rejected",
                connection_id=connection.id,
                bound=binding.conversation_id,
                requested=payload.conversation_id
            )
            return {"conversation_id": binding.conversation_id}
        if binding.role == ConnectionRole.ADMIN:
            raise EventNotPermitted("admin connections cannot start visitor sessions")

        conversation_id = payload.conversation_id
        if conversation_id:
            recreated = await self.store.ensure_conversation(conversation_id, binding.client_ip, binding.user_agent)
            if recreated:
                logger.info("conversation_recreated", conversation_id=conversation_id)
        else:
            conversation_id = generate_conversation_id()
            await self.store.create_conversation(conversation_id, binding.client_ip, binding.user_agent)
            logger.info("conversation_created", conversation_id=conversation_id)

        if not self.router.bind_user(connection.id, conversation_id):
            # Disconnected while the row was being written
            return None

        _, created = self.registry.ensure_active(conversation_id)
        self.registry.mark_active(conversation_id)
        if created:
            await self.broadcast.new_conversation(conversation_id)
        await self.broadcast.push_snapshot()
        return {"conversation_id": conversation_id}

    async def user_message(self, connection: Connection, data: Any) -> Optional[Dict]:
        payload = ChatMessagePayload.model_validate(data)
        binding = self.router.binding(connection.id)
        if binding is None or binding.role != ConnectionRole.USER:
            raise EventNotPermitted("connection has no visitor session")
        if binding.conversation_id != payload.conversation_id:
            raise EventNotPermitted("visitors may only write to their own conversation")
        result = await self.intake.submit(
            payload.conversation_id, SenderRole.USER, payload.content, origin_id=connection.id
        )
        return {"status": result.outcome.value}

    # Admin events

    def _require_admin(self, connection: Connection) -> None:
        if not self.router.is_admin(connection.id):
            raise EventNotPermitted("admin_identify required")

    async def admin_identify(self, connection: Connection, data: Any) -> Optional[Dict]:
        if not self.router.identify_admin(connection.id):
            raise EventNotPermitted("visitor connections cannot identify as admin")
        logger.info("admin_identified", connection_id=connection.id)
        return {"status": "ok"}

    async def admin_message(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        payload = ChatMessagePayload.model_validate(data)
        result = await self.intake.submit(
            payload.conversation_id, SenderRole.ADMIN, payload.content, origin_id=connection.id
        )
        return {"status": result.outcome.value}

    async def admin_join_room(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        payload = ConversationPayload.model_validate(data)
        self.router.join_room(connection.id, payload.conversation_id)
        return {"conversation_id": payload.conversation_id}

    async def admin_leave_room(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        payload = ConversationPayload.model_validate(data)
        self.router.leave_room(connection.id, payload.conversation_id)
        return {"conversation_id": payload.conversation_id}

    async def list_active_conversations(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        await self.router.deliver([connection.id], "conversation_list", self.registry.snapshot_payload())
        return None

    async def list_all_conversations(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        persisted = await self.store.list_conversations()
        merged = merge_conversations(persisted, self.registry.snapshot())
        await self.router.deliver([connection.id], "all_conversations_list", merged)
        return None

    async def list_messages(self, connection: Connection, data: Any) -> Optional[Dict]:
        payload = ConversationPayload.model_validate(data)
        binding = self.router.binding(connection.id)
        if binding is None:
            return None
        if binding.role == ConnectionRole.USER:
            if binding.conversation_id != payload.conversation_id:
                raise EventNotPermitted("visitors may only read their own conversation")
        elif binding.role != ConnectionRole.ADMIN:
            raise EventNotPermitted("connection has no session")
        messages = await self.store.list_messages(payload.conversation_id)
        await self.router.deliver([connection.id], "message_history", messages)
        return None

    async def toggle_auto_mode(self, connection: Connection, data: Any) -> Optional[Dict]:
        self._require_admin(connection)
        payload = ToggleAutoModePayload.model_validate(data)
        self.registry.set_auto_mode(payload.conversation_id, payload.enabled)
        logger.info("auto_mode_toggled", conversation_id=payload.conversation_id, enabled=payload.enabled)
        await self.broadcast.auto_mode_changed(payload.conversation_id, payload.enabled)
        await self.broadcast.push_snapshot()
        return {"conversation_id": payload.conversation_id, "enabled": payload.enabled}


def build_guard(settings: Settings, redis_client: Optional[Any] = None) -> BaseSubmissionGuard:
    """Redis-backed guard when a client is available, in-process otherwise."""
    if redis_client is not None:
        return RedisSubmissionGuard(
            redis_client,
            duplicate_window=settings.duplicate_window_seconds,
            inflight_ttl=settings.inflight_guard_ttl_seconds,
        )
    return SubmissionGuard(
        duplicate_window=settings.duplicate_window_seconds,
        inflight_ttl=settings.inflight_guard_ttl_seconds,
    )


def build_hub(
    settings: Settings,
    session_factory: Callable[[], Session],
    redis_client: Optional[Any] = None,
    responder: Optional[ResponderGateway] = None,
) -> RelayHub:
    """Wire the relay services from settings."""
    store = MessageStore(session_factory)
    registry = ConversationRegistry(
        user_preview_length=settings.user_preview_length,
        admin_preview_length=settings.admin_preview_length,
        max_views=settings.registry_max_views,
    )
    router = ConnectionRouter()
    broadcast = AdminBroadcast(router, registry)
    responder = responder or ResponderGateway(
        api_key=settings.openai_api_key,
        model=settings.responder_model,
        instructions=settings.responder_instructions,
        timeout=settings.responder_timeout_seconds,
    )
    intake = MessageIntake(
        store=store,
        registry=registry,
        router=router,
        broadcast=broadcast,
        guard=build_guard(settings, redis_client),
        responder=responder,
        max_length=settings.max_message_length,
        history_size=settings.responder_history_size,
    )
    return RelayHub(store, registry, router, broadcast, intake)
