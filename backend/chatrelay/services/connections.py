"""Connection router: who is connected, in which role, watching what.

Routing rules:
- visitor-authored messages go to every room member except the sender
- admin-authored messages (human or automated) go to every room member,
  the sender included
- admin broadcasts go to every identified admin, whatever rooms they joined
"""
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

import structlog

logger = structlog.get_logger()


class Connection(Protocol):
    """A live client connection able to receive events."""

    id: str

    async def send(self, event: str, data: Any) -> None:
        ...


class ConnectionRole(str, enum.Enum):
    """Role of a connection in its lifecycle."""
    CONNECTED = "connected"
    USER = "user"
    ADMIN = "admin"


@dataclass
class ConnectionBinding:
    """Routing state of one connection."""

    connection: Connection
    role: ConnectionRole = ConnectionRole.CONNECTED
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None
    conversation_id: Optional[str] = None  # visitors only
    observing: Set[str] = field(default_factory=set)  # admins only


class ConnectionRouter:
    """
    Maps connections to roles and rooms and performs fan-out.

    Mutations never await, so on the event loop each one runs to completion
    before another handler can observe the maps. Fan-out copies recipient
    lists before sending.
    """

    def __init__(self):
        self._bindings: Dict[str, ConnectionBinding] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._admins: Set[str] = set()

    def register(
        self,
        connection: Connection,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ConnectionBinding:
        binding = ConnectionBinding(connection=connection, client_ip=client_ip, user_agent=user_agent)
        self._bindings[connection.id] = binding
        return binding

    def binding(self, connection_id: str) -> Optional[ConnectionBinding]:
        return self._bindings.get(connection_id)

    def bind_user(self, connection_id: str, conversation_id: str) -> bool:
        """
        Bind a connection to its visitor conversation and join that room.

        First bind wins: returns False, changing nothing, if the connection
        is already bound or identified as an admin.
        """
        binding = self._bindings.get(connection_id)
        if binding is None or binding.role != ConnectionRole.CONNECTED:
            return False
        binding.role = ConnectionRole.USER
        binding.conversation_id = conversation_id
        self._rooms.setdefault(conversation_id, set()).add(connection_id)
        return True

    def identify_admin(self, connection_id: str) -> bool:
        """Mark a connection as admin. Visitor connections cannot become admins."""
        binding = self._bindings.get(connection_id)
        if binding is None or binding.role == ConnectionRole.USER:
            return False
        binding.role = ConnectionRole.ADMIN
        self._admins.add(connection_id)
        return True

    def is_admin(self, connection_id: str) -> bool:
        return connection_id in self._admins

    def join_room(self, connection_id: str, conversation_id: str) -> bool:
        if connection_id not in self._admins:
            return False
        self._bindings[connection_id].observing.add(conversation_id)
        self._rooms.setdefault(conversation_id, set()).add(connection_id)
        return True

    def leave_room(self, connection_id: str, conversation_id: str) -> bool:
        if connection_id not in self._admins:
            return False
        self._bindings[connection_id].observing.discard(conversation_id)
        self._remove_from_room(connection_id, conversation_id)
        return True

    def disconnect(self, connection_id: str) -> Optional[ConnectionBinding]:
        """Drop every trace of a connection and return its last binding."""
        binding = self._bindings.pop(connection_id, None)
        if binding is None:
            return None
        self._admins.discard(connection_id)
        if binding.conversation_id is not None:
            self._remove_from_room(connection_id, binding.conversation_id)
        for conversation_id in binding.observing:
            self._remove_from_room(connection_id, conversation_id)
        return binding

    def room_members(self, conversation_id: str) -> Set[str]:
        return set(self._rooms.get(conversation_id, ()))

    def admin_ids(self) -> Set[str]:
        return set(self._admins)

    async def fan_out_user_message(self, conversation_id: str, message: Dict, origin_id: Optional[str]) -> int:
        """Deliver a visitor message to the room, never back to its sender."""
        recipients = self.room_members(conversation_id)
        recipients.discard(origin_id)
        return await self.deliver(recipients, "message", message)

    async def fan_out_admin_message(self, conversation_id: str, message: Dict, origin_id: Optional[str]) -> int:
        """Deliver an admin or automated message to the room, sender included."""
        recipients = self.room_members(conversation_id)
        if origin_id is not None:
            recipients.add(origin_id)
        return await self.deliver(recipients, "message", message)

    async def deliver(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        """
        Send one event to each listed connection that is still bound.

        Connections that disappeared or fail to send are skipped. Returns the
        number of successful deliveries.
        """
        delivered = 0
        targets: List[ConnectionBinding] = [
            self._bindings[cid] for cid in connection_ids if cid in self._bindings
        ]
        for binding in targets:
            try:
                await binding.connection.send(event, data)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    connection_id=binding.connection.id,
                    event_name=event,
                    error=str(e),
                    error_type=type(e).__name__
                )
        return delivered

    def _remove_from_room(self, connection_id: str, conversation_id: str) -> None:
        members = self._rooms.get(conversation_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[conversation_id]
