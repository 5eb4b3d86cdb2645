"""Administrator broadcast: registry changes pushed to every admin."""
from typing import Any, Dict

import structlog

from chatrelay.services.connections import ConnectionRouter
from chatrelay.services.registry import ConversationRegistry

logger = structlog.get_logger()


class AdminBroadcast:
    """Best-effort, at-most-once delivery to currently connected admins."""

    def __init__(self, router: ConnectionRouter, registry: ConversationRegistry):
        self.router = router
        self.registry = registry

    async def notify_all(self, event: str, payload: Any) -> int:
        delivered = await self.router.deliver(self.router.admin_ids(), event, payload)
        logger.debug("admin_broadcast", event_name=event, delivered=delivered)
        return delivered

    async def push_snapshot(self) -> int:
        return await self.notify_all("conversation_list", self.registry.snapshot_payload())

    async def new_conversation(self, conversation_id: str) -> int:
        view = self.registry.get(conversation_id)
        payload = view.model_dump(mode="json") if view else {"conversation_id": conversation_id}
        return await self.notify_all("new_conversation", payload)

    async def new_message_notice(self, conversation_id: str, content: str) -> int:
        return await self.notify_all(
            "new_message_notice",
            {"conversation_id": conversation_id, "content": content},
        )

    async def auto_mode_changed(self, conversation_id: str, enabled: bool) -> int:
        payload: Dict[str, Any] = {"conversation_id": conversation_id, "enabled": enabled}
        return await self.notify_all("auto_mode_changed", payload)
