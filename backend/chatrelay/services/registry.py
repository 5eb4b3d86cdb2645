"""Conversation registry: the live view of active conversations.

Owns the active-conversation views and the automated-response flags. The
registry is created once per process and injected into the realtime hub; it
is never rebuilt from the database (the history endpoints do that).
"""
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import structlog

from chatrelay.models.message import SenderRole
from chatrelay.schemas.realtime import ConversationView

logger = structlog.get_logger()

PLACEHOLDER_PREVIEW = "New conversation"
ELLIPSIS = "..."


def conversation_label(conversation_id: str) -> str:
    """Short human label for admin lists."""
    return f"Visitor {conversation_id[:8]}"


def truncate(text: str, limit: int) -> str:
    """Cut `text` to `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


class ConversationRegistry:
    """
    Thread-safe registry of active-conversation views.

    All reads hand out copies, so a snapshot never exposes a view that is
    being modified.
    """

    def __init__(
        self,
        user_preview_length: int = 50,
        admin_preview_length: int = 40,
        max_views: int = 0,
    ):
        self._lock = threading.Lock()
        self._views: "OrderedDict[str, ConversationView]" = OrderedDict()
        self._auto_mode: Set[str] = set()
        self.user_preview_length = user_preview_length
        self.admin_preview_length = admin_preview_length
        self.max_views = max_views

    def ensure_active(self, conversation_id: str) -> Tuple[ConversationView, bool]:
        """
        Return the view for `conversation_id`, creating it if needed.

        Returns:
            Tuple of (view copy, created). `created` tells the caller to
            announce a new conversation to administrators.
        """
        with self._lock:
            view = self._views.get(conversation_id)
            if view is not None:
                return self._copy(view), False

            view = ConversationView(
                conversation_id=conversation_id,
                label=conversation_label(conversation_id),
                preview=PLACEHOLDER_PREVIEW,
                last_activity=datetime.utcnow(),
                is_active=True,
            )
            self._views[conversation_id] = view
            self._evict()
            return self._copy(view), True

    def mark_active(self, conversation_id: str) -> None:
        with self._lock:
            view = self._views.get(conversation_id)
            if view is not None:
                view.is_active = True

    def mark_inactive(self, conversation_id: str) -> None:
        """Flag the view as disconnected. The preview is kept."""
        with self._lock:
            view = self._views.get(conversation_id)
            if view is not None:
                view.is_active = False
                self._evict()

    def update_preview(self, conversation_id: str, text: str, actor: SenderRole) -> bool:
        """
        Refresh preview text and activity time.

        Unknown conversations are ignored. Returns whether a view was updated.
        """
        limit = self.user_preview_length if actor == SenderRole.USER else self.admin_preview_length
        preview = truncate(text, limit)
        with self._lock:
            view = self._views.get(conversation_id)
            if view is None:
                return False
            view.preview = preview
            view.last_sender = actor.value
            view.last_activity = datetime.utcnow()
            return True

    def set_auto_mode(self, conversation_id: str, enabled: bool) -> None:
        with self._lock:
            if enabled:
                self._auto_mode.add(conversation_id)
            else:
                self._auto_mode.discard(conversation_id)

    def is_auto_mode(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._auto_mode

    def get(self, conversation_id: str) -> Optional[ConversationView]:
        with self._lock:
            view = self._views.get(conversation_id)
            return self._copy(view) if view is not None else None

    def snapshot(self) -> List[ConversationView]:
        """Copies of every view, in order of first activation."""
        with self._lock:
            return [self._copy(view) for view in self._views.values()]

    def snapshot_payload(self) -> List[Dict]:
        """JSON-ready snapshot for `conversation_list` pushes."""
        return [view.model_dump(mode="json") for view in self.snapshot()]

    def _copy(self, view: ConversationView) -> ConversationView:
        copy = view.model_copy()
        copy.auto_mode = view.conversation_id in self._auto_mode
        return copy

    def _evict(self) -> None:
        # Caller holds the lock. Only disconnected views are ever evicted.
        if not self.max_views or len(self._views) <= self.max_views:
            return
        for conversation_id in [cid for cid, v in self._views.items() if not v.is_active]:
            if len(self._views) <= self.max_views:
                break
            del self._views[conversation_id]
            logger.info("conversation_view_evicted", conversation_id=conversation_id)
