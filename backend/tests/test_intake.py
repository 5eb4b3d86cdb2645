"""Tests for the message intake pipeline."""
import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chatrelay.models.message import SenderRole
from chatrelay.services.intake import (
    FALLBACK_REPLY,
    SubmissionOutcome,
    normalize_content,
    responder_history,
)
from chatrelay.services.message_store import StorageError
from chatrelay.services.responder import (
    ConfigurationError,
    ResponderGateway,
    TransportError,
    UpstreamError,
)
from chatrelay.services.submission_guard import RedisSubmissionGuard, SubmissionGuard, content_digest
from conftest import FakeConnection


async def open_conversation(hub):
    """Visitor with a session plus an admin observing the room."""
    visitor, admin = FakeConnection("visitor"), FakeConnection("admin")
    hub.connect(visitor)
    hub.connect(admin)
    ack = await hub.handle(visitor, "init_session", {})
    conversation_id = ack["conversation_id"]
    await hub.handle(admin, "admin_identify", None)
    await hub.handle(admin, "admin_join_room", {"conversation_id": conversation_id})
    return conversation_id, visitor, admin


def test_normalize_content():
    """Test trimming, rejection of blanks and truncation."""
    assert normalize_content("  hello \n") == "hello"
    assert normalize_content("   ") is None
    assert normalize_content("") is None
    assert normalize_content(None) is None
    assert normalize_content(42) is None
    assert normalize_content("a" * 500) == "a" * 500
    assert normalize_content("a" * 501) == "a" * 500 + "..."


def test_responder_history_maps_two_roles():
    """Test that stored senders map to user/assistant."""
    history = responder_history([
        {"sender": "user", "content": "Hi"},
        {"sender": "admin", "content": "Hello"},
    ])

    assert history == [
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello"},
    ]


@pytest.mark.asyncio
async def test_user_message_persisted_once_and_not_echoed(hub):
    """Test that a visitor message is stored once and reaches everyone but its sender."""
    conversation_id, visitor, admin = await open_conversation(hub)

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "  Is my order shipped?  ", origin_id="visitor")

    assert result.outcome == SubmissionOutcome.ACCEPTED
    stored = await hub.store.list_messages(conversation_id)
    assert len(stored) == 1
    assert stored[0]["sender"] == "user"
    assert stored[0]["content"] == "Is my order shipped?"
    assert admin.received("message") == [stored[0]]
    assert visitor.received("message") == []


@pytest.mark.asyncio
async def test_admin_message_reaches_visitor_and_sender(hub):
    """Test that admin messages are echoed back to the admin too."""
    conversation_id, visitor, admin = await open_conversation(hub)

    result = await hub.intake.submit(conversation_id, SenderRole.ADMIN, "Yes, it left today.", origin_id="admin")

    assert result.accepted
    assert visitor.received("message") == [result.message]
    assert admin.received("message") == [result.message]
    assert result.message["is_automated"] is False


@pytest.mark.asyncio
async def test_empty_content_is_rejected(hub):
    """Test that blank messages are neither stored nor delivered."""
    conversation_id, _, admin = await open_conversation(hub)

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "   \t ", origin_id="visitor")

    assert result.outcome == SubmissionOutcome.REJECTED_EMPTY
    assert await hub.store.list_messages(conversation_id) == []
    assert admin.received("message") == []


@pytest.mark.asyncio
async def test_duplicate_within_window_persisted_once(hub):
    """Test that resubmitting the same text within 5 seconds is dropped."""
    conversation_id, _, _ = await open_conversation(hub)

    first = await hub.intake.submit(conversation_id, SenderRole.USER, "Hello?", origin_id="visitor")
    second = await hub.intake.submit(conversation_id, SenderRole.USER, " Hello? ", origin_id="visitor")

    assert first.outcome == SubmissionOutcome.ACCEPTED
    assert second.outcome == SubmissionOutcome.REJECTED_DUPLICATE
    assert len(await hub.store.list_messages(conversation_id)) == 1


@pytest.mark.asyncio
async def test_same_text_accepted_after_window(hub):
    """Test that a repeated phrase after the window is a new message."""
    now = [0.0]
    hub.intake.guard = SubmissionGuard(duplicate_window=5.0, inflight_ttl=30.0, clock=lambda: now[0])
    conversation_id, _, _ = await open_conversation(hub)

    await hub.intake.submit(conversation_id, SenderRole.USER, "ok", origin_id="visitor")
    now[0] += 6
    result = await hub.intake.submit(conversation_id, SenderRole.USER, "ok", origin_id="visitor")

    assert result.outcome == SubmissionOutcome.ACCEPTED
    assert len(await hub.store.list_messages(conversation_id)) == 2


@pytest.mark.asyncio
async def test_admin_messages_are_not_deduplicated(hub):
    """Test that the duplicate window only applies to visitors."""
    conversation_id, _, _ = await open_conversation(hub)

    await hub.intake.submit(conversation_id, SenderRole.ADMIN, "One moment please", origin_id="admin")
    result = await hub.intake.submit(conversation_id, SenderRole.ADMIN, "One moment please", origin_id="admin")

    assert result.accepted
    assert len(await hub.store.list_messages(conversation_id)) == 2


@pytest.mark.asyncio
async def test_concurrent_identical_submissions_persist_once(hub, monkeypatch):
    """Test that two racing identical submissions produce one message."""
    conversation_id, _, admin = await open_conversation(hub)
    save_message = hub.store.save_message

    async def slow_save(*args, **kwargs):
        await asyncio.sleep(0.05)
        return await save_message(*args, **kwargs)

    monkeypatch.setattr(hub.store, "save_message", slow_save)

    results = await asyncio.gather(
        hub.intake.submit(conversation_id, SenderRole.USER, "Refund please", origin_id="visitor"),
        hub.intake.submit(conversation_id, SenderRole.USER, "Refund please", origin_id="visitor-reconnected"),
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == [SubmissionOutcome.ACCEPTED.value, SubmissionOutcome.REJECTED_IN_FLIGHT.value]
    assert len(await hub.store.list_messages(conversation_id)) == 1
    assert len(admin.received("message")) == 1


@pytest.mark.asyncio
async def test_long_content_is_truncated(hub):
    """Test that 600 characters are stored as 500 plus the marker."""
    conversation_id, _, _ = await open_conversation(hub)

    await hub.intake.submit(conversation_id, SenderRole.USER, "z" * 600, origin_id="visitor")

    stored = await hub.store.list_messages(conversation_id)
    assert stored[0]["content"] == "z" * 500 + "..."
    assert len(stored[0]["content"]) <= 500 + len("...")


@pytest.mark.asyncio
async def test_storage_failure_propagates_and_releases_guard(hub, monkeypatch):
    """Test that a failed write surfaces to the caller and leaves no marker behind."""
    conversation_id, _, admin = await open_conversation(hub)

    async def failing_save(*args, **kwargs):
        raise StorageError("database is locked")

    monkeypatch.setattr(hub.store, "save_message", failing_save)

    with pytest.raises(StorageError):
        await hub.intake.submit(conversation_id, SenderRole.USER, "Hello", origin_id="visitor")

    assert hub.intake.guard.in_flight_count() == 0
    assert admin.received("message") == []
    assert hub.registry.get(conversation_id).preview == "New conversation"


@pytest.mark.asyncio
async def test_user_message_updates_preview_and_notifies_admins(hub):
    """Test preview refresh, snapshot push and the new-message notice."""
    conversation_id, _, admin = await open_conversation(hub)
    lurker = FakeConnection("lurker")
    hub.connect(lurker)
    await hub.handle(lurker, "admin_identify", None)

    await hub.intake.submit(conversation_id, SenderRole.USER, "Where is my parcel?", origin_id="visitor")

    assert hub.registry.get(conversation_id).preview == "Where is my parcel?"
    for connection in (admin, lurker):
        notices = connection.received("new_message_notice")
        assert notices == [{"conversation_id": conversation_id, "content": "Where is my parcel?"}]
        latest = connection.received("conversation_list")[-1]
        assert latest[0]["preview"] == "Where is my parcel?"


@pytest.mark.asyncio
async def test_auto_mode_reply_follows_user_message(hub, responder):
    """Test that automated mode stores the visitor message, then the reply."""
    conversation_id, visitor, admin = await open_conversation(hub)
    await hub.handle(admin, "toggle_auto_mode", {"conversation_id": conversation_id, "enabled": True})

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "Where is my parcel?", origin_id="visitor")

    stored = await hub.store.list_messages(conversation_id)
    assert [m["sender"] for m in stored] == ["user", "admin"]
    assert stored[0]["content"] == "Where is my parcel?"
    assert stored[1]["content"] == responder.reply
    assert stored[1]["is_automated"] is True
    assert result.reply == stored[1]

    # Visitor sees only the reply, admin sees both in order
    assert visitor.received("message") == [stored[1]]
    assert admin.received("message") == stored
    assert responder.calls == [("Where is my parcel?", [])]


@pytest.mark.asyncio
async def test_auto_mode_sends_six_prior_messages(hub, responder):
    """Test that the responder gets the six most recent prior messages, oldest first."""
    conversation_id, _, _ = await open_conversation(hub)
    for i in range(4):
        await hub.intake.submit(conversation_id, SenderRole.USER, f"question {i}", origin_id="visitor")
        await hub.intake.submit(conversation_id, SenderRole.ADMIN, f"answer {i}", origin_id="admin")
    hub.registry.set_auto_mode(conversation_id, True)

    await hub.intake.submit(conversation_id, SenderRole.USER, "question 4", origin_id="visitor")

    prompt, history = responder.calls[0]
    assert prompt == "question 4"
    assert history == [
        {"role": "user", "content": "question 1"},
        {"role": "assistant", "content": "answer 1"},
        {"role": "user", "content": "question 2"},
        {"role": "assistant", "content": "answer 2"},
        {"role": "user", "content": "question 3"},
        {"role": "assistant", "content": "answer 3"},
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    UpstreamError("OpenAI API error: 500"),
    TransportError("No response received from OpenAI API"),
    ConfigurationError("OpenAI API key is not configured"),
])
async def test_auto_mode_failure_sends_fallback(hub, responder, error):
    """Test that responder failures become the scripted apology."""
    responder.error = error
    conversation_id, visitor, _ = await open_conversation(hub)
    hub.registry.set_auto_mode(conversation_id, True)

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "Hello?", origin_id="visitor")

    assert result.outcome == SubmissionOutcome.ACCEPTED
    stored = await hub.store.list_messages(conversation_id)
    assert [m["content"] for m in stored] == ["Hello?", FALLBACK_REPLY]
    assert stored[1]["sender"] == "admin"
    assert stored[1]["is_automated"] is True
    assert visitor.received("message") == [stored[1]]


@pytest.mark.asyncio
async def test_unconfigured_gateway_falls_back(hub):
    """Test the real gateway without an API key inside the pipeline."""
    hub.intake.responder = ResponderGateway(api_key="")
    conversation_id, _, _ = await open_conversation(hub)
    hub.registry.set_auto_mode(conversation_id, True)

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "Anyone there?", origin_id="visitor")

    assert result.reply["content"] == FALLBACK_REPLY


@pytest.mark.asyncio
async def test_no_reply_when_auto_mode_disabled(hub, responder):
    """Test that admin messages and non-automated conversations skip the responder."""
    conversation_id, _, admin = await open_conversation(hub)
    await hub.handle(admin, "toggle_auto_mode", {"conversation_id": conversation_id, "enabled": True})
    await hub.intake.submit(conversation_id, SenderRole.ADMIN, "Hi, I'm here", origin_id="admin")
    await hub.handle(admin, "toggle_auto_mode", {"conversation_id": conversation_id, "enabled": False})
    await hub.intake.submit(conversation_id, SenderRole.USER, "Great", origin_id="visitor")

    assert responder.calls == []
    assert len(await hub.store.list_messages(conversation_id)) == 2


@pytest.mark.asyncio
async def test_message_after_restart_recreates_view(hub):
    """Test that a message for a conversation the registry forgot restores its view."""
    admin = FakeConnection("admin")
    hub.connect(admin)
    await hub.handle(admin, "admin_identify", None)

    result = await hub.intake.submit("conv-from-before-restart", SenderRole.ADMIN, "Welcome back", origin_id="admin")

    assert result.accepted
    view = hub.registry.get("conv-from-before-restart")
    assert view is not None
    assert view.preview == "Welcome back"
    assert [n["conversation_id"] for n in admin.received("new_conversation")] == ["conv-from-before-restart"]


@pytest.mark.asyncio
async def test_redis_guard_outage_completes_pipeline(hub, responder):
    """Test that a failing Redis guard still runs every step for the message."""
    redis_client = AsyncMock()
    redis_client.set.return_value = True
    redis_client.get.return_value = None
    redis_client.delete.side_effect = RedisConnectionError("Connection reset by peer")
    hub.intake.guard = RedisSubmissionGuard(redis_client)
    conversation_id, visitor, admin = await open_conversation(hub)
    hub.registry.set_auto_mode(conversation_id, True)

    result = await hub.intake.submit(conversation_id, SenderRole.USER, "Hello", origin_id="visitor")

    assert result.outcome == SubmissionOutcome.ACCEPTED
    stored = await hub.store.list_messages(conversation_id)
    assert [(m["sender"], m["content"]) for m in stored] == [("user", "Hello"), ("admin", responder.reply)]
    assert admin.received("new_message_notice") == [{"conversation_id": conversation_id, "content": "Hello"}]
    assert visitor.received("message") == [stored[1]]
    redis_client.set.assert_any_await(f"submissions:last:{conversation_id}", content_digest("Hello"), px=5000)
