"""Shared fixtures for relay tests."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from chatrelay.config import Settings
from chatrelay.database import Base
from chatrelay.models import Conversation, Message  # noqa: F401 (registers tables)
from chatrelay.services.hub import build_hub


class FakeConnection:
    """Records every event sent to it."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.events = []

    async def send(self, event, data):
        self.events.append((event, data))

    def received(self, event):
        return [data for name, data in self.events if name == event]


class FakeResponder:
    """Stands in for the OpenAI-backed responder."""

    def __init__(self, reply="Thanks for waiting, your parcel left our warehouse today.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []
        self.configured = True

    async def generate(self, prompt, history):
        self.calls.append((prompt, history))
        if self.error is not None:
            raise self.error
        return self.reply

    async def close(self):
        pass


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite database, one per test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'relay.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def hub(session_factory, responder):
    return build_hub(Settings(openai_api_key="", redis_url=""), session_factory, responder=responder)
