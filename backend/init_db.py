"""Create the chat relay tables."""
import sys
from sqlalchemy import inspect

from chatrelay.config import get_settings
from chatrelay.database import engine, Base
from chatrelay.models import Conversation, Message  # noqa: F401 (registers tables)


def init_database():
    """Create conversations and messages tables if they are missing."""
    settings = get_settings()
    print(f"Creating database tables on {settings.database_url.split('@')[-1]} ...")

    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        print(f"✗ Error initializing database: {e}")
        sys.exit(1)

    tables = inspect(engine).get_table_names()
    for table in ("conversations", "messages"):
        mark = "✓" if table in tables else "✗"
        print(f"{mark} {table}")

    print("\n" + "="*50)
    print("✓ Database initialized successfully!")
    print("="*50)
    print("Start the relay with:")
    print("  uvicorn chatrelay.main:app --reload")


if __name__ == "__main__":
    init_database()
