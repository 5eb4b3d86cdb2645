"""Public conversation identifiers."""
import uuid


def generate_conversation_id() -> str:
    """Random, unguessable id handed to visitors (uuid4, 122 random bits)."""
    return str(uuid.uuid4())
