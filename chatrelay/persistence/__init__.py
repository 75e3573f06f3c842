"""chatrelay persistence layer.

Provides SQLite-backed storage for chat sessions, their messages, and
message attachments.
"""

from chatrelay.persistence.database import close_db, init_db
from chatrelay.persistence.store import ChatStore

__all__ = [
    "ChatStore",
    "close_db",
    "init_db",
]
