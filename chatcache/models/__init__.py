from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, new_id
from .message import Message
from .thread import Thread

__all__ = [
    "Base",
    "Message",
    "Thread",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "new_id",
]
