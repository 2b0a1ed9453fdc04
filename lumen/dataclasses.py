from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID
import uuid

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)

STREAMING = "streaming"
FAILED = "failed"
UNSYNCED = "unsynced"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Principal:
    """
    The authenticated caller as reported by the identity provider
    """
    user_id: str
    email: Optional[str] = None


@dataclass
class ChatSession:
    id: UUID
    user_id: str
    context_type: str
    context_id: Optional[str]
    started_at: datetime
    last_active_at: datetime


@dataclass(frozen=True)
class ChatMessage:
    """
    A message as it exists in the store. Never mutated once created.
    """
    id: UUID
    session_id: UUID
    role: str
    content: str
    created_at: datetime

    is_placeholder = False
    failed = False


@dataclass
class PendingMessage:
    """
    In-memory assistant message built from streamed deltas.

    While ``status`` is streaming it is the session's placeholder. An aborted
    stream leaves it behind as failed (stream broke) or unsynced (stream
    completed but the final message could not be stored).
    """
    session_id: Optional[UUID]
    handle: str = field(default_factory=lambda: f"temp-{uuid.uuid4().hex}")
    content: str = ""
    created_at: datetime = field(default_factory=utcnow)
    status: str = STREAMING
    error: Optional[str] = None
    role: str = ASSISTANT

    @property
    def id(self) -> str:
        return self.handle

    @property
    def is_placeholder(self) -> bool:
        return self.status == STREAMING

    @property
    def failed(self) -> bool:
        return self.status != STREAMING
