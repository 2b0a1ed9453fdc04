from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Integer, Uuid, Index
from sqlalchemy.orm import declarative_base
import uuid

Base = declarative_base()


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    context_type = Column(String, nullable=False, default="global")
    context_id = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    last_active_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_chat_sessions_context", "user_id", "context_type", "context_id"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("chat_sessions.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True)
    role = Column(String, nullable=False)  # user / assistant
    content = Column(Text, nullable=False)
    # per-session counter, breaks created_at ties
    position = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
