from datetime import datetime, timezone
from typing import List, Optional, Protocol
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from lumen.db import models
from lumen.dataclasses import ChatMessage, ChatSession, ROLES, utcnow
from lumen.exceptions import PersistenceFailure
from lumen.logger import logging


class MessageStore(Protocol):
    async def append_message(self, session_id: UUID, role: str, content: str,
                             user_id: Optional[str] = None) -> ChatMessage: ...

    async def list_messages(self, session_id: UUID) -> List[ChatMessage]: ...

    async def touch_session(self, session_id: UUID, timestamp: datetime) -> None: ...


class SessionStore(Protocol):
    async def find_latest_session(self, user_id: str, context_type: str,
                                  context_id: Optional[str]) -> Optional[ChatSession]: ...

    async def create_session(self, user_id: str, context_type: str,
                             context_id: Optional[str], now: datetime) -> ChatSession: ...

    async def list_sessions(self, user_id: str) -> List[ChatSession]: ...


def _aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_session(row: models.ChatSession) -> ChatSession:
    return ChatSession(
        id=row.id,
        user_id=row.user_id,
        context_type=row.context_type,
        context_id=row.context_id,
        started_at=_aware(row.started_at),
        last_active_at=_aware(row.last_active_at),
    )


def _to_message(row: models.ChatMessage) -> ChatMessage:
    return ChatMessage(
        id=row.id,
        session_id=row.session_id,
        role=row.role,
        content=row.content,
        created_at=_aware(row.created_at),
    )


class SqlChatStore:
    """
    Session and message persistence over an async SQLAlchemy sessionmaker.

    Each operation is one unit of work: it either commits completely or is
    rolled back and raises PersistenceFailure.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def append_message(self, session_id, role, content, user_id=None) -> ChatMessage:
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(func.max(models.ChatMessage.position))
                    .where(models.ChatMessage.session_id == session_id)
                )
                last_position = result.scalar()
                msg = models.ChatMessage(
                    session_id=session_id,
                    user_id=user_id,
                    role=role,
                    content=content,
                    position=(last_position or 0) + 1,
                    created_at=utcnow(),
                )
                db.add(msg)
                await db.commit()
                return _to_message(msg)
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in append_message for session {session_id}: {e}")
            raise PersistenceFailure() from e

    async def list_messages(self, session_id) -> List[ChatMessage]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(models.ChatMessage)
                    .where(models.ChatMessage.session_id == session_id)
                    .order_by(models.ChatMessage.created_at.asc(), models.ChatMessage.position.asc())
                )
                return [_to_message(m) for m in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in list_messages for session {session_id}: {e}")
            raise PersistenceFailure("Failed to load messages") from e

    async def touch_session(self, session_id, timestamp) -> None:
        try:
            async with self.session_factory() as db:
                session = await db.get(models.ChatSession, session_id)
                if session is None:
                    return
                session.last_active_at = timestamp
                await db.commit()
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in touch_session for session {session_id}: {e}")
            raise PersistenceFailure("Failed to update chat session") from e

    async def find_latest_session(self, user_id, context_type, context_id) -> Optional[ChatSession]:
        q = select(models.ChatSession).where(
            models.ChatSession.user_id == user_id,
            models.ChatSession.context_type == context_type,
        )
        if context_id is None:
            q = q.where(models.ChatSession.context_id.is_(None))
        else:
            q = q.where(models.ChatSession.context_id == context_id)
        q = q.order_by(models.ChatSession.last_active_at.desc()).limit(1)
        try:
            async with self.session_factory() as db:
                result = await db.execute(q)
                row = result.scalars().first()
                return _to_session(row) if row else None
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in find_latest_session: {e}")
            raise PersistenceFailure("Failed to load chat session") from e

    async def create_session(self, user_id, context_type, context_id, now) -> ChatSession:
        try:
            async with self.session_factory() as db:
                session = models.ChatSession(
                    user_id=user_id,
                    context_type=context_type,
                    context_id=context_id,
                    started_at=now,
                    last_active_at=now,
                )
                db.add(session)
                await db.commit()
                return _to_session(session)
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in create_session: {e}")
            raise PersistenceFailure("Failed to create chat session") from e

    async def list_sessions(self, user_id) -> List[ChatSession]:
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(models.ChatSession)
                    .where(models.ChatSession.user_id == user_id)
                    .order_by(models.ChatSession.last_active_at.desc())
                )
                return [_to_session(s) for s in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in list_sessions: {e}")
            raise PersistenceFailure("Failed to load chat sessions") from e

    async def get_session(self, session_id, user_id) -> Optional[ChatSession]:
        try:
            async with self.session_factory() as db:
                session = await db.get(models.ChatSession, session_id)
        except (SQLAlchemyError, OSError) as e:
            logging.error(f"Error in get_session: {e}")
            raise PersistenceFailure("Failed to load chat session") from e
        if session is None or session.user_id != user_id:
            return None
        return _to_session(session)
