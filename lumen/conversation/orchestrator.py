import asyncio
from enum import Enum
from typing import Callable, Hashable, Optional
from datetime import datetime

from lumen.auth.auth_utils import IdentityProvider
from lumen.conversation.reconciler import Reconciler
from lumen.conversation.single_flight import FlightToken, SingleFlight
from lumen.dataclasses import ASSISTANT, USER, UNSYNCED, ChatMessage, ChatSession, PendingMessage, utcnow
from lumen.exceptions import (
    ChatEngineError,
    PersistenceFailure,
    SendInProgress,
    SessionFailure,
    StreamFailure,
    Unauthenticated,
)
from lumen.generator.assistant_client import AssistantClient
from lumen.logger import logging
from lumen.memory.chat_memory import MessageStore
from lumen.memory.session_manager import DEFAULT_CONTEXT, SessionResolver
from lumen.streaming.sse_decoder import iter_deltas

Notifier = Callable[[str, str], None]


class SendState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    PERSISTING_USER = "persisting_user"
    STREAMING = "streaming"
    PERSISTING_ASSISTANT = "persisting_assistant"
    ERRORED = "errored"


def log_notification(title: str, description: str):
    logging.error(f"[notify] {title}: {description}")


class ChatOrchestrator:
    """
    Sends user messages for one conversation context and reconciles the replies.

    A send runs: resolve session, store the user message, stream the reply
    into a placeholder, store the reply, touch the session. Once the user
    message is stored nothing is rolled back; a failed reply keeps whatever
    text arrived. Errors are reported once through ``notify`` and re-raised.
    """

    def __init__(self, resolver: SessionResolver, store: MessageStore,
                 assistant: AssistantClient, identity: IdentityProvider,
                 reconciler: Optional[Reconciler] = None,
                 gate: Optional[SingleFlight] = None,
                 context_type: str = DEFAULT_CONTEXT,
                 context_id: Optional[str] = None,
                 scope: Optional[Hashable] = None,
                 notify: Notifier = log_notification,
                 clock: Callable[[], datetime] = utcnow):
        self.resolver = resolver
        self.store = store
        self.assistant = assistant
        self.identity = identity
        self.reconciler = reconciler or Reconciler()
        self.gate = gate or SingleFlight()
        self.context_type = context_type
        self.context_id = context_id
        self.scope = scope
        self.notify = notify
        self.clock = clock
        self.state = SendState.IDLE
        self.session: Optional[ChatSession] = None

    @property
    def key(self) -> Hashable:
        return (self.scope, self.context_type, self.context_id)

    @property
    def is_loading(self) -> bool:
        return self.state != SendState.IDLE

    @property
    def is_streaming(self) -> bool:
        return self.state == SendState.STREAMING

    def _set_state(self, state: SendState):
        if state != self.state:
            logging.info(f"Chat {self.key}: {self.state.value} -> {state.value}")
        self.state = state

    def _surface(self, error: ChatEngineError):
        self._set_state(SendState.ERRORED)
        logging.error(f"Chat {self.key} failed: {type(error).__name__}: {error.message}")
        try:
            self.notify(error.title, error.message)
        except Exception as e:
            logging.error(f"Notification failed: {e}", exc_info=True)

    def _reject_if_busy(self):
        if self.gate.busy(self.key):
            error = SendInProgress()
            self._surface_without_state(error)
            raise error

    def _surface_without_state(self, error: ChatEngineError):
        # the flight holding the gate owns the state machine
        logging.warning(f"Chat {self.key}: {error.message}")
        try:
            self.notify(error.title, error.message)
        except Exception as e:
            logging.error(f"Notification failed: {e}", exc_info=True)

    async def _run(self, step, *args):
        self._reject_if_busy()
        try:
            async with self.gate.hold(self.key) as token:
                return await step(token, *args)
        except ChatEngineError as e:
            self._surface(e)
            raise
        finally:
            self._set_state(SendState.IDLE)

    async def _resolve(self, token: FlightToken) -> ChatSession:
        token.check()
        self._set_state(SendState.RESOLVING)
        try:
            session = await self.resolver.resolve(self.context_type, self.context_id)
        except ChatEngineError as e:
            logging.error(f"Session resolution failed: {type(e).__name__}: {e.message}")
            raise SessionFailure() from e
        self.session = session
        return session

    async def _touch(self, session: ChatSession):
        now = self.clock()
        try:
            await self.store.touch_session(session.id, now)
        except PersistenceFailure as e:
            logging.warning(f"Could not update last activity of session {session.id}: {e.message}")
            return
        session.last_active_at = now

    async def load(self) -> Optional[ChatSession]:
        """Resolve the context's session and show its stored messages."""
        return await self._run(self._load)

    async def _load(self, token: FlightToken) -> ChatSession:
        session = await self._resolve(token)
        messages = await self.store.list_messages(session.id)
        token.check()
        self.reconciler.seed(messages)
        return session

    async def send(self, raw_text: str) -> Optional[ChatMessage]:
        if not raw_text or not raw_text.strip():
            return None
        return await self._run(self._send, raw_text)

    async def _send(self, token: FlightToken, text: str) -> ChatMessage:
        session = await self._resolve(token)

        self._set_state(SendState.PERSISTING_USER)
        user_message = await self.store.append_message(session.id, USER, text, user_id=session.user_id)
        token.check()
        self.reconciler.append_user(user_message)

        handle = None
        try:
            access_token = await self.identity.current_access_token()
            if not access_token:
                raise Unauthenticated("No auth session")
            async with self.assistant.open_stream(access_token, text, session.id,
                                                  self.context_type, self.context_id) as chunks:
                self._set_state(SendState.STREAMING)
                handle = self.reconciler.open_placeholder(session.id)
                async for fragment in iter_deltas(chunks):
                    token.check()
                    self.reconciler.apply_delta(handle, fragment)

            self._set_state(SendState.PERSISTING_ASSISTANT)
            content = self.reconciler.get(handle).content
            try:
                persisted = await self.store.append_message(session.id, ASSISTANT, content,
                                                            user_id=session.user_id)
            except PersistenceFailure as e:
                self.reconciler.abort(handle, error=e.message, unsynced=True)
                raise
        except PersistenceFailure:
            raise
        except ChatEngineError as e:
            if handle is not None:
                self.reconciler.abort(handle, error=e.message)
            raise
        except Exception as e:
            logging.error(f"Unexpected error while streaming reply: {e}", exc_info=True)
            if handle is not None:
                self.reconciler.abort(handle, error=StreamFailure.default_message)
            raise StreamFailure() from e
        except asyncio.CancelledError:
            if handle is not None and self.reconciler.get(handle).is_placeholder:
                self.reconciler.abort(handle, error="Reply was cancelled")
            raise

        self.reconciler.finalize(handle, persisted)
        await self._touch(session)
        return persisted

    def unsynced(self) -> Optional[PendingMessage]:
        messages = self.reconciler.messages
        if messages and isinstance(messages[-1], PendingMessage) and messages[-1].status == UNSYNCED:
            return messages[-1]
        return None

    async def resync(self) -> Optional[ChatMessage]:
        """Store a reply that streamed completely but could not be saved."""
        if self.unsynced() is None:
            return None
        return await self._run(self._resync)

    async def _resync(self, token: FlightToken) -> Optional[ChatMessage]:
        pending = self.unsynced()
        if pending is None:
            return None
        self._set_state(SendState.PERSISTING_ASSISTANT)
        user_id = self.session.user_id if self.session else None
        persisted = await self.store.append_message(pending.session_id, ASSISTANT, pending.content,
                                                    user_id=user_id)
        token.check()
        self.reconciler.finalize(pending.handle, persisted)
        if self.session is not None and self.session.id == pending.session_id:
            await self._touch(self.session)
        return persisted
