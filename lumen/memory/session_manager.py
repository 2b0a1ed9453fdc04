from typing import Callable, Optional
from datetime import datetime

from lumen.auth.auth_utils import IdentityProvider
from lumen.dataclasses import ChatSession, utcnow
from lumen.exceptions import Unauthenticated
from lumen.logger import logging
from lumen.memory.chat_memory import SessionStore

DEFAULT_CONTEXT = "global"


class SessionResolver:
    """
    Finds the current session for a conversation context, creating it on first use.

    The current session of a context is the caller's most recently active one.
    Callers that may race on the same context must serialize ``resolve``
    (the orchestrator does it through its single-flight gate), since the
    lookup and the create are two separate store calls.
    """

    def __init__(self, store: SessionStore, identity: IdentityProvider,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.identity = identity
        self.clock = clock

    async def resolve(self, context_type: str = DEFAULT_CONTEXT,
                      context_id: Optional[str] = None) -> ChatSession:
        principal = await self.identity.current_principal()
        if principal is None:
            raise Unauthenticated()

        session = await self.store.find_latest_session(principal.user_id, context_type, context_id)
        if session is not None:
            return session

        now = self.clock()
        session = await self.store.create_session(principal.user_id, context_type, context_id, now)
        logging.info(f"Created chat session {session.id} for context {context_type}:{context_id}")
        return session
