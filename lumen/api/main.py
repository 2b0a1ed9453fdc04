import asyncio
import json
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from lumen.auth.auth_utils import TokenIdentityProvider, get_identity
from lumen.conversation.orchestrator import ChatOrchestrator
from lumen.conversation.single_flight import SingleFlight
from lumen.dataclasses import PendingMessage
from lumen.db.database import get_sessionmaker
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
from lumen.memory.chat_memory import SqlChatStore
from lumen.memory.session_manager import DEFAULT_CONTEXT, SessionResolver
from lumen.streaming.sse_decoder import DONE_MARKER

app = FastAPI(title="Lumen Chat API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# one gate for the whole process, keyed by user and context
gate = SingleFlight()

ERROR_STATUS = {
    Unauthenticated: status.HTTP_401_UNAUTHORIZED,
    SendInProgress: status.HTTP_409_CONFLICT,
    SessionFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    PersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    StreamFailure: status.HTTP_502_BAD_GATEWAY,
}


class SendRequest(BaseModel):
    message: str
    context_type: str = DEFAULT_CONTEXT
    context_id: Optional[str] = None


def get_store() -> SqlChatStore:
    return SqlChatStore(get_sessionmaker())


def get_assistant() -> AssistantClient:
    return AssistantClient()


# replies are re-emitted in the assistant service's own framing
DONE_FRAME = f"data: {DONE_MARKER}\n"


def delta_frame(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n"


def error_frame(error: ChatEngineError) -> str:
    return "data: " + json.dumps({"error": error.message}) + "\n"


def http_error(error: ChatEngineError) -> HTTPException:
    code = ERROR_STATUS.get(type(error), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=error.message)


@app.post("/chat/send")
async def send_message(
    req: SendRequest,
    identity: TokenIdentityProvider = Depends(get_identity),
    store: SqlChatStore = Depends(get_store),
    assistant: AssistantClient = Depends(get_assistant),
):
    if not req.message.strip():
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    principal = await identity.current_principal()
    if principal is None:
        raise http_error(Unauthenticated())

    orchestrator = ChatOrchestrator(
        SessionResolver(store, identity), store, assistant, identity,
        gate=gate,
        context_type=req.context_type,
        context_id=req.context_id,
        scope=principal.user_id,
    )
    if gate.busy(orchestrator.key):
        raise http_error(SendInProgress())

    queue: asyncio.Queue = asyncio.Queue()
    started = asyncio.Event()
    sent = {"chars": 0}

    def on_change(snapshot):
        last = snapshot[-1] if snapshot else None
        if isinstance(last, PendingMessage):
            started.set()
            delta = last.content[sent["chars"]:]
            if delta:
                sent["chars"] = len(last.content)
                queue.put_nowait(delta)

    def on_done(task: asyncio.Task):
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"Send for {orchestrator.key} ended with {task.exception()!r}")
        queue.put_nowait(None)

    orchestrator.reconciler.subscribe(on_change)
    task = asyncio.create_task(orchestrator.send(req.message))
    task.add_done_callback(on_done)

    waiter = asyncio.create_task(started.wait())
    await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if not started.is_set():
        waiter.cancel()
        error = task.exception()
        if isinstance(error, ChatEngineError):
            raise http_error(error)
        if error is not None:
            raise error

    async def body():
        while True:
            item = await queue.get()
            if item is None:
                break
            yield delta_frame(item)
        error = None if task.cancelled() else task.exception()
        if isinstance(error, ChatEngineError):
            yield error_frame(error)
        elif error is not None:
            yield error_frame(StreamFailure())
        yield DONE_FRAME

    return StreamingResponse(body(), media_type="text/event-stream")


@app.get("/sessions")
async def list_sessions(
    identity: TokenIdentityProvider = Depends(get_identity),
    store: SqlChatStore = Depends(get_store),
):
    principal = await identity.current_principal()
    try:
        sessions = await store.list_sessions(principal.user_id)
    except PersistenceFailure as e:
        raise http_error(e)
    return [
        {
            "id": str(s.id),
            "context_type": s.context_type,
            "context_id": s.context_id,
            "started_at": s.started_at,
            "last_active_at": s.last_active_at,
        }
        for s in sessions
    ]


@app.get("/sessions/{session_id}/messages")
async def get_session_messages(
    session_id: UUID,
    identity: TokenIdentityProvider = Depends(get_identity),
    store: SqlChatStore = Depends(get_store),
):
    principal = await identity.current_principal()
    try:
        session = await store.get_session(session_id, principal.user_id)
        if session is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
        messages = await store.list_messages(session_id)
    except PersistenceFailure as e:
        raise http_error(e)

    return [
        {"id": str(m.id), "role": m.role, "content": m.content, "created_at": m.created_at}
        for m in messages
    ]
