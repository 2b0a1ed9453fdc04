import asyncio
import json
import os
import tempfile
from contextlib import asynccontextmanager

import pytest

# keep log files out of the working tree, must happen before lumen is imported
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="lumen-logs-"))

from lumen.dataclasses import Principal
from lumen.db.database import make_engine, make_sessionmaker
from lumen.db.db_init import init_models
from lumen.exceptions import StreamFailure
from lumen.memory.chat_memory import SqlChatStore


def sse(*contents, done=True):
    """Build an event stream body with one delta frame per content."""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": c}}]}) + "\n"
        for c in contents
    ]
    if done:
        lines.append("data: [DONE]\n")
    return "".join(lines)


class FakeIdentity:
    def __init__(self, user_id="user-1", token="token-1"):
        self.user_id = user_id
        self.token = token
        self.calls = 0

    async def current_principal(self):
        self.calls += 1
        return Principal(user_id=self.user_id) if self.user_id else None

    async def current_access_token(self):
        return self.token


class FakeAssistant:
    """Stands in for AssistantClient, replaying canned chunks."""

    def __init__(self, chunks=(), open_error=None, fail_after=None, gate=None):
        self.chunks = list(chunks)
        self.open_error = open_error
        self.fail_after = fail_after
        self.gate = gate
        self.requests = []

    @asynccontextmanager
    async def open_stream(self, access_token, message, session_id, context_type, context_id=None):
        self.requests.append({
            "token": access_token,
            "message": message,
            "session_id": session_id,
            "context_type": context_type,
            "context_id": context_id,
        })
        if self.open_error is not None:
            raise self.open_error
        yield self._chunks()

    async def _chunks(self):
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i == self.fail_after:
                raise StreamFailure("Connection to the assistant was interrupted")
            if self.gate is not None:
                await self.gate.wait()
            yield chunk


class Notifications(list):
    def __call__(self, title, description):
        self.append((title, description))


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"


@pytest.fixture
def sync_store(database_url):
    """Store for tests that drive the event loop themselves."""
    engine = make_engine(database_url)
    asyncio.run(init_models(engine))
    return SqlChatStore(make_sessionmaker(engine))


@pytest.fixture
async def store(database_url):
    engine = make_engine(database_url)
    await init_models(engine)
    yield SqlChatStore(make_sessionmaker(engine))
    await engine.dispose()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def notifications():
    return Notifications()
