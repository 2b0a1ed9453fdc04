import json

import httpx
import pytest
from fastapi.testclient import TestClient

from lumen.api import main as api
from lumen.auth.auth_utils import create_access_token
from lumen.exceptions import StreamFailure
from lumen.streaming.sse_decoder import SSEDecoder
from conftest import FakeAssistant, sse


@pytest.fixture
def assistant():
    return FakeAssistant([sse("Hi", " there")])


@pytest.fixture
def client(sync_store, assistant):
    api.app.dependency_overrides[api.get_store] = lambda: sync_store
    api.app.dependency_overrides[api.get_assistant] = lambda: assistant
    yield TestClient(api.app)
    api.app.dependency_overrides.clear()


def auth(user_id="user-1"):
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def read_reply(body):
    """Split an event stream response into (reply text, error messages)."""
    decoder = SSEDecoder()
    reply = "".join(decoder.feed(body) + decoder.flush())
    errors = []
    for line in body.splitlines():
        payload = line[len("data: "):]
        if line.startswith("data: ") and payload != "[DONE]":
            frame = json.loads(payload)
            if "error" in frame:
                errors.append(frame["error"])
    return reply, errors


def test_send_streams_reply_and_stores_history(client):
    res = client.post("/chat/send", json={"message": "Hello"}, headers=auth())
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/event-stream")
    assert res.text.endswith("data: [DONE]\n")
    assert read_reply(res.text) == ("Hi there", [])

    sessions = client.get("/sessions", headers=auth()).json()
    assert len(sessions) == 1
    assert sessions[0]["context_type"] == "global"
    assert sessions[0]["context_id"] is None

    messages = client.get(f"/sessions/{sessions[0]['id']}/messages", headers=auth()).json()
    assert [(m["role"], m["content"]) for m in messages] == [("user", "Hello"), ("assistant", "Hi there")]


def test_empty_message_is_no_content(client, assistant):
    res = client.post("/chat/send", json={"message": "  "}, headers=auth())
    assert res.status_code == 204
    assert assistant.requests == []
    assert client.get("/sessions", headers=auth()).json() == []


def test_requests_need_a_valid_token(client):
    assert client.post("/chat/send", json={"message": "Hello"}).status_code in (401, 403)
    res = client.get("/sessions", headers={"Authorization": "Bearer nonsense"})
    assert res.status_code == 401


def test_stream_failure_before_reply_maps_to_bad_gateway(client, assistant):
    assistant.open_error = StreamFailure("AI credits exhausted. Please add credits to continue.")
    res = client.post("/chat/send", json={"message": "Hello"}, headers=auth())
    assert res.status_code == 502
    assert res.json()["detail"] == "AI credits exhausted. Please add credits to continue."


def test_sessions_are_private(client):
    client.post("/chat/send", json={"message": "Hello"}, headers=auth("user-1"))
    session_id = client.get("/sessions", headers=auth("user-1")).json()[0]["id"]

    assert client.get("/sessions", headers=auth("user-2")).json() == []
    res = client.get(f"/sessions/{session_id}/messages", headers=auth("user-2"))
    assert res.status_code == 404


def test_failure_after_streaming_started_ends_with_error_frame(client, assistant):
    assistant.chunks = [sse("one ", done=False), sse("two ", done=False), sse("three")]
    assistant.fail_after = 2

    res = client.post("/chat/send", json={"message": "Count"}, headers=auth())
    assert res.status_code == 200
    assert read_reply(res.text) == ("one two ", ["Connection to the assistant was interrupted"])
    assert res.text.endswith("data: [DONE]\n")

    session_id = client.get("/sessions", headers=auth()).json()[0]["id"]
    messages = client.get(f"/sessions/{session_id}/messages", headers=auth()).json()
    assert [m["content"] for m in messages] == ["Count"]


@pytest.mark.anyio
async def test_send_while_context_busy_is_conflict(client, assistant):
    transport = httpx.ASGITransport(app=api.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        async with api.gate.hold(("user-1", "global", None)):
            res = await ac.post("/chat/send", json={"message": "Hello"}, headers=auth())
            assert res.status_code == 409
            assert res.json()["detail"] == "A reply is still streaming for this conversation"
            assert assistant.requests == []

            other = await ac.post("/chat/send", json={"message": "Hello", "context_type": "project",
                                                      "context_id": "p1"}, headers=auth())
            assert other.status_code == 200
            assert read_reply(other.text) == ("Hi there", [])

    assert not api.gate.busy(("user-1", "global", None))
