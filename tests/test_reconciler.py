import uuid

import pytest

from lumen.conversation.reconciler import Reconciler
from lumen.dataclasses import ChatMessage, PendingMessage, FAILED, UNSYNCED, utcnow
from lumen.exceptions import SendInProgress

SESSION = uuid.uuid4()


def message(role, content):
    return ChatMessage(id=uuid.uuid4(), session_id=SESSION, role=role, content=content, created_at=utcnow())


def placeholders(rec):
    return [m for m in rec.messages if m.is_placeholder]


def test_seed_replaces_sequence():
    rec = Reconciler()
    rec.append_user(message("user", "old"))
    seeded = [message("user", "a"), message("assistant", "b")]
    rec.seed(seeded)
    assert list(rec.messages) == seeded


def test_stream_then_finalize_keeps_position():
    rec = Reconciler()
    user = message("user", "Hello")
    rec.append_user(user)
    handle = rec.open_placeholder(SESSION)

    rec.apply_delta(handle, "Hi")
    rec.apply_delta(handle, " there")
    pending = rec.get(handle)
    assert pending.handle == handle
    assert pending.content == "Hi there"
    assert rec.placeholder is pending

    persisted = message("assistant", "Hi there")
    rec.finalize(handle, persisted)
    assert list(rec.messages) == [user, persisted]
    assert placeholders(rec) == []


def test_apply_delta_zero_times():
    rec = Reconciler()
    handle = rec.open_placeholder()
    assert rec.get(handle).content == ""
    rec.apply_delta(handle, "")
    assert rec.get(handle).content == ""


def test_second_placeholder_is_rejected():
    rec = Reconciler()
    rec.open_placeholder()
    with pytest.raises(SendInProgress):
        rec.open_placeholder()
    assert len(placeholders(rec)) == 1


def test_abort_keeps_partial_content():
    rec = Reconciler()
    handle = rec.open_placeholder()
    for fragment in ["a", "b", "c"]:
        rec.apply_delta(handle, fragment)
    rec.abort(handle, error="Connection lost")

    kept = rec.messages[-1]
    assert isinstance(kept, PendingMessage)
    assert kept.content == "abc"
    assert kept.status == FAILED
    assert kept.failed and not kept.is_placeholder
    assert kept.error == "Connection lost"
    assert rec.placeholder is None

    # a new reply can start once the previous one is no longer streaming
    rec.open_placeholder()
    assert len(placeholders(rec)) == 1


def test_abort_unsynced():
    rec = Reconciler()
    handle = rec.open_placeholder()
    rec.apply_delta(handle, "done")
    rec.abort(handle, unsynced=True)
    assert rec.get(handle).status == UNSYNCED
    with pytest.raises(ValueError):
        rec.apply_delta(handle, "more")


def test_listeners_see_every_change_and_survive_errors():
    rec = Reconciler()
    seen = []

    def broken(snapshot):
        raise RuntimeError("boom")

    rec.subscribe(broken)
    unsubscribe = rec.subscribe(lambda snapshot: seen.append([m.content for m in snapshot]))

    handle = rec.open_placeholder()
    rec.apply_delta(handle, "x")
    unsubscribe()
    rec.apply_delta(handle, "y")

    assert seen == [[""], ["x"]]
    assert rec.get(handle).content == "xy"


def test_messages_snapshot_is_read_only():
    rec = Reconciler()
    rec.append_user(message("user", "a"))
    snapshot = rec.messages
    rec.append_user(message("user", "b"))
    assert len(snapshot) == 1
    assert len(rec.messages) == 2
