from typing import Callable, Iterable, List, Optional, Tuple, Union

from lumen.dataclasses import ChatMessage, PendingMessage, FAILED, UNSYNCED
from lumen.exceptions import SendInProgress
from lumen.logger import logging

Entry = Union[ChatMessage, PendingMessage]
Listener = Callable[[Tuple[Entry, ...]], None]


class Reconciler:
    """
    Owns the visible, ordered message sequence of the active session.

    Streamed replies live in the sequence as a PendingMessage addressed by its
    transient handle. Once stored, the pending entry is swapped for the
    persisted ChatMessage at the same index; a failed stream leaves the
    pending entry in place, flagged, with whatever text had arrived.
    """

    def __init__(self):
        self._entries: List[Entry] = []
        self._listeners: List[Listener] = []

    @property
    def messages(self) -> Tuple[Entry, ...]:
        return tuple(self._entries)

    @property
    def placeholder(self) -> Optional[PendingMessage]:
        for entry in self._entries:
            if entry.is_placeholder:
                return entry
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self):
        snapshot = self.messages
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logging.error(f"Message listener failed: {e}", exc_info=True)

    def _index(self, handle: str) -> int:
        for i, entry in enumerate(self._entries):
            if isinstance(entry, PendingMessage) and entry.handle == handle:
                return i
        raise KeyError(handle)

    def get(self, handle: str) -> PendingMessage:
        return self._entries[self._index(handle)]

    def seed(self, messages: Iterable[ChatMessage]):
        self._entries = list(messages)
        self._emit()

    def append_user(self, message: ChatMessage):
        self._entries.append(message)
        self._emit()

    def open_placeholder(self, session_id=None) -> str:
        if self.placeholder is not None:
            raise SendInProgress()
        pending = PendingMessage(session_id=session_id)
        self._entries.append(pending)
        self._emit()
        return pending.handle

    def apply_delta(self, handle: str, fragment: str):
        if not fragment:
            return
        pending = self.get(handle)
        if not pending.is_placeholder:
            raise ValueError(f"Message {handle} is no longer streaming")
        pending.content += fragment
        self._emit()

    def finalize(self, handle: str, persisted: ChatMessage):
        self._entries[self._index(handle)] = persisted
        self._emit()

    def abort(self, handle: str, error: Optional[str] = None, unsynced: bool = False):
        pending = self.get(handle)
        pending.status = UNSYNCED if unsynced else FAILED
        pending.error = error
        logging.warning(
            f"Reply {handle} kept as {pending.status} with {len(pending.content)} characters"
        )
        self._emit()
