"""
Decoder for the assistant's server-sent event stream.

The service answers with lines of the form::

    data: {"choices": [{"delta": {"content": "Hi"}}]}
    data: [DONE]

Network chunks can split those lines (and UTF-8 characters) anywhere, so the
decoder keeps one carry-over buffer and only ever looks at complete records.
The fragments it yields concatenate to the same text however the stream was
chunked.
"""
import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

from lumen.exceptions import FrameParseFailure
from lumen.logger import logging

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"
RECORD_SEPARATOR = "\n"

Chunk = Union[str, bytes]


def extract_delta(payload: Any) -> Optional[str]:
    """Return ``choices[0].delta.content`` or None when the path is missing."""
    try:
        content = payload["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str) or not content:
        return None
    return content


class SSEDecoder:
    def __init__(self):
        self.buffer = ""
        self.done = False
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Chunk) -> List[str]:
        """Add a chunk and return the fragments of every record it completed."""
        if self.done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self.buffer += chunk

        records = self.buffer.split(RECORD_SEPARATOR)
        self.buffer = records.pop()
        return self._decode_records(records)

    def flush(self) -> List[str]:
        """End of input: decode whatever is left in the buffer."""
        if self.done:
            return []
        self.buffer += self._utf8.decode(b"", final=True)
        remainder, self.buffer = self.buffer, ""
        return self._decode_records([remainder]) if remainder else []

    def _decode_records(self, records: List[str]) -> List[str]:
        fragments = []
        for record in records:
            if self.done:
                break
            fragment = self._decode_record(record.rstrip("\r"))
            if fragment:
                fragments.append(fragment)
        return fragments

    def _decode_record(self, record: str) -> Optional[str]:
        if not record.startswith(DATA_PREFIX):
            return None
        data = record[len(DATA_PREFIX):]
        if data.strip() == DONE_MARKER:
            self.done = True
            return None
        try:
            payload = json.loads(data)
        except ValueError as e:
            logging.warning(f"{FrameParseFailure.default_message}, skipped: {e} (frame={data[:200]!r})")
            return None
        return extract_delta(payload)


async def iter_deltas(chunks: AsyncIterable[Chunk]) -> AsyncIterator[str]:
    """Lazily turn a chunk stream into content fragments, stopping at [DONE]."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for fragment in decoder.feed(chunk):
            yield fragment
        if decoder.done:
            return
    for fragment in decoder.flush():
        yield fragment
