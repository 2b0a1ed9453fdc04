from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from uuid import UUID

import httpx

from lumen.core.config import settings
from lumen.exceptions import StreamFailure
from lumen.logger import logging


def build_payload(message: str, session_id: UUID, context_type: str,
                  context_id: Optional[str] = None) -> dict:
    payload = {
        "message": message,
        "sessionId": str(session_id),
        "contextType": context_type,
    }
    if context_id is not None:
        payload["contextId"] = context_id
    return payload


class AssistantClient:
    """
    Opens the streaming chat request against the assistant service.

    ``open_stream`` is an async context manager yielding the raw response
    chunks; decoding them is the job of ``lumen.streaming.sse_decoder``.
    Every transport problem comes out as StreamFailure.
    """

    def __init__(self, url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url or settings.ASSISTANT_URL
        self.client = client
        # read timeout disabled, replies can pause for a long time between deltas
        self.timeout = httpx.Timeout(settings.ASSISTANT_CONNECT_TIMEOUT, read=None)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return StreamFailure.default_message

    @staticmethod
    async def _chunks(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            logging.error(f"Assistant stream interrupted: {e}")
            raise StreamFailure("Connection to the assistant was interrupted") from e

    @asynccontextmanager
    async def open_stream(self, access_token: str, message: str, session_id: UUID,
                          context_type: str, context_id: Optional[str] = None):
        if not self.url:
            raise StreamFailure("Assistant service is not configured")
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        payload = build_payload(message, session_id, context_type, context_id)

        client = self.client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream("POST", self.url, json=payload, headers=headers) as response:
                if not response.is_success:
                    await response.aread()
                    error = self._error_message(response)
                    logging.error(f"Assistant request failed: {response.status_code} {error}")
                    raise StreamFailure(error)
                logging.info(f"Assistant stream opened for session {session_id}")
                yield self._chunks(response)
        except httpx.HTTPError as e:
            logging.error(f"Assistant request error: {e}")
            raise StreamFailure() from e
        finally:
            if self.client is None:
                await client.aclose()
