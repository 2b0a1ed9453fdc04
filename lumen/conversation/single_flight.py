from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Hashable

from lumen.exceptions import SendInProgress


@dataclass
class FlightToken:
    """Proof of holding the gate for ``key``, handed down the call chain."""
    key: Hashable
    active: bool = True

    def check(self) -> None:
        if not self.active:
            raise RuntimeError(f"Flight token for {self.key!r} used after release")


class SingleFlight:
    """
    At most one in-progress operation per key.

    A second ``hold`` on a busy key is rejected with SendInProgress instead
    of waiting. Everything runs on one event loop, so the check and the
    claim happen without a suspension point in between.
    """

    def __init__(self):
        self._held: Dict[Hashable, FlightToken] = {}

    def busy(self, key: Hashable) -> bool:
        return key in self._held

    @asynccontextmanager
    async def hold(self, key: Hashable):
        if key in self._held:
            raise SendInProgress()
        token = FlightToken(key)
        self._held[key] = token
        try:
            yield token
        finally:
            token.active = False
            if self._held.get(key) is token:
                del self._held[key]
