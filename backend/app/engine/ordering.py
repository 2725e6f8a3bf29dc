"""
Per-key FIFO ordering guard.

Reconciliation decisions for one rule must not interleave: a document
reading the pending sets while another document is adding itself to one
would let both claim the same role.  ``OrderingGuard.hold(rule_id)``
serializes bodies that share a key, in arrival order, and never blocks
bodies for other keys.

Bookkeeping is a map from key to the tail future of its waiter chain.
Each caller chains behind the current tail and installs its own future
as the new tail; the entry is removed when the last waiter releases.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class OrderingGuard:
    """Serialize async bodies per key (FIFO), independent across keys."""

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        loop = asyncio.get_running_loop()
        previous = self._tails.get(key)
        mine: asyncio.Future = loop.create_future()
        self._tails[key] = mine

        try:
            if previous is not None:
                # shield: cancelling this waiter must not cancel the predecessor's future
                await asyncio.shield(previous)
            yield
        finally:
            if previous is not None and not previous.done():
                # Cancelled while queued: successors still wait for the predecessor
                previous.add_done_callback(lambda _f: self._release(key, mine))
            else:
                self._release(key, mine)

    def _release(self, key: str, future: asyncio.Future) -> None:
        if not future.done():
            future.set_result(None)
        if self._tails.get(key) is future:
            del self._tails[key]

    def pending_keys(self) -> list[str]:
        """Keys that still have an active or queued body."""
        return list(self._tails)

    def __len__(self) -> int:
        return len(self._tails)
