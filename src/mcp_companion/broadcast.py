"""Fan-out of server registry snapshots to any number of observers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable

from mcp_companion.models import Server

logger = logging.getLogger(__name__)

# Sentinel pushed into subscriber queues when the broadcast is closed
_CLOSED = object()


class ServerBroadcast:
    """Delivers every published snapshot, in order, to every subscriber.

    Each subscriber owns an unbounded queue, and ``publish`` enqueues
    synchronously, so a subscriber sees snapshots in exactly the order the
    mutations that produced them happened.

    Example:
        >>> broadcast = ServerBroadcast()
        >>> async for snapshot in broadcast.subscribe(lambda: []):
        ...     render(snapshot)
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[list[Server] | object]] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, snapshot: list[Server]) -> None:
        """Queue a snapshot for every current subscriber."""
        for queue in self._subscribers:
            queue.put_nowait(list(snapshot))

    async def subscribe(
        self,
        current: Callable[[], list[Server]],
    ) -> AsyncIterator[list[Server]]:
        """Yield the current snapshot, then one snapshot per publish.

        Args:
            current: Returns the snapshot to deliver first. Called in the
                same step that registers the subscriber, so no publish can
                fall between the two.

        Yields:
            Registry snapshots until the consumer stops iterating or the
            broadcast is closed.
        """
        if self._closed:
            return
        queue: asyncio.Queue[list[Server] | object] = asyncio.Queue()
        queue.put_nowait(current())
        self._subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item  # type: ignore[misc]
        finally:
            self._subscribers.remove(queue)
            logger.debug("Observer unsubscribed (%d remaining)", len(self._subscribers))

    def close(self) -> None:
        """End every subscription after its queued snapshots are consumed."""
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)
