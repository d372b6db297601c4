"""Transport adapter protocol for mcp-companion.

All transport adapters (stdio, SSE, streamable HTTP) implement this
protocol. The protocol client interacts only with this interface; it
never sees how the byte stream is carried.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage

from mcp_companion.models import TransportType

ReadStream = MemoryObjectReceiveStream[SessionMessage | Exception]
WriteStream = MemoryObjectSendStream[SessionMessage]


class TransportAdapter(Protocol):
    """Interface for transport adapters.

    An adapter is built once per connection attempt. ``open()`` returns an
    async context manager that establishes the carrier (spawns the process,
    opens the HTTP stream) and yields the SDK's anyio stream pair; leaving
    the context disconnects the transport and terminates any process it
    started.
    """

    @property
    def transport(self) -> TransportType:
        """The transport this adapter speaks."""
        ...

    def describe(self) -> str:
        """Short human-readable target (command line or URL) for logging."""
        ...

    async def preflight(self) -> None:
        """Run best-effort checks before connecting. Must not raise."""
        ...

    def open(self) -> AbstractAsyncContextManager[tuple[ReadStream, WriteStream]]:
        """Open the transport.

        Returns:
            Context manager yielding ``(read_stream, write_stream)``.
        """
        ...
