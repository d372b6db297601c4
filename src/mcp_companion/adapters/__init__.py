"""Transport adapters: open the SDK stream pair for each configured transport."""

from mcp_companion.adapters.base import TransportAdapter
from mcp_companion.adapters.http import SSEAdapter, StreamableHTTPAdapter
from mcp_companion.adapters.stdio import StdioAdapter
from mcp_companion.exceptions import TransportUnsupportedError
from mcp_companion.models import (
    ServerConfiguration,
    SSEConfig,
    StdioConfig,
    StreamableHTTPConfig,
    TransportType,
)
from mcp_companion.settings import ManagerSettings


def build_adapter(
    configuration: ServerConfiguration,
    settings: ManagerSettings,
) -> TransportAdapter:
    """Create the adapter for a server configuration.

    Raises:
        TransportUnsupportedError: For stdio where processes cannot be spawned.
        InvalidURLError: For an HTTP configuration with an unusable URL.
    """
    if isinstance(configuration, StdioConfig):
        if not settings.stdio_supported:
            raise TransportUnsupportedError(TransportType.STDIO.value)
        return StdioAdapter(configuration, settings.search_paths)
    if isinstance(configuration, SSEConfig):
        return SSEAdapter(configuration.url, settings.probe_timeout)
    if isinstance(configuration, StreamableHTTPConfig):
        return StreamableHTTPAdapter(configuration.url, settings.probe_timeout)
    raise TypeError(f"Unsupported configuration: {configuration!r}")


__all__ = [
    "SSEAdapter",
    "StdioAdapter",
    "StreamableHTTPAdapter",
    "TransportAdapter",
    "build_adapter",
]
