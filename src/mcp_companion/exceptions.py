"""Typed failures raised by the connection manager.

Transport and RPC errors from the MCP SDK, httpx and the operating system
are not wrapped; they propagate to the caller as raised.
"""

from __future__ import annotations


class CompanionError(Exception):
    """Base class for all mcp-companion errors."""


class NotConnectedError(CompanionError):
    """The operation requires a live connection that does not exist.

    Args:
        server_id: Identifier of the server that is not connected.
    """

    def __init__(self, server_id: str) -> None:
        super().__init__(f"Not connected to server {server_id}")
        self.server_id = server_id


class ToolNotFoundError(CompanionError):
    """The tool is not in the server's last fetched tool list."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Tool {name} not found")
        self.name = name


class PromptNotFoundError(CompanionError):
    """The prompt is not in the server's last fetched prompt list."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Prompt {name} not found")
        self.name = name


class ResourceNotFoundError(CompanionError):
    """The resource URI is not in the server's last fetched resource list."""

    def __init__(self, uri: str) -> None:
        super().__init__(f"Resource {uri} not found")
        self.uri = uri


class ConnectionTimeoutError(CompanionError):
    """The initialize handshake did not complete in time.

    Args:
        seconds: The timeout that expired.
    """

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Connection timed out after {seconds:g} seconds")
        self.seconds = seconds


class TransportUnsupportedError(CompanionError):
    """The transport cannot be used on this platform (stdio without processes)."""

    def __init__(self, transport: str) -> None:
        super().__init__(f"{transport} transport is not supported on this platform")
        self.transport = transport


class InvalidURLError(CompanionError):
    """An SSE or streamable HTTP configuration carries an unusable URL."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid URL: {value}")
        self.value = value


class ConfigError(CompanionError):
    """The persisted server configuration could not be read or decoded."""


class UnknownServerError(CompanionError):
    """No server with the given name or id is registered."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Unknown server: {key}")
        self.key = key
