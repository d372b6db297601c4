"""Core data models for mcp-companion.

Defines the transport configuration variants persisted in the config file,
the runtime Server record observed by callers, and the status enum that
drives the per-server connection state machine.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import shlex
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from mcp.types import (
    Implementation,
    Prompt,
    Resource,
    ResourceTemplate,
    ServerCapabilities,
    Tool,
)
from pydantic import BaseModel, ConfigDict, Discriminator, Tag, TypeAdapter


class TransportType(StrEnum):
    """MCP transport a server is reached over.

    Attributes:
        STDIO: Standard input/output of a spawned subprocess.
        SSE: Server-Sent Events over HTTP.
        STREAMABLE_HTTP: Streamable HTTP.
    """

    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"


class ServerStatus(StrEnum):
    """Connection status of a server.

    Attributes:
        DISCONNECTED: No connection; all capability lists are empty.
        CONNECTING: Handshake finished, data is being committed.
        CONNECTED: Live connection with populated capability lists.
        ERROR: The last connection attempt failed; see ``Server.error``.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class StdioConfig(BaseModel):
    """Launch a local server process and talk to it over stdin/stdout.

    Args:
        command: Executable (resolved through the shell's PATH).
        args: Command-line arguments.
        env: Extra environment variables for the process.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    args: list[str] | None = None
    env: dict[str, str] | None = None

    @property
    def transport_type(self) -> TransportType:
        return TransportType.STDIO

    @property
    def display_value(self) -> str:
        if not self.args:
            return self.command
        return f"{self.command} {shlex.join(self.args)}"


class SSEConfig(BaseModel):
    """Connect to a server's Server-Sent Events endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["sse"] = "sse"
    url: str
    note: str | None = None

    @property
    def transport_type(self) -> TransportType:
        return TransportType.SSE

    @property
    def display_value(self) -> str:
        return self.url


class StreamableHTTPConfig(BaseModel):
    """Connect to a server's streamable HTTP endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["streamable-http"] = "streamable-http"
    url: str
    note: str | None = None

    @property
    def transport_type(self) -> TransportType:
        return TransportType.STREAMABLE_HTTP

    @property
    def display_value(self) -> str:
        return self.url


def _entry_tag(value: Any) -> Any:
    # Entries without a "type" field are stdio; unknown types fail to match a tag.
    if isinstance(value, dict):
        return value.get("type", TransportType.STDIO.value)
    return getattr(value, "type", TransportType.STDIO.value)


ServerConfiguration = Annotated[
    Union[
        Annotated[StdioConfig, Tag("stdio")],
        Annotated[SSEConfig, Tag("sse")],
        Annotated[StreamableHTTPConfig, Tag("streamable-http")],
    ],
    Discriminator(_entry_tag),
]

_CONFIGURATION_ADAPTER: TypeAdapter[ServerConfiguration] = TypeAdapter(ServerConfiguration)


def parse_configuration(data: Any) -> ServerConfiguration:
    """Decode one config-file entry into its transport variant.

    Args:
        data: The raw JSON object for one server.

    Returns:
        The matching configuration model.

    Raises:
        pydantic.ValidationError: If the entry is malformed or names an
            unknown ``type``.
    """
    return _CONFIGURATION_ADAPTER.validate_python(data)


def configuration_entry(configuration: ServerConfiguration) -> dict[str, Any]:
    """Encode a configuration as it is written to the config file."""
    return configuration.model_dump(mode="json", exclude_none=True)


def derive_server_id(name: str, configuration: ServerConfiguration) -> str:
    """Derive the default identifier for a new server.

    The id is the SHA-256 hex digest of the name and the canonical JSON form
    of the configuration, so identical name + configuration pairs always
    produce the same id.
    """
    canonical = json.dumps(
        configuration_entry(configuration), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(f"{name}|{canonical}".encode()).hexdigest()


@dataclass(frozen=True)
class Server:
    """A configured MCP server together with its observed runtime state.

    Instances are immutable; the manager publishes new instances built with
    ``dataclasses.replace`` on every change, so a snapshot handed to an
    observer never changes underneath it. Hashing uses ``id`` only.

    Args:
        name: User-facing label.
        configuration: How to reach the server.
        id: Stable identifier. Derived from name and configuration when
            omitted; preserved as given otherwise.
        status: Current connection status.
        error: Failure message when ``status`` is ERROR.
        available_tools: Tools from the last successful fetch.
        available_prompts: Prompts from the last successful fetch.
        available_resources: Resources from the last successful fetch.
        resource_templates: Resource templates from the last successful fetch.
        server_info: Server name/version from the handshake.
        protocol_version: Negotiated protocol version.
        capabilities: Capabilities advertised in the handshake.
        instructions: Usage instructions sent by the server.
        tools_stale: True when the last background tool refresh failed.
    """

    name: str
    configuration: ServerConfiguration
    id: str = ""
    status: ServerStatus = ServerStatus.DISCONNECTED
    error: str | None = None
    available_tools: list[Tool] = field(default_factory=list)
    available_prompts: list[Prompt] = field(default_factory=list)
    available_resources: list[Resource] = field(default_factory=list)
    resource_templates: list[ResourceTemplate] = field(default_factory=list)
    server_info: Implementation | None = None
    protocol_version: str | None = None
    capabilities: ServerCapabilities | None = None
    instructions: str | None = None
    tools_stale: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            object.__setattr__(self, "id", derive_server_id(self.name, self.configuration))

    def __hash__(self) -> int:
        # Equal snapshots share an id; the list fields are unhashable.
        return hash(self.id)

    @property
    def is_connected(self) -> bool:
        return self.status == ServerStatus.CONNECTED

    @property
    def status_text(self) -> str:
        """Human-readable status, e.g. ``"Connecting..."`` or ``"Error: boom"``."""
        if self.status == ServerStatus.ERROR:
            return f"Error: {self.error}"
        if self.status == ServerStatus.CONNECTING:
            return "Connecting..."
        return self.status.value.capitalize()

    def cleared(self, status: ServerStatus = ServerStatus.DISCONNECTED) -> Server:
        """Return a copy with empty capability lists and the given status."""
        return dataclasses.replace(
            self,
            status=status,
            error=None,
            available_tools=[],
            available_prompts=[],
            available_resources=[],
            resource_templates=[],
            tools_stale=False,
        )

    def reset(self) -> Server:
        """Return a copy with every runtime field back at its default."""
        return Server(id=self.id, name=self.name, configuration=self.configuration)
