"""Persisted server configuration.

The config file maps server names to transport configurations and holds
nothing else; status, capability lists and other runtime fields are never
written. File layout::

    {
      "mcpServers": {
        "Everything": {"command": "npx", "args": ["-y", "@modelcontextprotocol/server-everything"]},
        "Remote": {"type": "streamable-http", "url": "https://example.com/mcp"}
      }
    }
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mcp_companion.exceptions import ConfigError
from mcp_companion.models import Server, ServerConfiguration

logger = logging.getLogger(__name__)


class ConfigFile(BaseModel):
    """Name-to-configuration mapping, the source of truth across restarts.

    Args:
        entries: Server configurations keyed by server name.
    """

    model_config = ConfigDict(populate_by_name=True)

    entries: dict[str, ServerConfiguration] = Field(default_factory=dict, alias="mcpServers")

    @classmethod
    def from_servers(cls, servers: list[Server]) -> ConfigFile:
        """Build a config file from registry entries, dropping runtime state.

        Names are unique keys; a later server with the same name replaces
        an earlier one.
        """
        return cls(entries={server.name: server.configuration for server in servers})

    def servers(self) -> list[Server]:
        """Derive default Servers, recomputing each id from name and configuration."""
        return [
            Server(name=name, configuration=configuration)
            for name, configuration in self.entries.items()
        ]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_json(cls, text: str) -> ConfigFile:
        """Decode config file contents.

        Raises:
            ConfigError: If the text is not valid JSON or an entry cannot be
                decoded (including an unrecognized ``type``).
        """
        try:
            return cls.model_validate_json(text)
        except ValidationError as exc:
            raise ConfigError(f"Invalid server configuration: {exc}") from exc


class ConfigStore(Protocol):
    """Key-value storage for the ConfigFile."""

    def load(self) -> ConfigFile:
        """Return the persisted configuration (empty if none exists)."""
        ...

    def save(self, config: ConfigFile) -> None:
        """Replace the persisted configuration."""
        ...


class JsonConfigStore:
    """ConfigStore backed by a JSON file on disk.

    Args:
        path: Location of the config file. Parent directories are created
            on first save.

    Example:
        >>> store = JsonConfigStore(Path("~/.config/mcp-companion/servers.json").expanduser())
        >>> config = store.load()
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ConfigFile:
        if not self.path.exists():
            logger.debug("No config file at %s; starting empty", self.path)
            return ConfigFile()
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read {self.path}: {exc}") from exc
        if not text.strip():
            return ConfigFile()
        return ConfigFile.from_json(text)

    def save(self, config: ConfigFile) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(config.to_json(), encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot write {self.path}: {exc}") from exc
        logger.debug("Saved %d server(s) to %s", len(config.entries), self.path)


class MemoryConfigStore:
    """ConfigStore that keeps the configuration in memory only."""

    def __init__(self, config: ConfigFile | None = None) -> None:
        self.config = config or ConfigFile()
        self.save_count = 0

    def load(self) -> ConfigFile:
        return self.config.model_copy(deep=True)

    def save(self, config: ConfigFile) -> None:
        self.config = config.model_copy(deep=True)
        self.save_count += 1
