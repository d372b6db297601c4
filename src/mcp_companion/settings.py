"""Tunable settings for the connection manager and default file locations."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from mcp_companion import __version__

# Prepended to PATH for stdio servers so tools installed by common package
# managers resolve even when the parent process has a minimal PATH.
DEFAULT_SEARCH_PATHS: tuple[str, ...] = (
    "/opt/homebrew/bin",
    "/opt/homebrew/sbin",
    "/opt/homebrew/opt/asdf/libexec/bin",
    "/usr/local/bin",
    "/usr/local/sbin",
    "/opt/local/bin",
    "/opt/local/sbin",
    "/usr/bin",
    "/bin",
    "/usr/sbin",
    "/sbin",
    "~/.local/bin",
    "~/.cargo/bin",
    "~/.asdf/shims",
    "~/.pyenv/shims",
    "~/.rbenv/shims",
    "~/.bun/bin",
    "~/.volta/bin",
)

CONFIG_ENV_VAR = "MCP_COMPANION_CONFIG"


def process_spawning_supported() -> bool:
    """Return True if this interpreter can launch subprocesses."""
    return sys.platform not in ("emscripten", "wasi", "ios", "android")


def default_config_path() -> Path:
    """Location of ``servers.json`` when none is given explicitly.

    Honors ``MCP_COMPANION_CONFIG``, then ``$XDG_CONFIG_HOME``, then
    ``~/.config``.
    """
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME") or "~/.config"
    return Path(base).expanduser() / "mcp-companion" / "servers.json"


@dataclass(frozen=True)
class ManagerSettings:
    """Timing, identity and platform knobs for ConnectionManager.

    Args:
        connect_timeout: Ceiling in seconds for the initialize handshake.
        poll_interval: Seconds between successful tool-list polls.
        poll_error_backoff: Seconds to wait after a failed background poll.
        probe_timeout: Seconds allowed for the HTTP reachability probe.
        client_name: Name sent as ``clientInfo`` in the handshake.
        client_version: Version sent as ``clientInfo`` in the handshake.
        search_paths: Directories prepended to PATH for stdio servers.
        stdio_supported: Whether stdio servers may be launched at all.
        strict_capability_fetch: Fail the connection when an initial
            tools/prompts/resources fetch fails instead of logging it.
    """

    connect_timeout: float = 30.0
    poll_interval: float = 30.0
    poll_error_backoff: float = 60.0
    probe_timeout: float = 5.0
    client_name: str = "MCP Companion"
    client_version: str = __version__
    search_paths: tuple[str, ...] = DEFAULT_SEARCH_PATHS
    stdio_supported: bool = field(default_factory=process_spawning_supported)
    strict_capability_fetch: bool = False
