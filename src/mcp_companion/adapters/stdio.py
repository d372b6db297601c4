"""stdio transport adapter for mcp-companion.

Wraps the MCP SDK ``stdio_client()``. The server command is run through a
shell wrapper so PATH lookup behaves as it does in a terminal, with common
tool-install directories prepended to PATH and any user-supplied
environment overrides applied on top.
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.client.stdio import StdioServerParameters, stdio_client

from mcp_companion.adapters.base import ReadStream, WriteStream
from mcp_companion.models import StdioConfig, TransportType

logger = logging.getLogger(__name__)


def build_environment(
    search_paths: Iterable[str],
    overrides: Mapping[str, str] | None = None,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment for a stdio server process.

    Args:
        search_paths: Directories to put in front of the inherited PATH.
            ``~`` is expanded.
        overrides: User-supplied variables, applied last (may replace PATH).
        base: Environment to start from. Defaults to ``os.environ``.

    Returns:
        A new environment mapping.
    """
    env = dict(os.environ if base is None else base)
    inherited = [p for p in env.get("PATH", "").split(os.pathsep) if p]
    prefix = [os.path.expanduser(p) for p in search_paths]
    ordered: list[str] = []
    for entry in [*prefix, *inherited]:
        if entry not in ordered:
            ordered.append(entry)
    env["PATH"] = os.pathsep.join(ordered)
    if overrides:
        env.update(overrides)
    return env


def shell_command(command: str, args: list[str] | None = None) -> tuple[str, list[str]]:
    """Wrap a server command line in the platform shell.

    The command itself is passed through verbatim so shell syntax such as
    ``~`` still works; arguments are quoted.

    Returns:
        ``(executable, argv)`` suitable for ``StdioServerParameters``.
    """
    line = command if not args else f"{command} {shlex.join(args)}"
    if sys.platform == "win32":
        return "cmd.exe", ["/c", line]
    return "/bin/sh", ["-c", line]


class StdioAdapter:
    """Server-facing adapter that launches an MCP server subprocess.

    The subprocess is owned by the context returned from ``open()``: it is
    started on entry and terminated on exit.

    Args:
        config: The stdio configuration to launch.
        search_paths: Directories prepended to PATH.
        cwd: Working directory for the subprocess (defaults to the current one).

    Example:
        adapter = StdioAdapter(StdioConfig(command="npx", args=["-y", "pkg"]), DEFAULT_SEARCH_PATHS)
        async with adapter.open() as (read_stream, write_stream):
            ...
    """

    def __init__(
        self,
        config: StdioConfig,
        search_paths: Iterable[str] = (),
        cwd: str | Path | None = None,
    ) -> None:
        self.config = config
        executable, argv = shell_command(config.command, config.args)
        self.parameters = StdioServerParameters(
            command=executable,
            args=argv,
            env=build_environment(search_paths, config.env),
            cwd=cwd if cwd is not None else os.getcwd(),
        )

    @property
    def transport(self) -> TransportType:
        return TransportType.STDIO

    def describe(self) -> str:
        return self.config.display_value

    async def preflight(self) -> None:
        """Nothing to check before launching a subprocess."""

    @asynccontextmanager
    async def open(self) -> AsyncIterator[tuple[ReadStream, WriteStream]]:
        logger.debug(
            "Launching stdio server: %s %s",
            self.parameters.command,
            " ".join(self.parameters.args),
        )
        async with stdio_client(self.parameters) as (read_stream, write_stream):
            yield read_stream, write_stream
        logger.debug("stdio server exited: %s", self.describe())
