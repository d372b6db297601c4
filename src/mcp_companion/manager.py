"""Multi-server connection manager.

ConnectionManager owns the server registry (persisted configuration merged
with runtime status), one ConnectionRecord per live connection, and the
broadcast that observers subscribe to. All registry mutations happen under
a single asyncio.Lock; network and process I/O never runs while the lock
is held, so RPCs against different servers proceed in parallel.

Every long-running operation runs as a task registered under a stable key
(``("connect", server_id)``, ``("call_tool", server_id, name)``, ...). A
new operation under the same key cancels the previous one, and
``disconnect()`` cancels an in-flight connect for the same server.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass
from types import TracebackType
from typing import Any, TypeVar

from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Implementation,
    InitializeResult,
    Prompt,
    ReadResourceResult,
    Resource,
    ResourceTemplate,
    Tool,
)

from mcp_companion.adapters import build_adapter
from mcp_companion.adapters.base import TransportAdapter
from mcp_companion.broadcast import ServerBroadcast
from mcp_companion.client import ProtocolClient
from mcp_companion.config_store import ConfigFile, ConfigStore
from mcp_companion.connection import ConnectionRecord
from mcp_companion.exceptions import (
    ConnectionTimeoutError,
    NotConnectedError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from mcp_companion.models import Server, ServerConfiguration, ServerStatus
from mcp_companion.settings import ManagerSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

AdapterFactory = Callable[[ServerConfiguration, ManagerSettings], TransportAdapter]
ClientFactory = Callable[[Implementation], ProtocolClient]

# Sentinel pushed into a poll queue when the poll was cancelled
_POLL_DONE = object()


@dataclass
class _ConnectionData:
    """Outcome of a successful handshake plus initial capability fetch."""

    record: ConnectionRecord
    result: InitializeResult


class ConnectionManager:
    """Connects to, supervises and queries any number of MCP servers.

    Create one instance at startup and hand it to whatever needs it. The
    registry is loaded from ``store`` immediately.

    Args:
        store: Persisted configuration (read now, written after every
            add/update/remove).
        settings: Timeouts, polling intervals and client identity.
        adapter_factory: Builds the transport adapter for a configuration.
        client_factory: Builds the protocol client for a connection.

    Example:
        async with ConnectionManager(JsonConfigStore(path)) as manager:
            server = (await manager.get_servers())[0]
            await manager.connect(server)
            result = await manager.call_tool(server.id, "echo", {"message": "hi"})
    """

    def __init__(
        self,
        store: ConfigStore,
        settings: ManagerSettings | None = None,
        adapter_factory: AdapterFactory = build_adapter,
        client_factory: ClientFactory = ProtocolClient,
    ) -> None:
        self._store = store
        self.settings = settings or ManagerSettings()
        self._adapter_factory = adapter_factory
        self._client_factory = client_factory
        self._lock = asyncio.Lock()
        self._servers: dict[str, Server] = {}
        self._records: dict[str, ConnectionRecord] = {}
        self._operations: dict[tuple[str, ...], asyncio.Task[Any]] = {}
        self._broadcast = ServerBroadcast()
        self._merge(store.load())
        logger.debug("Loaded %d server(s) from configuration", len(self._servers))

    async def __aenter__(self) -> ConnectionManager:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Registry queries
    # ------------------------------------------------------------------

    async def get_servers(self) -> list[Server]:
        """Return the full registry snapshot, in registry order."""
        return self._snapshot()

    def has_connection(self, server_id: str) -> bool:
        """Return True if a connection record is registered for the server."""
        return server_id in self._records

    def observe_servers(self) -> AsyncIterator[list[Server]]:
        """Subscribe to registry changes.

        Yields the current snapshot first, then one snapshot per registry
        mutation, in mutation order. Any number of observers may subscribe;
        each stops by leaving its ``async for`` loop.
        """
        return self._broadcast.subscribe(self._snapshot)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, server: Server) -> None:
        """Connect to a server and publish its capabilities.

        Callers should only connect servers whose observed status is not
        already CONNECTING or CONNECTED.

        Raises:
            ConnectionTimeoutError: The handshake exceeded the timeout.
            TransportUnsupportedError: stdio is unavailable on this platform.
            InvalidURLError: The HTTP URL is unusable.
            Exception: Transport and protocol errors, unwrapped.
        """
        await self._run_keyed(("connect", server.id), self._connect(server))

    async def _connect(self, server: Server) -> None:
        try:
            data = await self._perform_connection(server)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._record_failure(server.id, exc)
            raise

        record = data.record
        result = data.result
        try:
            async with self._lock:
                previous = self._records.get(server.id)
                self._records[server.id] = record
                if previous is not None:
                    previous.cancel_polling()
                base = self._servers.get(server.id, server)
                connecting = dataclasses.replace(
                    base, name=server.name, configuration=server.configuration
                ).cleared(ServerStatus.CONNECTING)
                self._servers[server.id] = connecting
                self._notify()
            if previous is not None:
                logger.debug("Replacing existing connection record for %s", server.id)
                await previous.close()

            # Cancellation checkpoint between the two transitions.
            await asyncio.sleep(0)

            async with self._lock:
                if self._records.get(server.id) is not record:
                    raise asyncio.CancelledError
                self._servers[server.id] = dataclasses.replace(
                    self._servers.get(server.id, connecting),
                    status=ServerStatus.CONNECTED,
                    error=None,
                    available_tools=list(record.tools),
                    available_prompts=list(record.prompts),
                    available_resources=list(record.resources),
                    resource_templates=list(record.resource_templates),
                    server_info=result.serverInfo,
                    protocol_version=str(result.protocolVersion),
                    capabilities=result.capabilities,
                    instructions=result.instructions,
                )
                logger.info(
                    "Server '%s' connected with %d tools, %d prompts, %d resources",
                    server.name,
                    len(record.tools),
                    len(record.prompts),
                    len(record.resources),
                )
                self._notify()
        except asyncio.CancelledError:
            await self._abandon(server.id, record)
            raise

        tools_capability = result.capabilities.tools
        if tools_capability is not None and tools_capability.listChanged:
            self._start_background_polling(server.id, record)

    async def _perform_connection(self, server: Server) -> _ConnectionData:
        """Handshake and initial fetch shared by connect and test_connection.

        Nothing is registered. On any failure the transport is torn down
        (terminating a spawned process) before the error propagates.
        """
        logger.info(
            "Connecting to '%s' over %s: %s",
            server.name,
            server.configuration.transport_type,
            server.configuration.display_value,
        )
        identity = Implementation(
            name=self.settings.client_name, version=self.settings.client_version
        )
        adapter = self._adapter_factory(server.configuration, self.settings)
        await adapter.preflight()
        record = ConnectionRecord(
            server_id=server.id, client=self._client_factory(identity), adapter=adapter
        )
        deadline = asyncio.timeout(self.settings.connect_timeout)
        try:
            try:
                async with deadline:
                    result = await record.client.connect(adapter)
            except TimeoutError:
                if not deadline.expired():
                    raise
                logger.warning(
                    "Handshake with '%s' timed out after %gs",
                    server.name,
                    self.settings.connect_timeout,
                )
                raise ConnectionTimeoutError(self.settings.connect_timeout) from None
            record.mark_connected(result)
            await self._load_capabilities(server, record, result)
        except BaseException as exc:
            if not isinstance(exc, asyncio.CancelledError):
                logger.warning("Connection to '%s' failed: %s", server.name, exc)
            await record.close()
            raise
        return _ConnectionData(record=record, result=result)

    async def _load_capabilities(
        self,
        server: Server,
        record: ConnectionRecord,
        result: InitializeResult,
    ) -> None:
        capabilities = result.capabilities
        if capabilities.tools is not None:
            await self._fetch_best_effort(server, "tools", record.refresh_tools)
        else:
            logger.debug("'%s' does not advertise tools; skipping", server.name)
        if capabilities.prompts is not None:
            await self._fetch_best_effort(server, "prompts", record.refresh_prompts)
        else:
            logger.debug("'%s' does not advertise prompts; skipping", server.name)
        if capabilities.resources is not None:
            await self._fetch_best_effort(server, "resources", record.refresh_resources)
            await self._fetch_best_effort(
                server, "resource templates", record.refresh_resource_templates
            )
        else:
            logger.debug("'%s' does not advertise resources; skipping", server.name)

    async def _fetch_best_effort(
        self,
        server: Server,
        label: str,
        fetch: Callable[[], Awaitable[list[Any]]],
    ) -> None:
        try:
            items = await fetch()
        except Exception as exc:
            if self.settings.strict_capability_fetch:
                raise
            logger.warning("Failed to fetch %s from '%s': %s", label, server.name, exc)
            return
        logger.debug("Fetched %d %s from '%s'", len(items), label, server.name)

    async def _record_failure(self, server_id: str, exc: Exception) -> None:
        async with self._lock:
            server = self._servers.get(server_id)
            if server is None or server_id in self._records:
                return
            message = str(exc) or type(exc).__name__
            failed = server.cleared(ServerStatus.ERROR)
            self._servers[server_id] = dataclasses.replace(failed, error=message)
            self._notify()

    async def _abandon(self, server_id: str, record: ConnectionRecord) -> None:
        """Roll back a connect cancelled after the record was registered."""
        async with self._lock:
            if self._records.get(server_id) is record:
                del self._records[server_id]
                server = self._servers.get(server_id)
                if server is not None:
                    self._servers[server_id] = server.cleared()
                    self._notify()
        logger.debug("Connect to %s cancelled; rolling back", server_id)
        await record.close()

    async def disconnect(self, server_id: str, notify: bool = True) -> None:
        """Tear down a server's connection.

        Cancels an in-flight connect and any polling, removes the record and,
        when ``notify`` is set, moves the server to DISCONNECTED with empty
        capability lists. A server without a connection is left untouched.

        Args:
            server_id: Registry id of the server.
            notify: Publish the status change. ``remove_server`` passes False
                so the entry disappears without an intermediate state.
        """
        pending = self._cancel_operation(("connect", server_id))
        if pending is not None:
            await asyncio.wait({pending})

        async with self._lock:
            record = self._records.get(server_id)
            server = self._servers.get(server_id)
            if record is None:
                if notify and server is not None and server.status != ServerStatus.DISCONNECTED:
                    self._servers[server_id] = server.cleared()
                    self._notify()
                return
            if notify and server is not None:
                self._servers[server_id] = server.cleared()
                self._notify()
            record.cancel_polling()
            del self._records[server_id]

        await record.close()

        if notify:
            async with self._lock:
                server = self._servers.get(server_id)
                if server is not None and server_id not in self._records:
                    self._servers[server_id] = server.cleared()
                    self._notify()
        logger.info("Server %s disconnected", server_id)

    async def test_connection(self, server: Server) -> InitializeResult:
        """Validate a configuration without registering anything.

        Runs the full handshake and initial fetch, then tears everything
        down whether or not it succeeded. The registry is never touched.

        Returns:
            The server's initialize result.
        """
        return await self._run_keyed(("test", server.id), self._test_connection(server))

    async def _test_connection(self, server: Server) -> InitializeResult:
        data = await self._perform_connection(server)
        await data.record.close()
        logger.info("Test connection to '%s' succeeded", server.name)
        return data.result

    # ------------------------------------------------------------------
    # Capability fetches and polling
    # ------------------------------------------------------------------

    async def fetch_tools(self, server_id: str) -> list[Tool]:
        """Refresh the server's tool list.

        Raises:
            NotConnectedError: No connection record exists.
        """
        record = self._require_record(server_id)
        tools = await record.refresh_tools()
        await self._apply_fetch(server_id, record, available_tools=list(tools), tools_stale=False)
        return tools

    async def fetch_prompts(self, server_id: str) -> list[Prompt]:
        """Refresh the server's prompt list."""
        record = self._require_record(server_id)
        prompts = await record.refresh_prompts()
        await self._apply_fetch(server_id, record, available_prompts=list(prompts))
        return prompts

    async def fetch_resources(self, server_id: str) -> list[Resource]:
        """Refresh the server's resource list."""
        record = self._require_record(server_id)
        resources = await record.refresh_resources()
        await self._apply_fetch(server_id, record, available_resources=list(resources))
        return resources

    async def fetch_resource_templates(self, server_id: str) -> list[ResourceTemplate]:
        """Refresh the server's resource template list."""
        record = self._require_record(server_id)
        templates = await record.refresh_resource_templates()
        await self._apply_fetch(server_id, record, resource_templates=list(templates))
        return templates

    async def _apply_fetch(
        self, server_id: str, record: ConnectionRecord, **changes: Any
    ) -> None:
        async with self._lock:
            server = self._servers.get(server_id)
            # A fetch finishing after disconnect must not repopulate the entry.
            if server is None or self._records.get(server_id) is not record:
                return
            self._servers[server_id] = dataclasses.replace(server, **changes)
            self._notify()

    async def poll_tools(
        self, server_id: str, interval: float | None = None
    ) -> AsyncIterator[list[Tool]]:
        """Yield the server's tool list now and then every ``interval`` seconds.

        Each tick calls ``fetch_tools``. The sequence ends cleanly when the
        poll is cancelled (the consumer stops, the server disconnects, or
        another poll for the same server starts) and raises when a fetch
        fails. Only one poll per server is active at a time.

        Raises:
            NotConnectedError: No connection record exists.
            Exception: The error of the failing fetch.
        """
        record = self._require_record(server_id)
        period = self.settings.poll_interval if interval is None else interval
        queue: asyncio.Queue[Any] = asyncio.Queue()
        task = record.start_polling(
            self._poll_into(server_id, queue, period),
            name=f"poll-tools:{server_id}",
        )
        try:
            while True:
                item = await queue.get()
                if item is _POLL_DONE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            if not task.done():
                task.cancel()

    async def _poll_into(
        self, server_id: str, queue: asyncio.Queue[Any], interval: float
    ) -> None:
        try:
            while True:
                queue.put_nowait(await self.fetch_tools(server_id))
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            queue.put_nowait(_POLL_DONE)
            raise
        except Exception as exc:
            logger.debug("Tool poll for %s stopped: %s", server_id, exc)
            queue.put_nowait(exc)

    def _start_background_polling(self, server_id: str, record: ConnectionRecord) -> None:
        record.start_polling(
            self._watch_tools(server_id, record),
            name=f"watch-tools:{server_id}",
        )
        logger.debug("Started background tool polling for %s", server_id)

    async def _watch_tools(self, server_id: str, record: ConnectionRecord) -> None:
        """Background poller for servers advertising ``tools.listChanged``.

        Publishes only when the tool list changed. A failed tick marks the
        server's tools as stale and waits the longer error backoff.
        """
        delay = self.settings.poll_interval
        while True:
            await asyncio.sleep(delay)
            try:
                tools = (await record.client.list_tools()).tools
            except Exception as exc:
                logger.warning("Background tool refresh for %s failed: %s", server_id, exc)
                await self._mark_tools_stale(server_id, record)
                delay = self.settings.poll_error_backoff
                continue
            delay = self.settings.poll_interval
            server = self._servers.get(server_id)
            if tools != record.tools or (server is not None and server.tools_stale):
                record.tools = tools
                await self._apply_fetch(
                    server_id, record, available_tools=list(tools), tools_stale=False
                )

    async def _mark_tools_stale(self, server_id: str, record: ConnectionRecord) -> None:
        server = self._servers.get(server_id)
        if server is not None and not server.tools_stale:
            await self._apply_fetch(server_id, record, tools_stale=True)

    # ------------------------------------------------------------------
    # Tool, prompt and resource calls
    # ------------------------------------------------------------------

    async def call_tool(
        self, server_id: str, name: str, arguments: dict[str, Any] | None = None
    ) -> CallToolResult:
        """Invoke a tool the server advertised.

        Raises:
            NotConnectedError: No live connection.
            ToolNotFoundError: ``name`` is not in the cached tool list. No
                request is sent.
        """
        record = self._require_connected(server_id)
        if not record.has_tool(name):
            raise ToolNotFoundError(name)
        logger.debug("Calling tool '%s' on %s", name, server_id)
        return await self._run_keyed(
            ("call_tool", server_id, name), record.client.call_tool(name, arguments or {})
        )

    async def get_prompt(
        self, server_id: str, name: str, arguments: dict[str, Any] | None = None
    ) -> GetPromptResult:
        """Render a prompt the server advertised.

        Raises:
            NotConnectedError: No live connection.
            PromptNotFoundError: ``name`` is not in the cached prompt list.
        """
        record = self._require_connected(server_id)
        if not record.has_prompt(name):
            raise PromptNotFoundError(name)
        logger.debug("Getting prompt '%s' on %s", name, server_id)
        return await self._run_keyed(
            ("get_prompt", server_id, name), record.client.get_prompt(name, arguments)
        )

    async def read_resource(self, server_id: str, uri: str) -> ReadResourceResult:
        """Read a resource the server advertised.

        Raises:
            NotConnectedError: No live connection.
            ResourceNotFoundError: ``uri`` is not in the cached resource list.
        """
        record = self._require_connected(server_id)
        if not record.has_resource(uri):
            raise ResourceNotFoundError(uri)
        logger.debug("Reading resource '%s' on %s", uri, server_id)
        return await self._run_keyed(
            ("read_resource", server_id, uri), record.client.read_resource(uri)
        )

    # ------------------------------------------------------------------
    # Registry edits
    # ------------------------------------------------------------------

    async def add_server(self, server: Server) -> None:
        """Add a server to the registry and persist it."""
        async with self._lock:
            self._servers[server.id] = server
            self._persist()
            self._notify()
        logger.info("Added server '%s'", server.name)

    async def update_server(self, server: Server) -> None:
        """Apply an edited name and/or configuration to an existing server.

        The server keeps its id. A configuration change on a connected
        server disconnects it first; a rename alone leaves the connection
        alone. Runtime fields come from the registry, not from ``server``.
        """
        async with self._lock:
            existing = self._servers.get(server.id)
            reconnect_needed = (
                existing is not None
                and existing.configuration != server.configuration
                and server.id in self._records
            )
        if reconnect_needed:
            logger.info("Configuration of '%s' changed; disconnecting", server.name)
            await self.disconnect(server.id)

        async with self._lock:
            current = self._servers.get(server.id)
            if current is None:
                self._servers[server.id] = server
            else:
                self._servers[server.id] = dataclasses.replace(
                    current, name=server.name, configuration=server.configuration
                )
            self._persist()
            self._notify()
        logger.info("Updated server '%s'", server.name)

    async def remove_server(self, server_id: str) -> None:
        """Disconnect (silently) and delete a server, then persist."""
        await self.disconnect(server_id, notify=False)
        async with self._lock:
            removed = self._servers.pop(server_id, None)
            if removed is None:
                logger.debug("remove_server: %s is not registered", server_id)
                return
            self._persist()
            self._notify()
        logger.info("Removed server '%s'", removed.name)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Cancel in-flight operations, close every connection, end observers.

        Terminates all spawned server processes. Safe to call multiple times.
        """
        operations = [task for task in self._operations.values() if not task.done()]
        for task in operations:
            task.cancel()
        if operations:
            await asyncio.wait(operations)

        async with self._lock:
            records = list(self._records.values())
            self._records.clear()
            changed = False
            for server_id, server in list(self._servers.items()):
                if server.status != ServerStatus.DISCONNECTED:
                    self._servers[server_id] = server.cleared()
                    changed = True
            if changed:
                self._notify()

        for record in records:
            await record.close()
        self._broadcast.close()
        logger.debug("Connection manager closed (%d connection(s))", len(records))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot(self) -> list[Server]:
        return list(self._servers.values())

    def _notify(self) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            for server in self._servers.values():
                logger.debug(
                    "  %s: %s (%d tools, %d prompts)",
                    server.name,
                    server.status,
                    len(server.available_tools),
                    len(server.available_prompts),
                )
        self._broadcast.publish(self._snapshot())

    def _persist(self) -> None:
        """Write configuration, then re-derive the registry from it."""
        config = ConfigFile.from_servers(self._snapshot())
        self._store.save(config)
        self._merge(config)

    def _merge(self, config: ConfigFile) -> None:
        """Reconcile persisted configuration with runtime state.

        A persisted entry matches a runtime server by derived id, or failing
        that by name, which keeps ids preserved across edits. Matched
        servers keep their runtime fields; unmatched entries start fresh.
        Servers absent from the file are dropped unless they hold a live
        connection.
        """
        current = self._servers
        by_name = {server.name: server for server in current.values()}
        merged: dict[str, Server] = {}
        for persisted in config.servers():
            existing = current.get(persisted.id) or by_name.get(persisted.name)
            if existing is None or existing.id in merged:
                merged[persisted.id] = persisted
                continue
            merged[existing.id] = dataclasses.replace(
                existing, name=persisted.name, configuration=persisted.configuration
            )
        for server_id in self._records:
            if server_id not in merged and server_id in current:
                merged[server_id] = current[server_id]
        self._servers = merged

    def _require_record(self, server_id: str) -> ConnectionRecord:
        record = self._records.get(server_id)
        if record is None:
            raise NotConnectedError(server_id)
        return record

    def _require_connected(self, server_id: str) -> ConnectionRecord:
        record = self._require_record(server_id)
        if not record.connected:
            raise NotConnectedError(server_id)
        return record

    async def _run_keyed(self, key: tuple[str, ...], coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` as the single active operation for ``key``."""
        self._cancel_operation(key)
        task = asyncio.create_task(coro, name=":".join(key))
        self._operations[key] = task
        try:
            return await task
        finally:
            if self._operations.get(key) is task:
                del self._operations[key]

    def _cancel_operation(self, key: tuple[str, ...]) -> asyncio.Task[Any] | None:
        task = self._operations.get(key)
        if task is None or task.done():
            return None
        logger.debug("Cancelling %s", ":".join(key))
        task.cancel()
        return task
