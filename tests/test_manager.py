"""Tests for mcp_companion.manager: ConnectionManager state machine.

A FakeClient (injected through ``client_factory``) stands in for the MCP
session and a FakeAdapter (through ``adapter_factory``) for the transport,
so every test runs in-process. A shared Backend object scripts what the
fake server advertises, which requests fail and where a handshake blocks.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

import pytest
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListResourceTemplatesResult,
    ListToolsResult,
    Prompt,
    PromptMessage,
    PromptsCapability,
    ReadResourceResult,
    Resource,
    ResourcesCapability,
    ResourceTemplate,
    ServerCapabilities,
    TextContent,
    TextResourceContents,
    Tool,
    ToolsCapability,
)

from mcp_companion.config_store import ConfigFile, MemoryConfigStore
from mcp_companion.exceptions import (
    ConnectionTimeoutError,
    NotConnectedError,
    PromptNotFoundError,
    ResourceNotFoundError,
    ToolNotFoundError,
)
from mcp_companion.manager import ConnectionManager
from mcp_companion.models import Server, ServerStatus, StdioConfig, TransportType
from mcp_companion.settings import ManagerSettings

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _tool(name: str) -> Tool:
    return Tool(name=name, inputSchema={"type": "object"})


class Backend:
    """What the fake server advertises and how it misbehaves."""

    def __init__(self) -> None:
        self.tools = [_tool("echo"), _tool("add")]
        self.prompts = [Prompt(name="greeting")]
        self.resources = [Resource(uri="fixture://readme", name="readme")]
        self.templates = [ResourceTemplate(uriTemplate="fixture://{name}", name="any")]
        self.capabilities = ServerCapabilities(
            tools=ToolsCapability(listChanged=False),
            prompts=PromptsCapability(),
            resources=ResourcesCapability(),
        )
        self.failures: dict[str, Exception] = {}
        self.connect_gate: asyncio.Event | None = None
        self.call_gate: asyncio.Event | None = None
        self.calls: list[tuple[str, Any]] = []
        self.clients: list[FakeClient] = []

    def rpc_names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeAdapter:
    def __init__(self, configuration: Any) -> None:
        self.configuration = configuration

    @property
    def transport(self) -> TransportType:
        return self.configuration.transport_type

    def describe(self) -> str:
        return self.configuration.display_value

    async def preflight(self) -> None:
        pass

    def open(self) -> Any:
        raise AssertionError("FakeClient never opens the transport")


class FakeClient:
    """Stand-in for ProtocolClient, driven by a Backend."""

    def __init__(self, backend: Backend, client_info: Implementation) -> None:
        self.backend = backend
        self.client_info = client_info
        self.connected = False
        self.disconnected = False
        backend.clients.append(self)

    def _check(self, method: str, detail: Any = None) -> None:
        self.backend.calls.append((method, detail))
        error = self.backend.failures.get(method)
        if error is not None:
            raise error

    async def connect(self, adapter: FakeAdapter) -> InitializeResult:
        self.backend.calls.append(("connect", adapter.describe()))
        if self.backend.connect_gate is not None:
            await self.backend.connect_gate.wait()
        error = self.backend.failures.get("connect")
        if error is not None:
            raise error
        self.connected = True
        return InitializeResult(
            protocolVersion="2025-03-26",
            capabilities=self.backend.capabilities,
            serverInfo=Implementation(name="fake-server", version="1.0"),
            instructions="Use the tools.",
        )

    async def disconnect(self) -> None:
        self.connected = False
        self.disconnected = True

    async def list_tools(self) -> ListToolsResult:
        self._check("list_tools")
        return ListToolsResult(tools=list(self.backend.tools))

    async def list_prompts(self) -> ListPromptsResult:
        self._check("list_prompts")
        return ListPromptsResult(prompts=list(self.backend.prompts))

    async def list_resources(self) -> ListResourcesResult:
        self._check("list_resources")
        return ListResourcesResult(resources=list(self.backend.resources))

    async def list_resource_templates(self) -> ListResourceTemplatesResult:
        self._check("list_resource_templates")
        return ListResourceTemplatesResult(resourceTemplates=list(self.backend.templates))

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> CallToolResult:
        self._check("call_tool", (name, arguments))
        if self.backend.call_gate is not None:
            await self.backend.call_gate.wait()
        return CallToolResult(content=[TextContent(type="text", text=f"{name}:{arguments}")])

    async def get_prompt(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> GetPromptResult:
        self._check("get_prompt", (name, arguments))
        return GetPromptResult(
            messages=[
                PromptMessage(role="user", content=TextContent(type="text", text=f"hi {arguments}"))
            ]
        )

    async def read_resource(self, uri: str) -> ReadResourceResult:
        self._check("read_resource", uri)
        return ReadResourceResult(
            contents=[TextResourceContents(uri=uri, mimeType="text/plain", text="readme")]
        )


class Recorder:
    """Background observer collecting every broadcast snapshot."""

    def __init__(self, manager: ConnectionManager) -> None:
        self.snapshots: list[list[Server]] = []
        self._iterator = manager.observe_servers()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> Recorder:
        first = await anext(self._iterator)
        self.snapshots.append(first)
        self._task = asyncio.create_task(self._run())
        return self

    async def _run(self) -> None:
        async for snapshot in self._iterator:
            self.snapshots.append(snapshot)

    def statuses(self, server_id: str) -> list[ServerStatus]:
        result = []
        for snapshot in self.snapshots:
            for server in snapshot:
                if server.id == server_id:
                    result.append(server.status)
        return result

    def states(self, server_id: str) -> list[Server]:
        return [s for snapshot in self.snapshots for s in snapshot if s.id == server_id]

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def settle() -> None:
    """Let background tasks drain their queues."""
    for _ in range(10):
        await asyncio.sleep(0)


async def wait_until(predicate: Any, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


def _server(name: str = "Everything", command: str = "npx") -> Server:
    return Server(
        name=name,
        configuration=StdioConfig(
            command=command, args=["-y", "@modelcontextprotocol/server-everything"]
        ),
    )


def _make_manager(
    backend: Backend,
    servers: list[Server] | None = None,
    store: MemoryConfigStore | None = None,
    **settings: Any,
) -> tuple[ConnectionManager, MemoryConfigStore]:
    if store is None:
        store = MemoryConfigStore(ConfigFile.from_servers(servers or []))
    manager = ConnectionManager(
        store,
        ManagerSettings(**settings),
        adapter_factory=lambda configuration, _settings: FakeAdapter(configuration),
        client_factory=lambda info: FakeClient(backend, info),
    )
    return manager, store


async def _current(manager: ConnectionManager, server_id: str) -> Server:
    return next(s for s in await manager.get_servers() if s.id == server_id)


@pytest.fixture
def backend() -> Backend:
    return Backend()


@pytest.fixture
async def setup(backend: Backend):
    server = _server()
    manager, store = _make_manager(backend, [server])
    yield manager, store, server
    await manager.aclose()


# ---------------------------------------------------------------------------
# Registry and persistence
# ---------------------------------------------------------------------------


class TestRegistry:
    async def test_loads_servers_from_store(self, backend: Backend) -> None:
        servers = [_server("a", "one"), _server("b", "two")]
        manager, _ = _make_manager(backend, servers)
        loaded = await manager.get_servers()
        assert [s.name for s in loaded] == ["a", "b"]
        assert [s.id for s in loaded] == [s.id for s in servers]
        assert all(s.status == ServerStatus.DISCONNECTED for s in loaded)

    async def test_add_server_persists_and_broadcasts(self, backend: Backend) -> None:
        manager, store = _make_manager(backend)
        recorder = await Recorder(manager).start()
        server = _server()
        await manager.add_server(server)
        await settle()
        assert store.save_count == 1
        assert list(store.config.entries) == ["Everything"]
        assert [s.id for s in recorder.snapshots[-1]] == [server.id]
        await recorder.stop()

    async def test_config_round_trip(self, backend: Backend) -> None:
        """A fresh manager over the same store reproduces name, config and id."""
        manager, store = _make_manager(backend)
        server = _server()
        await manager.add_server(server)
        await manager.connect(server)

        reloaded, _ = _make_manager(backend, store=store)
        [restored] = await reloaded.get_servers()
        assert restored.name == server.name
        assert restored.configuration == server.configuration
        assert restored.id == server.id
        assert restored.status == ServerStatus.DISCONNECTED
        assert restored.available_tools == []
        await manager.aclose()

    async def test_rename_keeps_connection(self, setup: Any, backend: Backend) -> None:
        manager, store, server = setup
        await manager.connect(server)
        await manager.update_server(dataclasses.replace(server, name="Renamed"))

        updated = await _current(manager, server.id)
        assert updated.name == "Renamed"
        assert updated.status == ServerStatus.CONNECTED
        assert updated.available_tools
        assert manager.has_connection(server.id)
        assert not backend.clients[0].disconnected
        assert list(store.config.entries) == ["Renamed"]

    async def test_config_change_disconnects_first(self, setup: Any, backend: Backend) -> None:
        manager, store, server = setup
        await manager.connect(server)
        changed = dataclasses.replace(server, configuration=StdioConfig(command="uvx"))
        await manager.update_server(changed)

        updated = await _current(manager, server.id)
        assert updated.configuration == StdioConfig(command="uvx")
        assert updated.status == ServerStatus.DISCONNECTED
        assert updated.available_tools == []
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert store.config.entries["Everything"] == StdioConfig(command="uvx")

    async def test_update_keeps_id_after_reconnect(self, setup: Any) -> None:
        manager, _, server = setup
        changed = dataclasses.replace(server, configuration=StdioConfig(command="uvx"))
        await manager.update_server(changed)
        await manager.connect(changed)
        assert (await _current(manager, server.id)).status == ServerStatus.CONNECTED

    async def test_remove_connected_server(self, setup: Any, backend: Backend) -> None:
        manager, store, server = setup
        await manager.connect(server)
        recorder = await Recorder(manager).start()
        before = len(recorder.snapshots)

        await manager.remove_server(server.id)
        await settle()

        assert await manager.get_servers() == []
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert store.config.entries == {}
        # Exactly one broadcast, with the server already gone.
        assert len(recorder.snapshots) == before + 1
        assert recorder.snapshots[-1] == []
        await recorder.stop()

    async def test_remove_unknown_is_noop(self, setup: Any) -> None:
        manager, store, _ = setup
        await manager.remove_server("does-not-exist")
        assert store.save_count == 0
        assert len(await manager.get_servers()) == 1

    async def test_connect_unregistered_server_is_not_persisted(
        self, backend: Backend
    ) -> None:
        manager, store = _make_manager(backend)
        server = _server("Ephemeral")
        await manager.connect(server)
        assert [s.name for s in await manager.get_servers()] == ["Ephemeral"]
        assert store.save_count == 0
        await manager.aclose()


# ---------------------------------------------------------------------------
# Connect
# ---------------------------------------------------------------------------


class TestConnect:
    async def test_status_sequence(self, setup: Any) -> None:
        manager, _, server = setup
        recorder = await Recorder(manager).start()
        await manager.connect(server)
        await settle()

        assert recorder.statuses(server.id) == [
            ServerStatus.DISCONNECTED,
            ServerStatus.CONNECTING,
            ServerStatus.CONNECTED,
        ]
        connected = recorder.states(server.id)[-1]
        assert [t.name for t in connected.available_tools] == ["echo", "add"]
        assert [p.name for p in connected.available_prompts] == ["greeting"]
        assert [str(r.uri) for r in connected.available_resources] == ["fixture://readme"]
        assert [t.name for t in connected.resource_templates] == ["any"]
        assert connected.server_info is not None
        assert connected.server_info.name == "fake-server"
        assert connected.protocol_version == "2025-03-26"
        assert connected.instructions == "Use the tools."
        assert connected.capabilities is not None
        await recorder.stop()

    async def test_connecting_snapshot_has_empty_lists(self, setup: Any) -> None:
        manager, _, server = setup
        recorder = await Recorder(manager).start()
        await manager.connect(server)
        await settle()
        connecting = recorder.states(server.id)[1]
        assert connecting.status == ServerStatus.CONNECTING
        assert connecting.available_tools == []
        await recorder.stop()

    async def test_client_identity(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server], client_name="Tester", client_version="9")
        await manager.connect(server)
        assert backend.clients[0].client_info == Implementation(name="Tester", version="9")
        await manager.aclose()

    async def test_skips_unadvertised_capabilities(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.capabilities = ServerCapabilities(tools=ToolsCapability())
        await manager.connect(server)
        assert backend.rpc_names() == ["connect", "list_tools"]
        current = await _current(manager, server.id)
        assert current.available_prompts == []
        assert current.available_resources == []

    async def test_capability_fetch_failure_is_best_effort(
        self, setup: Any, backend: Backend, caplog: Any
    ) -> None:
        manager, _, server = setup
        backend.failures["list_prompts"] = RuntimeError("prompts exploded")
        with caplog.at_level(logging.WARNING):
            await manager.connect(server)
        current = await _current(manager, server.id)
        assert current.status == ServerStatus.CONNECTED
        assert current.available_prompts == []
        assert len(current.available_tools) == 2
        assert "prompts exploded" in caplog.text

    async def test_strict_capability_fetch(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server], strict_capability_fetch=True)
        backend.failures["list_resources"] = RuntimeError("resources exploded")
        with pytest.raises(RuntimeError, match="resources exploded"):
            await manager.connect(server)
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert (await _current(manager, server.id)).status == ServerStatus.ERROR
        await manager.aclose()

    async def test_failure_sets_error_status(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.failures["connect"] = ConnectionRefusedError("refused")
        recorder = await Recorder(manager).start()

        with pytest.raises(ConnectionRefusedError):
            await manager.connect(server)
        await settle()

        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        failed = await _current(manager, server.id)
        assert failed.status == ServerStatus.ERROR
        assert failed.error == "refused"
        assert failed.available_tools == []
        assert recorder.statuses(server.id) == [ServerStatus.DISCONNECTED, ServerStatus.ERROR]
        await recorder.stop()

    async def test_retry_after_error(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.failures["connect"] = ConnectionRefusedError("refused")
        with pytest.raises(ConnectionRefusedError):
            await manager.connect(server)
        del backend.failures["connect"]
        await manager.connect(server)
        current = await _current(manager, server.id)
        assert current.status == ServerStatus.CONNECTED
        assert current.error is None

    async def test_disconnect_from_error(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.failures["connect"] = ConnectionRefusedError("refused")
        with pytest.raises(ConnectionRefusedError):
            await manager.connect(server)
        await manager.disconnect(server.id)
        current = await _current(manager, server.id)
        assert current.status == ServerStatus.DISCONNECTED
        assert current.error is None

    async def test_handshake_timeout(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server], connect_timeout=0.05)
        backend.connect_gate = asyncio.Event()
        with pytest.raises(ConnectionTimeoutError, match="Connection timed out after 0.05 seconds"):
            await manager.connect(server)
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert (await _current(manager, server.id)).status == ServerStatus.ERROR
        await manager.aclose()

    async def test_transport_timeout_passes_through(self, setup: Any, backend: Backend) -> None:
        """A TimeoutError raised by the transport is not relabelled as a handshake timeout."""
        manager, _, server = setup
        backend.failures["connect"] = TimeoutError("read timed out")
        with pytest.raises(TimeoutError, match="read timed out"):
            await manager.connect(server)
        failed = await _current(manager, server.id)
        assert failed.status == ServerStatus.ERROR
        assert failed.error == "read timed out"

    async def test_reconnect_closes_replaced_record(self, backend: Backend) -> None:
        backend.capabilities = ServerCapabilities(tools=ToolsCapability(listChanged=True))
        server = _server()
        manager, _ = _make_manager(backend, [server], poll_interval=0.01)
        await manager.connect(server)
        first_poller = manager._records[server.id].polling_task
        assert first_poller is not None

        await manager.connect(server)

        assert backend.clients[0].disconnected
        assert first_poller.done()
        assert not backend.clients[1].disconnected
        second_poller = manager._records[server.id].polling_task
        assert second_poller is not None
        assert not second_poller.done()
        assert (await _current(manager, server.id)).status == ServerStatus.CONNECTED

        await manager.aclose()
        assert backend.clients[1].disconnected
        assert second_poller.done()

    async def test_cancel_between_connecting_and_connected(
        self, setup: Any, backend: Backend
    ) -> None:
        """Cancelling at CONNECTING rolls back; CONNECTED is never observed."""
        manager, _, server = setup
        observer = manager.observe_servers()
        await anext(observer)

        task = asyncio.create_task(manager.connect(server))
        seen: list[Server] = []
        async for snapshot in observer:
            seen.extend(s for s in snapshot if s.id == server.id)
            if seen[-1].status == ServerStatus.CONNECTING:
                task.cancel()
                break

        with pytest.raises(asyncio.CancelledError):
            await task
        rollback = await asyncio.wait_for(anext(observer), timeout=1)
        seen.extend(s for s in rollback if s.id == server.id)
        await observer.aclose()

        assert [s.status for s in seen] == [ServerStatus.CONNECTING, ServerStatus.DISCONNECTED]
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert (await _current(manager, server.id)).status == ServerStatus.DISCONNECTED

    async def test_disconnect_cancels_inflight_connect(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.connect_gate = asyncio.Event()
        task = asyncio.create_task(manager.connect(server))
        await wait_until(lambda: "connect" in backend.rpc_names())

        await manager.disconnect(server.id)

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        assert (await _current(manager, server.id)).status == ServerStatus.DISCONNECTED

    async def test_connected_always_has_server_info(self, setup: Any) -> None:
        manager, _, server = setup
        recorder = await Recorder(manager).start()
        for _ in range(3):
            await manager.connect(server)
            await manager.disconnect(server.id)
        await settle()
        for state in recorder.states(server.id):
            if state.status == ServerStatus.CONNECTED:
                assert state.server_info is not None
        await recorder.stop()


# ---------------------------------------------------------------------------
# Disconnect
# ---------------------------------------------------------------------------


class TestDisconnect:
    async def test_disconnect_clears_state(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        recorder = await Recorder(manager).start()
        before = len(recorder.snapshots)

        await manager.disconnect(server.id)
        await settle()

        assert not manager.has_connection(server.id)
        assert backend.clients[0].disconnected
        after = recorder.states(server.id)[before:]
        # Broadcast before and after removal, both already cleared.
        assert len(after) == 2
        for state in after:
            assert state.status == ServerStatus.DISCONNECTED
            assert state.available_tools == []
            assert state.available_prompts == []
            assert state.available_resources == []
            assert state.resource_templates == []
        await recorder.stop()

    async def test_disconnect_without_record_is_silent(self, setup: Any) -> None:
        manager, store, server = setup
        recorder = await Recorder(manager).start()
        await manager.disconnect(server.id)
        await manager.disconnect(server.id)
        await manager.disconnect("unknown-id")
        await settle()
        assert len(recorder.snapshots) == 1
        assert store.save_count == 0
        await recorder.stop()

    async def test_disconnect_without_notify(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        recorder = await Recorder(manager).start()
        await manager.disconnect(server.id, notify=False)
        await settle()
        assert len(recorder.snapshots) == 1
        assert not manager.has_connection(server.id)
        await recorder.stop()

    async def test_requests_fail_after_disconnect(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        await manager.disconnect(server.id)
        with pytest.raises(NotConnectedError):
            await manager.fetch_tools(server.id)
        with pytest.raises(NotConnectedError):
            await manager.call_tool(server.id, "echo", {})


# ---------------------------------------------------------------------------
# test_connection
# ---------------------------------------------------------------------------


class TestTestConnection:
    async def test_success_leaves_registry_untouched(self, setup: Any, backend: Backend) -> None:
        manager, store, server = setup
        recorder = await Recorder(manager).start()
        result = await manager.test_connection(server)
        await settle()

        assert result.serverInfo.name == "fake-server"
        assert backend.clients[0].disconnected
        assert not manager.has_connection(server.id)
        assert len(recorder.snapshots) == 1
        assert store.save_count == 0
        assert (await _current(manager, server.id)).status == ServerStatus.DISCONNECTED
        await recorder.stop()

    async def test_failure_leaves_registry_untouched(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        backend.failures["connect"] = ConnectionRefusedError("refused")
        with pytest.raises(ConnectionRefusedError):
            await manager.test_connection(server)
        assert backend.clients[0].disconnected
        assert (await _current(manager, server.id)).status == ServerStatus.DISCONNECTED

    async def test_unregistered_server_not_added(self, backend: Backend) -> None:
        manager, _ = _make_manager(backend)
        await manager.test_connection(_server("Probe"))
        assert await manager.get_servers() == []
        await manager.aclose()


# ---------------------------------------------------------------------------
# Fetches
# ---------------------------------------------------------------------------


class TestFetch:
    async def test_fetch_requires_connection(self, setup: Any) -> None:
        manager, _, server = setup
        for fetch in (
            manager.fetch_tools,
            manager.fetch_prompts,
            manager.fetch_resources,
            manager.fetch_resource_templates,
        ):
            with pytest.raises(NotConnectedError, match="Not connected to server"):
                await fetch(server.id)

    async def test_fetch_tools_updates_snapshot(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.tools = [_tool("only")]
        recorder = await Recorder(manager).start()

        tools = await manager.fetch_tools(server.id)
        await settle()

        assert [t.name for t in tools] == ["only"]
        assert [t.name for t in recorder.states(server.id)[-1].available_tools] == ["only"]
        await recorder.stop()

    async def test_fetch_other_lists(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.prompts = []
        backend.resources = []
        backend.templates = []
        assert await manager.fetch_prompts(server.id) == []
        assert await manager.fetch_resources(server.id) == []
        assert await manager.fetch_resource_templates(server.id) == []
        current = await _current(manager, server.id)
        assert current.available_prompts == []
        assert current.available_resources == []
        assert current.resource_templates == []

    async def test_new_tool_becomes_callable(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.tools = [_tool("fresh")]
        await manager.fetch_tools(server.id)
        result = await manager.call_tool(server.id, "fresh", {})
        assert result.content[0].text == "fresh:{}"


# ---------------------------------------------------------------------------
# Tool, prompt and resource calls
# ---------------------------------------------------------------------------


class TestCalls:
    async def test_call_tool(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        result = await manager.call_tool(server.id, "echo", {"message": "hi"})
        assert result.content[0].text == "echo:{'message': 'hi'}"
        assert ("call_tool", ("echo", {"message": "hi"})) in backend.calls

    async def test_unknown_tool_sends_nothing(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        with pytest.raises(ToolNotFoundError, match="Tool nonexistent not found"):
            await manager.call_tool(server.id, "nonexistent", {})
        assert "call_tool" not in backend.rpc_names()

    async def test_call_tool_requires_connection(self, setup: Any) -> None:
        manager, _, server = setup
        with pytest.raises(NotConnectedError):
            await manager.call_tool(server.id, "echo", {})

    async def test_rpc_error_propagates(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.failures["call_tool"] = ValueError("tool blew up")
        with pytest.raises(ValueError, match="tool blew up"):
            await manager.call_tool(server.id, "echo", {})
        assert (await _current(manager, server.id)).status == ServerStatus.CONNECTED

    async def test_same_call_cancels_previous(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.call_gate = asyncio.Event()

        first = asyncio.create_task(manager.call_tool(server.id, "echo", {"n": 1}))
        await wait_until(lambda: backend.rpc_names().count("call_tool") == 1)
        second = asyncio.create_task(manager.call_tool(server.id, "echo", {"n": 2}))
        await wait_until(lambda: backend.rpc_names().count("call_tool") == 2)
        backend.call_gate.set()

        with pytest.raises(asyncio.CancelledError):
            await first
        result = await second
        assert result.content[0].text == "echo:{'n': 2}"

    async def test_different_tools_run_concurrently(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        backend.call_gate = asyncio.Event()
        first = asyncio.create_task(manager.call_tool(server.id, "echo", {}))
        second = asyncio.create_task(manager.call_tool(server.id, "add", {}))
        await wait_until(lambda: backend.rpc_names().count("call_tool") == 2)
        backend.call_gate.set()
        results = await asyncio.gather(first, second)
        assert [r.content[0].text for r in results] == ["echo:{}", "add:{}"]

    async def test_get_prompt(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        result = await manager.get_prompt(server.id, "greeting", {"name": "Ada"})
        assert result.messages[0].content.text == "hi {'name': 'Ada'}"

    async def test_unknown_prompt(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        with pytest.raises(PromptNotFoundError):
            await manager.get_prompt(server.id, "missing")
        assert "get_prompt" not in backend.rpc_names()

    async def test_read_resource(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        result = await manager.read_resource(server.id, "fixture://readme")
        assert result.contents[0].text == "readme"

    async def test_unknown_resource(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        with pytest.raises(ResourceNotFoundError):
            await manager.read_resource(server.id, "fixture://missing")
        assert "read_resource" not in backend.rpc_names()


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestPollTools:
    async def test_error_on_second_tick_ends_sequence(self, setup: Any, backend: Backend) -> None:
        manager, _, server = setup
        await manager.connect(server)
        received: list[list[Tool]] = []

        with pytest.raises(RuntimeError, match="tick failed"):
            async for tools in manager.poll_tools(server.id, interval=0.01):
                received.append(tools)
                backend.failures["list_tools"] = RuntimeError("tick failed")

        assert len(received) == 1
        assert [t.name for t in received[0]] == ["echo", "add"]

    async def test_disconnect_ends_poll_cleanly(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        received: list[list[Tool]] = []

        async def consume() -> None:
            async for tools in manager.poll_tools(server.id, interval=0.01):
                received.append(tools)

        consumer = asyncio.create_task(consume())
        await wait_until(lambda: len(received) >= 2)
        await manager.disconnect(server.id)
        await asyncio.wait_for(consumer, timeout=1)
        assert consumer.exception() is None

    async def test_new_poll_replaces_previous(self, setup: Any) -> None:
        manager, _, server = setup
        await manager.connect(server)
        first_received: list[list[Tool]] = []

        async def consume_first() -> None:
            async for tools in manager.poll_tools(server.id, interval=0.01):
                first_received.append(tools)

        first = asyncio.create_task(consume_first())
        await wait_until(lambda: len(first_received) >= 1)

        second = manager.poll_tools(server.id, interval=0.01)
        assert await anext(second)
        await asyncio.wait_for(first, timeout=1)
        assert first.exception() is None
        await second.aclose()

    async def test_poll_requires_connection(self, setup: Any) -> None:
        manager, _, server = setup
        with pytest.raises(NotConnectedError):
            await anext(manager.poll_tools(server.id))


class TestBackgroundPolling:
    """Automatic tool refresh for servers advertising tools.listChanged."""

    async def _connect(self, backend: Backend, **settings: Any) -> tuple[ConnectionManager, Server]:
        backend.capabilities = ServerCapabilities(tools=ToolsCapability(listChanged=True))
        server = _server()
        manager, _ = _make_manager(backend, [server], **settings)
        await manager.connect(server)
        return manager, server

    async def test_picks_up_changed_tools(self, backend: Backend) -> None:
        manager, server = await self._connect(backend, poll_interval=0.01)
        backend.tools = [_tool("late")]

        async def has_late_tool() -> bool:
            current = await _current(manager, server.id)
            return [t.name for t in current.available_tools] == ["late"]

        for _ in range(200):
            if await has_late_tool():
                break
            await asyncio.sleep(0.005)
        assert await has_late_tool()
        await manager.aclose()

    async def test_unchanged_tools_not_broadcast(self, backend: Backend) -> None:
        manager, server = await self._connect(backend, poll_interval=0.01)
        recorder = await Recorder(manager).start()
        await wait_until(lambda: backend.rpc_names().count("list_tools") >= 4)
        await settle()
        assert len(recorder.snapshots) == 1
        await recorder.stop()
        await manager.aclose()

    async def test_failure_marks_tools_stale(self, backend: Backend, caplog: Any) -> None:
        manager, server = await self._connect(
            backend, poll_interval=0.01, poll_error_backoff=0.01
        )
        backend.failures["list_tools"] = RuntimeError("poll failed")
        with caplog.at_level(logging.WARNING):
            await wait_until(lambda: manager._servers[server.id].tools_stale)
        current = await _current(manager, server.id)
        assert current.status == ServerStatus.CONNECTED
        assert len(current.available_tools) == 2
        assert "poll failed" in caplog.text

        del backend.failures["list_tools"]
        await wait_until(lambda: not manager._servers[server.id].tools_stale)
        await manager.aclose()

    async def test_failure_waits_error_backoff(self, backend: Backend) -> None:
        """After a failed tick the poller sleeps the error backoff, not the interval."""
        manager, server = await self._connect(
            backend, poll_interval=0.01, poll_error_backoff=5.0
        )
        backend.failures["list_tools"] = RuntimeError("poll failed")
        await wait_until(lambda: manager._servers[server.id].tools_stale)
        attempts = backend.rpc_names().count("list_tools")

        await asyncio.sleep(0.1)

        assert backend.rpc_names().count("list_tools") == attempts
        await manager.aclose()

    async def test_no_polling_without_list_changed(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server], poll_interval=0.01)
        await manager.connect(server)
        await asyncio.sleep(0.05)
        assert backend.rpc_names().count("list_tools") == 1
        await manager.aclose()


# ---------------------------------------------------------------------------
# Observers and shutdown
# ---------------------------------------------------------------------------


class TestObservers:
    async def test_every_observer_sees_same_sequence(self, setup: Any) -> None:
        manager, _, server = setup
        first = await Recorder(manager).start()
        second = await Recorder(manager).start()
        await manager.connect(server)
        await manager.disconnect(server.id)
        await settle()
        assert first.statuses(server.id) == second.statuses(server.id)
        assert first.statuses(server.id) == [
            ServerStatus.DISCONNECTED,
            ServerStatus.CONNECTING,
            ServerStatus.CONNECTED,
            ServerStatus.DISCONNECTED,
            ServerStatus.DISCONNECTED,
        ]
        await first.stop()
        await second.stop()

    async def test_disconnected_snapshots_have_empty_lists(self, setup: Any) -> None:
        manager, _, server = setup
        recorder = await Recorder(manager).start()
        await manager.connect(server)
        await manager.fetch_tools(server.id)
        await manager.disconnect(server.id)
        await settle()
        for state in recorder.states(server.id):
            if state.status == ServerStatus.DISCONNECTED:
                assert state.available_tools == []
                assert state.available_prompts == []
                assert state.available_resources == []
                assert state.resource_templates == []
        await recorder.stop()


class TestShutdown:
    async def test_aclose_closes_everything(self, backend: Backend) -> None:
        servers = [_server("a", "one"), _server("b", "two")]
        manager, _ = _make_manager(backend, servers)
        for server in servers:
            await manager.connect(server)

        observed: list[list[Server]] = []

        async def observe() -> None:
            async for snapshot in manager.observe_servers():
                observed.append(snapshot)

        observer = asyncio.create_task(observe())
        await settle()
        await manager.aclose()
        await asyncio.wait_for(observer, timeout=1)

        assert all(client.disconnected for client in backend.clients)
        assert not any(manager.has_connection(s.id) for s in servers)
        assert all(s.status == ServerStatus.DISCONNECTED for s in observed[-1])

    async def test_aclose_cancels_inflight_connect(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server])
        backend.connect_gate = asyncio.Event()
        task = asyncio.create_task(manager.connect(server))
        await wait_until(lambda: "connect" in backend.rpc_names())
        await manager.aclose()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert backend.clients[0].disconnected

    async def test_async_context_manager(self, backend: Backend) -> None:
        server = _server()
        manager, _ = _make_manager(backend, [server])
        async with manager as entered:
            assert entered is manager
            await manager.connect(server)
        assert backend.clients[0].disconnected
        await manager.aclose()
