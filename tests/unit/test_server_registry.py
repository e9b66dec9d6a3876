"""
Unit tests for the server registry and host following.
"""

import httpx
import pytest

from mocolamma.core.state import StateStore
from mocolamma.schemas.server import ConnectionState, ServerInfo
from mocolamma.services.ollama_client import OllamaClient
from mocolamma.services.server_registry import ServerRegistry


class TestServerRegistry:
    """Test server bookkeeping."""

    def test_local_server_always_present(self):
        """Test that the default local server is added and selected."""
        registry = ServerRegistry()

        assert [(s.name, s.host) for s in registry.servers] == [("Local", "localhost:11434")]
        assert registry.current_host == "localhost:11434"

    def test_local_server_not_duplicated(self):
        """Test that an existing local entry is reused."""
        local = ServerInfo(name="Local", host="localhost:11434")
        registry = ServerRegistry([local])

        assert registry.servers == [local]

    def test_add_selects_new_server(self):
        """Test that adding a server selects it and notifies listeners."""
        registry = ServerRegistry()
        hosts = []
        registry.subscribe(hosts.append)

        server = registry.add_server("GPU box", "https://gpu.example.com")

        assert registry.selected_id == server.id
        assert registry.current_host == "https://gpu.example.com"
        assert hosts == ["https://gpu.example.com"]

    def test_delete_selected_falls_back_to_first(self):
        """Test that deleting the selection selects the first server."""
        registry = ServerRegistry()
        server = registry.add_server("GPU box", "gpu:11434")

        assert registry.delete_server(server.id) is True

        assert registry.current_host == "localhost:11434"
        assert registry.delete_server(server.id) is False

    def test_update_selected_host_notifies(self):
        """Test that editing the selected server's host is published."""
        registry = ServerRegistry()
        server = registry.add_server("GPU box", "gpu:11434")
        hosts = []
        registry.subscribe(hosts.append)

        registry.update_server(server.model_copy(update={"host": "gpu:22222"}))

        assert hosts == ["gpu:22222"]

    def test_select_unknown_server(self):
        """Test that selecting an unknown id raises."""
        registry = ServerRegistry()

        with pytest.raises(KeyError):
            registry.select(ServerInfo(name="x", host="y").id)

    def test_fallback_without_servers(self):
        """Test the default host when every server was removed."""
        registry = ServerRegistry()
        registry.delete_server(registry.servers[0].id)

        assert registry.selected_server is None
        assert registry.current_host == "localhost:11434"


class TestClientFollowsRegistry:
    """Test that the client tracks the selected server."""

    async def test_client_uses_selected_host(self):
        """Test requests go to the selected server and connectivity is recorded."""
        seen_hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_hosts.append(request.url.host)
            if request.url.host == "down.example.com":
                raise httpx.ConnectError("Connection refused", request=request)
            return httpx.Response(200, json={"models": []})

        registry = ServerRegistry()
        state = StateStore()
        client = OllamaClient(
            state=state, server_registry=registry, transport=httpx.MockTransport(handler)
        )
        try:
            assert client.api_base_url == "localhost:11434"

            registry.add_server("Down", "down.example.com")
            assert state.state.api_base_url == "down.example.com"

            statuses = await registry.check_all(client)
            await client.fetch_models()
        finally:
            await client.close()

        local, down = registry.servers
        assert statuses[local.id].state is ConnectionState.CONNECTED
        assert registry.connection_statuses[down.id].state is ConnectionState.UNKNOWN_HOST
        assert seen_hosts[-1] == "down.example.com"
        assert state.state.api_connection_error is True
