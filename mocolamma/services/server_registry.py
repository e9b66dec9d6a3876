"""
In-memory registry of known Ollama servers and the current selection.
"""

import asyncio
from collections.abc import Callable
from uuid import UUID

from mocolamma.core.logging import get_logger
from mocolamma.schemas.server import (
    DEFAULT_SERVER_HOST,
    DEFAULT_SERVER_NAME,
    ServerConnectionStatus,
    ServerInfo,
)

logger = get_logger(__name__)

HostListener = Callable[[str | None], None]


class ServerRegistry:
    """
    Known servers, always including the default local server.

    Subscribers are notified with the new current host whenever the selection
    or the selected server's host changes.
    """

    def __init__(self, servers: list[ServerInfo] | None = None, selected_id: UUID | None = None):
        self.servers: list[ServerInfo] = list(servers or [])
        self.connection_statuses: dict[UUID, ServerConnectionStatus | None] = {}
        self._listeners: list[HostListener] = []

        local = ServerInfo(name=DEFAULT_SERVER_NAME, host=DEFAULT_SERVER_HOST)
        if not any(
            s.name == local.name and s.host == local.host for s in self.servers
        ):
            self.servers.insert(0, local)

        if selected_id is not None and self.get(selected_id) is not None:
            self.selected_id: UUID | None = selected_id
        else:
            self.selected_id = self.servers[0].id if self.servers else None

    def get(self, server_id: UUID) -> ServerInfo | None:
        return next((s for s in self.servers if s.id == server_id), None)

    @property
    def selected_server(self) -> ServerInfo | None:
        if self.selected_id is None:
            return None
        return self.get(self.selected_id)

    @property
    def current_host(self) -> str:
        """Host of the selected server, falling back to the first server."""
        selected = self.selected_server
        if selected is not None:
            return selected.host
        if self.servers:
            return self.servers[0].host
        return DEFAULT_SERVER_HOST

    def add_server(self, name: str, host: str) -> ServerInfo:
        """Add a server and select it."""
        server = ServerInfo(name=name, host=host)
        self.servers.append(server)
        logger.info(f"Added server {name} ({host})")
        self.select(server.id)
        return server

    def update_server(self, server: ServerInfo) -> bool:
        """
        Replace a server's details by id.

        Returns:
            bool: False if the server is unknown
        """
        for index, existing in enumerate(self.servers):
            if existing.id == server.id:
                previous_host = self.current_host
                self.servers[index] = server
                self.connection_statuses.pop(server.id, None)
                logger.info(f"Updated server {server.name} ({server.host})")
                self._notify_if_changed(previous_host)
                return True
        logger.warning(f"Cannot update unknown server {server.id}")
        return False

    def delete_server(self, server_id: UUID) -> bool:
        """Remove a server; a deleted selection falls back to the first server."""
        server = self.get(server_id)
        if server is None:
            return False

        previous_host = self.current_host
        self.servers.remove(server)
        self.connection_statuses.pop(server_id, None)
        logger.info(f"Deleted server {server.name} ({server.host})")

        if self.selected_id == server_id:
            self.selected_id = self.servers[0].id if self.servers else None
        self._notify_if_changed(previous_host)
        return True

    def select(self, server_id: UUID) -> None:
        """
        Select a server by id.

        Raises:
            KeyError: If the server is unknown
        """
        if self.get(server_id) is None:
            raise KeyError(f"Unknown server: {server_id}")
        previous_host = self.current_host
        self.selected_id = server_id
        self._notify_if_changed(previous_host)

    def update_connection_status(
        self, server_id: UUID, status: ServerConnectionStatus | None
    ) -> None:
        self.connection_statuses[server_id] = status

    async def check_all(self, client) -> dict[UUID, ServerConnectionStatus]:
        """
        Probe every server concurrently and record the results.

        Args:
            client: OllamaClient used for the probes
        """
        servers = list(self.servers)
        results = await asyncio.gather(*(client.check_api_connectivity(s.host) for s in servers))
        for server, status in zip(servers, results):
            self.update_connection_status(server.id, status)
        return dict(zip((s.id for s in servers), results))

    def subscribe(self, listener: HostListener) -> Callable[[], None]:
        """
        Register a listener for current-host changes.

        Returns:
            Callable: Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify_if_changed(self, previous_host: str) -> None:
        host = self.current_host
        if host == previous_host:
            return
        logger.debug(f"Current server host changed to {host}")
        for listener in list(self._listeners):
            listener(host)
