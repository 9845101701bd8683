"""Server manager — spawns, indexes and routes calls to MCP server processes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from mcphub.extensions.resolver import ExtensionError, ExtensionResolver
from mcphub.mcp.client import PROTOCOL_VERSION, REQUEST_TIMEOUT, MCPClient
from mcphub.mcp.config import MCPConfig, MCPConfigStore
from mcphub.mcp.errors import MCPError, MCPServerNotFoundError
from mcphub.mcp.schema import ServerConfig, ServerInfo

logger = logging.getLogger(__name__)


class MCPManager:
    """
    Owns the running MCP clients, keyed by server name.

    ``load_servers()`` merges the servers from the config file with those
    contributed by enabled extensions (named ``ext_<extension_id>``), then
    spawns and initializes every one that is not already running. Calls are
    routed to a client by exact name.

    Only one load runs at a time. A load requested while another is in
    flight returns the currently loaded names straight away; it is not
    queued. If ``stop_all()`` runs while a load is in flight, the load
    stops the server it just started and spawns nothing further.
    """

    def __init__(
        self,
        config_store: Optional[MCPConfigStore] = None,
        extension_resolver: Optional[ExtensionResolver] = None,
        request_timeout: float = REQUEST_TIMEOUT,
        protocol_version: str = PROTOCOL_VERSION,
        client_info: Optional[Dict[str, str]] = None,
    ):
        self.config_store = config_store or MCPConfigStore()
        self.extension_resolver = extension_resolver
        self._client_options: Dict[str, Any] = {
            "request_timeout": request_timeout,
            "protocol_version": protocol_version,
            "client_info": client_info,
        }
        self._clients: Dict[str, MCPClient] = {}
        self._loading = False
        # Bumped by stop_all() so an in-flight load can tell its spawns are orphaned.
        self._generation = 0

    # ── Loading ───────────────────────────────────────────────────────────

    async def load_servers(self) -> List[str]:
        """
        Start every configured and extension-provided server not yet running.

        A server that fails to spawn or initialize is logged and skipped.
        Returns the names of all running servers.
        """
        if self._loading:
            logger.info("load_servers() already in progress; returning current servers")
            return self.server_names()

        self._loading = True
        generation = self._generation
        try:
            for name, config in self._collect_configs().items():
                if name in self._clients:
                    continue
                client = await self._start(name, config)
                if client is None:
                    continue
                if generation != self._generation:
                    logger.info("Servers were stopped during load; discarding '%s'", name)
                    await _stop_clients([client])
                    break
                self._clients[name] = client
        finally:
            self._loading = False

        return self.server_names()

    def _collect_configs(self) -> Dict[str, ServerConfig]:
        configs: Dict[str, ServerConfig] = dict(self.config_store.load().servers)
        logger.info("Found %d server(s) in %s", len(configs), self.config_store.path)

        if self.extension_resolver is None:
            return configs

        try:
            ext_servers = self.extension_resolver.get_mcp_servers()
        except (ExtensionError, OSError) as exc:
            logger.error("Failed to get extension MCP servers: %s", exc)
            return configs

        for ext in ext_servers:
            if ext.server_name in configs:
                logger.warning("Extension server '%s' clashes with a configured server; skipping", ext.server_name)
                continue
            logger.info("Adding extension server '%s' (%s)", ext.server_name, ext.name)
            configs[ext.server_name] = ServerConfig(command=ext.command, args=ext.args, env=ext.env)
        return configs

    async def _start(self, name: str, config: ServerConfig) -> Optional[MCPClient]:
        try:
            client = MCPClient.spawn(name, config, **self._client_options)
        except MCPError as exc:
            logger.warning("Skipping server '%s': %s", name, exc)
            return None

        try:
            await client.initialize()
        except MCPError as exc:
            logger.warning("Skipping server '%s': %s", name, exc)
            await _stop_clients([client])
            return None
        return client

    # ── Queries ───────────────────────────────────────────────────────────

    def server_names(self) -> List[str]:
        return sorted(self._clients)

    async def list_servers(self) -> List[ServerInfo]:
        """Snapshot of every ready server with its tools and resources."""
        return [
            ServerInfo(name=name, tools=list(client.tools), resources=list(client.resources))
            for name, client in sorted(self._clients.items())
            if client.is_ready
        ]

    def get_client(self, name: str) -> MCPClient:
        client = self._clients.get(name)
        if client is None:
            raise MCPServerNotFoundError(name)
        return client

    # ── Calls ─────────────────────────────────────────────────────────────

    async def call_tool(self, server: str, tool: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        client = self.get_client(server)
        logger.debug("call_tool %s.%s", server, tool)
        return await client.call_tool(tool, arguments or {})

    async def read_resource(self, server: str, uri: str) -> Any:
        client = self.get_client(server)
        logger.debug("read_resource %s %s", server, uri)
        return await client.read_resource(uri)

    # ── Teardown ──────────────────────────────────────────────────────────

    async def stop_server(self, name: str) -> None:
        client = self._clients.pop(name, None)
        if client is None:
            raise MCPServerNotFoundError(name)
        await _stop_clients([client])

    async def stop_all(self) -> None:
        self._generation += 1
        clients = list(self._clients.values())
        self._clients.clear()
        await _stop_clients(clients)

    # ── Config file ───────────────────────────────────────────────────────

    @property
    def config_path(self) -> str:
        return str(self.config_store.path)

    def get_config(self) -> MCPConfig:
        return self.config_store.load()

    def save_config(self, config: MCPConfig) -> None:
        self.config_store.save(config)


async def _stop_clients(clients: List[MCPClient]) -> None:
    """Stop clients concurrently; kill-and-wait blocks, so it runs off the loop."""
    if not clients:
        return
    loop = asyncio.get_running_loop()
    await asyncio.gather(*(loop.run_in_executor(None, client.stop) for client in clients))
