"""MCP server communication via stdio subprocess transport."""

from __future__ import annotations

import asyncio
import enum
import itertools
import json
import logging
import os
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import IO, Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from mcphub import __version__
from mcphub.mcp.errors import (
    MCPCancelledError,
    MCPClientStateError,
    MCPError,
    MCPInitializeError,
    MCPJsonRpcError,
    MCPSpawnError,
    MCPTimeoutError,
    MCPTransportError,
)
from mcphub.mcp.schema import MCPResource, MCPTool, ServerConfig

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
REQUEST_TIMEOUT = 30.0
# Upper bound on nextCursor pages followed by a single listing call.
MAX_LIST_PAGES = 100

_Entry = TypeVar("_Entry", bound=BaseModel)


class ClientState(str, enum.Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    READY = "ready"
    STOPPED = "stopped"
    FAILED = "failed"


class MCPClient:
    """
    Talk to one MCP server process over stdin/stdout (JSON-RPC 2.0).

    Requests are written one JSON document per line and correlated with
    their responses by id, so any number of requests may be in flight at
    once. A dedicated thread reads stdout and resolves the waiting futures;
    a second thread drains stderr into the log so the child never blocks
    on a full pipe. Writes go through a single-worker executor owned by the
    client, so a server that stops reading its stdin only stalls its own
    requests.

    Lifecycle: ``spawn()`` -> ``initialize()`` -> calls -> ``stop()``.
    """

    def __init__(
        self,
        name: str,
        config: ServerConfig,
        process: subprocess.Popen,
        request_timeout: float = REQUEST_TIMEOUT,
        protocol_version: str = PROTOCOL_VERSION,
        client_info: Optional[Dict[str, str]] = None,
    ):
        if process.stdin is None or process.stdout is None or process.stderr is None:
            raise MCPSpawnError(name, "process pipes are unavailable")

        self.name = name
        self.config = config
        self.request_timeout = request_timeout
        self.protocol_version = protocol_version
        self.client_info = client_info or {"name": "mcphub", "version": __version__}
        self.tools: List[MCPTool] = []
        self.resources: List[MCPResource] = []
        self.server_info: Dict[str, Any] = {}

        self._process = process
        self._state = ClientState.CREATED
        self._stdin_lock = threading.Lock()
        self._pending: Dict[int, asyncio.Future] = {}
        self._pending_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"mcp-{name}-stdin")

        self._stdout_thread = threading.Thread(
            target=self._read_stdout,
            args=(process.stdout,),
            name=f"mcp-{name}-stdout",
            daemon=True,
        )
        self._stderr_thread = threading.Thread(
            target=self._read_stderr,
            args=(process.stderr,),
            name=f"mcp-{name}-stderr",
            daemon=True,
        )
        self._stdout_thread.start()
        self._stderr_thread.start()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @classmethod
    def spawn(cls, name: str, config: ServerConfig, **kwargs: Any) -> "MCPClient":
        """Start the server process with piped stdio and attach a client to it."""
        logger.info("Spawning MCP server '%s': %s %s", name, config.command, config.args)

        merged_env = {**os.environ, **config.env}
        try:
            process = subprocess.Popen(
                config.command_line(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=merged_env,
            )
        except (OSError, ValueError) as exc:
            logger.warning("Failed to spawn MCP server '%s': %s", name, exc)
            raise MCPSpawnError(name, str(exc)) from exc

        try:
            return cls(name, config, process, **kwargs)
        except MCPSpawnError:
            _terminate(process)
            raise

    def stop(self) -> None:
        """Kill the server process. Safe to call repeatedly or after it exited."""
        if self._state is ClientState.STOPPED:
            return
        self._state = ClientState.STOPPED
        logger.info("Stopping MCP server '%s'", self.name)

        _terminate(self._process)
        try:
            self._process.stdin.close()
        except OSError:
            pass
        self._close_pending("MCP server stopped")
        # Queued writes still run and fail against the closed stdin.
        self._writer.shutdown(wait=False)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ClientState.READY

    @property
    def is_running(self) -> bool:
        return self._state is not ClientState.STOPPED and self._process.poll() is None

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def send_request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Send a JSON-RPC request and wait for its result."""
        if self._state in (ClientState.STOPPED, ClientState.FAILED):
            raise MCPClientStateError(f"MCP server '{self.name}' is {self._state.value}")

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._pending_lock:
            if self._closed:
                raise MCPCancelledError(f"MCP server '{self.name}' closed its output")
            request_id = next(self._ids)
            self._pending[request_id] = future

        request = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "params": params if params is not None else {},
        }

        try:
            # The timeout covers the write too: a child that stops reading
            # stdin blocks _write until the pipe drains.
            return await asyncio.wait_for(self._exchange(request, future), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request %d '%s' to '%s' timed out after %gs",
                request_id, method, self.name, self.request_timeout,
            )
            raise MCPTimeoutError(method, self.request_timeout) from None
        finally:
            self._discard(request_id)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        """Send a JSON-RPC notification; no response is expected."""
        notification: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params:
            notification["params"] = params
        try:
            await asyncio.wait_for(self._send(notification), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            raise MCPTimeoutError(method, self.request_timeout) from None

    async def _exchange(self, request: Dict[str, Any], future: asyncio.Future) -> Any:
        await self._send(request)
        return await future

    async def _send(self, message: Dict[str, Any]) -> None:
        try:
            write = asyncio.get_running_loop().run_in_executor(self._writer, self._write, message)
        except RuntimeError as exc:
            # Executor already shut down by stop()
            raise MCPTransportError(f"MCP server '{self.name}' is stopped") from exc
        await write

    def _write(self, message: Dict[str, Any]) -> None:
        line = json.dumps(message) + "\n"
        with self._stdin_lock:
            try:
                self._process.stdin.write(line.encode())
                self._process.stdin.flush()
            except (OSError, ValueError) as exc:
                raise MCPTransportError(
                    f"Failed to write to MCP server '{self.name}': {exc}"
                ) from exc

    def _discard(self, request_id: int) -> None:
        with self._pending_lock:
            self._pending.pop(request_id, None)

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """
        Perform the MCP handshake and cache the server's tools and resources.

        Raises ``MCPInitializeError`` on failure, after which the client is
        unusable and should be stopped.
        """
        if self._state is not ClientState.CREATED:
            raise MCPClientStateError(
                f"MCP server '{self.name}' cannot initialize while {self._state.value}"
            )
        self._state = ClientState.INITIALIZING
        logger.info("Initializing MCP server '%s'", self.name)

        try:
            result = await self.send_request("initialize", {
                "protocolVersion": self.protocol_version,
                "capabilities": {
                    "roots": {"listChanged": True},
                    "sampling": {},
                },
                "clientInfo": self.client_info,
            })
            await self.notify("notifications/initialized")
            self.tools = await self._list_entries("tools/list", "tools", MCPTool)
            self.resources = await self._list_entries("resources/list", "resources", MCPResource)
        except MCPError as exc:
            if self._state is ClientState.INITIALIZING:
                self._state = ClientState.FAILED
            logger.warning("Initialize failed for '%s': %s", self.name, exc)
            raise MCPInitializeError(self.name, str(exc)) from exc

        if self._state is not ClientState.INITIALIZING:
            raise MCPInitializeError(self.name, f"client {self._state.value} during initialize")

        self.server_info = result if isinstance(result, dict) else {}
        self._state = ClientState.READY
        logger.info(
            "MCP server '%s' ready (%d tools, %d resources)",
            self.name, len(self.tools), len(self.resources),
        )
        return self.server_info

    async def _list_entries(self, method: str, key: str, model: Type[_Entry]) -> List[_Entry]:
        entries: List[_Entry] = []
        params: Dict[str, Any] = {}

        for _ in range(MAX_LIST_PAGES):
            try:
                result = await self.send_request(method, params)
            except MCPJsonRpcError as exc:
                # Servers without the capability answer "method not found".
                logger.debug("'%s' rejected %s: %s", self.name, method, exc)
                break
            if not isinstance(result, dict):
                break

            raw_entries = result.get(key)
            for raw in raw_entries if isinstance(raw_entries, list) else []:
                try:
                    entries.append(model.model_validate(raw))
                except ValidationError:
                    logger.debug("Dropping unparsable %s entry from '%s': %r", key, self.name, raw)

            cursor = result.get("nextCursor")
            if not cursor:
                break
            params = {"cursor": cursor}

        return entries

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Call a tool on the MCP server."""
        self._require_ready()
        return await self.send_request("tools/call", {"name": name, "arguments": arguments or {}})

    async def read_resource(self, uri: str) -> Any:
        """Read a resource from the MCP server."""
        self._require_ready()
        return await self.send_request("resources/read", {"uri": uri})

    def _require_ready(self) -> None:
        if self._state is not ClientState.READY:
            raise MCPClientStateError(f"MCP server '{self.name}' is {self._state.value}")

    # ── Readers ───────────────────────────────────────────────────────────

    def _read_stdout(self, stdout: IO[bytes]) -> None:
        try:
            for raw in iter(stdout.readline, b""):
                self._dispatch(raw)
        except (OSError, ValueError) as exc:
            logger.debug("stdout reader for '%s' stopped: %s", self.name, exc)
        finally:
            self._close_pending("MCP server closed its output")
            stdout.close()

    def _read_stderr(self, stderr: IO[bytes]) -> None:
        try:
            for raw in iter(stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug("[%s:stderr] %s", self.name, line)
        except (OSError, ValueError) as exc:
            logger.debug("stderr reader for '%s' stopped: %s", self.name, exc)
        finally:
            stderr.close()

    def _dispatch(self, raw: bytes) -> None:
        """Route one line of server output to the request waiting for it."""
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return

        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Skipping non-JSON output from '%s': %.200s", self.name, text)
            return
        if not isinstance(message, dict):
            logger.warning("Skipping non-object message from '%s': %.200s", self.name, text)
            return

        if "method" in message:
            kind = "request" if "id" in message else "notification"
            logger.debug("Ignoring server %s '%s' from '%s'", kind, message["method"], self.name)
            return

        request_id = message.get("id")
        if not isinstance(request_id, int) or isinstance(request_id, bool):
            logger.warning("Dropping response without a numeric id from '%s': %.200s", self.name, text)
            return

        with self._pending_lock:
            future = self._pending.pop(request_id, None)
        if future is None:
            logger.debug("Dropping response to unknown request %d from '%s'", request_id, self.name)
            return

        if "error" in message:
            self._settle(future, MCPJsonRpcError.from_payload(message["error"]))
        else:
            self._settle(future, message.get("result"))

    def _close_pending(self, reason: str) -> None:
        with self._pending_lock:
            self._closed = True
            pending = list(self._pending.values())
            self._pending.clear()

        if pending:
            logger.warning("Cancelling %d pending request(s) to '%s': %s", len(pending), self.name, reason)
        for future in pending:
            self._settle(future, MCPCancelledError(reason))

    def _settle(self, future: asyncio.Future, outcome: Any) -> None:
        def apply() -> None:
            if future.done():
                return  # timed out meanwhile
            if isinstance(outcome, BaseException):
                future.set_exception(outcome)
            else:
                future.set_result(outcome)

        try:
            future.get_loop().call_soon_threadsafe(apply)
        except RuntimeError:
            logger.debug("Event loop closed; dropping reply for '%s'", self.name)


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    try:
        process.kill()
        process.wait(timeout=5)
    except ProcessLookupError:
        pass
    except subprocess.TimeoutExpired:
        logger.warning("Process %s did not exit after kill", process.pid)
