"""Shared fixtures: a scripted MCP server and a pipe-backed stand-in process."""

import asyncio
import json
import os
import sys
import threading
from pathlib import Path

import pytest

from mcphub.mcp.schema import ServerConfig

FAKE_SERVER = str(Path(__file__).parent / "fixtures" / "fake_server.py")


def fake_server_config(*flags, env=None):
    """Launch spec for the scripted server in tests/fixtures/fake_server.py."""
    return ServerConfig(command=sys.executable, args=[FAKE_SERVER, *flags], env=env or {})


async def wait_until(predicate, timeout=5.0):
    """Poll ``predicate`` on the event loop until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class RecordingStdin:
    """Write side of the fake process: keeps every line the client sends."""

    def __init__(self):
        self._buffer = b""
        self._lock = threading.Lock()
        self.closed = False

    def write(self, data):
        if self.closed:
            raise ValueError("write to closed file")
        with self._lock:
            self._buffer += data
        return len(data)

    def flush(self):
        if self.closed:
            raise ValueError("flush of closed file")

    def close(self):
        self.closed = True

    def messages(self):
        with self._lock:
            return [json.loads(line) for line in self._buffer.decode().splitlines() if line]


class BlockingStdin(RecordingStdin):
    """Write side of a server that has stopped reading: writes hang until close()."""

    def __init__(self):
        super().__init__()
        self.released = threading.Event()
        self.write_started = threading.Event()

    def write(self, data):
        self.write_started.set()
        self.released.wait(timeout=10)
        return super().write(data)

    def close(self):
        super().close()
        self.released.set()


class PipeProcess:
    """
    Stand-in for ``subprocess.Popen``.

    The test plays the server: whatever it ``feed()``s appears on the
    client's stdout pipe, and ``stdin.messages()`` returns what the client
    wrote.
    """

    def __init__(self, stdin=None):
        out_r, self._out_w = os.pipe()
        err_r, self._err_w = os.pipe()
        self.stdout = os.fdopen(out_r, "rb")
        self.stderr = os.fdopen(err_r, "rb")
        self.stdin = stdin or RecordingStdin()
        self.returncode = None
        self.pid = 0

    def feed(self, message):
        self.feed_raw((json.dumps(message) + "\n").encode())

    def feed_raw(self, data):
        os.write(self._out_w, data)

    def close_stdout(self):
        if self._out_w is not None:
            os.close(self._out_w)
            self._out_w = None

    def poll(self):
        return self.returncode

    def kill(self):
        if self.returncode is None:
            self.returncode = -9
            self.close_stdout()
            os.close(self._err_w)

    def wait(self, timeout=None):
        return self.returncode


@pytest.fixture
def pipe_process():
    process = PipeProcess()
    yield process
    process.kill()


@pytest.fixture
def config_file(tmp_path):
    """Path of a server config file inside the test's temp dir (not yet written)."""
    return tmp_path / "claude_desktop_config.json"


def write_config(path, servers, key="mcpServers"):
    servers_json = {
        name: cfg.model_dump() if isinstance(cfg, ServerConfig) else cfg
        for name, cfg in servers.items()
    }
    path.write_text(json.dumps({key: servers_json}))
