"""Tests for the stdio MCP client."""

import asyncio

import pytest

from conftest import BlockingStdin, PipeProcess, fake_server_config, wait_until
from mcphub.mcp.client import ClientState, MCPClient
from mcphub.mcp.errors import (
    MCPCancelledError,
    MCPClientStateError,
    MCPError,
    MCPInitializeError,
    MCPJsonRpcError,
    MCPSpawnError,
    MCPTimeoutError,
)
from mcphub.mcp.schema import ServerConfig


# ---------------------------------------------------------------------------
# Against the scripted server process
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestHandshake:
    async def test_initialize_caches_tools_and_resources(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            info = await client.initialize()

            assert client.state is ClientState.READY
            assert info["serverInfo"]["name"] == "fake"
            assert [t.name for t in client.tools] == ["echo", "whoami", "fail", "hang", "garbage", "env"]
            assert client.tools[0].input_schema == {"type": "object"}
            assert client.tools[1].input_schema == {}
            # The resource without a name is dropped
            assert [r.uri for r in client.resources] == ["file:///notes.txt"]
            assert client.resources[0].mime_type == "text/plain"
        finally:
            client.stop()

    async def test_missing_resources_capability_is_not_fatal(self):
        client = MCPClient.spawn("fake", fake_server_config("--no-resources"))
        try:
            await client.initialize()
            assert client.is_ready
            assert client.resources == []
            assert len(client.tools) == 6
        finally:
            client.stop()

    async def test_rejected_initialize_fails_client(self):
        client = MCPClient.spawn("fake", fake_server_config("--reject-initialize"))
        try:
            with pytest.raises(MCPInitializeError) as exc_info:
                await client.initialize()
            assert isinstance(exc_info.value.__cause__, MCPJsonRpcError)
            assert client.state is ClientState.FAILED
            with pytest.raises(MCPClientStateError):
                await client.send_request("tools/list")
        finally:
            client.stop()

    async def test_server_exiting_early_fails_initialize(self):
        client = MCPClient.spawn("fake", fake_server_config("--exit-immediately"))
        try:
            with pytest.raises(MCPInitializeError):
                await client.initialize()
            assert client.state is ClientState.FAILED
        finally:
            client.stop()

    async def test_initialize_twice_is_rejected(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            await client.initialize()
            with pytest.raises(MCPClientStateError):
                await client.initialize()
        finally:
            client.stop()

    async def test_banner_line_before_handshake_is_skipped(self):
        client = MCPClient.spawn("fake", fake_server_config("--banner"))
        try:
            await client.initialize()
            assert client.is_ready
        finally:
            client.stop()


def test_spawn_missing_command():
    with pytest.raises(MCPSpawnError) as exc_info:
        MCPClient.spawn("ghost", ServerConfig(command="/nonexistent/mcphub-test-server"))
    assert exc_info.value.server == "ghost"


@pytest.mark.asyncio
class TestCalls:
    async def test_call_tool(self):
        client = MCPClient.spawn("fake", fake_server_config("--label", "alpha"))
        try:
            await client.initialize()
            result = await client.call_tool("whoami")
            assert result == {"content": [{"type": "text", "text": "alpha"}]}
        finally:
            client.stop()

    async def test_read_resource(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            await client.initialize()
            result = await client.read_resource("file:///notes.txt")
            assert result["contents"][0]["uri"] == "file:///notes.txt"
            assert result["contents"][0]["text"] == "hello"
        finally:
            client.stop()

    async def test_json_rpc_error_is_raised(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            await client.initialize()
            with pytest.raises(MCPJsonRpcError) as exc_info:
                await client.call_tool("fail")
            assert exc_info.value.code == -32000
            assert exc_info.value.message == "tool exploded"
            # The client stays usable
            assert (await client.call_tool("whoami"))["content"][0]["text"] == "fake"
        finally:
            client.stop()

    async def test_garbage_output_is_skipped(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            await client.initialize()
            result = await client.call_tool("garbage")
            assert result["content"][0]["text"] == "after garbage"
        finally:
            client.stop()

    async def test_concurrent_calls(self):
        client = MCPClient.spawn("fake", fake_server_config())
        try:
            await client.initialize()
            results = await asyncio.gather(
                *(client.call_tool("echo", {"n": n}) for n in range(10))
            )
            assert [r["content"][0]["text"] for r in results] == [f'{{"n": {n}}}' for n in range(10)]
        finally:
            client.stop()

    async def test_env_is_passed_to_process(self):
        client = MCPClient.spawn("fake", fake_server_config(env={"MCPHUB_TEST_VALUE": "42"}))
        try:
            await client.initialize()
            result = await client.call_tool("env", {"name": "MCPHUB_TEST_VALUE"})
            assert result["content"][0]["text"] == "42"
        finally:
            client.stop()

    async def test_hanging_tool_times_out(self):
        client = MCPClient.spawn("fake", fake_server_config(), request_timeout=1.0)
        try:
            await client.initialize()
            with pytest.raises(MCPTimeoutError) as exc_info:
                await client.call_tool("hang")
            assert exc_info.value.method == "tools/call"
            assert client._pending == {}
        finally:
            client.stop()

    async def test_stop_is_idempotent(self):
        client = MCPClient.spawn("fake", fake_server_config())
        await client.initialize()

        client.stop()
        client.stop()

        assert client.state is ClientState.STOPPED
        assert not client.is_running
        with pytest.raises(MCPClientStateError):
            await client.call_tool("whoami")

    async def test_stop_after_process_exit(self):
        client = MCPClient.spawn("fake", fake_server_config("--exit-immediately"))
        await wait_until(lambda: client._process.poll() is not None)
        client.stop()
        assert client.state is ClientState.STOPPED


# ---------------------------------------------------------------------------
# Against a pipe-backed stand-in process, so the test controls every reply
# ---------------------------------------------------------------------------


def _pipe_client(process, **kwargs):
    return MCPClient("pipe", ServerConfig(command="pipe"), process, **kwargs)


@pytest.mark.asyncio
class TestCorrelation:
    async def test_out_of_order_replies_reach_their_callers(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            tasks = [
                asyncio.ensure_future(client.send_request("tools/call", {"n": n}))
                for n in range(1, 6)
            ]
            await wait_until(lambda: len(client._pending) == 5)
            assert sorted(client._pending) == [1, 2, 3, 4, 5]

            sent = {m["id"]: m["params"]["n"] for m in pipe_process.stdin.messages()}
            for request_id in (5, 3, 1, 4, 2):
                pipe_process.feed({"jsonrpc": "2.0", "id": request_id, "result": {"n": sent[request_id]}})

            results = await asyncio.gather(*tasks)
            assert results == [{"n": n} for n in range(1, 6)]
            assert client._pending == {}
        finally:
            client.stop()

    async def test_request_wire_format(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            task = asyncio.ensure_future(client.send_request("tools/list"))
            await wait_until(lambda: len(pipe_process.stdin.messages()) == 1)
            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": {"tools": []}})
            await task

            assert pipe_process.stdin.messages() == [
                {"jsonrpc": "2.0", "id": 1, "method": "tools/list", "params": {}}
            ]
        finally:
            client.stop()

    async def test_ids_are_never_reused(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            for expected_id in (1, 2, 3):
                task = asyncio.ensure_future(client.send_request("ping"))
                await wait_until(lambda: expected_id in client._pending)
                pipe_process.feed({"jsonrpc": "2.0", "id": expected_id, "result": {}})
                await task
        finally:
            client.stop()

    async def test_timeout_releases_pending_slot(self, pipe_process):
        client = _pipe_client(pipe_process, request_timeout=0.2)
        try:
            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(MCPTimeoutError) as exc_info:
                await client.send_request("slow/method")
            elapsed = loop.time() - started

            assert exc_info.value.method == "slow/method"
            assert elapsed >= 0.19
            assert 1 not in client._pending

            # A late reply for the timed-out id is dropped; the next request still works
            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": {"late": True}})
            task = asyncio.ensure_future(client.send_request("ping"))
            await wait_until(lambda: 2 in client._pending)
            pipe_process.feed({"jsonrpc": "2.0", "id": 2, "result": {"ok": True}})
            assert await task == {"ok": True}
        finally:
            client.stop()

    async def test_non_json_line_leaves_pending_requests_alone(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            first = asyncio.ensure_future(client.send_request("a"))
            second = asyncio.ensure_future(client.send_request("b"))
            await wait_until(lambda: len(client._pending) == 2)

            pipe_process.feed_raw(b"{not json at all\n")
            pipe_process.feed_raw(b"\n")
            pipe_process.feed_raw(b"[1, 2, 3]\n")
            pipe_process.feed({"jsonrpc": "2.0", "id": 2, "result": "b-result"})

            assert await second == "b-result"
            assert not first.done()
            assert 1 in client._pending

            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": "a-result"})
            assert await first == "a-result"
        finally:
            client.stop()

    async def test_server_initiated_messages_are_ignored(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            task = asyncio.ensure_future(client.send_request("a"))
            await wait_until(lambda: 1 in client._pending)

            # A server request reusing our id must not be taken for a reply
            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "method": "sampling/createMessage", "params": {}})
            pipe_process.feed({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
            await asyncio.sleep(0.05)
            assert not task.done()

            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": 7})
            assert await task == 7
        finally:
            client.stop()

    async def test_error_object_becomes_exception(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            task = asyncio.ensure_future(client.send_request("tools/call"))
            await wait_until(lambda: 1 in client._pending)
            pipe_process.feed({
                "jsonrpc": "2.0",
                "id": 1,
                "error": {"code": -32602, "message": "bad params", "data": {"field": "x"}},
            })

            with pytest.raises(MCPJsonRpcError) as exc_info:
                await task
            assert exc_info.value.code == -32602
            assert exc_info.value.data == {"field": "x"}
        finally:
            client.stop()

    async def test_closed_output_cancels_pending_requests(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            task = asyncio.ensure_future(client.send_request("a"))
            await wait_until(lambda: 1 in client._pending)

            pipe_process.close_stdout()

            with pytest.raises(MCPCancelledError):
                await task
            with pytest.raises(MCPCancelledError):
                await client.send_request("b")
        finally:
            client.stop()

    async def test_initialize_sequence(self, pipe_process):
        client = _pipe_client(pipe_process)
        try:
            task = asyncio.ensure_future(client.initialize())

            await wait_until(lambda: 1 in client._pending)
            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": {"serverInfo": {"name": "p"}}})
            await wait_until(lambda: 2 in client._pending)
            pipe_process.feed({
                "jsonrpc": "2.0",
                "id": 2,
                "result": {"tools": [{"name": "a"}], "nextCursor": "page-2"},
            })
            await wait_until(lambda: 3 in client._pending)
            pipe_process.feed({"jsonrpc": "2.0", "id": 3, "result": {"tools": [{"name": "b"}, {"bad": 1}]}})
            await wait_until(lambda: 4 in client._pending)
            pipe_process.feed({"jsonrpc": "2.0", "id": 4, "error": {"code": -32601, "message": "Method not found"}})
            await task

            methods = [m["method"] for m in pipe_process.stdin.messages()]
            assert methods == [
                "initialize",
                "notifications/initialized",
                "tools/list",
                "tools/list",
                "resources/list",
            ]
            sent = pipe_process.stdin.messages()
            assert "id" not in sent[1]
            assert sent[0]["params"]["protocolVersion"] == "2024-11-05"
            assert sent[0]["params"]["clientInfo"]["name"] == "mcphub"
            assert sent[3]["params"] == {"cursor": "page-2"}
            assert [t.name for t in client.tools] == ["a", "b"]
            assert client.resources == []
            assert client.is_ready
        finally:
            client.stop()

    async def test_timeout_covers_a_blocked_write(self):
        process = PipeProcess(stdin=BlockingStdin())
        client = _pipe_client(process, request_timeout=0.2)
        try:
            with pytest.raises(MCPTimeoutError) as exc_info:
                await asyncio.wait_for(client.send_request("tools/list"), timeout=5)

            assert exc_info.value.method == "tools/list"
            assert process.stdin.write_started.is_set()
            assert client._pending == {}
        finally:
            client.stop()

    async def test_stalled_server_does_not_hold_up_other_clients(self, pipe_process):
        stalled_process = PipeProcess(stdin=BlockingStdin())
        stalled = _pipe_client(stalled_process, request_timeout=10)
        healthy = _pipe_client(pipe_process)
        stalled_calls = [
            asyncio.ensure_future(stalled.send_request("tools/call", {"n": n}))
            for n in range(40)
        ]
        try:
            await wait_until(stalled_process.stdin.write_started.is_set)

            task = asyncio.ensure_future(healthy.send_request("tools/list"))
            await wait_until(lambda: len(pipe_process.stdin.messages()) == 1, timeout=2)
            pipe_process.feed({"jsonrpc": "2.0", "id": 1, "result": {"tools": []}})

            assert await asyncio.wait_for(task, timeout=2) == {"tools": []}
        finally:
            stalled.stop()
            healthy.stop()
            results = await asyncio.gather(*stalled_calls, return_exceptions=True)
            assert all(isinstance(r, MCPError) for r in results)

    async def test_stop_closes_pipes(self, pipe_process):
        client = _pipe_client(pipe_process)

        client.stop()

        await wait_until(lambda: pipe_process.stdout.closed and pipe_process.stderr.closed)
        assert pipe_process.stdin.closed
