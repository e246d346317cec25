"""Tests for the JSON-RPC front end."""

import io
import json

import pytest

from helpers import initialize, rpc, texts
from mcp_nrepl.server import MAX_TOOL_CALL_BYTES, NOT_INITIALIZED, SERVER_NAME, main, run_eval


class TestLifecycle:
    """Tests for initialize and the not-initialized guard."""

    def test_initialize(self, bridge):
        reply = initialize(bridge)

        result = reply["result"]
        assert reply["id"] == 1
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == SERVER_NAME
        assert set(result["capabilities"]) >= {"tools", "prompts", "resources"}
        assert bridge.initialized

    def test_tools_call_before_initialize(self, bridge, nrepl_server):
        reply = bridge.handle_line(
            rpc(5, "tools/call", {"name": "eval-clojure", "arguments": {"code": "(+ 1 2)"}})
        )

        assert reply["id"] == 5
        assert reply["error"]["code"] == NOT_INITIALIZED
        assert reply["error"]["message"] == "Server not initialized"
        assert nrepl_server.requests == []

    def test_ping_before_initialize(self, bridge):
        reply = bridge.handle_line(rpc("p", "ping"))

        assert reply == {"jsonrpc": "2.0", "id": "p", "result": {}}


class TestProtocolErrors:
    """Tests for malformed and unsupported messages."""

    def test_parse_error(self, bridge):
        reply = bridge.handle_line("{not json")

        assert reply["id"] is None
        assert reply["error"]["code"] == -32700

    def test_blank_line_ignored(self, bridge):
        assert bridge.handle_line("   \n") is None

    def test_non_object(self, bridge):
        reply = bridge.handle_line("[1, 2]")

        assert reply["error"]["code"] == -32600

    def test_missing_method(self, bridge):
        reply = bridge.handle_line(json.dumps({"jsonrpc": "2.0", "id": 3}))

        assert reply["id"] == 3
        assert reply["error"]["code"] == -32600

    def test_method_not_found(self, bridge):
        initialize(bridge)

        reply = bridge.handle_line(rpc(4, "sampling/createMessage"))

        assert reply["id"] == 4
        assert reply["error"]["code"] == -32601

    def test_notification_gets_no_reply(self, bridge):
        line = json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"})

        assert bridge.handle_line(line) is None

    def test_client_response_ignored(self, bridge):
        line = json.dumps({"jsonrpc": "2.0", "id": 9, "result": {}})

        assert bridge.handle_line(line) is None


class TestToolCalls:
    """Tests for tools/call and the other MCP methods."""

    @pytest.fixture
    def ready(self, bridge):
        initialize(bridge)
        return bridge

    def test_reply_id_matches_request(self, ready):
        reply = ready.handle_line(
            rpc("req-42", "tools/call", {"name": "eval-clojure", "arguments": {"code": "(+ 1 2 3)"}})
        )

        assert reply["id"] == "req-42"
        assert texts(reply["result"]) == ["6"]
        assert reply["result"]["isError"] is False

    def test_tool_error_is_result_not_rpc_error(self, ready):
        reply = ready.handle_line(rpc(2, "tools/call", {"name": "eval-clojure", "arguments": {}}))

        assert "error" not in reply
        assert reply["result"]["isError"] is True

    def test_oversized_call_is_rejected(self, ready, nrepl_server):
        code = "(+ 1 2)" + " " * MAX_TOOL_CALL_BYTES

        reply = ready.handle_line(
            rpc(7, "tools/call", {"name": "eval-clojure", "arguments": {"code": code}})
        )

        assert reply["id"] == 7
        assert reply["error"]["code"] == -32600
        assert "load-file" in reply["error"]["message"]
        assert nrepl_server.requests == []

    def test_tools_list(self, ready):
        reply = ready.handle_line(rpc(2, "tools/list"))

        tools = {tool["name"]: tool for tool in reply["result"]["tools"]}
        assert "eval-clojure" in tools
        assert tools["eval-clojure"]["inputSchema"]["required"] == ["code"]

    def test_resources_read(self, ready):
        reply = ready.handle_line(rpc(2, "resources/read", {"uri": "clojure://session/current-ns"}))

        assert reply["result"]["contents"][0]["text"] == "user"

    def test_unknown_resource_is_invalid_params(self, ready):
        reply = ready.handle_line(rpc(2, "resources/read", {"uri": "clojure://missing"}))

        assert reply["error"]["code"] == -32602

    def test_prompts_get(self, ready):
        reply = ready.handle_line(
            rpc(2, "prompts/get", {"name": "debug-error", "arguments": {"code": "(/ 1 0)"}})
        )

        message = reply["result"]["messages"][0]
        assert message["role"] == "user"
        assert "(/ 1 0)" in message["content"]["text"]


class TestServe:
    """Tests for the stdio loop."""

    def test_serve_writes_one_line_per_reply(self, bridge):
        stdin = io.StringIO(
            "\n".join(
                [
                    rpc(1, "initialize", {"protocolVersion": "2024-11-05", "capabilities": {}}),
                    json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}),
                    rpc(2, "tools/call", {"name": "eval-clojure", "arguments": {"code": "(+ 1 2 3)"}}),
                ]
            )
            + "\n"
        )
        stdout = io.StringIO()

        bridge.serve(stdin, stdout)

        replies = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert [reply["id"] for reply in replies] == [1, 2]
        assert texts(replies[1]["result"]) == ["6"]

    def test_undecodable_line_gets_parse_error(self, bridge):
        raw = b"".join(
            [
                rpc(1, "initialize", {"protocolVersion": "2024-11-05", "capabilities": {}}).encode() + b"\n",
                b"\xff\xfe garbage\n",
                rpc(2, "tools/call", {"name": "eval-clojure", "arguments": {"code": "(+ 1 2 3)"}}).encode() + b"\n",
            ]
        )
        stdout = io.StringIO()

        bridge.serve(io.BytesIO(raw), stdout)

        replies = [json.loads(line) for line in stdout.getvalue().splitlines()]
        assert [reply["id"] for reply in replies] == [1, None, 2]
        assert replies[1]["error"]["code"] == -32700
        assert texts(replies[2]["result"]) == ["6"]


class TestEvalMode:
    """Tests for the one-shot --eval command line mode."""

    def test_prints_value(self, nrepl_server, capsys):
        code = main(["--nrepl-port", str(nrepl_server.port), "--eval", "(+ 1 2 3)"])

        assert code == 0
        assert capsys.readouterr().out == "6\n"

    def test_eval_error_exits_nonzero(self, runtime, capsys):
        code = run_eval(runtime, "(/ 1 0)")

        captured = capsys.readouterr()
        assert code == 1
        assert "Divide by zero" in captured.err

    def test_timeout(self, runtime, capsys):
        code = run_eval(runtime, "(Thread/sleep 1500)", timeout_ms=200)

        assert code == 1
        assert "200 ms" in capsys.readouterr().err
