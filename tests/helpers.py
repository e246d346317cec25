"""Helpers for building JSON-RPC requests in tests."""

import json

from mcp_nrepl.server import BridgeServer


def rpc(request_id, method, params=None) -> str:
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


def initialize(server: BridgeServer) -> dict:
    return server.handle_line(
        rpc(
            1,
            "initialize",
            {
                "protocolVersion": "2024-11-05",
                "capabilities": {},
                "clientInfo": {"name": "pytest", "version": "1.0.0"},
            },
        )
    )


def texts(result) -> list[str]:
    """Text segments of a CallToolResult model or its JSON form."""
    if isinstance(result, dict):
        return [item["text"] for item in result["content"]]
    return [item.text for item in result.content]
