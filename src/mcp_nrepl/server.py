"""JSON-RPC server for the nREPL bridge.

Reads newline-delimited JSON-RPC 2.0 messages from stdin, answers on
stdout, one object per line. Requests are handled one at a time.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, BinaryIO, Callable, TextIO

from mcp import types
from pydantic import BaseModel, ValidationError

from mcp_nrepl import __version__
from mcp_nrepl.aggregate import OperationTimeout
from mcp_nrepl.config import parse_config
from mcp_nrepl.dispatcher import DEFAULT_TIMEOUT_MS, Dispatcher
from mcp_nrepl.errors import BackendStartupError, BridgeError, ResourceNotFound, ToolInputError
from mcp_nrepl.logging_utils import abbreviate, configure_logging
from mcp_nrepl.runtime import BridgeRuntime, create_runtime
from mcp_nrepl.wire import WireFailure

logger = logging.getLogger(__name__)

SERVER_NAME = "mcp-nrepl"
MAX_TOOL_CALL_BYTES = 64 * 1024
NOT_INITIALIZED = -32002

INSTRUCTIONS = (
    "Tools for a live Clojure nREPL session. State persists between calls: "
    "define with eval-clojure, inspect with doc/source/vars/apropos, and use "
    "load-file for large sources."
)


def jsonrpc_success(message_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": message_id, "result": result}


def jsonrpc_error(message_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": message_id,
        "error": {
            "code": code,
            "message": message,
        },
    }


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class BridgeServer:
    """JSON-RPC front end over a `Dispatcher`."""

    def __init__(self, dispatcher: Dispatcher, max_tool_call_bytes: int = MAX_TOOL_CALL_BYTES):
        self.dispatcher = dispatcher
        self.max_tool_call_bytes = max_tool_call_bytes
        self.initialized = False
        self._methods: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
            "resources/list": self._resources_list,
            "resources/templates/list": self._resource_templates_list,
            "resources/read": self._resources_read,
        }

    def handle_line(self, line: str | bytes) -> dict[str, Any] | None:
        """Handle one input line. Returns the reply, or None for no reply.

        Raw bytes are decoded as UTF-8; undecodable input is a parse error.
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as exc:
                logger.warning("undecodable line error=%s", exc)
                return jsonrpc_error(None, types.PARSE_ERROR, f"Parse error: invalid UTF-8: {exc}")
        stripped = line.strip()
        if not stripped:
            return None
        try:
            message = json.loads(stripped)
        except json.JSONDecodeError as exc:
            logger.warning("parse error error=%s line=%s", exc, abbreviate(stripped))
            return jsonrpc_error(None, types.PARSE_ERROR, f"Parse error: {exc}")
        return self.handle_message(message, size=len(stripped.encode("utf-8")))

    def handle_message(self, message: Any, size: int = 0) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            return jsonrpc_error(None, types.INVALID_REQUEST, "Invalid request: expected a JSON object")

        if "method" not in message and ("result" in message or "error" in message):
            logger.debug("ignoring client response id=%s", message.get("id"))
            return None

        if "id" not in message:
            try:
                notification = types.JSONRPCNotification.model_validate(message)
            except ValidationError as exc:
                logger.warning("invalid notification error=%s", exc.errors()[:1])
                return None
            logger.debug("notification method=%s", notification.method)
            return None

        raw_id = message.get("id")
        try:
            request = types.JSONRPCRequest.model_validate(message)
        except ValidationError:
            reply_id = raw_id if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool) else None
            if not isinstance(message.get("method"), str):
                return jsonrpc_error(reply_id, types.INVALID_REQUEST, "Invalid request: missing method")
            return jsonrpc_error(reply_id, types.INVALID_REQUEST, "Invalid request")

        return self._handle_request(request.id, request.method, request.params or {}, size)

    def _handle_request(
        self,
        request_id: Any,
        method: str,
        params: dict[str, Any],
        size: int,
    ) -> dict[str, Any]:
        if method == "initialize":
            return jsonrpc_success(request_id, self._initialize(params))
        if method == "ping":
            return jsonrpc_success(request_id, {})
        if not self.initialized:
            logger.info("rejecting method=%s before initialize", method)
            return jsonrpc_error(request_id, NOT_INITIALIZED, "Server not initialized")

        handler = self._methods.get(method)
        if handler is None:
            return jsonrpc_error(request_id, types.METHOD_NOT_FOUND, f"Method not found: {method}")

        if method == "tools/call" and size > self.max_tool_call_bytes:
            logger.info("rejecting oversized tools/call bytes=%s", size)
            return jsonrpc_error(
                request_id,
                types.INVALID_REQUEST,
                f"Request too large ({size} bytes; limit is {self.max_tool_call_bytes} bytes). "
                "Write the code to a file and use the load-file tool instead.",
            )

        try:
            return jsonrpc_success(request_id, handler(params))
        except (ToolInputError, ResourceNotFound) as exc:
            return jsonrpc_error(request_id, types.INVALID_PARAMS, str(exc))
        except BridgeError as exc:
            logger.warning("request failed method=%s error=%s", method, exc)
            return jsonrpc_error(request_id, types.INTERNAL_ERROR, str(exc))
        except Exception as exc:
            logger.exception("request failed method=%s", method)
            return jsonrpc_error(request_id, types.INTERNAL_ERROR, f"Internal error: {exc}")

    def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        version = requested if isinstance(requested, str) and requested else types.LATEST_PROTOCOL_VERSION
        self.initialized = True
        client = params.get("clientInfo") or {}
        logger.info("initialize client=%s protocol=%s", client.get("name"), version)
        result = types.InitializeResult(
            protocolVersion=version,
            capabilities=types.ServerCapabilities(
                tools=types.ToolsCapability(listChanged=False),
                prompts=types.PromptsCapability(listChanged=False),
                resources=types.ResourcesCapability(subscribe=False, listChanged=False),
            ),
            serverInfo=types.Implementation(name=SERVER_NAME, version=__version__),
            instructions=INSTRUCTIONS,
        )
        return _dump(result)

    def _tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return _dump(types.ListToolsResult(tools=self.dispatcher.list_tools()))

    def _tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ToolInputError("tools/call requires a tool name")
        return _dump(self.dispatcher.call_tool(name, params.get("arguments")))

    def _prompts_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return _dump(types.ListPromptsResult(prompts=self.dispatcher.list_prompts()))

    def _prompts_get(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ToolInputError("prompts/get requires a prompt name")
        return _dump(self.dispatcher.get_prompt(name, params.get("arguments")))

    def _resources_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return _dump(types.ListResourcesResult(resources=self.dispatcher.list_resources()))

    def _resource_templates_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return _dump(
            types.ListResourceTemplatesResult(resourceTemplates=self.dispatcher.list_resource_templates())
        )

    def _resources_read(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise ToolInputError("resources/read requires a uri")
        return _dump(self.dispatcher.read_resource(uri))

    def serve(self, stdin: BinaryIO | TextIO, stdout: TextIO) -> None:
        """Process requests until stdin is exhausted.

        `stdin` is normally the binary stream, so each line is decoded on its
        own and a bad line only costs that line an error reply.
        """
        logger.info("serving on stdio")
        for line in stdin:
            try:
                reply = self.handle_line(line)
            except Exception:
                logger.exception("unhandled error line=%s", abbreviate(repr(line)))
                reply = jsonrpc_error(None, types.INTERNAL_ERROR, "Internal error")
            if reply is None:
                continue
            stdout.write(json.dumps(reply) + "\n")
            stdout.flush()
        logger.info("stdin closed")


def run_eval(runtime: BridgeRuntime, code: str, timeout_ms: int | None = None) -> int:
    """Evaluate `code` once for the --eval mode. Returns the exit code."""
    if timeout_ms is None:
        timeout_ms = DEFAULT_TIMEOUT_MS
    outcome = runtime.run({"op": "eval", "code": code}, timeout_ms / 1000)
    if isinstance(outcome, WireFailure):
        print(f"Error: cannot reach nREPL server: {outcome.message}", file=sys.stderr)
        return 1
    if isinstance(outcome, OperationTimeout):
        print(f"Error: evaluation did not complete within {timeout_ms} ms ({outcome.reason})", file=sys.stderr)
        return 1
    if outcome.output:
        print(outcome.output, end="" if outcome.output.endswith("\n") else "\n")
    if outcome.error:
        print(outcome.error, end="" if outcome.error.endswith("\n") else "\n", file=sys.stderr)
    for value in outcome.values:
        print(value)
    return 1 if outcome.failed else 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `mcp-nrepl` command."""
    config = parse_config(argv)
    configure_logging(config.log_level, config.log_file)

    port = config.resolve_port()
    if port is None and not config.embedded:
        logger.warning("no nREPL port given and no .nrepl-port found")

    try:
        runtime = create_runtime(port=port, embedded=config.embedded)
    except BackendStartupError as exc:
        logger.error("embedded backend failed to start error=%s", exc)
        print(f"[mcp-nrepl] {exc}", file=sys.stderr)
        return 1

    try:
        if config.eval_code is not None:
            return run_eval(runtime, config.eval_code, config.timeout_ms)
        server = BridgeServer(Dispatcher(runtime))
        server.serve(sys.stdin.buffer, sys.stdout)
        return 0
    finally:
        runtime.close()


if __name__ == "__main__":
    sys.exit(main())
