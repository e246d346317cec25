"""Maps MCP tools, resources and prompts onto nREPL operations."""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote

from mcp import types

from mcp_nrepl import forms
from mcp_nrepl.aggregate import AggregatedResult, OperationTimeout
from mcp_nrepl.errors import BridgeError, ResourceNotFound, SupervisorError, ToolInputError
from mcp_nrepl.logging_utils import abbreviate
from mcp_nrepl.runtime import BridgeRuntime
from mcp_nrepl.wire import WireFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 300_000
EMPTY_RESULT = "nil"
TEXT_MIME = "text/plain"

_TIMEOUT_PROPERTY = {
    "type": "integer",
    "description": (
        f"Evaluation timeout in milliseconds ({MIN_TIMEOUT_MS}-{MAX_TIMEOUT_MS}, "
        f"default {DEFAULT_TIMEOUT_MS})."
    ),
    "minimum": MIN_TIMEOUT_MS,
    "maximum": MAX_TIMEOUT_MS,
}


def _schema(properties: dict[str, Any] | None = None, required: tuple[str, ...] = ()) -> dict:
    return {"type": "object", "properties": properties or {}, "required": list(required)}


def _string(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


TOOLS = [
    types.Tool(
        name="eval-clojure",
        description=(
            "Evaluate Clojure code in the persistent nREPL session. Definitions "
            "persist across calls. Returns printed output, errors and the value."
        ),
        inputSchema=_schema(
            {"code": _string("Clojure code to evaluate."), "timeout-ms": _TIMEOUT_PROPERTY},
            ("code",),
        ),
    ),
    types.Tool(
        name="load-file",
        description="Load a Clojure source file into the session. Use this for large sources.",
        inputSchema=_schema(
            {"file-path": _string("Path of the file to load."), "timeout-ms": _TIMEOUT_PROPERTY},
            ("file-path",),
        ),
    ),
    types.Tool(
        name="set-ns",
        description="Switch the session's current namespace, creating it if needed.",
        inputSchema=_schema({"namespace": _string("Namespace name.")}, ("namespace",)),
    ),
    types.Tool(
        name="apropos",
        description="Find loaded symbols whose names contain the query.",
        inputSchema=_schema({"query": _string("Text to search for.")}, ("query",)),
    ),
    types.Tool(
        name="doc",
        description="Show the documentation of a var.",
        inputSchema=_schema({"symbol": _string("Symbol to document.")}, ("symbol",)),
    ),
    types.Tool(
        name="source",
        description="Show the source code of a var.",
        inputSchema=_schema({"symbol": _string("Symbol to look up.")}, ("symbol",)),
    ),
    types.Tool(
        name="vars",
        description="List the public vars of a namespace (default: the current namespace).",
        inputSchema=_schema({"namespace": _string("Namespace name.")}),
    ),
    types.Tool(
        name="namespaces",
        description="List all loaded namespaces.",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="current-ns",
        description="Show the session's current namespace.",
        inputSchema=_schema(),
    ),
    types.Tool(
        name="macroexpand-all",
        description="Fully expand all macros in a form.",
        inputSchema=_schema({"code": _string("Form to expand.")}, ("code",)),
    ),
    types.Tool(
        name="macroexpand-1",
        description="Expand the outermost macro of a form once.",
        inputSchema=_schema({"code": _string("Form to expand.")}, ("code",)),
    ),
    types.Tool(
        name="restart-nrepl-server",
        description=(
            "Restart the embedded nREPL listener to recover from a stuck evaluation. "
            "Definitions and namespaces are kept. Only available in embedded mode."
        ),
        inputSchema=_schema(),
    ),
]

RESOURCES = [
    types.Resource(
        uri="clojure://session/vars",
        name="session-vars",
        description="Public vars of the current namespace.",
        mimeType=TEXT_MIME,
    ),
    types.Resource(
        uri="clojure://session/namespaces",
        name="session-namespaces",
        description="All loaded namespaces.",
        mimeType=TEXT_MIME,
    ),
    types.Resource(
        uri="clojure://session/current-ns",
        name="session-current-ns",
        description="The session's current namespace.",
        mimeType=TEXT_MIME,
    ),
]

RESOURCE_TEMPLATES = [
    types.ResourceTemplate(
        uriTemplate="clojure://doc/{symbol}",
        name="doc",
        description="Documentation for a symbol.",
        mimeType=TEXT_MIME,
    ),
    types.ResourceTemplate(
        uriTemplate="clojure://source/{symbol}",
        name="source",
        description="Source code for a symbol.",
        mimeType=TEXT_MIME,
    ),
]

PROMPTS = {
    "explore-namespace": (
        types.Prompt(
            name="explore-namespace",
            description="Survey the vars of a namespace and summarize what it offers.",
            arguments=[
                types.PromptArgument(name="namespace", description="Namespace to explore.", required=True),
            ],
        ),
        "Explore the Clojure namespace `{namespace}`. Use the `vars` tool with "
        "namespace `{namespace}` to list its public vars, then use `doc` on the "
        "most important ones and summarize what the namespace provides.",
    ),
    "define-and-test": (
        types.Prompt(
            name="define-and-test",
            description="Write a function in the REPL and check it with a few calls.",
            arguments=[
                types.PromptArgument(name="function-name", description="Name of the function.", required=True),
                types.PromptArgument(name="description", description="What the function should do.", required=True),
            ],
        ),
        "Define a Clojure function named `{function-name}` that does the following: "
        "{description}\n\nDefine it with `eval-clojure`, then evaluate a few example "
        "calls, including edge cases, and fix the definition until they all behave.",
    ),
    "debug-error": (
        types.Prompt(
            name="debug-error",
            description="Reproduce and explain an error raised by some code.",
            arguments=[
                types.PromptArgument(name="code", description="Code that fails.", required=True),
            ],
        ),
        "The following Clojure code raises an error:\n\n```clojure\n{code}\n```\n\n"
        "Evaluate it with `eval-clojure`, read the error, use `doc` and `source` on "
        "the functions involved, and explain the cause and a fix.",
    ),
}


def text_result(*segments: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=segment) for segment in segments],
        isError=is_error,
    )


def error_result(message: str) -> types.CallToolResult:
    return text_result(message, is_error=True)


def render(result: AggregatedResult) -> types.CallToolResult:
    """Render printed output, error text and values as content segments."""
    if result.empty:
        return text_result(EMPTY_RESULT)
    segments = [result.output, result.error, "\n".join(result.values)]
    return text_result(*(segment for segment in segments if segment))


def _require(arguments: dict[str, Any], name: str) -> str:
    value = arguments.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ToolInputError(f"Missing required parameter: {name}")
    return value


def _optional(arguments: dict[str, Any], name: str) -> str | None:
    value = arguments.get(name)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ToolInputError(f"Parameter {name} must be a non-empty string")
    return value


def check_timeout_ms(value: Any) -> int:
    """Return `value` as whole milliseconds within the allowed bounds.

    Raises:
        ToolInputError: Not a finite integer, or out of range.
    """
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or (isinstance(value, float) and not math.isfinite(value))
        or value != int(value)
    ):
        raise ToolInputError(f"timeout-ms must be an integer number of milliseconds, got {value!r}")
    value = int(value)
    if value < MIN_TIMEOUT_MS or value > MAX_TIMEOUT_MS:
        raise ToolInputError(
            f"timeout-ms must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS}, got {value}"
        )
    return value


def _timeout_ms(arguments: dict[str, Any]) -> int:
    value = arguments.get("timeout-ms")
    if value is None:
        return DEFAULT_TIMEOUT_MS
    return check_timeout_ms(value)


class Dispatcher:
    """Executes tool calls, resource reads and prompt lookups."""

    def __init__(self, runtime: BridgeRuntime):
        self.runtime = runtime
        self._handlers: dict[str, Callable[[dict[str, Any]], types.CallToolResult]] = {
            "eval-clojure": self._eval_clojure,
            "load-file": self._load_file,
            "set-ns": self._set_ns,
            "apropos": self._apropos,
            "doc": self._doc,
            "source": self._source,
            "vars": self._vars,
            "namespaces": self._namespaces,
            "current-ns": self._current_ns,
            "macroexpand-all": self._macroexpand_all,
            "macroexpand-1": self._macroexpand_1,
            "restart-nrepl-server": self._restart,
        }

    def list_tools(self) -> list[types.Tool]:
        return list(TOOLS)

    def call_tool(self, name: str, arguments: dict[str, Any] | None) -> types.CallToolResult:
        """Run a tool and return its MCP result. Never raises."""
        handler = self._handlers.get(name)
        if handler is None:
            logger.info("unknown tool name=%s", name)
            return error_result(f"Unknown tool: {name}")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return error_result("Tool arguments must be an object")

        logger.debug("call tool name=%s arguments=%s", name, abbreviate(repr(arguments)))
        try:
            return handler(arguments)
        except ToolInputError as exc:
            logger.info("rejected tool call name=%s error=%s", name, exc)
            return error_result(str(exc))
        except SupervisorError as exc:
            logger.warning("restart failed error=%s", exc)
            return error_result(str(exc))
        except Exception as exc:
            logger.exception("tool failed name=%s", name)
            return error_result(f"Tool {name} failed: {exc}")

    def _evaluate(self, code: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> AggregatedResult | types.CallToolResult:
        outcome = self.runtime.run({"op": "eval", "code": code}, timeout_ms / 1000)
        if isinstance(outcome, AggregatedResult):
            return outcome
        return self._failure(outcome, timeout_ms)

    def _eval_rendered(self, code: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> types.CallToolResult:
        outcome = self._evaluate(code, timeout_ms)
        if isinstance(outcome, AggregatedResult):
            return render(outcome)
        return outcome

    def _failure(self, outcome: OperationTimeout | WireFailure, timeout_ms: int) -> types.CallToolResult:
        if isinstance(outcome, OperationTimeout):
            if outcome.reason != "timed out":
                message = f"Evaluation did not complete: {outcome.reason}."
            else:
                message = f"Evaluation timed out after {timeout_ms} ms."
            if self.runtime.embedded:
                message += (
                    " If the backend is stuck, call restart-nrepl-server to recover "
                    "it without losing definitions."
                )
            return error_result(message)

        port = self.runtime.target_port()
        if port is None:
            return error_result(
                "No nREPL port configured. Start an nREPL server that writes "
                ".nrepl-port, pass --nrepl-port, or run with --embedded."
            )
        return error_result(f"Cannot reach nREPL server on port {port}: {outcome.message}")

    def _eval_clojure(self, arguments: dict[str, Any]) -> types.CallToolResult:
        code = _require(arguments, "code")
        return self._eval_rendered(code, _timeout_ms(arguments))

    def _load_file(self, arguments: dict[str, Any]) -> types.CallToolResult:
        file_path = _require(arguments, "file-path")
        timeout_ms = _timeout_ms(arguments)
        path = Path(file_path).expanduser()
        if not path.is_file():
            raise ToolInputError(f"File not found: {file_path}")
        outcome = self._evaluate(forms.load_file(str(path.resolve())), timeout_ms)
        if not isinstance(outcome, AggregatedResult):
            return outcome
        rendered = render(outcome)
        if outcome.failed:
            return rendered
        return text_result(f"Successfully loaded file: {path}", *(c.text for c in rendered.content))

    def _set_ns(self, arguments: dict[str, Any]) -> types.CallToolResult:
        namespace = _require(arguments, "namespace").strip()
        outcome = self._evaluate(forms.set_ns(namespace))
        if not isinstance(outcome, AggregatedResult):
            return outcome
        if outcome.failed:
            return render(outcome)
        return text_result(f"Successfully switched to namespace: {namespace}")

    def _apropos(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.apropos(_require(arguments, "query")))

    def _doc(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.doc(_require(arguments, "symbol").strip()))

    def _source(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.source(_require(arguments, "symbol").strip()))

    def _vars(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.ns_vars(_optional(arguments, "namespace")))

    def _namespaces(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.all_namespaces())

    def _current_ns(self, arguments: dict[str, Any]) -> types.CallToolResult:
        outcome = self._evaluate(forms.current_ns())
        if not isinstance(outcome, AggregatedResult):
            return outcome
        if outcome.failed or not outcome.values:
            return render(outcome)
        return text_result(forms.read_string_literal(outcome.values[-1]))

    def _macroexpand_all(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.macroexpand_all(_require(arguments, "code")))

    def _macroexpand_1(self, arguments: dict[str, Any]) -> types.CallToolResult:
        return self._eval_rendered(forms.macroexpand_1(_require(arguments, "code")))

    def _restart(self, arguments: dict[str, Any]) -> types.CallToolResult:
        if not self.runtime.embedded:
            return error_result(
                "restart-nrepl-server is only available in embedded mode (--embedded). "
                "This bridge is connected to an external nREPL server it does not manage."
            )
        port = self.runtime.restart_backend()
        return text_result(
            f"nREPL server restarted on port {port}. Definitions and namespaces were preserved."
        )

    def list_resources(self) -> list[types.Resource]:
        return list(RESOURCES)

    def list_resource_templates(self) -> list[types.ResourceTemplate]:
        return list(RESOURCE_TEMPLATES)

    def read_resource(self, uri: str) -> types.ReadResourceResult:
        """Read a `clojure://` resource.

        Raises:
            ResourceNotFound: The URI is not a known resource.
            BridgeError: The backend could not produce the resource.
        """
        result = self._resource_tool(uri)
        text = "\n".join(item.text for item in result.content)
        if result.isError:
            raise BridgeError(text)
        return types.ReadResourceResult(
            contents=[types.TextResourceContents(uri=uri, mimeType=TEXT_MIME, text=text)]
        )

    def _resource_tool(self, uri: str) -> types.CallToolResult:
        if uri == "clojure://session/vars":
            return self.call_tool("vars", {})
        if uri == "clojure://session/namespaces":
            return self.call_tool("namespaces", {})
        if uri == "clojure://session/current-ns":
            return self.call_tool("current-ns", {})
        for prefix, tool in (("clojure://doc/", "doc"), ("clojure://source/", "source")):
            if uri.startswith(prefix):
                symbol = unquote(uri[len(prefix):])
                if not symbol:
                    break
                return self.call_tool(tool, {"symbol": symbol})
        raise ResourceNotFound(f"Unknown resource: {uri}")

    def list_prompts(self) -> list[types.Prompt]:
        return [prompt for prompt, _ in PROMPTS.values()]

    def get_prompt(self, name: str, arguments: dict[str, Any] | None) -> types.GetPromptResult:
        """Fill in a prompt template.

        Raises:
            ResourceNotFound: Unknown prompt name.
            ToolInputError: A required argument is missing.
        """
        entry = PROMPTS.get(name)
        if entry is None:
            raise ResourceNotFound(f"Unknown prompt: {name}")
        prompt, template = entry
        arguments = arguments or {}
        values = {}
        for argument in prompt.arguments or []:
            value = arguments.get(argument.name)
            if argument.required and (not isinstance(value, str) or not value.strip()):
                raise ToolInputError(f"Missing required argument: {argument.name}")
            values[argument.name] = value or ""
        text = template
        for key, value in values.items():
            text = text.replace("{" + key + "}", value)
        return types.GetPromptResult(
            description=prompt.description,
            messages=[
                types.PromptMessage(role="user", content=types.TextContent(type="text", text=text)),
            ],
        )
