"""Bridge configuration from the command line."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

from mcp_nrepl.dispatcher import check_timeout_ms
from mcp_nrepl.errors import ToolInputError
from mcp_nrepl.paths import read_port_file


@dataclass
class BridgeConfig:
    port: int | None = None
    embedded: bool = False
    eval_code: str | None = None
    timeout_ms: int | None = None
    log_level: str | None = None
    log_file: str | None = None
    port_file: Path | None = None

    def resolve_port(self) -> int | None:
        """Explicit port first, then `.nrepl-port`. Embedded mode needs neither."""
        if self.embedded:
            return None
        if self.port is not None:
            return self.port
        return read_port_file(self.port_file)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-nrepl",
        description="MCP server bridging AI assistants to a Clojure nREPL session.",
    )
    parser.add_argument(
        "--nrepl-port",
        dest="port",
        type=int,
        default=None,
        help="nREPL port (defaults to the contents of .nrepl-port).",
    )
    parser.add_argument(
        "--port-file",
        default=None,
        help="Path of the port file (default: ./.nrepl-port).",
    )
    parser.add_argument(
        "--embedded",
        action="store_true",
        help="Launch and manage a Babashka nREPL backend instead of connecting to one.",
    )
    parser.add_argument(
        "--eval",
        dest="eval_code",
        default=None,
        help="Evaluate code once, print the result and exit.",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Timeout for --eval in milliseconds (100-300000, default 30000).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (overrides MCP_NREPL_LOG_LEVEL).",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Log file path (defaults to stderr).",
    )
    return parser


def parse_config(argv: list[str] | None = None) -> BridgeConfig:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.timeout_ms is not None:
        try:
            check_timeout_ms(args.timeout_ms)
        except ToolInputError as exc:
            parser.error(f"--{exc}")
    return BridgeConfig(
        port=args.port,
        embedded=args.embedded,
        eval_code=args.eval_code,
        timeout_ms=args.timeout_ms,
        log_level=args.log_level,
        log_file=args.log_file,
        port_file=Path(args.port_file).expanduser() if args.port_file else None,
    )
