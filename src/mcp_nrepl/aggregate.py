"""Run one nREPL operation and fold its reply frames into a single result."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from mcp_nrepl import wire
from mcp_nrepl.logging_utils import abbreviate
from mcp_nrepl.session import Session, has_status, new_request_id
from mcp_nrepl.wire import WireFailure

logger = logging.getLogger(__name__)


@dataclass
class AggregatedResult:
    """Everything the backend said about one request, grouped by channel."""

    output: str = ""
    error: str = ""
    values: list[str] = field(default_factory=list)
    ns: str = ""
    statuses: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.output or self.error or any(self.values))

    @property
    def failed(self) -> bool:
        return bool(self.error) or "eval-error" in self.statuses


@dataclass
class OperationTimeout:
    """The exchange did not reach a `done` frame in time.

    Losing the connection mid-exchange is reported the same way, with
    `reason` saying what happened.
    """

    timeout: float
    reason: str = "timed out"
    frames_discarded: int = 0


def decode_text(value: Any) -> str:
    """Decode a frame field to text."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (list, tuple)):
        return "\n".join(decode_text(item) for item in value)
    return str(value)


def _decode_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [decode_text(item) for item in value]
    return [decode_text(value)]


def aggregate(frames: list[dict[str, Any]]) -> AggregatedResult:
    """Partition frames by channel and join each channel in arrival order."""
    out: list[str] = []
    err: list[str] = []
    exceptions: list[str] = []
    values: list[str] = []
    statuses: list[str] = []
    ns = ""

    for frame in frames:
        if "out" in frame:
            out.append(decode_text(frame["out"]))
        if "err" in frame:
            err.append(decode_text(frame["err"]))
        if "value" in frame:
            values.append(decode_text(frame["value"]))
        if "ns" in frame:
            ns = decode_text(frame["ns"])
        for key in ("root-ex", "ex"):
            if key in frame:
                exceptions.append(decode_text(frame[key]))
                break
        for status in _decode_list(frame.get("status")):
            if status not in statuses:
                statuses.append(status)

    error = "\n".join(err)
    if not error and exceptions:
        error = "\n".join(exceptions)

    return AggregatedResult(
        output="\n".join(out),
        error=error,
        values=values,
        ns=ns,
        statuses=statuses,
    )


def run_operation(
    session: Session,
    request: dict[str, Any],
    timeout: float,
) -> AggregatedResult | OperationTimeout:
    """Send one request and collect replies until the `done` status.

    Args:
        session: Live backend session.
        request: Request frame; `id` and `session` are filled in.
        timeout: Seconds allowed from the first receive attempt.

    Returns:
        The aggregated result, or OperationTimeout when the exchange did not
        finish (including when the connection was lost part way through).
    """
    message = dict(request)
    message.setdefault("id", new_request_id())
    message["session"] = session.session_id
    request_id = message["id"]
    op = message.get("op")

    if op == "eval":
        logger.debug("eval id=%s code=%s", request_id, abbreviate(str(message.get("code", ""))))

    failure = wire.send(session.connection, message)
    if failure is not None:
        logger.warning("send failed op=%s error=%s", op, failure)
        session.connection.close()
        return OperationTimeout(timeout=timeout, reason=f"connection lost: {failure.message}")

    frames: list[dict[str, Any]] = []
    start = time.monotonic()
    while True:
        remaining = timeout - (time.monotonic() - start)
        if remaining <= 0:
            logger.info("operation timed out op=%s id=%s frames=%s", op, request_id, len(frames))
            return OperationTimeout(timeout=timeout, frames_discarded=len(frames))

        frame = wire.receive(session.connection, timeout=remaining)
        if isinstance(frame, WireFailure):
            if frame.kind == "timeout":
                continue
            logger.warning("receive failed op=%s id=%s error=%s", op, request_id, frame)
            session.connection.close()
            return OperationTimeout(
                timeout=timeout,
                reason=f"connection lost: {frame.message}",
                frames_discarded=len(frames),
            )

        frame_id = decode_text(frame.get("id")) if "id" in frame else request_id
        if frame_id != request_id:
            logger.debug("ignoring stale frame id=%s expected=%s", frame_id, request_id)
            continue

        frames.append(frame)
        if has_status(frame, "done"):
            break

    result = aggregate(frames)
    logger.debug(
        "operation done op=%s id=%s frames=%s statuses=%s",
        op,
        request_id,
        len(frames),
        result.statuses,
    )
    return result
