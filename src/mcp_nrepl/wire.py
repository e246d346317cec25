"""Bencode wire transport for talking to an nREPL server.

nREPL exchanges one bencoded dictionary per message over a TCP stream.
Bencode is self-delimiting, so a frame is complete exactly when one value
can be decoded from the front of the receive buffer. Frames are only decoded
once they are fully buffered; a read timeout leaves the buffer intact.

The public helpers (`connect`, `send`, `receive`) never raise on network
problems. They return a `WireFailure` instead and callers branch on it.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}
RECV_CHUNK = 65536


class MalformedFrame(ValueError):
    """Raised when the buffer does not contain valid bencode."""


class IncompleteFrame(Exception):
    """Raised when the buffer ends before the value does."""


@dataclass(frozen=True)
class WireFailure:
    """A transport-level failure.

    kind is one of "refused", "timeout", "closed" or "malformed".
    """

    kind: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


def encode(value: Any) -> bytes:
    """Encode a value as bencode."""
    out = bytearray()
    _encode_into(value, out)
    return bytes(out)


def _encode_into(value: Any, out: bytearray) -> None:
    if isinstance(value, bool):
        raise TypeError("bencode has no boolean type")
    if isinstance(value, int):
        out += b"i%de" % value
    elif isinstance(value, str):
        data = value.encode("utf-8")
        out += b"%d:" % len(data)
        out += data
    elif isinstance(value, (bytes, bytearray)):
        out += b"%d:" % len(value)
        out += value
    elif isinstance(value, (list, tuple)):
        out += b"l"
        for item in value:
            _encode_into(item, out)
        out += b"e"
    elif isinstance(value, dict):
        out += b"d"
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif not isinstance(key, (bytes, bytearray)):
                raise TypeError(f"bencode dict keys must be strings, got {type(key).__name__}")
            items.append((bytes(key), item))
        for key, item in sorted(items, key=lambda pair: pair[0]):
            _encode_into(key, out)
            _encode_into(item, out)
        out += b"e"
    else:
        raise TypeError(f"cannot bencode {type(value).__name__}")


def decode_prefix(buffer: bytes | bytearray) -> tuple[Any, int]:
    """Decode one value from the front of the buffer.

    Returns:
        Tuple of (value, number of bytes consumed).

    Raises:
        IncompleteFrame: The buffer holds only part of a value.
        MalformedFrame: The buffer does not start with valid bencode.
    """
    return _decode_at(bytes(buffer), 0)


def decode(data: bytes) -> Any:
    """Decode exactly one bencoded value."""
    value, consumed = decode_prefix(data)
    if consumed != len(data):
        raise MalformedFrame(f"trailing data after value ({len(data) - consumed} bytes)")
    return value


def _decode_at(data: bytes, pos: int) -> tuple[Any, int]:
    if pos >= len(data):
        raise IncompleteFrame()
    lead = data[pos:pos + 1]

    if lead == b"i":
        end = data.find(b"e", pos + 1)
        if end == -1:
            _check_digits(data[pos + 1:], allow_sign=True)
            raise IncompleteFrame()
        raw = data[pos + 1:end]
        _check_digits(raw, allow_sign=True)
        if not raw or raw == b"-":
            raise MalformedFrame("empty integer")
        return int(raw), end + 1

    if lead.isdigit():
        colon = data.find(b":", pos)
        if colon == -1:
            _check_digits(data[pos:], allow_sign=False)
            raise IncompleteFrame()
        raw = data[pos:colon]
        _check_digits(raw, allow_sign=False)
        length = int(raw)
        start = colon + 1
        if start + length > len(data):
            raise IncompleteFrame()
        return data[start:start + length], start + length

    if lead == b"l":
        items = []
        pos += 1
        while True:
            if pos >= len(data):
                raise IncompleteFrame()
            if data[pos:pos + 1] == b"e":
                return items, pos + 1
            item, pos = _decode_at(data, pos)
            items.append(item)

    if lead == b"d":
        result: dict[str, Any] = {}
        pos += 1
        while True:
            if pos >= len(data):
                raise IncompleteFrame()
            if data[pos:pos + 1] == b"e":
                return result, pos + 1
            key, pos = _decode_at(data, pos)
            if not isinstance(key, bytes):
                raise MalformedFrame("dictionary key is not a string")
            value, pos = _decode_at(data, pos)
            result[key.decode("utf-8", errors="replace")] = value

    raise MalformedFrame(f"unexpected byte {lead!r} at offset {pos}")


def _check_digits(raw: bytes, allow_sign: bool) -> None:
    body = raw[1:] if allow_sign and raw.startswith(b"-") else raw
    if body and not body.isdigit():
        raise MalformedFrame(f"invalid number {raw[:20]!r}")


class Connection:
    """A socket to an nREPL server with a bencode receive buffer."""

    def __init__(self, sock: socket.socket, host: str, port: int):
        self.sock = sock
        self.host = host
        self.port = port
        self._buffer = bytearray()
        self.closed = False

    def next_frame(self, timeout: float | None) -> Any:
        """Return the next complete value, reading from the socket as needed.

        Raises socket.timeout, ConnectionError or MalformedFrame.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self._buffer:
                try:
                    value, consumed = decode_prefix(self._buffer)
                except IncompleteFrame:
                    pass
                else:
                    del self._buffer[:consumed]
                    return value

            if deadline is None:
                self.sock.settimeout(None)
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("timed out waiting for frame")
                self.sock.settimeout(remaining)

            chunk = self.sock.recv(RECV_CHUNK)
            if not chunk:
                raise ConnectionError("connection closed by nREPL server")
            self._buffer += chunk

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Connection {self.host}:{self.port} {state}>"


def connect(port: int, host: str = "127.0.0.1", timeout: float = 5.0) -> Connection | WireFailure:
    """Open a connection to an nREPL server on a loopback address."""
    if host not in LOOPBACK_HOSTS:
        return WireFailure("refused", f"only loopback hosts are supported, got {host}")
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except socket.timeout:
        return WireFailure("timeout", f"connecting to {host}:{port} timed out")
    except OSError as exc:
        return WireFailure("refused", f"cannot connect to {host}:{port}: {exc}")
    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    logger.debug("connected host=%s port=%s", host, port)
    return Connection(sock, host, port)


def send(connection: Connection, message: dict[str, Any]) -> WireFailure | None:
    """Write one bencoded message. Returns None on success."""
    if connection.closed:
        return WireFailure("closed", "connection is closed")
    try:
        payload = encode(message)
    except TypeError as exc:
        return WireFailure("malformed", str(exc))
    try:
        connection.sock.settimeout(None)
        connection.sock.sendall(payload)
    except OSError as exc:
        logger.warning("send failed port=%s error=%s", connection.port, exc)
        return WireFailure("closed", f"send failed: {exc}")
    return None


def receive(connection: Connection, timeout: float | None = None) -> dict[str, Any] | WireFailure:
    """Read one reply frame. Returns the decoded dict or a WireFailure."""
    if connection.closed:
        return WireFailure("closed", "connection is closed")
    try:
        frame = connection.next_frame(timeout)
    except socket.timeout:
        return WireFailure("timeout", "no frame within timeout")
    except MalformedFrame as exc:
        logger.warning("malformed frame port=%s error=%s", connection.port, exc)
        return WireFailure("malformed", str(exc))
    except OSError as exc:
        return WireFailure("closed", str(exc))
    if not isinstance(frame, dict):
        return WireFailure("malformed", f"expected a dictionary frame, got {type(frame).__name__}")
    return frame
