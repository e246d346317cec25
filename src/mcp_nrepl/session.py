"""nREPL session management.

The bridge keeps exactly one backend session. It is created lazily by
`SessionManager.ensure_session` and replaced when the target port changes
(for example after the embedded backend is restarted).
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass

from mcp_nrepl import wire
from mcp_nrepl.wire import Connection, WireFailure

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 10.0


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Session:
    """A live connection plus the session id issued by the server."""

    connection: Connection
    session_id: str
    port: int

    @property
    def alive(self) -> bool:
        return not self.connection.closed


class SessionManager:
    """Owns the single backend session.

    All reads and writes of the current session go through this object.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        connect_timeout: float = 5.0,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ):
        self.host = host
        self.connect_timeout = connect_timeout
        self.handshake_timeout = handshake_timeout
        self._session: Session | None = None

    @property
    def current(self) -> Session | None:
        return self._session

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.alive

    def ensure_session(self, port: int) -> Session | WireFailure:
        """Return a live session on `port`, creating one if needed."""
        session = self._session
        if session is not None and session.port == port and session.alive:
            return session

        self.invalidate()

        connection = wire.connect(port, host=self.host, timeout=self.connect_timeout)
        if isinstance(connection, WireFailure):
            logger.warning("connect failed port=%s error=%s", port, connection)
            return connection

        session_id = self._handshake(connection)
        if isinstance(session_id, WireFailure):
            logger.warning("handshake failed port=%s error=%s", port, session_id)
            connection.close()
            return session_id

        self._session = Session(connection=connection, session_id=session_id, port=port)
        logger.info("session established port=%s session=%s", port, session_id)
        return self._session

    def _handshake(self, connection: Connection) -> str | WireFailure:
        request_id = new_request_id()
        failure = wire.send(connection, {"op": "clone", "id": request_id})
        if failure is not None:
            return failure

        deadline = time.monotonic() + self.handshake_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return WireFailure("timeout", "no session handshake reply")
            frame = wire.receive(connection, timeout=remaining)
            if isinstance(frame, WireFailure):
                return frame
            new_session = frame.get("new-session")
            if new_session:
                if isinstance(new_session, bytes):
                    new_session = new_session.decode("utf-8", errors="replace")
                return str(new_session)
            if has_status(frame, "done"):
                return WireFailure("malformed", "clone reply carried no session id")

    def invalidate(self) -> None:
        """Close and forget the current session, if any."""
        session = self._session
        self._session = None
        if session is not None:
            logger.debug("closing session port=%s session=%s", session.port, session.session_id)
            session.connection.close()

    def close(self) -> None:
        self.invalidate()


def has_status(frame: dict, marker: str) -> bool:
    status = frame.get("status") or []
    if isinstance(status, (bytes, str)):
        status = [status]
    for item in status:
        if isinstance(item, bytes):
            item = item.decode("utf-8", errors="replace")
        if item == marker:
            return True
    return False
