"""Shared runtime objects for the bridge."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from mcp_nrepl.aggregate import AggregatedResult, OperationTimeout, run_operation
from mcp_nrepl.errors import SupervisorError
from mcp_nrepl.session import SessionManager
from mcp_nrepl.supervisor import BackendSupervisor
from mcp_nrepl.wire import WireFailure

logger = logging.getLogger(__name__)


@dataclass
class BridgeRuntime:
    """The backend-facing state the dispatcher works against.

    Holds the session manager, the target port and, in embedded mode, the
    supervisor that owns the backend process.
    """

    sessions: SessionManager = field(default_factory=SessionManager)
    port: int | None = None
    supervisor: BackendSupervisor | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def embedded(self) -> bool:
        return self.supervisor is not None

    def target_port(self) -> int | None:
        if self.supervisor is not None:
            return self.supervisor.port
        return self.port

    def run(
        self,
        request: dict,
        timeout: float,
    ) -> AggregatedResult | OperationTimeout | WireFailure:
        """Run one backend operation on the current session."""
        with self.lock:
            port = self.target_port()
            if port is None:
                return WireFailure("refused", "no nREPL port configured")
            session = self.sessions.ensure_session(port)
            if isinstance(session, WireFailure):
                return session
            result = run_operation(session, request, timeout)
            if isinstance(result, OperationTimeout) and not session.alive:
                self.sessions.invalidate()
            return result

    def restart_backend(self) -> int:
        """Restart the embedded listener and reconnect to it.

        Raises:
            SupervisorError: Not in embedded mode, or the restart failed.
        """
        if self.supervisor is None:
            raise SupervisorError(
                "restart is only available in embedded mode; the bridge does not "
                "own the external nREPL server"
            )
        with self.lock:
            self.sessions.invalidate()
            port = self.supervisor.restart()
            session = self.sessions.ensure_session(port)
            if isinstance(session, WireFailure):
                raise SupervisorError(f"backend restarted on port {port} but reconnect failed: {session}")
            return port

    def close(self) -> None:
        self.sessions.close()
        if self.supervisor is not None:
            self.supervisor.close()


def create_runtime(
    port: int | None = None,
    embedded: bool = False,
    supervisor: BackendSupervisor | None = None,
) -> BridgeRuntime:
    """Create a runtime, launching the embedded backend when requested."""
    if embedded and supervisor is None:
        supervisor = BackendSupervisor()
    if supervisor is not None and supervisor.port is None:
        supervisor.launch()
    runtime = BridgeRuntime(port=port, supervisor=supervisor)
    logger.info("runtime ready port=%s embedded=%s", runtime.target_port(), runtime.embedded)
    return runtime
