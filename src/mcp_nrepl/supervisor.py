"""Embedded backend supervisor.

In embedded mode the bridge launches its own nREPL backend: a Babashka
process that hosts an nREPL listener and takes control commands on stdin.
The evaluation environment lives in that process. Restarting only replaces
the listener (and interrupts evaluations stuck on it), so vars and
namespaces defined before the restart are still there afterwards.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import subprocess
import textwrap
import threading
import time
from dataclasses import dataclass
from typing import Sequence

from mcp_nrepl.errors import BackendStartupError, SupervisorError

logger = logging.getLogger(__name__)

BB_ENV = "MCP_NREPL_BB"
DEFAULT_STARTUP_TIMEOUT = 30.0

# Matches "Started nREPL server at 127.0.0.1:1667" and similar announcements.
PORT_ANNOUNCEMENT = re.compile(r"(?:127\.0\.0\.1|localhost):(\d+)")

NOT_STARTED = "not-started"
RUNNING = "running"
RESTARTING = "restarting"

EMBEDDED_BOOTSTRAP = textwrap.dedent(
    """
    (require '[babashka.nrepl.server :as srv]
             '[clojure.string :as str])

    (def listener (atom nil))

    (defn start-listener! []
      (let [server (srv/start-server! {:host "127.0.0.1" :port 0 :quiet true})
            port (.getLocalPort ^java.net.ServerSocket (:socket server))]
        (reset! listener server)
        (println (str "Started nREPL server at 127.0.0.1:" port))
        (flush)))

    (defn interrupt-evaluations! []
      (try
        (doseq [^Thread t (keys (Thread/getAllStackTraces))
                :when (and (not= t (Thread/currentThread))
                           (str/starts-with? (.getName t) "clojure-agent-send-off-pool"))]
          (.interrupt t))
        (catch Exception e
          (binding [*out* *err*]
            (println "interrupt failed:" (ex-message e))))))

    (defn restart-listener! []
      (when-let [server @listener]
        (srv/stop-server! server))
      (interrupt-evaluations!)
      (start-listener!))

    (start-listener!)

    (loop []
      (when-let [line (read-line)]
        (case (str/trim line)
          "restart" (restart-listener!)
          nil)
        (recur)))
    """
).strip()


def default_command() -> list[str]:
    """Command used to launch the embedded backend."""
    bb = os.environ.get(BB_ENV, "bb")
    return [bb, "-e", EMBEDDED_BOOTSTRAP]


@dataclass
class BackendProcess:
    """The embedded backend child and the port it currently listens on."""

    process: subprocess.Popen
    port: int


class BackendSupervisor:
    """Launches and restarts the embedded nREPL backend."""

    def __init__(
        self,
        command: Sequence[str] | None = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
        cwd: str | None = None,
    ):
        """Create a supervisor; nothing is started until `launch()`.

        Args:
            command: Backend command line. It must print a port announcement
                on stdout and accept `restart` lines on stdin.
            startup_timeout: Seconds to wait for each port announcement.
            cwd: Working directory for the backend process.
        """
        self.command = list(command) if command else default_command()
        self.startup_timeout = startup_timeout
        self.cwd = cwd
        self.state = NOT_STARTED
        self.backend: BackendProcess | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._reader: threading.Thread | None = None

    @property
    def port(self) -> int | None:
        return self.backend.port if self.backend else None

    @property
    def running(self) -> bool:
        return (
            self.backend is not None
            and self.state == RUNNING
            and self.backend.process.poll() is None
        )

    def launch(self) -> int:
        """Start the backend and wait for it to announce its port."""
        if self.state != NOT_STARTED:
            raise SupervisorError(f"backend already launched (state={self.state})")

        logger.info("launching embedded backend command=%s", self.command[0])
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                bufsize=1,
                cwd=self.cwd,
            )
        except OSError as exc:
            raise BackendStartupError(f"cannot start backend {self.command[0]!r}: {exc}") from exc

        self._lines = queue.Queue()
        self._reader = threading.Thread(
            target=self._pump_stdout,
            args=(process, self._lines),
            name="mcp-nrepl-backend-stdout",
            daemon=True,
        )
        self._reader.start()

        port = self._await_port(process)
        if port is None:
            self._terminate(process)
            raise BackendStartupError(
                f"backend did not announce a port within {self.startup_timeout:.0f}s"
            )

        self.backend = BackendProcess(process=process, port=port)
        self.state = RUNNING
        logger.info("embedded backend running pid=%s port=%s", process.pid, port)
        return port

    def restart(self) -> int:
        """Replace the listener with a fresh one and return its port.

        The backend process and its evaluation environment are kept.
        """
        if self.state == NOT_STARTED or self.backend is None:
            raise SupervisorError("backend is not running; nothing to restart")
        process = self.backend.process
        if process.poll() is not None:
            raise SupervisorError(f"backend process exited with code {process.returncode}")

        old_port = self.backend.port
        self.state = RESTARTING
        logger.info("restarting listener old_port=%s", old_port)
        try:
            process.stdin.write("restart\n")
            process.stdin.flush()
        except (OSError, ValueError) as exc:
            self.state = RUNNING
            raise SupervisorError(f"cannot signal backend: {exc}") from exc

        port = self._await_port(process)
        if port is None:
            self.state = RUNNING
            raise SupervisorError(
                f"backend did not announce a port within {self.startup_timeout:.0f}s"
            )

        self.backend.port = port
        self.state = RUNNING
        logger.info("listener restarted old_port=%s new_port=%s", old_port, port)
        return port

    def close(self) -> None:
        """Terminate the backend process."""
        if self.backend is not None:
            self._terminate(self.backend.process)
        self.backend = None
        self.state = NOT_STARTED

    @staticmethod
    def _pump_stdout(process: subprocess.Popen, lines: queue.Queue) -> None:
        for line in process.stdout:
            lines.put(line)
        lines.put(None)

    def _await_port(self, process: subprocess.Popen) -> int | None:
        # The backend prints one announcement per listener. The new port may
        # equal the old one when the OS hands the freed port back.
        deadline = time.monotonic() + self.startup_timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            try:
                line = self._lines.get(timeout=remaining)
            except queue.Empty:
                return None
            if line is None:
                logger.warning("backend stdout closed code=%s", process.poll())
                return None
            logger.debug("backend: %s", line.rstrip())
            match = PORT_ANNOUNCEMENT.search(line)
            if match:
                return int(match.group(1))

    def _terminate(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        logger.info("terminating embedded backend pid=%s", process.pid)
        try:
            process.stdin.close()
        except OSError:
            pass
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=5)
