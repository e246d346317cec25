"""A small in-process nREPL server for tests.

It understands `clone` and `eval` for a handful of forms, which is enough to
exercise the bridge end to end without a JVM or Babashka. Run as a script it
behaves like the embedded backend: it announces its port on stdout and
replaces its listener when it reads `restart` on stdin, keeping its vars.
"""

from __future__ import annotations

import re
import socketserver
import sys
import threading
import time
import uuid

from mcp_nrepl.wire import IncompleteFrame, decode_prefix, encode


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class FakeEnvironment:
    """Vars and namespaces shared by every listener in one process."""

    def __init__(self):
        self.vars: dict[str, str] = {}
        self.namespaces = {"clojure.core", "user"}
        self.lock = threading.Lock()


class FakeNREPLHandler(socketserver.BaseRequestHandler):
    def handle(self) -> None:
        buffer = bytearray()
        while not self.server.stopped.is_set():
            try:
                frame, consumed = decode_prefix(buffer)
            except IncompleteFrame:
                try:
                    chunk = self.request.recv(65536)
                except OSError:
                    return
                if not chunk:
                    return
                buffer += chunk
                continue
            del buffer[:consumed]
            self.server.requests.append(frame)
            replies = self.server.respond(frame)
            if replies is None:
                return
            for reply in replies:
                try:
                    self.request.sendall(encode(reply))
                except OSError:
                    return


class FakeNREPLServer(socketserver.ThreadingTCPServer):
    """Fake nREPL listener on an ephemeral loopback port."""

    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(self, environment: FakeEnvironment | None = None):
        self.environment = environment or FakeEnvironment()
        self.sessions: dict[str, str] = {}
        self.requests: list[dict] = []
        self.stopped = threading.Event()
        self.extra_frames: list[dict] = []
        super().__init__(("127.0.0.1", 0), FakeNREPLHandler)
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        return self.server_address[1]

    def start(self) -> "FakeNREPLServer":
        self._thread = threading.Thread(target=self.serve_forever, daemon=True)
        self._thread.start()
        return self

    def stop(self) -> None:
        self.stopped.set()
        self.shutdown()
        self.server_close()

    def eval_codes(self) -> list[str]:
        return [_text(r["code"]) for r in self.requests if _text(r.get("op", "")) == "eval"]

    def respond(self, frame: dict) -> list[dict] | None:
        op = _text(frame.get("op", ""))
        request_id = _text(frame.get("id", ""))
        if op == "clone":
            session = uuid.uuid4().hex
            self.sessions[session] = "user"
            return [{"id": request_id, "new-session": session, "status": ["done"]}]
        if op == "eval":
            session = _text(frame.get("session", ""))
            frames = self.evaluate(_text(frame["code"]), session)
            if frames is None:
                return None
            tagged = [dict(f, id=request_id, session=session) for f in frames]
            tagged.append({"id": request_id, "session": session, "status": ["done"]})
            return list(self.extra_frames) + tagged
        return [{"id": request_id, "status": ["error", "unknown-op", "done"]}]

    def evaluate(self, code: str, session: str) -> list[dict] | None:
        env = self.environment
        ns = self.sessions.get(session, "user")
        code = code.strip()

        def value(text: str) -> dict:
            return {"value": text, "ns": self.sessions.get(session, ns)}

        match = re.fullmatch(r"\(\+((?:\s+-?\d+)+)\)", code)
        if match:
            return [value(str(sum(int(n) for n in match.group(1).split())))]

        if re.fullmatch(r"\(/ -?\d+ 0\)", code):
            return [
                {"ex": "class java.lang.ArithmeticException", "root-ex": "class java.lang.ArithmeticException", "status": ["eval-error"]},
                {"err": "Execution error (ArithmeticException) at user/eval1 (REPL:1).\nDivide by zero\n"},
            ]

        match = re.fullmatch(r"\(defn (\S+)[\s\S]*\)", code)
        if match:
            with env.lock:
                env.vars[match.group(1)] = f"#function[{ns}/{match.group(1)}]"
            return [value(f"#'{ns}/{match.group(1)}")]

        match = re.fullmatch(r"\(def (\S+) ([\s\S]+)\)", code)
        if match:
            with env.lock:
                env.vars[match.group(1)] = match.group(2)
            return [value(f"#'{ns}/{match.group(1)}")]

        match = re.fullmatch(r'\(println "([^"]*)"\)', code)
        if match:
            return [{"out": match.group(1) + "\n"}, value("nil")]

        match = re.fullmatch(r"\(Thread/sleep (\d+)\)", code)
        if match:
            self.stopped.wait(int(match.group(1)) / 1000)
            return [value("nil")]

        if code == "(loop [] (recur))":
            self.stopped.wait()
            return None

        match = re.fullmatch(r'\(in-ns \(symbol "([^"]+)"\)\)', code)
        if match:
            self.sessions[session] = match.group(1)
            with env.lock:
                env.namespaces.add(match.group(1))
            return [value(f"#namespace[{match.group(1)}]")]

        if code == "(str (ns-name *ns*))":
            return [value(f'"{ns}"')]

        if code == "(sort (keys (ns-publics *ns*)))":
            with env.lock:
                names = sorted(env.vars)
            return [value("(" + " ".join(names) + ")")]

        if code == "(sort (map ns-name (all-ns)))":
            with env.lock:
                names = sorted(env.namespaces)
            return [value("(" + " ".join(names) + ")")]

        if re.fullmatch(r"[^\s()\[\]\"]+", code):
            with env.lock:
                known = env.vars.get(code)
            if known is not None:
                return [value(known)]
            return [
                {"ex": "class clojure.lang.Compiler$CompilerException", "status": ["eval-error"]},
                {"err": f"Syntax error compiling at (REPL:1:1).\nUnable to resolve symbol: {code} in this context\n"},
            ]

        return [value("nil")]


def _announce(server: FakeNREPLServer) -> None:
    print(f"Started nREPL server at 127.0.0.1:{server.port}", flush=True)


def main() -> None:
    if "--silent" in sys.argv:
        sys.stdin.read()
        return
    if "--exit" in sys.argv:
        return

    environment = FakeEnvironment()
    server = FakeNREPLServer(environment).start()
    print("fake backend booting", flush=True)
    _announce(server)
    for line in sys.stdin:
        if line.strip() == "restart" and "--same-port" in sys.argv:
            _announce(server)
        elif line.strip() == "restart":
            server.stop()
            server = FakeNREPLServer(environment).start()
            _announce(server)
    server.stop()
    time.sleep(0.05)


if __name__ == "__main__":
    main()
