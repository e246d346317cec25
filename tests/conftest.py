"""Shared fixtures for bridge tests."""

import pytest

from fake_nrepl import FakeNREPLServer
from mcp_nrepl.dispatcher import Dispatcher
from mcp_nrepl.runtime import BridgeRuntime
from mcp_nrepl.server import BridgeServer
from mcp_nrepl.session import SessionManager


@pytest.fixture
def nrepl_server():
    """A fake nREPL server listening on an ephemeral port."""
    server = FakeNREPLServer().start()
    yield server
    server.stop()


@pytest.fixture
def runtime(nrepl_server):
    """A runtime bridged to the fake server."""
    rt = BridgeRuntime(sessions=SessionManager(handshake_timeout=2.0), port=nrepl_server.port)
    yield rt
    rt.close()


@pytest.fixture
def dispatcher(runtime):
    return Dispatcher(runtime)


@pytest.fixture
def bridge(dispatcher):
    """A JSON-RPC server that has not been initialized yet."""
    return BridgeServer(dispatcher)
