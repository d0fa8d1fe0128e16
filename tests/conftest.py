from __future__ import annotations

import threading

import pytest

from rfs.client import RemoteFileClient
from rfs.server import RemoteFileServer


@pytest.fixture
def make_server():
    """Start RemoteFileServer instances on ephemeral ports; stop them afterwards."""
    started: list[tuple[RemoteFileServer, threading.Thread]] = []

    def _make(idle_timeout: float | None = 5.0) -> RemoteFileServer:
        srv = RemoteFileServer(host="127.0.0.1", port=0, idle_timeout=idle_timeout)
        ready = threading.Event()
        t = threading.Thread(target=srv.start, kwargs={"ready_event": ready}, daemon=True)
        t.start()
        assert ready.wait(5.0), "server did not start"
        started.append((srv, t))
        return srv

    yield _make

    for srv, t in started:
        srv.shutdown()
        t.join(timeout=5.0)


@pytest.fixture
def server(make_server):
    return make_server()


@pytest.fixture
def client(server):
    host, port = server.address
    with RemoteFileClient(host, port, timeout=5.0) as c:
        yield c
