from __future__ import annotations

import socket
import threading

import pytest

from rfs.client import CopyError, CopyResult, RemoteFileClient, copy_remote_file
from rfs.connection import MessageConnection, TransportError
from rfs.protocol import (
    CHUNK_SIZE,
    Info,
    OpenRequest,
    OpenResponse,
    ReadRequest,
    ReadResponse,
)


class ScriptedServer:
    """Peer that answers each request with the next scripted reply, then hangs up."""

    def __init__(self, sock: socket.socket, replies: list) -> None:
        self.requests: list = []
        self._conn = MessageConnection(sock, idle_timeout=5.0)
        self._replies = list(replies)
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            for reply in self._replies:
                request = self._conn.receive()
                if request is None:
                    return
                self.requests.append(request)
                self._conn.send(reply)
        finally:
            self._conn.close()

    def join(self) -> None:
        self._thread.join(timeout=5.0)


@pytest.fixture
def scripted():
    conns = []

    def _make(replies):
        a, b = socket.socketpair()
        peer = ScriptedServer(b, replies)
        conn = MessageConnection(a, idle_timeout=5.0)
        conns.append((conn, peer))
        return conn, peer

    yield _make

    for conn, peer in conns:
        conn.close()
        peer.join()


@pytest.mark.parametrize(
    "size",
    [0, 100, CHUNK_SIZE, CHUNK_SIZE * 10 + 17],
    ids=["empty", "under-one-chunk", "exactly-one-chunk", "many-chunks"],
)
def test_copy_is_byte_identical(client, tmp_path, size):
    src = tmp_path / "src.bin"
    dst = tmp_path / "dst.bin"
    src.write_bytes(bytes(i % 251 for i in range(size)))

    result = client.copy(str(src), str(dst))

    assert dst.read_bytes() == src.read_bytes()
    assert result.bytes_copied == size
    # one read per full or partial chunk plus the final empty read
    assert result.requests == -(-size // CHUNK_SIZE) + 1


def test_copy_truncates_existing_destination(client, tmp_path):
    src = tmp_path / "src.bin"
    dst = tmp_path / "dst.bin"
    src.write_bytes(b"short")
    dst.write_bytes(b"a much longer previous content")

    client.copy(str(src), str(dst))
    assert dst.read_bytes() == b"short"


def test_copy_with_custom_chunk_size(client, tmp_path):
    src = tmp_path / "src.bin"
    dst = tmp_path / "dst.bin"
    src.write_bytes(b"0123456789")

    result = client.copy(str(src), str(dst), chunk_size=3)
    assert dst.read_bytes() == b"0123456789"
    assert result.requests == 5


def test_copy_missing_remote_file(client, tmp_path):
    dst = tmp_path / "dst.bin"
    with pytest.raises(CopyError, match="error opening"):
        client.copy(str(tmp_path / "missing.bin"), str(dst))
    assert not dst.exists()


def test_several_copies_on_one_connection(client, tmp_path):
    for i in range(3):
        src = tmp_path / f"src{i}"
        src.write_bytes(str(i).encode() * 5000)
        client.copy(str(src), str(tmp_path / f"dst{i}"))
        assert (tmp_path / f"dst{i}").read_bytes() == src.read_bytes()


def test_hello(client):
    assert client.hello("tester") == "hello tester"


def test_handle_is_echoed_and_offsets_advance(scripted, tmp_path):
    conn, peer = scripted([
        OpenResponse(handle=42),
        ReadResponse(data=b"abc"),
        ReadResponse(data=b"de"),
        ReadResponse(data=b""),
    ])
    dst = tmp_path / "out"

    result = copy_remote_file(conn, "/remote", str(dst), chunk_size=3)
    peer.join()

    assert dst.read_bytes() == b"abcde"
    assert peer.requests == [
        OpenRequest(path="/remote"),
        ReadRequest(handle=42, offset=0, length=3),
        ReadRequest(handle=42, offset=3, length=3),
        ReadRequest(handle=42, offset=5, length=3),
    ]
    assert isinstance(result, CopyResult)
    assert result.bytes_copied == 5


def test_unexpected_reply_leaves_partial_file(scripted, tmp_path):
    conn, _peer = scripted([
        OpenResponse(handle=1),
        ReadResponse(data=b"abc"),
        Info(text="error reading, disk on fire"),
    ])
    dst = tmp_path / "out"

    with pytest.raises(CopyError, match="disk on fire"):
        copy_remote_file(conn, "/remote", str(dst), chunk_size=3)
    assert dst.read_bytes() == b"abc"


def test_open_answered_with_wrong_type(scripted, tmp_path):
    conn, _peer = scripted([ReadResponse(data=b"")])
    with pytest.raises(CopyError, match="unexpected response ReadResponse"):
        copy_remote_file(conn, "/remote", str(tmp_path / "out"))


def test_oversized_read_response(scripted, tmp_path):
    conn, _peer = scripted([OpenResponse(handle=1), ReadResponse(data=b"toolong")])
    with pytest.raises(CopyError, match="7 bytes for a 3-byte read"):
        copy_remote_file(conn, "/remote", str(tmp_path / "out"), chunk_size=3)


def test_server_hangs_up_mid_transfer(scripted, tmp_path):
    conn, _peer = scripted([OpenResponse(handle=1), ReadResponse(data=b"ab")])
    dst = tmp_path / "out"
    with pytest.raises(CopyError, match="read at offset 2 failed"):
        copy_remote_file(conn, "/remote", str(dst), chunk_size=2)
    assert dst.read_bytes() == b"ab"


def test_invalid_chunk_size(scripted, tmp_path):
    conn, _peer = scripted([])
    with pytest.raises(ValueError):
        copy_remote_file(conn, "/remote", str(tmp_path / "out"), chunk_size=0)


def test_connect_to_missing_server():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    client = RemoteFileClient("127.0.0.1", port, timeout=1.0)
    with pytest.raises(TransportError, match="No server"):
        client.connect()


def test_copy_result_throughput():
    result = CopyResult("r", "l", bytes_copied=1_000_000, requests=1, duration_s=8.0)
    assert result.throughput_mbps == pytest.approx(1.0)
    assert CopyResult("r", "l", 0, 1, 0.0).throughput_mbps == 0.0


def test_unencodable_remote_path_is_copy_error(scripted, tmp_path):
    conn, peer = scripted([])
    dst = tmp_path / "out"
    with pytest.raises(CopyError, match="open failed"):
        copy_remote_file(conn, "/data/\udcff", str(dst))
    assert not dst.exists()


def test_oversized_chunk_size_rejected_before_truncating(scripted, tmp_path):
    conn, peer = scripted([])
    dst = tmp_path / "out"
    dst.write_bytes(b"keep me")
    with pytest.raises(ValueError, match="chunk_size"):
        copy_remote_file(conn, "/remote", str(dst), chunk_size=2**64)
    assert dst.read_bytes() == b"keep me"


def test_unencodable_hello_is_copy_error(client):
    with pytest.raises(CopyError, match="hello failed"):
        client.hello("host-\udcff")
