"""
rfs/client.py

RFS file streaming CLIENT.

This is the active side:
  1. Connects to the server (RemoteFileClient)
  2. Optionally greets it with HELLO
  3. Sends OPEN_REQUEST for the remote path and keeps the returned handle
  4. Truncates the local destination file
  5. Pulls the file with READ_REQUESTs at increasing offsets until an empty
     READ_RESPONSE marks end-of-file

A failed copy leaves the local file holding whatever was written so far.
There is no cleanup and no resume.
"""

import socket
import time
import logging
from dataclasses import dataclass
from typing import Optional

from rfs.connection import DEFAULT_IDLE_TIMEOUT, MessageConnection, TransportError
from rfs.protocol import (
    CHUNK_SIZE,
    DEFAULT_HOST,
    DEFAULT_PORT,
    MAX_UNSIGNED,
    Hello,
    Info,
    OpenRequest,
    OpenResponse,
    ReadRequest,
    ReadResponse,
)

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0      # seconds


class CopyError(RuntimeError):
    """A remote copy was aborted. The message is meant for the operator."""


@dataclass
class TransferState:
    """Progress of one copy operation."""
    remote_path: str
    local_path: str
    handle: int
    bytes_copied: int = 0
    requests: int = 0


@dataclass
class CopyResult:
    remote_path: str
    local_path: str
    bytes_copied: int
    requests: int
    duration_s: float

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_copied * 8 / 1_000_000) / self.duration_s


def _describe(response) -> str:
    if response is None:
        return "connection closed by server"
    if isinstance(response, Info):
        return response.text
    return f"unexpected response {type(response).__name__}"


def _exchange(conn: MessageConnection, request, what: str):
    # ValueError also covers ProtocolError and requests that cannot be encoded
    try:
        return conn.request(request)
    except (TransportError, ValueError) as exc:
        raise CopyError(f"{what} failed: {exc}") from exc


def copy_remote_file(
    conn: MessageConnection,
    remote_path: str,
    local_path: str,
    chunk_size: int = CHUNK_SIZE,
) -> CopyResult:
    """
    Copy remote_path on the server to local_path.

    Args:
        conn:        Connected MessageConnection (no request in flight)
        remote_path: Path of the file on the server
        local_path:  Destination file; created or truncated
        chunk_size:  Bytes asked for per READ_REQUEST

    Returns:
        CopyResult for the finished transfer.

    Raises:
        CopyError: the server refused the open, answered out of protocol,
                   or the connection failed mid-transfer
    """
    if not 0 < chunk_size <= MAX_UNSIGNED:
        raise ValueError(f"chunk_size must be in 1..{MAX_UNSIGNED}, got {chunk_size}")

    start = time.monotonic()

    response = _exchange(conn, OpenRequest(path=remote_path), "open")
    if not isinstance(response, OpenResponse):
        raise CopyError(f"open {remote_path} failed: {_describe(response)}")

    state = TransferState(
        remote_path=remote_path,
        local_path=local_path,
        handle=response.handle,
    )
    logger.info("Opened remote %s (handle %d)", remote_path, state.handle)

    try:
        out = open(local_path, "wb")
    except OSError as exc:
        raise CopyError(f"cannot create {local_path}: {exc}") from exc

    with out:
        while True:
            request = ReadRequest(
                handle=state.handle,
                offset=state.bytes_copied,
                length=chunk_size,
            )
            response = _exchange(conn, request, f"read at offset {state.bytes_copied}")
            state.requests += 1

            if not isinstance(response, ReadResponse):
                raise CopyError(
                    f"read at offset {state.bytes_copied} failed: {_describe(response)}"
                )
            if response.at_eof:
                break
            if len(response.data) > chunk_size:
                raise CopyError(
                    f"server returned {len(response.data)} bytes for a {chunk_size}-byte read"
                )

            try:
                out.write(response.data)
            except OSError as exc:
                raise CopyError(f"write to {local_path} failed: {exc}") from exc
            state.bytes_copied += len(response.data)
            logger.debug("Copied %d bytes of %s", state.bytes_copied, remote_path)

    result = CopyResult(
        remote_path=remote_path,
        local_path=local_path,
        bytes_copied=state.bytes_copied,
        requests=state.requests,
        duration_s=time.monotonic() - start,
    )
    logger.info(
        "Copied %s -> %s (%d bytes, %d reads)",
        remote_path, local_path, result.bytes_copied, result.requests,
    )
    return result


class RemoteFileClient:
    """
    One client session against an RFS server.

    Usage:
        with RemoteFileClient("localhost", 44444) as client:
            client.hello()
            client.copy("/etc/hosts", "hosts.copy")
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
    ) -> None:
        self.host    = host
        self.port    = port
        self.timeout = timeout
        self._conn: Optional[MessageConnection] = None

    def connect(self) -> None:
        """
        Raises:
            TransportError: no server reachable at host:port
        """
        try:
            sock = socket.create_connection((self.host, self.port), timeout=CONNECT_TIMEOUT)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as exc:
            raise TransportError(f"No server at {self.host}:{self.port}: {exc}") from exc

        self._conn = MessageConnection(sock, idle_timeout=self.timeout)
        logger.info("Connected to %s:%d", self.host, self.port)

    @property
    def connection(self) -> MessageConnection:
        if self._conn is None:
            self.connect()
        return self._conn

    def hello(self, origin_name: Optional[str] = None) -> str:
        """Greet the server and return its reply text."""
        origin_name = origin_name or socket.gethostname()
        try:
            response = self.connection.request(Hello(origin_name=origin_name))
        except (TransportError, ValueError) as exc:
            raise CopyError(f"hello failed: {exc}") from exc
        if not isinstance(response, Info):
            raise CopyError(f"hello failed: {_describe(response)}")
        logger.debug("Server greeting: %s", response.text)
        return response.text

    def copy(self, remote_path: str, local_path: str, chunk_size: int = CHUNK_SIZE) -> CopyResult:
        return copy_remote_file(self.connection, remote_path, local_path, chunk_size=chunk_size)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "RemoteFileClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
