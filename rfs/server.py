"""
rfs/server.py

RFS file streaming SERVER.

Responsibilities:
  - Listen on a TCP port for client connections
  - Run one dispatch loop per connection: HELLO / OPEN_REQUEST / READ_REQUEST
  - Hold at most one open file per connection (FileSession)
  - Serve positional reads so repeated requests never share a file cursor
  - Turn per-request file errors into INFO replies; the connection survives

Architecture:
  - One accept-loop thread
  - One handler thread per accepted connection
  - Nothing shared between connections: each handler owns its own
    MessageConnection and FileSession, even for the same path
"""

import os
import socket
import threading
import logging
import signal
import sys
from typing import Optional

from rfs.connection import DEFAULT_IDLE_TIMEOUT, MessageConnection, TransportError
from rfs.protocol import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    Hello,
    Info,
    Message,
    OpenRequest,
    OpenResponse,
    ProtocolError,
    ReadRequest,
    ReadResponse,
)

logger = logging.getLogger(__name__)

# Upper bound on bytes returned by a single ReadResponse. Larger requests
# are clamped; the client simply sees a short read.
MAX_READ_LENGTH = 1024 * 1024

FILE_NOT_OPEN = "file not open"


class FileOpenError(OSError):
    pass


class FileReadError(OSError):
    pass


class FileNotOpenError(FileReadError):
    pass


class InvalidHandleError(FileReadError):
    pass


class UnsupportedMessageError(Exception):
    """A well-formed message that the server has no handler for."""


def _positional_read(fh, offset: int, length: int) -> bytes:
    if hasattr(os, "pread"):
        return os.pread(fh.fileno(), length, offset)
    # No pread (Windows): the file object is private to one connection thread,
    # so seek + read cannot race with another reader.
    fh.seek(offset)
    return fh.read(length)


# ---------------------------------------------------------------------------
# FileSession — the single open-file slot of one connection
# ---------------------------------------------------------------------------

class FileSession:
    """
    Holds at most one open file for a connection.

    Every successful open() issues a new handle (1, 2, 3, ...) and closes the
    file it replaces. Reads must quote the current handle.
    """

    def __init__(self) -> None:
        self._fh = None
        self._path: Optional[str] = None
        self._handle = 0

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    @property
    def handle(self) -> Optional[int]:
        return self._handle if self._fh is not None else None

    @property
    def path(self) -> Optional[str]:
        return self._path

    def open(self, path: str) -> int:
        """
        Open path read-only and make it the session's file.

        On failure the previously open file, if any, stays open.

        Raises:
            FileOpenError: the file could not be opened
        """
        try:
            fh = open(path, "rb")
        except (OSError, ValueError) as exc:
            reason = getattr(exc, "strerror", None) or exc
            raise FileOpenError(f"error opening {path}: {reason}") from exc

        self._release()
        self._fh     = fh
        self._path   = path
        self._handle += 1
        logger.debug("Opened %s as handle %d", path, self._handle)
        return self._handle

    def read(self, handle: int, offset: int, length: int) -> bytes:
        """
        Read up to length bytes at offset. Empty bytes means end-of-file.

        Raises:
            FileNotOpenError: no file is open
            InvalidHandleError: handle is not the current one
            FileReadError: the read itself failed
        """
        if self._fh is None:
            raise FileNotOpenError(FILE_NOT_OPEN)
        if handle != self._handle:
            raise InvalidHandleError(f"invalid handle {handle}")

        length = min(length, MAX_READ_LENGTH)
        if length == 0:
            return b""
        try:
            return _positional_read(self._fh, offset, length)
        except (OSError, OverflowError) as exc:
            reason = getattr(exc, "strerror", None) or exc
            raise FileReadError(f"error reading {self._path}: {reason}") from exc

    def close(self) -> None:
        self._release()
        self._path = None

    def _release(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.close()
        except OSError as exc:
            logger.warning("Closing %s failed: %s", self._path, exc)
        self._fh = None


# ---------------------------------------------------------------------------
# SessionHandler — dispatch loop for one client connection
# ---------------------------------------------------------------------------

class SessionHandler:
    """
    Handles a single client connection.

    Processes: (HELLO | OPEN_REQUEST | READ_REQUEST)* until the peer closes
    Sends back: exactly one reply per request (INFO, OPEN_RESPONSE, READ_RESPONSE)
    """

    def __init__(
        self,
        conn: socket.socket,
        addr: tuple,
        idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
    ) -> None:
        self._addr    = addr
        self._channel = MessageConnection(conn, idle_timeout=idle_timeout)
        self.session  = FileSession()

    def handle(self) -> None:
        """Main handler loop for one connection."""
        try:
            self._run()
        except TransportError as exc:
            logger.info("Connection %s closed: %s", self._addr, exc)
        except ProtocolError as exc:
            logger.warning("Connection %s protocol error: %s", self._addr, exc)
        except Exception as exc:
            logger.error("Connection %s error: %s", self._addr, exc, exc_info=True)
        finally:
            self.session.close()
            self._channel.close()

    def _run(self) -> None:
        while True:
            msg = self._channel.receive()
            if msg is None:
                logger.info("Client %s disconnected", self._addr)
                break
            self._channel.send(self.dispatch(msg))

    def dispatch(self, msg: Message) -> Message:
        """Map one request to its reply. Never raises for per-request failures."""
        try:
            if isinstance(msg, Hello):
                return self._handle_hello(msg)

            elif isinstance(msg, OpenRequest):
                return self._handle_open(msg)

            elif isinstance(msg, ReadRequest):
                return self._handle_read(msg)

            raise UnsupportedMessageError(f"unsupported message {type(msg).__name__}")

        except (FileOpenError, FileReadError, UnsupportedMessageError) as exc:
            logger.warning("Connection %s: %s", self._addr, exc)
            return Info(text=str(exc))

    def _handle_hello(self, msg: Hello) -> Message:
        logger.info("Connection %s: hello from %s", self._addr, msg.origin_name)
        return Info(text=f"hello {msg.origin_name}")

    def _handle_open(self, msg: OpenRequest) -> Message:
        handle = self.session.open(msg.path)
        logger.info("Connection %s: opened %s (handle %d)", self._addr, msg.path, handle)
        return OpenResponse(handle=handle)

    def _handle_read(self, msg: ReadRequest) -> Message:
        data = self.session.read(msg.handle, msg.offset, msg.length)
        if not data:
            logger.debug("Connection %s: EOF at offset %d", self._addr, msg.offset)
        return ReadResponse(data=data)


# ---------------------------------------------------------------------------
# RemoteFileServer — main server class
# ---------------------------------------------------------------------------

class RemoteFileServer:
    """
    TCP server that serves remote file reads to connected clients.

    Usage:
        server = RemoteFileServer(host="localhost", port=44444)
        server.start()          # blocks (runs the accept loop)
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
        backlog: int = 64,
    ) -> None:
        self.host         = host
        self.port         = port
        self.idle_timeout = idle_timeout
        self.backlog      = backlog

        self._shutdown = threading.Event()
        self._sock: Optional[socket.socket] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def address(self) -> Optional[tuple]:
        """(host, port) actually bound, or None before start()."""
        if self._sock is None:
            return None
        try:
            return self._sock.getsockname()[:2]
        except OSError:
            return None

    def start(self, ready_event: Optional[threading.Event] = None) -> None:
        """
        Start listening. Blocks until shutdown.

        Args:
            ready_event: If provided, set() once the socket is bound and
                         listening (useful for tests / programmatic callers).
        """
        self._sock = socket.create_server(
            (self.host, self.port),
            backlog=self.backlog,
        )
        self._sock.settimeout(1.0)  # so accept() can observe shutdown

        # Install signal handlers only when running on the main thread
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT,  self._on_signal)
            signal.signal(signal.SIGTERM, self._on_signal)

        host, port = self.address
        print(f"\n  RFS Server listening on {host}:{port}")
        print(f"  Idle timeout : {self.idle_timeout}s")
        print(f"  Press Ctrl-C to stop\n")
        logger.info("Server started on %s:%d", host, port)

        if ready_event is not None:
            ready_event.set()

        try:
            self._accept_loop()
        finally:
            self._close_listener()

    def shutdown(self) -> None:
        """Stop accepting connections. Existing handlers run to completion."""
        self._shutdown.set()

    def _accept_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            logger.info("New connection from %s:%d", addr[0], addr[1])
            handler = SessionHandler(conn, addr, idle_timeout=self.idle_timeout)
            t = threading.Thread(
                target=handler.handle,
                name=f"handler-{addr[0]}-{addr[1]}",
                daemon=True,
            )
            t.start()

        logger.info("Accept loop exited")

    def _close_listener(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError:
            pass

    def _on_signal(self, signum, frame) -> None:
        print("\n  Shutting down server...")
        self._shutdown.set()
        self._close_listener()
        sys.exit(0)
