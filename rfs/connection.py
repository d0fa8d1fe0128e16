"""
rfs/connection.py

Framing layer: whole messages over a TCP byte stream.

  FrameDecoder       — incremental reassembly of frames from arbitrary chunks
  MessageConnection  — send / receive one message at a time over a socket

The connection is strictly lock-step. Each side sends exactly one message and
then waits for exactly one reply. A second send without a reply in between
raises LockStepError. So do bytes already buffered behind a complete message
when it is decoded; a pipelined message that arrives in a later recv() is
indistinguishable from the next request and is not detected.
"""

import socket
import logging
from typing import Optional

from rfs.protocol import (
    LockStepError,
    Message,
    encode_message,
    split_frame,
)

logger = logging.getLogger(__name__)

RECV_BUFFER = 65536             # socket recv size

# Seconds a connection may sit in a blocking read or write before it is
# considered stalled. None disables the deadline.
DEFAULT_IDLE_TIMEOUT = 120.0


class TransportError(ConnectionError):
    """The underlying socket failed, timed out or closed mid-message."""


class FrameDecoder:
    """
    Accumulates raw bytes and yields complete messages.

    Usage:
        decoder = FrameDecoder()
        decoder.feed(chunk)
        msg = decoder.next_message()   # None until a full frame is buffered
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def next_message(self) -> Optional[Message]:
        """
        Raises:
            ProtocolDecodeError: the buffer holds malformed data
        """
        result = split_frame(self._buf)
        if result is None:
            return None
        message, consumed = result
        del self._buf[:consumed]
        return message

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet consumed by a message."""
        return len(self._buf)


class MessageConnection:
    """
    One framed, lock-step message channel over a connected TCP socket.

    The connection owns the socket and closes it in close().
    """

    def __init__(
        self,
        sock: socket.socket,
        idle_timeout: Optional[float] = DEFAULT_IDLE_TIMEOUT,
    ) -> None:
        self._sock     = sock
        self._decoder  = FrameDecoder()
        self._awaiting_reply = False
        self._closed   = False
        self._sock.settimeout(idle_timeout)

        try:
            self.peer = sock.getpeername()
        except OSError:
            self.peer = None

    # ------------------------------------------------------------------
    # Send / receive
    # ------------------------------------------------------------------

    def send(self, message: Message) -> None:
        """
        Encode and write one message.

        Raises:
            LockStepError: a message was already sent and no reply received
            TransportError: the socket write failed
        """
        if self._awaiting_reply:
            raise LockStepError(
                f"Cannot send {type(message).__name__}: previous message still awaiting a reply"
            )

        frame = encode_message(message)
        try:
            self._sock.sendall(frame)
        except socket.timeout as exc:
            raise TransportError(f"Timed out sending to {self.peer}") from exc
        except OSError as exc:
            raise TransportError(f"Send to {self.peer} failed: {exc}") from exc

        self._awaiting_reply = True
        logger.debug("-> %s %s (%d bytes)", self.peer, type(message).__name__, len(frame))

    def receive(self) -> Optional[Message]:
        """
        Block until one complete message arrives.

        Returns:
            The decoded message, or None if the peer closed the connection
            cleanly between messages.

        Raises:
            ProtocolDecodeError: malformed bytes on the wire
            LockStepError: bytes of a further message arrived with this one
            TransportError: socket failure, timeout, or close mid-message
        """
        while True:
            message = self._decoder.next_message()
            if message is not None:
                break

            try:
                chunk = self._sock.recv(RECV_BUFFER)
            except socket.timeout as exc:
                raise TransportError(f"Timed out waiting for {self.peer}") from exc
            except OSError as exc:
                raise TransportError(f"Receive from {self.peer} failed: {exc}") from exc

            if not chunk:
                if self._decoder.pending:
                    raise TransportError(
                        f"Connection closed after {self._decoder.pending} bytes of a partial message"
                    )
                return None
            self._decoder.feed(chunk)

        if self._decoder.pending:
            raise LockStepError(
                f"Peer sent {self._decoder.pending} bytes beyond {type(message).__name__} "
                "before receiving a reply"
            )

        self._awaiting_reply = False
        logger.debug("<- %s %s", self.peer, type(message).__name__)
        return message

    def request(self, message: Message) -> Optional[Message]:
        """Send one message and wait for its reply."""
        self.send(message)
        return self.receive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError:
            pass

    def __enter__(self) -> "MessageConnection":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
