"""
rfs — stream a remote file over a single TCP connection.

Modules
───────
  protocol    — Binary wire protocol (length-prefixed envelope, CRC32, XDR-style body)
  connection  — Framing layer: FrameDecoder + lock-step MessageConnection
  server      — RemoteFileServer, per-connection SessionHandler and FileSession
  client      — copy_remote_file driver and RemoteFileClient
  cli         — argparse CLI: start / copy subcommands

The protocol is download-only and lock-step: one request, one reply,
one open remote file per connection.
"""

__version__ = "1.0.0"
