#!/usr/bin/env python3
"""
rfs — CLI entry point

Subcommands
───────────
  start   Start the RFS file streaming server
  copy    Copy a file from a running RFS server to a local path

Usage examples
──────────────
  # Serve files on the default endpoint (localhost:44444)
  rfs start

  # Serve on every interface, drop clients idle for more than 60s
  rfs start --address 0.0.0.0:44444 --timeout 60

  # Copy /var/log/syslog from a remote server into ./syslog
  rfs copy /var/log/syslog ./syslog --address 192.168.1.50:44444
"""

import argparse
import logging
import sys

from rfs.connection import DEFAULT_IDLE_TIMEOUT
from rfs.protocol import CHUNK_SIZE, DEFAULT_HOST, DEFAULT_PORT, MAX_UNSIGNED

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS = f"{DEFAULT_HOST}:{DEFAULT_PORT}"

# ---------------------------------------------------------------------------
# Logging setup (called before anything else so imports log correctly)
# ---------------------------------------------------------------------------

def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    fmt   = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    # Per-message frame logging is only useful when debugging
    if not verbose:
        logging.getLogger("rfs.connection").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# --address parsing
# ---------------------------------------------------------------------------

def parse_address(value: str) -> tuple[str, int]:
    """
    Parse "host:port" (or "[v6-host]:port") into (host, port).

    Raises:
        argparse.ArgumentTypeError: malformed address or port
    """
    host, sep, port_str = value.rpartition(":")
    if not sep or not host:
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got '{value}'")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise argparse.ArgumentTypeError(f"IPv6 hosts must be bracketed: '{value}'")

    try:
        port = int(port_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port '{port_str}'") from None
    if not 0 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {port}")

    return host, port


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer '{value}'") from None
    if not 0 < n <= MAX_UNSIGNED:
        raise argparse.ArgumentTypeError(f"must be in 1..{MAX_UNSIGNED}, got {n}")
    return n


def _timeout(value: str) -> float | None:
    """Seconds as a float; zero or negative disables the deadline."""
    try:
        secs = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'") from None
    return secs if secs > 0 else None


# ---------------------------------------------------------------------------
# Subcommand: start
# ---------------------------------------------------------------------------

def cmd_start(args: argparse.Namespace) -> int:
    """Start the RFS server."""
    from rfs.server import RemoteFileServer

    host, port = args.address
    server = RemoteFileServer(host=host, port=port, idle_timeout=args.timeout)
    try:
        server.start()   # blocks
    except OSError as exc:
        print(f"\n  Error: cannot listen on {host}:{port}: {exc}", file=sys.stderr)
        return 1
    return 0


# ---------------------------------------------------------------------------
# Subcommand: copy
# ---------------------------------------------------------------------------

def cmd_copy(args: argparse.Namespace) -> int:
    """Copy a remote file to a local path."""
    from rfs.client import CopyError, RemoteFileClient
    from rfs.connection import TransportError

    host, port = args.address
    try:
        with RemoteFileClient(host, port, timeout=args.timeout) as client:
            greeting = client.hello()
            logger.info("Server says: %s", greeting)
            result = client.copy(args.remote, args.local, chunk_size=args.chunk_size)
    except (CopyError, TransportError) as exc:
        print(f"\n  Error: {exc}", file=sys.stderr)
        return 1

    _print_summary(result)
    return 0


def _print_summary(result) -> None:
    print(f"\n  {'─'*56}")
    print(f"  Copy Summary")
    print(f"  {'─'*56}")
    print(f"  Remote          : {result.remote_path}")
    print(f"  Local           : {result.local_path}")
    print(f"  Size            : {result.bytes_copied} bytes")
    print(f"  Read requests   : {result.requests}")
    print(f"  Duration        : {result.duration_s:.2f} s")
    print(f"  Avg throughput  : {result.throughput_mbps:.2f} Mbps")
    print(f"  {'─'*56}\n")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rfs",
        description="RFS — stream a remote file over a single TCP connection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--address", "-a", type=parse_address, default=DEFAULT_ADDRESS,
            metavar="HOST:PORT",
            help=f"Server endpoint (default: {DEFAULT_ADDRESS})",
        )
        p.add_argument(
            "--timeout", type=_timeout, default=DEFAULT_IDLE_TIMEOUT, metavar="SECS",
            help=f"Idle timeout per connection in seconds, 0 to disable (default: {DEFAULT_IDLE_TIMEOUT:g})",
        )

    # ── start ──────────────────────────────────────────────────────────
    p_start = sub.add_parser(
        "start",
        help="Start the RFS server",
        description="Start the RFS server. Serves read-only access to local files.",
    )
    add_common(p_start)

    # ── copy ───────────────────────────────────────────────────────────
    p_copy = sub.add_parser(
        "copy",
        help="Copy a remote file to a local path",
        description="Open REMOTE on the server and stream it into LOCAL (created or truncated).",
    )
    p_copy.add_argument("remote", metavar="REMOTE", help="Path of the file on the server")
    p_copy.add_argument("local", metavar="LOCAL", help="Local destination path")
    add_common(p_copy)
    p_copy.add_argument(
        "--chunk-size", type=_positive_int, default=CHUNK_SIZE, metavar="BYTES",
        help=f"Bytes requested per read (default: {CHUNK_SIZE})",
    )

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args   = parser.parse_args(argv)
    _setup_logging(args.verbose)

    dispatch = {
        "start": cmd_start,
        "copy":  cmd_copy,
    }

    handler = dispatch.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
