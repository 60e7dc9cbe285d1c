import argparse
import asyncio
import logging
import os
import socket
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

from . import crypto
from .channels import SocketChannelSource
from .errors import ConfigurationFailure, IOFailure
from .messages import build_request
from .protocol import ProtocolConfig, ProtocolHandler
from .server import LogSink, TelemetryServer

"""
run_server.py - single entry point for the collector and its helpers.

What you can do here:
- Server:   listen for device uploads and append them to the request log
- Send:     act as a device once: build a request, send it, print the answer
- Keygen:   create a key pair and write dec-key.txt / enc-key.txt

"""

DEFAULT_PORT = 12347
DEFAULT_KEY_PATH = os.environ.get("PCSP_KEY_PATH", "dec-key.txt")
DEFAULT_ENC_KEY_PATH = os.environ.get("PCSP_ENC_KEY_PATH", "enc-key.txt")
DEFAULT_LOG_PATH = os.environ.get("PCSP_LOG_PATH", "people-counter-log.txt")

logger = logging.getLogger("pcsp")


# -------------------------
# Server
# -------------------------

def load_config(key_path: str, info_messages: bool = False) -> ProtocolConfig:
    """Read the decryption key (if any) into an immutable config."""
    key = crypto.load_decryption_key(key_path)
    if key is None:
        print("no decryption key loaded")
    else:
        logger.info("loaded %d-bit decryption key from %s", key.modulus.bit_length(), key_path)
    return ProtocolConfig.from_key(key, info_messages=info_messages)


async def run_collector(args: argparse.Namespace) -> int:
    """Load config, bind the port and serve until interrupted."""
    try:
        config = load_config(args.key, info_messages=args.info)
    except ConfigurationFailure as exc:
        print(f"Error : can't load key from {args.key} : {exc}", file=sys.stderr)
        return 1

    try:
        sink = LogSink(args.log)
        source = SocketChannelSource(args.host, args.port)
    except IOFailure as exc:
        print(f"Error : {exc}", file=sys.stderr)
        return 1

    print(f"Collector listening on {args.host}:{args.port}, logging to {args.log}")
    server = TelemetryServer(source, ProtocolHandler(config), sink,
                             concurrent=args.concurrent, dump=args.dump)
    try:
        await server.serve()
    finally:
        sink.close()
    return 0


# -------------------------
# Device side (one-shot)
# -------------------------

def parse_event_args(raw: List[str]) -> List[Tuple[Optional[int], str]]:
    """
    "desc" -> (None, "desc"); "@<unix seconds>:desc" -> (seconds, "desc").
    "@now:desc" stamps the event with the local clock.
    """
    events = []
    for item in raw:
        if item.startswith("@") and ":" in item:
            stamp, desc = item[1:].split(":", 1)
            ts = int(time.time()) if stamp == "now" else int(stamp)
            events.append((ts, desc))
        else:
            events.append((None, item))
    return events


def send_request(host: str, port: int, payload: bytes) -> str:
    """Write the request, half-close, and return whatever the server answers."""
    with socket.create_connection((host, port)) as sock:
        sock.sendall(payload)
        sock.shutdown(socket.SHUT_WR)
        chunks = []
        while True:
            data = sock.recv(4096)
            if not data:
                break
            chunks.append(data)
    return b"".join(chunks).decode("ascii", errors="replace")


def run_send(args: argparse.Namespace) -> int:
    key = None
    if args.enc_key:
        try:
            key = crypto.load_encryption_key(args.enc_key)
        except ConfigurationFailure as exc:
            print(f"Error : can't load key from {args.enc_key} : {exc}", file=sys.stderr)
            return 1
        if key is None:
            print(f"Error : key file {args.enc_key} not found", file=sys.stderr)
            return 1

    payload = build_request(args.device, parse_event_args(args.events), args.stats, key)
    host = args.host if args.host != "0.0.0.0" else "127.0.0.1"
    try:
        response = send_request(host, args.port, payload)
    except OSError as exc:
        print(f"Error : can't reach {host}:{args.port} : {exc}", file=sys.stderr)
        return 1
    print(f"response: {response!r} ({'accepted' if response == '1' else 'rejected'})")
    return 0 if response == "1" else 2


# -------------------------
# Key generation
# -------------------------

def write_key_files(dec_path: Path, enc_path: Path, key_size: int = 2048) -> crypto.EncryptionKey:
    """Generate a key pair and write both halves as hex byte strings."""
    dec_key, enc_key = crypto.generate_keypair(key_size)
    dec_path.write_text(crypto.export_key_text(dec_key))
    os.chmod(dec_path, 0o600)
    enc_path.write_text(crypto.export_key_text(enc_key))
    return enc_key


def run_keygen(args: argparse.Namespace) -> int:
    dec_path, enc_path = Path(args.key), Path(args.enc_key or DEFAULT_ENC_KEY_PATH)
    if dec_path.exists() and not args.force:
        print(f"Error : {dec_path} already exists (use --force)", file=sys.stderr)
        return 1
    enc_key = write_key_files(dec_path, enc_path, args.key_size)
    print(f"wrote {dec_path} (server) and {enc_path} (devices), "
          f"{enc_key.modulus.bit_length()}-bit modulus, "
          f"{crypto.block_size(enc_key.modulus)} plaintext bytes per block")
    return 0


# -------------------------
# Argument parsing
# -------------------------

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Quick examples:
      Server:   python -m pcsp.run_server --mode server --port 12347 --log counter.log
      Send:     python -m pcsp.run_server --mode send --device door-3 --enc-key enc-key.txt \
                    @now:in out
      Keygen:   python -m pcsp.run_server --mode keygen --key-size 2048
    """
    p = argparse.ArgumentParser(prog="pcsp")
    p.add_argument("--mode", choices=["server", "send", "keygen"], default="server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=DEFAULT_PORT)
    p.add_argument("--key", default=DEFAULT_KEY_PATH, help="decryption key file")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="request log (appended)")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--info", action="store_true", help="log an Info line per sync")
    p.add_argument("--concurrent", action="store_true", help="handle devices in parallel")
    p.add_argument("--dump", action="store_true", help="log every byte read (DEBUG)")

    p.add_argument("--enc-key", help="encryption key file (send/keygen)")
    p.add_argument("--device", default=socket.gethostname())
    p.add_argument("--stats")
    p.add_argument("events", nargs="*")

    p.add_argument("--key-size", type=int, default=2048)
    p.add_argument("--force", action="store_true")
    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if args.mode == "keygen":
        return run_keygen(args)
    if args.mode == "send":
        return run_send(args)
    try:
        return asyncio.run(run_collector(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
