from typing import Iterable, List, Optional, Tuple

from . import crypto
from .protocol import TAG_ENCRYPTED, TAG_UNENCRYPTED

"""
messages.py - build requests the way a device does.

What this module does:
- Renders events as "<hex time> <description>" lines (or just the
  description when the device has no clock).
- Puts device name, optional stats line and events into the plaintext body.
- Either sends that body as-is behind tag '0', or cuts it into chunks,
  seals each with crypto.seal_block() and sends the Base64 blocks behind
  tag '1', one per line.

The server never needs this; it exists for the `send` CLI mode and tests.
"""

EventSpec = Tuple[Optional[int], str]


def encode_events(events: Iterable[EventSpec]) -> str:
    """[(timestamp or None, description), ...] -> newline-terminated lines."""
    lines = []
    for timestamp, description in events:
        if timestamp is None:
            lines.append(f"{description}\n")
        else:
            lines.append(f"{timestamp:x} {description}\n")
    return "".join(lines)


def encode_body(device_name: str, events: Iterable[EventSpec],
                stats: Optional[str] = None) -> str:
    """
    Plaintext body. A device with nothing to report as stats still sends an
    empty stats line so the first event isn't taken for it.
    """
    return f"{device_name}\n{stats or ''}\n{encode_events(events)}"


def chunk_plaintext(data: bytes, size: int) -> List[bytes]:
    """Split into chunks of at most `size` bytes."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [data[i:i + size] for i in range(0, len(data), size)]


def encrypt_body(body: str, key: crypto.EncryptionKey,
                 random_bits: int = crypto.RANDOM_BIT_COUNT,
                 checksum_modulus: int = crypto.CHECKSUM_MODULUS) -> str:
    """Seal the plaintext body into newline-terminated Base64 blocks."""
    data = body.encode("utf-8")
    if b"\x00" in data:
        # A chunk starting with NUL would lose it on the way back.
        raise ValueError("body can't contain NUL bytes")
    size = crypto.block_size(key.modulus, random_bits, checksum_modulus)
    return "".join(
        crypto.seal_block(chunk, key, random_bits, checksum_modulus) + "\n"
        for chunk in chunk_plaintext(data, size)
    )


def build_request(device_name: str, events: Iterable[EventSpec],
                  stats: Optional[str] = None,
                  key: Optional[crypto.EncryptionKey] = None) -> bytes:
    """
    Full request bytes, ready to write before half-closing.

    Typical usage:
        req = build_request("door-3", [(0x5f000000, "in"), (None, "out")], key=enc)
    """
    body = encode_body(device_name, events, stats)
    if key is None:
        return (TAG_UNENCRYPTED + body).encode("utf-8")
    return (TAG_ENCRYPTED + encrypt_body(body, key)).encode("ascii")
