"""
protocol.py - the request/response state machine for one device upload.

One call to ProtocolHandler.handle() consumes one channel:

    read body -> classify tag -> (decrypt + verify) -> device name
      -> answer '1' and half-close -> stats line -> events -> log lines

Any validation failure short-circuits to a single '0' response and one
"Error : <reason>" line. The handler writes nothing durable itself; the
caller gets the list of log lines back and decides where they go.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from . import crypto
from .channels import Channel
from .errors import IOFailure, ProtocolViolation
from .textio import TextReader, TextWriter

logger = logging.getLogger(__name__)

TAG_UNENCRYPTED = "0"
TAG_ENCRYPTED = "1"
RESPONSE_REJECT = "0"
RESPONSE_ACCEPT = "1"
TIME_FORMAT = "%c"

_HEX_TIMESTAMP = re.compile(r"(?:0[xX])?[0-9a-fA-F]+")


@dataclass(frozen=True)
class ProtocolConfig:
    """
    Immutable per-process settings. A modulus of 0 means "no key": plain
    requests are accepted and encrypted ones are refused.
    """
    modulus: int = 0
    exponent: int = 0
    random_bits: int = crypto.RANDOM_BIT_COUNT
    checksum_modulus: int = crypto.CHECKSUM_MODULUS
    info_messages: bool = False

    @classmethod
    def from_key(cls, key: Optional[crypto.DecryptionKey], **kwargs) -> "ProtocolConfig":
        if key is None:
            return cls(**kwargs)
        return cls(modulus=key.modulus, exponent=key.exponent, **kwargs)

    @property
    def has_key(self) -> bool:
        return self.modulus != 0

    @property
    def key(self) -> crypto.DecryptionKey:
        return crypto.DecryptionKey(self.modulus, self.exponent)


@dataclass
class Event:
    timestamp: float
    description: str


@dataclass
class Frame:
    """A fully decrypted and verified request, ready to be turned into log lines."""
    device_name: str
    stats: Optional[str] = None
    events: List[Event] = field(default_factory=list)


# -----------------------------
# Body parsing helpers
# -----------------------------

def split_line(body: str) -> Tuple[Optional[str], str]:
    """(first line without '\\n', rest) or (None, body) if there's no '\\n'."""
    head, sep, rest = body.partition("\n")
    if not sep:
        return None, body
    return head, rest


def _valid_timestamp(value: int) -> bool:
    try:
        time.localtime(value)
    except (OverflowError, ValueError, OSError):
        return False
    return True


def parse_event(line: str, now: float) -> Event:
    """
    "<hex time> <description>" -> Event with that time. If the first token
    isn't a usable hex time, the whole line is the description and `now` is
    the timestamp.
    """
    token, sep, rest = line.partition(" ")
    if sep and _HEX_TIMESTAMP.fullmatch(token):
        value = int(token, 16)
        if _valid_timestamp(value):
            return Event(value, rest)
    return Event(now, line)


def parse_events(body: str, now: float) -> List[Event]:
    """One event per line, input order kept; a final unterminated line counts."""
    events = []
    while body:
        line, body = split_line(body)
        if line is None:
            events.append(parse_event(body, now))
            break
        events.append(parse_event(line, now))
    return events


def format_time(timestamp: float) -> str:
    return time.strftime(TIME_FORMAT, time.localtime(timestamp))


# -----------------------------
# Handler
# -----------------------------

class ProtocolHandler:
    """
    Runs the request state machine. Stateless between calls apart from the
    immutable config, so one instance may serve many channels concurrently.
    """

    def __init__(self, config: ProtocolConfig,
                 clock: Callable[[], float] = time.time) -> None:
        self.config = config
        self.clock = clock

    def handle(self, channel: Channel) -> List[str]:
        """Serve one channel to completion and return its log lines."""
        reader = TextReader(channel.reader)
        writer = TextWriter(channel.writer)
        messages: List[str] = []
        try:
            body = reader.read()
            reader.close()
            frame_body = self.decode_body(body)
            device_name, rest = split_line(frame_body)
            if device_name is None:
                raise ProtocolViolation("can't find device name")
            if self.config.info_messages:
                messages.append(f"Info : {device_name} : syncing")
            self._accept(channel, writer)
            frame = self.parse_frame(device_name, rest)
        except ProtocolViolation as exc:
            logger.warning("request rejected: %s", exc)
            messages.append(f"Error : {exc}")
            writer.write(RESPONSE_REJECT)
            writer.close()
            return messages

        logger.info("accepted %d event(s) from %s", len(frame.events), frame.device_name)
        messages.extend(self.format_messages(frame))
        return messages

    def decode_body(self, body: str) -> str:
        """Tag check plus decryption. Returns the plaintext after the tag."""
        if not body:
            raise ProtocolViolation("Invalid request")
        tag, rest = body[0], body[1:]
        if tag == TAG_UNENCRYPTED:
            if self.config.has_key:
                raise ProtocolViolation("unencrypted message attempted")
            return rest
        if tag == TAG_ENCRYPTED:
            return self.decrypt(rest)
        raise ProtocolViolation("Invalid encryption type")

    def decrypt(self, body: str) -> str:
        """
        Unseal every newline-terminated block. Every block has to verify
        before any plaintext is used. A trailing block without a newline is
        ignored.
        """
        if not self.config.has_key:
            raise ProtocolViolation("no decryption key configured")
        key = self.config.key
        blocks = body.split("\n")[:-1]
        plaintext = b"".join(
            crypto.unseal_block(block, key, self.config.random_bits, self.config.checksum_modulus)
            for block in blocks
        )
        return plaintext.decode("utf-8", errors="surrogateescape")

    def _accept(self, channel: Channel, writer: TextWriter) -> None:
        writer.write(RESPONSE_ACCEPT)
        writer.close()
        try:
            channel.close_output()
        except IOFailure as exc:
            logger.warning("half-close failed: %s", exc)

    def parse_frame(self, device_name: str, body: str) -> Frame:
        stats, rest = split_line(body)
        return Frame(device_name, stats, parse_events(rest, self.clock()))

    def format_messages(self, frame: Frame) -> List[str]:
        return [
            f"Event : {frame.device_name} : {format_time(event.timestamp)} : {event.description}"
            for event in frame.events
        ]
