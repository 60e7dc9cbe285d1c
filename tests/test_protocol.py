"""
Request state machine tests. Each request is pushed through an in-process
DuplexChannel: the test plays the device on port2 and the handler serves
port1, so the full read / respond / half-close sequence is exercised.
"""

import time

import pytest

from pcsp import crypto
from pcsp.channels import DuplexChannel
from pcsp.errors import EndOfStream
from pcsp.messages import build_request, encrypt_body
from pcsp.protocol import Event, ProtocolConfig, ProtocolHandler, format_time, parse_event, parse_events

from conftest import FIXED_NOW


def exchange(config, payload: bytes, clock):
    """Send `payload` as a device, run the handler, return (response, messages, closed)."""
    duplex = DuplexChannel()
    device = duplex.port2
    device.writer.write(payload)
    device.close_output()

    messages = ProtocolHandler(config, clock=clock).handle(duplex.port1)

    response = bytes((device.reader.read_byte(),))
    try:
        device.reader.read_byte()
    except EndOfStream:
        closed = True
    else:
        closed = False
    return response, messages, closed


def reject_exchange(config, payload: bytes, clock):
    """Like exchange(), for requests expected to fail: only one byte is read."""
    duplex = DuplexChannel()
    duplex.port2.writer.write(payload)
    duplex.port2.close_output()
    messages = ProtocolHandler(config, clock=clock).handle(duplex.port1)
    duplex.port1.close()
    return duplex.port2.reader.read_all(), messages


# -----------------------------
# Accepted requests
# -----------------------------

def test_unencrypted_request_logs_events_in_order(plain_config, clock):
    payload = b"0door-3\nbattery=80\n5f5e1000 in\nout\n5f5e1010 in\n"
    response, messages, closed = exchange(plain_config, payload, clock)

    assert response == b"1"
    assert closed
    assert messages == [
        f"Event : door-3 : {format_time(0x5f5e1000)} : in",
        f"Event : door-3 : {format_time(FIXED_NOW)} : out",
        f"Event : door-3 : {format_time(0x5f5e1010)} : in",
    ]


def test_device_name_only(plain_config, clock):
    response, messages, closed = exchange(plain_config, b"0door-3\n", clock)
    assert (response, messages, closed) == (b"1", [], True)


def test_info_line_when_enabled(clock):
    config = ProtocolConfig(info_messages=True)
    _, messages, _ = exchange(config, b"0door-3\n\nhello\n", clock)
    assert messages == [
        "Info : door-3 : syncing",
        f"Event : door-3 : {format_time(FIXED_NOW)} : hello",
    ]


def test_encrypted_request_round_trip(keyed_config, enc_key, clock):
    events = [(0x5f5e1000, "in"), (None, "out"), (0x5f5e2000, "x" * 300)]
    payload = build_request("door-3", events, stats="battery=80", key=enc_key)
    assert payload.count(b"\n") > 1

    response, messages, closed = exchange(keyed_config, payload, clock)

    assert response == b"1"
    assert closed
    assert messages == [
        f"Event : door-3 : {format_time(0x5f5e1000)} : in",
        f"Event : door-3 : {format_time(FIXED_NOW)} : out",
        f"Event : door-3 : {format_time(0x5f5e2000)} : {'x' * 300}",
    ]


def test_encrypted_trailing_block_without_newline_is_dropped(keyed_config, enc_key, clock):
    body = encrypt_body("door-3\n\nin\n", enc_key)
    extra = crypto.seal_block(b"ignored\n", enc_key)
    payload = ("1" + body + extra).encode("ascii")
    _, messages, _ = exchange(keyed_config, payload, clock)
    assert messages == [f"Event : door-3 : {format_time(FIXED_NOW)} : in"]


# -----------------------------
# Rejected requests
# -----------------------------

def test_empty_request(plain_config, clock):
    assert reject_exchange(plain_config, b"", clock) == (b"0", ["Error : Invalid request"])


@pytest.mark.parametrize("tag", [b"2", b"x", b"\n"])
def test_unknown_tag(plain_config, clock, tag):
    response, messages = reject_exchange(plain_config, tag + b"door-3\n", clock)
    assert (response, messages) == (b"0", ["Error : Invalid encryption type"])


def test_unencrypted_refused_when_key_configured(keyed_config, clock):
    response, messages = reject_exchange(keyed_config, b"0door-3\nstats\nin\n", clock)
    assert (response, messages) == (b"0", ["Error : unencrypted message attempted"])


def test_encrypted_refused_without_key(plain_config, enc_key, clock):
    payload = build_request("door-3", [(None, "in")], key=enc_key)
    response, messages = reject_exchange(plain_config, payload, clock)
    assert (response, messages) == (b"0", ["Error : no decryption key configured"])


def test_missing_device_name_terminator(plain_config, clock):
    response, messages = reject_exchange(plain_config, b"0door-3", clock)
    assert (response, messages) == (b"0", ["Error : can't find device name"])


def test_encrypted_missing_device_name_terminator(keyed_config, enc_key, clock):
    payload = ("1" + encrypt_body("door-3", enc_key)).encode("ascii")
    response, messages = reject_exchange(keyed_config, payload, clock)
    assert (response, messages) == (b"0", ["Error : can't find device name"])


def test_one_bad_checksum_rejects_whole_request(keyed_config, enc_key, clock):
    good = crypto.seal_block(b"door-3\n\n", enc_key)
    quotient = (crypto.bytes_to_int(b"in\n") << 64) | 99
    tampered = quotient * 8191 + (quotient + 5) % 8191
    bad = crypto.b64_encode(crypto.int_to_bytes(pow(tampered, enc_key.exponent, enc_key.modulus)))
    payload = f"1{good}\n{bad}\n".encode("ascii")

    response, messages = reject_exchange(keyed_config, payload, clock)
    assert (response, messages) == (b"0", ["Error : checksum doesn't match"])


# -----------------------------
# Event parsing
# -----------------------------

def test_parse_event_variants():
    assert parse_event("5f5e1000 in", 7) == Event(0x5f5e1000, "in")
    assert parse_event("0x10 in", 7) == Event(0x10, "in")
    assert parse_event("in", 7) == Event(7, "in")
    assert parse_event("hello world", 7) == Event(7, "hello world")
    assert parse_event("", 7) == Event(7, "")


def test_parse_event_rejects_unrepresentable_time():
    huge = "f" * 40
    assert parse_event(f"{huge} x", 7) == Event(7, f"{huge} x")


def test_parse_events_keeps_order_and_trailing_line():
    assert parse_events("a\n\nb", 1) == [Event(1, "a"), Event(1, ""), Event(1, "b")]
    assert parse_events("", 1) == []


def test_missing_stats_line_falls_through_to_events(plain_config, clock):
    handler = ProtocolHandler(plain_config, clock=clock)
    frame = handler.parse_frame("door-3", "10 only")
    assert frame.stats is None
    assert frame.events == [Event(0x10, "only")]
    frame = handler.parse_frame("door-3", "battery=80\n10 only\n")
    assert frame.stats == "battery=80"


def test_format_time_uses_local_time():
    assert format_time(0) == time.strftime("%c", time.localtime(0))
