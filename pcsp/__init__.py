"""
PCSP (People-Counter Sync Protocol) - collector for device telemetry uploads.

Devices open a TCP connection, send one request (device name, an optional
stats line and a list of timestamped events, optionally RSA-encrypted in
checksummed blocks), half-close, and read back a single '1' or '0'. The
collector turns each accepted request into "Event : ..." lines in an
append-only log.

Layers, bottom up:
- stream / channels: byte readers, writers, pipes, duplex channels and
  channel sources, so the protocol never depends on a real socket.
- textio: line-oriented text over those byte capabilities.
- crypto / protocol: block decryption + checksum, and the request state machine.
- server / run_server: accept loop, request log and command line.
"""
__all__ = ["channels", "crypto", "errors", "messages", "protocol", "run_server",
           "server", "stream", "textio"]
