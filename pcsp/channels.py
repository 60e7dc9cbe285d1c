"""
channels.py - duplex channels and the sources that hand them out.

A Channel is one port of a bidirectional connection: a ByteReader for what
the peer sent and a ByteWriter for what we send back. The server only ever
asks a ChannelSource for the next Channel, so the same accept loop runs
against a real TCP listener or against a queue of in-process DuplexChannels.
"""

import collections
import logging
import socket
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Tuple

from .errors import EndOfStream, IOFailure, NoChannelsAvailable
from .stream import ByteReader, ByteWriter, Pipe

logger = logging.getLogger(__name__)


class Channel:
    """One end of a full-duplex connection."""

    def __init__(self, reader: ByteReader, writer: ByteWriter) -> None:
        self.reader = reader
        self.writer = writer

    def close_output(self) -> None:
        """Half-close: the peer sees end of input, our reader keeps working."""
        self.writer.close()

    def close(self) -> None:
        """Close both directions. Errors while closing are logged, not raised."""
        for end in (self.writer, self.reader):
            try:
                end.close()
            except IOFailure as exc:
                logger.debug("close failed: %s", exc)


class DuplexChannel:
    """
    Two pipes wired crosswise. Bytes written on port1.writer are read from
    port2.reader and vice versa. Handy for driving the protocol handler from a
    test without a socket.
    """

    def __init__(self, use_os_pipe: bool = False) -> None:
        self._pipe1 = Pipe(use_os_pipe)
        self._pipe2 = Pipe(use_os_pipe)
        self.port1 = Channel(self._pipe1.reader, self._pipe2.writer)
        self.port2 = Channel(self._pipe2.reader, self._pipe1.writer)


# -----------------------------
# Sources
# -----------------------------

class ChannelSource(ABC):
    """Anything that yields the next channel to serve."""

    @abstractmethod
    def accept(self) -> Channel:
        """Return the next channel. Raises NoChannelsAvailable when exhausted."""

    def close(self) -> None:
        """Stop producing channels."""


class QueuedChannelSource(ChannelSource):
    """
    Drains a preregistered FIFO of channels first, then delegates to the
    fallback source. With no fallback, an empty queue fails immediately with
    NoChannelsAvailable rather than blocking.
    """

    def __init__(self, channels: Iterable[Channel] = (),
                 fallback: Optional[ChannelSource] = None) -> None:
        self._queue = collections.deque(channels)
        self.fallback = fallback

    def push(self, channel: Channel) -> None:
        self._queue.append(channel)

    def accept(self) -> Channel:
        if self._queue:
            return self._queue.popleft()
        if self.fallback is None:
            raise NoChannelsAvailable()
        return self.fallback.accept()

    def close(self) -> None:
        self._queue.clear()
        if self.fallback is not None:
            self.fallback.close()


# -----------------------------
# TCP backend
# -----------------------------

class SocketByteReader(ByteReader):
    """Reads from a connected socket, buffering one recv() at a time."""

    RECV_SIZE = 4096

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._buf = b""
        self._pos = 0

    def read_byte(self) -> int:
        if self._pos >= len(self._buf):
            try:
                chunk = self._sock.recv(self.RECV_SIZE)
            except OSError as exc:
                raise IOFailure(f"can't read from socket: {exc}") from exc
            if not chunk:
                raise EndOfStream()
            self._buf, self._pos = chunk, 0
        value = self._buf[self._pos]
        self._pos += 1
        return value

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RD)
        except OSError:
            pass  # already disconnected


class SocketByteWriter(ByteWriter):
    """Buffers writes until flush(); close() flushes and shuts down SHUT_WR."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._pending = bytearray()
        self._closed = False

    def write_byte(self, value: int) -> None:
        self.write(bytes((value,)))

    def write(self, data: bytes) -> None:
        if self._closed:
            raise IOFailure("socket writer is closed")
        self._pending.extend(data)

    def flush(self) -> None:
        if not self._pending:
            return
        try:
            self._sock.sendall(bytes(self._pending))
        except OSError as exc:
            raise IOFailure(f"can't write to socket: {exc}") from exc
        finally:
            self._pending.clear()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.flush()
        finally:
            try:
                self._sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass  # peer already gone


class SocketChannel(Channel):
    """A Channel over an accepted TCP connection."""

    def __init__(self, sock: socket.socket, peer: Optional[Tuple] = None) -> None:
        super().__init__(SocketByteReader(sock), SocketByteWriter(sock))
        self.sock = sock
        self.peer = peer

    def close(self) -> None:
        super().close()
        self.sock.close()


class SocketChannelSource(ChannelSource):
    """
    TCP listener. accept() blocks until a client connects; it polls with a
    short timeout so that close() from another thread ends it promptly.
    """

    def __init__(self, host: str, port: int, backlog: int = 5,
                 poll_interval: float = 1.0) -> None:
        self.poll_interval = poll_interval
        self._closed = False
        try:
            self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._sock.bind((host, port))
            self._sock.listen(backlog)
            self._sock.settimeout(poll_interval)
        except OSError as exc:
            raise IOFailure(f"can't listen on {host}:{port}: {exc}") from exc

    @property
    def address(self) -> Tuple[str, int]:
        return self._sock.getsockname()[:2]

    def accept(self) -> Channel:
        while not self._closed:
            try:
                conn, peer = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._closed:
                    break
                raise IOFailure(f"accept failed: {exc}") from exc
            conn.settimeout(None)  # no read/write timeout on the connection
            logger.info("connection from %s", peer)
            return SocketChannel(conn, peer)
        raise NoChannelsAvailable("listener is closed")

    def close(self) -> None:
        self._closed = True
        self._sock.close()
