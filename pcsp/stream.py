"""
stream.py - byte-level reader/writer capabilities and their backends.

The protocol code never touches sockets or files directly. It only sees
something that can hand out one byte at a time (ByteReader) and something
that can take bytes and be flushed (ByteWriter). Backends:

- FileByteReader / FileByteWriter: wrap a binary file (path or open object).
- MemoryByteReader: reads from an immutable bytes buffer.
- Pipe: connects one writer end to one reader end, either through an
  in-process buffer or through an OS pipe.
- DumpingReader: debug wrapper that logs every byte it passes through.

All reads block until a byte is there. Running out of data raises
EndOfStream; anything else that goes wrong raises IOFailure.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Optional, Union

from .errors import EndOfStream, IOFailure

logger = logging.getLogger(__name__)


# -----------------------------
# Capability contracts
# -----------------------------

class ByteReader(ABC):
    """Blocking source of single bytes."""

    @abstractmethod
    def read_byte(self) -> int:
        """Return the next byte (0-255). Raises EndOfStream / IOFailure."""

    def read_all(self) -> bytes:
        """Drain the reader until EndOfStream and return what was read."""
        out = bytearray()
        while True:
            try:
                out.append(self.read_byte())
            except EndOfStream:
                return bytes(out)

    def close(self) -> None:
        """Release the backing resource. Safe to call more than once."""


class ByteWriter(ABC):
    """Sink for single bytes with an explicit flush."""

    @abstractmethod
    def write_byte(self, value: int) -> None:
        """Write one byte (0-255). Raises IOFailure."""

    def write(self, data: bytes) -> None:
        for value in data:
            self.write_byte(value)

    def flush(self) -> None:
        """Force buffered output out. Nothing to do for unbuffered writers."""

    def close(self) -> None:
        """Release the backing resource. Safe to call more than once."""


# -----------------------------
# File backends
# -----------------------------

FileLike = Union[str, os.PathLike, BinaryIO]


class FileByteReader(ByteReader):
    """
    Reads from a binary file. Accepts a path (opened here, in "rb" mode) or an
    already open binary file object, which this reader then owns.

    Use as a context manager, or call close(); the handle is released either way.
    """

    def __init__(self, source: FileLike) -> None:
        if isinstance(source, (str, os.PathLike)):
            try:
                self._f: Optional[BinaryIO] = open(source, "rb")
            except OSError as exc:
                raise IOFailure(f"can't open {source}: {exc.strerror}") from exc
        else:
            self._f = source

    def read_byte(self) -> int:
        if self._f is None:
            raise IOFailure("reader is closed")
        try:
            data = self._f.read(1)
        except (OSError, ValueError) as exc:
            raise IOFailure(f"can't read from file: {exc}") from exc
        if not data:
            raise EndOfStream()
        return data[0]

    def close(self) -> None:
        if self._f is not None:
            f, self._f = self._f, None
            f.close()

    def __enter__(self) -> "FileByteReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FileByteWriter(ByteWriter):
    """Writes to a binary file; a path is opened in "wb" mode."""

    def __init__(self, target: FileLike) -> None:
        if isinstance(target, (str, os.PathLike)):
            try:
                self._f: Optional[BinaryIO] = open(target, "wb")
            except OSError as exc:
                raise IOFailure(f"can't open {target}: {exc.strerror}") from exc
        else:
            self._f = target

    def write_byte(self, value: int) -> None:
        self.write(bytes((value,)))

    def write(self, data: bytes) -> None:
        if self._f is None:
            raise IOFailure("writer is closed")
        try:
            self._f.write(data)
        except (OSError, ValueError) as exc:
            raise IOFailure(f"can't write to file: {exc}") from exc

    def flush(self) -> None:
        if self._f is None:
            raise IOFailure("writer is closed")
        try:
            self._f.flush()
        except (OSError, ValueError) as exc:
            raise IOFailure(f"can't write to file: {exc}") from exc

    def close(self) -> None:
        if self._f is None:
            return
        f, self._f = self._f, None
        try:
            f.close()  # flushes first
        except OSError as exc:
            raise IOFailure(f"can't close file: {exc}") from exc

    def __enter__(self) -> "FileByteWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# -----------------------------
# Memory backend
# -----------------------------

class MemoryByteReader(ByteReader):
    """Reads an immutable buffer; the readable length is fixed at construction."""

    def __init__(self, data: bytes, length: Optional[int] = None) -> None:
        self._mem = bytes(data)
        self._length = len(self._mem) if length is None else min(length, len(self._mem))
        self._offset = 0

    def read_byte(self) -> int:
        if self._offset >= self._length:
            raise EndOfStream()
        value = self._mem[self._offset]
        self._offset += 1
        return value


class DumpingReader(ByteReader):
    """Pass-through reader that logs every byte at DEBUG level."""

    def __init__(self, reader: ByteReader, label: str = "dump") -> None:
        self.reader = reader
        self.label = label

    def read_byte(self) -> int:
        value = self.reader.read_byte()
        logger.debug("[%s] read 0x%02x %r", self.label, value, chr(value))
        return value

    def close(self) -> None:
        self.reader.close()


# -----------------------------
# Pipes
# -----------------------------

class _PipeBuffer:
    """Shared state between the two ends of an in-process pipe."""

    def __init__(self) -> None:
        self.data = bytearray()
        self.cond = threading.Condition()
        self.writer_closed = False
        self.reader_closed = False


class _PipeReader(ByteReader):
    def __init__(self, buf: _PipeBuffer) -> None:
        self._buf = buf

    def read_byte(self) -> int:
        buf = self._buf
        with buf.cond:
            while not buf.data:
                if buf.reader_closed:
                    raise IOFailure("pipe reader is closed")
                if buf.writer_closed:
                    raise EndOfStream()
                buf.cond.wait()
            value = buf.data[0]
            del buf.data[0]
            return value

    def close(self) -> None:
        with self._buf.cond:
            self._buf.reader_closed = True
            self._buf.data.clear()
            self._buf.cond.notify_all()


class _PipeWriter(ByteWriter):
    def __init__(self, buf: _PipeBuffer) -> None:
        self._buf = buf

    def write_byte(self, value: int) -> None:
        self.write(bytes((value,)))

    def write(self, data: bytes) -> None:
        buf = self._buf
        with buf.cond:
            if buf.writer_closed:
                raise IOFailure("pipe writer is closed")
            if buf.reader_closed:
                raise IOFailure("broken pipe")
            buf.data.extend(data)
            buf.cond.notify_all()

    def close(self) -> None:
        with self._buf.cond:
            self._buf.writer_closed = True
            self._buf.cond.notify_all()


class Pipe:
    """
    One-way byte channel: bytes written to .writer come out of .reader.

    The in-process variant keeps an unbounded buffer guarded by a condition
    variable. With use_os_pipe=True the bytes go through os.pipe() instead,
    which bounds the buffer to the kernel's pipe capacity. Both look the same
    to the caller: closing the writer gives the reader EndOfStream once the
    buffered bytes are consumed.
    """

    def __init__(self, use_os_pipe: bool = False) -> None:
        if use_os_pipe:
            try:
                rfd, wfd = os.pipe()
            except OSError as exc:
                raise IOFailure(f"can't create pipe: {exc.strerror}") from exc
            self.reader: ByteReader = FileByteReader(os.fdopen(rfd, "rb"))
            self.writer: ByteWriter = FileByteWriter(os.fdopen(wfd, "wb"))
        else:
            buf = _PipeBuffer()
            self.reader = _PipeReader(buf)
            self.writer = _PipeWriter(buf)
