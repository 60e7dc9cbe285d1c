"""
textio.py - line-oriented text on top of a ByteReader / ByteWriter.

The request parser wants "give me the whole body" and "write this string",
not byte-at-a-time calls. These adapters provide that with two deliberate
simplifications:

- Any failure of the underlying reader or writer (EndOfStream *or*
  IOFailure) is reported as a plain end of input / failed write. Parsing
  code never has to tell "peer closed" from "peer broke". The transport
  error is kept on `.error` and logged so it isn't lost.
- close() only detaches the adapter. The reader/writer stay open; whoever
  handed them to us still owns them.

Bytes that aren't valid UTF-8 decode to surrogate escapes, so device names
and descriptions come back out byte for byte when re-encoded with
errors="surrogateescape" (LogSink does).
"""

import codecs
import logging
from typing import Iterator, List, Optional

from .errors import EndOfStream, IOFailure
from .stream import ByteReader, ByteWriter

logger = logging.getLogger(__name__)


class TextReader:
    """Decodes bytes from a ByteReader into text, one line at a time."""

    def __init__(self, reader: ByteReader, encoding: str = "utf-8",
                 errors: str = "surrogateescape") -> None:
        self._reader: Optional[ByteReader] = reader
        self._decoder = codecs.getincrementaldecoder(encoding)(errors)
        self.error: Optional[IOFailure] = None
        self._eof = False

    @property
    def closed(self) -> bool:
        return self._reader is None

    def _next_byte(self) -> Optional[int]:
        if self._reader is None or self._eof:
            return None
        try:
            return self._reader.read_byte()
        except EndOfStream:
            self._eof = True
        except IOFailure as exc:
            # treated as end of input; kept for whoever cares
            self._eof = True
            self.error = exc
            logger.warning("read failed, treating as end of input: %s", exc)
        return None

    def read_char(self) -> str:
        """Next decoded character, or "" at end of input."""
        while True:
            value = self._next_byte()
            if value is None:
                return self._decoder.decode(b"", final=True)
            text = self._decoder.decode(bytes((value,)))
            if text:
                return text

    def readline(self) -> str:
        """Next line including its "\\n"; the last line may lack one; "" at end."""
        chars: List[str] = []
        while True:
            ch = self.read_char()
            if not ch:
                break
            chars.append(ch)
            if ch.endswith("\n"):
                break
        return "".join(chars)

    def read(self) -> str:
        """Everything up to end of input."""
        chars: List[str] = []
        while True:
            ch = self.read_char()
            if not ch:
                return "".join(chars)
            chars.append(ch)

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self.readline()
            if not line:
                return
            yield line

    def close(self) -> None:
        """Detach from the reader without closing it."""
        self._reader = None


class TextWriter:
    """
    Encodes text onto a ByteWriter. Output is accumulated and pushed to the
    writer at every newline, on flush() and on close().
    """

    def __init__(self, writer: ByteWriter, encoding: str = "utf-8",
                 errors: str = "surrogateescape") -> None:
        self._writer: Optional[ByteWriter] = writer
        self._encoding = encoding
        self._errors = errors
        self._pending = bytearray()
        self.error: Optional[IOFailure] = None

    @property
    def closed(self) -> bool:
        return self._writer is None

    @property
    def ok(self) -> bool:
        return self.error is None

    def write(self, text: str) -> bool:
        """Queue text for output. Returns False once the adapter has failed."""
        if self._writer is None or self.error is not None:
            return False
        self._pending.extend(text.encode(self._encoding, self._errors))
        if "\n" in text:
            return self._push(flush=False)
        return True

    def _push(self, flush: bool) -> bool:
        if self._writer is None or self.error is not None:
            return False
        try:
            if self._pending:
                self._writer.write(bytes(self._pending))
            if flush:
                self._writer.flush()
        except IOFailure as exc:
            self.error = exc
            logger.warning("write failed: %s", exc)
            return False
        finally:
            self._pending.clear()
        return True

    def flush(self) -> bool:
        return self._push(flush=True)

    def close(self) -> bool:
        """Flush, then detach from the writer without closing it."""
        result = self._push(flush=True)
        self._writer = None
        return result
