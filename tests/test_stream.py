import threading

import pytest

from pcsp.errors import EndOfStream, IOFailure
from pcsp.stream import DumpingReader, FileByteReader, FileByteWriter, MemoryByteReader, Pipe


def test_memory_reader_stops_at_length():
    reader = MemoryByteReader(b"abcdef", length=3)
    assert [reader.read_byte() for _ in range(3)] == [ord("a"), ord("b"), ord("c")]
    with pytest.raises(EndOfStream):
        reader.read_byte()


def test_memory_reader_read_all():
    assert MemoryByteReader(b"hello").read_all() == b"hello"
    assert MemoryByteReader(b"").read_all() == b""


def test_end_of_stream_is_an_io_failure():
    with pytest.raises(IOFailure):
        MemoryByteReader(b"").read_byte()


def test_file_round_trip(tmp_path):
    path = tmp_path / "data.bin"
    with FileByteWriter(path) as writer:
        writer.write_byte(0x41)
        writer.write(b"BC")
        writer.flush()
    with FileByteReader(path) as reader:
        assert reader.read_all() == b"ABC"
        with pytest.raises(EndOfStream):
            reader.read_byte()


def test_file_reader_missing_file(tmp_path):
    with pytest.raises(IOFailure):
        FileByteReader(tmp_path / "nope.bin")


def test_file_writer_bad_directory(tmp_path):
    with pytest.raises(IOFailure):
        FileByteWriter(tmp_path / "missing" / "out.bin")


def test_closed_file_reader_fails(tmp_path):
    path = tmp_path / "data.bin"
    path.write_bytes(b"x")
    reader = FileByteReader(path)
    reader.close()
    reader.close()
    with pytest.raises(IOFailure):
        reader.read_byte()


@pytest.mark.parametrize("use_os_pipe", [False, True])
def test_pipe_delivers_bytes_then_eof(use_os_pipe):
    pipe = Pipe(use_os_pipe)
    pipe.writer.write(b"ping")
    pipe.writer.flush()
    pipe.writer.close()
    assert pipe.reader.read_all() == b"ping"
    with pytest.raises(EndOfStream):
        pipe.reader.read_byte()
    pipe.reader.close()


def test_pipe_reader_blocks_until_write():
    pipe = Pipe()
    received = []

    def consume():
        received.append(pipe.reader.read_byte())

    thread = threading.Thread(target=consume)
    thread.start()
    pipe.writer.write_byte(7)
    thread.join(timeout=5)
    assert received == [7]


def test_pipe_write_after_reader_closed():
    pipe = Pipe()
    pipe.reader.close()
    with pytest.raises(IOFailure):
        pipe.writer.write_byte(1)


def test_pipe_write_after_writer_closed():
    pipe = Pipe()
    pipe.writer.close()
    with pytest.raises(IOFailure):
        pipe.writer.write(b"late")


def test_dumping_reader_passes_bytes_through(caplog):
    reader = DumpingReader(MemoryByteReader(b"ok"), label="t")
    with caplog.at_level("DEBUG", logger="pcsp.stream"):
        assert reader.read_all() == b"ok"
    assert "[t] read 0x6f" in caplog.text
