import socket
import threading

import pytest

from pcsp.channels import DuplexChannel, QueuedChannelSource, SocketChannelSource
from pcsp.errors import EndOfStream, NoChannelsAvailable


@pytest.mark.parametrize("use_os_pipe", [False, True])
def test_duplex_ports_are_crossed(use_os_pipe):
    duplex = DuplexChannel(use_os_pipe)
    duplex.port1.writer.write(b"to-2")
    duplex.port1.writer.flush()
    duplex.port2.writer.write(b"to-1")
    duplex.port2.writer.flush()
    duplex.port1.close_output()
    duplex.port2.close_output()
    assert duplex.port2.reader.read_all() == b"to-2"
    assert duplex.port1.reader.read_all() == b"to-1"


def test_half_close_keeps_inbound_open():
    duplex = DuplexChannel()
    duplex.port1.close_output()
    with pytest.raises(EndOfStream):
        duplex.port2.reader.read_byte()
    duplex.port2.writer.write(b"still here")
    duplex.port2.close_output()
    assert duplex.port1.reader.read_all() == b"still here"


def test_queue_is_fifo_then_fails():
    channels = [DuplexChannel().port1 for _ in range(3)]
    source = QueuedChannelSource(channels)
    assert [source.accept() for _ in range(3)] == channels
    with pytest.raises(NoChannelsAvailable):
        source.accept()


def test_empty_queue_without_fallback_fails_immediately():
    with pytest.raises(NoChannelsAvailable):
        QueuedChannelSource().accept()


def test_queue_delegates_to_fallback():
    first, second, third = (DuplexChannel().port1 for _ in range(3))
    fallback = QueuedChannelSource([third])
    source = QueuedChannelSource([first], fallback=fallback)
    source.push(second)
    assert source.accept() is first
    assert source.accept() is second
    assert source.accept() is third
    with pytest.raises(NoChannelsAvailable):
        source.accept()


def test_socket_source_yields_connected_channel():
    source = SocketChannelSource("127.0.0.1", 0, poll_interval=0.1)
    host, port = source.address
    reply = []

    def client():
        with socket.create_connection((host, port)) as sock:
            sock.sendall(b"hello")
            sock.shutdown(socket.SHUT_WR)
            reply.append(sock.recv(16))

    thread = threading.Thread(target=client)
    thread.start()
    try:
        channel = source.accept()
        assert channel.reader.read_all() == b"hello"
        channel.writer.write(b"1")
        channel.close_output()
        thread.join(timeout=5)
        channel.close()
    finally:
        source.close()
    assert reply == [b"1"]


def test_closed_socket_source_stops_accepting():
    source = SocketChannelSource("127.0.0.1", 0, poll_interval=0.1)
    source.close()
    with pytest.raises(NoChannelsAvailable):
        source.accept()
