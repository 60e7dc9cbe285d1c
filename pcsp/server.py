import asyncio
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Set, TextIO, Union

from .channels import Channel, ChannelSource
from .errors import IOFailure, NoChannelsAvailable
from .protocol import ProtocolHandler
from .stream import DumpingReader

"""
server.py - accept loop and the request log.

How it fits together:
- A ChannelSource hands out channels (TCP connections in production,
  in-process DuplexChannels in tests).
- ProtocolHandler turns each channel into a batch of log lines.
- LogSink appends each batch to the text log as one unit.

The byte layer is blocking, so accept() runs on one dedicated thread and
every handle() call on a thread of its own, never on the loop's shared
default executor. By default the loop waits for each request before
accepting the next; with concurrent=True every channel gets its own task,
so any number of slow devices can't hold up the others.
"""

logger = logging.getLogger(__name__)


class LogSink:
    """
    Append-only text log. append() writes a whole batch under a lock and
    flushes, so batches from concurrent requests never interleave.
    """

    def __init__(self, target: Union[str, os.PathLike, TextIO]) -> None:
        if isinstance(target, (str, os.PathLike)):
            try:
                self._f: TextIO = open(target, "a", encoding="utf-8", errors="surrogateescape")
            except OSError as exc:
                raise IOFailure(f"can't open log {target}: {exc.strerror}") from exc
            self._owned = True
        else:
            self._f = target
            self._owned = False
        self._lock = threading.Lock()

    def append(self, messages: List[str]) -> None:
        if not messages:
            return
        text = "".join(f"{line}\n" for line in messages)
        with self._lock:
            try:
                self._f.write(text)
                self._f.flush()
            except OSError as exc:
                raise IOFailure(f"can't write log: {exc}") from exc

    def close(self) -> None:
        if self._owned:
            self._f.close()


async def run_in_own_thread(func: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking call on a fresh thread that nothing else competes for."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pcsp-channel")
    try:
        return await asyncio.get_running_loop().run_in_executor(executor, func, *args)
    finally:
        executor.shutdown(wait=False)


class TelemetryServer:
    """Serve channels from `source` until it runs dry or the loop is cancelled."""

    def __init__(self, source: ChannelSource, handler: ProtocolHandler, sink: LogSink,
                 concurrent: bool = False, dump: bool = False) -> None:
        self.source = source
        self.handler = handler
        self.sink = sink
        self.concurrent = concurrent
        self.dump = dump
        self.served = 0
        self._tasks: Set[asyncio.Task] = set()
        self._accept_executor: Optional[ThreadPoolExecutor] = None

    async def serve(self) -> None:
        """Accept loop. Returns once the source raises NoChannelsAvailable."""
        loop = asyncio.get_running_loop()
        self._accept_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pcsp-accept")
        try:
            while True:
                try:
                    channel = await loop.run_in_executor(self._accept_executor, self.source.accept)
                except NoChannelsAvailable:
                    logger.info("no channels left, stopping")
                    break
                if self.concurrent:
                    task = asyncio.create_task(self.handle_channel(channel))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                else:
                    await self.handle_channel(channel)
            if self._tasks:
                await asyncio.gather(*self._tasks)
        finally:
            self.source.close()
            self._accept_executor.shutdown(wait=False)

    async def handle_channel(self, channel: Channel) -> None:
        """Run the handler for one channel and log its batch in one go."""
        if self.dump:
            channel.reader = DumpingReader(channel.reader, label=f"channel {self.served}")
        try:
            messages = await run_in_own_thread(self.handler.handle, channel)
        except IOFailure as exc:
            logger.error("request failed: %s", exc)
            messages = [f"Error : {exc}"]
        finally:
            channel.close()
        self.served += 1
        # runs on the event loop thread, one batch at a time
        self.sink.append(messages)


def run(source: ChannelSource, handler: ProtocolHandler, sink: LogSink,
        concurrent: bool = False, dump: bool = False) -> int:
    """Blocking convenience wrapper; returns how many channels were served."""
    server = TelemetryServer(source, handler, sink, concurrent=concurrent, dump=dump)
    asyncio.run(server.serve())
    return server.served
