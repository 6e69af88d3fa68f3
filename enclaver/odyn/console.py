"""Capturing the entrypoint's output and exit status and serving both over vsock."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from dataclasses import dataclass
from typing import Protocol

from enclaver.odyn.launcher import ExitStatus

logger = logging.getLogger(__name__)

APP_LOG_CAPACITY = 128 * 1024
_PIPE_READ_SIZE = 16 * 1024
_STREAM_CHUNK_SIZE = 4096


class _Writer(Protocol):
    def write(self, data: bytes) -> object: ...

    async def drain(self) -> None: ...


class _Watch:
    """Receiving end of a change notification."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def has_changed(self) -> bool:
        """Whether a change was announced that has not been waited for yet."""
        return self._event.is_set()

    async def changed(self) -> None:
        """Wait until the next announced change and mark it as seen."""
        await self._event.wait()
        self._event.clear()

    def _announce(self) -> None:
        self._event.set()


class WatchSet:
    """Broadcasts to every watcher that something being watched has changed."""

    def __init__(self) -> None:
        self._watches: list[_Watch] = []

    def __len__(self) -> int:
        return len(self._watches)

    def add(self) -> _Watch:
        watch = _Watch()
        self._watches.append(watch)
        return watch

    def notify(self) -> None:
        self._watches = [watch for watch in self._watches if not watch.closed]
        for watch in self._watches:
            watch._announce()


@dataclass
class LogCursor:
    """Absolute position of a reader in a log."""

    pos: int = 0


class ByteLog:
    """A bounded byte log that drops its oldest bytes when full."""

    def __init__(self, capacity: int = APP_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._buffer = bytearray()
        self._head = 0
        self._watches = WatchSet()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._buffer)

    def append(self, data: bytes) -> int:
        """Append ``data`` and return how many bytes were trimmed from the head."""
        self._buffer += data
        trimmed = max(0, len(self._buffer) - self._capacity)
        if trimmed:
            del self._buffer[:trimmed]
            self._head += trimmed
        self._watches.notify()
        return trimmed

    def read(self, cursor: LogCursor, size: int) -> bytes:
        """Read up to ``size`` bytes at ``cursor``, advancing it.

        A cursor that points at bytes already trimmed away skips to the head.
        """
        if cursor.pos < self._head:
            cursor.pos = self._head
        offset = cursor.pos - self._head
        chunk = bytes(self._buffer[offset : offset + size])
        cursor.pos += len(chunk)
        return chunk

    def watch(self) -> _Watch:
        return self._watches.add()


class LogWriter:
    """The write end of the log pipe."""

    def __init__(self, fd: int) -> None:
        self._fd = fd

    def redirect_stdio(self) -> None:
        """Point this process's stdout and stderr at the log pipe."""
        os.dup2(self._fd, 1)
        os.dup2(self._fd, 2)

    async def write(self, data: bytes) -> None:
        await asyncio.to_thread(self._write_all, bytes(data))

    def _write_all(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self._fd, view)
            view = view[written:]

    def close(self) -> None:
        os.close(self._fd)


class LogServicer:
    """Moves bytes from the log pipe into the log."""

    def __init__(self, fd: int, log: ByteLog) -> None:
        self._fd = fd
        self._log = log

    async def run(self) -> None:
        """Read the pipe until every writer has closed it."""
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        pipe = os.fdopen(self._fd, "rb", buffering=0)
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), pipe
        )
        try:
            while chunk := await reader.read(_PIPE_READ_SIZE):
                self._log.append(chunk)
        finally:
            transport.close()


class LogReader:
    """Read access to a shared log."""

    def __init__(self, log: ByteLog) -> None:
        self._log = log

    def __len__(self) -> int:
        return len(self._log)

    def read(self, cursor: LogCursor, size: int) -> bytes:
        return self._log.read(cursor, size)

    async def write_all(self, cursor: LogCursor, writer: _Writer) -> None:
        """Write everything from ``cursor`` to the end of the log."""
        while chunk := self.read(cursor, _STREAM_CHUNK_SIZE):
            writer.write(chunk)
            await writer.drain()

    async def stream(self, writer: _Writer) -> None:
        """Write the whole log, then keep writing what is appended, until cancelled."""
        cursor = LogCursor()
        watch = self._log.watch()
        try:
            while True:
                await self.write_all(cursor, writer)
                await watch.changed()
        finally:
            watch.close()


def new_app_log() -> tuple[LogWriter, LogServicer, LogReader]:
    """Create a log fed by a pipe: its writer, the task that drains it, and a reader."""
    read_fd, write_fd = os.pipe()
    log = ByteLog()
    return LogWriter(write_fd), LogServicer(read_fd, log), LogReader(log)


def _listen_vsock(port: int) -> socket.socket:
    family = getattr(socket, "AF_VSOCK", None)
    if family is None:
        raise OSError("vsock sockets are not supported on this platform")
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((socket.VMADDR_CID_ANY, port))
        sock.listen()
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class AppLog:
    """The entrypoint's captured output, served to anyone who connects."""

    def __init__(self, servicer: LogServicer, reader: LogReader) -> None:
        self._servicer = servicer
        self._reader = reader

    @classmethod
    def with_stdio_redirect(cls) -> AppLog:
        writer, servicer, reader = new_app_log()
        writer.redirect_stdio()
        # stdout and stderr now hold the pipe open on their own.
        writer.close()
        return cls(servicer, reader)

    def start_serving(self, port: int) -> asyncio.Task[None]:
        """Drain the pipe and serve the log over vsock ``port`` in a background task."""
        return asyncio.ensure_future(self._serve(port))

    async def _serve(self, port: int) -> None:
        async def handle(_: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            try:
                await self._reader.stream(writer)
            except OSError:
                # The remote side most likely hung up.
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(handle, sock=_listen_vsock(port))
        async with server:
            await asyncio.gather(self._servicer.run(), server.serve_forever())


@dataclass(frozen=True)
class EntrypointStatus:
    """Running, ended with an exit status, or failed before it could run."""

    exit_status: ExitStatus | None = None
    error: str | None = None

    @classmethod
    def running(cls) -> EntrypointStatus:
        return cls()

    @classmethod
    def exited(cls, status: ExitStatus) -> EntrypointStatus:
        return cls(exit_status=status)

    @classmethod
    def fatal(cls, err: str) -> EntrypointStatus:
        return cls(error=err)

    def as_json(self) -> str:
        if self.error is not None:
            return f'{{ "status": "fatal", "error": {json.dumps(self.error)} }}\n'
        if self.exit_status is None:
            return '{ "status": "running" }\n'
        if self.exit_status.signal is not None:
            return f'{{ "status": "signaled", "signal": "{self.exit_status.signal.name}" }}\n'
        return f'{{ "status": "exited", "code": {self.exit_status.code} }}\n'


class AppStatus:
    """The entrypoint's status, pushed to every connected client when it changes."""

    def __init__(self) -> None:
        self._status = EntrypointStatus.running()
        self._watches = WatchSet()

    @property
    def status(self) -> EntrypointStatus:
        return self._status

    def exited(self, status: ExitStatus) -> None:
        self._status = EntrypointStatus.exited(status)
        self._watches.notify()

    def fatal(self, err: str) -> None:
        self._status = EntrypointStatus.fatal(err)
        self._watches.notify()

    def start_serving(self, port: int) -> asyncio.Task[None]:
        """Serve the status over vsock ``port`` in a background task."""
        return asyncio.ensure_future(self._serve(port))

    async def _serve(self, port: int) -> None:
        async def handle(_: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            try:
                await self.stream(writer)
            finally:
                writer.close()

        server = await asyncio.start_server(handle, sock=_listen_vsock(port))
        async with server:
            await server.serve_forever()

    async def stream(self, writer: _Writer) -> None:
        """Write the status as a JSON line now and after every change, until cancelled."""
        watch = self._watches.add()
        try:
            while True:
                writer.write(self._status.as_json().encode())
                try:
                    await writer.drain()
                except OSError:
                    logger.debug("status client write failed")
                await watch.changed()
        finally:
            watch.close()