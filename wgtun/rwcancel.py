"""Cancelable reads and writes on a non-blocking file descriptor."""

from __future__ import annotations

import errno
import os
import select

_RETRY_ERRNOS = frozenset({errno.EAGAIN, errno.EWOULDBLOCK, errno.EINTR})


class ClosedError(OSError):
    """The operation was canceled or the descriptor was closed."""

    def __init__(self, message: str = "file already closed") -> None:
        super().__init__(errno.EBADF, message)


def retry_after_error(err: BaseException) -> bool:
    """Tell whether ``err`` only means the operation should be tried again."""
    return isinstance(err, OSError) and err.errno in _RETRY_ERRNOS


class RWCancel:
    """Wraps a descriptor so that blocked reads and writes can be canceled.

    The descriptor is switched to non-blocking mode. Waiting is done with
    poll, alongside an internal pipe that ``cancel`` makes readable.
    """

    def __init__(self, fd: int) -> None:
        os.set_blocking(fd, False)
        self.fd = fd
        self._closing_reader, self._closing_writer = os.pipe()
        self._closed = False

    def _wait(self, events: int) -> bool:
        poller = select.poll()
        poller.register(self.fd, events)
        poller.register(self._closing_reader, events)
        while True:
            try:
                ready = dict(poller.poll())
                break
            except OSError as err:
                if not retry_after_error(err):
                    return False
        if ready.get(self._closing_reader):
            return False
        return bool(ready.get(self.fd))

    def ready_read(self) -> bool:
        """Block until the descriptor is readable; False if canceled or failed."""
        return self._wait(select.POLLIN)

    def ready_write(self) -> bool:
        """Block until the descriptor is writable; False if canceled or failed."""
        return self._wait(select.POLLOUT)

    def read(self, size: int) -> bytes:
        """Read up to ``size`` bytes, waiting for data unless canceled."""
        while True:
            try:
                return os.read(self.fd, size)
            except OSError as err:
                if not retry_after_error(err):
                    raise
                if not self.ready_read():
                    raise ClosedError() from err

    def write(self, data: bytes) -> int:
        """Write ``data``, waiting for room unless canceled; return bytes written."""
        while True:
            try:
                return os.write(self.fd, data)
            except OSError as err:
                if not retry_after_error(err):
                    raise
                if not self.ready_write():
                    raise ClosedError() from err

    def cancel(self) -> None:
        """Wake any pending read so that it gives up."""
        os.write(self._closing_writer, b"\x00")

    def close(self) -> None:
        """Release the internal pipe. The wrapped descriptor is left open."""
        if self._closed:
            return
        self._closed = True
        os.close(self._closing_reader)
        os.close(self._closing_writer)

    def __enter__(self) -> RWCancel:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()