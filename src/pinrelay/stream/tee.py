"""Stream duplication - one byte source, two independently readable handles.

Either handle may run ahead. Bytes it pulls from the source are spooled for
the other handle until that one catches up, so the source is read exactly
once. The spool of the lagging handle is bounded by ``ceiling``; a pull that
would push it past the ceiling raises ``BufferOverflow`` and breaks the
duplication for both sides.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import tempfile
from typing import Any, AsyncIterator

from pinrelay.errors import BufferOverflow, CancellationError

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65_536
DEFAULT_CEILING = 268_435_456  # 256 MiB

PRIMARY = 0
DEFERRED = 1


class _Spool:
    """FIFO byte buffer. Rolls over to a temporary file past ``spill_threshold``."""

    def __init__(self, spill_threshold: int | None = None, spill_dir: str | None = None) -> None:
        self._mem = bytearray()
        self._file: Any = None
        if spill_threshold is not None:
            self._file = tempfile.SpooledTemporaryFile(max_size=spill_threshold, dir=spill_dir)
        self._read_pos = 0
        self._write_pos = 0
        self.size = 0

    def write(self, data: bytes) -> None:
        if self._file is None:
            self._mem += data
        else:
            self._file.seek(self._write_pos)
            self._file.write(data)
            self._write_pos += len(data)
        self.size += len(data)

    def read(self, n: int) -> bytes:
        if n < 0 or n > self.size:
            n = self.size
        if self._file is None:
            data = bytes(self._mem[:n])
            del self._mem[:n]
        else:
            self._file.seek(self._read_pos)
            data = self._file.read(n)
            self._read_pos += len(data)
            if self._read_pos == self._write_pos:
                # Drained: rewind so the file does not grow without bound
                self._file.seek(0)
                self._file.truncate()
                self._read_pos = self._write_pos = 0
        self.size -= len(data)
        return data

    def close(self) -> None:
        self._mem = bytearray()
        if self._file is not None:
            self._file.close()
            self._file = None
        self.size = 0


async def _iter_source(source: Any, chunk_size: int) -> AsyncIterator[bytes]:
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for offset in range(0, len(view), chunk_size):
            yield bytes(view[offset:offset + chunk_size])
        return

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield bytes(chunk)
        return

    read = source.read
    while True:
        if inspect.iscoroutinefunction(read):
            chunk = await read(chunk_size)
        else:
            chunk = await asyncio.to_thread(read, chunk_size)
        if not chunk:
            return
        yield bytes(chunk)


class _Tee:
    """Shared state behind a pair of TeeHandles."""

    def __init__(
        self,
        source: Any,
        ceiling: int,
        chunk_size: int,
        spill_threshold: int | None,
        spill_dir: str | None,
    ) -> None:
        self._source = _iter_source(source, chunk_size)
        self._ceiling = ceiling
        self._lock = asyncio.Lock()
        self._exhausted = False
        self._error: BaseException | None = None
        self._spools = [
            _Spool(spill_threshold, spill_dir),
            _Spool(spill_threshold, spill_dir),
        ]
        self._closed = [False, False]
        self.chunk_size = chunk_size
        self.bytes_read = 0

    def buffered(self, side: int) -> int:
        return self._spools[side].size

    def is_closed(self, side: int) -> bool:
        return self._closed[side]

    def _check(self, side: int) -> None:
        if self._closed[side]:
            raise ValueError("read from a closed stream handle")
        if isinstance(self._error, BufferOverflow):
            raise BufferOverflow(self._error.ceiling, self._error.backlog)
        if self._error is not None:
            raise self._error

    async def read(self, side: int, n: int) -> bytes:
        """Return up to ``n`` bytes for ``side`` (one chunk if ``n`` < 0), b"" at EOF."""
        if n == 0:
            return b""
        self._check(side)
        spool = self._spools[side]
        if spool.size:
            return spool.read(n)

        async with self._lock:
            self._check(side)
            # The other side may have pulled while we waited for the lock
            if spool.size:
                return spool.read(n)
            if self._exhausted:
                return b""

            chunk = await self._pull()
            if not chunk:
                return b""

            other = 1 - side
            if not self._closed[other]:
                backlog = self._spools[other].size + len(chunk)
                if backlog > self._ceiling:
                    self._error = BufferOverflow(self._ceiling, backlog)
                    log.warning(
                        "Stream duplication aborted: lagging side holds %d bytes (ceiling %d)",
                        backlog, self._ceiling,
                    )
                    raise BufferOverflow(self._ceiling, backlog)
                self._spools[other].write(chunk)

            if n < 0 or n >= len(chunk):
                return chunk
            spool.write(chunk[n:])
            return chunk[:n]

    async def _pull(self) -> bytes:
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return b""
        except asyncio.CancelledError:
            # A cancelled pull leaves the source in an unknown position
            self._error = CancellationError("stream duplication interrupted")
            raise
        except Exception as exc:
            self._error = exc
            raise
        self.bytes_read += len(chunk)
        return chunk

    async def close(self, side: int) -> None:
        if self._closed[side]:
            return
        self._closed[side] = True
        self._spools[side].close()
        if all(self._closed):
            await self._release()

    async def _release(self) -> None:
        if not self._exhausted and not self._lock.locked():
            await self._source.aclose()
        log.debug("Released duplicated stream after %d source bytes", self.bytes_read)


class TeeHandle:
    """One side of a duplicated stream. Async file-like and async iterable."""

    def __init__(self, tee: _Tee, side: int) -> None:
        self._tee = tee
        self._side = side

    @property
    def name(self) -> str:
        return "primary" if self._side == PRIMARY else "deferred"

    @property
    def closed(self) -> bool:
        return self._tee.is_closed(self._side)

    @property
    def buffered(self) -> int:
        """Bytes spooled for this handle and not yet read."""
        return self._tee.buffered(self._side)

    async def read(self, n: int = -1) -> bytes:
        """Read up to ``n`` bytes, or everything up to EOF when ``n`` < 0."""
        if n is not None and n >= 0:
            return await self._tee.read(self._side, n)
        chunks = []
        while chunk := await self._tee.read(self._side, -1):
            chunks.append(chunk)
        return b"".join(chunks)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while chunk := await self._tee.read(self._side, self._tee.chunk_size):
            yield chunk

    async def aclose(self) -> None:
        await self._tee.close(self._side)

    async def __aenter__(self) -> TeeHandle:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"buffered={self.buffered}"
        return f"<TeeHandle {self.name} {state}>"


class DuplicatedStream:
    """A pair of handles over one source.

    Unpacks as ``primary, deferred``. Used as an async context manager it
    closes both handles on exit; spool resources are released once the last
    handle closes.
    """

    def __init__(self, primary: TeeHandle, deferred: TeeHandle) -> None:
        self.primary = primary
        self.deferred = deferred

    def __iter__(self):
        return iter((self.primary, self.deferred))

    async def aclose(self) -> None:
        await self.primary.aclose()
        await self.deferred.aclose()

    async def __aenter__(self) -> DuplicatedStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


def tee(
    source: Any,
    ceiling: int = DEFAULT_CEILING,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    spill_threshold: int | None = None,
    spill_dir: str | None = None,
) -> DuplicatedStream:
    """Split ``source`` into two independently readable handles.

    ``source`` may be bytes, an async iterable of bytes, or an object with a
    ``read(n)`` method (async, or sync which then runs in a worker thread).
    """
    if not isinstance(source, (bytes, bytearray, memoryview)) and not (
        hasattr(source, "__aiter__") or hasattr(source, "read")
    ):
        raise TypeError(f"cannot duplicate {type(source).__name__}: not a byte source")
    if ceiling < 0:
        raise ValueError("ceiling must be >= 0")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")

    state = _Tee(source, ceiling, chunk_size, spill_threshold, spill_dir)
    return DuplicatedStream(TeeHandle(state, PRIMARY), TeeHandle(state, DEFERRED))
