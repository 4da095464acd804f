"""Streaming helpers: stall detection, flushing writers and SSE copying."""

from __future__ import annotations

import json
import threading
from typing import Any, BinaryIO, Dict, Optional, Protocol

STREAM_IDLE_TIMEOUT = 120.0
STREAM_BUFFER_SIZE = 32 * 1024

BLOCKED_MESSAGE = "[Response blocked by execution policy]"


class _Reader(Protocol):
    def read(self, size: int = -1) -> bytes: ...


class _Writer(Protocol):
    def write(self, data: bytes) -> Optional[int]: ...


class StreamStalledError(TimeoutError):
    """Raised when an upstream stream sends nothing within the idle timeout."""

    def __init__(self) -> None:
        super().__init__("stream stalled: no data received within idle timeout")


class StallReader:
    """Wraps a reader and fails reads once no data has arrived for too long.

    The first deadline is ``timeout`` seconds; every read that returns data
    moves the deadline to STREAM_IDLE_TIMEOUT seconds from then.
    """

    def __init__(self, src: _Reader, timeout: float) -> None:
        self._src = src
        self._lock = threading.Lock()
        self._stalled = False
        self._stopped = False
        self._timer = self._start_timer(timeout)

    def _start_timer(self, seconds: float) -> threading.Timer:
        timer = threading.Timer(seconds, self._mark_stalled)
        timer.daemon = True
        timer.start()
        return timer

    def _mark_stalled(self) -> None:
        with self._lock:
            self._stalled = True

    def read(self, size: int = -1) -> bytes:
        """Read from the source; raises StreamStalledError after a stall."""
        with self._lock:
            if self._stalled:
                raise StreamStalledError()
        data = self._src.read(size)
        if data:
            with self._lock:
                if not self._stopped:
                    self._timer.cancel()
                    self._timer = self._start_timer(STREAM_IDLE_TIMEOUT)
        return data

    def stop(self) -> None:
        """Stop watching for stalls."""
        with self._lock:
            self._stopped = True
            self._timer.cancel()

    def __enter__(self) -> "StallReader":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


class ImmediateFlushWriter:
    """Writer that flushes the destination after every successful write."""

    def __init__(self, dst: _Writer) -> None:
        self.dst = dst
        flush = getattr(dst, "flush", None)
        self._flush = flush if callable(flush) else None

    @property
    def can_flush(self) -> bool:
        """Whether the destination supports flushing."""
        return self._flush is not None

    def write(self, data: bytes) -> int:
        """Write ``data`` and flush; a failing write is not flushed."""
        written = self.dst.write(data)
        if written is None:
            written = len(data)
        if self._flush is not None:
            self._flush()
        return written


class SSETeeWriter:
    """Writes through to ``dst`` while keeping a copy, up to ``max_bytes``.

    Once the copy would grow past the limit, capturing stops for good and
    ``exceeded`` is set. A limit of zero or less means no limit.
    """

    def __init__(self, dst: _Writer, max_bytes: int = 0) -> None:
        self.dst = dst
        self.max_bytes = max_bytes
        self.exceeded = False
        self._buffer = bytearray()

    def write(self, data: bytes) -> Optional[int]:
        if not self.exceeded:
            if self.max_bytes > 0 and len(self._buffer) + len(data) > self.max_bytes:
                self.exceeded = True
            else:
                self._buffer.extend(data)
        return self.dst.write(data)

    def captured(self) -> bytes:
        """The bytes captured so far."""
        return bytes(self._buffer)


def copy_stream(
    dst: _Writer,
    src: _Reader,
    buffer_size: int = STREAM_BUFFER_SIZE,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    """Copy ``src`` to ``dst`` chunk by chunk until EOF; return bytes written.

    Stalls propagate as StreamStalledError; other read and write failures are
    raised as OSError naming the side that failed. A set ``cancel_event``
    stops the copy with ConnectionAbortedError.
    """
    if buffer_size <= 0:
        buffer_size = STREAM_BUFFER_SIZE
    written = 0
    while True:
        try:
            chunk = src.read(buffer_size)
        except StreamStalledError:
            raise
        except Exception as err:
            raise OSError(f"reading from upstream: {err}") from err
        if not chunk:
            return written
        try:
            count = dst.write(chunk)
        except Exception as err:
            raise OSError(f"writing to client: {err}") from err
        if count is None:
            count = len(chunk)
        if count != len(chunk):
            raise OSError("short write")
        written += count
        if cancel_event is not None and cancel_event.is_set():
            raise ConnectionAbortedError("stream copy cancelled")


def blocked_sse_payload() -> Dict[str, Any]:
    """The chunk sent to the client in place of a blocked response."""
    return {
        "id": "blocked",
        "object": "chat.completion.chunk",
        "choices": [
            {
                "index": 0,
                "delta": {"content": BLOCKED_MESSAGE},
                "finish_reason": "stop",
            }
        ],
    }


def write_blocked_sse(dst: BinaryIO | _Writer) -> None:
    """Write the blocked chunk and the ``[DONE]`` sentinel as SSE, then flush."""
    encoded = json.dumps(
        blocked_sse_payload(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )
    dst.write(f"data: {encoded}\n\n".encode("utf-8"))
    dst.write(b"data: [DONE]\n\n")
    flush = getattr(dst, "flush", None)
    if callable(flush):
        flush()