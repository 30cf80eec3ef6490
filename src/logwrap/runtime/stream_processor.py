"""Concurrent line processing of a child's stdout and stderr.

logwrap runtime module v0.1.0

This module provides:
- Two reader tasks, one per stream, draining line by line
- Formatting of every line and serialized writes to one shared sink
- Per-stream error collection into a tagged ProcessingResult
- Cooperative, irreversible cancellation checked at line boundaries
- A bounded wait that stops processing on timeout

Ordering: lines of one stream reach the sink in the order they were
read. Lines of different streams may interleave in any order.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import threading
from typing import Protocol, TextIO

import anyio

from ..errors import LineTooLongError, ProcessorTimeoutError, ReadersNilError
from .types import ProcessingResult, StreamError, StreamKind

__all__ = [
    "LineFormatter",
    "StreamProcessor",
    "DEFAULT_MAX_LINE_LENGTH",
]

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINE_LENGTH = 1024 * 1024

# Read size used when throwing away the rest of a faulted stream
_DISCARD_CHUNK = 64 * 1024

# errno values that mean "the pipe was closed under us", not an I/O fault
_CLOSED_ERRNOS = frozenset({errno.EBADF, errno.EPIPE})


class LineFormatter(Protocol):
    """Renders one raw line. Must be safe to call from both reader tasks."""

    def format_line(self, line: str, kind: StreamKind) -> str: ...


class StreamProcessor:
    """Drains two child streams concurrently into a single sink.

    The sink only needs ``write(str)``; ``flush()`` is called after each
    line when present. Writes are serialized by a lock the processor
    owns, so the sink does not have to be concurrency-safe.

    Example:
        processor = StreamProcessor(formatter, sys.stdout)
        result = await processor.process_streams(stdout, stderr)
        result.raise_for_errors()
    """

    def __init__(
        self,
        formatter: LineFormatter,
        sink: TextIO,
        *,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    ) -> None:
        self._formatter = formatter
        self._sink = sink
        self.max_line_length = max_line_length

        self._write_lock = threading.Lock()
        self._errors_lock = threading.Lock()
        self._errors: list[StreamError] = []
        self._stopped = threading.Event()
        self._done = asyncio.Event()
        self._started = False

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def is_done(self) -> bool:
        return self._done.is_set()

    async def process_streams(
        self,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> ProcessingResult:
        """Process both streams until they end, fail, or are cancelled.

        Args:
            stdout: Reader for the child's standard output
            stderr: Reader for the child's standard error
            cancel_scope: Optional anyio.CancelScope checked before each line

        Returns:
            ProcessingResult holding one StreamError per failed stream

        Raises:
            ReadersNilError: If either reader is None
            RuntimeError: If called a second time on the same processor
        """
        if stdout is None or stderr is None:
            raise ReadersNilError()
        if self._started:
            raise RuntimeError("process_streams() may only be called once")
        self._started = True

        try:
            await asyncio.gather(
                asyncio.create_task(
                    self._process_stream(stdout, StreamKind.STDOUT, cancel_scope),
                    name="logwrap-stdout",
                ),
                asyncio.create_task(
                    self._process_stream(stderr, StreamKind.STDERR, cancel_scope),
                    name="logwrap-stderr",
                ),
            )
        finally:
            self._done.set()

        result = ProcessingResult(tuple(self.get_errors()))
        if not result.ok:
            logger.debug(f"Stream processing finished with {len(result.errors)} error(s)")
        return result

    def stop(self) -> None:
        """Cancel processing at the next line boundary.

        Idempotent and irreversible; safe to call from any thread.

        The flag is checked after each read returns, so a reader blocked
        on an idle stream only finishes once its pipe is closed (the
        orchestrator does this through ``ProcessRunner.cleanup()`` when
        the drain timeout expires).
        """
        if not self._stopped.is_set():
            self._stopped.set()
            logger.debug("Stream processor stop requested")

    async def wait(self, timeout: float) -> None:
        """Wait for both reader tasks to finish.

        Returns immediately if processing never started.

        Args:
            timeout: Seconds to wait

        Raises:
            ProcessorTimeoutError: If the tasks are still running after
                ``timeout``; processing is stopped first
        """
        if not self._started:
            return
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self.stop()
            raise ProcessorTimeoutError(timeout) from None

    def get_errors(self) -> list[StreamError]:
        """Copy of the errors collected so far."""
        with self._errors_lock:
            return list(self._errors)

    # ------------------------------------------------------------------
    # Reader task
    # ------------------------------------------------------------------

    def _cancelled(self, cancel_scope: anyio.CancelScope | None) -> bool:
        if self._stopped.is_set():
            return True
        return cancel_scope is not None and cancel_scope.cancel_called

    async def _process_stream(
        self,
        reader: asyncio.StreamReader,
        kind: StreamKind,
        cancel_scope: anyio.CancelScope | None,
    ) -> None:
        lines = 0
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                # StreamReader limit overrun
                self._add_error(kind, LineTooLongError(self.max_line_length))
                await self._discard(reader, cancel_scope)
                return
            except OSError as e:
                if e.errno not in _CLOSED_ERRNOS:
                    self._add_error(kind, e)
                return

            if not raw:
                logger.debug(f"{kind.value} reached end of stream after {lines} line(s)")
                return

            if self._cancelled(cancel_scope):
                logger.debug(f"{kind.value} reader cancelled after {lines} line(s)")
                return

            if raw.endswith(b"\n"):
                raw = raw[:-1]
            if raw.endswith(b"\r"):
                raw = raw[:-1]
            if len(raw) > self.max_line_length:
                self._add_error(kind, LineTooLongError(self.max_line_length))
                await self._discard(reader, cancel_scope)
                return

            line = raw.decode("utf-8", errors="replace")
            formatted = self._formatter.format_line(line, kind)

            try:
                self._write(formatted + "\n")
            except (OSError, ValueError) as e:
                self._add_error(kind, e)
                await self._discard(reader, cancel_scope)
                return
            lines += 1

    async def _discard(
        self,
        reader: asyncio.StreamReader,
        cancel_scope: anyio.CancelScope | None,
    ) -> None:
        """Drain a faulted stream so the child never blocks on a full pipe."""
        while not self._cancelled(cancel_scope):
            try:
                chunk = await reader.read(_DISCARD_CHUNK)
            except OSError:
                return
            if not chunk:
                return

    def _write(self, text: str) -> None:
        with self._write_lock:
            self._sink.write(text)
            flush = getattr(self._sink, "flush", None)
            if flush is not None:
                flush()

    def _add_error(self, kind: StreamKind, error: BaseException) -> None:
        logger.debug(f"{kind.value} processing error: {error}")
        with self._errors_lock:
            self._errors.append(StreamError(kind, error))
