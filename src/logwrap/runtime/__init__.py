"""Runtime module for child process management and stream processing.

This module owns the wrapped child process and drains its stdout and
stderr concurrently into a single formatted output sink.
"""

from __future__ import annotations

from .process_runner import ProcessRunner
from .stream_processor import LineFormatter, StreamProcessor
from .types import LogLine, ProcessingResult, ProcessState, StreamError, StreamKind

__all__ = [
    "LineFormatter",
    "LogLine",
    "ProcessRunner",
    "ProcessState",
    "ProcessingResult",
    "StreamError",
    "StreamKind",
    "StreamProcessor",
]
