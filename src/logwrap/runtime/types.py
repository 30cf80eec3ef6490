"""Runtime value types shared by the process runner and stream processor.

logwrap runtime module v0.1.0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from ..errors import ProcessingError

__all__ = [
    "StreamKind",
    "ProcessState",
    "LogLine",
    "StreamError",
    "ProcessingResult",
]


class StreamKind(str, Enum):
    """Which child output channel a line came from."""

    STDOUT = "stdout"
    STDERR = "stderr"


class ProcessState(str, Enum):
    """Process runner lifecycle.

    CREATED -> STARTED -> {EXITED | KILLED_BY_SIGNAL}
    CREATED -> START_FAILED
    """

    CREATED = "created"
    STARTED = "started"
    EXITED = "exited"
    KILLED_BY_SIGNAL = "killed_by_signal"
    START_FAILED = "start_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessState.EXITED,
            ProcessState.KILLED_BY_SIGNAL,
            ProcessState.START_FAILED,
        )


@dataclass(frozen=True)
class LogLine:
    """One line read from a child stream.

    Attributes:
        text: Line content without the trailing newline
        kind: Stream the line was read from
        read_at: Wall-clock time the line was read (timezone-aware, local)
    """

    text: str
    kind: StreamKind
    read_at: datetime = field(default_factory=lambda: datetime.now().astimezone())


@dataclass(frozen=True)
class StreamError:
    """A fault that ended one stream's reader task.

    Attributes:
        kind: Stream that failed
        error: Underlying exception
    """

    kind: StreamKind
    error: BaseException

    def __str__(self) -> str:
        return f"{self.kind.value} processing error: {self.error}"


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of processing both streams.

    Empty ``errors`` means success. Built only after both reader tasks
    have finished.
    """

    errors: tuple[StreamError, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed_streams(self) -> frozenset[StreamKind]:
        return frozenset(err.kind for err in self.errors)

    def error_for(self, kind: StreamKind) -> StreamError | None:
        for err in self.errors:
            if err.kind is kind:
                return err
        return None

    def raise_for_errors(self) -> None:
        """Raise ProcessingError when any stream failed."""
        if self.errors:
            raise ProcessingError(self)
