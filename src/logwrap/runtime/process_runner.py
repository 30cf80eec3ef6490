"""Process runner owning one child process and its two output pipes.

logwrap runtime module v0.1.0

This module provides:
- Command validation before any resource is allocated
- Eager stdout/stderr pipe allocation, attached to asyncio readers on start
- A forward-only lifecycle (CREATED -> STARTED -> EXITED | KILLED_BY_SIGNAL,
  or CREATED -> START_FAILED)
- Graceful (SIGTERM) and forceful (SIGKILL) termination of the process group
- Relay of termination signals received by the wrapper to the child

Key design points:
- start_new_session=True puts the child in its own process group, so
  terminal signals reach it once, through the relay
- Each pipe end is closed exactly once, whichever path closes it
- A non-zero exit is recorded, never raised; only OS-level wait
  failures are errors
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from collections.abc import Sequence

from ..errors import (
    AlreadyStartedError,
    EmptyCommandError,
    NotStartedError,
    PathTraversalError,
    ProcessStartError,
    ProcessWaitError,
)
from ..signal_manager import SignalManager
from .stream_processor import DEFAULT_MAX_LINE_LENGTH
from .types import ProcessState, StreamKind

__all__ = [
    "ProcessRunner",
    "validate_command",
    "DEFAULT_STREAM_LIMIT",
]

logger = logging.getLogger(__name__)

# Longest line a stream reader buffers before reporting a fault
DEFAULT_STREAM_LIMIT = DEFAULT_MAX_LINE_LENGTH


def validate_command(executable: str) -> None:
    """Reject executables whose normalized path walks up a directory.

    Args:
        executable: First element of the command vector

    Raises:
        PathTraversalError: If the cleaned path has a ``..`` segment
    """
    cleaned = os.path.normpath(executable)
    if os.pardir in cleaned.split(os.sep):
        raise PathTraversalError(executable)


class ProcessRunner:
    """Owns one child process, its pipes, and its lifecycle.

    Example:
        runner = ProcessRunner(["make", "build"], signal_manager=manager)
        await runner.start()
        stdout, stderr = runner.get_streams()
        ...
        await runner.wait()
        runner.cleanup()
        sys.exit(runner.exit_code)
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        signal_manager: SignalManager | None = None,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ) -> None:
        """Validate the command and allocate both pipes.

        Args:
            command: Program followed by its arguments
            signal_manager: Source of signals to relay to the child
            stream_limit: Maximum line length for the stream readers

        Raises:
            EmptyCommandError: If command is empty
            PathTraversalError: If the executable path contains ``..``
            OSError: If the pipes cannot be created
        """
        if not command:
            raise EmptyCommandError()
        validate_command(command[0])

        self.argv: tuple[str, ...] = tuple(command)
        self.stream_limit = stream_limit
        self._signal_manager = signal_manager

        self._state = ProcessState.CREATED
        self._process: asyncio.subprocess.Process | None = None
        self._exit_code = 0
        self._term_signal: signal.Signals | None = None
        self._relay_installed = False

        # Raw pipe ends not yet handed to a transport or the child
        self._read_fds: dict[StreamKind, int] = {}
        self._write_fds: dict[StreamKind, int] = {}
        self._transports: list[asyncio.ReadTransport] = []
        self._readers: dict[StreamKind, asyncio.StreamReader] = {}

        try:
            for kind in StreamKind:
                read_fd, write_fd = os.pipe()
                self._read_fds[kind] = read_fd
                self._write_fds[kind] = write_fd
        except OSError:
            self._close_raw_fds()
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def is_started(self) -> bool:
        return self._state is not ProcessState.CREATED

    @property
    def is_finished(self) -> bool:
        return self._state in (ProcessState.EXITED, ProcessState.KILLED_BY_SIGNAL)

    @property
    def exit_code(self) -> int:
        """Child exit code; 0 until the process has exited.

        A child killed by a signal reports ``128 + signal number``.
        """
        return self._exit_code

    @property
    def term_signal(self) -> signal.Signals | None:
        """Signal that killed the child, if any."""
        return self._term_signal

    def get_exit_code(self) -> int:
        return self._exit_code

    def get_streams(
        self,
    ) -> tuple[asyncio.StreamReader | None, asyncio.StreamReader | None]:
        """Return the (stdout, stderr) readers; both None before start."""
        return (
            self._readers.get(StreamKind.STDOUT),
            self._readers.get(StreamKind.STDERR),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the child attached to the pre-allocated pipes.

        Raises:
            AlreadyStartedError: If called more than once
            ProcessStartError: If the OS refuses to spawn the command
        """
        if self._state is not ProcessState.CREATED:
            raise AlreadyStartedError()

        try:
            # stdin=DEVNULL: the child must not compete for the wrapper's stdin
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=self._write_fds[StreamKind.STDOUT],
                stderr=self._write_fds[StreamKind.STDERR],
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            self._state = ProcessState.START_FAILED
            logger.debug(f"Failed to start argv={self.argv[0]}: {e}")
            raise ProcessStartError(list(self.argv), e) from e
        finally:
            # The child holds its own copies of the write ends
            for kind in list(self._write_fds):
                os.close(self._write_fds.pop(kind))

        self._state = ProcessState.STARTED
        logger.debug(f"Started subprocess pid={self._process.pid} argv={self.argv[0]}")

        await self._attach_readers()
        self._install_relay()

    async def _attach_readers(self) -> None:
        loop = asyncio.get_running_loop()
        for kind in StreamKind:
            fd = self._read_fds.pop(kind)
            pipe = os.fdopen(fd, "rb", buffering=0)
            reader = asyncio.StreamReader(limit=self.stream_limit)
            protocol = asyncio.StreamReaderProtocol(reader)
            try:
                transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
            except BaseException:
                pipe.close()
                raise
            self._transports.append(transport)
            self._readers[kind] = reader

    async def wait(self) -> None:
        """Wait for the child to exit and record its status.

        Idempotent: once the exit is recorded, returns immediately.

        Raises:
            NotStartedError: If the process was never started
            ProcessWaitError: If the OS-level wait itself fails
        """
        if self._process is None:
            raise NotStartedError()
        if self.is_finished:
            return

        try:
            returncode = await self._process.wait()
        except (ChildProcessError, OSError) as e:
            raise ProcessWaitError(self._process.pid, e) from e

        self._record_exit(returncode)

    def _record_exit(self, returncode: int) -> None:
        if self.is_finished:
            return

        if returncode < 0:
            self._term_signal = signal.Signals(-returncode)
            self._exit_code = 128 - returncode
            self._state = ProcessState.KILLED_BY_SIGNAL
        else:
            self._exit_code = returncode
            self._state = ProcessState.EXITED

        self._remove_relay()
        logger.debug(
            f"Subprocess finished pid={self.pid} state={self._state.value} "
            f"exit_code={self._exit_code}"
        )

    def stop(self) -> None:
        """Ask the child to terminate (SIGTERM to its process group).

        No-op when not started or already finished. Does not wait.
        """
        if self._is_running():
            self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        """Force the child to terminate (SIGKILL to its process group).

        No-op when not started or already finished. Does not wait.
        """
        if self._is_running():
            self._signal_group(signal.SIGKILL)

    def cleanup(self) -> None:
        """Close every pipe end still open and remove the signal relay.

        Safe to call any number of times, in any state.
        """
        self._remove_relay()

        for transport in self._transports:
            if not transport.is_closing():
                transport.close()
        self._transports.clear()

        self._close_raw_fds()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_running(self) -> bool:
        return (
            self._state is ProcessState.STARTED
            and self._process is not None
            and self._process.returncode is None
        )

    def _signal_group(self, sig: signal.Signals) -> None:
        """Send a signal to the child's process group.

        Args:
            sig: Signal to send
        """
        if self._process is None:
            return
        try:
            # pgid equals pid because of start_new_session
            pgid = os.getpgid(self._process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to send_signal: {e}")
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _relay(self, sig: signal.Signals) -> None:
        if self._is_running():
            logger.debug(f"Relaying {sig.name} to pid={self.pid}")
            self._signal_group(sig)

    def _install_relay(self) -> None:
        if self._signal_manager is not None and not self._relay_installed:
            self._signal_manager.add_listener(self._relay)
            self._relay_installed = True

    def _remove_relay(self) -> None:
        if self._signal_manager is not None and self._relay_installed:
            self._signal_manager.remove_listener(self._relay)
            self._relay_installed = False

    def _close_raw_fds(self) -> None:
        for fds in (self._read_fds, self._write_fds):
            for kind in list(fds):
                try:
                    os.close(fds.pop(kind))
                except OSError as e:
                    logger.debug(f"Error closing {kind.value} pipe: {e}")
