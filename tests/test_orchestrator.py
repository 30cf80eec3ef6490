"""Orchestrator integration tests.

Test coverage:
- Exit code propagation for normal exits
- Internal failures mapped to exit code 1
- Graceful shutdown on SIGINT/SIGTERM (simulated through SignalManager.deliver)
- Kill escalation for children that ignore termination signals
- SIGQUIT relayed to the child without triggering shutdown
- Bounded drain when a grandchild keeps the pipes open
"""

from __future__ import annotations

import asyncio
import io
import signal
import sys
import time
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from logwrap.config import load_config
from logwrap.errors import EmptyCommandError, PathTraversalError, ProcessStartError
from logwrap.formatter import Formatter
from logwrap.orchestrator import ExitOutcome, Orchestrator, OutcomeKind, signal_exit_code
from logwrap.runtime.types import StreamKind
from logwrap.signal_manager import SignalManager

IS_WINDOWS = sys.platform == "win32"

pytestmark = pytest.mark.skipif(IS_WINDOWS, reason="POSIX process groups and signals")


class TagFormatter:
    def format_line(self, line: str, kind: StreamKind) -> str:
        return f"[{kind.value}] {line}"


@pytest.fixture
def manager() -> SignalManager:
    """未启动的信号管理器；测试通过 deliver() 模拟信号。"""
    return SignalManager()


def make_orchestrator(
    sink: io.StringIO,
    manager: SignalManager,
    *,
    graceful_timeout: float = 5.0,
    drain_timeout: float = 3.0,
) -> Orchestrator:
    return Orchestrator(
        TagFormatter(),
        sink,
        manager,
        graceful_timeout=graceful_timeout,
        drain_timeout=drain_timeout,
    )


async def wait_for_output(sink: io.StringIO, text: str, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while text not in sink.getvalue():
        if time.monotonic() > deadline:
            raise AssertionError(f"{text!r} never appeared in output: {sink.getvalue()!r}")
        await asyncio.sleep(0.01)


# =============================================================================
# ExitOutcome Tests
# =============================================================================


class TestExitOutcome:
    """Test outcome construction helpers."""

    def test_signal_exit_codes(self):
        assert signal_exit_code(signal.SIGINT) == 130
        assert signal_exit_code(signal.SIGTERM) == 143

    def test_constructors(self):
        assert ExitOutcome.exited(3).kind is OutcomeKind.EXITED
        assert ExitOutcome.exited(3).exit_code == 3

        signaled = ExitOutcome.signaled(signal.SIGTERM)
        assert signaled.kind is OutcomeKind.SIGNALED
        assert signaled.exit_code == 143
        assert signaled.signal is signal.SIGTERM

        error = RuntimeError("x")
        failed = ExitOutcome.failed(error)
        assert failed.kind is OutcomeKind.FAILED
        assert failed.exit_code == 1
        assert failed.error is error


# =============================================================================
# Normal Exit Tests
# =============================================================================


class TestNormalExit:
    """Test commands that finish on their own."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_success(self, sink: io.StringIO, manager: SignalManager):
        outcome = await make_orchestrator(sink, manager).run(
            ["sh", "-c", "echo hello; echo oops >&2"]
        )

        assert outcome.kind is OutcomeKind.EXITED
        assert outcome.exit_code == 0
        assert outcome.processing is not None and outcome.processing.ok
        assert "[stdout] hello\n" in sink.getvalue()
        assert "[stderr] oops\n" in sink.getvalue()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    @pytest.mark.parametrize("code", [1, 7, 255])
    async def test_exit_code_propagated(self, sink: io.StringIO, manager: SignalManager, code: int):
        outcome = await make_orchestrator(sink, manager).run(["sh", "-c", f"exit {code}"])
        assert outcome.kind is OutcomeKind.EXITED
        assert outcome.exit_code == code

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_child_killed_by_signal(self, sink: io.StringIO, manager: SignalManager):
        outcome = await make_orchestrator(sink, manager).run(["sh", "-c", "kill -9 $$"])
        assert outcome.kind is OutcomeKind.EXITED
        assert outcome.exit_code == 137

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_real_formatter(self, sink: io.StringIO, manager: SignalManager):
        config = load_config(template="[{{.Level}}] ")
        orchestrator = Orchestrator(Formatter(config), sink, manager)

        outcome = await orchestrator.run(["sh", "-c", "echo all good; echo bad thing >&2"])

        assert outcome.exit_code == 0
        assert "[INFO] all good\n" in sink.getvalue()
        assert "[ERROR] bad thing\n" in sink.getvalue()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_listeners_removed_after_run(self, sink: io.StringIO, manager: SignalManager):
        await make_orchestrator(sink, manager).run(["true"])
        assert manager.listener_count == 0
        # Late signals are ignored
        manager.deliver(signal.SIGINT)


# =============================================================================
# Failure Tests
# =============================================================================


class TestFailures:
    """Test internal failures."""

    @pytest.mark.asyncio
    async def test_run_raises_on_empty_command(self, sink: io.StringIO, manager: SignalManager):
        with pytest.raises(EmptyCommandError):
            await make_orchestrator(sink, manager).run([])

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_run_raises_on_start_failure(self, sink: io.StringIO, manager: SignalManager):
        with pytest.raises(ProcessStartError):
            await make_orchestrator(sink, manager).run(["/nonexistent/logwrap-test-binary"])
        assert manager.listener_count == 0

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    @pytest.mark.parametrize(
        "command, error_type",
        [
            ([], EmptyCommandError),
            (["../escape"], PathTraversalError),
            (["/nonexistent/logwrap-test-binary"], ProcessStartError),
        ],
    )
    async def test_run_command_maps_to_failed(
        self, sink: io.StringIO, manager: SignalManager, command, error_type
    ):
        outcome = await make_orchestrator(sink, manager).run_command(command)
        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.exit_code == 1
        assert isinstance(outcome.error, error_type)


# =============================================================================
# Signal Tests
# =============================================================================


class TestSignals:
    """Test shutdown triggered by signals received by the wrapper."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    @pytest.mark.parametrize("sig, expected", [(signal.SIGINT, 130), (signal.SIGTERM, 143)])
    async def test_graceful_shutdown(
        self,
        sink: io.StringIO,
        manager: SignalManager,
        fake_child: list[str],
        sig: signal.Signals,
        expected: int,
    ):
        orchestrator = make_orchestrator(sink, manager)
        task = asyncio.create_task(orchestrator.run([*fake_child, "--duration", "30"]))

        await wait_for_output(sink, "[stdout] ready")
        started = time.monotonic()
        manager.deliver(sig)
        outcome = await task

        assert outcome.kind is OutcomeKind.SIGNALED
        assert outcome.signal is sig
        assert outcome.exit_code == expected
        # The child honoured the signal well before the kill escalation
        assert time.monotonic() - started < 4.0

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_kill_escalation(self, sink: io.StringIO, manager: SignalManager):
        orchestrator = make_orchestrator(sink, manager, graceful_timeout=0.5, drain_timeout=0.5)
        task = asyncio.create_task(
            orchestrator.run(["sh", "-c", 'trap "" INT TERM; echo ready; sleep 30'])
        )

        await wait_for_output(sink, "[stdout] ready")
        started = time.monotonic()
        manager.deliver(signal.SIGINT)
        outcome = await task
        elapsed = time.monotonic() - started

        assert outcome.kind is OutcomeKind.SIGNALED
        assert outcome.exit_code == 130
        # graceful timeout + drain timeout, with scheduling slack
        assert elapsed < 0.5 + 0.5 + 2.0

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_only_first_signal_counts(
        self, sink: io.StringIO, manager: SignalManager, fake_child: list[str]
    ):
        orchestrator = make_orchestrator(sink, manager)
        task = asyncio.create_task(orchestrator.run([*fake_child, "--duration", "30"]))

        await wait_for_output(sink, "[stdout] ready")
        manager.deliver(signal.SIGTERM)
        manager.deliver(signal.SIGINT)
        outcome = await task

        assert outcome.signal is signal.SIGTERM
        assert outcome.exit_code == 143

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_sigquit_is_only_relayed(
        self, sink: io.StringIO, manager: SignalManager, fake_child: list[str]
    ):
        orchestrator = make_orchestrator(sink, manager)
        task = asyncio.create_task(orchestrator.run([*fake_child, "--duration", "30"]))

        await wait_for_output(sink, "[stdout] ready")
        manager.deliver(signal.SIGQUIT)
        outcome = await task

        assert outcome.kind is OutcomeKind.EXITED
        assert outcome.exit_code == 128 + signal.SIGQUIT
        assert "[stderr] received SIGQUIT" in sink.getvalue()


# =============================================================================
# Drain Tests
# =============================================================================


class TestDrain:
    """Test the bounded wait for output after the child exits."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(20)
    async def test_grandchild_holding_pipe(self, sink: io.StringIO, manager: SignalManager):
        orchestrator = make_orchestrator(sink, manager, drain_timeout=0.3)

        started = time.monotonic()
        outcome = await orchestrator.run(["sh", "-c", "sleep 3 & echo done"])
        elapsed = time.monotonic() - started

        assert outcome.kind is OutcomeKind.EXITED
        assert outcome.exit_code == 0
        assert outcome.processing is None
        assert "[stdout] done\n" in sink.getvalue()
        assert elapsed < 2.5

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_all_output_drained(
        self, sink: io.StringIO, manager: SignalManager, fake_child: list[str]
    ):
        outcome = await make_orchestrator(sink, manager).run(
            [*fake_child, "--stdout-lines", "3000", "--stderr-lines", "3000", "--exit-code", "5"]
        )

        assert outcome.exit_code == 5
        assert len(sink.getvalue().splitlines()) == 6001
