"""运行编排模块。

把 ProcessRunner、StreamProcessor 和 SignalManager 串起来：
- 启动子进程，并发处理输出流与等待子进程退出
- 在"子进程自行退出"和"收到终止信号"之间竞争
- 收到信号时优雅关闭（SIGTERM -> 超时 -> SIGKILL）
- 有界等待输出流排空，超时则放弃剩余输出
- 计算 logwrap 自身的退出码
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TextIO

from .errors import LogwrapError, ProcessingError, ProcessorTimeoutError
from .runtime.process_runner import ProcessRunner
from .runtime.stream_processor import (
    DEFAULT_MAX_LINE_LENGTH,
    LineFormatter,
    StreamProcessor,
)
from .runtime.types import ProcessingResult
from .signal_manager import SignalManager

__all__ = [
    "Orchestrator",
    "ExitOutcome",
    "OutcomeKind",
    "signal_exit_code",
    "SHUTDOWN_SIGNALS",
    "DEFAULT_GRACEFUL_TIMEOUT",
    "DEFAULT_DRAIN_TIMEOUT",
    "INTERNAL_FAILURE_EXIT_CODE",
]

logger = logging.getLogger(__name__)

# 触发优雅关闭的信号；SIGQUIT 只转发给子进程
SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)

DEFAULT_GRACEFUL_TIMEOUT = 5.0  # SIGTERM 之后等待子进程退出的秒数
DEFAULT_DRAIN_TIMEOUT = 3.0  # 等待输出流排空的秒数
INTERNAL_FAILURE_EXIT_CODE = 1


def signal_exit_code(sig: signal.Signals) -> int:
    """信号对应的惯用退出码：128 + 信号编号（SIGINT=130, SIGTERM=143）。"""
    return 128 + int(sig)


class OutcomeKind(str, Enum):
    EXITED = "exited"
    SIGNALED = "signaled"
    FAILED = "failed"


@dataclass(frozen=True)
class ExitOutcome:
    """一次运行的最终结果。

    Attributes:
        kind: 结束方式
        exit_code: logwrap 应使用的退出码
        signal: 导致关闭的外部信号（仅 SIGNALED）
        error: 内部错误（仅 FAILED）
        processing: 输出流处理结果（超时放弃时为 None）
    """

    kind: OutcomeKind
    exit_code: int
    signal: signal.Signals | None = None
    error: BaseException | None = None
    processing: ProcessingResult | None = None

    @classmethod
    def exited(cls, code: int, processing: ProcessingResult | None = None) -> "ExitOutcome":
        return cls(OutcomeKind.EXITED, code, processing=processing)

    @classmethod
    def signaled(
        cls, sig: signal.Signals, processing: ProcessingResult | None = None
    ) -> "ExitOutcome":
        return cls(OutcomeKind.SIGNALED, signal_exit_code(sig), signal=sig, processing=processing)

    @classmethod
    def failed(cls, error: BaseException) -> "ExitOutcome":
        return cls(OutcomeKind.FAILED, INTERNAL_FAILURE_EXIT_CODE, error=error)


@dataclass
class Orchestrator:
    """单个被包装命令的运行编排器。

    两个超时预算依次使用，不嵌套：先是优雅关闭（仅在收到信号时），
    然后是输出排空。

    Example:
        ```python
        manager = SignalManager()
        await manager.start()
        try:
            orchestrator = Orchestrator(Formatter(config), sys.stdout, manager)
            outcome = await orchestrator.run_command(["make", "test"])
        finally:
            await manager.stop()
        sys.exit(outcome.exit_code)
        ```

    Attributes:
        formatter: 行格式化器
        sink: 输出目标
        signal_manager: 信号来源
        graceful_timeout: SIGTERM 后等待子进程退出的时间（秒）
        drain_timeout: 等待输出流排空的时间（秒）
        max_line_length: 单行最大长度（字节）
    """

    formatter: LineFormatter
    sink: TextIO
    signal_manager: SignalManager
    graceful_timeout: float = DEFAULT_GRACEFUL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH

    async def run_command(self, command: Sequence[str]) -> ExitOutcome:
        """运行命令，把内部错误转换为 FAILED 结果。"""
        try:
            return await self.run(command)
        except LogwrapError as e:
            logger.error(f"Execution error: {e}")
            return ExitOutcome.failed(e)

    async def run(self, command: Sequence[str]) -> ExitOutcome:
        """运行命令直到结束。

        Args:
            command: 程序及其参数

        Returns:
            ExitOutcome

        Raises:
            CommandError: 命令为空或路径不合法
            ProcessStartError: 子进程无法启动
            ProcessWaitError: 操作系统层面的等待失败
        """
        runner = ProcessRunner(
            command,
            signal_manager=self.signal_manager,
            stream_limit=self.max_line_length,
        )
        processor = StreamProcessor(
            self.formatter, self.sink, max_line_length=self.max_line_length
        )

        received: list[signal.Signals] = []
        shutdown_event = asyncio.Event()

        def on_signal(sig: signal.Signals) -> None:
            if sig in SHUTDOWN_SIGNALS and not received:
                received.append(sig)
                shutdown_event.set()

        processing_task: asyncio.Task[ProcessingResult] | None = None
        waiter: asyncio.Task[None] | None = None
        watcher: asyncio.Task[bool] | None = None
        shutdown_signal: signal.Signals | None = None

        self.signal_manager.add_listener(on_signal)
        try:
            await runner.start()
            logger.debug(f"Wrapped command started pid={runner.pid}")

            stdout, stderr = runner.get_streams()
            processing_task = asyncio.create_task(
                processor.process_streams(stdout, stderr), name="logwrap-processing"
            )
            waiter = asyncio.create_task(runner.wait(), name="logwrap-wait")
            watcher = asyncio.create_task(shutdown_event.wait(), name="logwrap-shutdown-watcher")

            await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)

            if waiter.done():
                waiter.result()
            else:
                shutdown_signal = received[0]
                await self._shutdown(runner, processor, waiter, shutdown_signal)

            processing = await self._drain(runner, processor, processing_task)

        finally:
            self.signal_manager.remove_listener(on_signal)
            for task in (watcher, waiter, processing_task):
                if task is not None and not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            runner.cleanup()

        if shutdown_signal is not None:
            return ExitOutcome.signaled(shutdown_signal, processing)
        return ExitOutcome.exited(runner.exit_code, processing)

    async def _shutdown(
        self,
        runner: ProcessRunner,
        processor: StreamProcessor,
        waiter: asyncio.Task[None],
        sig: signal.Signals,
    ) -> None:
        """优雅关闭：停止输出处理，SIGTERM，超时后 SIGKILL。"""
        logger.warning(f"Received signal {sig.name}, initiating graceful shutdown...")

        processor.stop()
        try:
            runner.stop()
        except OSError as e:
            logger.warning(f"Failed to stop process gracefully: {e}")

        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=self.graceful_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(
                f"Shutdown timeout exceeded after {self.graceful_timeout}s, forcing kill..."
            )

        try:
            runner.kill()
        except OSError as e:
            logger.warning(f"Failed to kill process: {e}")

        # SIGKILL 不可被忽略，无条件等待
        await waiter

    async def _drain(
        self,
        runner: ProcessRunner,
        processor: StreamProcessor,
        processing_task: asyncio.Task[ProcessingResult],
    ) -> ProcessingResult | None:
        """有界等待输出排空。超时则关闭管道并放弃剩余输出。"""
        try:
            await processor.wait(self.drain_timeout)
        except ProcessorTimeoutError as e:
            logger.warning(f"Stream processing timeout, some output may be lost: {e}")
            runner.cleanup()
            processing_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await processing_task
            return None

        result = await processing_task
        if not result.ok:
            logger.warning(f"Stream processing error: {ProcessingError(result)}")
        return result
