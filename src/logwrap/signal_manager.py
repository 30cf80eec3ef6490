"""信号管理模块。

将进程级别的 OS 信号注册封装为一个可启动 / 停止的订阅对象：
- 在事件循环中安装 SIGINT / SIGTERM / SIGQUIT 处理器
- 收到信号后按注册顺序分发给监听者（子进程转发、编排器的关闭触发）
- 测试可直接调用 deliver() 模拟信号，无需修改真实的信号状态
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable, Iterable, Optional

__all__ = ["SignalManager", "SignalListener", "default_signals"]

logger = logging.getLogger(__name__)

# 监听者回调：参数为收到的信号
SignalListener = Callable[[signal.Signals], None]


def default_signals() -> tuple[signal.Signals, ...]:
    """返回当前平台上需要监听的终止类信号。"""
    if sys.platform == "win32":
        return (signal.SIGINT,)
    return (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


class SignalManager:
    """信号订阅管理器。

    每个 logwrap 运行实例持有一个 SignalManager。ProcessRunner 通过它把
    信号转发给子进程，Orchestrator 通过它感知外部终止请求。

    Example:
        ```python
        manager = SignalManager()

        async def main():
            await manager.start()
            try:
                manager.add_listener(lambda sig: print(sig.name))
                ...
            finally:
                await manager.stop()
        ```

    Attributes:
        signals: 监听的信号集合
    """

    def __init__(self, signals: Optional[Iterable[signal.Signals]] = None) -> None:
        """初始化信号管理器。

        Args:
            signals: 需要监听的信号（默认 SIGINT / SIGTERM / SIGQUIT）
        """
        self.signals: tuple[signal.Signals, ...] = (
            tuple(signals) if signals is not None else default_signals()
        )
        self._listeners: list[SignalListener] = []
        self._installed: list[signal.Signals] = []
        self._original_handlers: dict[signal.Signals, object] = {}
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_running(self) -> bool:
        """是否已安装 OS 信号处理器。"""
        return self._running

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def start(self) -> None:
        """安装信号处理器。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._running = True

        for sig in self.signals:
            if sys.platform != "win32":
                self._loop.add_signal_handler(sig, self.deliver, sig)
            else:
                # Windows: 处理器在主线程同步执行，转交给事件循环
                self._original_handlers[sig] = signal.signal(
                    sig,
                    lambda signum, frame: self._loop.call_soon_threadsafe(
                        self.deliver, signal.Signals(signum)
                    ),
                )
            self._installed.append(sig)

        logger.debug(
            f"Signal handlers installed: {[sig.name for sig in self._installed]}"
        )

    async def stop(self) -> None:
        """移除信号处理器，恢复原始行为。"""
        if not self._running:
            return

        self._running = False

        for sig in self._installed:
            try:
                if sys.platform != "win32" and self._loop:
                    self._loop.remove_signal_handler(sig)
                elif sig in self._original_handlers:
                    signal.signal(sig, self._original_handlers[sig])
            except (ValueError, OSError, RuntimeError) as e:
                logger.debug(f"Error removing handler for {sig.name}: {e}")

        self._installed.clear()
        self._original_handlers.clear()
        logger.debug("Signal handlers removed")

    def add_listener(self, listener: SignalListener) -> None:
        """注册监听者。重复注册会被忽略。"""
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: SignalListener) -> None:
        """注销监听者。未注册时为空操作。"""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def deliver(self, sig: signal.Signals | int) -> None:
        """把信号分发给所有监听者。

        由事件循环的信号处理器调用，测试中也可直接调用。
        单个监听者抛出的异常会被记录，不影响其他监听者。

        Args:
            sig: 收到的信号
        """
        sig = signal.Signals(sig)
        logger.debug(f"Signal {sig.name} received, {len(self._listeners)} listener(s)")

        # 监听者可能在回调中注销自己
        for listener in list(self._listeners):
            try:
                listener(sig)
            except Exception as e:
                logger.warning(f"Error in signal listener for {sig.name}: {e}")
