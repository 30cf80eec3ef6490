"""logwrap 异常类。

按来源分组：
- 命令构造错误（空命令、路径穿越）
- 生命周期误用（重复启动、未启动就等待）
- 进程启动 / 等待失败
- 流处理错误（读取器缺失、聚合失败、等待超时）
- 配置与命令行错误
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .runtime.types import ProcessingResult

__all__ = [
    "LogwrapError",
    "CommandError",
    "EmptyCommandError",
    "PathTraversalError",
    "LifecycleError",
    "AlreadyStartedError",
    "NotStartedError",
    "ProcessStartError",
    "ProcessWaitError",
    "ReadersNilError",
    "LineTooLongError",
    "ProcessingError",
    "ProcessorTimeoutError",
    "ConfigError",
    "ConfigPathError",
    "ConfigValidationError",
    "UsageError",
]


class LogwrapError(Exception):
    """logwrap 基础异常。"""
    pass


class CommandError(LogwrapError):
    """命令向量在启动前被拒绝。"""
    pass


class EmptyCommandError(CommandError):
    """命令为空。"""

    def __init__(self) -> None:
        super().__init__("command cannot be empty")


class PathTraversalError(CommandError):
    """可执行文件路径包含 `..` 段。

    Attributes:
        path: 被拒绝的原始路径
    """

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"path traversal not allowed in command: {path!r}")


class LifecycleError(LogwrapError):
    """进程生命周期误用（编程错误）。"""
    pass


class AlreadyStartedError(LifecycleError):
    def __init__(self) -> None:
        super().__init__("process runner already started")


class NotStartedError(LifecycleError):
    def __init__(self) -> None:
        super().__init__("process runner not started")


class ProcessStartError(LogwrapError):
    """子进程无法启动（可执行文件不存在、权限不足等）。

    Attributes:
        argv: 启动的命令向量
    """

    def __init__(self, argv: list[str], reason: BaseException) -> None:
        self.argv = list(argv)
        super().__init__(f"failed to start command {argv[0]!r}: {reason}")


class ProcessWaitError(LogwrapError):
    """操作系统层面的等待失败（不同于非零退出码）。"""

    def __init__(self, pid: int | None, reason: BaseException) -> None:
        self.pid = pid
        super().__init__(f"waiting for pid={pid} failed: {reason}")


class ReadersNilError(LogwrapError):
    def __init__(self) -> None:
        super().__init__("stdout and stderr readers cannot be None")


class LineTooLongError(LogwrapError):
    """单行长度超过读取上限。

    Attributes:
        limit: 允许的最大行长度（字节）
    """

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"line exceeds maximum length of {limit} bytes")


class ProcessingError(LogwrapError):
    """流处理聚合失败，携带每个流的错误。

    Attributes:
        result: 失败的 ProcessingResult
    """

    def __init__(self, result: ProcessingResult) -> None:
        self.result = result
        details = "; ".join(str(err) for err in result.errors)
        super().__init__(f"processing errors occurred: {details}")


class ProcessorTimeoutError(LogwrapError):
    """等待流处理结束超时。

    Attributes:
        timeout: 配置的超时时间（秒）
    """

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"processor wait timeout after {timeout}s")


class ConfigError(LogwrapError):
    """配置加载或校验失败。"""
    pass


class ConfigPathError(ConfigError):
    """配置文件路径不合法（路径穿越或扩展名错误）。"""
    pass


class ConfigValidationError(ConfigError):
    """配置内容校验失败。"""
    pass


class UsageError(LogwrapError):
    """命令行参数错误。"""
    pass
