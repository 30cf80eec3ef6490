"""logwrap - 为命令输出的每一行加上可配置前缀的包装器。

环境变量:
    LOGWRAP_DEBUG: 输出 logwrap 自身的调试日志 (默认 false)

用法:
    logwrap [options] -- <command> [args...]
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
