"""命令行参数解析。

logwrap 的参数分两段：包装器自身的选项，以及被包装的命令。
    logwrap [options] -- <command> [args...]
    logwrap [options] <command> [args...]

选项可用单横线或双横线（-utc 与 --utc 等价）。第一个 `--`
或第一个不以 `-` 开头的参数之后的一切都属于被包装的命令，
即使其中含有和 logwrap 同名的选项。
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from dataclasses import dataclass
from typing import NoReturn, Optional

from .config import DEFAULT_TEMPLATE, OutputFormat
from .errors import UsageError

__all__ = ["CLIOptions", "split_args", "parse_options", "USAGE", "VALUE_OPTIONS"]

# 需要跟一个值的选项
VALUE_OPTIONS = frozenset(
    {"-config", "--config", "-template", "--template", "-format", "--format"}
)

USAGE = f"""LogWrap - Command execution wrapper with configurable log prefixes

Usage:
  logwrap [options] -- <command> [args...]
  logwrap [options] <command> [args...]

Options:
  -config string      Configuration file path
  -template string    Log prefix template (default "{DEFAULT_TEMPLATE}")
  -utc                Use UTC timestamps (default false)
  -colors             Enable colored output (default false)
  -format string      Output format: text, json, structured (default "text")
  -help               Show this help message
  -version            Show version information

Template Variables:
  {{{{.Timestamp}}}}      Current timestamp (formatted using strftime format in config)
  {{{{.Level}}}}          Log level (INFO, ERROR, etc.)
  {{{{.User}}}}           Username (controlled via config file)
  {{{{.PID}}}}            Process ID (controlled via config file)

Timestamp Format (strftime):
  %Y  Year (2024)          %m  Month (01-12)       %d  Day (01-31)
  %H  Hour 24h (00-23)     %M  Minute (00-59)      %S  Second (00-59)
  %z  Timezone offset      %f  Microseconds

  Example: %Y-%m-%d %H:%M:%S  ->  2024-01-15 14:30:45

Examples:
  logwrap echo "Hello World"
  logwrap -config myconfig.yaml make build
  logwrap -utc -colors make test
  logwrap -format json -- sh -c "echo stdout; echo stderr >&2"

Configuration:
  LogWrap looks for configuration files in the following order:
  1. File specified with -config flag
  2. ./logwrap.yaml, ./logwrap.yml, ./.logwrap.yaml, ./.logwrap.yml
  3. ~/.config/logwrap/config.yaml (or .yml)
  4. ~/.logwrap.yaml (or .yml)

Environment:
  LOGWRAP_DEBUG=1     Emit logwrap's own debug logs on stderr"""


@dataclass(frozen=True)
class CLIOptions:
    """解析后的包装器选项。

    utc / colors 为 None 表示命令行未指定，不覆盖配置文件。
    """

    config: Optional[str] = None
    template: Optional[str] = None
    utc: Optional[bool] = None
    colors: Optional[bool] = None
    output_format: Optional[str] = None
    show_help: bool = False
    show_version: bool = False


class _ArgumentParser(argparse.ArgumentParser):
    """解析失败时抛出 UsageError，而不是直接退出进程。"""

    def error(self, message: str) -> NoReturn:
        raise UsageError(message)


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="logwrap", add_help=False, allow_abbrev=False)
    parser.add_argument("-config", "--config", dest="config")
    parser.add_argument("-template", "--template", dest="template")
    parser.add_argument("-utc", "--utc", dest="utc", action="store_const", const=True)
    parser.add_argument("-colors", "--colors", dest="colors", action="store_const", const=True)
    parser.add_argument(
        "-format",
        "--format",
        dest="output_format",
        choices=[fmt.value for fmt in OutputFormat],
    )
    parser.add_argument("-help", "--help", "-h", dest="show_help", action="store_true")
    parser.add_argument("-version", "--version", dest="show_version", action="store_true")
    return parser


def split_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """把参数分成包装器选项和被包装的命令。

    Args:
        argv: 不含程序名的参数列表

    Returns:
        (options, command)；command 可能为空

    Raises:
        UsageError: 需要值的选项缺少值
    """
    options: list[str] = []
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--":
            return options, list(argv[i + 1:])
        if not arg.startswith("-"):
            return options, list(argv[i:])

        options.append(arg)
        if arg in VALUE_OPTIONS:
            if i + 1 >= len(argv):
                raise UsageError(f"option requires a value: {arg}")
            i += 1
            options.append(argv[i])
        i += 1

    return options, []


def parse_options(options: Sequence[str]) -> CLIOptions:
    """解析包装器选项。

    Raises:
        UsageError: 未知选项或非法取值
    """
    namespace = _build_parser().parse_args(list(options))
    return CLIOptions(
        config=namespace.config,
        template=namespace.template,
        utc=namespace.utc,
        colors=namespace.colors,
        output_format=namespace.output_format,
        show_help=namespace.show_help,
        show_version=namespace.show_version,
    )
