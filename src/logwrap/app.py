"""logwrap 应用入口。

包含日志配置、参数处理和一次包装运行的生命周期管理。
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Sequence
from typing import Optional, TextIO

from . import __version__
from .cli import USAGE, split_args, parse_options
from .config import Config, find_config_file, is_debug_enabled, load_config
from .errors import ConfigError, UsageError
from .formatter import Formatter
from .orchestrator import ExitOutcome, INTERNAL_FAILURE_EXIT_CODE, Orchestrator
from .signal_manager import SignalManager

__all__ = ["run_wrapped", "run_cli", "configure_logging", "main"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(debug: bool = False) -> None:
    """配置 logwrap 自身的日志。

    日志只写 stderr，不与被包装命令的输出（stdout）混在一起。
    """
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=[stderr_handler])
    # 只对 logwrap 命名空间启用详细日志
    logging.getLogger("logwrap").setLevel(logging.DEBUG if debug else logging.INFO)


async def run_wrapped(
    config: Config,
    command: Sequence[str],
    sink: Optional[TextIO] = None,
) -> ExitOutcome:
    """运行一次被包装的命令。

    Args:
        config: 已校验的配置
        command: 被包装的命令
        sink: 输出目标（默认 sys.stdout）

    Returns:
        ExitOutcome
    """
    signal_manager = SignalManager()
    try:
        await signal_manager.start()
        orchestrator = Orchestrator(
            Formatter(config),
            sink if sink is not None else sys.stdout,
            signal_manager,
        )
        outcome = await orchestrator.run_command(command)
        logger.debug(f"Wrapped command finished: {outcome.kind.value} exit_code={outcome.exit_code}")
        return outcome
    finally:
        await signal_manager.stop()


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    """处理命令行并返回退出码（不调用 sys.exit）。"""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print(USAGE, file=sys.stderr)
        return INTERNAL_FAILURE_EXIT_CODE

    try:
        option_args, command = split_args(args)
        options = parse_options(option_args)
    except UsageError as e:
        print(f"Error parsing arguments: {e}", file=sys.stderr)
        return INTERNAL_FAILURE_EXIT_CODE

    if options.show_help:
        print(USAGE)
        return 0
    if options.show_version:
        print(f"logwrap version {__version__}")
        return 0

    if not command:
        print(f"Error: no command specified\n\n{USAGE}", file=sys.stderr)
        return INTERNAL_FAILURE_EXIT_CODE

    config_file = options.config if options.config else find_config_file()
    try:
        config = load_config(
            config_file,
            template=options.template,
            utc=options.utc,
            colors=options.colors,
            output_format=options.output_format,
        )
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return INTERNAL_FAILURE_EXIT_CODE

    outcome = asyncio.run(run_wrapped(config, command))
    return outcome.exit_code


def main() -> None:
    """主入口点。"""
    configure_logging(debug=is_debug_enabled())
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
