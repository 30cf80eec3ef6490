"""行格式化器。

把子进程的每一行输出渲染为带前缀的日志行，支持三种输出格式：
    - text: 模板前缀 + 原始行，可选 ANSI 颜色
    - json: {"level":...,"message":...,"pid":...,"timestamp":...,"user":...}
    - structured: timestamp=... level=... user=... pid=... message="..."

格式在构造时确定一次，不在每一行上重复判断。
级别检测结果由格式化器自己缓存（LRU，最多 LEVEL_CACHE_SIZE 条，
淘汰最久未使用的条目）。
"""

from __future__ import annotations

import functools
import getpass
import json
import logging
import os
from datetime import timezone
from typing import Callable

from .config import TEMPLATE_PATTERN, Config, OutputFormat, PIDFormat, UserFormat
from .runtime.types import LogLine, StreamKind

__all__ = ["Formatter", "LEVEL_CACHE_SIZE", "COLOR_CODES", "quote_if_needed"]

logger = logging.getLogger(__name__)

LEVEL_CACHE_SIZE = 1024

COLOR_CODES: dict[str, str] = {
    "black": "\033[30m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "cyan": "\033[36m",
    "white": "\033[37m",
    "none": "",
    "": "",
}
COLOR_RESET = "\033[0m"

_ERROR_LEVELS = frozenset({"ERROR", "FATAL", "PANIC"})
_INFO_LEVELS = frozenset({"INFO", "DEBUG", "TRACE", "WARN", "WARNING"})

# HTML 安全的 JSON：<、>、& 和 U+2028/U+2029 以 \uXXXX 形式输出
_JSON_ESCAPES = str.maketrans(
    {
        "<": "\\u003c",
        ">": "\\u003e",
        "&": "\\u0026",
        "\u2028": "\\u2028",
        "\u2029": "\\u2029",
    }
)


def _needs_quoting(value: str) -> bool:
    """是否包含空白、引号、反斜杠、等号或控制字符。"""
    for ch in value:
        if ch in " \t\n\r\"'\\=":
            return True
        if ord(ch) < 32 or ord(ch) == 127:
            return True
    return False


def quote_if_needed(value: str) -> str:
    """structured 格式下按需加引号。"""
    if _needs_quoting(value):
        return json.dumps(value, ensure_ascii=False)
    return value


class Formatter:
    """默认行格式化器。

    实例在构造后只读，可被 stdout / stderr 两个读取任务并发调用。

    Example:
        formatter = Formatter(load_config())
        formatter.format_line("ERROR: disk full", StreamKind.STDERR)
        # '[2024-01-15T14:30:45+0000] [ERROR] [alice:4242] ERROR: disk full'
    """

    def __init__(self, config: Config) -> None:
        """初始化格式化器。

        Args:
            config: 已校验的配置
        """
        self.config = config
        self.output_format: OutputFormat = config.output.format

        renderers: dict[OutputFormat, Callable[[dict[str, str]], str]] = {
            OutputFormat.TEXT: self._format_text,
            OutputFormat.JSON: self._format_json,
            OutputFormat.STRUCTURED: self._format_structured,
        }
        self._render = renderers[self.output_format]

        self._user = self._resolve_user()
        self._pid = self._resolve_pid()
        self._colors: dict[str, str] = {}
        if config.prefix.colors.enabled:
            colors = config.prefix.colors
            self._colors = {
                "info": COLOR_CODES[colors.info.lower()],
                "error": COLOR_CODES[colors.error.lower()],
                "timestamp": COLOR_CODES[colors.timestamp.lower()],
            }

        detection = config.log_level.detection
        self._keywords: tuple[tuple[str, tuple[str, ...]], ...] = tuple(
            (level.upper(), tuple(keyword.upper() for keyword in keywords))
            for level, keywords in detection.keywords.items()
        )
        self._detection_enabled = detection.enabled
        self._match_level = functools.lru_cache(maxsize=LEVEL_CACHE_SIZE)(
            self._match_level_uncached
        )

    def format_line(self, line: str, kind: StreamKind) -> str:
        """渲染一行。空行原样返回。"""
        if line == "":
            return line
        return self.format_log_line(LogLine(line, kind))

    def format_log_line(self, log_line: LogLine) -> str:
        """渲染一行，时间戳取自 log_line.read_at。"""
        if log_line.text == "":
            return ""
        fields = {
            "Timestamp": self._timestamp(log_line),
            "Level": self.detect_level(log_line.text, log_line.kind),
            "User": self._user,
            "PID": self._pid,
            "Line": log_line.text,
        }
        return self._render(fields)

    def detect_level(self, line: str, kind: StreamKind) -> str:
        """按关键字检测级别，未命中时使用流的默认级别。"""
        if self._detection_enabled:
            level = self._match_level(line)
            if level is not None:
                return level
        if kind is StreamKind.STDOUT:
            return self.config.log_level.default_stdout
        return self.config.log_level.default_stderr

    def cache_info(self):
        """级别缓存的命中统计（functools.lru_cache 的 CacheInfo）。"""
        return self._match_level.cache_info()

    # ------------------------------------------------------------------
    # Renderers
    # ------------------------------------------------------------------

    def _format_text(self, fields: dict[str, str]) -> str:
        prefix = TEMPLATE_PATTERN.sub(
            lambda m: fields.get(m.group(1), ""), self.config.prefix.template
        )
        line = fields["Line"]
        if self._colors:
            return self._colorize(prefix, self._colors["timestamp"]) + self._colorize_line(
                line, fields["Level"]
            )
        return prefix + line

    def _format_json(self, fields: dict[str, str]) -> str:
        return json.dumps(
            {
                "timestamp": fields["Timestamp"],
                "level": fields["Level"],
                "user": fields["User"],
                "pid": fields["PID"],
                "message": fields["Line"],
            },
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        ).translate(_JSON_ESCAPES)

    def _format_structured(self, fields: dict[str, str]) -> str:
        # message 总是加引号
        return (
            f"timestamp={quote_if_needed(fields['Timestamp'])} "
            f"level={quote_if_needed(fields['Level'])} "
            f"user={quote_if_needed(fields['User'])} "
            f"pid={quote_if_needed(fields['PID'])} "
            f"message={json.dumps(fields['Line'], ensure_ascii=False)}"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _match_level_uncached(self, line: str) -> str | None:
        upper = line.upper()
        for level, keywords in self._keywords:
            for keyword in keywords:
                if keyword in upper:
                    return level
        return None

    def _timestamp(self, log_line: LogLine) -> str:
        moment = log_line.read_at
        if self.config.prefix.timestamp.utc:
            moment = moment.astimezone(timezone.utc)
        return moment.strftime(self.config.prefix.timestamp.format)

    def _colorize_line(self, line: str, level: str) -> str:
        level = level.upper()
        if level in _ERROR_LEVELS:
            return self._colorize(line, self._colors["error"])
        if level in _INFO_LEVELS:
            return self._colorize(line, self._colors["info"])
        return line

    @staticmethod
    def _colorize(text: str, color: str) -> str:
        if not color:
            return text
        return f"{color}{text}{COLOR_RESET}"

    def _resolve_user(self) -> str:
        user = self.config.prefix.user
        if not user.enabled:
            return ""

        uid = str(os.getuid()) if hasattr(os, "getuid") else ""
        try:
            username = getpass.getuser()
        except (OSError, KeyError) as e:
            logger.debug(f"Cannot resolve user name, using uid: {e}")
            username = uid

        if user.format is UserFormat.UID:
            return uid
        if user.format is UserFormat.FULL:
            return f"{username}({uid})"
        return username

    def _resolve_pid(self) -> str:
        pid = self.config.prefix.pid
        if not pid.enabled:
            return ""
        if pid.format is PIDFormat.HEX:
            return f"0x{os.getpid():x}"
        return str(os.getpid())
