"""logwrap 配置管理。

配置来源（后者覆盖前者）：
    1. 内置默认值
    2. YAML 配置文件（-config 指定，或按 find_config_file() 的顺序查找）
    3. 命令行参数（-template / -utc / -colors / -format）

环境变量:
    LOGWRAP_DEBUG: 调试日志
        - true/1/yes/on = 开启（logwrap 自身日志输出 DEBUG 级别）
        - 其他 = 关闭（默认，INFO 级别）

配置文件示例:
    prefix:
      template: "[{{.Timestamp}}] [{{.Level}}] "
      timestamp:
        format: "%H:%M:%S"
        utc: true
    output:
      format: json
    log_level:
      detection:
        enabled: false
"""

from __future__ import annotations

import copy
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError, ConfigPathError, ConfigValidationError

__all__ = [
    "Config",
    "PrefixConfig",
    "TimestampConfig",
    "ColorsConfig",
    "UserConfig",
    "PIDConfig",
    "OutputConfig",
    "LogLevelConfig",
    "DetectionConfig",
    "OutputFormat",
    "UserFormat",
    "PIDFormat",
    "TEMPLATE_FIELDS",
    "TEMPLATE_PATTERN",
    "VALID_COLORS",
    "VALID_LEVELS",
    "load_config",
    "find_config_file",
    "validate_config_path",
    "is_debug_enabled",
]

logger = logging.getLogger(__name__)

# 模板占位符：{{.Timestamp}}，允许花括号内有空白
TEMPLATE_PATTERN = re.compile(r"\{\{\s*\.(\w+)\s*\}\}")
TEMPLATE_FIELDS = frozenset({"Timestamp", "Level", "User", "PID"})

VALID_COLORS = frozenset(
    {"black", "red", "green", "yellow", "blue", "magenta", "cyan", "white", "none", ""}
)
VALID_LEVELS = ("TRACE", "DEBUG", "INFO", "WARN", "ERROR", "FATAL")

DEFAULT_TEMPLATE = "[{{.Timestamp}}] [{{.Level}}] [{{.User}}:{{.PID}}] "
DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# strftime 指令：C89 + ISO 8601 + 常用 POSIX 扩展
STRFTIME_DIRECTIVES = frozenset("aAbBcCdDefFgGhHIjmMnprRStTuUVwWxXyYzZ%")
STRFTIME_PATTERN = re.compile(r"%(.?)", re.DOTALL)


class OutputFormat(str, Enum):
    """输出格式。

    - TEXT: 模板前缀 + 原始行
    - JSON: 每行一个 JSON 对象
    - STRUCTURED: key=value 形式
    """

    TEXT = "text"
    JSON = "json"
    STRUCTURED = "structured"


class UserFormat(str, Enum):
    USERNAME = "username"
    UID = "uid"
    FULL = "full"


class PIDFormat(str, Enum):
    DECIMAL = "decimal"
    HEX = "hex"


def _is_valid_level(level: str) -> bool:
    """级别必须全大写或全小写匹配。"""
    return level in VALID_LEVELS or level in (lvl.lower() for lvl in VALID_LEVELS)


def _default_keywords() -> dict[str, list[str]]:
    return {
        "error": ["ERROR", "FATAL", "PANIC", "error:", "Error:", "ERROR:"],
        "warn": ["WARN", "WARNING", "warn:", "Warn:", "WARN:", "WARNING:"],
        "debug": ["DEBUG", "TRACE", "debug:", "Debug:", "DEBUG:", "TRACE:"],
        "info": ["INFO", "info:", "Info:", "INFO:"],
    }


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TimestampConfig(_Section):
    """时间戳配置。

    Attributes:
        format: strftime 格式
        utc: 是否使用 UTC 时间
    """

    format: str = DEFAULT_TIMESTAMP_FORMAT
    utc: bool = False

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if not value:
            raise ValueError("timestamp format cannot be empty")
        for match in STRFTIME_PATTERN.finditer(value):
            directive = match.group(1)
            if directive not in STRFTIME_DIRECTIVES:
                shown = f"%{directive}" if directive else "trailing %"
                raise ValueError(
                    f"invalid strftime format '{value}': unsupported directive {shown}"
                )
        return value


class ColorsConfig(_Section):
    """颜色配置（ANSI 颜色名）。"""

    enabled: bool = False
    info: str = "green"
    error: str = "red"
    timestamp: str = "blue"

    @field_validator("info", "error", "timestamp")
    @classmethod
    def _check_color(cls, value: str) -> str:
        if value.lower() not in VALID_COLORS:
            valid = ", ".join(sorted(c for c in VALID_COLORS if c))
            raise ValueError(f"invalid color '{value}', valid colors: {valid}")
        return value


class UserConfig(_Section):
    enabled: bool = True
    format: UserFormat = UserFormat.USERNAME


class PIDConfig(_Section):
    enabled: bool = True
    format: PIDFormat = PIDFormat.DECIMAL


class PrefixConfig(_Section):
    """行前缀配置。"""

    template: str = DEFAULT_TEMPLATE
    timestamp: TimestampConfig = Field(default_factory=TimestampConfig)
    colors: ColorsConfig = Field(default_factory=ColorsConfig)
    user: UserConfig = Field(default_factory=UserConfig)
    pid: PIDConfig = Field(default_factory=PIDConfig)

    @field_validator("template")
    @classmethod
    def _check_template(cls, value: str) -> str:
        if not value:
            raise ValueError("template cannot be empty")
        unknown = set(TEMPLATE_PATTERN.findall(value)) - TEMPLATE_FIELDS
        if unknown:
            valid = ", ".join(sorted(TEMPLATE_FIELDS))
            raise ValueError(
                f"unknown template field(s) {sorted(unknown)}, valid fields: {valid}"
            )
        return value


class OutputConfig(_Section):
    format: OutputFormat = OutputFormat.TEXT


class DetectionConfig(_Section):
    """日志级别自动检测配置。

    Attributes:
        enabled: 是否启用关键字检测
        keywords: 级别 -> 关键字列表（按配置顺序匹配）
    """

    enabled: bool = True
    keywords: dict[str, list[str]] = Field(default_factory=_default_keywords)

    @field_validator("keywords")
    @classmethod
    def _check_keywords(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        for level, keywords in value.items():
            if not _is_valid_level(level.upper()):
                raise ValueError(f"invalid log level '{level}' in detection keywords")
            if not keywords:
                raise ValueError(f"log level has no detection keywords '{level}'")
            if any(keyword == "" for keyword in keywords):
                raise ValueError(f"empty keyword in detection keywords for level '{level}'")
        return value

    @model_validator(mode="after")
    def _check_enabled(self) -> "DetectionConfig":
        if not self.enabled and self.keywords:
            raise ValueError("detection disabled but keywords are configured")
        return self


class LogLevelConfig(_Section):
    """日志级别配置。"""

    default_stdout: str = "INFO"
    default_stderr: str = "ERROR"
    detection: DetectionConfig = Field(default_factory=DetectionConfig)

    @field_validator("default_stdout", "default_stderr")
    @classmethod
    def _check_level(cls, value: str) -> str:
        if not _is_valid_level(value):
            raise ValueError(
                f"invalid default log level '{value}', valid levels: {', '.join(VALID_LEVELS)}"
            )
        return value


class Config(_Section):
    """logwrap 完整配置。

    构造即校验，实例不可变，可被多个读取任务并发访问。
    """

    prefix: PrefixConfig = Field(default_factory=PrefixConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    log_level: LogLevelConfig = Field(default_factory=LogLevelConfig)


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def is_debug_enabled() -> bool:
    """LOGWRAP_DEBUG 是否开启。"""
    return _parse_bool(os.environ.get("LOGWRAP_DEBUG"), default=False)


def validate_config_path(config_file: str | Path) -> Path:
    """校验配置文件路径。

    Args:
        config_file: 配置文件路径

    Returns:
        规范化后的路径

    Raises:
        ConfigPathError: 路径包含 `..` 段或扩展名不是 .yaml/.yml
    """
    cleaned = os.path.normpath(str(config_file))
    if os.pardir in cleaned.split(os.sep):
        raise ConfigPathError(f"path traversal not allowed: {config_file}")

    path = Path(cleaned)
    if path.suffix.lower() not in (".yaml", ".yml"):
        raise ConfigPathError(f"only .yaml and .yml files are allowed: {config_file}")
    return path


def find_config_file(cwd: Optional[Path] = None, home: Optional[Path] = None) -> Path | None:
    """按标准位置查找配置文件。

    查找顺序:
        ./logwrap.yaml, ./logwrap.yml, ./.logwrap.yaml, ./.logwrap.yml,
        ~/.config/logwrap/config.yaml, ~/.config/logwrap/config.yml,
        ~/.logwrap.yaml, ~/.logwrap.yml

    Args:
        cwd: 当前目录（默认 Path.cwd()）
        home: 用户主目录（默认 Path.home()）

    Returns:
        第一个存在的配置文件路径，找不到则返回 None
    """
    cwd = cwd if cwd is not None else Path.cwd()
    candidates = [
        cwd / "logwrap.yaml",
        cwd / "logwrap.yml",
        cwd / ".logwrap.yaml",
        cwd / ".logwrap.yml",
    ]

    try:
        home = home if home is not None else Path.home()
    except RuntimeError:
        home = None
    if home is not None:
        candidates += [
            home / ".config" / "logwrap" / "config.yaml",
            home / ".config" / "logwrap" / "config.yml",
            home / ".logwrap.yaml",
            home / ".logwrap.yml",
        ]

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """递归合并字典，override 中的值优先。"""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_config_file(config_file: str | Path) -> dict[str, Any]:
    path = validate_config_path(config_file)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file {config_file}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse YAML config {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"config file {config_file} must contain a mapping, got {type(data).__name__}"
        )
    return data


def _merge_file(defaults: dict[str, Any], data: dict[str, Any]) -> dict[str, Any]:
    merged = _deep_merge(defaults, data)

    log_level = data.get("log_level")
    detection = log_level.get("detection") if isinstance(log_level, dict) else None
    if isinstance(detection, dict) and isinstance(merged["log_level"].get("detection"), dict):
        merged_detection = merged["log_level"]["detection"]
        if "keywords" in detection:
            # 关键字映射整体替换默认值，而不是逐级合并
            merged_detection["keywords"] = copy.deepcopy(detection["keywords"]) or {}
        elif detection.get("enabled") is False:
            merged_detection["keywords"] = {}
    return merged


def load_config(
    config_file: str | Path | None = None,
    *,
    template: Optional[str] = None,
    utc: Optional[bool] = None,
    colors: Optional[bool] = None,
    output_format: Optional[str] = None,
) -> Config:
    """加载配置：默认值 -> 配置文件 -> 命令行覆盖 -> 校验。

    Args:
        config_file: YAML 配置文件路径（None 表示不读取文件）
        template: 覆盖 prefix.template
        utc: 覆盖 prefix.timestamp.utc
        colors: 覆盖 prefix.colors.enabled
        output_format: 覆盖 output.format

    Returns:
        校验通过的 Config

    Raises:
        ConfigPathError: 配置文件路径不合法
        ConfigValidationError: 配置内容校验失败
        ConfigError: 配置文件无法读取或解析
    """
    data = Config().model_dump(mode="json")

    if config_file is not None:
        data = _merge_file(data, _read_config_file(config_file))
        logger.debug(f"Loaded config file: {config_file}")

    if template:
        data["prefix"]["template"] = template
    if utc is not None:
        data["prefix"]["timestamp"]["utc"] = utc
    if colors is not None:
        data["prefix"]["colors"]["enabled"] = colors
    if output_format:
        data["output"]["format"] = output_format

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"invalid configuration: {_describe(e)}") from e


def _describe(error: ValidationError) -> str:
    """把 pydantic 错误压缩成一行。"""
    parts = []
    for item in error.errors():
        location = ".".join(str(loc) for loc in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)
