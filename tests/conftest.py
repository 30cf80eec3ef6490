"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 辅助子进程脚本
FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_CHILD = FIXTURES_DIR / "fake_child.py"


@pytest.fixture
def fake_child() -> list[str]:
    """运行辅助子进程的命令前缀。"""
    return [sys.executable, str(FAKE_CHILD)]


@pytest.fixture
def sink() -> io.StringIO:
    """内存输出目标。"""
    return io.StringIO()


@pytest.fixture(autouse=True)
def _isolate_logwrap_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """避免外部 LOGWRAP_DEBUG 影响测试。"""
    monkeypatch.delenv("LOGWRAP_DEBUG", raising=False)
