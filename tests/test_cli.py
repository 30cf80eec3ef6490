"""命令行测试。

测试参数切分、选项解析和 run_cli 的退出码。
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from logwrap import __version__
from logwrap.app import run_cli
from logwrap.cli import USAGE, CLIOptions, parse_options, split_args
from logwrap.errors import UsageError

IS_WINDOWS = sys.platform == "win32"


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """隔离当前目录和用户目录，避免读到真实配置文件。"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    return tmp_path


class TestSplitArgs:
    """测试参数切分。"""

    def test_double_dash_separator(self):
        options, command = split_args(["-utc", "--", "ls", "-la"])
        assert options == ["-utc"]
        assert command == ["ls", "-la"]

    def test_first_non_option_starts_command(self):
        options, command = split_args(["-colors", "make", "-j4", "-utc"])
        assert options == ["-colors"]
        assert command == ["make", "-j4", "-utc"]

    def test_value_options_consume_next(self):
        options, command = split_args(
            ["-config", "my.yaml", "--template", "{{.PID}} ", "-format", "json", "echo", "x"]
        )
        assert options == ["-config", "my.yaml", "--template", "{{.PID}} ", "-format", "json"]
        assert command == ["echo", "x"]

    def test_missing_value(self):
        with pytest.raises(UsageError, match="requires a value: -config"):
            split_args(["-config"])

    def test_only_options(self):
        assert split_args(["-version"]) == (["-version"], [])

    def test_separator_only(self):
        assert split_args(["-utc", "--"]) == (["-utc"], [])

    def test_command_keeps_double_dash(self):
        _, command = split_args(["--", "git", "log", "--", "file"])
        assert command == ["git", "log", "--", "file"]


class TestParseOptions:
    """测试选项解析。"""

    def test_no_options(self):
        assert parse_options([]) == CLIOptions()

    def test_single_and_double_dash(self):
        single = parse_options(["-utc", "-colors", "-format", "json", "-config", "a.yaml"])
        double = parse_options(["--utc", "--colors", "--format", "json", "--config", "a.yaml"])
        assert single == double
        assert single.utc is True
        assert single.colors is True
        assert single.output_format == "json"
        assert single.config == "a.yaml"

    def test_unset_flags_are_none(self):
        options = parse_options(["-template", "[{{.Level}}] "])
        assert options.template == "[{{.Level}}] "
        assert options.utc is None
        assert options.colors is None

    def test_help_and_version(self):
        assert parse_options(["-help"]).show_help
        assert parse_options(["--help"]).show_help
        assert parse_options(["-version"]).show_version

    def test_unknown_option(self):
        with pytest.raises(UsageError):
            parse_options(["-verbose"])

    def test_invalid_format(self):
        with pytest.raises(UsageError, match="invalid choice"):
            parse_options(["-format", "xml"])


class TestRunCli:
    """测试 run_cli 的退出码和输出。"""

    def test_no_arguments(self, capsys: pytest.CaptureFixture[str]):
        assert run_cli([]) == 1
        assert "Usage:" in capsys.readouterr().err

    def test_help(self, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-help"]) == 0
        assert capsys.readouterr().out.strip() == USAGE

    def test_version(self, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-version"]) == 0
        assert capsys.readouterr().out.strip() == f"logwrap version {__version__}"

    def test_no_command(self, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-utc"]) == 1
        assert "no command specified" in capsys.readouterr().err

    def test_usage_error(self, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-template"]) == 1
        assert "Error parsing arguments" in capsys.readouterr().err

    def test_config_error(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-config", "settings.json", "true"]) == 1
        assert "Configuration error" in capsys.readouterr().err

    def test_invalid_template(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["-template", "{{.Host}}", "true"]) == 1
        assert "unknown template field" in capsys.readouterr().err

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell")
    @pytest.mark.timeout(20)
    def test_runs_command(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]):
        code = run_cli(["-template", "[{{.Level}}] ", "--", "sh", "-c", "echo hi; exit 3"])
        assert code == 3
        assert capsys.readouterr().out == "[INFO] hi\n"

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell")
    @pytest.mark.timeout(20)
    def test_config_file_discovered(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]):
        (isolated_home / "logwrap.yaml").write_text(
            "prefix:\n  template: '<{{.Level}}> '\n", encoding="utf-8"
        )
        assert run_cli(["echo", "found"]) == 0
        assert capsys.readouterr().out == "<INFO> found\n"

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX shell")
    @pytest.mark.timeout(20)
    def test_start_failure(self, isolated_home: Path, capsys: pytest.CaptureFixture[str]):
        assert run_cli(["/nonexistent/logwrap-test-binary"]) == 1
