"""CLI tests for the plugenv Typer app -- run and plugin sub-commands."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import yaml

from conftest import base_manifest, shell_step, write_plugin
from plugenv import __version__
from plugenv.app import app
from plugenv.dispatchlog import DispatchLedger
from plugenv.exit_codes import (
    EXIT_CANCELED,
    EXIT_EXECUTION_FAILURE,
    EXIT_INVALID_MANIFEST,
    EXIT_INVALID_USAGE,
    EXIT_NOT_FOUND,
)

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


@pytest.fixture
def source(tmp_path: Path) -> Path:
    manifest = base_manifest(
        "tools",
        commands=[
            {"name": "hello", "executor": "shell", "program": "echo hello > hello.txt"},
            {"name": "build", "executor": "stdio", "program": "./plugin.py", "summary": "Build it"},
            {"name": "ci", "steps": [shell_step("exit 2"), shell_step("touch ci-done")]},
            {"name": "slow", "executor": "shell", "program": "sleep 5"},
        ],
    )
    return write_plugin(tmp_path / "src" / "tools", manifest)


def _invoke(cli_runner, env_dir: Path, *args: str):
    return cli_runner.invoke(app, ["--env", str(env_dir), "--no-color", *args])


class TestRoot:
    def test_version(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_help_lists_commands(self, cli_runner) -> None:
        result = cli_runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "run" in result.stdout
        assert "plugin" in result.stdout


class TestPluginCommands:
    def test_add_list_info_remove(self, cli_runner, env_dir: Path, source: Path) -> None:
        result = _invoke(cli_runner, env_dir, "plugin", "add", str(source))
        assert result.exit_code == 0, result.output
        assert (env_dir / "plugins" / "tools" / "manifest.yaml").is_file()

        result = _invoke(cli_runner, env_dir, "--json", "plugin", "list")
        assert result.exit_code == 0
        listed = json.loads(result.stdout)
        assert [p["install_name"] for p in listed] == ["tools"]
        assert listed[0]["shims"] == ["tools"]

        result = _invoke(cli_runner, env_dir, "plugin", "info", "tools")
        assert result.exit_code == 0
        assert "Version:     1.0.0" in result.stdout
        assert "Build it" in result.stdout

        result = _invoke(cli_runner, env_dir, "plugin", "remove", "tools")
        assert result.exit_code == 0
        assert not (env_dir / "plugins" / "tools").exists()

    def test_add_with_name(self, cli_runner, env_dir: Path, source: Path) -> None:
        result = _invoke(cli_runner, env_dir, "plugin", "add", str(source), "--name", "tools-dev")
        assert result.exit_code == 0
        assert (env_dir / "plugins" / "tools-dev").is_dir()

    def test_add_invalid_manifest(self, cli_runner, env_dir: Path, tmp_path: Path) -> None:
        bad = write_plugin(tmp_path / "bad", base_manifest("bad", expose=[]))
        result = _invoke(cli_runner, env_dir, "plugin", "add", str(bad))
        assert result.exit_code == EXIT_INVALID_MANIFEST

    def test_list_empty_plain(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "plugin", "list")
        assert result.exit_code == 0
        assert "No plugins installed" in result.output

    def test_info_json(self, cli_runner, env_dir: Path, source: Path) -> None:
        _invoke(cli_runner, env_dir, "plugin", "add", str(source))
        result = _invoke(cli_runner, env_dir, "--json", "plugin", "info", "tools")
        data = json.loads(result.stdout)
        assert data["install_name"] == "tools"
        assert [c["name"] for c in data["commands"]] == ["hello", "build", "ci", "slow"]

    def test_remove_unknown(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "plugin", "remove", "ghost")
        assert result.exit_code == EXIT_NOT_FOUND
        result = _invoke(cli_runner, env_dir, "plugin", "remove", "ghost", "--force")
        assert result.exit_code == 0


@posix_only
class TestRunCommand:
    @pytest.fixture(autouse=True)
    def _installed(self, cli_runner, env_dir: Path, source: Path) -> None:
        result = _invoke(cli_runner, env_dir, "plugin", "add", str(source))
        assert result.exit_code == 0, result.output

    def test_shell_command(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "hello")
        assert result.exit_code == 0, result.output
        assert (env_dir / "plugins" / "tools" / "hello.txt").read_text().strip() == "hello"

    def test_stdio_command_echoes_artifacts(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "build")
        assert result.exit_code == 0, result.output
        assert "Artifact: dist/app.tar.gz" in result.output
        assert "compiled 3 files" in result.output
        assert yaml.safe_load((env_dir / "plugenv.yaml").read_text()) == {"a": 1}

    def test_merge_option(self, cli_runner, env_dir: Path) -> None:
        (env_dir / "plugenv.yaml").write_text("a: 0\n")
        result = _invoke(cli_runner, env_dir, "run", "tools", "build", "--merge", "keep")
        assert result.exit_code == 0, result.output
        assert yaml.safe_load((env_dir / "plugenv.yaml").read_text()) == {"a": 0}

    def test_step_failure_exit_code(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "ci")
        assert result.exit_code == EXIT_EXECUTION_FAILURE
        assert "step 0 failed" in result.output
        assert not (env_dir / "plugins" / "tools" / "ci-done").exists()

    def test_keep_going(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "ci", "--keep-going")
        assert result.exit_code == 0, result.output
        assert (env_dir / "plugins" / "tools" / "ci-done").exists()

    def test_timeout(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "slow", "--timeout", "0.5")
        assert result.exit_code == EXIT_CANCELED
        assert DispatchLedger(env_dir).read()[-1].status == "canceled"

    def test_verbose_shows_log_file(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "--verbose", "run", "tools", "hello")
        assert result.exit_code == 0, result.output
        assert "[debug] Log: " in result.output
        quiet = _invoke(cli_runner, env_dir, "run", "tools", "hello")
        assert "[debug]" not in quiet.output

    def test_invalid_timeout(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "hello", "--timeout", "0")
        assert result.exit_code == EXIT_INVALID_USAGE

    def test_unknown_plugin(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "ghost", "hello")
        assert result.exit_code == EXIT_NOT_FOUND

    def test_unknown_command(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "run", "tools", "nope")
        assert result.exit_code == EXIT_NOT_FOUND
        assert "Details:" in result.output

    def test_json_result(self, cli_runner, env_dir: Path) -> None:
        result = _invoke(cli_runner, env_dir, "--json", "--quiet", "run", "tools", "hello")
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["status"] == "ok"
        assert data["install_name"] == "tools"

    def test_env_from_environment_variable(
        self, cli_runner, env_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("PLUGENV_HOME", str(env_dir))
        result = cli_runner.invoke(app, ["run", "tools", "hello"])
        assert result.exit_code == 0, result.output
