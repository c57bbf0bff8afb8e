"""Tests for plugenv.executors -- shell and stdio execution, entry resolution."""

from __future__ import annotations

import json
import os
import shutil
import sys
import time
from pathlib import Path

import pytest

from conftest import STDIO_SCRIPT, write_plugin
from plugenv.cancellation import Deadline
from plugenv.dispatchlog import DispatchLog
from plugenv.exceptions import (
    CanceledError,
    ExecutionError,
    ProtocolError,
    UnsupportedExecutorError,
)
from plugenv.executors import (
    Entry,
    ShellExecutor,
    StdioExecutor,
    build_shell_line,
    build_stdio_argv,
    decode_response,
    get_executor,
    resolve_entry,
    resolve_interpreter,
    workdir_for,
)
from plugenv.models import CommandSpec, Step, StdioRequest

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires a POSIX shell")


def _events(log: DispatchLog) -> list[dict]:
    return [json.loads(line) for line in log.path.read_text().splitlines()]


@pytest.fixture
def plugin_dir(tmp_path: Path) -> Path:
    return write_plugin(tmp_path / "plugin", manifest=None)


@pytest.fixture
def log(tmp_path: Path):
    with DispatchLog(tmp_path / "logs" / "run.log") as dispatch_log:
        yield dispatch_log


def _request(**fields) -> StdioRequest:
    fields.setdefault("action", "build")
    fields.setdefault("config", {"global": {}, "plugin": {}})
    return StdioRequest(**fields)


class TestGetExecutor:
    def test_known_kinds(self) -> None:
        assert isinstance(get_executor("shell"), ShellExecutor)
        assert isinstance(get_executor(" STDIO "), StdioExecutor)

    def test_unknown_kind(self) -> None:
        with pytest.raises(UnsupportedExecutorError):
            get_executor("docker")


class TestShellLine:
    def test_program_then_pass_args(self) -> None:
        assert build_shell_line("  make build ", ["ignored"], ["-j", "4"]) == "make build -j 4"

    def test_args_stand_in_for_empty_program(self) -> None:
        assert build_shell_line("", ["echo", "hi"], []) == "echo hi"

    def test_workdir(self, tmp_path: Path) -> None:
        assert workdir_for(tmp_path, "") == tmp_path
        assert workdir_for(tmp_path, "sub") == tmp_path / "sub"
        assert workdir_for(tmp_path, "/abs") == Path("/abs")


@posix_only
class TestShellExecutor:
    def test_captures_stdout_and_stderr(self, plugin_dir: Path, log: DispatchLog) -> None:
        spec = CommandSpec(name="x", executor="shell", program="echo out; echo err 1>&2")
        result = ShellExecutor().run(spec, plugin_dir, [], log)
        assert result.ok
        assert result.exit_code == 0
        events = _events(log)
        assert any(e["level"] == "stdout" and e["message"] == "out" for e in events)
        assert any(e["level"] == "stderr" and e["message"] == "err" for e in events)
        assert all("ts" in e for e in events)

    def test_pass_args_and_env_and_workdir(self, plugin_dir: Path, log: DispatchLog) -> None:
        (plugin_dir / "sub").mkdir()
        spec = Step(
            executor="shell",
            program="echo $GREETING > out.txt; echo",
            workdir="sub",
            env={"GREETING": "hi"},
        )
        result = ShellExecutor().run(spec, plugin_dir, ["tail"], log)
        assert result.ok
        assert (plugin_dir / "sub" / "out.txt").read_text().strip() == "hi"
        assert any(e["message"] == "tail" for e in _events(log))

    def test_non_zero_exit(self, plugin_dir: Path, log: DispatchLog) -> None:
        result = ShellExecutor().run(Step(executor="shell", program="exit 3"), plugin_dir, [], log)
        assert not result.ok
        assert result.exit_code == 3
        assert isinstance(result.error, ExecutionError)

    def test_deadline_terminates(self, plugin_dir: Path, log: DispatchLog) -> None:
        started = time.monotonic()
        result = ShellExecutor().run(
            Step(executor="shell", program="sleep 5"), plugin_dir, [], log, Deadline(0.3)
        )
        assert time.monotonic() - started < 4
        assert result.canceled
        assert result.exit_code != 0
        assert isinstance(result.error, CanceledError)

    def test_deadline_bounds_background_child_holding_stdout(
        self, plugin_dir: Path, log: DispatchLog
    ) -> None:
        started = time.monotonic()
        result = ShellExecutor().run(
            Step(executor="shell", program="sleep 4 & echo started"),
            plugin_dir,
            [],
            log,
            Deadline(0.5),
        )
        assert time.monotonic() - started < 2
        assert result.canceled
        assert result.exit_code != 0
        assert any(e["message"] == "started" for e in _events(log))

    def test_expired_deadline_never_starts(self, plugin_dir: Path, log: DispatchLog) -> None:
        deadline = Deadline.never()
        deadline.cancel()
        result = ShellExecutor().run(
            Step(executor="shell", program="touch started"), plugin_dir, [], log, deadline
        )
        assert result.canceled
        assert not (plugin_dir / "started").exists()


class TestEntryResolution:
    def test_absolute(self, tmp_path: Path) -> None:
        program = str(tmp_path / "tool")
        assert resolve_entry(program, tmp_path) == Entry(program)

    def test_relative_path(self, tmp_path: Path) -> None:
        entry = resolve_entry("./bin/run.py", tmp_path)
        assert entry.plugin_relative
        assert Path(entry.path) == tmp_path / "bin" / "run.py"

    def test_bare_name(self, tmp_path: Path) -> None:
        assert resolve_entry("python3", tmp_path) == Entry("python3")

    def test_absolute_shebang(self, plugin_dir: Path) -> None:
        entry = resolve_entry("./plugin.py", plugin_dir)
        assert resolve_interpreter(entry) == [sys.executable]
        argv, interpreter = build_stdio_argv(entry, ["a"])
        assert argv == [sys.executable, entry.path, "a"]
        assert interpreter == [sys.executable]

    def test_env_shebang_with_options(self, tmp_path: Path) -> None:
        found = shutil.which("sh")
        if found is None:
            pytest.skip("sh not on PATH")
        script = tmp_path / "run"
        script.write_text("#!/usr/bin/env -S sh -e\necho hi\n")
        assert resolve_interpreter(Entry(str(script), plugin_relative=True)) == [found, "-e"]

    def test_no_shebang(self, tmp_path: Path) -> None:
        script = tmp_path / "run"
        script.write_text("echo hi\n")
        assert resolve_interpreter(Entry(str(script), plugin_relative=True)) is None

    def test_non_plugin_relative_not_inspected(self, plugin_dir: Path) -> None:
        entry = Entry(str(plugin_dir / "plugin.py"))
        assert resolve_interpreter(entry) is None
        argv, interpreter = build_stdio_argv(entry, [])
        assert argv == [entry.path]
        assert interpreter is None


class TestDecodeResponse:
    def test_leading_whitespace_and_trailing_data(self) -> None:
        response = decode_response('\n  {"status": "ok", "logs": ["x"]} trailing garbage')
        assert response.ok
        assert response.logs == ["x"]

    def test_empty(self) -> None:
        with pytest.raises(ProtocolError):
            decode_response("   ")

    def test_not_json(self) -> None:
        with pytest.raises(ProtocolError):
            decode_response("hello")

    def test_not_an_object(self) -> None:
        with pytest.raises(ProtocolError):
            decode_response("[1, 2]")

    def test_mutations_shape(self) -> None:
        response = decode_response(
            '{"status": "ok", "mutations": {"global": {"a": 1}, "plugin": [1]}}'
        )
        assert response.mutations.global_ == {"a": 1}
        assert response.mutations.plugin is None


@posix_only
class TestStdioExecutor:
    def test_round_trip(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py")
        result = StdioExecutor().run(step, plugin_dir, [], log, request=_request())
        assert result.ok, result.error
        assert result.response is not None
        assert result.response.artifacts == ["dist/app.tar.gz"]
        assert result.response.mutations.global_ == {"a": 1}
        spawn = next(e for e in _events(log) if e["message"] == "spawn stdio")
        assert spawn["interp"] == sys.executable

    def test_request_envelope_and_args(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py", args=["capture"])
        request = _request(args=["--fast"], merge_strategy="append")
        result = StdioExecutor().run(step, plugin_dir, ["--fast"], log, request=request)
        assert result.ok
        sent = json.loads((plugin_dir / "request.json").read_text())
        assert sent["action"] == "build"
        assert sent["args"] == ["--fast"]
        assert sent["merge_strategy"] == "append"

    def test_error_status(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py", args=["fail"])
        result = StdioExecutor().run(step, plugin_dir, [], log, request=_request())
        assert not result.ok
        assert result.exit_code == 0
        assert isinstance(result.error, ExecutionError)
        assert result.response.mutations.global_ == {"failed": True}
        assert any(e["level"] == "stderr" for e in _events(log))

    def test_garbage_output(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py", args=["garbage"])
        result = StdioExecutor().run(step, plugin_dir, [], log, request=_request())
        assert not result.ok
        assert result.exit_code == 1
        assert isinstance(result.error, ProtocolError)
        assert result.response.status == "error"

    def test_non_zero_exit_with_ok_status(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py", args=["exit3"])
        result = StdioExecutor().run(step, plugin_dir, [], log, request=_request())
        assert not result.ok
        assert result.exit_code == 3
        assert result.response.ok

    def test_deadline_terminates(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./plugin.py", args=["sleep"])
        started = time.monotonic()
        result = StdioExecutor().run(
            step, plugin_dir, [], log, Deadline(0.3), request=_request()
        )
        assert time.monotonic() - started < 4
        assert result.canceled
        assert result.exit_code != 0
        assert isinstance(result.error, CanceledError)
        assert result.response is not None
        assert result.response.status != "ok"

    def test_start_failure(self, plugin_dir: Path, log: DispatchLog) -> None:
        step = Step(executor="stdio", program="./missing-program")
        result = StdioExecutor().run(step, plugin_dir, [], log, request=_request())
        assert result.exit_code == 1
        assert isinstance(result.error, ExecutionError)
        assert result.response.status == "error"

    def test_requires_request(self, plugin_dir: Path, log: DispatchLog) -> None:
        with pytest.raises(ValueError):
            StdioExecutor().run(Step(executor="stdio", program="./plugin.py"), plugin_dir, [], log)


def test_script_fixture_has_shebang() -> None:
    assert STDIO_SCRIPT.startswith(f"#!{sys.executable}\n")
