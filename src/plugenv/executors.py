"""Shell and stdio executors for plugin commands and steps.

Two interchangeable strategies run a :class:`~plugenv.models.CommandSpec`
or :class:`~plugenv.models.Step`:

* :class:`ShellExecutor` -- joins the program and arguments into one
  command line and runs it through the system shell. Every stdout and
  stderr line is written to the dispatch log. The exit code is the
  result.
* :class:`StdioExecutor` -- spawns a program, writes one JSON request
  envelope to its stdin, closes stdin, and decodes exactly one JSON
  response envelope from its stdout. stderr lines go to the dispatch log.

Program resolution for stdio is split in two phases so each can be
tested without spawning anything:

1. :func:`resolve_entry` -- absolute paths are kept, paths containing a
   separator are resolved against the plugin directory, bare names are
   left for the ``PATH`` search.
2. :func:`resolve_interpreter` -- a plugin-relative script whose first
   line is a shebang is launched as ``<interpreter> <script> <args...>``.

Both executors honour a :class:`~plugenv.cancellation.Deadline`: when it
expires the child's process group is terminated (then killed after a
short grace period) and the result is flagged ``canceled``.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Callable, Optional, Sequence, Union

from pydantic import ValidationError

from plugenv.cancellation import Deadline
from plugenv.dispatchlog import DispatchLog
from plugenv.exceptions import (
    CanceledError,
    ExecutionError,
    PlugenvError,
    ProtocolError,
    UnsupportedExecutorError,
)
from plugenv.models import CommandSpec, Step, StdioRequest, StdioResponse

logger = logging.getLogger(__name__)

Runnable = Union[CommandSpec, Step]

_POSIX = os.name == "posix"
_POLL_INTERVAL = 0.05
_TERMINATE_GRACE = 2.0
_READER_JOIN_TIMEOUT = 5.0


@dataclass
class ExecutionResult:
    """Outcome of running one command or step.

    Attributes:
        exit_code: The process exit code; ``1`` when the process never
            started or its response could not be used.
        response: The decoded (or synthetic) response for stdio runs.
        error: The failure cause when the run did not succeed.
        canceled: True when the deadline or a cancel stopped the process.
    """

    exit_code: int
    response: Optional[StdioResponse] = None
    error: Optional[PlugenvError] = None
    canceled: bool = False

    @property
    def ok(self) -> bool:
        if self.canceled or self.error is not None or self.exit_code != 0:
            return False
        return self.response is None or self.response.ok


# --- Shared process helpers ---


def workdir_for(plugin_dir: str | Path, workdir: str) -> Path:
    """Resolve a manifest ``workdir``: empty means the plugin dir, relative is plugin-relative."""
    workdir = workdir.strip()
    if not workdir:
        return Path(plugin_dir)
    path = Path(workdir)
    return path if path.is_absolute() else Path(plugin_dir) / path


def build_env(extra: dict[str, str]) -> dict[str, str]:
    """The current process environment with *extra* overrides applied."""
    env = dict(os.environ)
    env.update(extra)
    return env


def _popen_kwargs() -> dict[str, Any]:
    # A new session lets cancellation signal the shell and its children together.
    return {"start_new_session": True} if _POSIX else {}


def _pump_lines(stream: IO[str], callback: Callable[[str], None]) -> None:
    for line in stream:
        callback(line)
    stream.close()


def _start_thread(target: Callable[..., None], *args: Any) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


def _signal_process(proc: subprocess.Popen, sig: int) -> None:
    try:
        if _POSIX:
            os.killpg(proc.pid, sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        # Already gone.
        return


def _terminate(proc: subprocess.Popen) -> None:
    """Stop *proc* (and its process group): SIGTERM, then SIGKILL after a grace period."""
    if proc.poll() is not None:
        return
    _signal_process(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=_TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        logger.debug("Process %s ignored SIGTERM, killing", proc.pid)
        _signal_process(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()


def _wait(proc: subprocess.Popen, deadline: Optional[Deadline]) -> bool:
    """Wait for *proc* to exit. Returns True when it had to be stopped for the deadline."""
    if deadline is None:
        proc.wait()
        return False
    while True:
        if deadline.expired:
            _terminate(proc)
            return True
        remaining = deadline.timeout_seconds
        slice_ = _POLL_INTERVAL if remaining is None else min(_POLL_INTERVAL, remaining)
        try:
            proc.wait(timeout=max(slice_, 0.001))
            return False
        except subprocess.TimeoutExpired:
            continue


def _join(threads: Sequence[threading.Thread], timeout: float) -> None:
    for thread in threads:
        thread.join(timeout)


def _drain(threads: Sequence[threading.Thread], deadline: Optional[Deadline]) -> bool:
    """Join the pipe threads. Returns True when the deadline expired first."""
    for thread in threads:
        while thread.is_alive():
            if deadline is not None and deadline.expired:
                return True
            thread.join(_POLL_INTERVAL)
    return False


def _stop_group(proc: subprocess.Popen, threads: Sequence[threading.Thread]) -> None:
    """Stop what is left of *proc*'s process group after its leader exited."""
    _signal_process(proc, signal.SIGTERM)
    _join(threads, _TERMINATE_GRACE)
    if any(thread.is_alive() for thread in threads):
        logger.debug("Process group %s ignored SIGTERM, killing", proc.pid)
        _signal_process(proc, getattr(signal, "SIGKILL", signal.SIGTERM))


def _finish(
    proc: subprocess.Popen,
    threads: Sequence[threading.Thread],
    deadline: Optional[Deadline],
) -> bool:
    """Wait for *proc* and its pipe threads. Returns True when the deadline stopped them.

    Background children can keep the pipes open after *proc* exits, so
    draining them is bounded by the deadline as well.
    """
    canceled = _wait(proc, deadline)
    if not canceled and _drain(threads, deadline):
        _stop_group(proc, threads)
        canceled = True
    if canceled:
        _join(threads, _READER_JOIN_TIMEOUT)
    return canceled


def _canceled_code(proc: subprocess.Popen) -> int:
    code = proc.returncode
    return code if code not in (None, 0) else 1


def _canceled_result(log: DispatchLog, deadline: Deadline, response: bool) -> ExecutionResult:
    reason = deadline.reason()
    log.write("error", "execution stopped", reason=reason)
    error = CanceledError(f"Plugin process stopped: {reason}")
    return ExecutionResult(
        exit_code=1,
        response=StdioResponse.error(str(error)) if response else None,
        error=error,
        canceled=True,
    )


# --- Executors ---


class Executor(ABC):
    """Strategy interface shared by the shell and stdio executors."""

    kind: str = ""

    @abstractmethod
    def run(
        self,
        spec: Runnable,
        plugin_dir: Path,
        pass_args: Sequence[str],
        log: DispatchLog,
        deadline: Optional[Deadline] = None,
        request: Optional[StdioRequest] = None,
    ) -> ExecutionResult:
        """Run *spec* for the plugin at *plugin_dir* and report the outcome.

        Args:
            spec: The command or step to run.
            plugin_dir: The plugin's install directory.
            pass_args: Caller arguments appended after the spec's own.
            log: Dispatch log receiving captured output and diagnostics.
            deadline: Optional deadline bounding the process.
            request: The request envelope (stdio only).
        """


def build_shell_line(program: str, args: Sequence[str], pass_args: Sequence[str]) -> str:
    """Assemble the shell command line.

    ``program`` is used verbatim; when it is empty, ``args`` joined with
    spaces stand in for it. Pass-through arguments are appended last.
    """
    line = program.strip()
    if not line and args:
        line = " ".join(args)
    if pass_args:
        line = f"{line} {' '.join(pass_args)}".strip()
    return line


class ShellExecutor(Executor):
    """Run a command line through the system shell, capturing output into the log."""

    kind = "shell"

    def run(
        self,
        spec: Runnable,
        plugin_dir: Path,
        pass_args: Sequence[str],
        log: DispatchLog,
        deadline: Optional[Deadline] = None,
        request: Optional[StdioRequest] = None,
    ) -> ExecutionResult:
        line = build_shell_line(spec.program, spec.args, pass_args)
        cwd = workdir_for(plugin_dir, spec.workdir)
        log.write("debug", "spawn shell", line=line, workdir=str(cwd))

        if deadline is not None and deadline.expired:
            return _canceled_result(log, deadline, response=False)

        try:
            proc = subprocess.Popen(
                line,
                shell=True,
                cwd=str(cwd),
                env=build_env(spec.env),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **_popen_kwargs(),
            )
        except OSError as exc:
            log.write("error", "start failed", error=str(exc))
            return ExecutionResult(
                exit_code=1,
                error=ExecutionError(f"Failed to start shell command: {exc}"),
            )

        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            _start_thread(_pump_lines, proc.stdout, log.line_writer("stdout")),
            _start_thread(_pump_lines, proc.stderr, log.line_writer("stderr")),
        ]
        canceled = _finish(proc, readers, deadline)

        if canceled:
            assert deadline is not None
            result = _canceled_result(log, deadline, response=False)
            result.exit_code = _canceled_code(proc)
            return result

        code = proc.returncode
        error = None
        if code != 0:
            error = ExecutionError(f"Shell command exited with code {code}")
        return ExecutionResult(exit_code=code, error=error)


@dataclass(frozen=True)
class Entry:
    """A resolved stdio program.

    Attributes:
        path: What to execute: an absolute path, or a bare command name
            left for the ``PATH`` search.
        plugin_relative: True when *path* was resolved inside the plugin
            directory (only such files are inspected for a shebang).
    """

    path: str
    plugin_relative: bool = False


def _has_separator(program: str) -> bool:
    return "/" in program or os.sep in program or bool(os.altsep and os.altsep in program)


def resolve_entry(program: str, plugin_dir: str | Path) -> Entry:
    """Phase one of stdio resolution: place *program* relative to the plugin.

    Examples::

        resolve_entry("/usr/bin/tool", d)   # Entry("/usr/bin/tool")
        resolve_entry("./run.py", d)        # Entry("<d>/run.py", plugin_relative=True)
        resolve_entry("python3", d)         # Entry("python3")
    """
    program = program.strip()
    if Path(program).is_absolute():
        return Entry(program)
    if _has_separator(program):
        return Entry(str(Path(plugin_dir) / program), plugin_relative=True)
    return Entry(program)


def read_shebang(path: str | Path) -> Optional[list[str]]:
    """Return the words after ``#!`` on the first line of *path*, or ``None``."""
    try:
        with open(path, "rb") as fh:
            first = fh.readline(1024)
    except OSError:
        return None
    if not first.startswith(b"#!"):
        return None
    words = first[2:].decode("utf-8", errors="replace").strip().split()
    return words or None


def resolve_interpreter(entry: Entry) -> Optional[list[str]]:
    """Phase two of stdio resolution: find the interpreter named by a shebang.

    Only plugin-relative regular files are inspected. ``#!/abs/interp
    [opts]`` is used directly; ``#!/usr/bin/env [-S] name [opts]`` looks
    ``name`` up on ``PATH``.

    Returns:
        The interpreter command prefix (interpreter plus options), or
        ``None`` when the entry should be executed directly.
    """
    if not entry.plugin_relative or not Path(entry.path).is_file():
        return None
    words = read_shebang(entry.path)
    if not words:
        return None

    if Path(words[0]).name == "env":
        rest = words[1:]
        if rest and rest[0] == "-S":
            rest = rest[1:]
        if not rest:
            return None
        found = shutil.which(rest[0])
        if found is None:
            logger.debug("Shebang interpreter '%s' not on PATH", rest[0])
            return None
        return [found, *rest[1:]]

    if Path(words[0]).is_absolute():
        return list(words)
    return None


def build_stdio_argv(entry: Entry, args: Sequence[str]) -> tuple[list[str], Optional[list[str]]]:
    """Return ``(argv, interpreter)`` for spawning *entry* with *args*."""
    interpreter = resolve_interpreter(entry)
    if interpreter:
        return [*interpreter, entry.path, *args], interpreter
    return [entry.path, *args], None


def decode_response(text: str) -> StdioResponse:
    """Decode the first JSON value on a plugin's stdout into a response.

    Leading whitespace is skipped and anything after the first value is
    ignored.

    Raises:
        ProtocolError: If stdout is empty, is not JSON, or is not an object.
    """
    stripped = text.lstrip()
    if not stripped:
        raise ProtocolError("Plugin produced no response on stdout")
    try:
        payload, _ = json.JSONDecoder().raw_decode(stripped)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON response: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError(
            f"Response must be a JSON object (got {type(payload).__name__})"
        )
    try:
        return StdioResponse.model_validate(payload)
    except ValidationError as exc:
        raise ProtocolError(f"Malformed response envelope: {exc}") from exc


class StdioExecutor(Executor):
    """Exchange one JSON request/response pair with a plugin process over stdio."""

    kind = "stdio"

    def run(
        self,
        spec: Runnable,
        plugin_dir: Path,
        pass_args: Sequence[str],
        log: DispatchLog,
        deadline: Optional[Deadline] = None,
        request: Optional[StdioRequest] = None,
    ) -> ExecutionResult:
        if request is None:
            raise ValueError("stdio execution requires a request envelope")

        entry = resolve_entry(spec.program, plugin_dir)
        args = [*spec.args, *pass_args]
        argv, interpreter = build_stdio_argv(entry, args)
        cwd = workdir_for(plugin_dir, spec.workdir)
        log.write(
            "debug",
            "spawn stdio",
            entry=entry.path,
            interp=" ".join(interpreter or []),
            args=args,
            workdir=str(cwd),
        )

        if deadline is not None and deadline.expired:
            return _canceled_result(log, deadline, response=True)

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=build_env(spec.env),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **_popen_kwargs(),
            )
        except OSError as exc:
            log.write("error", "start failed", error=str(exc))
            error = ExecutionError(f"Failed to start {entry.path}: {exc}")
            return ExecutionResult(
                exit_code=1, response=StdioResponse.error(str(exc)), error=error
            )

        payload = request.model_dump_json()
        captured: list[str] = []
        assert proc.stdin is not None and proc.stdout is not None and proc.stderr is not None
        threads = [
            _start_thread(self._send, proc.stdin, payload, log),
            _start_thread(self._collect, proc.stdout, captured),
            _start_thread(_pump_lines, proc.stderr, log.line_writer("stderr")),
        ]
        canceled = _finish(proc, threads, deadline)

        if canceled:
            assert deadline is not None
            result = _canceled_result(log, deadline, response=True)
            result.exit_code = _canceled_code(proc)
            return result

        code = proc.returncode
        try:
            response = decode_response("".join(captured))
        except ProtocolError as exc:
            log.write("error", "resp decode failed", error=str(exc))
            return ExecutionResult(
                exit_code=code or 1, response=StdioResponse.error(str(exc)), error=exc
            )

        error: Optional[PlugenvError] = None
        if not response.ok:
            error = ExecutionError(f"Plugin error: {response.message or response.status}")
        elif code != 0:
            error = ExecutionError(f"Plugin process exited with code {code}")
        return ExecutionResult(exit_code=code, response=response, error=error)

    @staticmethod
    def _send(stdin: IO[str], payload: str, log: DispatchLog) -> None:
        try:
            stdin.write(payload + "\n")
            stdin.flush()
        except (BrokenPipeError, OSError) as exc:
            log.write("warning", "request write failed", error=str(exc))
        finally:
            try:
                stdin.close()
            except (BrokenPipeError, OSError):
                log.write("debug", "stdin already closed")

    @staticmethod
    def _collect(stdout: IO[str], sink: list[str]) -> None:
        sink.append(stdout.read())
        stdout.close()


_EXECUTORS: dict[str, Executor] = {
    ShellExecutor.kind: ShellExecutor(),
    StdioExecutor.kind: StdioExecutor(),
}


def get_executor(kind: str) -> Executor:
    """Return the executor for *kind* (``shell`` or ``stdio``, case-insensitive).

    Raises:
        UnsupportedExecutorError: For any other kind.
    """
    executor = _EXECUTORS.get(kind.strip().lower())
    if executor is None:
        raise UnsupportedExecutorError(f"Unsupported executor: {kind!r}")
    return executor
