"""Command dispatch: resolve a plugin, run one of its commands, persist the results.

:class:`Dispatcher` is the orchestrator behind ``plugenv run``. One call
to :meth:`Dispatcher.dispatch`:

1. resolves the plugin identifier and loads its manifest fresh;
2. loads the global and plugin-local config snapshots;
3. picks the named command (or synthesises one from a stdio ``entry``);
4. runs the command once, or runs its ``steps`` in order under the
   continue-on-error / keep-going policy, merging every stdio response's
   mutations back into config before the next step is built;
5. appends exactly one record to the environment's dispatch ledger.

Every error raised out of :meth:`Dispatcher.dispatch` is a
:class:`~plugenv.exceptions.PlugenvError` whose ``log_file`` points at the
per-run log (empty when the plugin never resolved).

Example::

    result = Dispatcher(env_dir).dispatch("fmt", "check", ["--fix"])
    print(result.log_file)
"""

from __future__ import annotations

import logging
import platform
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

from plugenv import output
from plugenv.cancellation import Deadline
from plugenv.config import EnvLayout, load_global_config, load_plugin_config
from plugenv.dispatchlog import DispatchLedger, DispatchLog, log_path_for, utc_timestamp
from plugenv.exceptions import (
    CanceledError,
    CommandNotFoundError,
    ExecutionError,
    PlugenvError,
    StepFailedError,
)
from plugenv.executors import ExecutionResult, Executor, get_executor
from plugenv.manifest import load_valid_manifest
from plugenv.merge import MergeStrategy, parse_merge_strategy
from plugenv.models import CommandSpec, DispatchRecord, PluginManifest, StdioRequest, StdioResponse
from plugenv.mutations import apply_mutations
from plugenv.registry import RegistryStore
from plugenv.resolver import ResolvedPlugin, resolve_plugin

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_CANCELED = "canceled"

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
}


@dataclass
class StepOutcome:
    """What happened to one step of a multi-step command.

    Attributes:
        index: Zero-based position of the step.
        executor: ``shell`` or ``stdio``.
        exit_code: The step's process exit code.
        ok: Whether the step succeeded.
        error: Failure description for a failed step.
        duration_ms: Wall-clock time the step took.
    """

    index: int
    executor: str
    exit_code: int
    ok: bool
    error: str = ""
    duration_ms: int = 0


@dataclass
class DispatchResult:
    """Outcome of a dispatch that completed without a fatal error.

    ``status`` is always ``"ok"``; a dispatch whose failures were all
    tolerated still succeeds, and the failed steps are visible in
    :attr:`steps`.
    """

    plugin: str
    command: str
    install_name: str
    plugin_dir: Path
    log_file: Path
    status: str = STATUS_OK
    exit_code: int = 0
    duration_ms: int = 0
    steps: list[StepOutcome] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[StepOutcome]:
        return [step for step in self.steps if not step.ok]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def system_info() -> dict[str, str]:
    """``os`` and ``arch`` of the host, as sent in every request envelope."""
    machine = platform.machine().lower()
    return {
        "os": platform.system().lower(),
        "arch": _ARCH_ALIASES.get(machine, machine),
    }


def select_command(manifest: PluginManifest, name: str) -> CommandSpec:
    """Return the command *name* of *manifest*.

    Falls back to a command synthesised from a ``stdio`` entry, which
    hands any action to the entry program.

    Raises:
        CommandNotFoundError: If no command matches and there is no stdio entry.
    """
    command = manifest.find_command(name)
    if command is not None:
        return command
    if manifest.entry.type.strip().lower() == "stdio" and manifest.entry.path.strip():
        return CommandSpec(
            name=name,
            executor="stdio",
            program=manifest.entry.path,
            args=list(manifest.entry.args),
            use_stdio=True,
            log_capture=True,
        )
    raise CommandNotFoundError(f"Plugin '{manifest.name}' has no command '{name}'")


def _executor_for(spec: CommandSpec) -> Executor:
    kind = spec.executor.strip()
    if not kind and spec.use_stdio:
        kind = "stdio"
    return get_executor(kind)


class Dispatcher:
    """Runs plugin commands inside one environment.

    Args:
        env_dir: The environment root.
        registry: Registry used for plugin resolution. Defaults to the
            environment's own registry store.
    """

    def __init__(self, env_dir: str | Path, registry: Optional[RegistryStore] = None) -> None:
        self.layout = EnvLayout.of(env_dir)
        self.env_dir = self.layout.root
        self.registry = registry or RegistryStore(self.env_dir)
        self.ledger = DispatchLedger(self.env_dir)

    def dispatch(
        self,
        plugin: str,
        command: str,
        pass_args: Sequence[str] = (),
        strategy: MergeStrategy | str = MergeStrategy.OVERRIDE,
        keep_going: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> DispatchResult:
        """Run *command* of *plugin* and return its result.

        Args:
            plugin: Install name or logical name of the plugin.
            command: Command name from the manifest.
            pass_args: Extra arguments from the caller.
            strategy: Merge strategy for global config mutations.
            keep_going: Continue past failed steps of a multi-step command.
            deadline: Bound on the whole dispatch.

        Returns:
            The :class:`DispatchResult`.

        Raises:
            PlugenvError: Any resolution, manifest, execution, protocol,
                persistence or cancellation failure. ``log_file`` is set.
        """
        strategy = parse_merge_strategy(strategy)
        deadline = deadline or Deadline.never()
        pass_args = list(pass_args)
        started = time.monotonic()
        status = STATUS_ERROR
        resolved: Optional[ResolvedPlugin] = None
        log: Optional[DispatchLog] = None
        result: Optional[DispatchResult] = None

        try:
            resolved = resolve_plugin(self.env_dir, plugin, self.registry)
            manifest = load_valid_manifest(resolved.plugin_dir)
            logger.debug(
                "Dispatching %s %s from %s", resolved.install_name, command, resolved.plugin_dir
            )
            log = DispatchLog(log_path_for(resolved.plugin_dir, command))
            log.write(
                "info",
                "dispatch start",
                plugin=resolved.install_name,
                action=command,
                args=pass_args,
                merge_strategy=strategy.value,
            )
            result = self._run(
                plugin, resolved, manifest, command, pass_args, strategy, keep_going, deadline, log
            )
            status = STATUS_OK
            return result
        except CanceledError as exc:
            status = STATUS_CANCELED
            self._fail(exc, log)
            raise
        except PlugenvError as exc:
            self._fail(exc, log)
            raise
        finally:
            duration = _elapsed_ms(started)
            if result is not None:
                result.duration_ms = duration
            if log is not None:
                log.write("info", "dispatch end", status=status, duration_ms=duration)
                log.close()
            self.ledger.append(
                DispatchRecord(
                    plugin=resolved.install_name if resolved else plugin,
                    command=command,
                    args=pass_args,
                    status=status,
                    log_file=str(log.path) if log else "",
                    duration_ms=duration,
                )
            )

    @staticmethod
    def _fail(exc: PlugenvError, log: Optional[DispatchLog]) -> None:
        if log is None:
            exc.log_file = exc.log_file or ""
            return
        exc.log_file = str(log.path)
        log.write("error", "dispatch failed", error=str(exc), error_type=type(exc).__name__)

    # --- Execution ---

    def _run(
        self,
        plugin: str,
        resolved: ResolvedPlugin,
        manifest: PluginManifest,
        command: str,
        pass_args: list[str],
        strategy: MergeStrategy,
        keep_going: bool,
        deadline: Deadline,
        log: DispatchLog,
    ) -> DispatchResult:
        spec = select_command(manifest, command)
        state = _ConfigState(
            global_cfg=load_global_config(self.env_dir),
            plugin_cfg=load_plugin_config(resolved.plugin_dir, manifest.config.local_file),
        )
        result = DispatchResult(
            plugin=plugin,
            command=command,
            install_name=resolved.install_name,
            plugin_dir=resolved.plugin_dir,
            log_file=log.path,
        )
        if spec.steps:
            self._run_steps(spec, resolved, manifest, pass_args, strategy, keep_going, deadline, log, state, result)
        else:
            self._run_single(spec, resolved, manifest, pass_args, strategy, deadline, log, state, result)
        return result

    def _run_steps(
        self,
        spec: CommandSpec,
        resolved: ResolvedPlugin,
        manifest: PluginManifest,
        pass_args: list[str],
        strategy: MergeStrategy,
        keep_going: bool,
        deadline: Deadline,
        log: DispatchLog,
        state: "_ConfigState",
        result: DispatchResult,
    ) -> None:
        for index, step in enumerate(spec.steps):
            if deadline.expired:
                raise CanceledError(f"Dispatch {deadline.reason()} before step {index}")

            executor = get_executor(step.executor)
            # Only stdio steps see the caller's arguments.
            step_args = pass_args if executor.kind == "stdio" else []
            request = self.build_request(spec.name, step_args, resolved.plugin_dir, state, strategy)

            log.write("info", "step start", step=index, executor=executor.kind, program=step.program)
            step_started = time.monotonic()
            run = executor.run(step, resolved.plugin_dir, step_args, log, deadline, request)
            duration = _elapsed_ms(step_started)
            log.write(
                "info" if run.ok else "error",
                "step end",
                step=index,
                exit_code=run.exit_code,
                duration_ms=duration,
                ok=run.ok,
            )

            if run.canceled:
                raise run.error or CanceledError(f"Step {index} canceled")
            self._absorb(run, resolved, manifest, strategy, state, result)

            outcome = StepOutcome(
                index=index,
                executor=executor.kind,
                exit_code=run.exit_code,
                ok=run.ok,
                error="" if run.ok else str(run.error or f"exit code {run.exit_code}"),
                duration_ms=duration,
            )
            result.steps.append(outcome)
            if outcome.ok:
                continue

            cause = run.error or ExecutionError(f"Step exited with code {run.exit_code}")
            if step.continue_on_error or keep_going:
                log.write("warning", "step failure tolerated", step=index, error=str(cause))
                output.warning(f"Step {index} failed, continuing: {cause}")
                continue
            raise StepFailedError(index, cause)

    def _run_single(
        self,
        spec: CommandSpec,
        resolved: ResolvedPlugin,
        manifest: PluginManifest,
        pass_args: list[str],
        strategy: MergeStrategy,
        deadline: Deadline,
        log: DispatchLog,
        state: "_ConfigState",
        result: DispatchResult,
    ) -> None:
        if deadline.expired:
            raise CanceledError(f"Dispatch {deadline.reason()} before start")
        executor = _executor_for(spec)
        request = self.build_request(spec.name, pass_args, resolved.plugin_dir, state, strategy)
        run = executor.run(spec, resolved.plugin_dir, pass_args, log, deadline, request)
        result.exit_code = run.exit_code

        if run.canceled:
            raise run.error or CanceledError("Command canceled")
        self._absorb(run, resolved, manifest, strategy, state, result)
        if not run.ok:
            raise run.error or ExecutionError(f"Command exited with code {run.exit_code}")

    def _absorb(
        self,
        run: ExecutionResult,
        resolved: ResolvedPlugin,
        manifest: PluginManifest,
        strategy: MergeStrategy,
        state: "_ConfigState",
        result: DispatchResult,
    ) -> None:
        """Persist a response's mutations and surface its logs and artifacts."""
        response = run.response
        if response is None:
            return
        # Mutations apply whatever the status; persistence failures propagate.
        state.global_cfg, state.plugin_cfg = apply_mutations(
            self.env_dir,
            resolved.plugin_dir,
            manifest,
            response,
            state.global_cfg,
            state.plugin_cfg,
            strategy,
        )
        _echo(response, result)

    def build_request(
        self,
        action: str,
        args: Sequence[str],
        plugin_dir: Path,
        state: "_ConfigState",
        strategy: MergeStrategy,
    ) -> StdioRequest:
        """Build the request envelope from the current config snapshots."""
        return StdioRequest(
            action=action,
            args=list(args),
            paths={
                "home": str(self.layout.root),
                "bin": str(self.layout.bin_dir),
                "workspace": str(self.layout.workspace_dir),
                "plugin_dir": str(Path(plugin_dir).resolve()),
            },
            system=system_info(),
            config={"global": state.global_cfg, "plugin": state.plugin_cfg},
            merge_strategy=strategy.value,
            started_at=utc_timestamp(),
        )


@dataclass
class _ConfigState:
    global_cfg: dict[str, Any]
    plugin_cfg: dict[str, Any]


def _echo(response: StdioResponse, result: DispatchResult) -> None:
    for line in response.logs:
        output.info(line)
        result.logs.append(line)
    for artifact in response.artifacts:
        output.info(f"Artifact: {artifact}")
        result.artifacts.append(artifact)


def dispatch(
    env_dir: str | Path,
    plugin: str,
    command: str,
    pass_args: Sequence[str] = (),
    strategy: MergeStrategy | str = MergeStrategy.OVERRIDE,
    keep_going: bool = False,
    deadline: Optional[Deadline] = None,
    registry: Optional[RegistryStore] = None,
) -> DispatchResult:
    """Shortcut for ``Dispatcher(env_dir, registry).dispatch(...)``."""
    return Dispatcher(env_dir, registry).dispatch(
        plugin,
        command,
        pass_args,
        strategy=strategy,
        keep_going=keep_going,
        deadline=deadline,
    )
