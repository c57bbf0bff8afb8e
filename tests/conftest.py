"""Shared test fixtures for plugenv.

Provides an isolated environment directory, a plugin builder that writes
manifests and a small stdio plugin script into it, output state
management, and a CLI runner. These fixtures are automatically
discovered by pytest and available to all test modules without explicit
imports.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import yaml

from plugenv.models import InstalledPlugin
from plugenv.output import OutputFormat, OutputManager, reset_output, set_output
from plugenv.registry import RegistryStore


# ---------------------------------------------------------------------------
# A stdio plugin used across the dispatcher, executor and CLI tests.
#
# Its behaviour is picked by its first argv word:
#   ok (default)  -- logs, artifacts, global {"a": 1}, plugin {"built": true}
#   bump          -- increments config.global.counter
#   fail          -- status error, still mutates global {"failed": true}
#   garbage       -- writes non-JSON to stdout
#   capture       -- saves the request envelope to request.json
#   sleep         -- sleeps 5 s before an ok response
#   exit3         -- valid ok response, then exit code 3
# ---------------------------------------------------------------------------

STDIO_SCRIPT = f"""#!{sys.executable}
import json
import sys
import time

request = json.load(sys.stdin)
mode = sys.argv[1] if len(sys.argv) > 1 else "ok"
config_global = request["config"]["global"]

if mode == "bump":
    response = {{
        "status": "ok",
        "mutations": {{"global": {{"counter": config_global.get("counter", 0) + 1}}}},
    }}
elif mode == "fail":
    sys.stderr.write("about to fail\\n")
    response = {{
        "status": "error",
        "message": "boom",
        "mutations": {{"global": {{"failed": True}}}},
    }}
elif mode == "garbage":
    print("this is not json")
    sys.exit(0)
elif mode == "capture":
    with open("request.json", "w") as fh:
        json.dump(request, fh)
    response = {{"status": "ok"}}
elif mode == "sleep":
    time.sleep(5)
    response = {{"status": "ok"}}
elif mode == "exit3":
    print(json.dumps({{"status": "ok"}}))
    sys.exit(3)
else:
    response = {{
        "status": "ok",
        "message": "built",
        "logs": ["compiled 3 files"],
        "artifacts": ["dist/app.tar.gz"],
        "mutations": {{"global": {{"a": 1}}, "plugin": {{"built": True}}}},
    }}

print(json.dumps(response))
"""


def stdio_step(mode: str = "ok", **extra: Any) -> dict[str, Any]:
    """A manifest step running the bundled stdio script in *mode*."""
    return {"executor": "stdio", "program": "./plugin.py", "args": [mode], **extra}


def shell_step(line: str, **extra: Any) -> dict[str, Any]:
    """A manifest step running *line* through the shell."""
    return {"executor": "shell", "program": line, **extra}


def base_manifest(name: str = "demo", **fields: Any) -> dict[str, Any]:
    """A minimal valid manifest dict, with *fields* overriding the defaults."""
    manifest: dict[str, Any] = {
        "name": name,
        "version": "1.0.0",
        "expose": [name],
        "commands": [{"name": "hello", "executor": "shell", "program": "echo hello"}],
    }
    manifest.update(fields)
    return manifest


# ---------------------------------------------------------------------------
# Auto-reset global output state between tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_output_between_tests() -> None:
    """Reset the global OutputManager after every test.

    The OutputManager caches references to sys.stdout/sys.stderr at
    creation time. When Typer's CliRunner redirects those streams during
    a test and the test finishes, the cached references become stale.
    Resetting forces a fresh manager to be created on next use.
    """
    yield
    reset_output()


@pytest.fixture(autouse=True)
def _isolate_env_var(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's PLUGENV_HOME from leaking into tests."""
    monkeypatch.delenv("PLUGENV_HOME", raising=False)


# ---------------------------------------------------------------------------
# Environment fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def env_dir(tmp_path: Path) -> Path:
    """An empty environment root."""
    root = tmp_path / "env"
    root.mkdir()
    return root


@pytest.fixture
def registry(env_dir: Path) -> RegistryStore:
    return RegistryStore(env_dir)


def write_plugin(
    directory: Path,
    manifest: Optional[dict[str, Any]],
    filename: str = "manifest.yaml",
) -> Path:
    """Write *manifest* and the stdio script into *directory*."""
    directory.mkdir(parents=True, exist_ok=True)
    if manifest is not None:
        if filename.endswith(".json"):
            import json

            (directory / filename).write_text(json.dumps(manifest), encoding="utf-8")
        else:
            (directory / filename).write_text(yaml.safe_dump(manifest), encoding="utf-8")
    (directory / "plugin.py").write_text(STDIO_SCRIPT, encoding="utf-8")
    return directory


@pytest.fixture
def make_plugin(env_dir: Path, registry: RegistryStore) -> Callable[..., Path]:
    """Factory installing a plugin directly under ``<env>/plugins``.

    Args (of the returned callable):
        install_name: Directory name under ``plugins/``.
        manifest: Manifest dict; defaults to :func:`base_manifest`.
        register: Also write a registry record.

    Returns:
        The plugin directory.
    """

    def _make(
        install_name: str = "demo",
        manifest: Optional[dict[str, Any]] = None,
        register: bool = True,
    ) -> Path:
        manifest = manifest if manifest is not None else base_manifest(install_name)
        plugin_dir = write_plugin(env_dir / "plugins" / install_name, manifest)
        if register:
            registry.register(
                InstalledPlugin(
                    name=manifest.get("name", install_name),
                    install_name=install_name,
                    version=str(manifest.get("version", "")),
                    source="local",
                    shims=list(manifest.get("expose", [])),
                )
            )
        return plugin_dir

    return _make


# ---------------------------------------------------------------------------
# Output fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def quiet_output() -> OutputManager:
    """Install a quiet PLAIN output manager for tests that don't care about output."""
    output = OutputManager(format=OutputFormat.PLAIN, quiet=True, no_color=True)
    set_output(output)
    yield output
    reset_output()


# ---------------------------------------------------------------------------
# CLI runner fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    from typer.testing import CliRunner

    return CliRunner()
