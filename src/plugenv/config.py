"""Environment layout, configuration files, and atomic writes.

This module handles all persistent configuration for plugenv:

* **Environment root** -- every operation takes the environment directory
  explicitly. :func:`resolve_env_dir` picks it from the CLI flag, the
  ``PLUGENV_HOME`` environment variable, or the current directory.
* **Layout** -- :class:`EnvLayout` names every well-known path inside an
  environment (global config, plugins, bin, workspace, hidden state
  directory, registry, ledger).
* **Global config** -- a single YAML mapping at ``<env>/plugenv.yaml``,
  read and written wholesale by :func:`load_global_config` and
  :func:`save_global_config`.
* **Format by extension** -- :func:`load_any` and :func:`save_any` pick
  JSON for ``.json`` paths and YAML for everything else; plugin-local
  config files keep whatever format their manifest declares.

All file writes use an atomic temp-file-then-rename strategy
(:func:`_atomic_write`) so a crash never leaves a half-written config.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from plugenv.exceptions import ConfigError

_ENV_HOME_VAR = "PLUGENV_HOME"
GLOBAL_CONFIG_FILENAME = "plugenv.yaml"
STATE_DIRNAME = ".plugenv"


# --- Environment layout ---


@dataclass(frozen=True)
class EnvLayout:
    """Well-known paths inside one environment directory.

    Example::

        layout = EnvLayout.of("~/envs/dev")
        layout.plugin_dir("fmt")   # ~/envs/dev/plugins/fmt
    """

    root: Path

    @classmethod
    def of(cls, env_dir: str | Path) -> "EnvLayout":
        """Build a layout for *env_dir*, expanded and made absolute."""
        return cls(Path(env_dir).expanduser().resolve())

    @property
    def global_config(self) -> Path:
        return self.root / GLOBAL_CONFIG_FILENAME

    @property
    def plugins_dir(self) -> Path:
        return self.root / "plugins"

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def workspace_dir(self) -> Path:
        return self.root / "workspace"

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIRNAME

    @property
    def registry_file(self) -> Path:
        return self.state_dir / "registry" / "installed.yaml"

    @property
    def logs_dir(self) -> Path:
        """Shared logs directory holding the dispatch ledger and crash logs."""
        return self.state_dir / "logs"

    @property
    def ledger_file(self) -> Path:
        return self.logs_dir / "dispatch.log"

    def plugin_dir(self, install_name: str) -> Path:
        return self.plugins_dir / install_name


def resolve_env_dir(cli_env: Optional[str] = None) -> Path:
    """Resolve the environment root.

    Precedence (high to low):
        1. CLI flag (``--env``)
        2. ``PLUGENV_HOME`` environment variable
        3. The current working directory

    Returns:
        Absolute path to the environment root. It is not required to exist.
    """
    if cli_env:
        return Path(cli_env).expanduser().resolve()
    env_value = os.environ.get(_ENV_HOME_VAR, "")
    if env_value:
        return Path(env_value).expanduser().resolve()
    return Path.cwd().resolve()


# --- Atomic file writes ---


def _atomic_write(path: Path, data: str) -> None:
    """Write data to file atomically using temp file + rename.

    The temporary file is created in the same directory as *path* so that
    ``os.replace`` is guaranteed to be an atomic rename on POSIX systems.
    On success the temp file is renamed over *path*; on any failure the temp
    file is cleaned up and *path* is left untouched.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: Optional[str] = None
    try:
        fd = tempfile.NamedTemporaryFile(
            mode="w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        )
        tmp_path = fd.name
        fd.write(data)
        fd.flush()
        os.fsync(fd.fileno())
        fd.close()
        fd = None
        os.replace(tmp_path, path)
    except BaseException:
        if fd is not None:
            fd.close()
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        raise


# --- YAML / JSON documents ---


def is_json_path(path: str | Path) -> bool:
    """Return True when *path* has a ``.json`` extension (case-insensitive)."""
    return Path(path).suffix.lower() == ".json"


def dump_yaml(data: Any) -> str:
    """Serialise *data* as block-style YAML, preserving key order."""
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def dump_json(data: Any) -> str:
    """Serialise *data* as indented JSON with a trailing newline."""
    return json.dumps(data, indent=2, ensure_ascii=False, default=str) + "\n"


def _mapping_or_error(data: Any, path: Path) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a mapping at the top of {path} (got {type(data).__name__})"
        )
    return data


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Load a YAML mapping. An empty document yields ``{}``.

    Raises:
        ConfigError: If the file cannot be read, is not valid YAML, or its
            top-level value is not a mapping.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read YAML config {path}: {exc}") from exc
    return _mapping_or_error(data, path)


def save_yaml(path: str | Path, data: dict[str, Any]) -> None:
    """Atomically write *data* as YAML to *path*."""
    _atomic_write(Path(path), dump_yaml(data))


def load_any(path: str | Path) -> dict[str, Any]:
    """Load a mapping from *path*, choosing JSON or YAML by extension.

    Raises:
        ConfigError: If the file cannot be read or decoded.
    """
    path = Path(path)
    if not is_json_path(path):
        return load_yaml(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read JSON config {path}: {exc}") from exc
    return _mapping_or_error(data, path)


def save_any(path: str | Path, data: dict[str, Any]) -> None:
    """Atomically write *data* to *path* as JSON or YAML by extension."""
    path = Path(path)
    text = dump_json(data) if is_json_path(path) else dump_yaml(data)
    _atomic_write(path, text)


# --- Global config ---


def load_global_config(env_dir: str | Path) -> dict[str, Any]:
    """Load the environment's global configuration.

    Returns:
        The decoded mapping, or ``{}`` when ``plugenv.yaml`` does not exist.

    Raises:
        ConfigError: If the file exists but cannot be decoded.
    """
    path = EnvLayout.of(env_dir).global_config
    if not path.is_file():
        return {}
    return load_yaml(path)


def save_global_config(env_dir: str | Path, data: dict[str, Any]) -> None:
    """Persist the global configuration atomically to ``plugenv.yaml``."""
    save_yaml(EnvLayout.of(env_dir).global_config, data)


# --- Plugin-local config ---


def load_plugin_config(plugin_dir: str | Path, local_file: str) -> dict[str, Any]:
    """Load a plugin's local config file declared by its manifest.

    Args:
        plugin_dir: The plugin's install directory.
        local_file: ``config.local_file`` from the manifest; relative paths
            are resolved against *plugin_dir*. Empty means "no local config".

    Returns:
        The decoded mapping, or ``{}`` when nothing is declared or the file
        does not exist yet.
    """
    if not local_file.strip():
        return {}
    path = plugin_config_path(plugin_dir, local_file)
    if not path.is_file():
        return {}
    return load_any(path)


def plugin_config_path(plugin_dir: str | Path, local_file: str) -> Path:
    """Absolute path of a plugin's local config file."""
    candidate = Path(local_file.strip())
    if candidate.is_absolute():
        return candidate
    return Path(plugin_dir) / candidate
