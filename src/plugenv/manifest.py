"""Load and validate plugin manifests.

A plugin directory carries exactly one manifest, discovered by trying
:data:`MANIFEST_FILENAMES` in order (YAML preferred, JSON as fallback).
The two public functions are:

* :func:`load_manifest` -- locate, decode and model the manifest.
* :func:`validate_manifest` -- enforce the structural rules, failing
  fast on the first violation.

Manifests are reloaded on every dispatch; nothing here caches.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from plugenv.exceptions import (
    ManifestInvalidError,
    ManifestNotFoundError,
    ManifestParseError,
)
from plugenv.models import PluginManifest

MANIFEST_FILENAMES = ("manifest.yaml", "manifest.yml", "manifest.json")

EXECUTORS = ("shell", "stdio")

_ALIAS_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def find_manifest(plugin_dir: str | Path) -> Path:
    """Return the first existing manifest file in *plugin_dir*.

    Raises:
        ManifestNotFoundError: If none of the recognised filenames exist.
    """
    plugin_dir = Path(plugin_dir)
    for filename in MANIFEST_FILENAMES:
        candidate = plugin_dir / filename
        if candidate.is_file():
            return candidate
    raise ManifestNotFoundError(
        f"No manifest in {plugin_dir} (looked for {', '.join(MANIFEST_FILENAMES)})"
    )


def load_manifest(plugin_dir: str | Path) -> PluginManifest:
    """Load the manifest of the plugin at *plugin_dir*.

    A missing ``name`` is filled with the directory's basename so that
    validation sees a complete manifest.

    Args:
        plugin_dir: The plugin's directory.

    Returns:
        The decoded :class:`~plugenv.models.PluginManifest`. It has not been
        validated; call :func:`validate_manifest` next.

    Raises:
        ManifestNotFoundError: If the directory holds no manifest file.
        ManifestParseError: If the file cannot be decoded into a manifest.
    """
    plugin_dir = Path(plugin_dir)
    path = find_manifest(plugin_dir)
    raw = _read_document(path)
    try:
        manifest = PluginManifest.model_validate(raw)
    except ValidationError as exc:
        raise ManifestParseError(f"Invalid manifest {path}: {exc}") from exc
    if not manifest.name.strip():
        manifest.name = plugin_dir.resolve().name
    return manifest


def _read_document(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestParseError(f"Cannot read manifest {path}: {exc}") from exc

    if path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestParseError(f"Invalid manifest (json) {path}: {exc}") from exc
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ManifestParseError(f"Invalid manifest (yaml) {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManifestParseError(
            f"Manifest {path} must be a mapping (got {type(data).__name__})"
        )
    return data


def validate_manifest(manifest: PluginManifest) -> None:
    """Check *manifest* against the structural rules.

    Rules, checked in this order:

    1. ``name`` and ``version`` are non-empty.
    2. ``expose`` has at least one alias, each made of letters, digits,
       ``-`` or ``_``.
    3. Either ``commands`` is non-empty, or ``entry.path`` is set with
       ``entry.type == "stdio"``.
    4. Command names are unique.
    5. Each command has a ``program`` or a non-empty ``steps`` list.
    6. Each step names a ``shell`` or ``stdio`` executor and a ``program``.

    Raises:
        ManifestInvalidError: On the first rule violated.
    """
    if not manifest.name.strip():
        raise ManifestInvalidError("manifest validation failed: 'name' is required")
    if not manifest.version.strip():
        raise ManifestInvalidError("manifest validation failed: 'version' is required")

    if not manifest.expose:
        raise ManifestInvalidError(
            "manifest validation failed: 'expose' must have at least one alias"
        )
    for i, alias in enumerate(manifest.expose):
        if not _ALIAS_RE.match(alias):
            raise ManifestInvalidError(
                f"manifest validation failed: expose[{i}] {alias!r} may only contain "
                "letters, digits, '-' and '_'"
            )

    if not manifest.commands:
        if not manifest.entry.path.strip():
            raise ManifestInvalidError(
                "manifest validation failed: either 'commands' or 'entry.path' must be provided"
            )
        if manifest.entry.type.strip().lower() != "stdio":
            raise ManifestInvalidError(
                "manifest validation failed: entry.type must be 'stdio' when commands are empty"
            )
        return

    seen: set[str] = set()
    for i, command in enumerate(manifest.commands):
        if not command.name.strip():
            raise ManifestInvalidError(
                f"manifest validation failed: commands[{i}].name is required"
            )
        if command.name in seen:
            raise ManifestInvalidError(
                f"manifest validation failed: duplicate command name {command.name!r}"
            )
        seen.add(command.name)

        if not command.program.strip() and not command.steps:
            raise ManifestInvalidError(
                f"manifest validation failed: commands[{i}] needs 'program' or 'steps'"
            )
        for j, step in enumerate(command.steps):
            if step.executor.strip().lower() not in EXECUTORS:
                raise ManifestInvalidError(
                    f"manifest validation failed: commands[{i}].steps[{j}].executor "
                    "must be 'shell' or 'stdio'"
                )
            if not step.program.strip():
                raise ManifestInvalidError(
                    f"manifest validation failed: commands[{i}].steps[{j}].program is required"
                )


def load_valid_manifest(plugin_dir: str | Path) -> PluginManifest:
    """Load and validate in one call. Raises any error of either step."""
    manifest = load_manifest(plugin_dir)
    validate_manifest(manifest)
    return manifest
