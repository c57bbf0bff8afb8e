"""Canonical Pydantic models shared across all plugenv modules.

This is the single source of truth for data shapes in the project. Every other
module imports from here rather than defining its own models. The models fall
into three groups:

**Manifest models** -- decoded from a plugin's ``manifest.yaml`` /
``manifest.yml`` / ``manifest.json``:
    :class:`EntrySpec`, :class:`ConfigSpec`, :class:`Step`,
    :class:`CommandSpec`, and :class:`PluginManifest`.

**Registry models** -- persisted under ``.plugenv/registry/installed.yaml``:
    :class:`InstalledPlugin` and :class:`Registry`.

**Dispatch models** -- exchanged with stdio plugins or written to the
dispatch ledger:
    :class:`StdioRequest`, :class:`Mutations`, :class:`StdioResponse`, and
    :class:`DispatchRecord`.

Manifests are hand-written YAML, so the manifest models are lenient on
input: ``null`` collections become empty, scalar ``args``/``env`` values
are coerced to strings. Structural rules (required fields, unique command
names, valid executors) are enforced separately by
:func:`plugenv.manifest.validate_manifest` so that violations surface as
:class:`~plugenv.exceptions.ManifestInvalidError` with a precise message.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from plugenv.values import ValueKind, as_mapping, as_str_list, kind_of, stringify


def _drop_nulls(data: Any) -> Any:
    """Remove ``None`` values from a raw mapping so field defaults apply."""
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if v is not None}
    return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Manifest ---


class _ManifestModel(BaseModel):
    """Shared config for manifest models: unknown keys are ignored, nulls dropped."""

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_defaults(cls, data: Any) -> Any:
        return _drop_nulls(data)


class EntrySpec(_ManifestModel):
    """Single-command shortcut declared at the top of a manifest.

    An entry-only plugin has no ``commands``; every action is handed to
    one stdio program. Only ``type: stdio`` entries are dispatchable.
    """

    type: str = ""
    path: str = ""
    args: list[str] = Field(default_factory=list)

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> list[str]:
        return as_str_list(value)

    @field_validator("type", "path", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return stringify(value)


class ConfigSpec(_ManifestModel):
    """Where a plugin keeps its own configuration, relative to the plugin directory."""

    namespace: str = ""
    local_file: str = ""
    state_file: str = ""


class _Runnable(_ManifestModel):
    """Fields common to commands and steps."""

    executor: str = ""
    program: str = ""
    args: list[str] = Field(default_factory=list)
    workdir: str = ""
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def _coerce_args(cls, value: Any) -> list[str]:
        return as_str_list(value)

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, value: Any) -> dict[str, str]:
        return {str(k): stringify(v) for k, v in as_mapping(value).items()}

    @field_validator("executor", "program", "workdir", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return stringify(value)


class Step(_Runnable):
    """One stage of a multi-step command.

    ``continue_on_error`` lets the pipeline proceed past this step's
    failure even when the dispatch runs fail-fast.
    """

    continue_on_error: bool = False


class CommandSpec(_Runnable):
    """A named command exposed by a plugin.

    Either ``program`` runs directly through ``executor``, or ``steps``
    lists an ordered pipeline (in which case ``executor`` may be empty).
    """

    name: str = ""
    summary: str = ""
    use_stdio: bool = False
    log_capture: bool = False
    steps: list[Step] = Field(default_factory=list)


class PluginManifest(_ManifestModel):
    """Declarative descriptor bundled with every plugin.

    Example::

        name: fmt
        version: 1.0.0
        expose: [fmt]
        commands:
          - name: check
            executor: shell
            program: ./bin/check.sh
    """

    name: str = ""
    version: str = ""
    entry: EntrySpec = Field(default_factory=EntrySpec)
    config: ConfigSpec = Field(default_factory=ConfigSpec)
    commands: list[CommandSpec] = Field(default_factory=list)
    expose: list[str] = Field(default_factory=list)

    @field_validator("expose", mode="before")
    @classmethod
    def _coerce_expose(cls, value: Any) -> list[str]:
        return as_str_list(value)

    @field_validator("name", "version", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return stringify(value)

    def find_command(self, name: str) -> Optional[CommandSpec]:
        """Return the command whose name matches *name* exactly, if any."""
        for command in self.commands:
            if command.name == name:
                return command
        return None


# --- Registry ---


class InstalledPlugin(BaseModel):
    """Registry record for one installed plugin, keyed by ``install_name``."""

    name: str = Field(description="Logical name from the plugin manifest")
    install_name: str = Field(description="Directory name under plugins/")
    version: str = ""
    source: str = ""
    ref: str = ""
    shims: list[str] = Field(default_factory=list)
    installed_at: datetime = Field(default_factory=_utcnow)


class Registry(BaseModel):
    """The whole registry document: an ordered list of installed plugins."""

    plugins: list[InstalledPlugin] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _nulls_to_defaults(cls, data: Any) -> Any:
        return _drop_nulls(data)


# --- Stdio protocol ---


class StdioRequest(BaseModel):
    """Request envelope written to a stdio plugin's standard input."""

    action: str
    args: list[str] = Field(default_factory=list)
    paths: dict[str, str] = Field(default_factory=dict)
    system: dict[str, str] = Field(default_factory=dict)
    config: dict[str, Any] = Field(default_factory=dict)
    merge_strategy: str = "override"
    started_at: str = ""


class Mutations(BaseModel):
    """Configuration fragments a plugin asks the dispatcher to merge back.

    Non-mapping values are discarded rather than rejected.
    """

    model_config = ConfigDict(populate_by_name=True)

    global_: Optional[dict[str, Any]] = Field(default=None, alias="global")
    plugin: Optional[dict[str, Any]] = None

    @field_validator("global_", "plugin", mode="before")
    @classmethod
    def _mapping_or_none(cls, value: Any) -> Optional[dict[str, Any]]:
        return value if kind_of(value) is ValueKind.MAPPING else None


class StdioResponse(BaseModel):
    """Response envelope read from a stdio plugin's standard output.

    Any ``status`` other than ``"ok"`` is an error; ``message`` then
    explains it. ``logs`` and ``artifacts`` are echoed to the user.
    """

    model_config = ConfigDict(extra="allow")

    status: str = ""
    message: str = ""
    mutations: Mutations = Field(default_factory=Mutations)
    logs: list[str] = Field(default_factory=list)
    artifacts: list[str] = Field(default_factory=list)

    @field_validator("status", "message", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return stringify(value)

    @field_validator("mutations", mode="before")
    @classmethod
    def _coerce_mutations(cls, value: Any) -> dict[str, Any]:
        return as_mapping(value)

    @field_validator("logs", "artifacts", mode="before")
    @classmethod
    def _coerce_lines(cls, value: Any) -> list[str]:
        return as_str_list(value)

    @property
    def ok(self) -> bool:
        """Whether the plugin reported success."""
        return self.status == "ok"

    @classmethod
    def error(cls, message: str) -> "StdioResponse":
        """Build a synthetic error response for start or decode failures."""
        return cls(status="error", message=message)


# --- Ledger ---


class DispatchRecord(BaseModel):
    """One line of the environment-wide dispatch ledger."""

    ts: str = ""
    plugin: str
    command: str
    args: list[str] = Field(default_factory=list)
    status: str
    log_file: str = ""
    duration_ms: int = 0
