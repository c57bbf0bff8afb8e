"""Persistent registry of installed plugins.

The registry is a YAML document under the environment's hidden state
directory (``.plugenv/registry/installed.yaml``)::

    plugins:
      - name: fmt
        install_name: fmt-stable
        version: 1.0.0
        source: local
        ...

:class:`RegistryStore` is an explicit value bound to one environment
root; it is passed to the resolver and the installer instead of living
in a process-wide global. Records are keyed by ``install_name``; at
install time a logical ``name`` may also belong to only one record.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from plugenv.config import EnvLayout, load_yaml, save_yaml
from plugenv.exceptions import ConfigError, DuplicatePluginError, RegistryError
from plugenv.models import InstalledPlugin, Registry

logger = logging.getLogger(__name__)


class RegistryStore:
    """Load/save access to one environment's plugin registry.

    Every method reads the file fresh; the store holds no cached state,
    so two stores for the same environment always agree.

    Args:
        env_dir: The environment root.
    """

    def __init__(self, env_dir: str | Path) -> None:
        self._layout = EnvLayout.of(env_dir)

    @property
    def path(self) -> Path:
        """Location of the registry file."""
        return self._layout.registry_file

    def load(self) -> Registry:
        """Read the registry. A missing file is an empty registry.

        Raises:
            RegistryError: If the file exists but is unreadable or malformed.
        """
        if not self.path.is_file():
            return Registry()
        try:
            return Registry.model_validate(load_yaml(self.path))
        except (ConfigError, ValidationError) as exc:
            raise RegistryError(f"Invalid registry at {self.path}: {exc}") from exc

    def save(self, registry: Registry) -> None:
        """Write the registry atomically."""
        data = registry.model_dump(mode="json")
        try:
            save_yaml(self.path, data)
        except OSError as exc:
            raise RegistryError(f"Failed to write registry {self.path}: {exc}") from exc

    def records(self) -> list[InstalledPlugin]:
        """All records in registry order."""
        return list(self.load().plugins)

    def get(self, install_name: str) -> Optional[InstalledPlugin]:
        """Return the record for *install_name*, or ``None``."""
        for record in self.load().plugins:
            if record.install_name == install_name:
                return record
        return None

    def find_by_name(self, name: str) -> list[InstalledPlugin]:
        """Return every record whose logical (manifest) name is *name*."""
        return [record for record in self.load().plugins if record.name == name]

    def check_available(self, name: str, install_name: str) -> None:
        """Raise if logical *name* is already installed under another install name.

        Raises:
            DuplicatePluginError: If a record under a different install name
                already uses the same logical name.
        """
        _ensure_unique(self.load(), name, install_name)

    def register(self, record: InstalledPlugin) -> None:
        """Insert or replace the record for ``record.install_name``.

        Raises:
            DuplicatePluginError: See :meth:`check_available`.
        """
        registry = self.load()
        _ensure_unique(registry, record.name, record.install_name)

        for i, existing in enumerate(registry.plugins):
            if existing.install_name == record.install_name:
                registry.plugins[i] = record
                break
        else:
            registry.plugins.append(record)
        self.save(registry)
        logger.debug("Registered plugin '%s' as '%s'", record.name, record.install_name)

    def unregister(self, install_name: str) -> bool:
        """Drop the record for *install_name*.

        Returns:
            ``True`` if a record was removed.
        """
        registry = self.load()
        kept = [r for r in registry.plugins if r.install_name != install_name]
        if len(kept) == len(registry.plugins):
            return False
        registry.plugins = kept
        self.save(registry)
        return True


def _ensure_unique(registry: Registry, name: str, install_name: str) -> None:
    for other in registry.plugins:
        if other.name == name and other.install_name != install_name:
            raise DuplicatePluginError(
                f"Plugin name {name!r} is already installed as "
                f"{other.install_name!r}; remove it first or pick another plugin"
            )
