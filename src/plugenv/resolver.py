"""Map a user-supplied plugin identifier to an installed plugin directory.

Callers may address a plugin by its physical install slot
(``plugins/<install_name>``) or by the logical ``name`` its manifest
declares. Resolution tries, in order:

1. ``plugins/<identifier>`` exists as a directory.
2. The registry has a record with install name ``identifier`` whose
   directory exists.
3. Exactly one registry record has logical name ``identifier`` and an
   existing directory.

Tiers 1 and 2 only consider plain install names (letters, digits, ``-``
and ``_``), so an identifier can never point outside ``plugins/``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from plugenv.config import EnvLayout
from plugenv.exceptions import AmbiguousPluginError, PluginNotFoundError
from plugenv.installer import sanitize_install_name
from plugenv.registry import RegistryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedPlugin:
    """Where a plugin lives and which install name it was found under."""

    plugin_dir: Path
    install_name: str


def resolve_plugin(
    env_dir: str | Path,
    identifier: str,
    registry: Optional[RegistryStore] = None,
) -> ResolvedPlugin:
    """Resolve *identifier* to a plugin directory.

    Args:
        env_dir: The environment root.
        identifier: Install name or logical plugin name.
        registry: Registry to consult for tiers 2 and 3. Defaults to the
            environment's own registry.

    Returns:
        The :class:`ResolvedPlugin` of the first tier that matches.

    Raises:
        PluginNotFoundError: If no tier resolves to an existing directory.
        AmbiguousPluginError: If the logical name matches several installs.
    """
    layout = EnvLayout.of(env_dir)
    identifier = identifier.strip()
    if not identifier:
        raise PluginNotFoundError("Plugin name must not be empty")

    registry = registry or RegistryStore(layout.root)

    # Only plain names address an install slot; "..", "a/b" and the like
    # must not reach outside plugins/.
    if sanitize_install_name(identifier) == identifier:
        candidate = layout.plugin_dir(identifier)
        if candidate.is_dir():
            return ResolvedPlugin(candidate, identifier)

        record = registry.get(identifier)
        if record is not None:
            directory = layout.plugin_dir(record.install_name)
            if directory.is_dir():
                logger.debug("Resolved '%s' via registry install name", identifier)
                return ResolvedPlugin(directory, record.install_name)

    matches = [
        r for r in registry.find_by_name(identifier)
        if layout.plugin_dir(r.install_name).is_dir()
    ]
    if len(matches) > 1:
        names = ", ".join(r.install_name for r in matches)
        raise AmbiguousPluginError(
            f"Plugin name {identifier!r} matches several installs ({names}); "
            "use the install name instead"
        )
    if matches:
        logger.debug("Resolved '%s' via logical name to '%s'", identifier, matches[0].install_name)
        return ResolvedPlugin(layout.plugin_dir(matches[0].install_name), matches[0].install_name)

    raise PluginNotFoundError(f"Plugin directory not found for: {identifier}")
