"""Merge a stdio plugin's declared mutations back into persistent config.

A response envelope may carry::

    {"mutations": {"global": {...}, "plugin": {...}}}

``global`` is merged into the environment's ``plugenv.yaml`` with the
strategy the caller chose for the whole dispatch. ``plugin`` is merged
into the plugin's own ``config.local_file`` -- always with ``override``
-- and written back in the file's own format (JSON for ``.json``, YAML
otherwise). A plugin that declares no local file cannot mutate one.

Both writes are atomic; a failure raises
:class:`~plugenv.exceptions.MutationPersistError`, which the dispatcher
never tolerates.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from plugenv.config import plugin_config_path, save_any, save_global_config
from plugenv.exceptions import MutationPersistError
from plugenv.merge import MergeStrategy, merge, parse_merge_strategy
from plugenv.models import PluginManifest, StdioResponse

logger = logging.getLogger(__name__)


def apply_mutations(
    env_dir: str | Path,
    plugin_dir: str | Path,
    manifest: PluginManifest,
    response: StdioResponse,
    global_cfg: dict[str, Any],
    plugin_cfg: dict[str, Any],
    strategy: MergeStrategy | str = MergeStrategy.OVERRIDE,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Merge and persist the mutations declared in *response*.

    Args:
        env_dir: The environment root (owner of ``plugenv.yaml``).
        plugin_dir: The plugin's install directory.
        manifest: The plugin's manifest; ``config.local_file`` decides
            whether plugin-local mutations apply.
        response: The decoded response envelope.
        global_cfg: Current global config snapshot.
        plugin_cfg: Current plugin-local config snapshot.
        strategy: Strategy for the global merge.

    Returns:
        ``(new_global_cfg, new_plugin_cfg)``; each is the input snapshot
        when that side had nothing to apply.

    Raises:
        MutationPersistError: If either merged config cannot be written.
    """
    strategy = parse_merge_strategy(strategy)
    mutations = response.mutations
    new_global, new_plugin = global_cfg, plugin_cfg

    if mutations.global_ is not None:
        new_global = merge(global_cfg, mutations.global_, strategy)
        try:
            save_global_config(env_dir, new_global)
        except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
            raise MutationPersistError(f"Failed to write global config: {exc}") from exc
        logger.debug("Global config updated (strategy=%s)", strategy.value)

    local_file = manifest.config.local_file.strip()
    if mutations.plugin is not None:
        if not local_file:
            logger.debug("Ignoring plugin mutations: manifest declares no config.local_file")
        else:
            new_plugin = merge(plugin_cfg, mutations.plugin, MergeStrategy.OVERRIDE)
            path = plugin_config_path(plugin_dir, local_file)
            try:
                save_any(path, new_plugin)
            except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
                raise MutationPersistError(f"Failed to write plugin config {path}: {exc}") from exc
            logger.debug("Plugin local config updated: %s", path)

    return new_global, new_plugin
