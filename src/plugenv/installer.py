"""Install plugins from local directories and remove installed plugins.

A local install copies the source directory into
``<env>/plugins/<install_name>/``. The copy is staged in a temporary
sibling directory first and only replaces an existing install once its
manifest has loaded and validated, so a broken source never clobbers a
working plugin.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from plugenv.config import EnvLayout
from plugenv.exceptions import InvalidUsageError, PluginNotFoundError, RegistryError
from plugenv.manifest import load_valid_manifest
from plugenv.models import InstalledPlugin
from plugenv.registry import RegistryStore

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_IGNORED = shutil.ignore_patterns(".git", "__pycache__", "*.pyc")

DIR_MODE = 0o755
FILE_MODE = 0o644
EXEC_MODE = 0o755


def sanitize_install_name(name: str) -> str:
    """Replace every character outside ``[A-Za-z0-9_-]`` with ``-``.

    An empty result becomes ``plugin``.
    """
    cleaned = _UNSAFE_CHARS.sub("-", name.strip()).strip("-")
    return cleaned or "plugin"


def _has_shebang(path: Path) -> bool:
    try:
        with open(path, "rb") as fh:
            return fh.read(2) == b"#!"
    except OSError:
        return False


def normalize_permissions(root: str | Path) -> None:
    """Set directories to 0755, files to 0644, and shebang scripts to 0755."""
    root = Path(root)
    os.chmod(root, DIR_MODE)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            os.chmod(Path(dirpath) / name, DIR_MODE)
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_symlink():
                continue
            os.chmod(path, EXEC_MODE if _has_shebang(path) else FILE_MODE)


def install_local(
    env_dir: str | Path,
    source: str | Path,
    install_name: Optional[str] = None,
    registry: Optional[RegistryStore] = None,
) -> InstalledPlugin:
    """Install the plugin in directory *source* into the environment.

    Args:
        env_dir: The environment root.
        source: Directory containing the plugin and its manifest.
        install_name: Directory name under ``plugins/``. Defaults to the
            source directory's basename.
        registry: Registry to record the install in.

    Returns:
        The registry record written for the plugin.

    Raises:
        InvalidUsageError: If *source* is not a directory.
        ManifestNotFoundError, ManifestParseError, ManifestInvalidError:
            If the copied plugin's manifest is missing or invalid. Any
            previous install is left untouched.
        DuplicatePluginError: If another install already uses the
            plugin's logical name.
    """
    source_dir = Path(source).expanduser().resolve()
    if not source_dir.is_dir():
        raise InvalidUsageError(f"Plugin source is not a directory: {source}")

    layout = EnvLayout.of(env_dir)
    registry = registry or RegistryStore(layout.root)
    name = sanitize_install_name(install_name or source_dir.name)
    target = layout.plugin_dir(name)
    layout.plugins_dir.mkdir(parents=True, exist_ok=True)

    staging_root = Path(tempfile.mkdtemp(prefix=f".{name}.", dir=layout.plugins_dir))
    staged = staging_root / name
    try:
        shutil.copytree(source_dir, staged, ignore=_IGNORED, symlinks=True)
        manifest = load_valid_manifest(staged)
        # Fail before touching the live install if the name is taken.
        registry.check_available(manifest.name, name)
        normalize_permissions(staged)
        (staged / "logs").mkdir(exist_ok=True)

        if target.exists():
            logger.debug("Replacing existing install at %s", target)
            shutil.rmtree(target)
        os.replace(staged, target)
    finally:
        shutil.rmtree(staging_root, ignore_errors=True)

    record = _record(manifest.name, name, manifest.version, manifest.expose)
    registry.register(record)
    logger.debug("Installed %s (%s) from %s", manifest.name, name, source_dir)
    return record


def _record(name: str, install_name: str, version: str, expose: list[str]) -> InstalledPlugin:
    return InstalledPlugin(
        name=name,
        install_name=install_name,
        version=version,
        source="local",
        shims=list(expose),
    )


def remove_plugin(
    env_dir: str | Path,
    install_name: str,
    force: bool = False,
    registry: Optional[RegistryStore] = None,
) -> bool:
    """Delete an installed plugin's directory and registry record.

    Cleanup always runs. Without *force*, a plugin the registry does not
    know about is reported as an error afterwards.

    Args:
        env_dir: The environment root.
        install_name: The plugin's directory name under ``plugins/``.
        force: Succeed even when the registry has no record.
        registry: Registry to remove the record from.

    Returns:
        True when a registry record was removed.

    Raises:
        PluginNotFoundError: If the registry has no record and *force* is false.
        InvalidUsageError: If *install_name* is empty or not a plain name.
    """
    install_name = install_name.strip()
    if not install_name or sanitize_install_name(install_name) != install_name:
        raise InvalidUsageError(f"Invalid install name: {install_name!r}")

    layout = EnvLayout.of(env_dir)
    registry = registry or RegistryStore(layout.root)
    plugin_dir = layout.plugin_dir(install_name)
    if plugin_dir.exists():
        shutil.rmtree(plugin_dir)

    try:
        removed = registry.unregister(install_name)
    except RegistryError:
        if not force:
            raise
        logger.warning("Registry unreadable while removing %s", install_name)
        removed = False

    if not removed and not force:
        raise PluginNotFoundError(f"Plugin not found in registry: {install_name}")
    return removed
