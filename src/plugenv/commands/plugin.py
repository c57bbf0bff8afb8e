"""Plugin commands -- install, list, inspect, and remove plugins.

Provides the ``plugenv plugin`` sub-command group. Plugins are installed
from local directories into ``<env>/plugins/<install_name>/`` and
recorded in the environment's registry.
"""

from __future__ import annotations

from typing import Optional

import typer

from plugenv.commands import env_dir_from, fail
from plugenv.exceptions import PlugenvError
from plugenv.output import (
    OutputFormat,
    get_output,
    info,
    print_data,
    print_json,
    print_table,
    success,
)


plugin_app = typer.Typer(no_args_is_help=True)


@plugin_app.command("add")
def plugin_add(
    ctx: typer.Context,
    path: str = typer.Argument(help="Directory containing the plugin."),
    name: Optional[str] = typer.Option(
        None, "--name", help="Install name (defaults to the directory name)."
    ),
) -> None:
    """Install a plugin from a local directory.

    The manifest is validated before anything in the environment
    changes. Reinstalling under the same install name replaces the
    previous copy.

    Example::

        plugenv plugin add ./fmt
        plugenv plugin add ../tools --name tools-dev
    """
    from plugenv.installer import install_local

    try:
        record = install_local(env_dir_from(ctx), path, install_name=name)
    except PlugenvError as exc:
        fail(exc)
    success(f"Installed {record.name} {record.version} as '{record.install_name}'")


@plugin_app.command("list")
def plugin_list(ctx: typer.Context) -> None:
    """List installed plugins.

    Example::

        plugenv plugin list
        plugenv --json plugin list
    """
    from plugenv.registry import RegistryStore

    try:
        records = RegistryStore(env_dir_from(ctx)).records()
    except PlugenvError as exc:
        fail(exc)

    if not records:
        info("No plugins installed.")
        if get_output().format == OutputFormat.JSON:
            print_json([])
        return

    if get_output().format == OutputFormat.JSON:
        print_json([r.model_dump(mode="json") for r in records])
        return

    rows = [
        [r.install_name, r.name, r.version, r.source, ", ".join(r.shims)]
        for r in records
    ]
    print_table(["INSTALL NAME", "NAME", "VERSION", "SOURCE", "EXPOSE"], rows, title="Plugins")


@plugin_app.command("info")
def plugin_info(
    ctx: typer.Context,
    name: str = typer.Argument(help="Install name or logical name of the plugin."),
) -> None:
    """Show a plugin's manifest: version, expose aliases, and commands.

    Example::

        plugenv plugin info fmt
    """
    from plugenv.manifest import load_valid_manifest
    from plugenv.resolver import resolve_plugin

    try:
        resolved = resolve_plugin(env_dir_from(ctx), name)
        manifest = load_valid_manifest(resolved.plugin_dir)
    except PlugenvError as exc:
        fail(exc)

    if get_output().format == OutputFormat.JSON:
        data = manifest.model_dump(mode="json")
        data["install_name"] = resolved.install_name
        data["plugin_dir"] = str(resolved.plugin_dir)
        print_json(data)
        return

    print_data(f"Name:        {manifest.name}")
    print_data(f"Version:     {manifest.version}")
    print_data(f"Install:     {resolved.install_name}")
    print_data(f"Directory:   {resolved.plugin_dir}")
    print_data(f"Expose:      {', '.join(manifest.expose)}")
    if manifest.entry.type:
        print_data(f"Entry:       {manifest.entry.type} {manifest.entry.path}")

    rows = []
    for command in manifest.commands:
        executor = f"{len(command.steps)} steps" if command.steps else command.executor
        rows.append([command.name, executor, command.summary])
    if rows:
        print_table(["COMMAND", "EXECUTOR", "SUMMARY"], rows, title="Commands")


@plugin_app.command("remove")
def plugin_remove(
    ctx: typer.Context,
    install_name: str = typer.Argument(help="Install name of the plugin."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Succeed even if the registry has no record."
    ),
) -> None:
    """Remove an installed plugin and its registry record.

    Example::

        plugenv plugin remove fmt
        plugenv plugin remove stale-copy --force
    """
    from plugenv.installer import remove_plugin

    try:
        remove_plugin(env_dir_from(ctx), install_name, force=force)
    except PlugenvError as exc:
        fail(exc)
    success(f"Removed '{install_name}'")
