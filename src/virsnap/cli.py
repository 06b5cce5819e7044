#!/usr/bin/env python3
"""
Command-line interface for virsnap.

This module provides the create, clean, list, listvms, export and config
commands.
"""

import json
import os
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import click
import yaml

from virsnap import __version__
from virsnap.config import DEFAULT_CONFIG_PATHS, AppConfig, config_loader
from virsnap.exceptions import ConfigurationError, VirsnapError
from virsnap.hypervisor import Hypervisor, Snapshot
from virsnap.logging import configure_logging
from virsnap.models import CleanOptions, CreateOptions, ExportOptions, OperationResult
from virsnap.operations import SnapshotOperations
from virsnap.selection import MATCH_ALL


def resolve_log_level(
    verbose: bool = False, quiet: bool = False, log_level: Optional[str] = None
) -> str:
    """Pick the effective log level from the command-line flags."""
    if quiet:
        return "ERROR"
    if verbose:
        return "DEBUG"
    return (log_level or "INFO").upper()


def load_config(config_path: Optional[str]) -> AppConfig:
    """Load configuration from file, falling back to defaults."""
    try:
        return config_loader.load_config(config_path)
    except ConfigurationError as e:
        click.echo(f"Warning: {e}", err=True)
        return AppConfig()


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option("--uri", default=None, help="libvirt connection URI")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Log level",
)
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log output format",
)
@click.version_option(version=__version__, prog_name="virsnap")
@click.pass_context
def cli(
    ctx: Any,
    config: Optional[str],
    uri: Optional[str],
    verbose: bool,
    quiet: bool,
    log_level: Optional[str],
    log_format: Optional[str],
) -> None:
    """Snapshot and backup automation for libvirt virtual machines."""
    # configuration loading logs through the flags' settings
    configure_logging(
        resolve_log_level(verbose, quiet, log_level), log_format or "text", stream=sys.stderr
    )
    app_config = load_config(config)
    if uri:
        app_config = app_config.model_copy(update={"uri": uri})

    level = resolve_log_level(verbose, quiet, log_level or app_config.log_level)
    log = configure_logging(level, log_format or app_config.log_format, stream=sys.stderr)

    ctx.ensure_object(dict)
    ctx.obj["config"] = app_config
    ctx.obj["logger"] = log
    ctx.obj["quiet"] = quiet


@contextmanager
def _session(ctx: Any) -> Iterator[SnapshotOperations]:
    """Open the hypervisor connection for one command and report fatal errors."""
    app_config = ctx.obj["config"]
    log = ctx.obj["logger"]
    hypervisor = Hypervisor(app_config.uri, log=log)
    try:
        yield SnapshotOperations(hypervisor, config=app_config, log=log)
    except VirsnapError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(e.error_code)
    except click.Abort:
        raise
    except Exception as e:
        click.echo(f"✗ Unexpected error: {e}", err=True)
        sys.exit(1)
    finally:
        hypervisor.close()


def _report(ctx: Any, result: OperationResult) -> None:
    """Print the per-VM outcome and exit non-zero if any VM failed."""
    for error in result.errors:
        click.echo(f"✗ {error}", err=True)

    for outcome in result.outcomes:
        if outcome.success:
            if not ctx.obj["quiet"]:
                detail = f" ({outcome.snapshot_name})" if outcome.snapshot_name else ""
                click.echo(f"✓ {outcome.vm_name}{detail}")
        else:
            click.echo(f"✗ {outcome.vm_name}: {'; '.join(outcome.errors)}", err=True)
        for warning in outcome.warnings:
            click.echo(f"  Warning: {warning}", err=True)

    if result.failed:
        sys.exit(1)


@cli.command()
@click.argument("patterns", nargs=-1)
@click.option(
    "--shutdown",
    "-s",
    is_flag=True,
    help="Shut the VM down before the snapshot and restore its state afterwards",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Destroy the VM if it does not shut down in time (requires --shutdown)",
)
@click.option(
    "--timeout", "-t", type=click.IntRange(min=1), default=None, help="Shutdown timeout in minutes"
)
@click.pass_context
def create(
    ctx: Any, patterns: tuple[str, ...], shutdown: bool, force: bool, timeout: Optional[int]
) -> None:
    """Create a snapshot of every VM matching one of PATTERNS."""
    with _session(ctx) as ops:
        result = ops.create(
            list(patterns), CreateOptions(shutdown=shutdown, force=force, timeout=timeout)
        )
    _report(ctx, result)


def _confirm_deletion(snapshot: Snapshot) -> bool:
    return click.confirm(
        f"Delete snapshot {snapshot.name} of VM {snapshot.vm_name}?", default=False
    )


@cli.command()
@click.argument("patterns", nargs=-1)
@click.option(
    "--keep",
    "-k",
    type=click.IntRange(min=0),
    required=True,
    help="Number of most recent snapshots to keep",
)
@click.option("--assume-yes", "-y", is_flag=True, help="Delete without asking")
@click.option(
    "--snapshot-pattern",
    "snapshot_patterns",
    multiple=True,
    help="Only consider snapshots matching this pattern (default: the virsnap prefix)",
)
@click.pass_context
def clean(
    ctx: Any,
    patterns: tuple[str, ...],
    keep: int,
    assume_yes: bool,
    snapshot_patterns: tuple[str, ...],
) -> None:
    """Remove the oldest snapshots of every VM matching one of PATTERNS."""
    options = CleanOptions(
        keep=keep,
        assume_yes=assume_yes,
        snapshot_patterns=list(snapshot_patterns) or None,
    )
    with _session(ctx) as ops:
        result = ops.clean(list(patterns), options, confirm=_confirm_deletion)
    _report(ctx, result)


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@cli.command("list")
@click.argument("patterns", nargs=-1)
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.pass_context
def list_snapshots(ctx: Any, patterns: tuple[str, ...], output: str) -> None:
    """List the snapshots of every VM matching one of PATTERNS (default: all)."""
    with _session(ctx) as ops:
        listings = ops.list_vms(list(patterns) or [MATCH_ALL])

    if output == "json":
        json_data = [
            {
                "name": listing.name,
                "state": listing.state.label,
                "snapshots": [
                    {
                        "name": row.name,
                        "creation_time": row.creation_time,
                        "state": row.state,
                        "description": row.description,
                    }
                    for row in listing.snapshots
                ],
            }
            for listing in listings
        ]
        click.echo(json.dumps(json_data, indent=2))
        return

    for listing in listings:
        click.echo(f"\n{listing.name} ({listing.state.label}):")
        if not listing.snapshots:
            click.echo("  No snapshots found")
            continue
        click.echo(f"  {'Name':<40} {'Created (UTC)':<20} {'State':<10}")
        click.echo("  " + "-" * 70)
        for row in listing.snapshots:
            click.echo(f"  {row.name:<40} {_format_time(row.creation_time):<20} {row.state:<10}")


@cli.command()
@click.argument("patterns", nargs=-1)
@click.pass_context
def listvms(ctx: Any, patterns: tuple[str, ...]) -> None:
    """List the VMs matching one of PATTERNS (default: all)."""
    with _session(ctx) as ops:
        listings = ops.list_vms(list(patterns) or [MATCH_ALL], with_snapshots=False)

    if not listings:
        click.echo("No VMs found")
        return
    click.echo(f"{'Name':<30} {'State':<15}")
    click.echo("-" * 45)
    for listing in listings:
        click.echo(f"{listing.name:<30} {listing.state.label:<15}")


@cli.command()
@click.argument("patterns", nargs=-1)
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(file_okay=False),
    required=True,
    help="Directory receiving one sub-directory per VM",
)
@click.option(
    "--snapshot/--no-snapshot",
    default=True,
    help="Create a snapshot before copying the disks",
)
@click.option(
    "--timeout", "-t", type=click.IntRange(min=1), default=None, help="Shutdown timeout in minutes"
)
@click.pass_context
def export(
    ctx: Any,
    patterns: tuple[str, ...],
    output_dir: str,
    snapshot: bool,
    timeout: Optional[int],
) -> None:
    """Export the disks and descriptor of every VM matching one of PATTERNS."""
    options = ExportOptions(output_dir=output_dir, snapshot=snapshot, timeout=timeout)
    with _session(ctx) as ops:
        result = ops.export(list(patterns), options)
    _report(ctx, result)


@cli.group()
def config() -> None:
    """Manage configuration settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display the effective configuration."""
    click.echo(yaml.safe_dump(ctx.obj["config"].model_dump(), default_flow_style=False))


@config.command("init")
@click.option("--config-dir", default="~/.config/virsnap", help="Configuration directory")
@click.option("--force", is_flag=True, help="Overwrite an existing configuration file")
def config_init(config_dir: str, force: bool) -> None:
    """Initialize default configuration."""
    config_path = Path(config_dir).expanduser()
    config_file = config_path / "config.yaml"

    if config_file.exists() and not force:
        click.echo(f"Configuration already exists at {config_file}", err=True)
        sys.exit(1)

    config_path.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        yaml.safe_dump(AppConfig().model_dump(), f, default_flow_style=False)

    click.echo(f"Configuration initialized at {config_file}")


@config.command("path")
def config_path() -> None:
    """Show the configuration file search paths."""
    default_paths = [os.path.expanduser(path) for path in DEFAULT_CONFIG_PATHS]

    click.echo("Configuration search paths (in order):")
    for i, path in enumerate(default_paths, 1):
        exists = "✓" if os.path.exists(path) else "✗"
        click.echo(f"  {i}. {exists} {path}")

    for path in default_paths:
        if os.path.exists(path):
            click.echo(f"\nCurrently using: {path}")
            return

    click.echo("\nNo configuration file found. Run 'virsnap config init' to create one.")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
