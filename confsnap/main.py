"""
confsnap — CLI entrypoint.

Usage:
    confsnap --help
    confsnap backup templates/desktop.yml --into ~/snapshots
    confsnap restore templates/desktop.yml ~/snapshots/desktop-20260101-120000
    confsnap resolve templates/desktop.yml --json

Exit codes: 0 success, 1 completed with failed items, 2 aborted or fatal.
"""

from __future__ import annotations

import json
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path

import click

from confsnap import __version__
from confsnap.core.errors import ConfsnapError, SchemaError
from confsnap.core.observability.logging_config import setup_logging

EXIT_OK = 0
EXIT_DEGRADED = 1
EXIT_FATAL = 2


@click.group()
@click.version_option(version=__version__, prog_name="confsnap")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to confsnap.yml engine settings (default: config dir).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """confsnap — back up and restore machine configuration from templates."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("CONFSNAP_LOG_LEVEL", "WARNING")

    ctx.obj["redactor"] = setup_logging(
        level=level,
        log_file=os.environ.get("CONFSNAP_LOG_FILE"),
        log_file_level=os.environ.get("CONFSNAP_LOG_FILE_LEVEL"),
        quiet_third_party=not debug,
    )


# ── Helpers ──────────────────────────────────────────────────────────


def _fatal(message: str) -> None:
    click.secho(f"❌ {message}", fg="red", err=True)
    sys.exit(EXIT_FATAL)


def _load_config(ctx: click.Context):
    from confsnap.core.config.settings import load_engine_config

    try:
        config = load_engine_config(ctx.obj.get("config_path"))
    except ConfsnapError as e:
        _fatal(str(e))
    passphrase = config.resolve_passphrase()
    if passphrase:
        ctx.obj["redactor"].add(passphrase)
    return config


def _host(config, machine: str | None = None):
    from confsnap.adapters.registry_store import default_registry_store
    from confsnap.core.context import HostContext

    host = HostContext.from_environment(registry=default_registry_store(config.registry_file))
    if machine:
        host.machine_name = machine
    return host


def _run_operation(ctx: click.Context, operation: str, template: str, snapshot: Path, as_json: bool) -> None:
    """Run one operation, turning Ctrl-C into a cooperative cancel."""
    from confsnap.core.engine.executor import execute

    config = _load_config(ctx)
    host = _host(config)
    cancel = threading.Event()

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="confsnap-run") as pool:
        future = pool.submit(
            execute, template, operation, snapshot, host, config=config, cancel=cancel
        )
        while True:
            try:
                report = future.result(timeout=0.2)
                break
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                cancel.set()
                click.secho("⊘ Cancelling — waiting for running commands to stop…", fg="yellow", err=True)
            except ConfsnapError as e:
                _fatal(str(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report, quiet=ctx.obj.get("quiet", False))

    if report.aborted:
        sys.exit(EXIT_FATAL)
    sys.exit(EXIT_DEGRADED if report.failed else EXIT_OK)


def _print_report(report, quiet: bool = False) -> None:
    if not quiet:
        click.secho(f"\n📋 {report.operation.value} · {report.template}", fg="cyan", bold=True)
        click.echo(f"   Snapshot: {report.snapshot}")
        click.echo()
        for outcome in report.outcomes:
            if outcome.ok:
                marker, color = "✓", "green"
            elif outcome.failed:
                marker, color = "✗", "red"
            else:
                marker, color = "⊘", "yellow"
            click.secho(f"   {marker} ", fg=color, nl=False)
            reason = f"  ({outcome.reason})" if outcome.reason else ""
            click.echo(f"{outcome.category}/{outcome.item}{reason}")

    if report.warnings and not quiet:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warning in report.warnings:
            click.echo(f"   • {warning}")

    click.echo()
    if report.aborted:
        click.secho(f"❌ Aborted: {report.abort_reason}", fg="red", bold=True)
        return
    color = {"ok": "green", "degraded": "yellow"}.get(report.status, "white")
    suffix = " (cancelled)" if report.cancelled else ""
    click.secho(
        f"{report.status}: {report.succeeded} succeeded, {report.failed} failed, "
        f"{report.skipped} skipped{suffix}",
        fg=color,
        bold=True,
    )


# ── Operations ───────────────────────────────────────────────────────


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--into", "root", required=True, type=click.Path(file_okay=False),
    help="Directory that receives the new timestamped snapshot.",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the report as JSON.")
@click.pass_context
def backup(ctx: click.Context, template: str, root: str, as_json: bool) -> None:
    """Capture the template's items into a new snapshot."""
    _capture(ctx, "backup", template, root, as_json)


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--into", "root", required=True, type=click.Path(file_okay=False),
    help="Directory that receives the new timestamped snapshot.",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the report as JSON.")
@click.pass_context
def sync(ctx: click.Context, template: str, root: str, as_json: bool) -> None:
    """Capture only the template's sync items into a new snapshot."""
    _capture(ctx, "sync", template, root, as_json)


def _capture(ctx: click.Context, operation: str, template: str, root: str, as_json: bool) -> None:
    from confsnap.core.config.loader import load_template
    from confsnap.core.persistence.snapshot import new_snapshot_path

    try:
        name = load_template(Path(template)).metadata.name
    except SchemaError as e:
        _fatal(str(e))
    _run_operation(ctx, operation, template, new_snapshot_path(Path(root), name), as_json)


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.argument("snapshot", type=click.Path())
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the report as JSON.")
@click.pass_context
def restore(ctx: click.Context, template: str, snapshot: str, as_json: bool) -> None:
    """Apply a snapshot's state back onto this machine."""
    _run_operation(ctx, "restore", template, Path(snapshot), as_json)


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.argument("snapshot", type=click.Path())
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output the report as JSON.")
@click.pass_context
def uninstall(ctx: click.Context, template: str, snapshot: str, as_json: bool) -> None:
    """Uninstall the applications recorded in a snapshot."""
    _run_operation(ctx, "uninstall", template, Path(snapshot), as_json)


# ── Inspection ───────────────────────────────────────────────────────


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option("--machine", default=None, help="Resolve as if running on this machine name.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def resolve(ctx: click.Context, template: str, machine: str | None, as_json: bool) -> None:
    """Show the effective template for this machine."""
    from confsnap.adapters.shell.command import ShellScriptRunner
    from confsnap.core.config.loader import load_template
    from confsnap.core.engine.resolver import resolve as resolve_template

    config = _load_config(ctx)
    host = _host(config, machine)
    runner = ShellScriptRunner(config.shell, default_timeout=config.command_timeout)
    try:
        effective, warnings = resolve_template(
            load_template(Path(template)),
            host,
            runner,
            validation_level=config.validation_level,
            timeout=config.command_timeout,
        )
    except ConfsnapError as e:
        _fatal(str(e))

    if as_json:
        data = effective.model_dump(mode="json")
        data["warnings"] = [w.model_dump(mode="json") for w in warnings]
        click.echo(json.dumps(data, indent=2))
        return

    click.secho(f"\n📋 {effective.metadata.name}", fg="cyan", bold=True)
    click.echo(f"   Machine: {host.machine_name}")
    for category in ("files", "registry", "applications"):
        items = getattr(effective, category)
        click.echo()
        click.secho(f"   {category.capitalize()}: {len(items)}", fg="white", bold=True)
        for item in items:
            tags = f" [{', '.join(item.inheritance_tags)}]" if item.inheritance_tags else ""
            click.echo(f"     • {item.name}{tags}  ({item.action}, from {item.origin})")
    if warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warning in warnings:
            click.echo(f"   • {warning}")
    click.echo()


@cli.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def validate(template: str, as_json: bool) -> None:
    """Check a template against the schema without running anything."""
    from confsnap.core.config.loader import load_template

    try:
        parsed = load_template(Path(template))
    except SchemaError as e:
        if as_json:
            click.echo(json.dumps({"valid": False, "error": str(e), "problems": e.problems}, indent=2))
            sys.exit(EXIT_DEGRADED)
        click.secho("❌ Template errors:", fg="red", bold=True)
        for problem in e.problems or [str(e)]:
            click.echo(f"   • {problem}")
        sys.exit(EXIT_DEGRADED)

    if as_json:
        click.echo(json.dumps({"valid": True, "name": parsed.metadata.name, "items": parsed.item_count}, indent=2))
        return
    click.secho("✅ Template is valid", fg="green", bold=True)
    click.echo(f"   Name: {parsed.metadata.name}")
    click.echo(f"   Items: {parsed.item_count}")
    click.echo(f"   Machine sections: {len(parsed.machine_specific)}")
    click.echo(f"   Conditional sections: {len(parsed.conditional_sections)}")


if __name__ == "__main__":
    cli()
