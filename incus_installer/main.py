"""
Incus installer — CLI entrypoint.

Usage:
    incus-installer --help
    sudo incus-installer install
    incus-installer plan
    incus-installer preseed --storage-path /srv/incus
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from incus_installer import __version__
from incus_installer.core.observability.logging_config import (
    ENV_LOG_FILE,
    ENV_LOG_FILE_LEVEL,
    ENV_LOG_LEVEL,
    resolve_level,
    setup_logging,
)

_STATUS_STYLE = {
    "succeeded": ("✓", "green"),
    "skipped": ("⊘", "cyan"),
    "failed": ("✗", "red"),
}


def _default_runner():
    from incus_installer.adapters.shell.command import SubprocessCommandRunner

    return SubprocessCommandRunner()


@click.group()
@click.version_option(version=__version__, prog_name="incus-installer")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to an installer YAML file (default: ./incus-installer.yml or /etc/incus-installer/config.yml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """Incus installer — staged, idempotent install of the Incus daemon."""
    from incus_installer.core.config.loader import find_config_file

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else find_config_file()
    ctx.obj.setdefault("runner_factory", _default_runner)
    ctx.obj.setdefault("environ", dict(os.environ))

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(
            debug=debug, verbose=verbose, quiet=quiet,
            env_level=os.environ.get(ENV_LOG_LEVEL),
        ),
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
        quiet_third_party=not debug,
    )


def _fail(error) -> None:
    """Print an installer error with its diagnostic hint and exit 1."""
    click.secho(f"❌ {error.message}", fg="red", err=True)
    if error.diagnostic:
        click.echo(f"   Diagnose with: {error.diagnostic}", err=True)
    sys.exit(1)


def _resolve(ctx: click.Context, overrides: dict, *, detect: bool = True):
    from incus_installer.core.config.loader import resolve_config

    return resolve_config(
        config_path=ctx.obj.get("config_path"),
        overrides=overrides,
        environ=ctx.obj.get("environ"),
        detect=detect,
    )


def _print_plan(config, *, as_json: bool = False) -> None:
    from incus_installer.core.use_cases.install import build_pipeline

    stages = build_pipeline(config)
    if as_json:
        click.echo(json.dumps({
            "os_family": config.os_family.value,
            "stages": [
                {"ordinal": i, "name": s.name, "fatal": s.fatal, "description": s.intent}
                for i, s in enumerate(stages, start=1)
            ],
        }, indent=2))
        return

    click.secho(f"\n📋 Install plan ({config.os_family.value}, {len(stages)} stages)", fg="cyan", bold=True)
    for i, stage in enumerate(stages, start=1):
        optional = click.style(" (optional)", fg="yellow") if not stage.fatal else ""
        click.echo(f"   {i:2d}. {stage.name:<22} {stage.intent}{optional}")
    click.echo()


def _progress_printer(quiet: bool):
    from incus_installer.core.models.stage import StageStatus

    def on_progress(stage, outcome) -> None:
        if outcome.status == StageStatus.RUNNING:
            if not quiet:
                click.secho(f"→ [{outcome.ordinal}] {stage.intent}...", fg="white", bold=True)
            return

        marker, color = _STATUS_STYLE[outcome.status.value]
        if outcome.warning:
            marker, color = "⚠️ ", "yellow"
        if quiet and outcome.ok:
            return
        detail = f" — {outcome.error}" if outcome.error else ""
        if outcome.status == StageStatus.SKIPPED:
            detail = " — already satisfied"
        click.secho(f"  {marker} {stage.name}{detail}", fg=color)

    return on_progress


# ── install ─────────────────────────────────────────────────────


@cli.command()
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Accept defaults without prompting.")
@click.option("--storage-path", default=None, help="Directory backing the default storage pool.")
@click.option("--init/--no-init", "run_init", default=None,
              help="Initialise storage, network and profile after installing.")
@click.option("--cleanup-build/--keep-build", "cleanup_build", default=None,
              help="Remove the build directory after a verified source install.")
@click.option("--os-family", type=click.Choice(["debian", "rhel"]), default=None,
              help="Override the detected OS family.")
@click.option("--ledger", type=click.Path(dir_okay=False), default=None,
              help="Append a record of this run to an NDJSON ledger.")
@click.option("--dry-run", is_flag=True, help="Show the planned stages without changing anything.")
@click.pass_context
def install(
    ctx: click.Context,
    assume_yes: bool,
    storage_path: str | None,
    run_init: bool | None,
    cleanup_build: bool | None,
    os_family: str | None,
    ledger: str | None,
    dry_run: bool,
) -> None:
    """Install and configure Incus on this host."""
    from incus_installer.core.config.prompts import collect_config
    from incus_installer.core.errors import InstallerError, UserAbort
    from incus_installer.core.services.detection import check_privilege
    from incus_installer.core.use_cases.install import post_install_summary, run_install

    quiet = ctx.obj.get("quiet", False)
    overrides = {
        "storage_path": storage_path,
        "run_init": run_init,
        "cleanup_build": cleanup_build,
        "os_family": os_family,
    }

    try:
        if not dry_run:
            check_privilege()
        config = _resolve(ctx, overrides)

        if dry_run:
            _print_plan(config)
            click.echo("Dry run: nothing was changed.")
            return

        config = collect_config(config, assume_yes=assume_yes, explicit=config.model_fields_set)
        runner = ctx.obj["runner_factory"]()
        result = run_install(
            config,
            runner,
            on_progress=_progress_printer(quiet),
            ledger=Path(ledger) if ledger else None,
        )
    except UserAbort as e:
        click.secho(f"⊘ {e.message}. Nothing was changed.", fg="yellow")
        return
    except InstallerError as e:
        _fail(e)
        return

    click.echo()
    failure = result.fatal_failure
    if failure is not None:
        click.secho(f"❌ Installation failed at stage '{failure.name}'", fg="red", bold=True, err=True)
        if failure.error:
            click.echo(f"   {failure.error}", err=True)
        if failure.diagnostic:
            click.echo(f"   Diagnose with: {failure.diagnostic}", err=True)
        if result.rolled_back:
            click.echo(f"   Rolled back: {', '.join(result.rolled_back)}", err=True)
        for err in result.rollback_errors:
            click.secho(f"   Rollback error: {err}", fg="yellow", err=True)
        sys.exit(result.exit_code)

    if result.warnings:
        click.secho("⚠️  Optional stages failed:", fg="yellow")
        for outcome in result.warnings:
            click.echo(f"   • {outcome.name}: {outcome.error}")
        click.echo()

    click.secho("✅ Incus installed", fg="green", bold=True)
    if not quiet:
        for line in post_install_summary(config):
            click.echo(f"   {line}" if line else "")
    click.echo()


# ── plan ────────────────────────────────────────────────────────


@cli.command()
@click.option("--os-family", type=click.Choice(["debian", "rhel"]), default=None,
              help="Override the detected OS family.")
@click.option("--init/--no-init", "run_init", default=None)
@click.option("--cleanup-build/--keep-build", "cleanup_build", default=None)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    os_family: str | None,
    run_init: bool | None,
    cleanup_build: bool | None,
    as_json: bool,
) -> None:
    """Show the ordered stages an install would run."""
    from incus_installer.core.errors import InstallerError

    try:
        config = _resolve(ctx, {
            "os_family": os_family, "run_init": run_init, "cleanup_build": cleanup_build,
        })
    except InstallerError as e:
        _fail(e)
        return
    _print_plan(config, as_json=as_json)


# ── preseed ─────────────────────────────────────────────────────


@cli.command()
@click.option("--storage-path", default=None, help="Directory backing the default storage pool.")
@click.pass_context
def preseed(ctx: click.Context, storage_path: str | None) -> None:
    """Print the preseed document without touching the host."""
    from incus_installer.core.errors import InstallerError
    from incus_installer.core.services.preseed import generate, render_preseed

    try:
        config = _resolve(ctx, {"storage_path": storage_path}, detect=False)
    except InstallerError as e:
        _fail(e)
        return
    click.echo(render_preseed(generate(config)), nl=False)


if __name__ == "__main__":
    cli()
