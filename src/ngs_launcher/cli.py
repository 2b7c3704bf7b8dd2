from __future__ import annotations

import getpass
import logging
from typing import Callable

import click
import pandas as pd

from ngs_launcher.audit import get_logger
from ngs_launcher.config import LauncherConfig, load_config
from ngs_launcher.errors import ConfigError, EnvironmentCheckError, LockHeldError, UnitError
from ngs_launcher.lock import acquire_lock
from ngs_launcher.monitor import WORKFLOWS, reconcile, unit_status
from ngs_launcher.pipeline import failed_units, run_concordance, run_demultiplexing

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
}

# Lock names match the workflow names so reconcile and a scan of the same
# workflow exclude each other.
_LOCKS = {"concordance": "concordance", "demultiplexing": "demultiplexing"}


def _fatal(ctx: click.Context, message: str) -> None:
    logger.critical(message)
    click.echo(f"FATAL: {message}", err=True)
    ctx.exit(1)


def _load(ctx: click.Context) -> LauncherConfig:
    try:
        return load_config(ctx.obj["config_dir"], ctx.obj["group"])
    except ConfigError as exc:
        _fatal(ctx, str(exc))


def check_user(config: LauncherConfig) -> None:
    """Refuse to run as anyone but ``config.bot_user`` (when configured).

    Raises
    ------
    EnvironmentCheckError
        If the current user differs from ``config.bot_user``.
    """
    if config.bot_user is None:
        return
    user = getpass.getuser()
    if user != config.bot_user:
        raise EnvironmentCheckError(
            f"This script must be executed by user {config.bot_user}, but you are {user}."
        )


def _launch(
    ctx: click.Context,
    workflow: str,
    runner: Callable[..., pd.DataFrame],
    dry_run: bool,
) -> None:
    config = _load(ctx)
    try:
        check_user(config)
        with acquire_lock(config.lock_file(_LOCKS[workflow])) as lock_path:
            logger.debug("Successfully got exclusive access to lock file %s ...", lock_path)
            results = runner(config, dry_run=dry_run, audit=get_logger(config))
    except (ConfigError, EnvironmentCheckError, LockHeldError) as exc:
        _fatal(ctx, str(exc))
    except UnitError as exc:
        # only reached with on_unit_error: abort
        _fatal(ctx, f"Aborting {workflow} after unit failure: {exc}")

    if results.empty:
        click.echo("Nothing to do.")
        return

    counts = results["outcome"].value_counts()
    click.echo(
        ", ".join(f"{n} {outcome}" for outcome, n in sorted(counts.items()))
        + f" ({len(results)} unit(s) scanned)."
    )
    acted = results[results["outcome"] != "skipped"]
    if not acted.empty:
        click.echo(acted.to_string(index=False))

    failed = failed_units(results)
    if failed:
        _fatal(ctx, f"{len(failed)} unit(s) failed: {', '.join(failed)}")


@click.group()
@click.option("-g", "--group", "group", required=True, metavar="GROUP", help="Group to process.")
@click.option(
    "-l",
    "--log-level",
    "log_level",
    default="INFO",
    show_default=True,
    type=click.Choice(list(LOG_LEVELS), case_sensitive=False),
    help="Log level.",
)
@click.option(
    "--config-dir",
    "config_dir",
    default="/etc/ngs_launcher",
    show_default=True,
    envvar="NGS_LAUNCHER_CONFIG_DIR",
    metavar="DIR",
    help="Directory holding sharedConfig.yaml, <host>.yaml and <group>.yaml.",
)
@click.pass_context
def main(ctx: click.Context, group: str, log_level: str, config_dir: str) -> None:
    """ngs-launcher: submit demultiplexing and concordance jobs for new data."""
    logging.basicConfig(
        level=LOG_LEVELS[log_level.upper()],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["group"] = group
    ctx.obj["config_dir"] = config_dir


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be submitted without submitting.")
@click.pass_context
def demultiplex(ctx: click.Context, dry_run: bool) -> None:
    """Submit demultiplexing for completed sequencer runs."""
    _launch(ctx, "demultiplexing", run_demultiplexing, dry_run)


@main.command()
@click.option("--dry-run", is_flag=True, help="Show what would be submitted without submitting.")
@click.pass_context
def concordance(ctx: click.Context, dry_run: bool) -> None:
    """Submit concordance checks for new sample sheets."""
    _launch(ctx, "concordance", run_concordance, dry_run)


@main.command()
@click.option(
    "--workflow",
    type=click.Choice(WORKFLOWS),
    default=None,
    help="Limit to one workflow (default: both).",
)
@click.pass_context
def status(ctx: click.Context, workflow: str | None) -> None:
    """Show the lifecycle state of every unit by re-scanning the filesystem."""
    config = _load(ctx)
    workflows = [workflow] if workflow else list(WORKFLOWS)
    frames = [df for df in (unit_status(config, wf) for wf in workflows) if not df.empty]
    if not frames:
        click.echo("No units found.")
        return
    click.echo(pd.concat(frames, ignore_index=True).to_string(index=False))


@main.command(name="reconcile")
@click.option("--workflow", type=click.Choice(WORKFLOWS), required=True)
@click.option(
    "--clear",
    "clear",
    multiple=True,
    metavar="UNIT",
    help="Return an ambiguous UNIT to absent after verifying nothing runs for it. Repeatable.",
)
@click.pass_context
def reconcile_cmd(ctx: click.Context, workflow: str, clear: tuple[str, ...]) -> None:
    """Resolve units whose submission could not be recorded."""
    config = _load(ctx)
    try:
        check_user(config)
        with acquire_lock(config.lock_file(_LOCKS[workflow])):
            results = reconcile(config, workflow, clear=clear, audit=get_logger(config))
    except (EnvironmentCheckError, LockHeldError) as exc:
        _fatal(ctx, str(exc))
    except (UnitError, OSError) as exc:
        _fatal(ctx, f"Reconcile of {workflow} stopped: {exc}")

    if results.empty:
        click.echo("No ambiguous units.")
        return
    click.echo(results.to_string(index=False))
