"""Terraform recovery CLI (tfrecover).

Usage:
    tfrecover analyze-plan ./infra plan.tfplan -p 'azurerm_key_vault\\.'
    tfrecover apply ./infra --apply-params '-var-file=prod.tfvars'
    tfrecover replace ./infra azurerm_resource_group.rg /subscriptions/.../rg --backup state.bak
    tfrecover state list ./infra
    tfrecover check

Exit codes:
    0   success
    2   invalid parameters or configuration
    10  Terraform binary unavailable
    20  Terraform failed and could not be recovered, or plan is destructive
    30  missing module directory, plan or backup file
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import click

from .config import ConfigurationError, RecoveryConfig
from .errors import RecoveryError, TerraformError
from .orchestrator import ApplyOrchestrator
from .plan_analysis import RiskAnalyzer, enforce_plan_gate, format_destructive_changes
from .state import StateMutator
from .terraform import TerraformRunner

logger = logging.getLogger(__name__)

# LogRecord attributes that are not user-supplied extras
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False) -> None:
    """Configure structured JSON logging on stderr.

    Command results go to stdout, so logs stay out of the way of pipes.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler.set_name("tfrecover")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "tfrecover":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _fail(error: RecoveryError) -> NoReturn:
    click.secho(f"Error: {error}", fg="red", err=True)
    sys.exit(error.exit_code)


def _load_config(config_file: Path | None) -> RecoveryConfig:
    if config_file is not None:
        return RecoveryConfig.from_file(config_file)
    return RecoveryConfig.from_env()


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="tfrecover")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML configuration file (default: environment variables).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_file: Path | None, verbose: bool) -> None:
    """Terraform apply with automatic error recovery.

    \b
    Quick Start:
        tfrecover check                          # Verify Terraform is installed
        tfrecover analyze-plan ./infra plan.out  # Gate destructive changes
        tfrecover apply ./infra                  # Apply with recovery
    """
    setup_logging(verbose)
    try:
        ctx.obj = _load_config(config_file)
    except ConfigurationError as e:
        _fail(e)


def _runner(ctx: click.Context) -> TerraformRunner:
    return TerraformRunner(ctx.obj)


# =============================================================================
# Plan and Apply Commands
# =============================================================================


@cli.command("analyze-plan")
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.argument("plan_file", type=click.Path(path_type=Path))
@click.option(
    "--pattern",
    "-p",
    "patterns",
    multiple=True,
    help="Address regex to check (repeatable, default: every resource).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the analysis as JSON.")
@click.pass_context
def analyze_plan_cmd(
    ctx: click.Context,
    module_dir: Path,
    plan_file: Path,
    patterns: tuple[str, ...],
    as_json: bool,
) -> None:
    """Fail if the plan would destroy or recreate matching resources."""
    try:
        analysis = RiskAnalyzer(_runner(ctx)).analyze_plan(module_dir, plan_file, list(patterns))
    except RecoveryError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(analysis.to_dict(), indent=2))
    elif not analysis.is_safe:
        click.echo(format_destructive_changes(analysis))

    try:
        enforce_plan_gate(analysis)
    except TerraformError as e:
        _fail(e)

    if not as_json:
        click.secho("✓ No destructive changes detected", fg="green")


@cli.command()
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.option("--apply-params", default="", help="Extra parameters for terraform apply.")
@click.option("--import-params", default="", help="Extra parameters for terraform import.")
@click.option(
    "--parallelism",
    type=click.IntRange(min=1),
    default=None,
    help="Terraform -parallelism (default: TF_DEFAULT_PARALLELISM).",
)
@click.option(
    "--auto-recovery/--no-auto-recovery",
    default=None,
    help="Recover from known errors (default: TF_AUTO_RECOVERY).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the session as JSON.")
@click.pass_context
def apply(
    ctx: click.Context,
    module_dir: Path,
    apply_params: str,
    import_params: str,
    parallelism: int | None,
    auto_recovery: bool | None,
    as_json: bool,
) -> None:
    """Run terraform apply and recover from known errors."""
    orchestrator = ApplyOrchestrator(_runner(ctx), ctx.obj)
    try:
        session = orchestrator.apply_with_recovery(
            module_dir,
            apply_params=apply_params,
            import_params=import_params,
            parallelism=parallelism,
            auto_recovery=auto_recovery,
        )
    except RecoveryError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(session.to_dict(), indent=2))

    if session.succeeded:
        if not as_json:
            click.secho("✓ Terraform apply completed", fg="green")
            click.echo(
                f"  Imports: {session.imports_applied}, "
                f"retries: {session.retries_consumed}, "
                f"ignored permission conflicts: {session.permission_conflicts_ignored}"
            )
        return

    if session.unresolved_errors and not as_json:
        click.echo("UNHANDLED TERRAFORM ERRORS (manual intervention required):")
        for record in session.unresolved_errors:
            click.echo(f"  {record.display_text()}")
    _fail(TerraformError(session.failure_reason or "Terraform apply failed"))


@cli.command()
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.argument("address")
@click.argument("external_id")
@click.option(
    "--backup",
    "backup_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Back up state here first and restore it if the import fails.",
)
@click.option("--import-params", default="", help="Extra parameters for terraform import.")
@click.pass_context
def replace(
    ctx: click.Context,
    module_dir: Path,
    address: str,
    external_id: str,
    backup_path: Path | None,
    import_params: str,
) -> None:
    """Rebind ADDRESS to the existing resource EXTERNAL_ID."""
    try:
        StateMutator(_runner(ctx), ctx.obj).replace_resource(
            module_dir, address, external_id, backup_path, import_params
        )
    except RecoveryError as e:
        _fail(e)
    click.secho(f"✓ {address} now tracks {external_id}", fg="green")


# =============================================================================
# State Commands
# =============================================================================


@cli.group()
def state() -> None:
    """Tracked-state commands: list, rm, import."""
    pass


@state.command("list")
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.pass_context
def state_list(ctx: click.Context, module_dir: Path) -> None:
    """List every resource address in tracked state."""
    try:
        addresses = StateMutator(_runner(ctx), ctx.obj).list_resources(module_dir)
    except RecoveryError as e:
        _fail(e)
    for address in addresses:
        click.echo(address)


@state.command("rm")
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.argument("address")
@click.pass_context
def state_rm(ctx: click.Context, module_dir: Path, address: str) -> None:
    """Remove ADDRESS from tracked state without destroying it."""
    try:
        StateMutator(_runner(ctx), ctx.obj).remove_resource(module_dir, address)
    except RecoveryError as e:
        _fail(e)
    click.secho(f"✓ Removed {address} from state", fg="green")


@state.command("import")
@click.argument("module_dir", type=click.Path(path_type=Path))
@click.argument("address")
@click.argument("external_id")
@click.option("--import-params", default="", help="Extra parameters for terraform import.")
@click.pass_context
def state_import(
    ctx: click.Context,
    module_dir: Path,
    address: str,
    external_id: str,
    import_params: str,
) -> None:
    """Import the existing resource EXTERNAL_ID as ADDRESS."""
    try:
        StateMutator(_runner(ctx), ctx.obj).import_resource(
            module_dir, address, external_id, import_params
        )
    except RecoveryError as e:
        _fail(e)
    click.secho(f"✓ Imported {external_id} as {address}", fg="green")


# =============================================================================
# Utility Commands
# =============================================================================


@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Check that the Terraform binary is installed and working."""
    runner = _runner(ctx)
    try:
        path = runner.ensure_available()
        version = runner.version()
    except RecoveryError as e:
        _fail(e)
    click.secho(f"✓ Terraform {version} ({path})", fg="green")


def main() -> None:
    """Console script entry point."""
    cli()


if __name__ == "__main__":
    main()
