"""
CLI interface for Claim Guard.

Operator commands over the persisted quota and audit ledgers, plus
offline validation of analysis files.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from claim_guard.config.loader import Settings, load_settings
from claim_guard.core.analysis import AnalysisResult
from claim_guard.core.validation import format_validation_warnings, validate
from claim_guard.storage.models import AuditAction, AuditResult
from claim_guard.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

# Exit codes - WARN is non-failing (0)
EXIT_CODE_PASS = 0
EXIT_CODE_WARN = 0  # Non-failing warning
EXIT_CODE_FAIL = 1  # Failing error


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """Claim Guard CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("Claim Guard - Use --help to see available commands")


def _settings(ctx: typer.Context) -> Settings:
    config = ctx.obj.get("config") if ctx.obj else None
    return load_settings(config)


def _require_db(settings: Settings) -> str:
    if not settings.db_path:
        console.print("[red]Error:[/] storage.db_path is not configured")
        sys.exit(EXIT_CODE_FAIL)
    return settings.db_path


@app.command()
def init(ctx: typer.Context):
    """Initialize the Claim Guard database."""
    try:
        db_path = _require_db(_settings(ctx))
        initialize_schema(db_path)
        console.print(f"[green]✓[/] Database initialized at {db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command(name="validate")
def validate_command(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Analysis JSON file to validate"),
    strict: bool = typer.Option(
        False,
        "--strict",
        "-s",
        help="Exit with error code if manual review is required"
    )
):
    """
    Run the fraud and consistency rules against an analysis file.

    Warnings never fail the command unless --strict is given.
    """
    try:
        settings = _settings(ctx)
        with open(file, 'r', encoding='utf-8') as f:
            analysis = AnalysisResult.from_dict(json.load(f))
    except FileNotFoundError:
        console.print(f"[red]Error:[/] File not found: {file}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    result = validate(analysis, settings.thresholds)

    if result.is_valid:
        console.print("[green]✓[/] No validation warnings")
        sys.exit(EXIT_CODE_PASS)

    lines = format_validation_warnings(result)
    if result.requires_manual_review:
        console.print(f"[bold yellow]⚠ {lines.pop(0)}[/]")
    for line in lines:
        console.print(f"  - {line}")
    console.print(f"\n[dim]Flagged: {', '.join(result.flagged_reasons)}[/]")

    if strict and result.requires_manual_review:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_WARN)


@app.command()
def quota(ctx: typer.Context):
    """Show per-model usage over the trailing window."""
    try:
        settings = _settings(ctx)
        _require_db(settings)
        ledger = settings.build_ledger()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    tiers = settings.tiers
    table = Table(title=f"Model quota (last {settings.window_seconds:g}s)")
    table.add_column("Model")
    table.add_column("Requests", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Today", justify="right")
    table.add_column("Status")

    for model in tiers.all_models:
        limits = tiers.get_limits(model)
        usage = ledger.usage(model)
        wait = ledger.seconds_until_retry(model)
        status = "[green]available[/]" if wait == 0 else f"[yellow]retry in {wait}s[/]"
        table.add_row(
            model,
            f"{usage.requests}/{limits.rpm}",
            f"{usage.tokens:,}/{limits.tpm:,}",
            f"{usage.daily_requests}/{limits.rpd}",
            status,
        )

    console.print(table)
    if settings.forced_model:
        console.print(
            f"[bold yellow]Forced model {settings.forced_model} is set; "
            "rate limiting is bypassed[/]"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def audit(
    ctx: typer.Context,
    action: Optional[AuditAction] = typer.Option(
        None,
        "--action",
        "-a",
        help="Filter by audited action"
    ),
    result: Optional[AuditResult] = typer.Option(
        None,
        "--result",
        "-r",
        help="Filter by recorded result"
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Maximum number of entries to show"
    )
):
    """List recent audit entries, newest first."""
    try:
        settings = _settings(ctx)
        db_path = _require_db(settings)
        initialize_schema(db_path)
        entries = get_repository(db_path).audit_entries(action=action, result=result, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Audit log")
    table.add_column("Timestamp")
    table.add_column("Action")
    table.add_column("Result")
    table.add_column("Model")
    table.add_column("Tokens", justify="right")
    table.add_column("Flags")
    table.add_column("Files", justify="right")

    for entry in entries:
        table.add_row(
            entry.timestamp.isoformat(timespec="seconds"),
            entry.action.value,
            entry.result.value,
            entry.model_used or "-",
            str(entry.token_usage) if entry.token_usage is not None else "-",
            ", ".join(entry.security_flags) or "-",
            str(len(entry.file_hashes)),
        )

    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
