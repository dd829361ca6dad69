"""
CLI interface for tokenwatch.

Provides usage reports, session blocks, live monitoring and the status line.
"""

import json
import signal
import sys
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from tokenwatch.config.loader import (
    MAX_REFRESH_INTERVAL,
    MIN_REFRESH_INTERVAL,
    ConfigurationError,
    MonitorConfig,
    load_config,
)
from tokenwatch.core.aggregation import UsageAggregate, calculate_totals
from tokenwatch.core.blocks import (
    DEFAULT_RECENT_DAYS,
    BurnRateLevel,
    SessionBlock,
    calculate_burn_rate,
    project_block_usage,
)
from tokenwatch.core.live_monitor import LiveMonitorConfig, run_live_monitor
from tokenwatch.core.loader import (
    LoadOptions,
    group_rows_by_project,
    load_daily_usage,
    load_monthly_usage,
    load_session_blocks,
    load_session_usage,
    load_weekly_usage,
    resolve_roots,
)
from tokenwatch.core.pricing import CostMode
from tokenwatch.core.project_names import ProjectNameFormatter
from tokenwatch.core.status import (
    compute_status_line,
    format_currency,
    format_remaining_time,
    resolve_status_output,
    session_id_from_transcript,
)
from tokenwatch.storage.status_cache import StatusCacheStore
from tokenwatch.utils.logging import setup_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_BURN_RATE_STYLES = {
    BurnRateLevel.NORMAL: "green",
    BurnRateLevel.MODERATE: "yellow",
    BurnRateLevel.HIGH: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to YAML config file")
SinceOption = typer.Option(None, "--since", "-s", help="Start date (YYYYMMDD or YYYY-MM-DD)")
UntilOption = typer.Option(None, "--until", "-u", help="End date (YYYYMMDD or YYYY-MM-DD)")
ProjectOption = typer.Option(None, "--project", "-p", help="Only include this project")
OrderOption = typer.Option("asc", "--order", "-o", help="Sort order: asc or desc")
ModeOption = typer.Option(None, "--mode", "-m", help="Cost mode: auto, calculate or display")
OfflineOption = typer.Option(False, "--offline", help="Use cached or built-in pricing only")
TimezoneOption = typer.Option(None, "--timezone", "-z", help="IANA timezone for date grouping")
JsonOption = typer.Option(False, "--json", "-j", help="Output JSON instead of a table")
ProjectAliasesOption = typer.Option(
    None, "--project-aliases", help="Display names for projects as raw=Alias pairs, comma separated"
)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """tokenwatch CLI."""
    if ctx.invoked_subcommand is None:
        console.print("tokenwatch - Use --help to see available commands")


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _load_settings(config_path: Optional[str]) -> MonitorConfig:
    try:
        config = load_config(config_path)
    except (FileNotFoundError, ValueError) as e:
        setup_logging()
        _fail(str(e))
    setup_logging(config.log_level)
    return config


def _build_options(
    config: MonitorConfig,
    since: Optional[str] = None,
    until: Optional[str] = None,
    project: Optional[str] = None,
    order: str = "asc",
    mode: Optional[str] = None,
    offline: bool = False,
    tz: Optional[str] = None,
    **overrides: Any,
) -> LoadOptions:
    cost_mode = config.cost_mode
    if mode is not None:
        try:
            cost_mode = CostMode(mode.lower())
        except ValueError:
            raise ValueError(f"Invalid mode '{mode}'. Must be one of: {[m.value for m in CostMode]}")
    return LoadOptions(
        data_paths=config.data_paths,
        since=since,
        until=until,
        project=project,
        order=order,
        timezone=tz or config.timezone,
        start_of_week=config.start_of_week,
        cost_mode=cost_mode,
        offline=offline or config.offline,
        session_duration_hours=config.session_duration_hours,
        file_concurrency=config.file_concurrency,
        **overrides,
    )


def _row_to_dict(row: UsageAggregate) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if row.period:
        data["period"] = row.period
    if row.project:
        data["project"] = row.project
    if row.session_id:
        data["sessionId"] = row.session_id
    data.update({
        "inputTokens": row.tokens.input_tokens,
        "outputTokens": row.tokens.output_tokens,
        "cacheCreationTokens": row.tokens.cache_creation_tokens,
        "cacheReadTokens": row.tokens.cache_read_tokens,
        "totalTokens": row.total_tokens,
        "totalCost": row.total_cost,
        "modelsUsed": list(row.models_used),
        "modelBreakdowns": [
            {
                "modelName": b.model_name,
                "inputTokens": b.tokens.input_tokens,
                "outputTokens": b.tokens.output_tokens,
                "cacheCreationTokens": b.tokens.cache_creation_tokens,
                "cacheReadTokens": b.tokens.cache_read_tokens,
                "cost": b.cost,
            }
            for b in row.model_breakdowns
        ],
        "lastActivity": row.last_activity.isoformat(),
    })
    if row.versions:
        data["versions"] = list(row.versions)
    return data


def _print_report(
    title: str,
    label: str,
    rows: List[UsageAggregate],
    as_json: bool,
    project_names: Optional[ProjectNameFormatter] = None,
) -> None:
    totals = calculate_totals(rows)
    if as_json:
        payload = {
            "rows": [_row_to_dict(row) for row in rows],
            "totals": {
                "inputTokens": totals.tokens.input_tokens,
                "outputTokens": totals.tokens.output_tokens,
                "cacheCreationTokens": totals.tokens.cache_creation_tokens,
                "cacheReadTokens": totals.tokens.cache_read_tokens,
                "totalTokens": totals.total_tokens,
                "totalCost": totals.total_cost,
            },
        }
        if any(row.period and row.project for row in rows):
            payload["projects"] = {
                name: [_row_to_dict(row) for row in project_rows]
                for name, project_rows in group_rows_by_project(rows).items()
            }
        typer.echo(json.dumps(payload, indent=2))
        return

    if not rows:
        console.print("\n[bold yellow]No usage data found[/]\n")
        return

    table = Table(title=title)
    table.add_column(label)
    table.add_column("Models")
    for column in ("Input", "Output", "Cache Create", "Cache Read", "Total Tokens", "Cost (USD)"):
        table.add_column(column, justify="right")

    for row in rows:
        project = project_names.format(row.project) if project_names and row.project else row.project
        name = " / ".join(part for part in (row.period, project, row.session_id) if part)
        table.add_row(
            name,
            ", ".join(row.models_used),
            f"{row.tokens.input_tokens:,}",
            f"{row.tokens.output_tokens:,}",
            f"{row.tokens.cache_creation_tokens:,}",
            f"{row.tokens.cache_read_tokens:,}",
            f"{row.total_tokens:,}",
            format_currency(row.total_cost),
        )
    table.add_row(
        "[bold]Total[/]",
        "",
        f"{totals.tokens.input_tokens:,}",
        f"{totals.tokens.output_tokens:,}",
        f"{totals.tokens.cache_creation_tokens:,}",
        f"{totals.tokens.cache_read_tokens:,}",
        f"{totals.total_tokens:,}",
        f"[bold]{format_currency(totals.total_cost)}[/]",
    )
    console.print(table)


def _run_report(loader, title: str, label: str, options_fn, as_json: bool, project_names=None) -> None:
    try:
        rows = loader(options_fn())
    except ConfigurationError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(str(e))
    _print_report(title, label, rows, as_json, project_names)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def daily(
    since: Optional[str] = SinceOption,
    until: Optional[str] = UntilOption,
    project: Optional[str] = ProjectOption,
    instances: bool = typer.Option(False, "--instances", "-i", help="Split rows per project"),
    order: str = OrderOption,
    mode: Optional[str] = ModeOption,
    offline: bool = OfflineOption,
    tz: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    project_aliases: Optional[str] = ProjectAliasesOption,
    config_path: Optional[str] = ConfigOption,
):
    """Show usage grouped by day."""
    config = _load_settings(config_path)
    _run_report(
        load_daily_usage, "Daily Usage", "Date",
        lambda: _build_options(config, since, until, project, order, mode, offline, tz, group_by_project=instances),
        as_json,
        ProjectNameFormatter.from_config(config.project_aliases, project_aliases),
    )


@app.command()
def weekly(
    since: Optional[str] = SinceOption,
    until: Optional[str] = UntilOption,
    project: Optional[str] = ProjectOption,
    start_of_week: Optional[str] = typer.Option(None, "--start-of-week", "-w", help="First day of the week"),
    order: str = OrderOption,
    mode: Optional[str] = ModeOption,
    offline: bool = OfflineOption,
    tz: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    config_path: Optional[str] = ConfigOption,
):
    """Show usage grouped by week."""
    config = _load_settings(config_path)

    def options():
        opts = _build_options(config, since, until, project, order, mode, offline, tz)
        if start_of_week is not None:
            opts = replace(opts, start_of_week=start_of_week.lower())
        return opts

    _run_report(load_weekly_usage, "Weekly Usage", "Week", options, as_json)


@app.command()
def monthly(
    since: Optional[str] = SinceOption,
    until: Optional[str] = UntilOption,
    project: Optional[str] = ProjectOption,
    instances: bool = typer.Option(False, "--instances", "-i", help="Split rows per project"),
    order: str = OrderOption,
    mode: Optional[str] = ModeOption,
    offline: bool = OfflineOption,
    tz: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    project_aliases: Optional[str] = ProjectAliasesOption,
    config_path: Optional[str] = ConfigOption,
):
    """Show usage grouped by month."""
    config = _load_settings(config_path)
    _run_report(
        load_monthly_usage, "Monthly Usage", "Month",
        lambda: _build_options(config, since, until, project, order, mode, offline, tz, group_by_project=instances),
        as_json,
        ProjectNameFormatter.from_config(config.project_aliases, project_aliases),
    )


@app.command()
def session(
    since: Optional[str] = SinceOption,
    until: Optional[str] = UntilOption,
    project: Optional[str] = ProjectOption,
    order: str = OrderOption,
    mode: Optional[str] = ModeOption,
    offline: bool = OfflineOption,
    tz: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    project_aliases: Optional[str] = ProjectAliasesOption,
    config_path: Optional[str] = ConfigOption,
):
    """Show usage grouped by project and session."""
    config = _load_settings(config_path)
    _run_report(
        load_session_usage, "Usage by Session", "Session",
        lambda: _build_options(config, since, until, project, order, mode, offline, tz),
        as_json,
        ProjectNameFormatter.from_config(config.project_aliases, project_aliases),
    )


def _block_to_dict(block: SessionBlock, now: datetime) -> Dict[str, Any]:
    rate = calculate_burn_rate(block)
    projection = project_block_usage(block, now=now)
    return {
        "id": block.id,
        "startTime": block.start_time.isoformat(),
        "endTime": block.end_time.isoformat(),
        "actualEndTime": block.actual_end_time.isoformat() if block.actual_end_time else None,
        "isActive": block.is_active,
        "isGap": block.is_gap,
        "entries": len(block.entries),
        "totalTokens": block.total_tokens,
        "costUSD": block.cost_usd,
        "models": list(block.models),
        "usageLimitResetTime": block.usage_limit_reset_time.isoformat() if block.usage_limit_reset_time else None,
        "burnRate": None if rate is None else {
            "tokensPerMinute": rate.tokens_per_minute,
            "tokensPerMinuteForIndicator": rate.tokens_per_minute_for_indicator,
            "costPerHour": rate.cost_per_hour,
            "level": rate.level.value,
        },
        "projection": None if projection is None else {
            "totalTokens": projection.total_tokens,
            "totalCost": projection.total_cost,
            "remainingMinutes": projection.remaining_minutes,
        },
    }


def _print_blocks(blocks: List[SessionBlock], now: datetime) -> None:
    if not blocks:
        console.print("\n[bold yellow]No session blocks found[/]\n")
        return

    table = Table(title="Session Blocks")
    table.add_column("Block Start")
    table.add_column("Status")
    table.add_column("Models")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost (USD)", justify="right")
    for block in blocks:
        if block.is_gap:
            hours = (block.end_time - block.start_time).total_seconds() / 3600
            table.add_row(block.start_time.isoformat(), f"[dim]gap ({hours:.0f}h)[/]", "", "", "")
            continue
        status = "[green]ACTIVE[/]" if block.is_active else ""
        table.add_row(
            block.start_time.isoformat(),
            status,
            ", ".join(block.models),
            f"{block.total_tokens:,}",
            format_currency(block.cost_usd),
        )
    console.print(table)

    for block in blocks:
        if block.is_active:
            _print_active_summary(block, now)


def _print_active_summary(block: SessionBlock, now: datetime) -> None:
    remaining = round((block.end_time - now).total_seconds() / 60)
    console.print(f"\n[bold]Active block:[/bold] {format_currency(block.cost_usd)} ({format_remaining_time(remaining)})")
    rate = calculate_burn_rate(block)
    if rate is not None:
        style = _BURN_RATE_STYLES[rate.level]
        console.print(
            f"Burn rate: [{style}]{rate.tokens_per_minute:,.0f} tokens/min, "
            f"{format_currency(rate.cost_per_hour)}/hr ({rate.level.value})[/{style}]"
        )
    projection = project_block_usage(block, now=now)
    if projection is not None:
        console.print(
            f"Projected: {projection.total_tokens:,} tokens, {format_currency(projection.total_cost)}"
        )
    if block.usage_limit_reset_time is not None:
        console.print(f"[yellow]Usage limit resets at {block.usage_limit_reset_time.isoformat()}[/]")


def _run_live(config: MonitorConfig, options: LoadOptions, refresh_interval: int) -> None:
    roots = resolve_roots(options.data_paths)
    live_config = LiveMonitorConfig(
        data_paths=[str(root) for root in roots],
        session_duration_hours=options.session_duration_hours,
        cost_mode=options.cost_mode,
        order=options.order,
        retention_hours=config.retention_hours,
        file_concurrency=config.file_concurrency,
        offline=options.offline,
    )
    stop_event = threading.Event()

    def _stop(signum, frame):
        stop_event.set()

    previous_handlers = {sig: signal.signal(sig, _stop) for sig in (signal.SIGINT, signal.SIGTERM)}

    def _on_block(block: Optional[SessionBlock]) -> None:
        now = datetime.now(timezone.utc)
        console.clear()
        if block is None:
            console.print("[dim]No active session block[/]")
            return
        _print_active_summary(block, now)

    def _on_error(error: Exception) -> None:
        console.print(f"[red]Refresh failed:[/] {error}")

    try:
        run_live_monitor(live_config, _on_block, refresh_interval, stop_event, on_error=_on_error)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)


@app.command()
def blocks(
    active: bool = typer.Option(False, "--active", "-a", help="Only show the active block"),
    recent: bool = typer.Option(False, "--recent", "-r", help=f"Only show blocks from the last {DEFAULT_RECENT_DAYS} days"),
    live: bool = typer.Option(False, "--live", "-l", help="Continuously monitor the active block"),
    refresh_interval: Optional[int] = typer.Option(None, "--refresh-interval", help="Live refresh interval in seconds"),
    session_length: Optional[float] = typer.Option(None, "--session-length", "-n", help="Block duration in hours"),
    since: Optional[str] = SinceOption,
    until: Optional[str] = UntilOption,
    project: Optional[str] = ProjectOption,
    order: str = OrderOption,
    mode: Optional[str] = ModeOption,
    offline: bool = OfflineOption,
    tz: Optional[str] = TimezoneOption,
    as_json: bool = JsonOption,
    config_path: Optional[str] = ConfigOption,
):
    """Show usage grouped into session blocks."""
    config = _load_settings(config_path)
    try:
        options = _build_options(
            config, since, until, project, order, mode, offline, tz,
            recent_days=DEFAULT_RECENT_DAYS if recent else None,
            active_only=active,
        )
        if session_length is not None:
            if session_length <= 0:
                raise ValueError("--session-length must be > 0")
            options = replace(options, session_duration_hours=session_length)

        if live:
            interval = refresh_interval or config.refresh_interval_seconds
            interval = max(MIN_REFRESH_INTERVAL, min(MAX_REFRESH_INTERVAL, interval))
            _run_live(config, options, interval)
            sys.exit(EXIT_CODE_PASS)

        now = datetime.now(timezone.utc)
        result = load_session_blocks(options, now=now)
    except ConfigurationError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(str(e))

    if as_json:
        typer.echo(json.dumps({"blocks": [_block_to_dict(b, now) for b in result]}, indent=2))
    else:
        _print_blocks(result, now)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def statusline(
    cache_dir: Optional[str] = typer.Option(None, "--cache-dir", help="Directory for the shared status cache"),
    offline: bool = OfflineOption,
    config_path: Optional[str] = ConfigOption,
):
    """Print a compact status line from hook JSON on stdin."""
    config = _load_settings(config_path)

    raw = sys.stdin.read()
    if not raw.strip():
        typer.echo("❌ No input provided")
        sys.exit(EXIT_CODE_FAIL)
    try:
        hook = json.loads(raw)
        transcript_path = hook["transcript_path"]
        model_name = hook["model"]["display_name"]
        if not isinstance(transcript_path, str) or not isinstance(model_name, str):
            raise TypeError("transcript_path and model.display_name must be strings")
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        typer.echo(f"❌ Invalid input format: {e}")
        sys.exit(EXIT_CODE_FAIL)

    session_id = hook.get("session_id")
    if not isinstance(session_id, str) or not session_id:
        session_id = session_id_from_transcript(transcript_path)

    options = _build_options(config, offline=offline)
    store = StatusCacheStore(cache_dir) if cache_dir else StatusCacheStore()
    output = resolve_status_output(
        session_id,
        lambda: compute_status_line(session_id, model_name, options),
        source_file=transcript_path,
        refresh_interval_seconds=config.status_refresh_interval_seconds,
        store=store,
    )
    typer.echo(output)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
