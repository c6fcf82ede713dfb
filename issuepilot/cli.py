"""
IssuePilot CLI

Work:
  - issuepilot cycle  --repo owner/name           (one polling cycle)
  - issuepilot watch  --repo owner/name           (cycle on an interval)
  - issuepilot handle --repo owner/name -i 42     (one item now)
  - issuepilot serve                              (webhook + health server)

Operations:
  - issuepilot status       (credentials, capacity, stats)
  - issuepilot vms          (fleet audit, --cleanup to destroy managed VMs)
  - issuepilot sweep        (fail stale in-flight tasks)
"""

from __future__ import annotations

import shutil
import signal
import time
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from issuepilot.agents.analyst import AnalystAgent
from issuepilot.agents.responder import ResponseAgent
from issuepilot.agents.triage import TriageAgent
from issuepilot.audit_logger import AuditLogger
from issuepilot.capacity import CapacityGate
from issuepilot.clarification import ClarificationFlow
from issuepilot.config_loader import (
    ConfigError,
    Credentials,
    IssuePilotConfig,
    load_config,
    missing_credentials,
    validate_credentials,
)
from issuepilot.event_bus import EventBus
from issuepilot.executor import TaskExecutor
from issuepilot.identity import BANNER, __codename__, __tagline__, __version__
from issuepilot.orchestrator import CycleReport, DevelopmentStrategy, Orchestrator
from issuepilot.remote import RemoteShell
from issuepilot.router import Router
from issuepilot.state import StateStore
from issuepilot.tracker import DryRunTracker, GitHubTracker
from issuepilot.vm import DigitalOceanProvider, VMManager

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".issuepilot" / ".env")

app = typer.Typer(
    name="issuepilot",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Runtime:
    config: IssuePilotConfig
    credentials: Credentials
    store: StateStore
    orchestrator: Orchestrator
    vms: VMManager | None
    bus: EventBus


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _load(config_path: Optional[Path]) -> tuple[IssuePilotConfig, Credentials]:
    try:
        return load_config(config_path), Credentials.from_env()
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/]")
        raise typer.Exit(1)


def _vm_manager(config: IssuePilotConfig, creds: Credentials, bus: EventBus) -> VMManager | None:
    if not creds.digitalocean_token:
        return None
    shell = RemoteShell(
        user=config.vm.ssh_user,
        connect_timeout=config.executor.connect_timeout_seconds,
        max_output_bytes=config.executor.max_output_bytes,
    )
    provider = DigitalOceanProvider(creds.digitalocean_token, api_url=config.vm.api_url)
    return VMManager(provider, shell, config.vm, creds, bus=bus)


def _build_runtime(config_path: Optional[Path], dry_run: bool = False) -> Runtime:
    config, creds = _load(config_path)

    missing = missing_credentials(["tracker"], creds)
    if missing:
        console.print(f"[red]Missing credentials: {', '.join(missing)}[/]")
        raise typer.Exit(1)

    bus = EventBus()
    AuditLogger(config.state.audit_log, bus)

    store = StateStore(Path(config.state.path), settings=config.agent)
    store.sweep_stale_tasks(timedelta(minutes=config.agent.stale_task_minutes))

    tracker = GitHubTracker()
    if dry_run:
        console.print("[yellow]Dry run — tracker writes are logged, not performed.[/]")
        tracker = DryRunTracker(tracker)

    router = Router(config.routing)
    clarifier = ClarificationFlow(
        tracker, store, TriageAgent(router), ResponseAgent(router), config, bus=bus,
    )

    vms = _vm_manager(config, creds, bus)
    development = None
    if vms is not None and not dry_run:
        executor = TaskExecutor(vms.shell, config.executor, bus=bus)
        development = DevelopmentStrategy(vms, executor, config)
    elif vms is None:
        logger.warning("[CLI] DIGITALOCEAN_TOKEN not set — vm_development workflow disabled")

    orchestrator = Orchestrator(
        tracker=tracker,
        store=store,
        gate=CapacityGate(store),
        clarifier=clarifier,
        analyst=AnalystAgent(router),
        config=config,
        development=development,
        bus=bus,
    )
    return Runtime(config, creds, store, orchestrator, vms, bus)


def _resolve_repo(repo: Optional[str], config: IssuePilotConfig) -> str:
    resolved = repo or config.agent.default_repo
    if not resolved or "/" not in resolved:
        console.print("[red]Specify --repo owner/name or set agent.default_repo[/]")
        raise typer.Exit(1)
    return resolved


def _print_report(report: CycleReport) -> None:
    table = Table(title=f"Cycle — {report.repo}", border_style="cyan")
    table.add_column("Item")
    table.add_column("Result")

    for ref, outcome in report.outcomes.items():
        color = {"development_completed": "green", "responded": "green", "workflow_dispatched": "green",
                 "awaiting_clarification": "yellow"}.get(outcome, "red")
        table.add_row(ref, f"[{color}]{outcome}[/]")
    for ref in report.deferred:
        table.add_row(ref, "[yellow]deferred (capacity)[/]")
    for ref, reason in report.skipped.items():
        table.add_row(ref, f"[dim]skipped: {reason}[/]")
    for ref, err in report.errors.items():
        table.add_row(ref, f"[red]error: {err[:80]}[/]")
    for ref, outcome in report.clarifications.items():
        table.add_row(ref, f"[magenta]clarification: {outcome}[/]")

    if report.candidates == 0 and not report.clarifications:
        console.print("[dim]No candidate items.[/]")
    else:
        console.print(table)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def cycle(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository as owner/name"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config override file"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log tracker writes instead of performing them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a single processing cycle."""
    _print_banner()
    _configure_logging(verbose)

    rt = _build_runtime(config_path, dry_run)
    report = rt.orchestrator.run_cycle(_resolve_repo(repo, rt.config))
    _print_report(report)


@app.command()
def watch(
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository as owner/name"),
    interval: Optional[int] = typer.Option(None, "--interval", "-n", help="Seconds between cycles"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    keep_vms: bool = typer.Option(False, "--keep-vms", help="Skip emergency VM cleanup on interrupt"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run cycles continuously until interrupted."""
    _print_banner()
    _configure_logging(verbose)

    rt = _build_runtime(config_path, dry_run)
    target = _resolve_repo(repo, rt.config)
    every = interval or rt.config.agent.poll_interval_seconds

    def _terminate(signum, frame):
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, _terminate)

    console.print(f"[cyan]Watching {target} every {every}s (Ctrl+C to stop)[/]")
    try:
        while True:
            try:
                _print_report(rt.orchestrator.run_cycle(target))
            except Exception as e:
                logger.exception(f"[CLI] Cycle failed: {e}")
                console.print(f"[red]Cycle failed: {e}[/]")
            time.sleep(every)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping...[/]")
        if rt.vms is not None and not keep_vms:
            destroyed = rt.vms.emergency_cleanup()
            console.print(f"[yellow]Emergency cleanup destroyed {len(destroyed)} VM(s)[/]")


@app.command()
def handle(
    issue: int = typer.Option(..., "--issue", "-i", help="Issue number"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository as owner/name"),
    force: bool = typer.Option(False, "--force", help="Forget any stored record for the item first"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Process one item immediately."""
    _print_banner()
    _configure_logging(verbose)

    rt = _build_runtime(config_path, dry_run)
    target = _resolve_repo(repo, rt.config)
    outcome = rt.orchestrator.handle_item(target, issue, force=force)
    console.print(f"\n[bold]{target}#{issue}: {outcome}[/]")


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Check credentials, capacity and agent statistics."""
    _print_banner()
    config, creds = _load(config_path)

    key_table = Table(title="Credentials", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in validate_credentials(creds).items():
        key_table.add_row(key, "[green]✓ Available[/]" if available else "[red]✗ Missing[/]")
    console.print(key_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["gh", "ssh", "scp"]:
        found = shutil.which(tool)
        tools_table.add_row(tool, f"[green]✓ {found}[/]" if found else "[red]✗ Not found[/]")
    console.print(tools_table)

    store = StateStore(Path(config.state.path), settings=config.agent)
    state = store.load()
    stats_table = Table(title="Agent", border_style="magenta")
    stats_table.add_column("Metric")
    stats_table.add_column("Value")
    stats_table.add_row("Assignee", state.config.assignee_username)
    stats_table.add_row("In flight", f"{len(state.current_tasks)}/{state.config.max_concurrent_tasks}")
    stats_table.add_row("Capacity left", str(CapacityGate(store).headroom()))
    stats_table.add_row("Awaiting clarification",
                        str(sum(1 for r in state.processed_issues if r.status == "awaiting_clarification")))
    stats_table.add_row("Issues processed", str(state.stats.total_issues_processed))
    stats_table.add_row("Comments posted", str(state.stats.total_comments_posted))
    stats_table.add_row("Cycles run", str(state.stats.total_cycles_run))
    stats_table.add_row("Last cycle", state.stats.last_cycle_at.isoformat() if state.stats.last_cycle_at else "never")
    console.print(stats_table)

    console.print("\n[bold]Routing:[/]")
    console.print(f"  Triage:    {config.routing.triage}")
    console.print(f"  Responder: {config.routing.responder}")
    console.print(f"  Analyst:   {config.routing.analyst}")


@app.command()
def vms(
    cleanup: bool = typer.Option(False, "--cleanup", help="Destroy every managed VM"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Audit VMs in the compute account; optionally destroy ours."""
    _configure_logging(verbose)
    config, creds = _load(config_path)
    missing = missing_credentials(["vm"], creds)
    if missing:
        console.print(f"[red]Missing credentials: {', '.join(missing)}[/]")
        raise typer.Exit(1)

    manager = _vm_manager(config, creds, EventBus())
    report = manager.reconcile()

    table = Table(title="Virtual Machines", border_style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("IP")
    table.add_column("$/h")
    table.add_column("Owner")
    for droplet in report.managed:
        table.add_row(str(droplet.id), droplet.name, droplet.status, droplet.public_ip or "-",
                      f"{droplet.price_hourly:.4f}", "[cyan]issuepilot[/]")
    for droplet in report.unmanaged:
        table.add_row(str(droplet.id), droplet.name, droplet.status, droplet.public_ip or "-",
                      f"{droplet.price_hourly:.4f}", "[dim]other[/]")
    console.print(table)
    console.print(
        f"Managed: {len(report.managed)} (${report.hourly_cost:.4f}/h) · "
        f"Other: {len(report.unmanaged)} · Account total: ${report.total_hourly_cost:.4f}/h"
    )

    if cleanup:
        destroyed = manager.emergency_cleanup()
        console.print(Panel(
            "\n".join(str(i) for i in destroyed) or "nothing to destroy",
            title=f"🧹 Destroyed {len(destroyed)} managed VM(s)",
            border_style="yellow",
        ))


@app.command()
def sweep(
    max_age: Optional[int] = typer.Option(None, "--max-age", help="Minutes before an in-flight task counts as stale"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
):
    """Mark in-progress tasks orphaned by a crash as failed."""
    config, _ = _load(config_path)
    store = StateStore(Path(config.state.path), settings=config.agent)
    minutes = max_age if max_age is not None else config.agent.stale_task_minutes
    swept = store.sweep_stale_tasks(timedelta(minutes=minutes))
    if swept:
        console.print(f"[yellow]Swept {len(swept)} stale task(s):[/] {', '.join(swept)}")
    else:
        console.print("[green]No stale tasks.[/]")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port", "-p"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Serve the GitHub webhook and health endpoints."""
    import uvicorn

    from issuepilot.webhook import create_app

    _print_banner()
    _configure_logging(verbose)

    rt = _build_runtime(config_path, dry_run)
    web = create_app(rt.orchestrator, rt.credentials.webhook_secret, rt.config.labels.trigger)
    uvicorn.run(web, host=host or rt.config.webhook.host, port=port or rt.config.webhook.port)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False, markup=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"{msg}", highlight=False, markup=False),
            level="INFO",
            format="{time:HH:mm:ss} {message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
