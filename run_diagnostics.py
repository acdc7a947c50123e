#!/usr/bin/env python3
"""
hostdiag command line entry point.

Usage:
    python run_diagnostics.py list                          # Show available tasks
    python run_diagnostics.py run                           # Run every available task
    python run_diagnostics.py run --tasks bios ipconfig     # Run a selection
    python run_diagnostics.py serve --port 8080             # HTTP + WebSocket API

Press Ctrl+C during `run` to cancel the session; finished task output is kept.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

# Ensure project root is in path
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from diagnostics.config import load_config
from diagnostics.errors import DiagnosticsError
from diagnostics.models import OutputFormat, SessionStatus, TaskStatus
from diagnostics.service import DiagnosticService
from shared.logging import get_logger

console = Console()
log = get_logger("diagnostics", "cli")

STATUS_STYLES = {
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.CANCELLED: "yellow",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.PENDING: "dim",
}


def show_tasks(service: DiagnosticService):
    table = Table(title="Diagnostic Tasks")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Admin")
    table.add_column("Available")

    for task in service.list_tasks():
        table.add_row(
            task["id"],
            task["name"],
            task["category"],
            "yes" if task["admin_required"] else "",
            "[green]yes[/green]" if task["available"] else "[red]no[/red]",
        )

    console.print(table)
    if not service.privilege.elevated:
        console.print("[yellow]Not running elevated: admin-only tasks are unavailable.[/yellow]")


def install_interrupt(callback):
    """Route Ctrl+C to `callback` instead of tearing down the loop."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, callback)
    except (NotImplementedError, RuntimeError):
        signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(callback))


async def cancel_on_interrupt(service: DiagnosticService, session_id: str):
    """Cancel the running session after Ctrl+C."""
    console.print("[yellow]Cancelling... finished task output is kept.[/yellow]")
    try:
        status = await service.cancel_session(session_id)
        log.info("diagnostics.cli.cancel_requested", session_id=session_id, status=status.value)
    except Exception as e:
        log.exception(e, "diagnostics.cli.cancel_error", {"session_id": session_id})


async def run_session(service: DiagnosticService, task_ids: list[str], output_format) -> int:
    await service.start()
    try:
        if not task_ids:
            task_ids = [t["id"] for t in service.list_tasks() if t["available"]]

        try:
            session = await service.create_session(task_ids, output_format)
        except DiagnosticsError as e:
            console.print(f"[red]Error:[/red] {e}")
            return 2

        cancellations: list[asyncio.Task] = []
        install_interrupt(lambda: cancellations.append(
            asyncio.ensure_future(cancel_on_interrupt(service, session.id))
        ))
        console.print(Panel(
            f"[bold]Session:[/bold] {session.id}\n"
            f"[bold]Tasks:[/bold] {session.total}\n"
            f"[bold]Output:[/bold] {service.config.output_dir}",
            title="hostdiag",
        ))

        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            bar = progress.add_task("Starting...", total=session.total)
            async for snapshot in service.subscribe(session.id):
                progress.update(bar, completed=snapshot.completed,
                                description=snapshot.message or snapshot.status.value)

        session = await service.wait_for_session(session.id)
        await asyncio.gather(*cancellations)
        show_outcome(session)
    finally:
        await service.stop()

    if session.status == SessionStatus.CANCELLED:
        return 130
    if session.status == SessionStatus.FAILED or session.errors():
        return 1
    return 0


def show_outcome(session):
    table = Table(title="Results")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Error")

    for state in session.task_states.values():
        style = STATUS_STYLES.get(state.status, "")
        duration = f"{state.duration_ms / 1000:.1f}s" if state.duration_ms is not None else ""
        table.add_row(
            state.display_name,
            f"[{style}]{state.status.value}[/{style}]",
            duration,
            state.error or "",
        )
    console.print(table)

    if session.scheduler_error:
        console.print(Panel(session.scheduler_error, title="Failed", style="red"))
    elif session.output_location:
        console.print(Panel(f"Results saved to {session.output_location}",
                            title=session.status.value.capitalize(), style="green"))
    else:
        console.print(Panel("No bundle written", title=session.status.value.capitalize(),
                            style="yellow"))


def main() -> int:
    parser = argparse.ArgumentParser(
        description="hostdiag - collect host diagnostics into a report bundle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python run_diagnostics.py list
    python run_diagnostics.py run --format zip
    python run_diagnostics.py run --tasks computer_system ipconfig --output-dir ./out
    python run_diagnostics.py serve --host 0.0.0.0 --port 9000
        """
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: $HOSTDIAG_CONFIG or ./config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List diagnostic tasks")

    run_parser = subparsers.add_parser("run", help="Run a diagnostic session")
    run_parser.add_argument(
        "--tasks",
        nargs="+",
        default=[],
        help="Task ids to run (default: every available task)"
    )
    run_parser.add_argument(
        "--format",
        choices=[f.value for f in OutputFormat],
        default=None,
        help="Output format (default from config: both)"
    )
    run_parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Where to write the result bundle"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket API")
    serve_parser.add_argument("--host", default=None, help="Bind host (default from config)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default from config)")

    args = parser.parse_args()
    config = load_config(args.config)

    if args.command == "serve":
        from diagnostics.api import run_api_server
        run_api_server(config, host=args.host, port=args.port)
        return 0

    if args.command == "run" and args.output_dir:
        config.output_dir = args.output_dir.expanduser()

    service = DiagnosticService(config=config)

    if args.command == "list":
        show_tasks(service)
        return 0

    return asyncio.run(run_session(service, args.tasks, args.format))


if __name__ == "__main__":
    sys.exit(main())
