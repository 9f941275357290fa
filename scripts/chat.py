#!/usr/bin/env python3
"""
Terminal Chat
=============

Drive a Stageflow session from the terminal. Replies render live as they
stream; in the coding stage the generated files are listed with their
status and progress.

Commands:
    /status          show the session summary
    /health          show health and suggestions
    /retry           retry the last failed or cancelled turn
    /reset <stage>   move the session to a stage
    /quit            leave
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import argparse
import asyncio
from typing import Any, Dict, List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich import box

from stageflow.agent.models import PartialResponse
from stageflow.api.app import build_orchestrator
from stageflow.utils.config import Config
from stageflow.utils.errors import StageflowError
from stageflow.utils.logging import setup_structured_logging

console = Console()

STATUS_STYLES = {
    "pending": "dim",
    "streaming": "yellow",
    "completed": "green",
    "error": "red",
}


def render_files(files: List[Dict[str, Any]]) -> Table:
    table = Table(title="Files", box=box.SIMPLE)
    table.add_column("File", style="cyan")
    table.add_column("Language")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    for f in files:
        style = STATUS_STYLES.get(f["status"], "")
        table.add_row(
            f["filename"],
            f["language"],
            f"[{style}]{f['status']}[/{style}]" if style else f["status"],
            f"{f['progress']}%",
        )
    return table


def render_snapshot(snapshot: PartialResponse):
    """Reply panel, plus the file table once files are streaming."""
    state = snapshot.system_state
    agent = snapshot.immediate_display.agent_name if snapshot.immediate_display else None
    subtitle = f"{state.current_stage} · {state.progress}%" if state else None
    style = "red" if state and state.intent == "error" else "bright_blue"
    parts = [Panel(Markdown(snapshot.reply or "…"), title=agent or "agent",
                   subtitle=subtitle, border_style=style)]

    files = state.metadata.get("files") if state else None
    if files:
        parts.append(render_files(files))
    if snapshot.interaction:
        parts.append(Panel(str(snapshot.interaction), title="Interaction", border_style="magenta"))
    return Group(*parts)


async def stream_turn(snapshots) -> Optional[PartialResponse]:
    last = None
    with Live(console=console, refresh_per_second=12) as live:
        async for snapshot in snapshots:
            last = snapshot
            live.update(render_snapshot(snapshot))
    return last


async def show_status(orchestrator, session_id: str) -> None:
    status = await orchestrator.get_session_status(session_id)
    metrics = status["metrics"]
    text = f"""
[bold cyan]Session[/bold cyan] {status['session_id']}

[yellow]Stage:[/yellow]     {status['current_stage']} ({status['progress']}%)
[green]Completed:[/green] {', '.join(status['completed_stages']) or '-'}
[blue]Status:[/blue]    {status['status']}  health: {status['health']}
[dim]Turns: {metrics['turn_count']}  transitions: {metrics['stage_transitions']}  errors: {metrics['errors_encountered']}[/dim]
"""
    console.print(Panel(text, title="Session Status", border_style="bright_blue"))


async def show_health(orchestrator, session_id: str) -> None:
    health = await orchestrator.get_session_health(session_id)
    console.print(f"[bold]Health:[/bold] {health.status.value}")
    for issue, suggestion in zip(health.issues, health.suggestions):
        console.print(f"  • {issue} [dim]→ {suggestion}[/dim]")


async def chat(args) -> None:
    config = Config.load_from_file(args.config) if args.config else Config.load_default()
    orchestrator = build_orchestrator(config)
    connect = getattr(orchestrator.repository, "connect", None)
    if connect is not None:
        await connect()
        await orchestrator.repository.ensure_schema()

    try:
        session_id = args.session or await orchestrator.create_session()
        console.print(f"[dim]Session {session_id}. Type /quit to leave.[/dim]")

        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]you>[/bold green] ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue

            try:
                if line in ("/quit", "/exit"):
                    break
                elif line == "/status":
                    await show_status(orchestrator, session_id)
                elif line == "/health":
                    await show_health(orchestrator, session_id)
                elif line == "/retry":
                    await stream_turn(orchestrator.retry_last_turn(session_id))
                elif line.startswith("/reset"):
                    _, _, stage = line.partition(" ")
                    await orchestrator.reset_to_stage(session_id, stage.strip())
                    await show_status(orchestrator, session_id)
                else:
                    prefix = "[TEST_MODE] " if args.test_mode else ""
                    await stream_turn(orchestrator.process_turn(session_id, prefix + line))
            except StageflowError as e:
                console.print(f"[red]Error: {e}[/red]")
    finally:
        await orchestrator.client.aclose()
        await orchestrator.repository.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Chat with a Stageflow session in the terminal")
    parser.add_argument(
        "--session",
        help="Resume an existing session id (default: create one)"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a .stageflow.yaml file"
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Send every turn with [TEST_MODE]"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (default: WARNING)"
    )

    args = parser.parse_args()
    setup_structured_logging(level=args.log_level, format_type="dev")

    try:
        asyncio.run(chat(args))
    except KeyboardInterrupt:
        console.print("\n[dim]Bye.[/dim]")


if __name__ == "__main__":
    main()
