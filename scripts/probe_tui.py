#!/usr/bin/env python3
"""
Probe TUI - Terminal UI for watching slow-booting instances come up.

Polls /health, /ready and /status on each target instance and displays a
live dashboard of boot progress, the way an orchestrator's probes see it.
"""

import argparse
import sys
import time
from typing import Any, Dict, List, Optional

import requests
from rich import box
from rich.align import Align
from rich.columns import Columns
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# Probe paths (matching slowboot_app.py)
PROBES = {
    "health": "/health",
    "ready": "/ready",
    "status": "/status",
}

STATE_UNREACHABLE = "Unreachable"
STATE_BOOTING = "Booting"
STATE_READY = "Ready"
STATE_DEGRADED = "Degraded"


def fetch_probe(session: requests.Session, base_url: str, path: str, timeout: float) -> Dict[str, Any]:
    """GET one probe. status is None when the instance cannot be reached."""
    url = base_url.rstrip("/") + path
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        return {"status": None, "body": None, "error": e.__class__.__name__}
    try:
        body: Any = resp.json()
    except ValueError:
        body = resp.text
    return {"status": resp.status_code, "body": body, "error": None}


def probe_instance(session: requests.Session, base_url: str, timeout: float = 2.0) -> Dict[str, Dict[str, Any]]:
    """Query every probe on one instance."""
    return {name: fetch_probe(session, base_url, path, timeout) for name, path in PROBES.items()}


def parse_int_field(body: Any, key: str, default: Optional[int] = None) -> Optional[int]:
    """Parse an integer field from a JSON probe body."""
    if not isinstance(body, dict):
        return default
    val = body.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


def parse_str_field(body: Any, key: str, default: str = "N/A") -> str:
    """Parse a string field from a JSON probe body."""
    if not isinstance(body, dict):
        return default
    val = body.get(key)
    return str(val) if val is not None else default


def format_seconds(seconds: Optional[int]) -> str:
    """Format a number of seconds as a short duration."""
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        return f"{hours}h {minutes}m"


def classify_instance(probes: Dict[str, Dict[str, Any]]) -> str:
    """
    Derive the instance state from its probe results:
    - Unreachable: no probe got an HTTP response (listener not open yet, or gone).
    - Booting: /health answers 503 "initializing".
    - Ready: /health and /ready both answer 200.
    - Degraded: anything else.
    """
    if all(p["status"] is None for p in probes.values()):
        return STATE_UNREACHABLE

    health = probes["health"]
    if health["status"] == 503 and parse_str_field(health["body"], "status") == "initializing":
        return STATE_BOOTING
    if health["status"] == 200 and probes["ready"]["status"] == 200:
        return STATE_READY
    return STATE_DEGRADED


def summarize(states: Dict[str, str]) -> Dict[str, Any]:
    """Count instances per state and derive the overall UI state."""
    counts = {
        STATE_READY: 0,
        STATE_BOOTING: 0,
        STATE_UNREACHABLE: 0,
        STATE_DEGRADED: 0,
    }
    for state in states.values():
        counts[state] = counts.get(state, 0) + 1

    total = len(states)
    if total and counts[STATE_READY] == total:
        ui_state = "AllReady"
    elif counts[STATE_DEGRADED]:
        ui_state = "Degraded"
    elif counts[STATE_BOOTING] or counts[STATE_UNREACHABLE]:
        ui_state = "Starting"
    else:
        ui_state = "Idle"

    return {"total": total, "counts": counts, "ui_state": ui_state}


def render_dashboard(snapshot: Dict[str, Dict[str, Dict[str, Any]]]) -> Panel:
    """Render the probe dashboard for a {base_url: probes} snapshot."""
    states = {url: classify_instance(probes) for url, probes in snapshot.items()}
    summary = summarize(states)

    def state_style(state: str) -> str:
        if state == STATE_READY:
            return "green"
        if state == STATE_BOOTING:
            return "bright_yellow"
        if state == STATE_DEGRADED:
            return "red"
        return "dim"

    def state_emoji(state: str) -> str:
        if state == STATE_READY:
            return "✅"
        if state == STATE_BOOTING:
            return "⏳"
        if state == STATE_DEGRADED:
            return "⚠️"
        return "❌"

    def code(result: Dict[str, Any]) -> str:
        return str(result["status"]) if result["status"] is not None else (result["error"] or "-")

    def instance_tile(url: str) -> Panel:
        probes = snapshot[url]
        state = states[url]
        health_body = probes["health"]["body"]
        status_body = probes["status"]["body"]

        grid = Table.grid(padding=(0, 1))
        grid.add_column(style="bold cyan")
        grid.add_column()
        grid.add_row("State:", Text(f"{state_emoji(state)} {state}", style=f"bold {state_style(state)}"))
        grid.add_row("Health:", code(probes["health"]))
        grid.add_row("Ready:", code(probes["ready"]))
        if state == STATE_BOOTING:
            grid.add_row("Ready in:", format_seconds(parse_int_field(health_body, "remainingSeconds")))
        grid.add_row("Uptime:", format_seconds(parse_int_field(status_body, "uptime")))
        grid.add_row("Version:", parse_str_field(status_body, "version"))
        grid.add_row("Container:", parse_str_field(status_body, "container"))

        return Panel(
            grid,
            title=url,
            width=44,
            box=box.ROUNDED,
            border_style=state_style(state),
        )

    header_table = Table.grid(padding=(0, 2))
    header_table.add_column(style="bold cyan")
    header_table.add_column()

    counts = summary["counts"]
    ui_state = summary["ui_state"]
    if ui_state == "AllReady":
        header_table.add_row("Status:", Text("All instances ready", style="bold green"))
    elif ui_state == "Starting":
        header_table.add_row("Status:", Text("Starting", style="bold yellow"))
    elif ui_state == "Degraded":
        header_table.add_row("Status:", Text("Unexpected probe responses", style="bold red"))
    else:
        header_table.add_row("Status:", Text("No targets", style="dim"))

    header_table.add_row(
        "Summary:",
        f"Ready {counts[STATE_READY]}/{summary['total']}, "
        f"Booting {counts[STATE_BOOTING]}, "
        f"Unreachable {counts[STATE_UNREACHABLE]}, "
        f"Degraded {counts[STATE_DEGRADED]}",
    )
    header_table.add_row("Checked:", time.strftime("%Y-%m-%d %H:%M:%S"))

    tiles = Columns([instance_tile(url) for url in snapshot], equal=True, expand=True)

    legend = Text()
    legend.append("Legend: ", style="bold")
    legend.append("✅ Ready  ", style="bold")
    legend.append("⏳ Booting (503 initializing)  ", style="bold")
    legend.append("⚠️ Degraded  ", style="bold")
    legend.append("❌ Unreachable", style="bold")

    content = Group(header_table, Text(""), Align.left(tiles), Text(""), legend)
    return Panel(content, title="Probe Status", border_style="blue")


def take_snapshot(session: requests.Session, targets: List[str], timeout: float) -> Dict[str, Dict[str, Dict[str, Any]]]:
    return {url: probe_instance(session, url, timeout) for url in targets}


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Watch slow-booting instances through their probes")
    parser.add_argument("targets", nargs="+", help="Base URLs, e.g. http://localhost:8080")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between polls")
    parser.add_argument("--timeout", type=float, default=2.0, help="Per-probe request timeout")
    parser.add_argument("--once", action="store_true", help="Print one snapshot; exit 0 only if all are ready")
    args = parser.parse_args()

    console = Console()
    session = requests.Session()

    if args.once:
        snapshot = take_snapshot(session, args.targets, args.timeout)
        console.print(render_dashboard(snapshot))
        states = [classify_instance(p) for p in snapshot.values()]
        sys.exit(0 if all(s == STATE_READY for s in states) else 1)

    try:
        with Live(console=console, refresh_per_second=4, screen=True) as live:
            while True:
                snapshot = take_snapshot(session, args.targets, args.timeout)
                live.update(render_dashboard(snapshot))
                time.sleep(args.interval)
    except KeyboardInterrupt:
        console.print("\n[yellow]Exiting...[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
