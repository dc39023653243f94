"""
Display helpers for the patrolwarden CLI.

Handles theming and the status/log/queue tables.
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..state.schema import AiLogEntry, AlertState, PendingAction, Prisoner

# Shared console instance
console = Console()

THEME = {
    "primary": "steel_blue",
    "secondary": "grey70",
    "warning": "dark_goldenrod",
    "danger": "dark_red",
    "accent": "cyan",
    "dim": "dim",
}

ALERT_STYLE = {
    AlertState.IDLE: THEME["dim"],
    AlertState.SUSPICIOUS: THEME["warning"],
    AlertState.ALERT: THEME["danger"],
}


def show_status(manager, scene_id: str | None = None):
    """Patrol table plus totals."""
    patrols = manager.get_patrols(scene_id)
    if not patrols:
        console.print(f"[{THEME['dim']}]No patrols[/{THEME['dim']}]")
    else:
        table = Table(title=f"[bold {THEME['primary']}]Patrols[/bold {THEME['primary']}]")
        table.add_column("ID", style=THEME["dim"])
        table.add_column("Name")
        table.add_column("Scene", style=THEME["secondary"])
        table.add_column("Mode")
        table.add_column("State")
        table.add_column("Alert")
        table.add_column("Waypoint", justify="right")

        for patrol in patrols:
            alert_style = ALERT_STYLE[patrol.alert_state]
            table.add_row(
                patrol.id,
                patrol.name,
                patrol.scene_id,
                f"{patrol.mode.value}/{patrol.blink_pattern.value}",
                patrol.status.value,
                f"[{alert_style}]{patrol.alert_state.value}[/{alert_style}]",
                f"{patrol.current_waypoint_index + 1}/{len(patrol.waypoint_ids)}",
            )
        console.print(table)

    stats = manager.get_statistics(scene_id)
    console.print(
        f"[{THEME['dim']}]{stats['active']} active, {stats['paused']} paused, "
        f"{stats['idle']} idle · {stats['waypoints']} waypoints · "
        f"{stats['pending']} pending · {stats['prisoners']} prisoners[/{THEME['dim']}]"
    )


def show_tick_report(index: int, report: dict):
    moved = ", ".join(f"{pid}:{phase}" for pid, phase in report["advanced"]) or "-"
    console.print(f"[{THEME['accent']}]tick {index}[/{THEME['accent']}] {moved}")
    for detection in report["detections"]:
        outcome = detection.get("outcome") or detection.get("action") or detection.get("reason")
        console.print(f"  [{THEME['warning']}]detected[/{THEME['warning']}] {detection.get('token_id')} -> {outcome}")
    for error in report["errors"]:
        console.print(f"  [{THEME['danger']}]error[/{THEME['danger']}] {error['patrol_id']}: {error['error']}")
    for actor_id in report["released"]:
        console.print(f"  released {actor_id}")
    for actor_id in report["escaped"]:
        console.print(f"  [{THEME['warning']}]escaped[/{THEME['warning']}] {actor_id}")


def show_weights(weights: dict):
    table = Table(show_header=False, box=None)
    table.add_column("Outcome", style=THEME["dim"])
    table.add_column("Weight", justify="right")
    for outcome, value in weights.items():
        table.add_row(outcome, f"{value}%")
    console.print(Panel(table, title="Capture outcome weights", border_style=THEME["primary"]))


def show_log(entries: list[AiLogEntry]):
    if not entries:
        console.print(f"[{THEME['dim']}]AI log is empty[/{THEME['dim']}]")
        return
    table = Table(title=f"[bold {THEME['primary']}]AI log[/bold {THEME['primary']}]")
    table.add_column("ID", style=THEME["dim"])
    table.add_column("Time", style=THEME["dim"])
    table.add_column("Type")
    table.add_column("Message")
    table.add_column("Undo")
    for entry in entries:
        table.add_row(
            entry.id,
            entry.timestamp.strftime("%H:%M:%S"),
            entry.type,
            entry.message,
            entry.undo.kind if entry.undo is not None else "-",
        )
    console.print(table)


def show_pending(pending: list[PendingAction]):
    if not pending:
        console.print(f"[{THEME['dim']}]No decisions awaiting approval[/{THEME['dim']}]")
        return
    table = Table(title=f"[bold {THEME['warning']}]Pending approval[/bold {THEME['warning']}]")
    table.add_column("#", justify="right")
    table.add_column("ID", style=THEME["dim"])
    table.add_column("Type")
    table.add_column("Patrol", style=THEME["secondary"])
    table.add_column("Message")
    for index, action in enumerate(pending):
        table.add_row(str(index), action.id, action.type.value, action.patrol_id or "-", action.message)
    console.print(table)


def show_prisoners(prisoners: list[Prisoner], now: float):
    if not prisoners:
        console.print(f"[{THEME['dim']}]The jail is empty[/{THEME['dim']}]")
        return
    table = Table(title=f"[bold {THEME['primary']}]Prisoners[/bold {THEME['primary']}]")
    table.add_column("Actor", style=THEME["dim"])
    table.add_column("Name")
    table.add_column("Cell", justify="right")
    table.add_column("Captured by", style=THEME["secondary"])
    table.add_column("Remaining")
    table.add_column("Escapes", justify="right")
    for prisoner in prisoners:
        table.add_row(
            prisoner.actor_id,
            prisoner.actor_name,
            str(prisoner.cell_index + 1),
            prisoner.captured_by or "-",
            prisoner.time_remaining(now),
            str(prisoner.escape_attempts),
        )
    console.print(table)


def show_result(result: dict):
    """One-line summary of a {"success": ...} result dict."""
    if result.get("success"):
        detail = ", ".join(
            f"{key}={value}" for key, value in result.items()
            if key != "success" and not isinstance(value, (dict, list))
        )
        console.print(f"[{THEME['accent']}]ok[/{THEME['accent']}] {detail}")
    else:
        reason = result.get("error") or result.get("reason") or "; ".join(result.get("errors", []))
        console.print(f"[{THEME['danger']}]failed[/{THEME['danger']}] {reason}")
