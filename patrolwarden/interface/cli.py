"""
Command-line interface for patrolwarden.

Operates on a world file (YAML or JSON with scenes, tokens and actors)
and a data directory holding patrols, settings and the global document.
Runtime state never survives a restart, so `tick` starts the patrols it
simulates.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

import yaml

from ..context import ManualClock, PatrolContext
from ..errors import PatrolError
from ..state import JsonPatrolStore, JsonSettingsStore, MemoryWorld, PatrolManager, Settings
from .renderer import (
    console,
    show_log,
    show_pending,
    show_prisoners,
    show_result,
    show_status,
    show_tick_report,
    show_weights,
)

logger = logging.getLogger(__name__)


def build_manager(args, clock=None) -> tuple[PatrolManager, MemoryWorld]:
    """World, settings and store from the command-line paths."""
    world_path = Path(args.world)
    world = MemoryWorld.from_file(world_path) if world_path.exists() else MemoryWorld()
    data_dir = Path(args.data)
    ctx = PatrolContext(
        world=world,
        settings=Settings(JsonSettingsStore(data_dir / "settings.json")),
        system_id=args.system,
        clock=clock or time.time,
    )
    return PatrolManager(ctx, JsonPatrolStore(data_dir)), world


def save_world(args, world: MemoryWorld) -> None:
    world.save(args.world)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

def cmd_status(args) -> int:
    manager, _ = build_manager(args)
    show_status(manager, args.scene)
    return 0


def cmd_tick(args) -> int:
    clock = ManualClock(time.time())
    manager, world = build_manager(args, clock=clock)
    started = manager.start_all(args.scene)
    for failure in started["failed"]:
        console.print(f"[dim]not started {failure['id']}: {failure['error']}[/dim]")

    step = args.step if args.step is not None else manager.ctx.settings.update_interval / 1000
    for index, report in enumerate(manager.runner.run(args.count, step=step, advance_clock=clock.advance)):
        if args.verbose or report["detections"] or report["errors"]:
            show_tick_report(index, report)

    manager.stop_all(args.scene)
    save_world(args, world)
    show_status(manager, args.scene)
    return 0


def cmd_weights(args) -> int:
    manager, _ = build_manager(args)
    settings = manager.ctx.settings
    if args.set:
        weights = dict(pair.split("=", 1) for pair in args.set)
        result = settings.save_capture_weights({k: int(v) for k, v in weights.items()})
        show_result(result)
        if not result["success"]:
            return 1
    show_weights(settings.capture_outcome_weights.model_dump())
    return 0


def cmd_log(args) -> int:
    manager, _ = build_manager(args)
    show_log(manager.automation.get_ai_log(args.limit))
    return 0


def cmd_pending(args) -> int:
    manager, _ = build_manager(args)
    show_pending(manager.automation.get_pending_actions())
    return 0


def cmd_approve(args) -> int:
    manager, world = build_manager(args)
    result = manager.automation.approve_pending(args.index)
    save_world(args, world)
    show_result(result)
    return 0 if result.get("success") else 1


def cmd_reject(args) -> int:
    manager, _ = build_manager(args)
    result = manager.automation.reject_pending(args.index, reason=args.reason or "")
    show_result(result)
    return 0 if result.get("success") else 1


def cmd_undo(args) -> int:
    manager, world = build_manager(args)
    result = manager.automation.undo_ai_log_entry(args.entry_id)
    save_world(args, world)
    show_result(result)
    return 0 if result.get("success") else 1


def cmd_replay(args) -> int:
    manager, world = build_manager(args)
    result = manager.automation.replay_ai_log_entry(args.entry_id)
    save_world(args, world)
    show_result(result)
    return 0 if result.get("success") else 1


def cmd_prisoners(args) -> int:
    manager, _ = build_manager(args)
    show_prisoners(manager.jail.get_prisoners(), manager.ctx.now())
    return 0


def cmd_release(args) -> int:
    manager, world = build_manager(args)
    if args.all:
        count = manager.jail.release_all_prisoners()
        result = {"success": True, "released": count}
    else:
        result = manager.jail.release_prisoner(args.actor_id, return_to_original=not args.stay)
    save_world(args, world)
    show_result(result)
    return 0 if result.get("success") else 1


def cmd_export(args) -> int:
    manager, _ = build_manager(args)
    document = manager.export_patrols(args.scene_id)
    text = json.dumps(document, indent=2)
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        console.print(f"Exported {len(document['patrols'])} patrols to {args.output}")
    else:
        console.print_json(text)
    return 0


def cmd_import(args) -> int:
    manager, _ = build_manager(args)
    path = Path(args.file)
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) if path.suffix in (".yaml", ".yml") else json.loads(text)
    result = manager.import_patrols(
        data,
        scene_id=args.scene,
        replace=args.replace,
        import_waypoints=not args.no_waypoints,
    )
    show_result(result)
    return 0


# -----------------------------------------------------------------------------
# Main
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="patrolwarden - NPC patrol automation")
    parser.add_argument("--world", "-w", default="world.yaml", help="World file (YAML or JSON)")
    parser.add_argument("--data", "-d", default="patrol_data", help="Data directory")
    parser.add_argument("--system", "-s", default="generic", help="Game system id (dnd5e, pf2e, ...)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("status", help="Show patrols")
    p.add_argument("--scene")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("tick", help="Simulate patrols for a number of ticks")
    p.add_argument("--count", "-n", type=int, default=20)
    p.add_argument("--step", type=float, help="Seconds per tick (default: updateInterval)")
    p.add_argument("--scene")
    p.set_defaults(func=cmd_tick)

    p = sub.add_parser("weights", help="Show or set capture outcome weights")
    p.add_argument("--set", nargs="+", metavar="OUTCOME=PCT")
    p.set_defaults(func=cmd_weights)

    p = sub.add_parser("log", help="Show the AI log")
    p.add_argument("--limit", type=int)
    p.set_defaults(func=cmd_log)

    p = sub.add_parser("pending", help="Show decisions awaiting approval")
    p.set_defaults(func=cmd_pending)

    p = sub.add_parser("approve", help="Approve a pending decision")
    p.add_argument("index", type=int, nargs="?", default=0)
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("reject", help="Reject a pending decision")
    p.add_argument("index", type=int, nargs="?", default=0)
    p.add_argument("--reason")
    p.set_defaults(func=cmd_reject)

    p = sub.add_parser("undo", help="Undo an AI log entry")
    p.add_argument("entry_id")
    p.set_defaults(func=cmd_undo)

    p = sub.add_parser("replay", help="Replay a logged action")
    p.add_argument("entry_id")
    p.set_defaults(func=cmd_replay)

    p = sub.add_parser("prisoners", help="List prisoners")
    p.set_defaults(func=cmd_prisoners)

    p = sub.add_parser("release", help="Release a prisoner")
    p.add_argument("actor_id", nargs="?")
    p.add_argument("--all", action="store_true")
    p.add_argument("--stay", action="store_true", help="Leave the token in the jail scene")
    p.set_defaults(func=cmd_release)

    p = sub.add_parser("export", help="Export a scene's patrols")
    p.add_argument("scene_id")
    p.add_argument("--output", "-o")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", help="Import patrols from an export file")
    p.add_argument("file")
    p.add_argument("--scene", help="Target scene (default: the exported scene)")
    p.add_argument("--replace", action="store_true")
    p.add_argument("--no-waypoints", action="store_true")
    p.set_defaults(func=cmd_import)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    if args.command == "release" and not args.all and not args.actor_id:
        parser.error("release needs an actor id or --all")
    try:
        return args.func(args)
    except PatrolError as e:
        console.print(f"[bold red]{e}[/bold red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
