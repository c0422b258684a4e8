#!/usr/bin/env python3
"""
Verify Forge CLI
================

Command-line interface for planning verification and inspecting persisted state.

Usage:
    verifyforge plan --files 3 --lines 40 --layer domain [--keyword auth] [--mode "loop 3"]
    verifyforge fingerprint [--project-dir PATH]
    verifyforge cache status|clear|cleanup [--project-dir PATH]
    verifyforge anomaly [--project-dir PATH] [--limit N]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from verifyforge import __version__
from verifyforge.anomaly import AnomalyMonitor
from verifyforge.cache import PatternCache, ProfileCache
from verifyforge.config import VerifyConfig
from verifyforge.db import close_db, init_db
from verifyforge.fingerprint import ContentFingerprinter, project_inputs, project_key
from verifyforge.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_success,
    print_table,
    is_verbose,
    set_verbose,
    setup_rich_logging,
    spinner,
    tier_style,
)
from verifyforge.risk import ChangeClassifier, ChangeMetrics, ClassificationError
from verifyforge.session_state import InvalidModeToken, parse_mode_token
from verifyforge.tiers import TierSelector

load_dotenv()


def get_project_dir(args) -> Path:
    """Get project directory from args or current directory."""
    if getattr(args, "project_dir", None):
        return Path(args.project_dir)
    return Path.cwd()


# =============================================================================
# plan
# =============================================================================

def cmd_plan(args, config: VerifyConfig) -> int:
    """Classify a change and show the starting tier."""
    try:
        execution = parse_mode_token(args.mode)
        metrics = ChangeMetrics(
            files_changed=args.files,
            lines_changed=args.lines,
            layers_touched=args.layer or (),
            keyword_hits=args.keyword or (),
            architecture_change=args.architecture_change,
        )
        risk = ChangeClassifier.from_config(config).classify(metrics)
    except (ClassificationError, InvalidModeToken) as e:
        print_error(str(e))
        return 2

    selection = TierSelector().plan(risk, explicit_loop_requested=execution.explicit_loop)
    max_loops = execution.loop_count or config.default_max_loops

    if args.json:
        data = selection.to_dict()
        data.update({
            "rule": risk.rule.value,
            "mode": execution.mode.value,
            "max_loops": max_loops,
            "metrics": metrics.to_dict(),
        })
        console.print_json(json.dumps(data))
        return 0

    print_header("Verification Plan")
    print_key_value_table({
        "Risk signal": risk.signal.value,
        "Rule": risk.describe(),
        "Tier": f"[{tier_style(selection.tier.name)}]{selection.tier.name}[/]",
        "Min cost class": selection.cost_class.name,
        "Mode": execution.mode.value,
        "Max loops": max_loops,
    }, title="Plan")
    if selection.loop_floor_applied:
        print_muted("Tier raised to STANDARD because a bounded loop was requested")
    if is_verbose():
        print_key_value_table(metrics.to_dict(), title="Change metrics")
    return 0


# =============================================================================
# fingerprint
# =============================================================================

def cmd_fingerprint(args, config: VerifyConfig) -> int:
    """Show the declared profile inputs and their fingerprint."""
    project_dir = get_project_dir(args)
    if not project_dir.is_dir():
        print_error(f"Not a directory: {project_dir}")
        return 1

    with spinner("Fingerprinting project..."):
        inputs = project_inputs(project_dir)
        digest = ContentFingerprinter().fingerprint(inputs)

    print_header(f"Fingerprint: {project_dir.resolve()}")
    table = create_table(columns=["Input", "Bytes"])
    for item in inputs:
        table.add_row(item.name, str(len(item.data)))
    print_table(table)
    print_key_value_table({
        "Logical key": project_key(project_dir),
        "Fingerprint": digest,
    })
    return 0


# =============================================================================
# cache
# =============================================================================

async def _cache_action(project_dir: Path, config: VerifyConfig, action: str, max_age_days: int):
    maker = await init_db(project_dir, config.state_dir)
    try:
        caches = [ProfileCache(session_maker=maker), PatternCache(session_maker=maker)]
        if action == "status":
            return {c.cache_name: await c.entries() for c in caches}
        if action == "clear":
            key = project_key(project_dir)
            return {c.cache_name: await c.invalidate(key) for c in caches}
        return {c.cache_name: await c.cleanup_stale(max_age_days) for c in caches}
    finally:
        await close_db()


def cmd_cache(args, config: VerifyConfig) -> int:
    """Inspect or clean the profile and pattern caches."""
    project_dir = get_project_dir(args)
    max_age = args.max_age_days if args.max_age_days is not None else config.cache_max_age_days
    result = asyncio.run(_cache_action(project_dir, config, args.action, max_age))

    if args.action == "status":
        print_header("Caches")
        table = create_table(columns=["Cache", "Key", "Fingerprint", "Created"])
        rows = 0
        for name, entries in result.items():
            for entry in entries:
                created = entry.created_at.strftime("%Y-%m-%d %H:%M") if entry.created_at else "-"
                table.add_row(name, entry.logical_key, entry.fingerprint[:16], created)
                rows += 1
        if rows:
            print_table(table)
        else:
            print_info("No cache entries")
    elif args.action == "clear":
        for name, removed in result.items():
            if removed:
                print_success(f"Cleared {name} cache for this project")
            else:
                print_muted(f"No {name} cache entry for this project")
    else:
        total = sum(result.values())
        print_success(f"Removed {total} stale entr{'y' if total == 1 else 'ies'} (older than {max_age} days)")
    return 0


# =============================================================================
# anomaly
# =============================================================================

async def _load_anomaly(project_dir: Path, config: VerifyConfig, limit: int):
    maker = await init_db(project_dir, config.state_dir)
    try:
        monitor = AnomalyMonitor(config.anomaly, session_maker=maker)
        await monitor.load_window_async()
        alerts = await monitor.get_alerts_async(limit=limit)
        return monitor, alerts
    finally:
        await close_db()


def cmd_anomaly(args, config: VerifyConfig) -> int:
    """Show the rolling metric windows and recent advisory alerts."""
    project_dir = get_project_dir(args)
    with spinner("Loading metrics..."):
        monitor, alerts = asyncio.run(_load_anomaly(project_dir, config, args.limit))

    print_header("Metric Windows")
    metrics = monitor.metric_names()
    if not metrics:
        print_info("No session aggregates recorded yet")
    else:
        table = create_table(columns=["Metric", "Sessions", "Values"])
        for name in metrics:
            values = monitor.window_values(name)
            table.add_row(name, str(len(values)), ", ".join(f"{v:g}" for v in values))
        print_table(table)

    print_header("Recent Alerts")
    if not alerts:
        print_info("No alerts")
        return 0
    table = create_table(columns=["Session", "Metric", "Flag", "Severity", "Message"])
    for alert in alerts:
        table.add_row(
            (alert["session_id"] or "")[:12],
            alert["metric_name"],
            alert["flag"],
            alert["severity"],
            alert["message"],
        )
    print_table(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="verifyforge",
        description="Adaptive verification planning and state inspection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to verifyforge_config.json")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # plan command
    plan_parser = subparsers.add_parser("plan", help="Classify a change and select a tier")
    plan_parser.add_argument("--files", type=int, required=True, help="Files changed")
    plan_parser.add_argument("--lines", type=int, required=True, help="Lines changed")
    plan_parser.add_argument("--layer", action="append", help="Layer touched (repeatable)")
    plan_parser.add_argument("--keyword", action="append", help="Keyword hit (repeatable)")
    plan_parser.add_argument("--architecture-change", action="store_true", help="Flag as an architecture change")
    plan_parser.add_argument("--mode", default=None, help='Mode token: "loop N", verify-only or dry-run')
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    # fingerprint command
    fp_parser = subparsers.add_parser("fingerprint", help="Fingerprint a project's declared inputs")
    fp_parser.add_argument("--project-dir", "-p", type=Path, default=None)

    # cache command
    cache_parser = subparsers.add_parser("cache", help="Inspect or clean caches")
    cache_parser.add_argument("action", choices=["status", "clear", "cleanup"])
    cache_parser.add_argument("--project-dir", "-p", type=Path, default=None)
    cache_parser.add_argument("--max-age-days", type=int, default=None, help="Age limit for cleanup")

    # anomaly command
    anomaly_parser = subparsers.add_parser("anomaly", help="Show metric windows and alerts")
    anomaly_parser.add_argument("--project-dir", "-p", type=Path, default=None)
    anomaly_parser.add_argument("--limit", "-n", type=int, default=20, help="Max alerts to show")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    set_verbose(args.verbose)
    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = VerifyConfig.load(args.config)
    except ValueError as e:
        print_error(str(e))
        return 2

    commands = {
        "plan": cmd_plan,
        "fingerprint": cmd_fingerprint,
        "cache": cmd_cache,
        "anomaly": cmd_anomaly,
    }
    return commands[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
