"""
PPUK CLI — store bootstrap and operator commands.

Commands:
- ppuk init-db       — Create the entity store schema
- ppuk worker        — Process queued document jobs in the foreground
- ppuk sweep         — Run retention sweeps (audit, jobs, cache or all)
- ppuk reap          — Requeue document jobs abandoned by dead workers
- ppuk replay-audit  — Retry audit events that failed to persist
- ppuk stats         — Job, cache and audit replay counters
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from typing import Optional

logger = logging.getLogger("ppuk.cli")


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ppuk",
        description="PPUK Core — property access, audit, jobs and provider cache",
    )
    parser.add_argument(
        "--config", default=None, help="Path to ppuk.yaml (default: auto-discover)"
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ppuk init-db
    subparsers.add_parser("init-db", help="Create the entity store schema")

    # ppuk worker
    worker_parser = subparsers.add_parser("worker", help="Process document jobs")
    worker_parser.add_argument("--kind", help="Only claim jobs of this kind")
    worker_parser.add_argument("--batch", type=int, help="Jobs per batch (default: jobs.batch_size)")
    worker_parser.add_argument("--once", action="store_true", help="Run one batch and exit")
    worker_parser.add_argument(
        "--idle-sleep", type=float, default=2.0, help="Seconds to wait when the queue is empty"
    )

    # ppuk sweep
    sweep_parser = subparsers.add_parser("sweep", help="Run retention sweeps")
    sweep_parser.add_argument("target", choices=["audit", "jobs", "cache", "all"])

    # ppuk reap
    reap_parser = subparsers.add_parser("reap", help="Requeue stale processing jobs")
    reap_parser.add_argument("--stale-after", type=int, help="Seconds (default: jobs.stale_after_seconds)")

    # ppuk replay-audit
    replay_parser = subparsers.add_parser("replay-audit", help="Retry pending and spilled audit events")
    replay_parser.add_argument("--days", type=int, default=7, help="Spillover days to re-ingest (default: 7)")

    # ppuk stats
    subparsers.add_parser("stats", help="Print operational counters as JSON")

    args = parser.parse_args(argv)

    if args.command == "init-db":
        return cmd_init_db(args)
    elif args.command == "worker":
        return cmd_worker(args)
    elif args.command == "sweep":
        return cmd_sweep(args)
    elif args.command == "reap":
        return cmd_reap(args)
    elif args.command == "replay-audit":
        return cmd_replay_audit(args)
    elif args.command == "stats":
        return cmd_stats(args)
    else:
        parser.print_help()
        return 0


def _start_runtime(args: argparse.Namespace, create_tables: bool = False):
    """Load config and start the runtime. Returns None after printing an error."""
    from ppuk.engine.config import load_platform_config
    from ppuk.engine.errors import PPUKConfigError
    from ppuk.engine.runtime import init_runtime

    try:
        config = load_platform_config(args.config)
    except PPUKConfigError as e:
        print(f"[ERROR] {e.message}")
        for error in e.context.get("errors", []):
            print(f"  {'.'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg')}")
        return None

    logging.basicConfig(level=config.logging.level)
    runtime = init_runtime(config, create_tables=create_tables)
    runtime.startup()
    return runtime


def _stop_runtime() -> None:
    from ppuk.engine.runtime import reset_runtime
    reset_runtime()


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create every table on the configured database."""
    runtime = _start_runtime(args, create_tables=True)
    if runtime is None:
        return 1
    try:
        from ppuk.db.base import Base
        print(f"[OK] Schema ready ({len(Base.metadata.tables)} tables)")
        return 0
    finally:
        _stop_runtime()


def cmd_worker(args: argparse.Namespace) -> int:
    """Claim and run jobs until interrupted (or one batch with --once)."""
    runtime = _start_runtime(args)
    if runtime is None:
        return 1

    batch = args.batch or runtime.config.jobs.batch_size
    total = 0
    print(f"Worker started (batch={batch}, kind={args.kind or 'any'})")
    try:
        while True:
            counts = runtime.worker.run_batch(batch, kind=args.kind)
            total += counts["processed"]
            if counts["processed"]:
                print(f"  {counts}")
            if args.once:
                break
            if not counts["processed"]:
                time.sleep(args.idle_sleep)
    except KeyboardInterrupt:
        print("Worker interrupted")
    finally:
        _stop_runtime()

    print(f"[OK] Processed {total} job(s)")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    runtime = _start_runtime(args)
    if runtime is None:
        return 1
    try:
        results = runtime.run_sweeps(args.target)
    finally:
        _stop_runtime()
    for name, result in results.items():
        print(f"[OK] {name}: {result}")
    return 0


def cmd_reap(args: argparse.Namespace) -> int:
    runtime = _start_runtime(args)
    if runtime is None:
        return 1
    try:
        counts = runtime.jobs.reap_stale(args.stale_after)
    finally:
        _stop_runtime()
    print(f"[OK] Requeued {counts['requeued']}, failed {counts['failed']}")
    return 0


def cmd_replay_audit(args: argparse.Namespace) -> int:
    runtime = _start_runtime(args)
    if runtime is None:
        return 1
    try:
        pending = runtime.audit.replay_pending()
        spilled = runtime.audit.replay_spillover(args.days)
    finally:
        _stop_runtime()
    print(f"[OK] Audit replay: pending {pending}, spillover {spilled}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    runtime = _start_runtime(args)
    if runtime is None:
        return 1
    try:
        stats = runtime.stats()
    finally:
        _stop_runtime()
    print(json.dumps(stats, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
