#!/usr/bin/env python3
"""
Drain the outbound task queue from the command line.

Useful when the background scheduler is disabled (e.g. a platform cron runs
this instead) or to work through a backlog by hand.

Usage:
    python -m outbound.scripts.drain_queue --limit 50 --rounds 10
    python -m outbound.scripts.drain_queue --schedule --sweep
"""
import argparse
import json
import sys


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Schedule and dispatch outbound tasks")
    parser.add_argument("--limit", type=int, default=None, help="Batch size (default: DISPATCH_BATCH_LIMIT)")
    parser.add_argument("--rounds", type=int, default=1, help="Maximum number of batches to run")
    parser.add_argument("--schedule", action="store_true", help="Run the notification scheduler first")
    parser.add_argument("--sweep", action="store_true", help="Reclaim stale SENDING tasks first")
    args = parser.parse_args(argv)
    if args.limit is not None and args.limit < 1:
        parser.error("--limit must be a positive integer")
    if args.rounds < 1:
        parser.error("--rounds must be a positive integer")
    return args


def main(argv=None) -> int:
    args = parse_args(argv)

    from outbound import create_app
    from outbound.pipeline import get_dispatcher, get_scheduler

    app = create_app({"SCHEDULER_ENABLED": False})
    with app.app_context():
        try:
            report = {}
            dispatcher = get_dispatcher()
            if args.sweep:
                report["reclaimed"] = dispatcher.reclaim_stale()
            if args.schedule:
                report["schedule"] = get_scheduler().run().to_dict()
            report["dispatch"] = dispatcher.drain(limit=args.limit, rounds=args.rounds).to_dict()
        except Exception as e:
            print(f"Queue drain failed: {e}", file=sys.stderr)
            return 1

    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
