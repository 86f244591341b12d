import argparse
import json
import logging
import sys
from pathlib import Path

# Ensure repo root is on PYTHONPATH so `import wbsync.*` works when running from /scripts
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import config
from main import configure_logging
from wbsync.models import DatasetKey
from wbsync.orchestrator import WaveFailedError
from wbsync.registry import build_sync_session
from wbsync.runner import SyncInProgressError
from wbsync.wb_api import AuthorizationError

LOGGER = logging.getLogger("run_sync")

DATASET_CHOICES = [d.value for d in DatasetKey]


def _dataset_name(value: str) -> str:
    if value not in DATASET_CHOICES:
        raise argparse.ArgumentTypeError(f"unknown dataset {value!r} (choose from {', '.join(DATASET_CHOICES)})")
    return value


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Incremental Wildberries seller data sync.")
    parser.add_argument("--db", type=str, default=str(config.SYNC_DB_PATH), help="Path to the sync SQLite DB")
    parser.add_argument("--quiet", action="store_true", help="Suppress INFO logs; only warnings/errors.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("priority", help="Trailing priority window for every configured dataset")
    sub.add_parser("refresh", help="Re-validate each dataset's trailing overlap window")

    catchup = sub.add_parser("catchup", help="Advance forward cursors by one chunk")
    catchup.add_argument("--until-done", action="store_true", help="Repeat ticks until every dataset is caught up")

    backfill = sub.add_parser("backfill", help="Load one closed week behind the backfill cursor")
    backfill.add_argument("--dataset", choices=DATASET_CHOICES, default=DatasetKey.SALES.value)
    backfill.add_argument("--weeks", type=int, default=1, help="Number of ticks to run (default: 1)")

    week_sync = sub.add_parser("week-sync", help="Week-by-week sweep back to the lower bound")
    week_sync.add_argument("datasets", nargs="*", type=_dataset_name, default=None)

    freshness = sub.add_parser("freshness", help="Report missing ranges; --catchup loads them")
    freshness.add_argument("--catchup", action="store_true")
    freshness.add_argument("datasets", nargs="*", type=_dataset_name, default=None)

    sub.add_parser("status", help="Print checkpoints, loaded periods and backfill progress")

    reset = sub.add_parser("reset", help="Delete checkpoints, loaded periods and rows for one dataset")
    reset.add_argument("dataset", choices=DATASET_CHOICES)
    reset.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    return parser.parse_args(argv)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _progress(current: int, total: int, label: str) -> None:
    print(f"[{current}/{total}] {label}")


def run_command(args: argparse.Namespace, session) -> int:
    orchestrator = session.orchestrator
    if args.command == "priority":
        _print(orchestrator.run_priority_wave().as_dict())
    elif args.command == "refresh":
        _print(orchestrator.run_refresh_wave().as_dict())
    elif args.command == "catchup":
        while True:
            result = orchestrator.run_catchup_tick()
            _print(result.as_dict())
            if result.done or not args.until_done or result.errors:
                break
    elif args.command == "backfill":
        for _ in range(max(1, args.weeks)):
            tick = orchestrator.run_backfill_tick(args.dataset)
            _print(tick.as_dict())
            if tick.run is None or tick.progress.completed:
                break
    elif args.command == "week-sync":
        datasets = args.datasets or [d.value for d in DatasetKey]
        result = session.coordinator.run(datasets, on_progress=_progress)
        _print(result.as_dict())
        return 1 if result.failed else 0
    elif args.command == "freshness":
        missing = session.freshness.get_missing_ranges(args.datasets or None)
        _print({d.value: r.label() for d, r in missing.items()})
        if args.catchup and missing:
            result = session.freshness_catchup.run(args.datasets or None, on_progress=_progress)
            if result is not None:
                _print(result.as_dict())
                return 1 if result.failed else 0
    elif args.command == "status":
        _print(session.status())
    elif args.command == "reset":
        if not args.yes:
            answer = input(f"Delete all synced data for {args.dataset}? [y/N] ").strip().lower()
            if answer != "y":
                print("Aborted.")
                return 1
        _print(session.reset_dataset(args.dataset))
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(level="WARNING" if args.quiet else None)
    session = build_sync_session(db_path=Path(args.db))
    try:
        return run_command(args, session)
    except AuthorizationError as exc:
        LOGGER.error("Upstream rejected the API key: %s", exc)
        return 2
    except SyncInProgressError as exc:
        LOGGER.error("%s", exc)
        return 3
    except WaveFailedError as exc:
        LOGGER.error("%s", exc)
        _print(exc.result.as_dict())
        return 1


if __name__ == "__main__":
    sys.exit(main())
