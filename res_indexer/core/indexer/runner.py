"""
Command line entry point for the RES event indexer.

    res-indexer --config parameters_yml/indexer_config.yml run
    res-indexer backfill --from-block 1200000 --to-block 1250000
    res-indexer status --kind kyc_whitelisted
    res-indexer export --kind swap --out-dir data/export
    res-indexer export --out-dir data/export
"""
import argparse
import json
import logging
import os
import threading
from typing import Any, List, Optional

from res_indexer.core.config import IndexerConfig
from res_indexer.core.errors import IndexerError
from res_indexer.core.indexer.sync import SyncManager
from res_indexer.core.source import ChainSource
from res_indexer.core.store import SQLiteStore
from res_indexer.core.types import EventKind

logger = logging.getLogger(__name__)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str, indent=2)


def build_manager(config: IndexerConfig) -> SyncManager:
    store = SQLiteStore(config.db_path)
    source = ChainSource(config)
    return SyncManager(source, store, config)


def cmd_run(manager: SyncManager) -> None:
    manager.start(progress=True)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        manager.stop(wait=True)


def cmd_backfill(manager: SyncManager, from_block: int, to_block: Optional[int]) -> int:
    manager.initialize()
    if to_block is None:
        to_block = manager.source.head_block()
    report = manager.backfill(from_block, to_block)
    print(f"\n{'='*60}")
    print(f"Backfill {from_block:,} -> {to_block:,}: {len(report.windows)} windows")
    for kind, n in sorted(report.inserted.items(), key=lambda kv: kv[0].tag):
        print(f"  {kind.tag:<24} {n:>8,} new")
    if report.skipped:
        print(f"  skipped malformed: {report.skipped}")
    if report.ok:
        print("✅ COMPLETED")
    else:
        print(f"⚠️  {len(report.failures)} failed kind/window pairs; re-run to retry:")
        for failure in report.failures:
            print(f"  {failure.kind.tag} [{failure.from_block:,}, {failure.to_block:,}]: {failure.error}")
    print(f"{'='*60}")
    return 0 if report.ok else 1


def _event_kind(tag: str) -> EventKind:
    try:
        return EventKind.from_tag(tag)
    except ValueError:
        tags = ", ".join(kind.tag for kind in EventKind)
        raise argparse.ArgumentTypeError(f"unknown event kind {tag!r} (choose from {tags})")


def cmd_status(manager: SyncManager, kind: Optional[EventKind] = None, limit: int = 20) -> None:
    manager.initialize()
    status = manager.sync_progress()
    status["counts"] = {k.tag: manager.store.count(k) for k in EventKind}
    status["pending_notifications"] = len(manager.store.pending_notifications(limit=1000))
    if kind is not None:
        status["recent"] = {kind.tag: manager.store.recent(kind, limit=limit)}
    print(_json_dumps(status))


def cmd_export(store: SQLiteStore, out_dir: str, kind: Optional[EventKind] = None) -> None:
    if kind is None:
        written = store.export_pickles(out_dir)
    else:
        os.makedirs(out_dir, exist_ok=True)
        path = os.path.join(out_dir, f"{kind.tag}.pkl")
        store.to_frame(kind).to_pickle(path)
        written = {kind.tag: path}
    for name, path in written.items():
        print(f"  ✓ {name} → {path}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="RES marketplace event indexer")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.add_argument("--log-level", default=None, help="Overrides log_level from the config")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Catch up, then keep indexing until interrupted")

    backfill_parser = sub.add_parser("backfill", help="Scan an explicit block range")
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    status_parser = sub.add_parser("status", help="Show sync progress and stored row counts")
    status_parser.add_argument("--kind", type=_event_kind, default=None,
                               help="Also list the latest stored events of this kind")
    status_parser.add_argument("--limit", type=int, default=20)

    export_parser = sub.add_parser("export", help="Dump every event table as a pickled DataFrame")
    export_parser.add_argument("--out-dir", default="data/export")
    export_parser.add_argument("--kind", type=_event_kind, default=None,
                               help="Export only this event kind, as <out-dir>/<kind>.pkl")

    args = parser.parse_args(argv)

    try:
        config = IndexerConfig.load(args.config)
    except IndexerError as exc:
        parser.error(str(exc))
    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.command == "export":
        store = SQLiteStore(config.db_path)
        try:
            cmd_export(store, args.out_dir, kind=args.kind)
        finally:
            store.close()
        return 0

    try:
        config.validate()
    except IndexerError as exc:
        parser.error(str(exc))

    manager = build_manager(config)
    try:
        if args.command == "run":
            cmd_run(manager)
            return 0
        if args.command == "backfill":
            return cmd_backfill(manager, args.from_block, args.to_block)
        if args.command == "status":
            cmd_status(manager, kind=args.kind, limit=args.limit)
            return 0
    except IndexerError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        manager.store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
