import argparse
import asyncio
import logging
import sys

from .config import settings
from .control_plane.db import init_db
from .erp.orchestrator import SyncOrchestrator
from .erp.schemas import SyncOptions, SyncResult, Trigger

logger = logging.getLogger("parking_sync")

async def drain(orchestrator: SyncOrchestrator, integration_id: str, limit=None, max_rounds: int = 1000,
                trigger: Trigger = Trigger.MANUAL) -> SyncResult:
    """Repeats a resumable sync until the saved offset reaches the end of the dataset."""
    result = None
    for round_no in range(1, max_rounds + 1):
        result = await orchestrator.run_sync(integration_id, SyncOptions(limit=limit), trigger)
        progress = result.progress
        if progress:
            logger.info(
                f"Round {round_no}: {progress.completed_from}..{progress.next_offset} of {progress.total} "
                f"({result.stats.erp_to_app.created} created, {result.stats.erp_to_app.updated} updated)"
            )
        if not result.success or not progress or not progress.has_more:
            return result
    logger.warning(f"Stopped after {max_rounds} rounds with more records pending")
    return result

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parking-sync", description="SoftOne -> parking app ERP sync")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")

    sync = sub.add_parser("sync", help="Run one sync for an integration")
    sync.add_argument("integration_id")
    sync.add_argument("--scheduled", action="store_true", help="Run as the scheduler would (incremental)")
    sync.add_argument("--full-sync", action="store_true", help="Delete and re-insert all contract lines")
    sync.add_argument("--parent-ids", type=int, nargs="+", help="Only fetch lines of these contracts")
    sync.add_argument("--recent-parents", action="store_true", help="Only fetch lines of recently valid contracts")
    sync.add_argument("--months", type=int, default=None, help="Window for --recent-parents")
    sync.add_argument("--offset", type=int, default=None)
    sync.add_argument("--limit", type=int, default=None)

    dr = sub.add_parser("drain", help="Repeat a resumable sync until every offset is consumed")
    dr.add_argument("integration_id")
    dr.add_argument("--limit", type=int, default=None)
    dr.add_argument("--max-rounds", type=int, default=1000)
    return parser

async def _amain(args: argparse.Namespace) -> int:
    await init_db()
    if args.command == "init-db":
        logger.info("Database initialized")
        return 0

    orchestrator = SyncOrchestrator()
    if args.command == "drain":
        result = await drain(orchestrator, args.integration_id, limit=args.limit, max_rounds=args.max_rounds)
    else:
        options = SyncOptions(
            parent_ids=args.parent_ids,
            filter_by_recent_parents=args.recent_parents,
            recent_parent_months=args.months,
            offset=args.offset,
            limit=args.limit,
            full_sync=args.full_sync,
        )
        trigger = Trigger.SCHEDULED if args.scheduled else Trigger.MANUAL
        result = await orchestrator.run_sync(args.integration_id, options, trigger)

    print(result.model_dump_json(indent=2, by_alias=True))
    return 0 if result.success else 1

def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(_amain(args))

if __name__ == "__main__":
    sys.exit(main())
