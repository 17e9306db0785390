"""
Sync Worker - Uploads pending conversions to Google Ads on a schedule

Each poll, every active account whose sync_interval_minutes has elapsed
gets one sync pass.

Usage:
    python scripts/sync_worker.py          # run forever
    python scripts/sync_worker.py --once   # one pass over all active accounts
"""
import argparse
import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from app.core.config import settings
from app.core.database import AsyncSessionLocal, async_engine
from app.services.sync_accounts import SyncAccountRegistry, is_due
from app.services.sync_orchestrator import SyncOrchestrator, SyncSummary
from app.services.upload_client import GoogleAdsUploadClient

logger = structlog.get_logger()


async def run_due_accounts(upload_client: GoogleAdsUploadClient, only_due: bool = True) -> SyncSummary:
    """One pass over active accounts, limited to those due when only_due is set"""
    async with AsyncSessionLocal() as session:
        accounts = await SyncAccountRegistry(session).list_active()
        now = datetime.now(timezone.utc)
        if only_due:
            accounts = [a for a in accounts if is_due(a, now)]

        orchestrator = SyncOrchestrator(session, upload_client)
        return await orchestrator.run_accounts(accounts)


async def worker_loop(poll_seconds: int) -> None:
    upload_client = GoogleAdsUploadClient()
    logger.info("sync_worker_started", poll_seconds=poll_seconds)

    while True:
        try:
            summary = await run_due_accounts(upload_client)
            if summary.results:
                print(f"{summary.message} | failed: {summary.total_failure}")
        except Exception as e:
            # Registry unreachable; try again next poll
            logger.error("sync_worker_pass_failed", error=str(e))

        await asyncio.sleep(poll_seconds)


async def run_once() -> None:
    try:
        summary = await run_due_accounts(GoogleAdsUploadClient(), only_due=False)
        print(summary.message)
        for result in summary.results:
            print(f"  {result.brand_name}: {result.success_count} sent, "
                  f"{result.failure_count} failed {result.errors or ''}")
    finally:
        await async_engine.dispose()


def main():
    """Main worker loop"""
    parser = argparse.ArgumentParser(description="Upload pending conversions to Google Ads")
    parser.add_argument("--once", action="store_true", help="run a single pass over all active accounts")
    parser.add_argument("--poll-seconds", type=int, default=settings.sync_worker_poll_seconds)
    args = parser.parse_args()

    if args.once:
        asyncio.run(run_once())
        return

    print("Sync Worker started. Press Ctrl+C to stop.")
    try:
        asyncio.run(worker_loop(args.poll_seconds))
    except KeyboardInterrupt:
        logger.info("sync_worker_stopped")
        print("\nWorker stopped.")


if __name__ == "__main__":
    main()
