"""
Run one sync cycle (push, then pull) against the remote store.

Usage:
    python -m scripts.sync_now [--full] [--rearm]
"""

from __future__ import annotations

import argparse
import asyncio

from cardsync.config import configure_logging
from cardsync.runtime import CardSyncRuntime


async def sync_now(full: bool = False, rearm: bool = False) -> int:
    """
    Returns:
        Process exit code (0 when the cycle finished without errors)
    """
    async with CardSyncRuntime() as runtime:
        if rearm:
            for mutation in runtime.queue_manager.parked():
                await runtime.queue_manager.rearm(mutation.id)

        result = await runtime.engine.sync_now(full=full)

        print(f"\n{'='*60}")
        print("SYNC SUMMARY")
        print(f"{'='*60}")
        if result.push is not None:
            print(f"Pushed:   {result.push.succeeded} ok, {result.push.failed} failed, "
                  f"{result.push.dropped} dropped, {result.push.squashed} squashed")
        if result.pull is not None:
            print(f"Pulled:   {result.pull.decks_upserted} decks, {result.pull.cards_upserted} cards "
                  f"({'full' if result.pull.full else 'incremental'})")
            print(f"Removed:  {result.pull.decks_removed} decks, {result.pull.cards_removed} cards")
        elif result.pull_skipped:
            print(f"Pull skipped: {result.pull_skipped}")
        parked = runtime.queue_manager.parked()
        if parked:
            print(f"Parked:   {len(parked)} change(s) need --rearm")
        if result.error:
            print(f"Error:    {result.error}")
            return 1
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Push queued local changes and pull remote changes"
    )
    parser.add_argument(
        "--full",
        action="store_true",
        help="Force a full pull (removes local records missing remotely)"
    )
    parser.add_argument(
        "--rearm",
        action="store_true",
        help="Retry changes that previously failed permanently"
    )

    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(sync_now(full=args.full, rearm=args.rearm)))


if __name__ == "__main__":
    main()
