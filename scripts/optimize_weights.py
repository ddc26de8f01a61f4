"""
Fit a memory-model deck's weights to its review history.

The result is only printed unless --apply is given, in which case the
weights are saved on the deck and queued for sync.

Usage:
    python -m scripts.optimize_weights <deck_id> [--iterations N] [--seed N] [--apply]
"""

from __future__ import annotations

import argparse
import asyncio

from cardsync.config import configure_logging
from cardsync.errors import OptimizationCancelled
from cardsync.runtime import CardSyncRuntime
from cardsync.srs.optimizer import (
    ITERATIONS,
    CancelToken,
    apply_optimized_weights,
    build_training_set,
    has_enough_history,
    optimize_weights,
)


async def run(deck_id: str, iterations: int, seed: int | None, apply: bool) -> int:
    async with CardSyncRuntime() as runtime:
        deck = runtime.store.decks.get(deck_id)
        if deck is None:
            print(f"Deck not found: {deck_id}")
            return 1
        if not deck.is_memory_model:
            print(f"Deck '{deck.name}' does not use the memory-model scheduler")
            return 1

        training_set = build_training_set(runtime.store.cards_for_deck(deck_id))
        if not has_enough_history(training_set):
            print(f"Not enough review history in '{deck.name}' ({len(training_set)} cards with 2+ reviews)")
            return 1

        print(f"Optimizing '{deck.name}' on {len(training_set)} cards...")
        cancel = CancelToken()
        try:
            result = await optimize_weights(
                training_set,
                start_weights=deck.srs_config.memory.weights,
                cancel=cancel,
                iterations=iterations,
                seed=seed,
                on_progress=lambda k, loss: print(f"  iteration {k:>4}: loss {loss:.4f}"),
            )
        except OptimizationCancelled:
            print("Cancelled; weights unchanged")
            return 1

        print(f"\nLoss: {result.start_loss:.4f} -> {result.best_loss:.4f} "
              f"({result.iterations} iterations{', converged' if result.converged else ''})")
        print(f"Weights: {result.best_weights}")

        if apply:
            apply_optimized_weights(deck, result)
            await runtime.store.save_deck(deck)
            await runtime.queue_manager.enqueue_deck_upsert(deck)
            print("Applied and queued for sync")
        else:
            print("\n⚠ Not applied (use --apply to save)")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Fit memory-model weights to a deck's review history"
    )
    parser.add_argument("deck_id", help="Deck to optimize")
    parser.add_argument(
        "--iterations",
        type=int,
        default=ITERATIONS,
        help=f"Maximum search iterations (default: {ITERATIONS})"
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Seed for reproducible runs"
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Save the optimized weights on the deck"
    )

    args = parser.parse_args()
    configure_logging()
    raise SystemExit(asyncio.run(run(args.deck_id, args.iterations, args.seed, args.apply)))


if __name__ == "__main__":
    main()
