"""
cardsync - offline-first flashcard study core.

Spaced-repetition scheduling (leveled and memory-model), a durable local
store, and a mutation queue synchronized against a remote document store.
"""

__version__ = "0.1.0"
