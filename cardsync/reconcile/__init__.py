"""
Derived-record reconciliation: cloze sub-cards and dynamic-context chains.
"""

from cardsync.reconcile.chains import ChainReconciler
from cardsync.reconcile.cloze import ClozeReconciler

__all__ = ["ChainReconciler", "ClozeReconciler"]
