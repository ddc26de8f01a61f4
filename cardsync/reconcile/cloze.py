"""
Cloze sub-card reconciliation.

A cloze parent holds numbered blanks ({{c1::...}}, {{c2::...}}). Each blank
index present in the parent text gets exactly one live sub-card that tests
only that blank; the parent itself is never studied.

Rules:
- missing index: create a child (or revive a retired one with that index)
- index no longer present: suspend and retire the child (never delete, its
  review history stays)
- two live children with the same index: the later ones are retired
- a suspended child (by the user or as a leech) no longer counts for its
  blank: a retired non-leech child is revived or a new one is created, and
  the suspended child is left as it is
- child text differs from a fresh render of the parent: regenerate, re-queue
- child with an impossible index: logged, retired, re-queued

A parent whose last_reconciled_at is at or after its updated_at is skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from cardsync.schemas import Card, CardType, utc_now
from cardsync.storage.local_store import LocalStore
from cardsync.sync.id_remap import new_temp_id

logger = logging.getLogger(__name__)

CLOZE_MARKER = re.compile(r"\{\{\s*c(\d+)::", re.IGNORECASE | re.DOTALL)
CLOZE_SPAN = re.compile(r"\{\{\s*c(\d+)::(.*?)\}\}", re.IGNORECASE | re.DOTALL)


def parse_cloze_indices(text: Optional[str]) -> set[int]:
    """Blank indices (1-based) present in the text."""
    if not text:
        return set()
    return {int(m.group(1)) for m in CLOZE_MARKER.finditer(text) if int(m.group(1)) > 0}


def render_for_index(text: Optional[str], index: int) -> str:
    """
    Render parent text for one sub-card.

    The target blank is kept (renumbered to c1); every other blank is
    revealed as plain text.
    """
    if not text:
        return ""

    def _replace(match: re.Match) -> str:
        if int(match.group(1)) == index:
            return "{{c1::" + match.group(2) + "}}"
        return match.group(2)

    return CLOZE_SPAN.sub(_replace, text)


def parent_indices(parent: Card) -> set[int]:
    indices = parse_cloze_indices(parent.front)
    if not indices:
        indices = parse_cloze_indices(parent.back)
    return indices


@dataclass
class ClozePlan:
    """What reconciling one parent would do. Values are child ids."""
    to_create: list[int] = field(default_factory=list)
    to_keep: dict[int, str] = field(default_factory=dict)
    to_revive: dict[int, str] = field(default_factory=dict)
    to_retire: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    invalid: list[str] = field(default_factory=list)


def plan_sub_cards(parent: Card, children: list[Card]) -> ClozePlan:
    """Diff the parent's blank indices against its existing children."""
    indices = parent_indices(parent)
    plan = ClozePlan()

    live: dict[int, str] = {}
    dormant: dict[int, str] = {}
    for child in sorted(children, key=lambda c: c.created_at):
        idx = child.cloze_index
        if idx is None or idx <= 0:
            if not child.retired:
                plan.invalid.append(child.id)
            continue
        if child.retired:
            if not child.leech:
                dormant.setdefault(idx, child.id)
            continue
        if child.suspended:
            continue
        if idx in live:
            plan.duplicates.append(child.id)
        else:
            live[idx] = child.id

    for idx in sorted(indices):
        if idx in live:
            plan.to_keep[idx] = live[idx]
        elif idx in dormant:
            plan.to_revive[idx] = dormant[idx]
        else:
            plan.to_create.append(idx)

    plan.to_retire = [child_id for idx, child_id in live.items() if idx not in indices]
    return plan


def build_sub_card(parent: Card, index: int) -> Card:
    now = utc_now()
    return Card(
        id=new_temp_id(),
        deck_id=parent.deck_id,
        type=CardType.CLOZE,
        front=render_for_index(parent.front, index),
        back=render_for_index(parent.back, index),
        notes=parent.notes,
        tags=[tag.model_copy() for tag in parent.tags],
        order=index - 1,
        parent_card=parent.id,
        cloze_index=index,
        created_at=now,
        updated_at=now,
    )


def _refresh_text(child: Card, parent: Card, index: int) -> bool:
    front = render_for_index(parent.front, index)
    back = render_for_index(parent.back, index)
    if child.front == front and child.back == back and child.notes == parent.notes:
        return False
    child.front = front
    child.back = back
    child.notes = parent.notes
    return True


class ClozeReconciler:
    """
    Keeps cloze sub-cards in step with their parents.

    Args:
        store: Local store
        queue_manager: Receives an upsert for every changed record
    """

    def __init__(self, store: LocalStore, queue_manager):
        self.store = store
        self.queue_manager = queue_manager

    async def reconcile_parent(self, parent: Card, force: bool = False) -> int:
        """
        Reconcile one parent.

        Args:
            parent: Cloze parent card (other cards are ignored)
            force: Ignore the last_reconciled_at short-circuit

        Returns:
            Number of records written
        """
        if not parent.is_cloze_parent or parent.retired:
            return 0
        if not force and parent.last_reconciled_at and parent.last_reconciled_at >= parent.updated_at:
            return 0

        children = self.store.sub_cards_of(parent.id)
        by_id = {c.id: c for c in children}
        plan = plan_sub_cards(parent, children)
        now = utc_now()
        changed: dict[str, Card] = {}

        for child_id in plan.invalid:
            child = by_id[child_id]
            logger.warning(
                f"Sub-card {child_id} of {parent.id} has invalid cloze index {child.cloze_index}; retiring it"
            )
            child.cloze_index = None
            child.suspended = True
            child.retired = True
            changed[child_id] = child

        for child_id in plan.duplicates + plan.to_retire:
            child = by_id[child_id]
            child.suspended = True
            child.retired = True
            changed[child_id] = child

        for idx, child_id in plan.to_revive.items():
            child = by_id[child_id]
            child.suspended = False
            child.retired = False
            _refresh_text(child, parent, idx)
            changed[child_id] = child

        for idx, child_id in plan.to_keep.items():
            child = by_id[child_id]
            if _refresh_text(child, parent, idx):
                changed[child_id] = child

        created = [build_sub_card(parent, idx) for idx in plan.to_create]
        for child in changed.values():
            child.updated_at = now

        live = {**plan.to_keep, **plan.to_revive, **{c.cloze_index: c.id for c in created}}
        live_ids = [live[idx] for idx in sorted(live)]
        links_changed = live_ids != parent.sub_cards
        parent.sub_cards = live_ids
        parent.last_reconciled_at = max(now, parent.updated_at)

        writes = created + list(changed.values()) + [parent]
        await self.store.save_cards(writes)
        for child in created + list(changed.values()):
            await self.queue_manager.enqueue_card_upsert(child, reason="cloze")
        if links_changed:
            await self.queue_manager.enqueue_card_upsert(parent, reason="cloze")

        if created or changed:
            logger.info(
                f"Reconciled cloze parent {parent.id}: {len(created)} created, "
                f"{len(plan.to_revive)} revived, {len(plan.to_retire) + len(plan.duplicates)} retired, "
                f"{len(plan.invalid)} healed"
            )
        return len(writes)

    async def reconcile_all(self, force: bool = False) -> int:
        """Reconcile every cloze parent in the store. Returns records written."""
        total = 0
        for card in list(self.store.cards.values()):
            if card.is_cloze_parent:
                total += await self.reconcile_parent(card, force=force)
        return total
