"""Ledger replay: ordered transfer log -> per-address holdings.

Replay is a pure function of its inputs. It never mutates the prior map it
is given and never reads the wall clock; the only timestamps it records are
the ones carried on the events. Replaying the same events from the same
starting map always yields an identical result, and re-applying a range
that was already (partially) applied converges to the same ownership,
because every event moves its token away from whoever the index says owns
it before crediting the recipient.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from nft_whale_tracker.ingestor.models import TransferEvent, is_burn_address
from nft_whale_tracker.ledger.models import Holder, HolderMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    """Outcome of replaying a batch of events.

    Attributes:
        holders: The resulting holder map (a new object; callers own it).
        applied: Events applied to the map.
        skipped: Malformed events that were skipped.
        corrections: Events whose stated sender did not match the recorded
            owner (partial history or re-delivered range).
    """

    holders: HolderMap
    applied: int = 0
    skipped: int = 0
    corrections: int = 0


def _normalize(event: TransferEvent) -> tuple[str, str, int] | None:
    sender = event.from_address
    recipient = event.to_address
    if not isinstance(sender, str) or not sender:
        return None
    if not isinstance(recipient, str) or not recipient:
        return None

    token_id = event.token_id
    if isinstance(token_id, bool):
        return None
    if not isinstance(token_id, int):
        try:
            token_id = int(str(token_id), 0)
        except ValueError:
            return None
    return sender.lower(), recipient.lower(), token_id


def _apply(state: HolderMap, event: TransferEvent, sender: str, recipient: str, token_id: int) -> bool:
    """Apply one event in place. Returns True when a correction was needed."""
    corrected = False
    recorded_owner = state.token_owners.get(token_id)

    if not is_burn_address(sender):
        source = state.holders.get(sender)
        if source is not None:
            source.token_ids.discard(token_id)
            source.last_activity = event.timestamp
        if recorded_owner != sender:
            corrected = True

    if recorded_owner is not None and recorded_owner != sender:
        # The token is recorded elsewhere; take it from there so that it is
        # never held by two addresses at once.
        stale = state.holders.get(recorded_owner)
        if stale is not None:
            stale.token_ids.discard(token_id)
        corrected = True

    if is_burn_address(recipient):
        state.token_owners.pop(token_id, None)
        state.burned.add(token_id)
        return corrected

    state.burned.discard(token_id)
    target = state.holders.get(recipient)
    if target is None:
        target = Holder(address=recipient, first_seen=event.timestamp)
        state.holders[recipient] = target
    target.token_ids.add(token_id)
    target.last_activity = event.timestamp
    state.token_owners[token_id] = recipient
    return corrected


def _recompute_percentages(state: HolderMap) -> None:
    total = state.total_supply
    for holder in state.holders.values():
        if holder.is_active and total > 0:
            holder.percentage_of_supply = holder.count / total * 100
        else:
            holder.percentage_of_supply = 0.0


def replay(events: Iterable[TransferEvent], prior: HolderMap | None = None) -> ReplayResult:
    """Replay ordered transfer events on top of an optional prior map.

    Args:
        events: Events ascending by (block_number, log_index).
        prior: Holder map to start from. It is copied, never mutated.

    Returns:
        ReplayResult with the new holder map and batch counters.
    """
    state = prior.copy() if prior is not None else HolderMap()
    applied = 0
    skipped = 0
    corrections = 0

    for event in events:
        normalized = _normalize(event)
        if normalized is None:
            skipped += 1
            logger.warning(
                "Skipping malformed transfer event tx=%s block=%s",
                getattr(event, "tx_hash", "?"),
                getattr(event, "block_number", "?"),
            )
            continue
        sender, recipient, token_id = normalized
        if _apply(state, event, sender, recipient, token_id):
            corrections += 1
            logger.debug(
                "Corrected ownership of token %d (stated sender %s, block %d)",
                token_id,
                sender,
                event.block_number,
            )
        applied += 1

    _recompute_percentages(state)

    if corrections:
        logger.warning(
            "Replay applied %d events with %d ownership corrections (partial history or re-delivery)",
            applied,
            corrections,
        )
    return ReplayResult(holders=state, applied=applied, skipped=skipped, corrections=corrections)
