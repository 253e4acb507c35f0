"""Sticky choice of the authoritative batch (or two, in split mode).

Upstream ordering and status flags lag behind item-level completion, so a
chosen batch is held for a minimum dwell time instead of following every
reordering of the open-batch listing.
"""
import logging
from dataclasses import dataclass, replace

from .errors import EmptyCandidates, StaleSelection

logger = logging.getLogger('nextpick.selector')


@dataclass
class BatchHandle:
    batch_id: str
    sticky_until: float
    absent_streak: int = 0

    def sticky(self, now):
        return now < self.sticky_until


class BatchSelector:
    def __init__(self, policy):
        self.policy = policy
        self.handles = []
        self._ignored = {}

    def held_ids(self):
        return [h.batch_id for h in self.handles]

    def handle(self, batch_id):
        for h in self.handles:
            if h.batch_id == batch_id:
                return h
        return None

    def is_ignored(self, batch_id, now):
        until = self._ignored.get(batch_id)
        return until is not None and now < until

    def sticky_elapsed(self, batch_id, now):
        h = self.handle(batch_id)
        return h is None or not h.sticky(now)

    def plan(self, candidate_ids, now):
        """Compute the next handle list without committing it."""
        ignored = {k: v for k, v in self._ignored.items() if now < v}
        eligible = [bid for bid in dict.fromkeys(candidate_ids or []) if bid not in ignored]
        preferred = eligible[:self.policy.max_batches]

        kept = []
        for h in self.handles:
            if h.batch_id in ignored:
                continue
            present = h.batch_id in eligible
            absent_streak = 0 if present else h.absent_streak + 1
            if h.sticky(now):
                if absent_streak >= self.policy.absent_streak_max:
                    continue
            elif h.batch_id not in preferred:
                continue
            kept.append(replace(h, absent_streak=absent_streak))

        held = {h.batch_id for h in kept}
        for bid in preferred:
            if len(kept) >= self.policy.max_batches:
                break
            if bid in held:
                continue
            kept.append(BatchHandle(bid, now + self.policy.sticky_ms))
            held.add(bid)
        return kept, ignored

    def select(self, candidate_ids, now):
        """Commit a selection round; returns the held batch ids, primary first."""
        kept, ignored = self.plan(candidate_ids, now)
        before = self.held_ids()
        self.handles = kept
        self._ignored = ignored
        after = self.held_ids()
        if after != before:
            logger.info('selected batches %s (was %s)', after, before)
        return after

    def select_authoritative(self, candidate_ids, now):
        held = self.select(candidate_ids, now)
        return held[0] if held else None

    def require_authoritative(self, candidate_ids, now):
        """Strict variant of select_authoritative for callers that need a batch."""
        if not candidate_ids:
            raise EmptyCandidates('no open batches')
        batch_id = self.select_authoritative(candidate_ids, now)
        if batch_id is None:
            raise EmptyCandidates('all open batches are ignored')
        h = self.handle(batch_id)
        if h.absent_streak:
            raise StaleSelection(f'batch {batch_id} missing from {h.absent_streak} listings')
        return batch_id

    def preview(self, candidate_ids, now):
        kept, _ = self.plan(candidate_ids, now)
        return [h.batch_id for h in kept]

    def release(self, batch_id, now):
        """Drop a completed batch and ignore it briefly."""
        self.handles = [h for h in self.handles if h.batch_id != batch_id]
        self._ignored[batch_id] = now + self.policy.ignore_ms
        logger.info('released batch %s, ignored for %sms', batch_id, self.policy.ignore_ms)

    def abandon(self, batch_id):
        """Drop a batch without ignoring it so the next round may re-adopt it."""
        self.handles = [h for h in self.handles if h.batch_id != batch_id]

    def clear(self):
        self.handles = []
