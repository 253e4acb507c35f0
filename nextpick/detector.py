"""Completion detection for the tracked batches.

Per batch, a ``BatchTracker`` keeps the last display model and the streak
counters. ``CompletionDetector`` folds poll outcomes into trackers, emits
one-shot events and settles the overall phase once per poll tick.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import DisplayModel, Done, EventKind, Failed, Ok, Pending, Phase, PhaseEvent

logger = logging.getLogger('nextpick.detector')


class Verdict(str, Enum):
    ACTIVE = 'active'
    PENDING = 'pending'
    COMPLETED = 'completed'
    ERROR = 'error'
    RESELECT = 'reselect'


@dataclass
class BatchTracker:
    batch_id: str
    created_at: float
    model: Optional[DisplayModel] = None
    last_ok_at: Optional[float] = None
    done_streak: int = 0
    error_streak: int = 0
    armed: bool = False
    picklist_id: Optional[str] = None
    picklist_had_work: bool = False
    announced: set = field(default_factory=set)

    def fresh(self, now, grace_ms):
        ref = self.last_ok_at if self.last_ok_at is not None else self.created_at
        return now - ref <= grace_ms


class CompletionDetector:
    def __init__(self, policy):
        self.policy = policy
        self.phase = Phase.LOADING
        self.trackers = {}
        self.no_id_streak = 0
        self.listing_error_streak = 0
        self._settled = Phase.LOADING
        self._loading_since = None
        self._completed_now = []

    def tracker(self, batch_id, now):
        t = self.trackers.get(batch_id)
        if t is None:
            t = self.trackers[batch_id] = BatchTracker(batch_id, created_at=now)
        return t

    def forget(self, batch_id):
        self.trackers.pop(batch_id, None)

    def observe_candidates(self, candidate_ids, now):
        """Record the open-batch listing; ``None`` means the listing call failed."""
        if self._loading_since is None:
            self._loading_since = now
        if candidate_ids is None:
            self.listing_error_streak += 1
            return
        self.listing_error_streak = 0
        self.no_id_streak = 0 if candidate_ids else self.no_id_streak + 1

    def observe(self, batch_id, outcome, now, sticky_elapsed=True):
        """Fold one batch outcome in; returns (verdict, events)."""
        t = self.tracker(batch_id, now)
        if isinstance(outcome, Failed):
            t.error_streak += 1
            if t.error_streak > self.policy.error_tolerance and sticky_elapsed:
                logger.warning('batch %s failed %s polls in a row (%s), reselecting', batch_id, t.error_streak, outcome.kind)
                t.error_streak = 0
                return Verdict.RESELECT, []
            return Verdict.ERROR, []

        t.error_streak = 0
        t.last_ok_at = now
        events = []
        if isinstance(outcome, Ok):
            model = outcome.model
            events.extend(self._check_picklist(t, model, outcome.open_picklists, now))
            t.model = model
            if model.current_item is not None:
                t.done_streak = 0
                t.armed = True
                return Verdict.ACTIVE, events
            if outcome.open_picklists > 1:
                # Another picklist in this batch is still open.
                t.done_streak = 0
                return Verdict.PENDING, events
            t.done_streak += 1
        elif isinstance(outcome, Pending):
            t.done_streak += 1
        elif isinstance(outcome, Done):
            t.done_streak = max(t.done_streak + 1, self.policy.done_confirm)
        else:
            raise TypeError(f'unknown poll outcome {outcome!r}')

        if t.done_streak >= self.policy.done_confirm:
            events.extend(self._complete(t, now))
            return Verdict.COMPLETED, events
        return Verdict.PENDING, events

    def _check_picklist(self, t, model, open_picklists, now):
        events = []
        pid = model.picklist_id
        if t.picklist_id is not None and pid != t.picklist_id:
            if t.picklist_had_work and t.picklist_id not in t.announced:
                events.append(self._announce(t, t.picklist_id, now))
            t.picklist_had_work = False
        elif pid is not None and t.picklist_had_work and model.total_remaining == 0 and open_picklists > 1:
            if pid not in t.announced:
                events.append(self._announce(t, pid, now))
        t.picklist_id = pid
        if model.total_remaining > 0:
            t.picklist_had_work = True
        return events

    def _announce(self, t, picklist_id, now):
        t.announced.add(picklist_id)
        logger.info('picklist %s of batch %s completed', picklist_id, t.batch_id)
        return PhaseEvent(EventKind.PICKLIST_COMPLETED, t.batch_id, picklist_id, now)

    def _complete(self, t, now):
        t.done_streak = 0
        self._completed_now.append(t.batch_id)
        self.phase = Phase.COMPLETED
        if not t.armed:
            logger.info('batch %s finished without an active period, skipping', t.batch_id)
            return []
        t.armed = False
        logger.info('batch %s completed', t.batch_id)
        return [PhaseEvent(EventKind.BATCH_COMPLETED, t.batch_id, t.picklist_id, now)]

    def _live(self, trackers, now):
        return [t for t in trackers if t.armed and t.fresh(now, self.policy.grace_ms)]

    def models(self, held_ids, now):
        """Display models to render, primary first."""
        held = [self.trackers[b] for b in held_ids if b in self.trackers]
        live = self._live(held, now)
        if not live:
            live = self._live([t for t in self.trackers.values() if t.batch_id not in held_ids], now)
        return [t.model for t in live if t.model is not None]

    def settle(self, held_ids, now):
        """Resolve the phase at the end of a tick; returns transition events."""
        grace = self.policy.grace_ms
        held = [self.trackers[b] for b in held_ids if b in self.trackers]
        for t in held:
            if t.model is not None and not t.fresh(now, grace):
                logger.warning('batch %s has no good data for %sms, dropping it', t.batch_id, grace)
                t.model = None
                t.armed = False
        live = self._live(held, now)
        others = [t for t in self.trackers.values() if t.batch_id not in held_ids]
        if live:
            for t in others:
                self.forget(t.batch_id)
            others = []
        else:
            for t in others:
                if not t.fresh(now, grace):
                    self.forget(t.batch_id)
            others = self._live([t for t in others if t.batch_id in self.trackers], now)

        completed = self._completed_now
        self._completed_now = []
        prev = self._settled

        if live:
            new = Phase.ACTIVE
        elif completed:
            new = Phase.LOADING if held else Phase.EMPTY
        elif self.no_id_streak >= self.policy.no_id_streak_max:
            for t in others:
                self.forget(t.batch_id)
            new = Phase.EMPTY
        elif others:
            new = Phase.ACTIVE
        elif not held and self.listing_error_streak > self.policy.error_tolerance:
            # Listing unreachable and nothing left to show.
            new = Phase.EMPTY
        elif prev == Phase.ACTIVE:
            new = Phase.EMPTY
        elif prev == Phase.LOADING and self._loading_since is not None and now - self._loading_since > grace:
            new = Phase.EMPTY
        else:
            new = prev

        events = []
        if new == Phase.ACTIVE and (prev != Phase.ACTIVE or completed):
            primary = (live or others)[0]
            events.append(PhaseEvent(EventKind.ACTIVATED, primary.batch_id, primary.picklist_id, now))
        elif new == Phase.EMPTY and prev != Phase.EMPTY:
            events.append(PhaseEvent(EventKind.BECAME_EMPTY, at=now))
        if new == Phase.LOADING and prev != Phase.LOADING:
            self._loading_since = now
        if new != prev:
            logger.info('phase %s -> %s', prev.value, new.value)
        self._settled = new
        self.phase = new
        return events
