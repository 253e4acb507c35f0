"""The single poll loop that drives selection, reduction and detection.

Each tick fetches the open-batch listing and the items of the held batches
(I/O only, no state touched), then applies everything synchronously. A tick
superseded by ``poke()`` is cancelled before it can apply, and results carry
the generation they were issued under so late arrivals are dropped.
"""
import asyncio
import inspect
import logging
import time

from .detector import CompletionDetector, Verdict
from .logic import reduce_items
from .models import Done, Failed
from .normalize import classify_feed, closed_batch_statuses, normalize_batch_ids
from .selector import BatchSelector

logger = logging.getLogger('nextpick.poller')


def now_ms():
    return time.monotonic() * 1000


class TickRound:
    def __init__(self, generation, candidates, listing_error, outcomes, closed=None):
        self.generation = generation
        self.candidates = candidates
        self.listing_error = listing_error
        self.outcomes = outcomes
        self.closed = closed or {}


class PickPoller:
    def __init__(self, gateway, policy, clock=now_ms):
        self.gateway = gateway
        self.policy = policy
        self.clock = clock
        self.selector = BatchSelector(policy)
        self.detector = CompletionDetector(policy)
        self.error = None
        self.generation = 0
        self.ticks = 0
        self.burst_until = 0.0
        self._listeners = []
        self._signature = None
        self._last_state = None
        self._inflight = None
        self._task = None
        self._wake = asyncio.Event()
        self._superseded = False
        self._stopped = False

    # -- listeners -------------------------------------------------------

    def add_listener(self, fn):
        self._listeners.append(fn)

    def remove_listener(self, fn):
        if fn in self._listeners:
            self._listeners.remove(fn)

    async def _publish(self, payload):
        for fn in list(self._listeners):
            try:
                result = fn(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception('listener failed')

    # -- read side -------------------------------------------------------

    @property
    def phase(self):
        return self.detector.phase

    def models(self):
        return self.detector.models(self.selector.held_ids(), self.clock())

    def mode(self, now=None):
        now = self.clock() if now is None else now
        return 'burst' if now < self.burst_until else 'base'

    def next_delay_ms(self, now=None):
        return self.policy.burst_poll_ms if self.mode(now) == 'burst' else self.policy.base_poll_ms

    def snapshot(self):
        models = self.models()
        return {
            'type': 'state',
            'phase': self.phase.value,
            'split': sum(1 for m in models if m.current_item is not None) >= 2,
            'batches': [m.to_dict() for m in models],
            'mode': self.mode(),
            'error': self.error,
            'generation': self.generation,
        }

    # -- burst -----------------------------------------------------------

    def burst(self, now=None):
        now = self.clock() if now is None else now
        self.burst_until = now + self.policy.burst_window_ms

    def poke(self):
        """Window regained focus: go fast and supersede the in-flight tick."""
        self.burst()
        if self._inflight is not None and not self._inflight.done():
            self._superseded = True
            self._inflight.cancel()
        self._wake.set()

    # -- one tick --------------------------------------------------------

    async def _fetch_round(self, generation):
        raw, listing_error = await self.gateway.list_batches()
        candidates = None if listing_error else normalize_batch_ids(raw)
        closed = {} if listing_error else closed_batch_statuses(raw)
        now = self.clock()
        if candidates is None:
            targets = self.selector.held_ids()
        else:
            targets = [bid for bid in self.selector.preview(candidates, now) if bid not in closed]
        results = await asyncio.gather(*(self.gateway.fetch_batch(bid) for bid in targets))
        outcomes = {}
        for bid, (feed, err) in zip(targets, results):
            outcomes[bid] = Failed(err) if err else feed
        return TickRound(generation, candidates, listing_error, outcomes, closed)

    def apply(self, tick):
        """Fold a fetched round into selector and detector state; returns events."""
        if tick.generation != self.generation:
            logger.debug('dropping result of generation %s', tick.generation)
            return []
        now = self.clock()
        self.ticks += 1
        events = []
        self.detector.observe_candidates(tick.candidates, now)
        for bid in self.selector.held_ids():
            status = tick.closed.get(bid)
            if status is None:
                continue
            # The listing itself says this held batch is done.
            _, batch_events = self.detector.observe(bid, Done('status:' + status), now)
            events.extend(batch_events)
            self.selector.release(bid, now)
            self.detector.forget(bid)
        if tick.candidates is not None:
            selected = self.selector.select(tick.candidates, now)
        else:
            logger.debug('listing failed (%s), keeping %s', tick.listing_error, self.selector.held_ids())
            selected = self.selector.held_ids()
        for bid in selected:
            if bid not in tick.outcomes:
                continue
            outcome = tick.outcomes[bid]
            if not isinstance(outcome, Failed):
                outcome = classify_feed(outcome, reduce_items)
            verdict, batch_events = self.detector.observe(
                bid, outcome, now, sticky_elapsed=self.selector.sticky_elapsed(bid, now))
            events.extend(batch_events)
            if verdict == Verdict.COMPLETED:
                self.selector.release(bid, now)
                self.detector.forget(bid)
            elif verdict == Verdict.RESELECT:
                self.selector.abandon(bid)
        events.extend(self.detector.settle(self.selector.held_ids(), now))
        changed = self._changed()
        if events or changed:
            self.burst(now)
        return events

    def _changed(self):
        sig = tuple(
            (m.batch_id, m.picklist_id, m.current_item.location if m.current_item else None,
             m.current_item.sku if m.current_item else None,
             m.current_item.qty_picked if m.current_item else None, m.total_remaining)
            for m in self.models()
        )
        changed = self._signature is not None and sig != self._signature
        self._signature = sig
        return changed

    async def tick(self):
        self.generation += 1
        generation = self.generation
        self._inflight = asyncio.ensure_future(self._fetch_round(generation))
        try:
            tick = await self._inflight
        finally:
            self._inflight = None
        try:
            events = self.apply(tick)
            self.error = None
        except Exception as exc:
            logger.exception('reconcile failed')
            self.error = str(exc) or exc.__class__.__name__
            events = []
        for event in events:
            await self._publish(event.to_dict())
        state = self.snapshot()
        visible = {k: v for k, v in state.items() if k not in ('mode', 'generation')}
        if visible != self._last_state:
            self._last_state = visible
            await self._publish(state)
        return events

    # -- loop ------------------------------------------------------------

    async def run(self):
        logger.info('poll loop started (base %sms, burst %sms)', self.policy.base_poll_ms, self.policy.burst_poll_ms)
        while not self._stopped:
            try:
                await self.tick()
            except asyncio.CancelledError:
                if self._superseded and not self._stopped:
                    self._superseded = False
                    continue
                raise
            try:
                await asyncio.wait_for(self._wake.wait(), self.next_delay_ms() / 1000)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    def start(self):
        if self._task is None or self._task.done():
            self._stopped = False
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self):
        self._stopped = True
        self.generation += 1
        if self._inflight is not None:
            self._inflight.cancel()
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info('poll loop stopped')
