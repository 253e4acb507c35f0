from nextpick.config import Policy
from nextpick.detector import CompletionDetector, Verdict
from nextpick.errors import FetchTimeout
from nextpick.logic import reduce_items
from nextpick.models import CanonicalItem, Done, EventKind, Failed, Ok, Pending, Phase


POLICY = Policy(done_confirm=2, no_id_streak_max=3, error_tolerance=2, grace_ms=1000)


def _ok(batch_id, *lines, picklist_id='P1', open_picklists=1):
    items = [CanonicalItem(loc, f'SKU-{loc}', loc, ordered, picked) for loc, ordered, picked in lines]
    return Ok(reduce_items(items, batch_id=batch_id, picklist_id=picklist_id), open_picklists=open_picklists)


def _kinds(events):
    return [e.kind for e in events]


def _tick(det, batch_id, outcome, now, held=None, candidates=None):
    det.observe_candidates([batch_id] if candidates is None else candidates, now)
    verdict, events = det.observe(batch_id, outcome, now)
    if verdict == Verdict.COMPLETED:
        det.forget(batch_id)
        held = []
    events = events + det.settle([batch_id] if held is None else held, now)
    return verdict, events


def test_active_on_first_real_data():
    det = CompletionDetector(POLICY)
    assert det.phase == Phase.LOADING
    verdict, events = _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    assert verdict == Verdict.ACTIVE
    assert _kinds(events) == [EventKind.ACTIVATED]
    assert det.phase == Phase.ACTIVE


def test_single_empty_poll_does_not_complete():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    verdict, events = _tick(det, 'B1', Pending(), now=10)
    assert verdict == Verdict.PENDING
    assert events == []
    assert det.phase == Phase.ACTIVE


def test_two_empty_polls_complete_once():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    _tick(det, 'B1', Pending(), now=10)
    verdict, events = _tick(det, 'B1', Pending(), now=20)
    assert verdict == Verdict.COMPLETED
    assert _kinds(events) == [EventKind.BATCH_COMPLETED, EventKind.BECAME_EMPTY]
    assert det.phase == Phase.EMPTY


def test_real_data_resets_done_streak():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    _tick(det, 'B1', Pending(), now=10)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=20)
    verdict, events = _tick(det, 'B1', Pending(), now=30)
    assert verdict == Verdict.PENDING
    assert events == []


def test_completion_not_refired_without_new_active_period():
    det = CompletionDetector(POLICY)
    det.observe('B1', _ok('B1', ('A1', 1, 0)), now=0)
    det.observe('B1', Pending(), now=10)
    _, events = det.observe('B1', Pending(), now=20)
    assert _kinds(events) == [EventKind.BATCH_COMPLETED]
    for now in (30, 40, 50, 60):
        _, events = det.observe('B1', Pending(), now=now)
        assert events == []
    det.observe('B1', _ok('B1', ('A1', 1, 0)), now=70)
    det.observe('B1', Pending(), now=80)
    _, events = det.observe('B1', Done(), now=90)
    assert _kinds(events) == [EventKind.BATCH_COMPLETED]


def test_explicit_done_completes_immediately():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    verdict, events = _tick(det, 'B1', Done('status:completed'), now=10)
    assert verdict == Verdict.COMPLETED
    assert EventKind.BATCH_COMPLETED in _kinds(events)


def test_never_active_batch_completes_silently():
    det = CompletionDetector(POLICY)
    det.observe('B1', Pending(), now=0)
    verdict, events = det.observe('B1', Pending(), now=10)
    assert verdict == Verdict.COMPLETED
    assert events == []


def test_picklist_completed_while_batch_open():
    det = CompletionDetector(POLICY)
    det.observe('B1', _ok('B1', ('A1', 1, 0), open_picklists=2), now=0)
    verdict, events = det.observe('B1', _ok('B1', ('A1', 1, 1), open_picklists=2), now=10)
    assert verdict == Verdict.PENDING
    assert _kinds(events) == [EventKind.PICKLIST_COMPLETED]
    assert events[0].picklist_id == 'P1'
    _, events = det.observe('B1', _ok('B1', ('A1', 1, 1), open_picklists=2), now=20)
    assert events == []
    _, events = det.observe('B1', _ok('B1', ('B1', 2, 0), picklist_id='P2'), now=30)
    assert events == []


def test_picklist_completed_on_picklist_switch():
    det = CompletionDetector(POLICY)
    det.observe('B1', _ok('B1', ('A1', 1, 0)), now=0)
    verdict, events = det.observe('B1', _ok('B1', ('C1', 1, 0), picklist_id='P2'), now=10)
    assert verdict == Verdict.ACTIVE
    assert _kinds(events) == [EventKind.PICKLIST_COMPLETED]
    assert events[0].picklist_id == 'P1'


def test_errors_keep_last_good_then_reselect():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    err = Failed(FetchTimeout('GET /x', 100))
    assert _tick(det, 'B1', err, now=10)[0] == Verdict.ERROR
    assert _tick(det, 'B1', err, now=20)[0] == Verdict.ERROR
    assert det.phase == Phase.ACTIVE
    assert det.models(['B1'], now=20)[0].current_item.location == 'A1'
    verdict, _ = det.observe('B1', err, now=30, sticky_elapsed=True)
    assert verdict == Verdict.RESELECT


def test_error_streak_waits_for_sticky_window():
    det = CompletionDetector(POLICY)
    err = Failed(FetchTimeout('GET /x', 100))
    for now in (0, 10, 20, 30):
        verdict, _ = det.observe('B1', err, now=now, sticky_elapsed=False)
        assert verdict == Verdict.ERROR


def test_grace_expiry_goes_empty():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    err = Failed(FetchTimeout('GET /x', 100))
    _, events = _tick(det, 'B1', err, now=900)
    assert det.phase == Phase.ACTIVE
    _, events = _tick(det, 'B1', err, now=1100)
    assert det.phase == Phase.EMPTY
    assert _kinds(events) == [EventKind.BECAME_EMPTY]
    assert det.models(['B1'], now=1100) == []


def test_empty_listing_needs_streak():
    det = CompletionDetector(POLICY)
    det.observe_candidates([], now=0)
    det.settle([], now=0)
    det.observe_candidates([], now=10)
    det.settle([], now=10)
    assert det.phase == Phase.LOADING
    det.observe_candidates([], now=20)
    events = det.settle([], now=20)
    assert det.phase == Phase.EMPTY
    assert _kinds(events) == [EventKind.BECAME_EMPTY]
    det.observe_candidates([], now=30)
    assert det.settle([], now=30) == []


def test_failed_listing_does_not_count_as_empty():
    det = CompletionDetector(POLICY)
    for now in (0, 10, 20, 30):
        det.observe_candidates(None, now)
    assert det.no_id_streak == 0
    assert det.listing_error_streak == 4


def test_recovery_from_empty_needs_no_streak():
    det = CompletionDetector(POLICY)
    for now in (0, 10, 20):
        det.observe_candidates([], now)
        det.settle([], now)
    assert det.phase == Phase.EMPTY
    _, events = _tick(det, 'B2', _ok('B2', ('A1', 1, 0)), now=30)
    assert det.phase == Phase.ACTIVE
    assert _kinds(events) == [EventKind.ACTIVATED]


def test_persistent_listing_failure_goes_empty():
    det = CompletionDetector(POLICY)
    for now in (0, 10):
        det.observe_candidates(None, now)
        assert det.settle([], now) == []
    assert det.phase == Phase.LOADING
    det.observe_candidates(None, 20)
    events = det.settle([], 20)
    assert det.phase == Phase.EMPTY
    assert _kinds(events) == [EventKind.BECAME_EMPTY]


def test_listing_failure_keeps_held_batch_on_screen():
    det = CompletionDetector(POLICY)
    _tick(det, 'B1', _ok('B1', ('A1', 1, 0)), now=0)
    for now in (10, 20, 30, 40):
        det.observe_candidates(None, now)
        det.observe('B1', _ok('B1', ('A1', 1, 0)), now)
        assert det.settle(['B1'], now) == []
    assert det.phase == Phase.ACTIVE
