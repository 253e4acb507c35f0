import asyncio

import pytest

from nextpick.models import BatchFeed


def raw_item(loc, ordered, picked, sku=None):
    return {'stocklocation': loc, 'productcode': sku or f'SKU-{loc}', 'name': f'Item {loc}', 'amount': ordered, 'amountpicked': picked}


class FakeGateway:
    """In-memory stand-in for PicqerGateway driven by per-tick frames.

    A frame is ``(batch_ids_or_error, {batch_id: items_or_error})``; the last
    frame repeats once the list is exhausted. A listing entry is either a bare
    id (status open) or an ``(id, status)`` pair.
    """

    def __init__(self, frames, picklist_id='P1'):
        self.frames = list(frames)
        self.picklist_id = picklist_id
        self.frame = None
        self.list_calls = 0
        self.batch_calls = []
        self.hold = None

    async def list_batches(self):
        self.list_calls += 1
        if self.hold is not None:
            await self.hold.wait()
        self.frame = self.frames.pop(0) if len(self.frames) > 1 else self.frames[0]
        listing = self.frame[0]
        if isinstance(listing, Exception):
            return None, listing
        rows = []
        for entry in listing:
            bid, status = entry if isinstance(entry, tuple) else (entry, 'open')
            rows.append({'id': bid, 'status': status})
        return rows, None

    async def fetch_batch(self, batch_id):
        self.batch_calls.append(batch_id)
        items = self.frame[1].get(batch_id, [])
        if isinstance(items, Exception):
            return None, items
        return BatchFeed(batch_id, picklist_id=self.picklist_id, open_picklists=1, items=items), None


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not reached in time')
        await asyncio.sleep(0.005)


@pytest.fixture
def clock():
    return FakeClock()
