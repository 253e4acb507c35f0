import asyncio

from nextpick.config import Policy
from nextpick.models import BatchFeed
from nextpick.poller import PickPoller


class ScriptedGateway:
    """Plays back one listing and one batch feed per tick."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.current = None

    async def list_batches(self):
        self.current = self.frames.pop(0) if self.frames else {'batches': [], 'feeds': {}}
        return [{'id': bid, 'status': 'open'} for bid in self.current['batches']], None

    async def fetch_batch(self, batch_id):
        feed = self.current['feeds'].get(batch_id)
        return BatchFeed(batch_id, picklist_id='P1', open_picklists=1, items=feed or []), None


def _item(loc, amount, picked):
    return {'stocklocation': loc, 'productcode': f'SKU-{loc}', 'name': f'Item at {loc}', 'amount': amount, 'amountpicked': picked}


FRAMES = [
    {'batches': ['101'], 'feeds': {'101': [_item('A10', 1, 0), _item('A2', 2, 0), _item('B1', 1, 0)]}},
    {'batches': ['101'], 'feeds': {'101': [_item('A10', 1, 0), _item('A2', 2, 2), _item('B1', 1, 0)]}},
    {'batches': ['101'], 'feeds': {'101': [_item('A10', 1, 1), _item('A2', 2, 2), _item('B1', 1, 1)]}},
    {'batches': ['101'], 'feeds': {'101': []}},
    {'batches': [], 'feeds': {}},
]


async def main():
    poller = PickPoller(ScriptedGateway(FRAMES), Policy())
    poller.add_listener(print)
    for _ in FRAMES:
        await poller.tick()


if __name__ == '__main__':
    asyncio.run(main())
    print('Replay finished')
