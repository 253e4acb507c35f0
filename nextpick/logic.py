import re

from .models import DisplayModel

_CHUNK = re.compile(r'(\d+)')


def location_sort_key(location):
    """Natural, case-insensitive key so that 'A2' sorts before 'A10'."""
    parts = []
    for chunk in _CHUNK.split((location or '').strip()):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ''))
        else:
            parts.append((1, 0, chunk.casefold()))
    return parts


def sort_items(items):
    return sorted(items, key=lambda item: location_sort_key(item.location))


def remaining_qty(item):
    return max(0, int(item.qty_ordered) - int(item.qty_picked))


def progress_percent(items):
    # Counts fully picked lines, not quantities.
    if not items:
        return 0
    done = sum(1 for item in items if remaining_qty(item) == 0)
    return int(100 * done / len(items) + 0.5)


def next_locations(sorted_items, current_index):
    if current_index is None:
        return []
    current_loc = sorted_items[current_index].location
    seen = []
    for item in sorted_items[current_index + 1:]:
        loc = item.location
        if remaining_qty(item) <= 0 or not loc or loc == current_loc or loc in seen:
            continue
        seen.append(loc)
    return seen


def reduce_items(items, batch_id=None, picklist_id=None):
    ordered = sort_items(items)
    current_index = next((i for i, item in enumerate(ordered) if remaining_qty(item) > 0), None)
    return DisplayModel(
        batch_id=batch_id,
        current_item=ordered[current_index] if current_index is not None else None,
        progress_percent=progress_percent(ordered),
        next_locations=next_locations(ordered, current_index),
        total_ordered=sum(item.qty_ordered for item in ordered),
        total_remaining=sum(remaining_qty(item) for item in ordered),
        picklist_id=picklist_id,
    )
