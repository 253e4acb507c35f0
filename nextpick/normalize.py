"""Turn heterogeneous upstream payloads into canonical shapes.

Every alias lookup lives here. Consumers only ever see ``CanonicalItem``,
plain batch id strings and the outcome variants from ``models``.
"""
import math
from datetime import datetime

from .models import BatchFeed, CanonicalItem, Done, Ok, Pending

OPEN_BATCH_STATUSES = ('open', 'processing', 'inprogress', 'in_progress', 'in-progress', 'active', 'started', 'new')
OPEN_PICKLIST_STATUSES = ('open', 'new')
DONE_BATCH_STATUSES = ('completed', 'closed', 'done', 'finished', 'cancelled')

# Prioritized aliases per canonical field; first present, non-empty value wins.
ITEM_ALIASES = {
    'location': ('stocklocation', 'stock_location', 'location'),
    'sku': ('productcode', 'sku', 'product_code', 'code'),
    'name': ('name', 'product', 'productname', 'title', 'omschrijving', 'description'),
    'qty_ordered': ('amount', 'amount_to_pick', 'quantity', 'qty'),
    'qty_picked': ('amountpicked', 'amount_picked', 'picked_amount'),
}
BATCH_ID_ALIASES = ('id', 'idpicklist_batch')
PICKLIST_ID_ALIASES = ('idpicklist', 'id')
CREATED_ALIASES = ('created_at', 'created')
IMAGE_ALIASES = (
    'image', 'imageUrl', 'image_url', 'imageURL', 'foto', 'afbeelding',
    'product_image', 'productImage', 'thumbnail', 'thumb', 'thumbUrl', 'thumb_url',
    'productimage', 'product_image_url', 'image_path', 'image_small', 'image_large',
)
IMAGE_NESTED = ('image', 'main_image', 'mainImage', 'primary_image', 'primaryImage')
IMAGE_LISTS = ('images', 'media', 'assets', 'gallery')


def resolve(raw, aliases, default=None, scalar=False):
    """First present, non-empty alias value.

    With ``scalar`` set, nested objects and lists are skipped so text fields
    never end up holding a stringified dict.
    """
    if not isinstance(raw, dict):
        return default
    for key in aliases:
        value = raw.get(key)
        if value is None or value == '':
            continue
        if scalar and isinstance(value, (dict, list, tuple)):
            continue
        return value
    return default


def _as_qty(value):
    try:
        qty = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(qty):
        return 0
    qty = int(qty)
    return max(0, qty)


def _as_id(value):
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        value = int(value)
    text = str(value).strip()
    return text or None


def _extract_list(payload, *keys):
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return None


def _parse_created(raw):
    value = resolve(raw, CREATED_ALIASES)
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00').replace(' ', 'T', 1)).timestamp()
    except ValueError:
        return 0.0


def _id_sort_value(batch_id):
    try:
        return (0, int(batch_id), '')
    except ValueError:
        return (1, 0, batch_id)


def normalize_batch_ids(payload):
    """Open batch ids, oldest first. Unknown shapes yield an empty list."""
    batches = _extract_list(payload, 'data', 'batches')
    if not batches:
        return []
    open_batches = []
    for raw in batches:
        if not isinstance(raw, dict):
            continue
        status = str(raw.get('status') or '').strip().lower()
        if status not in OPEN_BATCH_STATUSES:
            continue
        batch_id = _as_id(resolve(raw, BATCH_ID_ALIASES))
        if batch_id is None:
            continue
        open_batches.append((_parse_created(raw), _id_sort_value(batch_id), batch_id))
    open_batches.sort(key=lambda row: (row[0], row[1]))
    return list(dict.fromkeys(row[2] for row in open_batches))


def closed_batch_statuses(payload):
    """Map of batch id to status for listing entries reported as done."""
    closed = {}
    for raw in _extract_list(payload, 'data', 'batches') or []:
        if not isinstance(raw, dict):
            continue
        status = str(raw.get('status') or '').strip().lower()
        if status not in DONE_BATCH_STATUSES:
            continue
        batch_id = _as_id(resolve(raw, BATCH_ID_ALIASES))
        if batch_id is not None:
            closed.setdefault(batch_id, status)
    return closed


def find_open_picklist(payload):
    """Return (open picklist id, number of open picklists, batch status)."""
    status = ''
    if isinstance(payload, dict):
        status = str(payload.get('status') or '').strip().lower()
    picklists = _extract_list(payload, 'picklists', 'data') or []
    open_ids = []
    for raw in picklists:
        if not isinstance(raw, dict):
            continue
        if str(raw.get('status') or '').strip().lower() not in OPEN_PICKLIST_STATUSES:
            continue
        picklist_id = _as_id(resolve(raw, PICKLIST_ID_ALIASES))
        if picklist_id is not None:
            open_ids.append(picklist_id)
    return (open_ids[0] if open_ids else None), len(open_ids), status


def extract_items(payload):
    """Raw item dicts from a bare array or an envelope; None when absent."""
    return _extract_list(payload, 'products', 'items', 'data')


def extract_image_url(raw):
    if not isinstance(raw, dict):
        return ''
    url = resolve(raw, IMAGE_ALIASES)
    if isinstance(url, dict):
        url = url.get('url') or url.get('src')
    if not url:
        for key in IMAGE_NESTED:
            nested = raw.get(key)
            if isinstance(nested, dict) and (nested.get('url') or nested.get('src')):
                url = nested.get('url') or nested.get('src')
                break
    if not url:
        for key in IMAGE_LISTS:
            entries = raw.get(key)
            if isinstance(entries, list) and entries:
                first = entries[0]
                url = (first.get('url') or first.get('src')) if isinstance(first, dict) else first
                if url:
                    break
    if not url:
        product = raw.get('product')
        if isinstance(product, dict):
            return extract_image_url(product)
        return ''
    url = str(url)
    if url.startswith('//'):
        return 'https:' + url
    if url.startswith('http:'):
        return 'https:' + url[len('http:'):]
    return url


def normalize_item(raw):
    return CanonicalItem(
        location=str(resolve(raw, ITEM_ALIASES['location'], '', scalar=True)).strip(),
        sku=str(resolve(raw, ITEM_ALIASES['sku'], '', scalar=True)).strip(),
        name=str(resolve(raw, ITEM_ALIASES['name'], '', scalar=True)).strip(),
        qty_ordered=_as_qty(resolve(raw, ITEM_ALIASES['qty_ordered'], 0)),
        qty_picked=_as_qty(resolve(raw, ITEM_ALIASES['qty_picked'], 0)),
        image=extract_image_url(raw),
    )


def normalize_items(payload):
    raw_items = extract_items(payload) or []
    return [normalize_item(raw) for raw in raw_items if isinstance(raw, dict)]


def classify_feed(feed, reduce):
    """Map a gateway feed onto the closed outcome set.

    ``reduce`` is the display-model reducer, passed in to keep this module
    free of display concerns.
    """
    if feed.batch_status in DONE_BATCH_STATUSES:
        return Done('status:' + feed.batch_status)
    if feed.picklist_id is None:
        return Pending('no-open-picklist')
    items = normalize_items(feed.items)
    if not items:
        return Pending('empty')
    model = reduce(items, batch_id=feed.batch_id, picklist_id=feed.picklist_id)
    return Ok(model, open_picklists=feed.open_picklists)


def as_feed(batch_id, batch_payload, items_payload=None):
    picklist_id, open_count, status = find_open_picklist(batch_payload)
    return BatchFeed(
        batch_id=batch_id,
        batch_status=status,
        picklist_id=picklist_id,
        open_picklists=open_count,
        items=items_payload if items_payload is not None else [],
    )
