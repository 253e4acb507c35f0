import asyncio
import logging
import threading
import time

import requests
from requests.utils import quote
from requests.adapters import HTTPAdapter

from . import config
from .errors import FetchTimeout, HttpStatusError, NetworkError, ParseError
from .normalize import DONE_BATCH_STATUSES, as_feed, extract_image_url, extract_items

logger = logging.getLogger('nextpick.picqer')

_THREAD_LOCAL = threading.local()
SNIPPET_LEN = 300


def _http():
    session = getattr(_THREAD_LOCAL, 'session', None)
    if session is None:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=10, pool_maxsize=10)
        session.mount('https://', adapter)
        session.mount('http://', adapter)
        _THREAD_LOCAL.session = session
    return session


class TTLCache:
    """Small keyed cache with per-entry expiry, owned by one gateway."""

    def __init__(self, ttl_seconds, max_entries=512, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries = {}

    def get(self, key, default=None):
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires = entry
        if self._clock() >= expires:
            self._entries.pop(key, None)
            return default
        return value

    def __contains__(self, key):
        marker = object()
        return self.get(key, marker) is not marker

    def set(self, key, value):
        self.purge()
        self._entries.pop(key, None)
        while self._entries and len(self._entries) >= self.max_entries:
            # Oldest insertion first.
            self._entries.pop(next(iter(self._entries)))
        self._entries[key] = (value, self._clock() + self.ttl_seconds)

    def evict(self, key):
        self._entries.pop(key, None)

    def purge(self):
        now = self._clock()
        for key in [k for k, (_, exp) in self._entries.items() if now >= exp]:
            self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


async def fetch_with_timeout(call, timeout_ms, label='fetch'):
    """Run a blocking ``call() -> (data, err)`` off the loop with a hard deadline.

    On timeout the worker thread is left to finish on its own; its result is
    discarded.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(call), timeout_ms / 1000)
    except asyncio.TimeoutError:
        return None, FetchTimeout(label, timeout_ms)


class PicqerGateway:
    def __init__(self, base_url=None, api_key=None, timeout_ms=2000, image_ttl=None):
        self.base_url = (config.PICQER_API_URL if base_url is None else base_url).rstrip('/')
        self.api_key = config.PICQER_API_KEY if api_key is None else api_key
        self.timeout_ms = timeout_ms
        self.image_cache = TTLCache(
            config.IMAGE_CACHE_TTL if image_ttl is None else image_ttl, max_entries=config.IMAGE_CACHE_MAX)

    def is_configured(self):
        return bool(self.base_url and self.api_key)

    def _headers(self):
        return {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }

    def _get(self, path, params=None):
        url = f"{self.base_url}{path}"
        timeout = self.timeout_ms / 1000
        try:
            resp = _http().get(url, params=params, headers=self._headers(), auth=(self.api_key, ''), timeout=timeout)
        except requests.Timeout:
            return None, FetchTimeout('GET ' + path, self.timeout_ms)
        except requests.RequestException as exc:
            return None, NetworkError(exc)
        body = resp.text or ''
        if resp.status_code != 200:
            return None, HttpStatusError(resp.status_code, body[:SNIPPET_LEN])
        if not body.strip():
            return None, ParseError('')
        try:
            return resp.json(), None
        except ValueError:
            return None, ParseError(body[:SNIPPET_LEN])

    async def get_json(self, path, params=None):
        data, err = await fetch_with_timeout(lambda: self._get(path, params), self.timeout_ms, 'GET ' + path)
        if err:
            logger.warning('GET %s failed: %s', path, err.describe())
        return data, err

    async def list_batches(self):
        return await self.get_json('/picklists/batches')

    async def fetch_batch(self, batch_id):
        """Batch detail plus the items of its open picklist, as a ``BatchFeed``."""
        detail, err = await self.get_json(f"/picklists/batches/{batch_id}")
        if err:
            return None, err
        feed = as_feed(batch_id, detail)
        if feed.picklist_id is None or feed.batch_status in DONE_BATCH_STATUSES:
            return feed, None
        items, err = await self.fetch_picklist_items(feed.picklist_id)
        if err:
            return None, err
        feed.items = items
        return feed, None

    async def fetch_picklist_items(self, picklist_id):
        data, err = await self.get_json(f"/picklists/{picklist_id}/products/")
        items = extract_items(data) if not err else None
        if items is not None:
            return items, None
        data, err = await self.get_json(f"/picklists/{picklist_id}")
        if err:
            return None, err
        items = extract_items(data)
        if items is None:
            return None, ParseError('picklist without products')
        return items, None

    async def fetch_product(self, code):
        data, err = await self.get_json(f"/products/{quote(str(code), safe='')}")
        if not err and isinstance(data, dict):
            return data, None
        data, err = await self.get_json('/products', params={'productcode': code})
        if err:
            return None, err
        rows = extract_items(data) or []
        return (rows[0] if rows else None), None

    async def product_image_url(self, code):
        if not code:
            return ''
        cached = self.image_cache.get(code)
        if cached is not None:
            return cached
        product, err = await self.fetch_product(code)
        if err:
            return ''
        url = extract_image_url(product)
        self.image_cache.set(code, url)
        return url
