"""Read-through metadata cache for link previews.

PreviewProvider takes batches of history/bookmark links, looks them up in the
metadata store by cache key, fetches only the misses from the configured
metadata service, merges service data with the local tippy-top table and
persists the result with an expiry. Enhanced links are returned in the order
the (filtered, de-duplicated) links were given.

Merge layers, lowest priority first:

1. the caller's link
2. tippy-top fields (favicon_url / background_color / source tag)
3. the stored or freshly fetched metadata record
4. the caller's freshness fields (visit/bookmark dates, frecency, ...)

``FALLBACK_OVERRIDE_FIELDS`` is the one exception: for hosts in the tippy-top
table those fields keep the table's values even when the service sent its own.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.keys import (
    K_BACKGROUND_COLOR,
    K_BOOKMARK_DATE_CREATED,
    K_CACHE_KEY,
    K_EXPIRED_AT,
    K_FAVICON,
    K_FAVICON_URL,
    K_FRECENCY,
    K_LAST_VISIT_DATE,
    K_METADATA_SOURCE,
    K_PLACES_URL,
    K_SANITIZED_URL,
    K_TYPE,
    K_URL,
    K_VISIT_COUNT,
)
from .metadata_client import MetadataClient
from .metadata_store import Clock, MetadataStore, now_ms
from .preview_config import PreviewConfig
from .tippytop import TippyTopProvider
from .url_utils import build_url_filter, derive_cache_key, filter_links, process_links, sanitize_url, unique_links

logger = logging.getLogger(__name__)

# Always taken from the live link, never from the cache
LIVE_FIELDS: Tuple[str, ...] = (
    K_LAST_VISIT_DATE,
    K_BOOKMARK_DATE_CREATED,
    K_FRECENCY,
    K_FAVICON,
    K_TYPE,
    K_VISIT_COUNT,
)
IDENTITY_FIELDS: Tuple[str, ...] = (K_URL, K_PLACES_URL)
FALLBACK_OVERRIDE_FIELDS: Tuple[str, ...] = (K_FAVICON_URL, K_BACKGROUND_COLOR)

EVENT_CACHE_REQUEST = "previewCacheRequest"
EVENT_CACHE_HITS = "previewCacheHits"
EVENT_CACHE_FETCH = "previewCacheFetch"

EventHook = Callable[[str, int], None]


def _non_empty(value: Any) -> bool:
    return value is not None and value != ""


def merge_layers(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Shallow-merge mappings; later layers win."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return merged


class PreviewProvider:
    """Resolve, cache and merge link preview metadata."""

    def __init__(
        self,
        store: MetadataStore,
        config: Optional[PreviewConfig] = None,
        *,
        experiments: Optional[Mapping[str, Any]] = None,
        client: Optional[MetadataClient] = None,
        tippytop: Optional[TippyTopProvider] = None,
        url_filter: Optional[Callable[[Any], bool]] = None,
        event_hook: Optional[EventHook] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.config = (config or PreviewConfig()).with_experiments(experiments)
        self._store = store
        self._client = client or MetadataClient(self.config)
        self._tippytop = tippytop or TippyTopProvider(path=self.config.tippytop_path)
        self._url_filter = url_filter or build_url_filter()
        self._event_hook = event_hook
        self._clock: Clock = clock or now_ms
        # cache_key -> future resolved once the owning invocation has fetched and stored it
        self._in_flight: Dict[str, asyncio.Future] = {}
        # audit of the most recently finished call
        self.last_audit: Dict[str, Any] = {}

    @property
    def enabled(self) -> bool:
        return self.config.previews_enabled

    @property
    def tippytop(self) -> TippyTopProvider:
        return self._tippytop

    def get_metadata_endpoint(self) -> str:
        return self._client.get_metadata_endpoint()

    def get_metadata_source_name(self) -> str:
        return self._client.get_metadata_source_name()

    def process_links(self, links: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Add sanitized url, cache key and places url to each link (no filtering or de-dupe)."""
        return process_links(links, self.config.allowed_query_params)

    def _prepare_links(self, links: Iterable[Any]) -> List[Dict[str, Any]]:
        accepted = filter_links(links, self._url_filter)
        return self.process_links(unique_links(accepted, self.config.allowed_query_params))

    async def async_link_exists(self, url: str) -> bool:
        try:
            key = derive_cache_key(sanitize_url(url, self.config.allowed_query_params))
        except (ValueError, TypeError):
            return False
        return await self._store.async_exists(key)

    def _build_record(self, link: Mapping[str, Any], data: Mapping[str, Any], source: str) -> Dict[str, Any]:
        record = {k: v for k, v in link.items() if k not in LIVE_FIELDS}
        record.update(data)
        record[K_URL] = link[K_URL]
        record[K_SANITIZED_URL] = link[K_SANITIZED_URL]
        record[K_CACHE_KEY] = link[K_CACHE_KEY]
        record[K_METADATA_SOURCE] = source
        record[K_EXPIRED_AT] = self._clock() + self.config.cache_ttl_ms
        return record

    def _merge_fallback(self, merged: Dict[str, Any], link: Mapping[str, Any]) -> Dict[str, Any]:
        fallback = self._tippytop.resolve(link)
        prefer = self.config.prefer_fallback_icons and self._tippytop.has_site(link)
        for field_name in FALLBACK_OVERRIDE_FIELDS:
            value = fallback.get(field_name)
            if not _non_empty(value):
                continue
            if prefer or not _non_empty(merged.get(field_name)):
                merged[field_name] = value
        return merged

    def _enhance(self, link: Mapping[str, Any], record: Mapping[str, Any]) -> Dict[str, Any]:
        live = {k: link[k] for k in LIVE_FIELDS + IDENTITY_FIELDS if k in link}
        merged = merge_layers(link, self._tippytop.resolve(link), record, live)
        return self._merge_fallback(merged, link)

    def _emit(self, event: str, value: int) -> None:
        if self._event_hook is None:
            return
        try:
            self._event_hook(event, value)
        except Exception:
            logger.warning("Preview event hook failed for %s", event, exc_info=True)

    async def async_insert_metadata(
        self,
        links: Iterable[Mapping[str, Any]],
        metadata_source: str,
    ) -> List[Dict[str, Any]]:
        """Store already-resolved metadata for links under their cache keys."""
        records = [self._build_record(link, {}, metadata_source) for link in self.process_links(links)]
        if records:
            await self._store.async_insert(records)
        return records

    async def _fetch_and_cache(self, links: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        by_url = {link[K_SANITIZED_URL]: link for link in links}
        fetched = await self._client.fetch_batch(list(by_url))
        source = self._client.get_metadata_source_name()
        records: List[Dict[str, Any]] = []
        for url, data in fetched.items():
            link = by_url.get(url)
            if link is None:
                continue
            records.append(self._merge_fallback(self._build_record(link, data, source), link))
        if records:
            await self._store.async_insert(records)
        return records

    async def _lookup(self, keys: List[str]) -> Dict[str, Dict[str, Any]]:
        records = await self._store.async_get_by_cache_keys(keys) if keys else []
        return {record[K_CACHE_KEY]: record for record in records if record.get(K_CACHE_KEY)}

    def _claim(self, keys: List[str]) -> Tuple[Dict[str, asyncio.Future], List[str]]:
        """Split keys into (futures owned by other calls, keys this call now owns)."""
        loop = asyncio.get_running_loop()
        waiting: Dict[str, asyncio.Future] = {}
        owned: List[str] = []
        for key in keys:
            if key in self._in_flight:
                waiting[key] = self._in_flight[key]
            else:
                self._in_flight[key] = loop.create_future()
                owned.append(key)
        return waiting, owned

    def _release(self, owned: List[str], failure: Optional[Exception]) -> None:
        # Waiters receive the owner's failure as the future's result and re-raise it.
        for key in owned:
            future = self._in_flight.pop(key, None)
            if future is not None and not future.done():
                future.set_result(failure)

    async def _resolve(
        self,
        prepared: List[Dict[str, Any]],
        *,
        fetch: bool,
    ) -> Tuple[Dict[str, Dict[str, Any]], List[Dict[str, Any]]]:
        """Return (records by cache key, newly inserted records) for prepared links.

        With ``fetch`` set, keys are claimed in the in-flight registry before the
        first store read, so a key is looked up and fetched by one call at a time.
        Keys claimed by another call are awaited and then re-read from the store;
        if that call failed, its error is raised here too.
        """
        start = time.perf_counter()
        audit: Dict[str, Any] = {
            "requested": len(prepared),
            "cache_hits": 0,
            "in_flight": 0,
            "fetched": 0,
            "inserted": 0,
        }
        keys = [link[K_CACHE_KEY] for link in prepared]
        waiting: Dict[str, asyncio.Future] = {}
        owned = keys
        if fetch:
            waiting, owned = self._claim(keys)
        inserted: List[Dict[str, Any]] = []
        failure: Optional[Exception] = None
        try:
            by_key = await self._lookup(owned)
            audit["cache_hits"] = len(by_key)
            if fetch:
                self._emit(EVENT_CACHE_REQUEST, len(prepared))
                self._emit(EVENT_CACHE_HITS, audit["cache_hits"])
                owned_keys = set(owned)
                misses = [
                    link for link in prepared
                    if link[K_CACHE_KEY] in owned_keys and link[K_CACHE_KEY] not in by_key
                ]
                audit["in_flight"] = len(waiting)
                audit["fetched"] = len(misses)
                if misses:
                    self._emit(EVENT_CACHE_FETCH, len(misses))
                    inserted = await self._fetch_and_cache(misses)
                    by_key.update((record[K_CACHE_KEY], record) for record in inserted)
        except Exception as exc:
            failure = exc
            raise
        finally:
            if fetch:
                self._release(owned, failure)

        if waiting:
            for outcome in await asyncio.gather(*waiting.values()):
                if outcome is not None:
                    raise outcome
            by_key.update(await self._lookup(list(waiting)))

        audit["inserted"] = len(inserted)
        audit["duration_ms"] = int((time.perf_counter() - start) * 1000)
        self.last_audit = audit
        if fetch:
            logger.debug("Preview cache run: %s", audit)
        return by_key, inserted

    async def async_save_links(self, links: Iterable[Any]) -> List[Dict[str, Any]]:
        """Fetch and store metadata for every link the store does not already hold.

        Returns the records written by this call. Links another in-progress
        call is already fetching are waited on rather than requested again.
        Raises RemoteFetchError when the service request fails.
        """
        if not self.enabled:
            return []
        _, inserted = await self._resolve(self._prepare_links(links), fetch=True)
        return inserted

    async def async_get_enhanced_links(
        self,
        links: Iterable[Any],
        previews_only: bool = False,
    ) -> List[Dict[str, Any]]:
        """Merge stored metadata into links without contacting the service.

        Links with no stored record carry tippy-top data only, or are left out
        when ``previews_only`` is set. With previews disabled the input comes
        back unchanged.
        """
        if not self.enabled:
            return list(links)
        prepared = self._prepare_links(links)
        by_key, _ = await self._resolve(prepared, fetch=False)
        return self._assemble(prepared, by_key, previews_only=previews_only)

    async def async_enhance_links(self, links: Iterable[Any]) -> List[Dict[str, Any]]:
        """Full read-through pipeline: look up, fetch misses, store, merge."""
        if not self.enabled:
            return list(links)
        prepared = self._prepare_links(links)
        by_key, _ = await self._resolve(prepared, fetch=True)
        return self._assemble(prepared, by_key)

    def _assemble(
        self,
        prepared: List[Dict[str, Any]],
        by_key: Mapping[str, Mapping[str, Any]],
        *,
        previews_only: bool = False,
    ) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for link in prepared:
            record = by_key.get(link[K_CACHE_KEY])
            if record is None:
                if not previews_only:
                    results.append(self._tippytop.process_site(link))
                continue
            results.append(self._enhance(link, record))
        return results
