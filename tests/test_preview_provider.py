import asyncio
from collections import Counter

import pytest
from aiohttp import test_utils, web

from previews import __version__
from previews.workflows.metadata_client import RemoteFetchError
from previews.workflows.metadata_store import InMemoryMetadataStore
from previews.workflows.preview_config import PreviewConfig
from previews.workflows.preview_provider import PreviewProvider

EMBEDLY_PATH = "/embedlyLinkData"
METADATA_PATH = "/metadataServiceLinkData"


class _Service:
    """Fake metadata endpoints: records every requested url and answers from ``responses``."""

    def __init__(self, responses=None, status=200, delay=0.0):
        self.responses = responses or {}
        self.status = status
        self.delay = delay
        self.requested = Counter()
        self.paths = []
        self.queries = []

    async def handle(self, request):
        body = await request.json()
        self.paths.append(request.path)
        self.queries.append(request.query_string)
        self.requested.update(body["urls"])
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status != 200:
            return web.Response(status=self.status, text="error")
        if callable(self.responses):
            return web.json_response({"urls": self.responses(body["urls"])})
        return web.json_response({"urls": self.responses})


def _run(service, scenario, *, config_kwargs=None, store=None, **provider_kwargs):
    """Start the fake service, build a provider pointed at it and run ``scenario(provider, store)``."""

    store = store if store is not None else InMemoryMetadataStore()

    async def run():
        app = web.Application()
        app.router.add_post(EMBEDLY_PATH, service.handle)
        app.router.add_post(METADATA_PATH, service.handle)
        async with test_utils.TestServer(app) as server:
            prefs = {
                "metadataSource": "Embedly",
                "embedly.endpoint": str(server.make_url(EMBEDLY_PATH)),
                "metadata.endpoint": str(server.make_url(METADATA_PATH)),
                "previews.enabled": True,
            }
            config = PreviewConfig.from_prefs(prefs, **(config_kwargs or {}))
            provider = PreviewProvider(store, config, **provider_kwargs)
            return await scenario(provider, store)

    return asyncio.run(run())


def _echo(urls):
    return {url: {"description": f"about {url}"} for url in urls}


def test_only_request_links_once_across_concurrent_batches() -> None:
    service = _Service(_echo, delay=0.05)
    batch1 = [{"url": "http://a.com/"}, {"url": "http://b.com/"}, {"url": "http://c.com/"}]
    batch2 = [{"url": "http://b.com/"}, {"url": "http://c.com/"}, {"url": "http://d.com/"}]

    async def scenario(provider, store):
        first = asyncio.create_task(provider.async_save_links(batch1))
        await provider.async_save_links(batch2)
        await first

    _run(service, scenario)
    assert set(service.requested) == {"http://a.com/", "http://b.com/", "http://c.com/", "http://d.com/"}
    assert all(count == 1 for count in service.requested.values())


def test_only_request_links_once_across_sequential_batches() -> None:
    service = _Service(_echo)
    batch1 = [{"url": "http://a.com/"}, {"url": "http://b.com/"}, {"url": "http://c.com/"}]
    batch2 = [{"url": "http://b.com/"}, {"url": "http://c.com/"}, {"url": "http://d.com/"}]

    async def scenario(provider, store):
        await provider.async_enhance_links(batch1)
        return await provider.async_enhance_links(batch2)

    enhanced = _run(service, scenario)
    assert all(count == 1 for count in service.requested.values())
    assert len(service.requested) == 4
    assert [link["url"] for link in enhanced] == ["http://b.com/", "http://c.com/", "http://d.com/"]
    assert enhanced[2]["description"] == "about http://d.com/"


def test_second_identical_batch_makes_no_requests() -> None:
    service = _Service(_echo)
    batch = [{"url": "http://a.com/"}, {"url": "http://b.com/"}]

    async def scenario(provider, store):
        await provider.async_enhance_links(batch)
        calls = len(service.paths)
        await provider.async_enhance_links(batch)
        return calls, len(service.paths), provider.last_audit

    first_calls, total_calls, audit = _run(service, scenario)
    assert first_calls == 1
    assert total_calls == 1
    assert audit["cache_hits"] == 2
    assert audit["fetched"] == 0


def test_throw_out_non_requested_responses() -> None:
    service = _Service({
        "http://example1.com/": {"embedlyMetaData": "some good embedly metadata for fake site 1"},
        "http://example2.com/": {"embedlyMetaData": "some good embedly metadata for fake site 2"},
        "http://example3.com/": {"embedlyMetaData": "oh no I didn't request this!"},
    })
    batch = [{"url": "http://example1.com/"}, {"url": "http://example2.com/"}, {"url": "http://example4.com/"}]

    async def scenario(provider, store):
        return await provider.async_save_links(batch)

    store = InMemoryMetadataStore()
    inserted = _run(service, scenario, store=store)
    stored = store.records()
    assert [r["url"] for r in stored] == ["http://example1.com/", "http://example2.com/"]
    assert len(inserted) == 2
    assert all(r["url"] not in {"http://example3.com/", "http://example4.com/"} for r in stored)


def test_embedly_request_is_cached_and_live_fields_win() -> None:
    fake_site = {
        "url": "http://example.com/",
        "title": None,
        "lastVisitDate": 1459537019061,
        "frecency": 2000,
        "favicon": None,
        "bookmarkDateCreated": 1459537019061,
        "type": "history",
    }
    service = _Service({"http://example.com/": {"embedlyMetaData": "some embedly metadata"}})

    async def scenario(provider, store):
        await provider.async_save_links([fake_site])
        later_visit = {**fake_site, "lastVisitDate": 1500000000000}
        return await provider.async_get_enhanced_links([later_visit])

    store = InMemoryMetadataStore()
    cached = _run(service, scenario, store=store)
    (record,) = store.records()
    assert service.queries == [f"addon_version={__version__}"]
    assert record["embedlyMetaData"] == "some embedly metadata"
    assert record["expired_at"]
    assert record["metadata_source"] == "Embedly"
    assert "lastVisitDate" not in record
    assert cached[0]["lastVisitDate"] == 1500000000000
    assert cached[0]["bookmarkDateCreated"] == fake_site["bookmarkDateCreated"]
    assert cached[0]["cache_key"] == record["cache_key"] == "example.com/"
    assert cached[0]["embedlyMetaData"] == "some embedly metadata"
    assert len(service.paths) == 1


def test_live_fields_beat_stored_values() -> None:
    store = InMemoryMetadataStore()

    async def scenario(provider, store):
        await store.async_insert([{
            "cache_key": "example.com/",
            "url": "http://example.com/",
            "title": "Stored title",
            "lastVisitDate": 1000,
            "metadata_source": "Embedly",
        }])
        return await provider.async_get_enhanced_links([
            {"url": "http://example.com/", "title": None, "lastVisitDate": 9999},
        ])

    (link,) = _run(_Service(), scenario, store=store)
    assert link["lastVisitDate"] == 9999
    assert link["title"] == "Stored title"


def test_metadata_source_before_and_after_fetch() -> None:
    fake_site = {"url": "http://www.amazon.com/", "title": None}
    service = _Service({"http://www.amazon.com/": {"embedlyMetaData": "some embedly metadata"}})

    async def scenario(provider, store):
        before = await provider.async_get_enhanced_links([fake_site])
        await provider.async_save_links([fake_site])
        after = await provider.async_get_enhanced_links([fake_site])
        return before, after

    store = InMemoryMetadataStore()
    before, after = _run(service, scenario, store=store)
    assert before[0]["metadata_source"] == "TippyTopProvider"
    assert store.records()[0]["metadata_source"] == "Embedly"
    assert after[0]["metadata_source"] == "Embedly"


def test_prefer_tippytop_favicons() -> None:
    fake_site = {"url": "http://www.youtube.com/", "title": None}
    service = _Service({
        "http://www.youtube.com/": {
            "embedlyMetaData": "some embedly metadata",
            "favicon_url": "https://badicon.com",
            "background_color": "#BADCOLR",
        }
    })

    async def scenario(provider, store):
        tippytop_link = provider.tippytop.process_site(fake_site)
        before = await provider.async_get_enhanced_links([fake_site])
        after = await provider.async_enhance_links([fake_site])
        return tippytop_link, before, after

    tippytop_link, before, after = _run(service, scenario)
    assert before[0]["favicon_url"] == tippytop_link["favicon_url"]
    assert before[0]["background_color"] == tippytop_link["background_color"]
    assert after[0]["favicon_url"] == tippytop_link["favicon_url"]
    assert after[0]["background_color"] == tippytop_link["background_color"]
    assert after[0]["embedlyMetaData"] == "some embedly metadata"


def test_service_icons_win_when_fallback_preference_disabled() -> None:
    fake_site = {"url": "http://www.youtube.com/"}
    service = _Service({
        "http://www.youtube.com/": {"favicon_url": "https://service.icon/yt.png", "background_color": ""},
    })

    async def scenario(provider, store):
        return await provider.async_enhance_links([fake_site])

    (link,) = _run(service, scenario, config_kwargs={"prefer_fallback_icons": False})
    assert link["favicon_url"] == "https://service.icon/yt.png"
    # empty service value is filled from the table
    assert link["background_color"] == "#DB4338"


def test_service_icons_kept_for_sites_outside_table() -> None:
    fake_site = {"url": "http://example.com/"}
    service = _Service({"http://example.com/": {"favicon_url": "https://example.com/icon.png"}})

    async def scenario(provider, store):
        return await provider.async_enhance_links([fake_site])

    (link,) = _run(service, scenario)
    assert link["favicon_url"] == "https://example.com/icon.png"
    assert "background_color" not in link


def test_disabled_returns_links_unchanged() -> None:
    fake_data = [{"url": "http://foo.com/", "lastVisitDate": 1459537019061}, {"url": "ftp://nope/"}]
    service = _Service(_echo)

    async def scenario(provider, store):
        enhanced = await provider.async_enhance_links(fake_data)
        cached = await provider.async_get_enhanced_links(fake_data)
        saved = await provider.async_save_links(fake_data)
        return enhanced, cached, saved

    store = InMemoryMetadataStore()
    enhanced, cached, saved = _run(service, scenario, store=store, config_kwargs={"previews_enabled": False})
    assert enhanced == fake_data
    assert cached == fake_data
    assert saved == []
    assert len(store) == 0
    assert service.paths == []


def test_change_metadata_endpoint() -> None:
    fake_site = {"url": "http://foo.com/", "title": None, "lastVisitDate": 1459537019061}
    service = _Service({"http://foo.com/": {"metaData": "some metadata found by MetadataService"}})

    async def scenario(provider, store):
        await provider.async_save_links([fake_site])
        return provider.get_metadata_endpoint(), provider.get_metadata_source_name()

    store = InMemoryMetadataStore()
    endpoint, source = _run(service, scenario, store=store, config_kwargs={"metadata_source": "MetadataService"})
    assert endpoint.endswith(f"{METADATA_PATH}?addon_version={__version__}")
    assert source == "MetadataService"
    assert service.paths == [METADATA_PATH]
    (record,) = store.records()
    assert record["metaData"] == "some metadata found by MetadataService"
    assert record["metadata_source"] == "MetadataService"


def test_metadata_service_experiment() -> None:
    async def scenario(provider, store):
        return provider.get_metadata_source_name()

    assert _run(_Service(), scenario, experiments={"metadataService": True}) == "MetadataService"
    assert _run(_Service(), scenario, experiments={"metadataService": False}) == "Embedly"


def test_remote_failure_propagates_and_releases_in_flight() -> None:
    service = _Service(status=500)

    async def scenario(provider, store):
        with pytest.raises(RemoteFetchError):
            await provider.async_enhance_links([{"url": "http://example.com/"}])
        assert provider._in_flight == {}
        return await provider.async_get_enhanced_links([{"url": "http://example.com/"}])

    store = InMemoryMetadataStore()
    links = _run(service, scenario, store=store)
    assert len(store) == 0
    assert links[0]["metadata_source"] == "TippyTopProvider"


def test_enhance_filters_and_dedupes_in_input_order() -> None:
    service = _Service(_echo)
    batch = [
        {"url": "http://foo.com/#a", "title": "first"},
        {"url": "ftp://foo.com/"},
        {"url": "http://localhost/"},
        {"url": "http://bar.com/"},
        {"url": "https://www.foo.com/", "title": "dupe"},
    ]

    async def scenario(provider, store):
        return await provider.async_enhance_links(batch)

    enhanced = _run(service, scenario)
    assert [link["url"] for link in enhanced] == ["http://foo.com/#a", "http://bar.com/"]
    assert enhanced[0]["sanitized_url"] == "http://foo.com/"
    assert enhanced[0]["places_url"] == "http://foo.com/#a"
    assert set(service.requested) == {"http://foo.com/", "http://bar.com/"}


def test_previews_only_skips_links_without_metadata() -> None:
    service = _Service({"http://a.com/": {"description": "a"}})

    async def scenario(provider, store):
        await provider.async_save_links([{"url": "http://a.com/"}, {"url": "http://b.com/"}])
        return await provider.async_get_enhanced_links(
            [{"url": "http://a.com/"}, {"url": "http://b.com/"}],
            previews_only=True,
        )

    links = _run(service, scenario)
    assert [link["url"] for link in links] == ["http://a.com/"]


def test_insert_metadata_and_link_exists() -> None:
    async def scenario(provider, store):
        missing = await provider.async_link_exists("https://www.dontexist.com")
        records = await provider.async_insert_metadata(
            [{"url": "http://example.com/1", "title": "Title for example.com/1"}],
            "metadata_source",
        )
        await provider.async_insert_metadata([{"url": "https://www.dontexist.com"}], "Embedly")
        present = await provider.async_link_exists("https://www.dontexist.com")
        garbage = await provider.async_link_exists("not a url")
        return missing, records, present, garbage

    missing, records, present, garbage = _run(_Service(), scenario)
    assert missing is False
    assert present is True
    assert garbage is False
    (record,) = records
    assert record["url"] == "http://example.com/1"
    assert record["cache_key"] == "example.com/1"
    assert record["metadata_source"] == "metadata_source"
    assert record["title"] == "Title for example.com/1"


def test_expired_records_are_refetched() -> None:
    class Clock:
        now = 1_000_000

        def __call__(self):
            return self.now

    clock = Clock()
    service = _Service(_echo)

    async def scenario(provider, store):
        await provider.async_save_links([{"url": "http://a.com/"}])
        clock.now += provider.config.cache_ttl_ms + 1
        await provider.async_save_links([{"url": "http://a.com/"}])

    _run(service, scenario, store=InMemoryMetadataStore(clock=clock), clock=clock)
    assert service.requested["http://a.com/"] == 2


def test_event_hook_reports_counts_and_survives_errors() -> None:
    events = []

    def hook(event, value):
        events.append((event, value))
        if event == "previewCacheHits":
            raise RuntimeError("telemetry down")

    service = _Service(_echo)

    async def scenario(provider, store):
        await provider.async_save_links([{"url": "http://a.com/"}, {"url": "http://b.com/"}])
        return provider.last_audit

    audit = _run(service, scenario, event_hook=hook)
    assert events == [("previewCacheRequest", 2), ("previewCacheHits", 0), ("previewCacheFetch", 2)]
    assert audit["requested"] == 2
    assert audit["inserted"] == 2


class _SlowReadStore(InMemoryMetadataStore):
    """Store whose lookups resolve their result, then take ``delay`` seconds to return it."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def async_get_by_cache_keys(self, cache_keys):
        records = await super().async_get_by_cache_keys(cache_keys)
        await asyncio.sleep(self.delay)
        return records


class _StrayRecordStore(InMemoryMetadataStore):
    """Store that also returns a record with no cache key on every lookup."""

    async def async_get_by_cache_keys(self, cache_keys):
        records = await super().async_get_by_cache_keys(cache_keys)
        return records + [{"url": "http://stray.com/"}]


def test_slow_store_lookup_does_not_cause_second_request() -> None:
    service = _Service(_echo)

    async def scenario(provider, store):
        first = asyncio.create_task(provider.async_save_links([{"url": "http://a.com/"}]))
        await asyncio.sleep(0.04)
        second = await provider.async_save_links([{"url": "http://a.com/"}])
        return await first, second

    first, second = _run(service, scenario, store=_SlowReadStore(0.05))
    assert service.requested["http://a.com/"] == 1
    assert [r["url"] for r in first] == ["http://a.com/"]
    assert second == []


def test_owner_failure_reaches_waiting_call() -> None:
    service = _Service(status=500, delay=0.05)

    async def scenario(provider, store):
        owner = asyncio.create_task(provider.async_enhance_links([{"url": "http://a.com/"}]))
        await asyncio.sleep(0.01)
        with pytest.raises(RemoteFetchError):
            await provider.async_enhance_links([{"url": "http://a.com/"}])
        with pytest.raises(RemoteFetchError):
            await owner
        return provider._in_flight

    assert _run(service, scenario) == {}
    assert service.requested["http://a.com/"] == 1


def test_waiting_call_reads_records_fetched_by_owner() -> None:
    service = _Service(_echo, delay=0.05)

    async def scenario(provider, store):
        owner = asyncio.create_task(provider.async_enhance_links([{"url": "http://a.com/"}]))
        await asyncio.sleep(0.01)
        waiter = await provider.async_enhance_links([{"url": "http://a.com/"}])
        return await owner, waiter, provider.last_audit

    owner, waiter, audit = _run(service, scenario, store=_StrayRecordStore())
    assert service.requested["http://a.com/"] == 1
    assert owner[0]["description"] == waiter[0]["description"] == "about http://a.com/"
    assert "duration_ms" in audit


def test_last_audit_holds_finished_call_while_another_runs() -> None:
    service = _Service(_echo, delay=0.05)

    async def scenario(provider, store):
        await provider.async_save_links([{"url": "http://a.com/"}, {"url": "http://b.com/"}])
        running = asyncio.create_task(provider.async_save_links([{"url": "http://c.com/"}]))
        await asyncio.sleep(0.01)
        during = dict(provider.last_audit)
        await running
        return during, provider.last_audit

    during, after = _run(service, scenario)
    assert during["requested"] == 2 and during["inserted"] == 2
    assert after["requested"] == 1 and after["inserted"] == 1
