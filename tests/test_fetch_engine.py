"""Tests for the fetch resilience engine."""

import asyncio
import json
from unittest.mock import MagicMock

import httpx
import pytest

from artrelay.core.connectivity import ConnectivityMonitor
from artrelay.core.data_models import AddressingMode, ProxyEndpoint
from artrelay.core.errors import (
    FetchTimeoutError,
    HTTPError,
    OfflineError,
    ParseError,
    ProxyExhaustedError,
    RequestSuperseded,
)
from artrelay.core.http_client import FetchEngine
from artrelay.core.proxy import ProxyPool
from artrelay.core.retry import RetryPolicy
from artrelay.storage.tiered_cache import Partition, ResultSource, TieredCacheManager

API_BASE = "https://collectionapi.metmuseum.org/public/collection/v1"
PRIMARY_HOST = "relay.example"
FALLBACK_HOST = "corsproxy.example"


def make_pool(single: bool = False) -> ProxyPool:
    endpoints = [
        ProxyEndpoint(name="primary", url=f"https://{PRIMARY_HOST}/api/proxy", mode=AddressingMode.QUERY),
        ProxyEndpoint(name="fallback", url=f"https://{FALLBACK_HOST}/?", mode=AddressingMode.PATH),
    ]
    return ProxyPool(endpoints[:1] if single else endpoints)


def make_engine(handler, sleep, single_proxy: bool = False, **kwargs) -> FetchEngine:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FetchEngine(
        client=client,
        pool=make_pool(single_proxy),
        policy=RetryPolicy(max_retries=3, base_delay=1.0, jitter_factor=0.0),
        base_url=API_BASE,
        sleep=sleep,
        rng=lambda: 0.0,
        **kwargs,
    )


def json_response(data, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode(),
        headers={"content-type": "application/json"},
    )


@pytest.fixture
def cache(temp_db) -> TieredCacheManager:
    return TieredCacheManager(db=temp_db)


class TestRetryAndFailover:
    """Tests for the bounded retry loop."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, recording_sleep) -> None:
        """Test that a first-attempt success has no retries and no switch."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return json_response({"departments": [{"departmentId": 1}]})

        engine = make_engine(handler, recording_sleep)

        payload = await engine.fetch("departments")

        assert payload.data == {"departments": [{"departmentId": 1}]}
        assert payload.retries == 0
        assert payload.proxy == "primary"
        assert payload.from_cache is False
        assert recording_sleep.delays == []
        assert len(requests) == 1
        assert requests[0].url.host == PRIMARY_HOST
        assert requests[0].url.params["url"] == f"{API_BASE}/departments"
        assert engine.stats["proxy_switches"] == 0

    @pytest.mark.asyncio
    async def test_exhausts_both_proxies(self, recording_sleep) -> None:
        """Test that 3 attempts per proxy and a single switch precede the error."""
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(500)

        engine = make_engine(handler, recording_sleep)

        with pytest.raises(ProxyExhaustedError) as exc_info:
            await engine.fetch("objects/1")

        assert exc_info.value.attempts == 6
        assert isinstance(exc_info.value.last_error, HTTPError)
        assert hosts == [PRIMARY_HOST] * 3 + [FALLBACK_HOST] * 3
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 1.0, 2.0]
        assert engine.pool.healthy_count() == 0
        assert engine.stats["proxy_switches"] == 1
        assert engine.stats["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_switches_to_fallback(self, recording_sleep) -> None:
        """Test that the fallback serves the request after the primary's budget is spent."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == PRIMARY_HOST:
                raise httpx.ConnectError("connection refused", request=request)
            return json_response({"objectID": 1})

        engine = make_engine(handler, recording_sleep)

        payload = await engine.fetch("objects/1")

        assert payload.proxy == "fallback"
        assert payload.attempts == 4
        assert payload.retries == 3
        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert engine.pool.current.name == "fallback"

    @pytest.mark.asyncio
    async def test_no_switch_when_fallback_unhealthy(self, recording_sleep) -> None:
        """Test that an unhealthy fallback is not switched to."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502)

        engine = make_engine(handler, recording_sleep)
        engine.pool.get("fallback").record_failure()

        with pytest.raises(ProxyExhaustedError) as exc_info:
            await engine.fetch("objects/1")

        assert exc_info.value.attempts == 3
        assert recording_sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovery_on_retry(self, recording_sleep) -> None:
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(503)
            return json_response({"total": 1, "objectIDs": [1]})

        engine = make_engine(handler, recording_sleep)

        payload = await engine.fetch("objects")

        assert payload.retries == 1
        assert payload.proxy == "primary"
        assert recording_sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_forbidden_primary_fails_over(self, recording_sleep) -> None:
        """Test that a relay answering 403 is retried and then abandoned for the fallback."""
        hosts = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            if request.url.host == PRIMARY_HOST:
                return httpx.Response(403, content=b"blocked")
            return json_response({"objectID": 1})

        engine = make_engine(handler, recording_sleep)

        payload = await engine.fetch("objects/1")

        assert payload.data == {"objectID": 1}
        assert payload.proxy == "fallback"
        assert hosts == [PRIMARY_HOST] * 3 + [FALLBACK_HOST]
        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert engine.pool.get("primary").healthy is False

    @pytest.mark.asyncio
    async def test_not_found_is_retried_then_exhausted(self, recording_sleep) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return json_response({"message": "Not a valid object"}, status_code=404)

        engine = make_engine(handler, recording_sleep, single_proxy=True)

        with pytest.raises(ProxyExhaustedError) as exc_info:
            await engine.fetch("objects/999999999")

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error.status == 404

    @pytest.mark.asyncio
    async def test_retry_after_header(self, recording_sleep) -> None:
        """Test that Retry-After on a 429 replaces the computed delay."""
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return json_response({"departments": []})

        engine = make_engine(handler, recording_sleep)

        await engine.fetch("departments")

        assert recording_sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_invalid_json_raises_parse_error(self, recording_sleep) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>relay error</html>")

        engine = make_engine(handler, recording_sleep)

        with pytest.raises(ParseError):
            await engine.fetch("departments")

    @pytest.mark.asyncio
    async def test_attempt_timeout(self, recording_sleep) -> None:
        """Test that a hanging attempt times out and counts as a failure."""

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(5)
            return json_response({})

        engine = make_engine(handler, recording_sleep, single_proxy=True)
        engine.policy = RetryPolicy(max_retries=1, jitter_factor=0.0)

        with pytest.raises(ProxyExhaustedError) as exc_info:
            await engine.fetch("departments", timeout=0.05)

        assert isinstance(exc_info.value.last_error, FetchTimeoutError)
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_empty_resource(self, recording_sleep) -> None:
        engine = make_engine(lambda request: json_response({}), recording_sleep)

        with pytest.raises(ValueError):
            await engine.fetch("  ")

    @pytest.mark.asyncio
    async def test_performance_logger_records_fetch(self, recording_sleep) -> None:
        perf = MagicMock()
        engine = make_engine(
            lambda request: json_response({}), recording_sleep, performance_logger=perf
        )

        await engine.fetch("departments")

        perf.record.assert_called_once()
        operation, _, success = perf.record.call_args.args
        fields = perf.record.call_args.kwargs
        assert operation == "fetch"
        assert success is True
        assert fields["proxy"] == "primary"
        assert fields["attempts"] == 1


class TestOffline:
    """Tests for offline behaviour."""

    @pytest.mark.asyncio
    async def test_offline_without_cache(self, recording_sleep) -> None:
        """Test that no network attempt is made while offline."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return json_response({})

        monitor = ConnectivityMonitor(online=False)
        engine = make_engine(handler, recording_sleep, monitor=monitor)

        with pytest.raises(OfflineError):
            await engine.fetch("departments")

        assert calls == []

    @pytest.mark.asyncio
    async def test_offline_serves_cache(self, recording_sleep, cache) -> None:
        await cache.open()
        url = f"{API_BASE}/objects/435809"
        await cache.put(Partition.API, url, b'{"objectID": 435809, "title": "Sunflowers"}')
        monitor = ConnectivityMonitor(online=False)
        engine = make_engine(
            lambda request: json_response({}), recording_sleep, monitor=monitor, cache=cache
        )

        payload = await engine.fetch("objects/435809")

        assert payload.from_cache is True
        assert payload.data["title"] == "Sunflowers"
        assert payload.resource == "objects/435809"

    @pytest.mark.asyncio
    async def test_going_offline_abandons_inflight_request(self, recording_sleep) -> None:
        """Test that an in-flight attempt ends as soon as the monitor goes offline."""
        started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(30)
            return json_response({})

        monitor = ConnectivityMonitor()
        engine = make_engine(handler, recording_sleep, monitor=monitor)

        task = asyncio.create_task(engine.fetch("departments"))
        await started.wait()
        monitor.mark_offline()

        with pytest.raises(OfflineError):
            await asyncio.wait_for(task, timeout=1.0)
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_going_offline_interrupts_backoff(self) -> None:
        """Test that a backoff sleep ends when the monitor goes offline."""
        monitor = ConnectivityMonitor()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async def sleep(delay: float) -> None:
            monitor.mark_offline()
            await asyncio.sleep(30)

        engine = make_engine(handler, sleep, monitor=monitor)

        with pytest.raises(OfflineError):
            await asyncio.wait_for(engine.fetch("departments"), timeout=1.0)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_success_is_written_to_api_partition(self, recording_sleep, cache) -> None:
        await cache.open()
        engine = make_engine(
            lambda request: json_response({"objectID": 11737}), recording_sleep, cache=cache
        )

        await engine.fetch("objects/11737")

        entry = await cache.get(Partition.API, f"{API_BASE}/objects/11737")
        assert entry is not None
        assert entry.json() == {"objectID": 11737}

    @pytest.mark.asyncio
    async def test_exhausted_online_fetch_serves_cache(self, recording_sleep, cache) -> None:
        """Test that a failed API fetch falls back to the cached copy while online."""
        await cache.open()
        await cache.put(Partition.API, f"{API_BASE}/departments", b'{"departments": []}')

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        engine = make_engine(refuse, recording_sleep, cache=cache, monitor=ConnectivityMonitor())

        payload = await engine.fetch("departments")

        assert payload.from_cache is True
        assert payload.data == {"departments": []}
        assert payload.resource == "departments"
        assert len(recording_sleep.delays) == 5

    @pytest.mark.asyncio
    async def test_exhausted_fetch_without_cached_copy_raises(self, recording_sleep, cache) -> None:
        await cache.open()
        engine = make_engine(lambda request: httpx.Response(502), recording_sleep, cache=cache)

        with pytest.raises(ProxyExhaustedError):
            await engine.fetch("departments")


class TestSupersede:
    """Tests for replacing in-flight requests."""

    @pytest.mark.asyncio
    async def test_newer_request_supersedes_older(self, recording_sleep) -> None:
        started = asyncio.Event()
        calls = {"count": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                started.set()
                await asyncio.sleep(30)
            return json_response({"objectID": 1})

        engine = make_engine(handler, recording_sleep)

        first = asyncio.create_task(engine.fetch("objects/1"))
        await started.wait()
        second = await engine.fetch("objects/1")

        with pytest.raises(RequestSuperseded):
            await first
        assert second.data == {"objectID": 1}

    @pytest.mark.asyncio
    async def test_different_resources_do_not_supersede(self, recording_sleep) -> None:
        engine = make_engine(lambda request: json_response({"ok": True}), recording_sleep)

        results = await asyncio.gather(engine.fetch("objects/1"), engine.fetch("objects/2"))

        assert [payload.data for payload in results] == [{"ok": True}, {"ok": True}]

    @pytest.mark.asyncio
    async def test_background_refresh_does_not_supersede(self, recording_sleep, cache) -> None:
        """Test that refreshing cached entries leaves an in-flight foreground fetch alone."""
        await cache.open()
        await cache.put(Partition.API, f"{API_BASE}/objects/1", b'{"objectID": 1, "title": "Old"}')
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            started.set()
            await release.wait()
            return json_response({"objectID": 1, "title": "New"})

        engine = make_engine(handler, recording_sleep, cache=cache)

        foreground = asyncio.create_task(engine.fetch("objects/1"))
        await started.wait()
        refreshed = await engine.refresh_cached()
        release.set()
        payload = await foreground

        assert refreshed == 0
        assert payload.data["title"] == "New"
        assert payload.from_cache is False


class TestMediaAndStatic:
    """Tests for the media and static fetch strategies."""

    @pytest.mark.asyncio
    async def test_large_media_not_persisted(self, recording_sleep, temp_db) -> None:
        cache = TieredCacheManager(db=temp_db, media_max_bytes=10)
        await cache.open()
        engine = make_engine(
            lambda request: httpx.Response(200, content=b"x" * 100), recording_sleep, cache=cache
        )

        result = await engine.fetch_media("https://images.metmuseum.org/big.jpg")

        assert result.ok
        assert result.persisted is False
        assert await cache.count(Partition.MEDIA) == 0

    @pytest.mark.asyncio
    async def test_static_is_cache_first(self, recording_sleep, cache) -> None:
        await cache.open()
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=b"body{}")

        engine = make_engine(handler, recording_sleep, cache=cache)

        first = await engine.fetch_static("https://app.example/style.css")
        second = await engine.fetch_static("https://app.example/style.css")

        assert first.source is ResultSource.NETWORK
        assert second.source is ResultSource.CACHE
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_media_requires_cache(self, recording_sleep) -> None:
        engine = make_engine(lambda request: httpx.Response(200), recording_sleep)

        with pytest.raises(RuntimeError):
            await engine.fetch_media("https://images.metmuseum.org/a.jpg")


class TestProbing:
    """Tests for proxy health probing."""

    @pytest.mark.asyncio
    async def test_probe_proxies(self, recording_sleep) -> None:
        methods = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            if request.url.host == PRIMARY_HOST:
                return httpx.Response(503)
            return httpx.Response(200)

        engine = make_engine(handler, recording_sleep)

        health = await engine.probe_proxies(force=True)

        assert health == {"primary": False, "fallback": True}
        assert set(methods) == {"HEAD"}
        assert engine.pool.current.name == "fallback"

    @pytest.mark.asyncio
    async def test_probe_skips_recent_checks(self, recording_sleep) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        engine = make_engine(handler, recording_sleep)
        await engine.probe_proxies()
        await engine.probe_proxies()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_probe_returns_to_primary(self, recording_sleep) -> None:
        engine = make_engine(lambda request: httpx.Response(200), recording_sleep)
        engine.pool.get("primary").record_failure()
        engine.pool.switch_to(engine.pool.get("fallback"))

        await engine.probe_proxies(force=True)

        assert engine.pool.current.name == "primary"

    @pytest.mark.asyncio
    async def test_check_online(self, recording_sleep) -> None:
        engine = make_engine(lambda request: httpx.Response(200), recording_sleep)
        assert await engine.check_online() is True

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        offline_engine = make_engine(refuse, recording_sleep)
        assert await offline_engine.check_online() is False

    @pytest.mark.asyncio
    async def test_refresh_cached(self, recording_sleep, cache) -> None:
        await cache.open()
        await cache.put(Partition.API, f"{API_BASE}/objects/1", b'{"objectID": 1, "title": "Old"}')
        engine = make_engine(
            lambda request: json_response({"objectID": 1, "title": "New"}),
            recording_sleep,
            cache=cache,
        )

        refreshed = await engine.refresh_cached()

        assert refreshed == 1
        entry = await cache.get(Partition.API, f"{API_BASE}/objects/1")
        assert entry.json()["title"] == "New"
