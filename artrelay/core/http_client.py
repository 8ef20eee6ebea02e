"""Fetch resilience engine.

``FetchEngine`` turns a logical resource request into a ``Payload``.  It
wraps every attempt in a timeout, retries failures with exponential
backoff against the current relay endpoint, switches once to another
healthy endpoint when that budget is spent, and finally raises
``ProxyExhaustedError``.  While the connectivity monitor reports offline
no network attempt is made at all, and an attempt already in flight is
abandoned the moment the monitor goes offline.  API responses go through
the cache network-first, so a cached copy answers any failed fetch.

A newer request for the same URL cancels the older one; the older caller
receives ``RequestSuperseded``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

import httpx

from artrelay.core.data_models import Payload, ProxyEndpoint
from artrelay.core.errors import (
    FetchError,
    FetchTimeoutError,
    HTTPError,
    NetworkError,
    OfflineError,
    ParseError,
    ProxyExhaustedError,
    RequestSuperseded,
)
from artrelay.core.proxy import DEFAULT_PROXIES, ProxyPool, build_proxy_url
from artrelay.core.retry import RetryPolicy, RetryState, RetryTracker
from artrelay.storage.tiered_cache import (
    Partition,
    RequestClass,
    StrategyResult,
    classify_request,
)

DEFAULT_BASE_URL = "https://collectionapi.metmuseum.org/public/collection/v1"
DEFAULT_PROBE_URL = "https://images.metmuseum.org/CRDImages/ep/web-large/DT1567.jpg"


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds from a ``Retry-After`` header on 429/503, if numeric."""
    if response.status_code not in (429, 503):
        return None
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class FetchEngine:
    """Timeout, retry/backoff and proxy failover around ``httpx.AsyncClient``."""

    DEFAULT_USER_AGENT = "artrelay/0.1"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        pool: Optional[ProxyPool] = None,
        policy: Optional[RetryPolicy] = None,
        cache=None,
        monitor=None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 15.0,
        probe_url: str = DEFAULT_PROBE_URL,
        probe_timeout: float = 3.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        performance_logger=None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Initialize the engine.

        Args:
            client: Client to issue requests with; one is created (and owned) if omitted
            pool: Relay endpoints, defaulting to the built-in primary/fallback pair
            policy: Backoff parameters for each endpoint's attempt budget
            cache: TieredCacheManager that API responses are served network-first through
            monitor: ConnectivityMonitor; without one the engine assumes online
            base_url: Upstream API base that relative resources are joined to
            timeout: Default per-attempt timeout in seconds
            sleep: Awaitable used for backoff waits
            rng: Source of jitter in ``[0, 1)``
            performance_logger: Receives one record per network fetch
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": user_agent or self.DEFAULT_USER_AGENT},
            follow_redirects=True,
        )
        self.pool = pool or ProxyPool([ProxyEndpoint.from_dict(item) for item in DEFAULT_PROXIES])
        self.policy = policy or RetryPolicy()
        self.cache = cache
        self.monitor = monitor
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout
        self.performance_logger = performance_logger
        self._sleep = sleep
        self._rng = rng
        self._inflight: Dict[Hashable, asyncio.Future] = {}
        self._request_count = 0
        self._failure_count = 0
        self._proxy_switches = 0

    @classmethod
    def from_config(
        cls,
        config,
        client: Optional[httpx.AsyncClient] = None,
        cache=None,
        monitor=None,
        performance_logger=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "FetchEngine":
        return cls(
            client=client,
            pool=ProxyPool.from_config(config),
            policy=RetryPolicy.from_config(config),
            cache=cache,
            monitor=monitor,
            base_url=config.get("api.base_url", DEFAULT_BASE_URL),
            timeout=float(config.get("api.request_timeout", 15.0)),
            probe_url=config.get("proxy.probe_url", DEFAULT_PROBE_URL),
            probe_timeout=float(config.get("proxy.probe_timeout", 3.0)),
            sleep=sleep,
            performance_logger=performance_logger,
            user_agent=config.get("api.user_agent"),
        )

    async def __aenter__(self) -> "FetchEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel in-flight requests and close the client if the engine owns it."""
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        if self._owns_client:
            await self._client.aclose()
        if self._request_count > 0:
            self.logger.debug(
                "Fetch engine closed (requests=%d, failures=%d, switches=%d)",
                self._request_count,
                self._failure_count,
                self._proxy_switches,
            )

    def resolve(self, resource: str) -> str:
        """Canonical upstream URL for ``resource``; also its cache key."""
        if resource.startswith(("http://", "https://")):
            return resource
        return f"{self.base_url}/{resource.lstrip('/')}"

    def _is_offline(self) -> bool:
        return self.monitor is not None and not self.monitor.is_online

    def _require_cache(self):
        if self.cache is None:
            raise RuntimeError("FetchEngine needs a cache for this strategy")
        return self.cache

    # ------------------------------------------------------------------
    # Public fetch API
    # ------------------------------------------------------------------

    async def fetch(self, resource: str, timeout: Optional[float] = None) -> Payload:
        """Fetch an API resource and decode its JSON body.

        Requests the cache classifies as API traffic are served network-first:
        when the network attempts fail (or the client is offline) a cached
        copy is returned with ``from_cache=True``.

        Args:
            resource: Path relative to the API base (``objects/435809``) or an absolute URL
            timeout: Per-attempt timeout override in seconds

        Returns:
            Network payload, or the cached copy

        Raises:
            ValueError: If ``resource`` is empty
            OfflineError: Offline with nothing cached
            ProxyExhaustedError: Every attempt on every permitted endpoint failed
                and nothing is cached
            ParseError: The body is not valid JSON and nothing is cached
            RequestSuperseded: A newer request for the same resource replaced this one
        """
        if not resource or not resource.strip():
            raise ValueError("resource must be a non-empty string")
        url = self.resolve(resource)
        return await self._exclusive(
            ("api", url), resource, lambda: self._fetch_api(resource, url, timeout)
        )

    async def fetch_json(self, resource: str, timeout: Optional[float] = None) -> Any:
        return (await self.fetch(resource, timeout)).data

    async def fetch_media(self, url: str, timeout: Optional[float] = None) -> StrategyResult:
        """Fetch an image network-first, persisting it only under the size cap."""
        if not url:
            raise ValueError("url must be a non-empty string")
        cache = self._require_cache()
        return await cache.respond(
            url,
            lambda: self._exclusive(
                ("media", url),
                url,
                lambda: self._fetch_network(url, url, timeout, parse_json=False),
            ),
            RequestClass.MEDIA,
        )

    async def fetch_static(self, resource: str, timeout: Optional[float] = None) -> StrategyResult:
        """Fetch a static asset cache-first."""
        if not resource:
            raise ValueError("resource must be a non-empty string")
        cache = self._require_cache()
        url = self.resolve(resource)
        return await cache.respond(
            url,
            lambda: self._exclusive(
                ("static", url),
                resource,
                lambda: self._fetch_network(resource, url, timeout, parse_json=False),
            ),
            RequestClass.STATIC,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _exclusive(
        self,
        key: Hashable,
        resource: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run ``factory()`` as the only in-flight request for ``key``."""
        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            self.logger.debug("Superseding in-flight request for %s", resource)
            previous.cancel()

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

        if task.cancelled():
            raise RequestSuperseded(resource)
        return task.result()

    def _is_cacheable(self, url: str) -> bool:
        if self.cache is None:
            return False
        return classify_request(url, self.cache.api_host) is RequestClass.API

    async def _fetch_api(self, resource: str, url: str, timeout: Optional[float]) -> Payload:
        if not self._is_cacheable(url):
            return await self._fetch_network(resource, url, timeout, parse_json=True)

        result = await self.cache.respond(
            url,
            lambda: self._fetch_network(resource, url, timeout, parse_json=True),
            RequestClass.API,
        )
        if not result.ok:
            raise result.error
        payload = result.payload
        if payload.from_cache:
            payload.resource = resource
        return payload

    async def _race(self, coro: Awaitable[Any], timeout: Optional[float], resource: str) -> Any:
        """Await ``coro`` against its timeout and the monitor's offline signal.

        The loser is cancelled and never awaited.
        """
        task = asyncio.ensure_future(coro)
        waiters = {task}
        offline = None
        if self.monitor is not None:
            offline = asyncio.ensure_future(self.monitor.wait_offline())
            waiters.add(offline)
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if offline is not None:
                offline.cancel()
            if not task.done():
                task.cancel()

        if task in done:
            return task.result()
        if offline is not None and offline in done:
            self.logger.info("Went offline, abandoning request for %s", resource)
            raise OfflineError(resource)
        raise FetchTimeoutError(resource, timeout or 0.0)

    async def _attempt(
        self,
        endpoint: ProxyEndpoint,
        url: str,
        timeout: float,
        resource: str,
    ) -> httpx.Response:
        target = build_proxy_url(endpoint, url)
        try:
            return await self._race(self._client.get(target, timeout=timeout), timeout, resource)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(resource, timeout) from e
        except httpx.HTTPError as e:
            raise NetworkError(resource, f"{type(e).__name__} for {resource}: {e}") from e

    async def _backoff(self, delay: float, resource: str) -> None:
        """Sleep ``delay`` seconds; ends early with ``OfflineError`` when going offline."""
        if self.monitor is None:
            await self._sleep(delay)
            return
        await self._race(self._sleep(delay), None, resource)

    def _build_payload(
        self,
        resource: str,
        url: str,
        response: httpx.Response,
        endpoint: ProxyEndpoint,
        attempts: int,
        parse_json: bool,
    ) -> Payload:
        content = response.content
        data = None
        if parse_json:
            try:
                data = json.loads(content)
            except ValueError as e:
                raise ParseError(resource, f"Invalid JSON for {resource}: {e}") from e
        return Payload(
            resource=resource,
            url=url,
            content=content,
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            data=data,
            proxy=endpoint.name,
            attempts=attempts,
        )

    async def _fetch_network(
        self,
        resource: str,
        url: str,
        timeout: Optional[float],
        parse_json: bool,
    ) -> Payload:
        """Bounded retry loop: one attempt budget per endpoint, at most one switch."""
        if self._is_offline():
            raise OfflineError(resource)

        timeout = self.timeout if timeout is None else timeout
        endpoint = self.pool.current
        started = time.monotonic()
        attempts = 0
        switched = False
        success = False
        last_error: Optional[FetchError] = None
        self._request_count += 1

        try:
            while True:
                tracker = RetryTracker(self.policy, rng=self._rng)
                next_endpoint: Optional[ProxyEndpoint] = None

                while tracker.state is not RetryState.EXHAUSTED:
                    tracker.begin_attempt()
                    attempts += 1
                    self.logger.debug(
                        "GET %s via %s (attempt %d/%d)",
                        url[:100],
                        endpoint.name,
                        tracker.attempts,
                        self.policy.max_retries,
                    )
                    attempt_started = time.monotonic()
                    try:
                        response = await self._attempt(endpoint, url, timeout, resource)
                    except OfflineError:
                        raise
                    except NetworkError as e:
                        error: FetchError = e
                    else:
                        elapsed = time.monotonic() - attempt_started
                        if 200 <= response.status_code < 300:
                            endpoint.record_success(elapsed)
                            payload = self._build_payload(
                                resource, url, response, endpoint, attempts, parse_json
                            )
                            success = True
                            return payload
                        self.logger.debug(
                            "Status %d from %s after %.2fs",
                            response.status_code,
                            endpoint.name,
                            elapsed,
                        )
                        error = HTTPError(
                            resource, response.status_code, retry_after=_retry_after(response)
                        )

                    last_error = error
                    endpoint.record_failure()
                    delay = tracker.record_failure(getattr(error, "retry_after", None))
                    self.logger.debug(
                        "Attempt %d/%d on %s failed: %s",
                        tracker.attempts,
                        self.policy.max_retries,
                        endpoint.name,
                        error,
                    )

                    follow_up = tracker.remaining > 0
                    if not follow_up and not switched:
                        next_endpoint = self.pool.fallback_for(endpoint)
                        follow_up = next_endpoint is not None
                    if follow_up:
                        self.logger.debug("Backing off %.2fs", delay)
                        await self._backoff(delay, resource)
                    tracker.finish_backoff()

                if next_endpoint is None:
                    break
                self.pool.switch_to(next_endpoint)
                self._proxy_switches += 1
                endpoint = next_endpoint
                switched = True

            self.logger.error("All %d attempts failed for %s", attempts, url[:100])
            raise ProxyExhaustedError(resource, attempts, last_error)
        finally:
            if not success:
                self._failure_count += 1
            if self.performance_logger is not None:
                self.performance_logger.record(
                    "fetch",
                    (time.monotonic() - started) * 1000,
                    success,
                    resource=resource,
                    proxy=endpoint.name,
                    attempts=attempts,
                )

    # ------------------------------------------------------------------
    # Health and warm-up
    # ------------------------------------------------------------------

    async def _probe(self, endpoint: ProxyEndpoint) -> bool:
        target = build_proxy_url(endpoint, self.probe_url)
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.head(target, timeout=self.probe_timeout), self.probe_timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            self.logger.debug("Proxy %s probe failed: %s", endpoint.name, e)
            endpoint.record_failure()
            return False

        if response.status_code < 400:
            endpoint.record_success(time.monotonic() - started)
            return True
        self.logger.debug("Proxy %s probe returned %d", endpoint.name, response.status_code)
        endpoint.record_failure()
        return False

    async def probe_proxies(self, force: bool = False) -> Dict[str, bool]:
        """HEAD the probe URL through each endpoint whose last check is stale.

        Afterwards the current endpoint is the first configured healthy one.

        Returns:
            Endpoint name to health
        """
        if self._is_offline():
            self.logger.debug("Offline, skipping proxy probe")
            return {endpoint.name: endpoint.healthy for endpoint in self.pool.endpoints}

        now = time.time()
        targets = [
            endpoint
            for endpoint in self.pool.endpoints
            if force or self.pool.needs_probe(endpoint, now)
        ]
        if targets:
            await asyncio.gather(*(self._probe(endpoint) for endpoint in targets))
        selected = self.pool.reselect()
        self.logger.info(
            "Proxy probe complete: %d/%d healthy, using %s",
            self.pool.healthy_count(),
            len(self.pool.endpoints),
            selected.name,
        )
        return {endpoint.name: endpoint.healthy for endpoint in self.pool.endpoints}

    async def check_online(self) -> bool:
        """Reachability check that ignores the monitor, for ``ConnectivityMonitor.watch``."""
        target = build_proxy_url(self.pool.current, self.probe_url)
        try:
            response = await asyncio.wait_for(
                self._client.head(target, timeout=self.probe_timeout), self.probe_timeout
            )
        except (httpx.HTTPError, asyncio.TimeoutError):
            return False
        return response.status_code < 500

    async def refresh_entry(self, url: str) -> bool:
        """Re-fetch one cached API entry in the background.

        A key with a foreground request in flight is skipped; the refresh is
        not registered as in-flight, so it never supersedes and is never
        superseded.
        """
        inflight = self._inflight.get(("api", url))
        if inflight is not None and not inflight.done():
            self.logger.debug("Skipping refresh of %s, request in flight", url[:100])
            return False
        payload = await self._fetch_network(url, url, None, parse_json=True)
        await self.cache.put_payload(Partition.API, url, payload)
        return True

    async def refresh_cached(self, limit: Optional[int] = None) -> int:
        """Re-fetch a bounded batch of API-partition entries."""
        if self.cache is None or self._is_offline():
            return 0
        return await self.cache.refresh_entries(self.refresh_entry, limit)

    async def warm_up(self) -> None:
        """Background work to run when connectivity returns."""
        await self.probe_proxies(force=True)
        await self.refresh_cached()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "request_count": self._request_count,
            "failure_count": self._failure_count,
            "proxy_switches": self._proxy_switches,
            "proxies": self.pool.to_dict(),
        }
