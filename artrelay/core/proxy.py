"""Relay endpoint selection.

URL rewriting and endpoint ranking are pure functions so they can be tested
without any network.  ``ProxyPool`` holds the ordered endpoint list and the
"current" pointer; the fetch engine drives it with observed outcomes.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

from artrelay.core.data_models import AddressingMode, ProxyEndpoint

logger = logging.getLogger(__name__)

DEFAULT_PROXIES: List[Dict[str, str]] = [
    {
        "name": "primary",
        "url": "https://cors-proxy-xi-ten.vercel.app/api/proxy",
        "mode": "query",
    },
    {"name": "fallback", "url": "https://corsproxy.io/?", "mode": "path"},
]


def build_proxy_url(endpoint: ProxyEndpoint, target_url: str) -> str:
    """Rewrite ``target_url`` for ``endpoint``'s addressing mode."""
    if endpoint.mode is AddressingMode.DIRECT:
        return target_url
    encoded = quote(target_url, safe="")
    if endpoint.mode is AddressingMode.PATH:
        return f"{endpoint.url}{encoded}"
    return f"{endpoint.url}?url={encoded}"


def rank_endpoints(endpoints: Sequence[ProxyEndpoint]) -> List[ProxyEndpoint]:
    """Healthy endpoints first, configured order preserved within each group."""
    return sorted(endpoints, key=lambda endpoint: not endpoint.healthy)


def select_endpoint(
    endpoints: Sequence[ProxyEndpoint],
    exclude: Iterable[str] = (),
    require_healthy: bool = False,
) -> Optional[ProxyEndpoint]:
    """Pick the best endpoint whose name is not in ``exclude``."""
    excluded = set(exclude)
    for endpoint in rank_endpoints(endpoints):
        if endpoint.name in excluded:
            continue
        if require_healthy and not endpoint.healthy:
            return None
        return endpoint
    return None


class ProxyPool:
    """Ordered, health-ranked set of relay endpoints."""

    def __init__(
        self,
        endpoints: Sequence[ProxyEndpoint],
        probe_interval: float = 300.0,
    ) -> None:
        if not endpoints:
            endpoints = [ProxyEndpoint(name="direct", url="", mode=AddressingMode.DIRECT)]
        names = [endpoint.name for endpoint in endpoints]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate proxy names: {names}")
        self._endpoints: List[ProxyEndpoint] = list(endpoints)
        self._current = self._endpoints[0].name
        self.probe_interval = probe_interval
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(cls, config) -> "ProxyPool":
        raw = config.get("proxies", DEFAULT_PROXIES) or []
        return cls(
            [ProxyEndpoint.from_dict(item) for item in raw],
            probe_interval=float(config.get("proxy.probe_interval", 300.0)),
        )

    @property
    def endpoints(self) -> List[ProxyEndpoint]:
        return list(self._endpoints)

    def get(self, name: str) -> ProxyEndpoint:
        for endpoint in self._endpoints:
            if endpoint.name == name:
                return endpoint
        raise KeyError(name)

    @property
    def current(self) -> ProxyEndpoint:
        """Endpoint new requests start on.

        Stays on the current pointer while it is healthy; otherwise the
        best-ranked endpoint is used.
        """
        endpoint = self.get(self._current)
        if endpoint.healthy:
            return endpoint
        return rank_endpoints(self._endpoints)[0]

    def fallback_for(self, endpoint: ProxyEndpoint) -> Optional[ProxyEndpoint]:
        """A different, currently healthy endpoint, or None."""
        return select_endpoint(self._endpoints, exclude=[endpoint.name], require_healthy=True)

    def switch_to(self, endpoint: ProxyEndpoint) -> None:
        if endpoint.name != self._current:
            self.logger.warning("Switched proxy from %s to %s", self._current, endpoint.name)
            self._current = endpoint.name

    def needs_probe(self, endpoint: ProxyEndpoint, now: Optional[float] = None) -> bool:
        if endpoint.last_checked is None:
            return True
        now = time.time() if now is None else now
        return now - endpoint.last_checked >= self.probe_interval

    def reselect(self) -> ProxyEndpoint:
        """Point at the first configured healthy endpoint (primary preferred)."""
        best = rank_endpoints(self._endpoints)[0]
        if best.name != self._current:
            self.logger.info("Selected %s proxy", best.name)
        self._current = best.name
        return best

    def healthy_count(self) -> int:
        return sum(1 for endpoint in self._endpoints if endpoint.healthy)

    def to_dict(self) -> Dict[str, object]:
        return {
            "current": self._current,
            "endpoints": [endpoint.to_dict() for endpoint in self._endpoints],
        }
