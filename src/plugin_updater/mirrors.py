"""Mirror ranking by reachability, latency and a coarse network region.

Selection never blocks the pipeline: if no mirror answers, the first
mirror in base order is returned and real connectivity problems surface
when git fetches.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from enum import Enum

import httpx

from plugin_updater.constants import MIRRORS, REGION_PROBES
from plugin_updater.exceptions import NetworkUnavailableError
from plugin_updater.fallback import Strategy, StrategiesExhaustedError, first_successful
from plugin_updater.logging import get_logger
from plugin_updater.models import MirrorCandidate, MirrorSelection

log = get_logger("plugin_updater.mirrors")

Logger = Callable[[str], None]


class NetworkRegion(Enum):
    CN = "cn"
    GLOBAL = "global"
    UNKNOWN = "unknown"


class MirrorSelector:
    """Probe candidate mirrors and pick the one to fetch from."""

    def __init__(
        self,
        candidates: Sequence[MirrorCandidate] = MIRRORS,
        region_probes: dict[str, str] | None = None,
        probe_timeout: float = 5,
        region_timeout: float = 3,
        max_redirects: int = 3,
    ) -> None:
        if not candidates:
            raise ValueError("at least one mirror candidate is required")
        self._candidates = tuple(candidates)
        self._region_probes = region_probes or dict(REGION_PROBES)
        self._probe_timeout = probe_timeout
        self._region_timeout = region_timeout
        self._max_redirects = max_redirects

    @property
    def candidates(self) -> tuple[MirrorCandidate, ...]:
        return self._candidates

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def _head(self, url: str, timeout: float) -> float:
        """HEAD *url* and return the round trip in milliseconds."""
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                follow_redirects=True,
                max_redirects=self._max_redirects,
            ) as client:
                resp = await client.head(url)
        except httpx.HTTPError as exc:
            raise NetworkUnavailableError(f"{url}: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            raise NetworkUnavailableError(f"{url}: HTTP {resp.status_code}")
        return round((time.monotonic() - start) * 1000, 1)

    async def probe(self, candidate: MirrorCandidate) -> float:
        """Return the candidate's latency in ms or raise ``NetworkUnavailableError``."""
        return await self._head(candidate.probe_url, self._probe_timeout)

    async def detect_region(self) -> NetworkRegion:
        """Classify the network by which reference endpoints answer."""
        cn_url = self._region_probes.get("cn")
        global_url = self._region_probes.get("global")
        if not cn_url or not global_url:
            return NetworkRegion.UNKNOWN

        results = await asyncio.gather(
            self._head(cn_url, self._region_timeout),
            self._head(global_url, self._region_timeout),
            return_exceptions=True,
        )
        cn_ok, global_ok = (not isinstance(r, BaseException) for r in results)

        if global_ok:
            return NetworkRegion.GLOBAL
        if cn_ok:
            return NetworkRegion.CN
        return NetworkRegion.UNKNOWN

    def order_for(self, region: NetworkRegion) -> list[MirrorCandidate]:
        """Candidates matching *region* first, base order otherwise kept."""
        if region is NetworkRegion.UNKNOWN:
            return list(self._candidates)
        return sorted(self._candidates, key=lambda c: c.region != region.value)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select(self, on_log: Logger | None = None) -> MirrorSelection:
        """Return the first reachable mirror in region-biased order."""
        emit = on_log or (lambda _msg: None)

        region = await self.detect_region()
        if region is NetworkRegion.UNKNOWN:
            emit("Network region could not be determined, using default mirror order")
        else:
            emit(f"Detected network region: {region.value}")

        def make_attempt(candidate: MirrorCandidate) -> Strategy[float]:
            async def attempt() -> float:
                emit(f"Testing {candidate.name} connection...")
                latency = await self.probe(candidate)
                emit(f"{candidate.name} latency: {latency:.0f}ms")
                return latency

            return Strategy(name=candidate.name, attempt=attempt)

        ordered = self.order_for(region)
        by_name = {c.name: c for c in ordered}
        try:
            outcome = await first_successful(
                [make_attempt(c) for c in ordered],
                on_failure=lambda name, exc: emit(
                    f"{name} unreachable ({exc.message}), trying next"
                ),
            )
        except StrategiesExhaustedError:
            fallback = self._candidates[0]
            emit(f"No mirror reachable, falling back to {fallback.name}")
            log.warning("mirror_all_unreachable", fallback=fallback.name)
            return MirrorSelection(candidate=fallback, latency_ms=None, region=region.value)

        chosen = by_name[outcome.name]
        log.info("mirror_selected", name=chosen.name, latency_ms=outcome.value, region=region.value)
        return MirrorSelection(candidate=chosen, latency_ms=outcome.value, region=region.value)
