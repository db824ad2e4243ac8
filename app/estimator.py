"""Boundary to the learned headcount estimator.

The planner never trusts an estimate on its own; it only needs a number or an
abstention. Every transport or decoding problem is reported as an abstention.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx

logger = logging.getLogger(__name__)

NO_ESTIMATE = -1.0
DEFAULT_TIMEOUT_SECONDS = 2.0
DEFAULT_MAX_FAILURES = 1


@dataclass(frozen=True)
class EstimateQuery:
    stageId: int
    load: float
    hour: int
    dayIndex: int
    shiftStart: int

    def as_payload(self) -> Dict[str, float]:
        return asdict(self)


class Estimator(Protocol):
    def estimate(self, query: EstimateQuery) -> Optional[float]:
        ...


def coerce_estimate(value) -> Optional[float]:
    """Map a raw response to a usable estimate or ``None`` (abstain)."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


class AbstainingEstimator:
    """Never offers an opinion; the planner runs in pure deterministic mode."""

    def estimate(self, query: EstimateQuery) -> Optional[float]:
        return None


class FixedEstimator:
    """Returns the same value for every query, or a per-stage value when given a mapping."""

    def __init__(self, value: float, per_stage: Optional[Dict[int, float]] = None) -> None:
        self.value = value
        self.per_stage = per_stage or {}
        self.calls = 0

    def estimate(self, query: EstimateQuery) -> Optional[float]:
        self.calls += 1
        return coerce_estimate(self.per_stage.get(query.stageId, self.value))


class CallableEstimator:
    def __init__(self, func: Callable[[EstimateQuery], Optional[float]]) -> None:
        self.func = func

    def estimate(self, query: EstimateQuery) -> Optional[float]:
        return coerce_estimate(self.func(query))


class HttpEstimator:
    """POSTs the query as JSON and reads back a bare number or ``{"hc": number}``.

    After ``max_failures`` transport errors or timeouts the estimator stops
    calling out and abstains for the rest of its lifetime, so one unreachable
    service costs at most ``max_failures * timeout`` seconds per run.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
        max_failures: int = DEFAULT_MAX_FAILURES,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.max_failures = max(1, int(max_failures))
        self.failures = 0
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    @property
    def tripped(self) -> bool:
        return self.failures >= self.max_failures

    def reset(self) -> None:
        self.failures = 0

    def estimate(self, query: EstimateQuery) -> Optional[float]:
        if self.tripped:
            return None
        try:
            response = self._client.post(self.url, json=query.as_payload(), timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.TransportError as exc:
            self.failures += 1
            if self.tripped:
                logger.warning("estimator at %s unreachable, abstaining for the rest of the run: %s", self.url, exc)
            else:
                logger.debug("estimator unavailable for stage %s: %s", query.stageId, exc)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("estimator returned no usable answer for stage %s: %s", query.stageId, exc)
            return None
        if isinstance(body, dict):
            body = body.get("hc", body.get("estimate"))
        return coerce_estimate(body)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpEstimator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class CachingEstimator:
    """Memoizes answers per query; queries are pure given their inputs."""

    def __init__(self, inner: Estimator) -> None:
        self.inner = inner
        self._cache: Dict[Tuple, Optional[float]] = {}

    def estimate(self, query: EstimateQuery) -> Optional[float]:
        key = (query.stageId, round(query.load, 6), query.hour, query.dayIndex, query.shiftStart)
        if key not in self._cache:
            self._cache[key] = self.inner.estimate(query)
        return self._cache[key]


def consult(estimator: Optional[Estimator], query: EstimateQuery) -> Optional[float]:
    """Ask the estimator, treating any failure as an abstention."""
    if estimator is None:
        return None
    try:
        raw = estimator.estimate(query)
    except Exception as exc:  # noqa: BLE001
        logger.warning("estimator raised for stage %s, falling back: %s", query.stageId, exc)
        return None
    return coerce_estimate(raw)


def estimator_from_policy(policy: Dict) -> Estimator:
    cfg = policy.get("estimator") if isinstance(policy, dict) else None
    cfg = cfg if isinstance(cfg, dict) else {}
    url = cfg.get("url")
    if not url:
        return AbstainingEstimator()
    timeout = float(cfg.get("timeout_seconds") or DEFAULT_TIMEOUT_SECONDS)
    max_failures = int(cfg.get("max_failures") or DEFAULT_MAX_FAILURES)
    return HttpEstimator(str(url), timeout=timeout, max_failures=max_failures)
