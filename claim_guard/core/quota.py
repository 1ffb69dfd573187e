"""
Sliding-window quota ledger.

Tracks request and token usage per model over a trailing window and
answers whether a model is still under its budget.

Accounting rules:
1. Every read prunes events that have aged out of the window
2. A request is admitted iff window total + projected amount <= limit
3. Daily request counters reset at UTC midnight
"""

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, Iterable, Mapping, Optional, Tuple

from .tiers import ModelLimits, ModelTiers
from claim_guard.storage.models import QuotaEvent, QuotaMetric

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0

QuotaSink = Callable[[QuotaEvent], None]


@dataclass(frozen=True)
class QuotaUsage:
    """Point-in-time usage snapshot for one model."""
    model: str
    requests: int
    tokens: int
    daily_requests: int


class QuotaLedger:
    """Concurrency-safe per-model usage ledger.

    One lock guards every window, so a capacity check and the request it
    admits are a single atomic step (see :meth:`try_reserve`). The lock is
    never held across I/O; the optional recording sink runs after release.
    """

    def __init__(
        self,
        limits: Mapping[str, ModelLimits],
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sink: Optional[QuotaSink] = None,
    ):
        """Initialize the ledger.

        Args:
            limits: Per-model rate limits
            window_seconds: Length of the trailing window
            clock: Returns current time in epoch seconds (defaults to time.time)
            sink: Optional callable receiving every recorded event
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._limits: Dict[str, ModelLimits] = dict(limits)
        self._window = float(window_seconds)
        self._clock = clock or time.time
        self._sink = sink
        self._windows: Dict[Tuple[str, QuotaMetric], Deque[Tuple[float, int]]] = {}
        self._daily: Dict[str, Tuple[str, int]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_tiers(
        cls,
        tiers: ModelTiers,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sink: Optional[QuotaSink] = None,
    ) -> "QuotaLedger":
        return cls(tiers.limits, window_seconds=window_seconds, clock=clock, sink=sink)

    @property
    def window_seconds(self) -> float:
        return self._window

    def now(self) -> float:
        """Current time according to the ledger clock."""
        return self._clock()

    def record_event(
        self,
        model: str,
        metric: QuotaMetric,
        amount: int,
        now: Optional[float] = None,
    ) -> QuotaEvent:
        """Append a timestamped usage entry.

        Models without configured limits are accepted so that usage of a
        forced model is still visible in snapshots.

        Args:
            model: Model identifier
            metric: Metric the amount applies to
            amount: Units consumed (negative values are treated as zero)
            now: Event time in epoch seconds (defaults to the ledger clock)

        Returns:
            The recorded event
        """
        with self._lock:
            timestamp = self._resolve_now(now)
            event = self._append(model, metric, max(int(amount), 0), timestamp)
        self._emit(event)
        return event

    def is_under_limit(
        self,
        model: str,
        metric: QuotaMetric,
        projected_amount: int = 0,
        now: Optional[float] = None,
    ) -> bool:
        """Check whether the window total plus ``projected_amount`` fits.

        Exactly at the limit counts as under; one unit over does not.

        Raises:
            ValueError: If the model has no configured limits
        """
        limit = self._get_limits(model).for_metric(metric)
        with self._lock:
            timestamp = self._resolve_now(now)
            total = self._window_total(model, metric, timestamp)
        return total + max(projected_amount, 0) <= limit

    def is_under_daily_limit(self, model: str, now: Optional[float] = None) -> bool:
        """Check the requests-per-day budget for ``model``."""
        limits = self._get_limits(model)
        with self._lock:
            timestamp = self._resolve_now(now)
            return self._daily_count(model, timestamp) < limits.rpd

    def has_capacity(
        self,
        model: str,
        estimated_tokens: int,
        now: Optional[float] = None,
    ) -> bool:
        """Check requests, tokens and daily budget for one more call."""
        limits = self._get_limits(model)
        with self._lock:
            timestamp = self._resolve_now(now)
            return self._has_capacity_locked(model, limits, estimated_tokens, timestamp)

    def try_reserve(
        self,
        model: str,
        estimated_tokens: int,
        now: Optional[float] = None,
    ) -> bool:
        """Atomically check capacity and record one request.

        Two callers racing for the last slot of a model cannot both
        succeed. The reservation is optimistic: it is never released,
        even if the call it admitted fails.

        Returns:
            True if a request slot was reserved
        """
        limits = self._get_limits(model)
        with self._lock:
            timestamp = self._resolve_now(now)
            if not self._has_capacity_locked(model, limits, estimated_tokens, timestamp):
                return False
            event = self._append(model, QuotaMetric.REQUESTS, 1, timestamp)
        self._emit(event)
        return True

    def seconds_until_retry(
        self,
        model: str,
        estimated_tokens: int = 0,
        now: Optional[float] = None,
    ) -> int:
        """Seconds until ``model`` can accept a call of ``estimated_tokens``.

        Returns 0 when the model already has capacity. Otherwise, for each
        saturated budget, the wait until its oldest in-window entry ages
        out (or until UTC midnight for the daily budget); the longest of
        those waits is returned, never less than 1.
        """
        limits = self._get_limits(model)
        waits = []
        with self._lock:
            timestamp = self._resolve_now(now)
            requests = self._window_total(model, QuotaMetric.REQUESTS, timestamp)
            if requests + 1 > limits.rpm:
                waits.append(self._age_out_wait(model, QuotaMetric.REQUESTS, timestamp))

            tokens = self._window_total(model, QuotaMetric.TOKENS, timestamp)
            if tokens + max(estimated_tokens, 0) > limits.tpm:
                waits.append(self._age_out_wait(model, QuotaMetric.TOKENS, timestamp))

            if self._daily_count(model, timestamp) >= limits.rpd:
                waits.append(_seconds_until_utc_midnight(timestamp))

        if not waits:
            return 0
        return max(waits)

    def usage(self, model: str, now: Optional[float] = None) -> QuotaUsage:
        """Snapshot current window usage for ``model``."""
        with self._lock:
            timestamp = self._resolve_now(now)
            return QuotaUsage(
                model=model,
                requests=self._window_total(model, QuotaMetric.REQUESTS, timestamp),
                tokens=self._window_total(model, QuotaMetric.TOKENS, timestamp),
                daily_requests=self._daily_count(model, timestamp),
            )

    def load_events(self, events: Iterable[QuotaEvent]) -> int:
        """Warm-start the ledger from persisted events.

        Events are not forwarded to the sink, since they came from it.

        Returns:
            Number of events loaded
        """
        ordered = sorted(events, key=lambda e: e.timestamp)
        with self._lock:
            for event in ordered:
                self._append(event.model, event.metric, event.amount, event.timestamp)
        return len(ordered)

    def _resolve_now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def _get_limits(self, model: str) -> ModelLimits:
        if model not in self._limits:
            raise ValueError(f"No rate limits configured for model: {model}")
        return self._limits[model]

    def _append(
        self,
        model: str,
        metric: QuotaMetric,
        amount: int,
        timestamp: float,
    ) -> QuotaEvent:
        self._windows.setdefault((model, metric), deque()).append((timestamp, amount))
        if metric is QuotaMetric.REQUESTS:
            day = _utc_day(timestamp)
            current_day, count = self._daily.get(model, (day, 0))
            # ISO dates order lexically; a late event from an earlier day
            # must not reset the current day's count
            if day > current_day:
                self._daily[model] = (day, amount)
            elif day == current_day:
                self._daily[model] = (day, count + amount)
        return QuotaEvent(timestamp=timestamp, model=model, metric=metric, amount=amount)

    def _window_total(self, model: str, metric: QuotaMetric, now: float) -> int:
        entries = self._windows.get((model, metric))
        if not entries:
            return 0
        cutoff = now - self._window
        # Entries are appended in clock order; an out-of-order entry only
        # delays pruning, the filter below keeps the total exact.
        while entries and entries[0][0] <= cutoff:
            entries.popleft()
        return sum(amount for ts, amount in entries if ts > cutoff)

    def _daily_count(self, model: str, now: float) -> int:
        entry = self._daily.get(model)
        if entry is None or entry[0] != _utc_day(now):
            return 0
        return entry[1]

    def _has_capacity_locked(
        self,
        model: str,
        limits: ModelLimits,
        estimated_tokens: int,
        now: float,
    ) -> bool:
        requests = self._window_total(model, QuotaMetric.REQUESTS, now)
        if requests + 1 > limits.rpm:
            return False
        tokens = self._window_total(model, QuotaMetric.TOKENS, now)
        if tokens + max(estimated_tokens, 0) > limits.tpm:
            return False
        return self._daily_count(model, now) < limits.rpd

    def _age_out_wait(self, model: str, metric: QuotaMetric, now: float) -> int:
        cutoff = now - self._window
        entries = self._windows.get((model, metric)) or ()
        live = [ts for ts, _ in entries if ts > cutoff]
        if not live:
            # Projection alone exceeds the limit; a full window is the best estimate.
            return int(math.ceil(self._window))
        wait = min(live) + self._window - now
        return max(1, int(math.ceil(wait)))

    def _emit(self, event: QuotaEvent) -> None:
        if self._sink is None:
            return
        try:
            self._sink(event)
        except Exception:
            logger.warning(
                "Quota sink failed to record %s event for %s",
                event.metric.value,
                event.model,
                exc_info=True,
            )


def _utc_day(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date().isoformat()


def _seconds_until_utc_midnight(timestamp: float) -> int:
    current = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    midnight = datetime.combine(
        current.date() + timedelta(days=1),
        datetime.min.time(),
        tzinfo=timezone.utc,
    )
    return max(1, int(math.ceil((midnight - current).total_seconds())))
