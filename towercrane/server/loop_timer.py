"""Tick timing with hybrid sleep + busy-loop and rolling period statistics."""

import time

import numpy as np
from numba import njit  # type: ignore[import-untyped]

from towercrane import config as cfg

# ~5 seconds of periods, rounded up to a power of 2 so the ring index is a mask
_TARGET_BUFFER_SECONDS = 5.0
_raw_size = max(2, int(cfg.TICK_RATE_HZ * _TARGET_BUFFER_SECONDS))
BUFFER_SIZE = 1 << (_raw_size - 1).bit_length()
BUFFER_MASK = BUFFER_SIZE - 1


@njit(cache=True)
def _period_stats(
    samples: np.ndarray, n: int
) -> tuple[float, float, float, float, float, float]:
    """mean, std, min, max, p95, p99 over the first ``n`` samples."""
    if n == 0:
        return 0.0, 0.0, 0.0, 0.0, 0.0, 0.0

    # Welford for mean/variance, min/max in the same pass
    mean = 0.0
    m2 = 0.0
    lo = samples[0]
    hi = samples[0]
    for i in range(n):
        x = samples[i]
        delta = x - mean
        mean += delta / (i + 1)
        m2 += delta * (x - mean)
        if x < lo:
            lo = x
        if x > hi:
            hi = x
    std = np.sqrt(m2 / n)

    if n >= 20:
        window = samples[:n]
        p95 = np.percentile(window, 95.0)
        p99 = np.percentile(window, 99.0)
    else:
        p95 = hi
        p99 = hi
    return mean, std, lo, hi, p95, p99


class LoopMetrics:
    """Rolling tick-period statistics, overrun counts and log rate limiting."""

    __slots__ = (
        "loop_count",
        "overrun_count",
        "mean_period_s",
        "std_period_s",
        "min_period_s",
        "max_period_s",
        "p95_period_s",
        "p99_period_s",
        "_buffer",
        "_buffer_idx",
        "_buffer_count",
        "_target_period_s",
        "_stats_interval",
        "_last_log_time",
        "_last_warn_time",
        "_start_time",
        "_grace_period_s",
    )

    def __init__(self) -> None:
        self.loop_count = 0
        self.overrun_count = 0
        self.mean_period_s = 0.0
        self.std_period_s = 0.0
        self.min_period_s = 0.0
        self.max_period_s = 0.0
        self.p95_period_s = 0.0
        self.p99_period_s = 0.0
        self._buffer = np.zeros(BUFFER_SIZE, dtype=np.float64)
        self._buffer_idx = 0
        self._buffer_count = 0
        self._target_period_s = 0.0
        self._stats_interval = 30
        self._last_log_time = 0.0
        self._last_warn_time = 0.0
        self._start_time = 0.0
        self._grace_period_s = 5.0

    def configure(
        self, target_period_s: float, stats_interval: int, grace_period_s: float = 5.0
    ) -> None:
        """Configure target period, stats interval and startup grace period.

        Args:
            target_period_s: Target tick period in seconds
            stats_interval: Recompute rolling statistics every N ticks
            grace_period_s: Window after mark_started() during which degradation
                warnings are suppressed (JIT warmup, first path plans)
        """
        self._target_period_s = target_period_s
        self._stats_interval = max(1, stats_interval)
        self._grace_period_s = grace_period_s

    @property
    def sample_count(self) -> int:
        return self._buffer_count

    def mark_started(self, now: float) -> None:
        self._start_time = now

    def should_log(self, now: float, interval: float) -> bool:
        """Returns True and updates timestamp if interval has passed."""
        if now - self._last_log_time >= interval:
            self._last_log_time = now
            return True
        return False

    def check_degraded(
        self, now: float, threshold: float, rate_limit: float
    ) -> tuple[bool, float]:
        """Check if p99 exceeds target by threshold. Returns (should_warn, degradation_pct)."""
        if self._target_period_s <= 0 or self.p99_period_s <= 0:
            return False, 0.0
        if self._start_time > 0 and (now - self._start_time) < self._grace_period_s:
            return False, 0.0
        if now - self._last_warn_time < rate_limit:
            return False, 0.0
        if self.p99_period_s > self._target_period_s * (1.0 + threshold):
            self._last_warn_time = now
            return True, (self.p99_period_s / self._target_period_s - 1.0) * 100.0
        return False, 0.0

    def record_period(self, period: float) -> None:
        self._buffer[self._buffer_idx] = period
        self._buffer_idx = (self._buffer_idx + 1) & BUFFER_MASK
        if self._buffer_count < BUFFER_SIZE:
            self._buffer_count += 1

    def compute_stats(self) -> None:
        if self._buffer_count == 0:
            return
        mean, std, lo, hi, p95, p99 = _period_stats(self._buffer, self._buffer_count)
        self.mean_period_s = mean
        self.std_period_s = std
        self.min_period_s = lo
        self.max_period_s = hi
        self.p95_period_s = p95
        self.p99_period_s = p99

    def reset_stats(self) -> None:
        self._buffer.fill(0.0)
        self._buffer_idx = 0
        self._buffer_count = 0
        self.mean_period_s = 0.0
        self.std_period_s = 0.0
        self.min_period_s = 0.0
        self.max_period_s = 0.0
        self.p95_period_s = 0.0
        self.p99_period_s = 0.0


def format_hz_summary(m: LoopMetrics) -> str:
    """Format metrics as 'XX.XHz σ=X.XXms p99=X.XXms'."""
    if m.mean_period_s <= 0:
        return "0.0Hz σ=0.00ms p99=0.00ms"
    hz = 1.0 / m.mean_period_s
    return (
        f"{hz:.1f}Hz σ={m.std_period_s * 1000:.2f}ms p99={m.p99_period_s * 1000:.2f}ms"
    )


class LoopTimer:
    """Deadline-based tick scheduling.

    Sleeps for most of the wait, then spins for the last
    ``busy_threshold_s`` so ticks land on their deadline without OS
    scheduling jitter. An overrun resets the deadline instead of
    bursting to catch up.
    """

    def __init__(
        self,
        interval_s: float = cfg.INTERVAL_S,
        busy_threshold_s: float | None = None,
        stats_interval: int = 30,
    ):
        self._interval = interval_s
        self._busy_threshold = (
            busy_threshold_s
            if busy_threshold_s is not None
            else cfg.BUSY_THRESHOLD_MS / 1000.0
        )
        self._stats_interval = max(1, stats_interval)
        self._next_deadline = 0.0
        self._prev_t = 0.0
        self.metrics = LoopMetrics()
        self.metrics.configure(interval_s, self._stats_interval)

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Initialize timing. Call once before entering the loop."""
        now = time.perf_counter()
        self._next_deadline = now
        self._prev_t = now
        self.metrics.mark_started(now)

    def wait_for_next_tick(self) -> None:
        """Block until the next deadline and record the tick period."""
        self.metrics.loop_count += 1
        if self.metrics.loop_count % self._stats_interval == 0:
            self.metrics.compute_stats()

        self._next_deadline += self._interval
        sleep_time = self._next_deadline - time.perf_counter()

        if sleep_time > self._busy_threshold:
            time.sleep(sleep_time - self._busy_threshold)

        if sleep_time > 0:
            while time.perf_counter() < self._next_deadline:
                pass
            now = time.perf_counter()
        else:
            self.metrics.overrun_count += 1
            now = time.perf_counter()
            self._next_deadline = now

        if self._prev_t > 0:
            self.metrics.record_period(now - self._prev_t)
        self._prev_t = now
