"""
JIT warmup utilities.

Call warmup_jit() on startup to compile numba functions before the control
loop runs. With cache=True this is fast once the on-disk cache exists.
"""

import logging
import time

import numpy as np

from towercrane.server.loop_timer import BUFFER_SIZE, _period_stats

logger = logging.getLogger(__name__)


def warmup_jit() -> float:
    """
    Compile the numba functions by calling them with dummy data.

    Returns the time taken in seconds.
    """
    logger.info("Warming JIT...")
    start = time.perf_counter()

    samples = np.zeros(BUFFER_SIZE, dtype=np.float64)
    # Both branches: short window (max fallback) and percentile window
    _period_stats(samples, 0)
    _period_stats(samples, min(BUFFER_SIZE, 32))

    elapsed = time.perf_counter() - start
    logger.info("JIT warmup complete in %.1fms", elapsed * 1000)
    return elapsed
