"""Periodic memory sampler feeding a MetricsCollector.

Sampling runs as a cooperative asyncio task, so it never blocks the event loop
and coexists with subprocess I/O and alert delivery in the same run.
"""

import asyncio
from typing import Optional

from perfgate.lib.config import RuntimeCapabilities, default_runtime
from perfgate.lib.structured_logger import StructuredLogger
from perfgate.services.metrics_collector import MetricsCollector

logger = StructuredLogger(__name__)

DEFAULT_INTERVAL_MS = 100


class MemoryProfiler:
  """Samples memory usage into a collector while active.

  Usage:
      profiler = MemoryProfiler(collector)
      profiler.start()
      ...
      retained = profiler.measure_after_gc()
      profiler.stop()
  """

  def __init__(
    self,
    collector: MetricsCollector,
    runtime: Optional[RuntimeCapabilities] = None,
    interval_ms: int = DEFAULT_INTERVAL_MS,
  ):
    self.collector = collector
    self.runtime = runtime or default_runtime()
    self.interval_ms = interval_ms
    self.baseline: Optional[int] = None
    self._task: Optional[asyncio.Task] = None

  @property
  def running(self) -> bool:
    return self._task is not None and not self._task.done()

  def _collect(self) -> None:
    if self.runtime.collect_garbage is not None:
      self.runtime.collect_garbage()

  def _sample(self) -> int:
    heap_used = self.runtime.heap_usage()
    self.collector.record_memory_usage(heap_used)
    return heap_used

  def start(self, interval_ms: Optional[int] = None) -> None:
    """Record a post-collection baseline, then begin periodic sampling.

    Must be called from inside a running event loop. Calling start() while
    already running is a no-op.

    Args:
        interval_ms: Sampling interval override in milliseconds
    """
    if self.running:
      return

    if interval_ms is not None:
      self.interval_ms = interval_ms

    self._collect()
    self.baseline = self._sample()
    self._task = asyncio.get_running_loop().create_task(self._sample_loop())
    logger.debug('profiler.started', interval_ms=self.interval_ms, baseline_bytes=self.baseline)

  async def _sample_loop(self) -> None:
    interval = self.interval_ms / 1000
    while True:
      await asyncio.sleep(interval)
      try:
        self._sample()
      except Exception as e:
        # A failing probe ends sampling; the run itself carries on
        logger.warning('profiler.sample_failed', error=str(e))
        return

  def stop(self) -> None:
    """Cancel periodic sampling. Safe to call repeatedly or before start()."""
    if self._task is None:
      return
    self._task.cancel()
    self._task = None
    logger.debug('profiler.stopped', samples=len(self.collector.memory_samples))

  def measure_after_gc(self) -> int:
    """Force a collection and return retained growth since the baseline.

    Returns:
        Bytes above the baseline (negative when memory shrank); 0 when no
        baseline was recorded, in which case this measurement becomes it
    """
    self._collect()
    current = self._sample()
    if self.baseline is None:
      self.baseline = current
      return 0
    return current - self.baseline

  async def __aenter__(self) -> 'MemoryProfiler':
    self.start()
    return self

  async def __aexit__(self, exc_type, exc, tb) -> None:
    self.stop()
