"""Metrics collector for a single test-suite execution.

Accumulates raw samples (API calls, cache lookups, memory snapshots,
rate-limit observations) and reduces them to a TestMetrics summary. All state
is in memory and scoped to one collector instance; call reset() before reusing
a collector for another run.
"""

import csv
import io
import json
import time
from typing import Callable, Dict, List, Optional

from perfgate.lib import metrics as prom
from perfgate.lib.config import RuntimeCapabilities
from perfgate.models.metrics import (
  ApiCallMetrics,
  ApiCallSample,
  CacheEventSample,
  CacheMetrics,
  MemoryMetrics,
  MemorySample,
  RateLimitMetrics,
  RateLimitSample,
  TestMetrics,
)

ERROR_STATUS_THRESHOLD = 400

CSV_HEADER = ['endpoint', 'duration', 'status', 'timestamp']


class MetricsCollector:
  """Collects raw metric samples and aggregates them on demand.

  Recording methods never raise; get_metrics() is a pure reducer over the
  buffers and may be called any number of times.
  """

  def __init__(
    self,
    clock: Callable[[], float] = time.time,
    runtime: Optional[RuntimeCapabilities] = None,
  ):
    """Initialize metrics collector.

    Args:
        clock: Returns the current time in epoch seconds
        runtime: Runtime capabilities; mirrors samples to prometheus when its
            metrics flag is set
    """
    self._clock = clock
    self._mirror = bool(runtime and runtime.metrics_enabled)
    self.api_calls: List[ApiCallSample] = []
    self.cache_events: List[CacheEventSample] = []
    self.memory_samples: List[MemorySample] = []
    self.rate_limits: List[RateLimitSample] = []

  def record_api_call(self, endpoint: str, duration: float, status: int) -> None:
    """Record one API call.

    Args:
        endpoint: Endpoint path or operation name
        duration: Duration in milliseconds
        status: HTTP status code
    """
    self.api_calls.append(
      ApiCallSample(endpoint=endpoint, duration=duration, status=status, timestamp=self._clock())
    )
    if self._mirror:
      prom.record_api_call(endpoint, status, duration)

  def record_cache_hit(self, key: str) -> None:
    self._record_cache_event(key, hit=True)

  def record_cache_miss(self, key: str) -> None:
    self._record_cache_event(key, hit=False)

  def _record_cache_event(self, key: str, hit: bool) -> None:
    self.cache_events.append(CacheEventSample(key=key, hit=hit, timestamp=self._clock()))
    if self._mirror:
      prom.record_cache_event(hit)

  def record_memory_usage(self, heap_used: int) -> None:
    """Record a memory snapshot in bytes."""
    self.memory_samples.append(MemorySample(heap_used=heap_used, timestamp=self._clock()))
    if self._mirror:
      prom.record_memory_sample(heap_used)

  def record_rate_limit(self, resource: str, remaining: int, limit: int) -> None:
    """Record a rate-limit observation for a remote resource."""
    self.rate_limits.append(
      RateLimitSample(resource=resource, remaining=remaining, limit=limit, timestamp=self._clock())
    )

  def get_metrics(self) -> TestMetrics:
    """Aggregate the accumulated samples.

    Returns:
        TestMetrics summary; empty buffers aggregate to zeros
    """
    return TestMetrics(
      api_calls=self._aggregate_api_calls(),
      cache=self._aggregate_cache(),
      memory=self._aggregate_memory(),
      rate_limit=self._aggregate_rate_limits(),
    )

  def _aggregate_api_calls(self) -> ApiCallMetrics:
    total = len(self.api_calls)
    if total == 0:
      return ApiCallMetrics()

    by_endpoint: Dict[str, int] = {}
    for call in self.api_calls:
      by_endpoint[call.endpoint] = by_endpoint.get(call.endpoint, 0) + 1

    errors = sum(1 for call in self.api_calls if call.status >= ERROR_STATUS_THRESHOLD)
    return ApiCallMetrics(
      total=total,
      by_endpoint=by_endpoint,
      average_duration=sum(call.duration for call in self.api_calls) / total,
      error_rate=errors / total,
    )

  def _aggregate_cache(self) -> CacheMetrics:
    hits = sum(1 for event in self.cache_events if event.hit)
    misses = len(self.cache_events) - hits
    lookups = hits + misses
    return CacheMetrics(hits=hits, misses=misses, hit_rate=hits / lookups if lookups else 0.0)

  def _aggregate_memory(self) -> MemoryMetrics:
    if not self.memory_samples:
      return MemoryMetrics()

    values = [sample.heap_used for sample in self.memory_samples]
    return MemoryMetrics(
      peak=max(values),
      average=sum(values) / len(values),
      growth=values[-1] - values[0],
    )

  def _aggregate_rate_limits(self) -> RateLimitMetrics:
    if not self.rate_limits:
      return RateLimitMetrics()

    return RateLimitMetrics(
      triggered=any(sample.remaining <= 0 for sample in self.rate_limits),
      minimum_remaining=min(sample.remaining for sample in self.rate_limits),
    )

  def reset(self) -> None:
    """Clear every sample buffer."""
    self.api_calls.clear()
    self.cache_events.clear()
    self.memory_samples.clear()
    self.rate_limits.clear()

  def export_to_json(self) -> str:
    """Export the summary together with the raw samples, for debugging."""
    payload = {
      'metrics': self.get_metrics().to_json_dict(),
      'raw': {
        'apiCalls': [sample.to_json_dict() for sample in self.api_calls],
        'cacheMetrics': [sample.to_json_dict() for sample in self.cache_events],
        'memorySnapshots': [sample.to_json_dict() for sample in self.memory_samples],
        'rateLimitInfo': [sample.to_json_dict() for sample in self.rate_limits],
      },
    }
    return json.dumps(payload, indent=2)

  def export_to_csv(self) -> str:
    """Export API call samples as CSV (one row per call)."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator='\n')
    writer.writerow(CSV_HEADER)
    for call in self.api_calls:
      writer.writerow([call.endpoint, call.duration, call.status, call.timestamp])
    return buffer.getvalue()
