"""Prometheus-compatible metrics for suite runs and performance analysis.

Collectors live in the default registry; the CLI exports them as a textfile
after each run so a node exporter (or CI artifact upload) can pick them up.
"""

from pathlib import Path
from typing import Union

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, write_to_textfile

# Collection metrics
api_call_duration_seconds = Histogram(
  'perfgate_api_call_duration_seconds',
  'API call duration observed during test execution',
  ['endpoint', 'status'],
  buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
)

cache_events_total = Counter(
  'perfgate_cache_events_total',
  'Cache lookups observed during test execution',
  ['result'],
)

memory_usage_bytes = Gauge(
  'perfgate_memory_usage_bytes',
  'Most recent memory sample recorded by the profiler',
)

# Run metrics
suite_runs_total = Counter(
  'perfgate_suite_runs_total',
  'Completed test suite runs',
  ['outcome'],
)

suite_duration_seconds = Histogram(
  'perfgate_suite_duration_seconds',
  'Wall-clock duration of a test suite run',
  buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

# Analysis metrics
analyses_total = Counter(
  'perfgate_analyses_total',
  'Performance analyses computed',
)

regressions_total = Counter(
  'perfgate_regressions_total',
  'Regression rows detected',
  ['metric', 'severity'],
)

baseline_promotions_total = Counter(
  'perfgate_baseline_promotions_total',
  'Runs promoted into the baseline store',
)

alerts_total = Counter(
  'perfgate_alert_deliveries_total',
  'Alert delivery attempts per channel',
  ['channel', 'status'],
)


def record_api_call(endpoint: str, status: int, duration_ms: float):
  """Record an API call observed by the metrics collector.

  Args:
      endpoint: API endpoint path
      status: HTTP status code
      duration_ms: Call duration in milliseconds
  """
  api_call_duration_seconds.labels(endpoint=endpoint, status=str(status)).observe(
    duration_ms / 1000
  )


def record_cache_event(hit: bool):
  """Record a cache hit or miss."""
  cache_events_total.labels(result='hit' if hit else 'miss').inc()


def record_memory_sample(heap_used: int):
  """Update the memory gauge with the latest sample."""
  memory_usage_bytes.set(heap_used)


def record_suite_run(success: bool, duration_seconds: float):
  """Record a completed suite run.

  Args:
      success: Overall run success (tests and performance)
      duration_seconds: Wall-clock duration in seconds
  """
  suite_runs_total.labels(outcome='success' if success else 'failure').inc()
  suite_duration_seconds.observe(duration_seconds)


def record_analysis(regressions):
  """Record one analysis and the regression rows it produced.

  Args:
      regressions: PerformanceRegression rows from the analysis
  """
  analyses_total.inc()
  for regression in regressions:
    regressions_total.labels(
      metric=regression.metric.value, severity=regression.severity.value
    ).inc()


def record_baseline_promotion():
  """Record that a run was promoted into the baseline store."""
  baseline_promotions_total.inc()


def record_alert_delivery(channel: str, status: str):
  """Record an alert delivery attempt.

  Args:
      channel: Channel name ('slack', 'email', 'webhook')
      status: 'sent' or 'failed'
  """
  alerts_total.labels(channel=channel, status=status).inc()


def export_textfile(path: Union[str, Path]) -> Path:
  """Write the default registry in the Prometheus text format.

  Args:
      path: Destination file

  Returns:
      Path that was written
  """
  path = Path(path)
  path.parent.mkdir(parents=True, exist_ok=True)
  write_to_textfile(str(path), REGISTRY)
  return path
