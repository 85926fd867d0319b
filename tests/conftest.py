"""Shared test fixtures and utilities for all tests.

Provides report/baseline factories and fake runtime capabilities so unit,
contract and integration tests can build inputs without a real test run.
"""

import sys
from pathlib import Path

# Ensure the project root is first in sys.path so `perfgate` and `scripts`
# resolve to this checkout
project_root = str(Path(__file__).parent.parent.absolute())
if project_root not in sys.path:
  sys.path.insert(0, project_root)
elif sys.path[0] != project_root:
  sys.path.remove(project_root)
  sys.path.insert(0, project_root)

from typing import Iterable, List, Optional, Tuple  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402

from perfgate.lib.config import RuntimeCapabilities  # noqa: E402
from perfgate.lib.run_context import reset_run_id  # noqa: E402
from perfgate.models.metrics import ApiCallMetrics, CacheMetrics, TestMetrics  # noqa: E402
from perfgate.models.performance import MIB, PerformanceBaseline  # noqa: E402
from perfgate.models.test_report import (  # noqa: E402
  MemoryUsageReport,
  PerformanceReport,
  SuiteReport,
  TestCaseReport,
  TestReport,
  TestStatus,
  TestSummary,
)

REPORT_TIMESTAMP = '2024-05-01T10:00:00Z'


class FakeHeap:
  """Callable heap probe returning a settable value (or a scripted sequence)."""

  def __init__(self, value: int = 50 * MIB, sequence: Optional[Iterable[int]] = None):
    self.value = value
    self._sequence = iter(sequence) if sequence is not None else None
    self.calls = 0

  def __call__(self) -> int:
    self.calls += 1
    if self._sequence is not None:
      self.value = next(self._sequence, self.value)
    return self.value


def build_report(
  average_duration: float = 1000.0,
  peak_memory: float = 100 * MIB,
  hit_rate: Optional[float] = 0.9,
  error_rate: float = 0.0,
  api_calls: int = 10,
  tests: Iterable[Tuple[str, str, float, str]] = (),
  success: bool = True,
) -> TestReport:
  """Build a TestReport from a handful of figures.

  Args:
      hit_rate: Cache hit rate; None builds a report without metrics
      tests: (suite, test, duration_ms, status) tuples
  """
  suites: dict = {}
  for suite_name, test_name, duration, status in tests:
    suites.setdefault(suite_name, []).append(
      TestCaseReport(name=test_name, status=TestStatus(status), duration=duration)
    )
  suite_reports: List[SuiteReport] = [
    SuiteReport(name=name, file=f'{name}.py', tests=cases) for name, cases in suites.items()
  ]
  cases = [case for suite in suite_reports for case in suite.tests]

  metrics = None
  if hit_rate is not None:
    metrics = TestMetrics(
      api_calls=ApiCallMetrics(total=api_calls, error_rate=error_rate),
      cache=CacheMetrics(hits=int(hit_rate * 100), misses=100 - int(hit_rate * 100), hit_rate=hit_rate),
    )

  return TestReport(
    summary=TestSummary(
      total=len(cases),
      passed=sum(1 for case in cases if case.status == TestStatus.PASSED),
      failed=sum(1 for case in cases if case.status == TestStatus.FAILED),
      skipped=sum(1 for case in cases if case.status == TestStatus.SKIPPED),
      success=success,
    ),
    suites=suite_reports,
    metrics=metrics,
    performance=PerformanceReport(
      average_test_duration=average_duration,
      memory_usage=MemoryUsageReport(peak=peak_memory, average=peak_memory, at_end=peak_memory),
    ),
    timestamp=REPORT_TIMESTAMP,
  )


def build_baseline(
  test_name: str = '__overall__',
  average_duration: float = 1000.0,
  memory_usage: float = 100 * MIB,
  cache_hit_rate: float = 0.9,
  cache_lookups: int = 100,
  error_rate: float = 0.0,
  api_call_count: int = 10,
) -> PerformanceBaseline:
  return PerformanceBaseline(
    timestamp=REPORT_TIMESTAMP,
    test_name=test_name,
    average_duration=average_duration,
    memory_usage=memory_usage,
    api_call_count=api_call_count,
    cache_hit_rate=cache_hit_rate,
    cache_lookups=cache_lookups,
    error_rate=error_rate,
  )


@pytest.fixture
def make_report():
  """Factory fixture for TestReport instances."""
  return build_report


@pytest.fixture
def make_baseline():
  """Factory fixture for PerformanceBaseline instances."""
  return build_baseline


@pytest.fixture
def fake_heap():
  return FakeHeap()


@pytest.fixture
def make_heap():
  """Factory fixture for scripted heap probes."""
  return FakeHeap


@pytest.fixture
def fake_runtime(fake_heap):
  """Runtime capabilities backed by a fake heap probe and a mock collector."""
  return RuntimeCapabilities(heap_usage=fake_heap, collect_garbage=Mock(), metrics_enabled=False)


@pytest.fixture
def reports_dir(tmp_path):
  path = tmp_path / 'reports'
  path.mkdir()
  return path


@pytest.fixture(autouse=True)
def _reset_run_id():
  yield
  reset_run_id()
