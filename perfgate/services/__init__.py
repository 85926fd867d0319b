"""Services package: collection, persistence, analysis, alerting and execution."""

from perfgate.services.artifact_store import ArtifactStore
from perfgate.services.baseline_store import BaselineStore
from perfgate.services.memory_profiler import MemoryProfiler
from perfgate.services.metrics_collector import MetricsCollector
from perfgate.services.performance_analyzer import PerformanceAnalyzer, compute_analysis
from perfgate.services.test_suite_runner import TestSuiteConfig, TestSuiteRunner, run_test_suite

__all__ = [
  'ArtifactStore',
  'BaselineStore',
  'MemoryProfiler',
  'MetricsCollector',
  'PerformanceAnalyzer',
  'TestSuiteConfig',
  'TestSuiteRunner',
  'compute_analysis',
  'run_test_suite',
]
