"""Pydantic models for metrics, test reports and performance analysis."""

from perfgate.models.metrics import (
  ApiCallSample,
  CacheEventSample,
  MemorySample,
  RateLimitSample,
  TestMetrics,
)
from perfgate.models.performance import (
  OVERALL_TEST_NAME,
  AlertConfig,
  AlertType,
  AnalysisSummary,
  PerformanceAnalysis,
  PerformanceBaseline,
  PerformanceRegression,
  PerformanceThresholds,
  PerformanceTrend,
  RegressionMetric,
  Severity,
)
from perfgate.models.test_report import (
  QualityGate,
  QualityGateResult,
  SuiteReport,
  TestCaseReport,
  TestReport,
  TestStatus,
  TestSummary,
)

__all__ = [
  'ApiCallSample',
  'CacheEventSample',
  'MemorySample',
  'RateLimitSample',
  'TestMetrics',
  'OVERALL_TEST_NAME',
  'AlertConfig',
  'AlertType',
  'AnalysisSummary',
  'PerformanceAnalysis',
  'PerformanceBaseline',
  'PerformanceRegression',
  'PerformanceThresholds',
  'PerformanceTrend',
  'RegressionMetric',
  'Severity',
  'QualityGate',
  'QualityGateResult',
  'SuiteReport',
  'TestCaseReport',
  'TestReport',
  'TestStatus',
  'TestSummary',
]
