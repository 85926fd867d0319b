"""Performance baselines, trends, regressions and analysis output.

Also holds PerformanceThresholds, the single record every analyzer constant
comes from. Comparisons against these thresholds are strict (`>` / `<`), so a
value sitting exactly on a threshold does not cross it.
"""

from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from perfgate.models.base import CamelModel

OVERALL_TEST_NAME = '__overall__'

MIB = 1024 * 1024


class Severity(str, Enum):
  """Regression severity, ordered low to critical."""

  LOW = 'low'
  MEDIUM = 'medium'
  HIGH = 'high'
  CRITICAL = 'critical'


class RegressionMetric(str, Enum):
  DURATION = 'duration'
  MEMORY = 'memory'
  CACHE_HIT_RATE = 'cacheHitRate'
  ERROR_RATE = 'errorRate'


class AlertType(str, Enum):
  SLACK = 'slack'
  EMAIL = 'email'
  WEBHOOK = 'webhook'


ALERTABLE_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)


class PerformanceBaseline(CamelModel):
  """Last accepted performance snapshot for one test (or the whole suite).

  Attributes:
      test_name: `__overall__` or `suite::test`
      average_duration: Milliseconds
      memory_usage: Bytes
      cache_lookups: Cache hits plus misses behind cache_hit_rate; 0 when
          the snapshot carries no cache data
  """

  timestamp: str
  test_name: str
  average_duration: float = 0.0
  memory_usage: float = 0.0
  api_call_count: int = 0
  cache_hit_rate: float = 0.0
  cache_lookups: int = 0
  error_rate: float = 0.0


class PerformanceTrend(CamelModel):
  test_name: str
  baseline: PerformanceBaseline
  current: PerformanceBaseline
  regression: bool
  improvement: bool
  change_percent: float = Field(..., description='Duration change versus baseline, in percent')
  analysis: str


class PerformanceRegression(CamelModel):
  test_name: str
  metric: RegressionMetric
  baseline: float
  current: float
  regression_percent: float
  severity: Severity
  recommendation: str


class AnalysisSummary(CamelModel):
  total_tests: int = 0
  regressions: int = 0
  improvements: int = 0
  stable: int = 0
  critical_issues: int = 0


class AlertConfig(CamelModel):
  """An alert intent; delivery is the dispatcher's concern."""

  type: AlertType = AlertType.SLACK
  severity: Severity
  message: str
  data: Dict[str, Any] = Field(default_factory=dict)


class PerformanceAnalysis(CamelModel):
  summary: AnalysisSummary = Field(default_factory=AnalysisSummary)
  trends: List[PerformanceTrend] = Field(default_factory=list)
  regressions: List[PerformanceRegression] = Field(default_factory=list)
  recommendations: List[str] = Field(default_factory=list)
  alerting: List[AlertConfig] = Field(default_factory=list)


class PerformanceThresholds(BaseModel):
  """Every tunable constant used by regression detection.

  Percentages are expressed as percent (20 means 20 %), rates as fractions.
  """

  # Regression triggers
  max_duration_increase: float = Field(default=20.0, description='Percent')
  max_memory_increase: float = Field(default=30.0, description='Percent')
  min_cache_hit_rate: float = Field(default=0.8, description='Absolute rate (0-1)')
  max_error_rate_increase: float = Field(default=5.0, description='Percent change')
  critical_duration_threshold: float = Field(default=10_000, description='Milliseconds')
  critical_memory_threshold: float = Field(default=500 * MIB, description='Bytes')

  # Improvement triggers
  min_duration_decrease: float = Field(default=10.0, description='Percent')
  min_memory_decrease: float = Field(default=10.0, description='Percent')
  min_cache_hit_rate_increase: float = Field(default=0.05, description='Absolute rate')
  min_error_rate_decrease: float = Field(default=10.0, description='Percent change')

  # Severity tiers
  duration_high_percent: float = 50.0
  duration_medium_percent: float = 30.0
  memory_high_percent: float = 100.0
  memory_medium_percent: float = 50.0
  cache_critical_rate: float = Field(default=0.5, description='Absolute rate below which it is critical')
  cache_high_percent: float = 30.0
  cache_medium_percent: float = 15.0
  error_critical_rate: float = Field(default=0.10, description='Absolute rate above which it is critical')
  error_high_percent: float = 50.0
  error_medium_percent: float = 20.0

  # Run-level rules
  stable_run_max_regression_ratio: float = Field(
    default=0.10, description='Share of regressed trends still promoted to baseline'
  )
  broad_regression_ratio: float = Field(
    default=0.30, description='Share of regressed trends that triggers a broad-regression notice'
  )
  stable_trend_band: float = Field(default=5.0, description='Percent band described as stable')
