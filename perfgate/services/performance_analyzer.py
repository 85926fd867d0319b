"""Performance regression analysis.

compute_analysis() is the pure core: it turns a TestReport and the stored
baselines into a PerformanceAnalysis without touching the filesystem.
PerformanceAnalyzer wraps it with baseline loading, artifact persistence and
the conditional baseline update.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from perfgate.lib import metrics as prom
from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.performance import (
  ALERTABLE_SEVERITIES,
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
from perfgate.models.test_report import TestReport, TestStatus
from perfgate.services.artifact_store import ArtifactStore
from perfgate.services.baseline_store import BaselineStore

logger = StructuredLogger(__name__)

DEFAULT_THRESHOLDS = PerformanceThresholds()

RECOMMENDATIONS = {
  RegressionMetric.DURATION: (
    'Consider profiling the test to identify slow operations. '
    'Check for inefficient database queries, API calls, or synchronous operations.'
  ),
  RegressionMetric.MEMORY: (
    'Look for memory leaks, large object allocations, or inefficient data structures. '
    'Consider implementing object pooling or lazy loading.'
  ),
  RegressionMetric.CACHE_HIT_RATE: (
    'Review cache configuration, TTL settings, and cache key strategies. '
    'Consider cache warming or optimization of cache usage patterns.'
  ),
  RegressionMetric.ERROR_RATE: (
    'Investigate error logs, API rate limits, network connectivity, or service reliability issues. '
    'Consider implementing circuit breakers or retry mechanisms.'
  ),
}

BROAD_REGRESSION_NOTICE = (
  'High number of performance regressions detected. '
  'Consider reviewing recent code changes or infrastructure updates.'
)
METRIC_NOTICES = {
  RegressionMetric.DURATION: (
    'Test execution times have increased. Consider optimizing database queries, '
    'reducing API calls, or improving test setup efficiency.'
  ),
  RegressionMetric.MEMORY: (
    'Memory usage has increased. Check for memory leaks, optimize data structures, '
    'or implement better cleanup procedures.'
  ),
  RegressionMetric.CACHE_HIT_RATE: (
    'Cache performance has degraded. Review cache configuration, key strategies, and TTL settings.'
  ),
  RegressionMetric.ERROR_RATE: (
    'API error rates have increased. Check failing endpoints, rate limits, and upstream service health.'
  ),
}
CRITICAL_NOTICE = 'Critical performance issues detected. Immediate investigation and remediation required.'


def calculate_percent_change(baseline: float, current: float) -> float:
  """Relative change from baseline to current, in percent.

  A zero baseline yields 0 when current is also zero and 100 otherwise.
  """
  if baseline == 0:
    return 0.0 if current == 0 else 100.0
  return ((current - baseline) / baseline) * 100


def extract_baselines(report: TestReport) -> Dict[str, PerformanceBaseline]:
  """Derive current baselines from a report.

  One entry for the whole suite plus one per passed test, keyed `suite::test`.
  Failed and skipped tests are not baseline-eligible.
  """
  metrics = report.metrics
  baselines = {
    OVERALL_TEST_NAME: PerformanceBaseline(
      timestamp=report.timestamp,
      test_name=OVERALL_TEST_NAME,
      average_duration=report.performance.average_test_duration,
      memory_usage=report.performance.memory_usage.peak,
      api_call_count=metrics.api_calls.total if metrics else 0,
      cache_hit_rate=metrics.cache.hit_rate if metrics else 0.0,
      cache_lookups=metrics.cache.hits + metrics.cache.misses if metrics else 0,
      error_rate=metrics.api_calls.error_rate if metrics else 0.0,
    )
  }

  for suite in report.suites:
    for test in suite.tests:
      if test.status != TestStatus.PASSED:
        continue
      name = f'{suite.name}::{test.name}'
      baselines[name] = PerformanceBaseline(
        timestamp=report.timestamp,
        test_name=name,
        average_duration=test.duration,
      )

  return baselines


def is_regression(
  baseline: PerformanceBaseline,
  current: PerformanceBaseline,
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> bool:
  """True when any single metric breaches its regression threshold.

  The absolute cache-hit floor only applies when the current snapshot saw
  cache lookups; per-test baselines carry no cache data.
  """
  cache_observed = current.cache_lookups > 0
  return (
    calculate_percent_change(baseline.average_duration, current.average_duration) > thresholds.max_duration_increase
    or calculate_percent_change(baseline.memory_usage, current.memory_usage) > thresholds.max_memory_increase
    or (cache_observed and current.cache_hit_rate < thresholds.min_cache_hit_rate)
    or calculate_percent_change(baseline.error_rate, current.error_rate) > thresholds.max_error_rate_increase
    or current.average_duration > thresholds.critical_duration_threshold
    or current.memory_usage > thresholds.critical_memory_threshold
  )


def is_improvement(
  baseline: PerformanceBaseline,
  current: PerformanceBaseline,
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> bool:
  """True when any metric improved past its improvement threshold."""
  return (
    calculate_percent_change(baseline.average_duration, current.average_duration) < -thresholds.min_duration_decrease
    or calculate_percent_change(baseline.memory_usage, current.memory_usage) < -thresholds.min_memory_decrease
    or current.cache_hit_rate - baseline.cache_hit_rate > thresholds.min_cache_hit_rate_increase
    or calculate_percent_change(baseline.error_rate, current.error_rate) < -thresholds.min_error_rate_decrease
  )


def generate_trend_analysis(change_percent: float, thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS) -> str:
  if abs(change_percent) < thresholds.stable_trend_band:
    return 'Performance is stable with minimal variance from baseline.'
  if change_percent > 0:
    return f'Performance degraded by {change_percent:.1f}% compared to baseline. Consider investigation.'
  return f'Performance improved by {abs(change_percent):.1f}% compared to baseline.'


def calculate_trends(
  baselines: Dict[str, PerformanceBaseline],
  current: Dict[str, PerformanceBaseline],
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> List[PerformanceTrend]:
  """Pair each current baseline with its stored counterpart.

  Tests without a stored baseline produce no trend. A regressed trend is never
  also reported as an improvement.
  """
  trends = []
  for name, now in current.items():
    before = baselines.get(name)
    if before is None:
      continue

    change = calculate_percent_change(before.average_duration, now.average_duration)
    regression = is_regression(before, now, thresholds)
    trends.append(
      PerformanceTrend(
        test_name=name,
        baseline=before,
        current=now,
        regression=regression,
        improvement=not regression and is_improvement(before, now, thresholds),
        change_percent=change,
        analysis=generate_trend_analysis(change, thresholds),
      )
    )
  return trends


def calculate_severity(
  metric: RegressionMetric,
  current: float,
  percent_change: float,
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> Severity:
  """Classify one regressed metric.

  An absolute critical threshold is checked first, then the percentage tiers.

  Args:
      metric: Metric kind
      current: Current absolute value
      percent_change: Worsening versus baseline, in percent (the size of the
          drop for cache hit rate)

  Returns:
      Severity tier
  """
  t = thresholds
  if metric == RegressionMetric.DURATION:
    if current > t.critical_duration_threshold:
      return Severity.CRITICAL
    tiers = (t.duration_high_percent, t.duration_medium_percent)
  elif metric == RegressionMetric.MEMORY:
    if current > t.critical_memory_threshold:
      return Severity.CRITICAL
    tiers = (t.memory_high_percent, t.memory_medium_percent)
  elif metric == RegressionMetric.CACHE_HIT_RATE:
    if current < t.cache_critical_rate:
      return Severity.CRITICAL
    tiers = (t.cache_high_percent, t.cache_medium_percent)
  else:
    if current > t.error_critical_rate:
      return Severity.CRITICAL
    tiers = (t.error_high_percent, t.error_medium_percent)

  high, medium = tiers
  if percent_change > high:
    return Severity.HIGH
  if percent_change > medium:
    return Severity.MEDIUM
  return Severity.LOW


def get_recommendation(metric: RegressionMetric) -> str:
  return RECOMMENDATIONS.get(metric, 'Review the specific metric for optimization opportunities.')


def _worsened_metrics(trend: PerformanceTrend):
  before, now = trend.baseline, trend.current
  if now.average_duration > before.average_duration:
    yield RegressionMetric.DURATION, before.average_duration, now.average_duration
  if now.memory_usage > before.memory_usage:
    yield RegressionMetric.MEMORY, before.memory_usage, now.memory_usage
  if now.cache_hit_rate < before.cache_hit_rate:
    yield RegressionMetric.CACHE_HIT_RATE, before.cache_hit_rate, now.cache_hit_rate
  if now.error_rate > before.error_rate:
    yield RegressionMetric.ERROR_RATE, before.error_rate, now.error_rate


def detect_regressions(
  trends: List[PerformanceTrend],
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> List[PerformanceRegression]:
  """Emit one row per worsened metric of every regressed trend.

  regression_percent is positive for every row; a cache row carries the size
  of the hit-rate drop.
  """
  rows = []
  for trend in trends:
    if not trend.regression:
      continue
    for metric, before, now in _worsened_metrics(trend):
      percent = calculate_percent_change(before, now)
      if metric == RegressionMetric.CACHE_HIT_RATE:
        percent = abs(percent)
      rows.append(
        PerformanceRegression(
          test_name=trend.test_name,
          metric=metric,
          baseline=before,
          current=now,
          regression_percent=percent,
          severity=calculate_severity(metric, now, percent, thresholds),
          recommendation=get_recommendation(metric),
        )
      )
  return rows


def generate_recommendations(
  trends: List[PerformanceTrend],
  regressions: List[PerformanceRegression],
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> List[str]:
  recommendations = []
  regressed = sum(1 for trend in trends if trend.regression)
  if regressed > len(trends) * thresholds.broad_regression_ratio:
    recommendations.append(BROAD_REGRESSION_NOTICE)

  present = {row.metric for row in regressions}
  for metric, notice in METRIC_NOTICES.items():
    if metric in present:
      recommendations.append(notice)

  if any(row.severity == Severity.CRITICAL for row in regressions):
    recommendations.append(CRITICAL_NOTICE)
  return recommendations


def generate_alerts(regressions: List[PerformanceRegression]) -> List[AlertConfig]:
  """Alert intents for high and critical rows only."""
  return [
    AlertConfig(
      type=AlertType.SLACK,
      severity=row.severity,
      message=(
        f'Performance regression detected in {row.test_name}: '
        f'{row.metric.value} increased by {row.regression_percent:.1f}%'
      ),
      data={
        'testName': row.test_name,
        'metric': row.metric.value,
        'baseline': row.baseline,
        'current': row.current,
        'regressionPercent': row.regression_percent,
        'recommendation': row.recommendation,
      },
    )
    for row in regressions
    if row.severity in ALERTABLE_SEVERITIES
  ]


def compute_analysis(
  report: TestReport,
  baselines: Dict[str, PerformanceBaseline],
  thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS,
) -> PerformanceAnalysis:
  """Analyze a report against stored baselines. Performs no I/O."""
  trends = calculate_trends(baselines, extract_baselines(report), thresholds)
  regressions = detect_regressions(trends, thresholds)

  regressed = sum(1 for trend in trends if trend.regression)
  improved = sum(1 for trend in trends if trend.improvement)
  summary = AnalysisSummary(
    total_tests=len(trends),
    regressions=regressed,
    improvements=improved,
    stable=len(trends) - regressed - improved,
    critical_issues=sum(1 for row in regressions if row.severity == Severity.CRITICAL),
  )

  return PerformanceAnalysis(
    summary=summary,
    trends=trends,
    regressions=regressions,
    recommendations=generate_recommendations(trends, regressions, thresholds),
    alerting=generate_alerts(regressions),
  )


def is_stable_run(summary: AnalysisSummary, thresholds: PerformanceThresholds = DEFAULT_THRESHOLDS) -> bool:
  """Whether a run may be promoted into the baseline store."""
  return summary.critical_issues == 0 and summary.regressions <= summary.total_tests * thresholds.stable_run_max_regression_ratio


@dataclass
class AnalysisOutcome:
  analysis: PerformanceAnalysis
  baseline_updated: bool
  analysis_path: Optional[Path] = None


class PerformanceAnalyzer:
  """Runs analyses against a baseline store and persists the results."""

  def __init__(
    self,
    baseline_store: BaselineStore,
    artifact_store: ArtifactStore,
    thresholds: Optional[PerformanceThresholds] = None,
  ):
    self.baseline_store = baseline_store
    self.artifact_store = artifact_store
    self.thresholds = thresholds or PerformanceThresholds()

  def analyze(self, report: TestReport) -> AnalysisOutcome:
    """Analyze a report and apply the persistence rules.

    The analysis is always written as an artifact. The stored baselines are
    replaced by the current extraction only for a stable run.
    """
    baselines = self.baseline_store.load()
    analysis = compute_analysis(report, baselines, self.thresholds)
    summary = analysis.summary

    logger.info(
      'analysis.completed',
      total_tests=summary.total_tests,
      regressions=summary.regressions,
      improvements=summary.improvements,
      critical_issues=summary.critical_issues,
    )
    prom.record_analysis(analysis.regressions)

    analysis_path = self.artifact_store.save_analysis(analysis)

    baseline_updated = False
    if is_stable_run(summary, self.thresholds):
      baseline_updated = self.baseline_store.save(extract_baselines(report))
      if baseline_updated:
        prom.record_baseline_promotion()
    else:
      logger.warning(
        'baselines.promotion_skipped',
        regressions=summary.regressions,
        critical_issues=summary.critical_issues,
      )

    return AnalysisOutcome(analysis=analysis, baseline_updated=baseline_updated, analysis_path=analysis_path)

  def analyze_performance(self, report: TestReport) -> PerformanceAnalysis:
    return self.analyze(report).analysis


def generate_performance_report(analysis: PerformanceAnalysis) -> str:
  """Render a plain-text summary of an analysis."""
  summary = analysis.summary
  top_regressions = sorted(analysis.regressions, key=lambda row: row.regression_percent, reverse=True)[:5]
  top_improvements = sorted(
    (trend for trend in analysis.trends if trend.improvement), key=lambda trend: trend.change_percent
  )[:5]

  lines = [
    'Performance Analysis Report',
    '===========================',
    '',
    'Summary:',
    f'- Total Tests: {summary.total_tests}',
    f'- Regressions: {summary.regressions}',
    f'- Improvements: {summary.improvements}',
    f'- Stable: {summary.stable}',
    f'- Critical Issues: {summary.critical_issues}',
    '',
  ]
  if summary.critical_issues > 0:
    lines += ['CRITICAL ISSUES DETECTED', '']

  lines.append('Top Regressions:')
  lines += [
    f'- {row.test_name} ({row.metric.value}): +{row.regression_percent:.1f}% [{row.severity.value}]'
    for row in top_regressions
  ] or ['- none']
  lines += ['', 'Top Improvements:']
  lines += [f'- {trend.test_name}: {trend.change_percent:.1f}%' for trend in top_improvements] or ['- none']
  lines += ['', 'Recommendations:']
  lines += [f'- {text}' for text in analysis.recommendations] or ['- none']
  return '\n'.join(lines) + '\n'
