"""End-to-end test suite execution with performance analysis.

One run: validate the environment, spawn the test command, normalize its
output into a TestReport, analyze it against the stored baselines, write
artifacts and deliver alerts. The run is successful only when the suite passed
and no critical performance regression was found.
"""

import asyncio
import codecs
import contextlib
import os
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from perfgate.lib import metrics as prom
from perfgate.lib.config import DEFAULT_REPORTS_DIR, RuntimeCapabilities, Settings, default_runtime
from perfgate.lib.run_context import generate_run_id
from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.metrics import TestMetrics
from perfgate.models.performance import PerformanceAnalysis, PerformanceThresholds, Severity
from perfgate.models.test_report import (
  MemoryUsageReport,
  PerformanceReport,
  QualityGate,
  SlowTest,
  SuiteReport,
  TestCaseReport,
  TestError,
  TestReport,
  TestStatus,
  TestSummary,
)
from perfgate.services.alerting import AlertDispatcher, DeliveryOutcome, SmtpSettings, build_dispatcher, suite_alert
from perfgate.services.artifact_store import ArtifactStore, artifact_timestamp
from perfgate.services.baseline_store import BaselineStore
from perfgate.services.memory_profiler import DEFAULT_INTERVAL_MS, MemoryProfiler
from perfgate.services.metrics_collector import MetricsCollector
from perfgate.services.performance_analyzer import PerformanceAnalyzer
from perfgate.services.quality_gates import evaluate_quality_gates
from perfgate.services.report_parser import (
  FallbackCounts,
  ParseResult,
  StructuredReport,
  Unparseable,
  parse_test_output,
)

logger = StructuredLogger(__name__)

REPORT_PATH_ENV = 'PERFGATE_REPORT_PATH'
RUN_ID_ENV = 'PERFGATE_RUN_ID'
DEFAULT_REQUIRED_ENV = ('GITHUB_TEST_TOKEN',)
DEFAULT_TIMEOUT_SECONDS = 300.0
SLOWEST_TESTS = 10
REPORTERS = ('verbose', 'json', 'all')


class SetupError(Exception):
  """Raised when the environment is not fit to run the suite."""


class TestExecutionError(Exception):
  """Raised when the test command could not be run to completion."""

  __test__ = False


class TestExecutionTimeout(TestExecutionError):
  """Raised when the test command exceeded its wall-clock budget."""


@dataclass
class AlertingConfig:
  slack_webhook: Optional[str] = None
  slack_channel: Optional[str] = None
  webhook_url: Optional[str] = None
  email_recipients: List[str] = field(default_factory=list)
  smtp: Optional[SmtpSettings] = None

  def build_dispatcher(self) -> AlertDispatcher:
    return build_dispatcher(
      slack_webhook=self.slack_webhook,
      slack_channel=self.slack_channel,
      webhook_url=self.webhook_url,
      email_recipients=self.email_recipients,
      smtp=self.smtp,
    )


@dataclass
class TestSuiteConfig:
  """Options for one suite run.

  Attributes:
      test_pattern: Test path or pattern handed to the test command
      timeout: Wall-clock budget in seconds
      reporter: 'verbose', 'json' or 'all'
      command: Base command; defaults to `python -m pytest` with arguments
          derived from the other options. A custom command only receives the
          test pattern.
      required_env: Variables that must be set before anything runs
      coverage_file: Coverage summary copied into the artifacts when present
  """

  __test__ = False

  test_pattern: Optional[str] = None
  output_dir: str = DEFAULT_REPORTS_DIR
  baseline_dir: Optional[str] = None
  timeout: float = DEFAULT_TIMEOUT_SECONDS
  retries: int = 0
  parallel: bool = False
  coverage: bool = True
  bail: bool = False
  ci_mode: bool = False
  reporter: str = 'all'
  collect_metrics: bool = True
  performance_baselines: bool = True
  quality_gates: Optional[List[QualityGate]] = None
  alerting: Optional[AlertingConfig] = None
  command: Optional[Sequence[str]] = None
  required_env: Sequence[str] = DEFAULT_REQUIRED_ENV
  coverage_file: str = 'coverage.json'
  thresholds: Optional[PerformanceThresholds] = None
  profile_interval_ms: int = DEFAULT_INTERVAL_MS
  cwd: Optional[str] = None

  @classmethod
  def from_settings(cls, settings: Settings, **overrides) -> 'TestSuiteConfig':
    """Build a config from process settings, letting explicit options win."""
    values = {
      'output_dir': settings.reports_dir,
      'baseline_dir': settings.baseline_dir,
      'ci_mode': settings.ci_mode,
    }
    if settings.slack_webhook:
      values['alerting'] = AlertingConfig(slack_webhook=settings.slack_webhook, slack_channel=settings.slack_channel)
    values.update({key: value for key, value in overrides.items() if value is not None})
    return cls(**values)

  @property
  def resolved_baseline_dir(self) -> str:
    return self.baseline_dir or str(Path(self.output_dir) / 'baselines')


@dataclass
class Artifacts:
  report_path: Optional[Path] = None
  analysis_path: Optional[Path] = None
  metrics_path: Optional[Path] = None
  coverage_path: Optional[Path] = None


@dataclass
class ExecutionResult:
  exit_code: int
  stdout: str
  stderr: str


@dataclass
class TestSuiteResult:
  """Outcome of one suite run.

  Attributes:
      success: Suite passed and no critical performance issue was found
      execution_time: Milliseconds
  """

  __test__ = False

  success: bool
  report: TestReport
  analysis: Optional[PerformanceAnalysis]
  execution_time: float
  exit_code: int
  stdout: str = ''
  stderr: str = ''
  artifacts: Artifacts = field(default_factory=Artifacts)
  alerts: List[DeliveryOutcome] = field(default_factory=list)
  baseline_updated: bool = False


def build_error_report(message: str, execution_time: float, error_type: str = 'SetupError') -> TestReport:
  """Synthetic single-failure report for runs that never produced results."""
  error = TestError(message=message, type=error_type)
  return TestReport(
    summary=TestSummary(total=0, passed=0, failed=1, skipped=0, todo=0, success=False),
    suites=[
      SuiteReport(
        name='Test Suite Execution',
        file='runner',
        duration=execution_time,
        tests=[
          TestCaseReport(
            name='Test Suite Setup',
            status=TestStatus.FAILED,
            duration=execution_time,
            error=error,
          )
        ],
        status=TestStatus.FAILED,
        errors=[error],
      )
    ],
    metrics=None,
    performance=PerformanceReport(total_test_time=execution_time),
    duration=execution_time,
  )


def build_performance_report(report: TestReport, metrics: TestMetrics, at_end: float = 0) -> PerformanceReport:
  """Fill timing and memory figures the test layer did not provide."""
  performance = report.performance.model_copy(deep=True)
  tests = [(suite, test) for suite in report.suites for test in suite.tests]

  if tests and performance.total_test_time == 0:
    performance.total_test_time = sum(test.duration for _, test in tests)
  if tests and performance.average_test_duration == 0:
    performance.average_test_duration = sum(test.duration for _, test in tests) / len(tests)
  if tests and not performance.slowest_tests:
    ranked = sorted(tests, key=lambda pair: pair[1].duration, reverse=True)[:SLOWEST_TESTS]
    performance.slowest_tests = [
      SlowTest(name=test.name, file=suite.file or suite.name, duration=test.duration) for suite, test in ranked
    ]
  if performance.memory_usage.peak == 0:
    performance.memory_usage = MemoryUsageReport(
      peak=metrics.memory.peak,
      average=metrics.memory.average,
      at_end=at_end,
    )
  return performance


class TestSuiteRunner:
  """Runs a test suite and drives analysis, artifacts and alerting."""

  __test__ = False

  def __init__(
    self,
    config: Optional[TestSuiteConfig] = None,
    env: Optional[Mapping[str, str]] = None,
    runtime: Optional[RuntimeCapabilities] = None,
    collector: Optional[MetricsCollector] = None,
    dispatcher: Optional[AlertDispatcher] = None,
    clock: Callable[[], float] = time.monotonic,
  ):
    self.config = config or TestSuiteConfig()
    self.env: Dict[str, str] = dict(os.environ if env is None else env)
    self.runtime = runtime or default_runtime(self.env)
    self.collector = collector or MetricsCollector(runtime=self.runtime)
    self.profiler = MemoryProfiler(self.collector, self.runtime, self.config.profile_interval_ms)
    self.artifact_store = ArtifactStore(self.config.output_dir)
    self.analyzer = PerformanceAnalyzer(
      BaselineStore(self.config.resolved_baseline_dir),
      self.artifact_store,
      self.config.thresholds,
    )
    if dispatcher is None:
      dispatcher = self.config.alerting.build_dispatcher() if self.config.alerting else AlertDispatcher()
    self.dispatcher = dispatcher
    self._clock = clock

  @property
  def report_path(self) -> Path:
    return Path(self.config.output_dir) / '.pytest-report.json'

  def build_command(self) -> List[str]:
    """Command line for the test process."""
    config = self.config
    if config.command:
      args = list(config.command)
      if config.test_pattern:
        args.append(config.test_pattern)
      return args

    args = [sys.executable, '-m', 'pytest']
    if config.test_pattern:
      args.append(config.test_pattern)
    if config.bail:
      args.append('-x')
    if config.retries > 0:
      args += ['--reruns', str(config.retries)]
    if config.parallel:
      args += ['-n', 'auto']
    if config.coverage:
      args += ['--cov', f'--cov-report=json:{config.coverage_file}']
    if config.reporter in ('verbose', 'all'):
      args.append('-v')
    if config.reporter in ('json', 'all'):
      args += ['--json-report', f'--json-report-file={self.report_path}']
    return args

  def validate_environment(self) -> None:
    """Check required variables.

    Raises:
        SetupError: If any required variable is missing or empty
    """
    missing = [key for key in self.config.required_env if not self.env.get(key)]
    if missing:
      raise SetupError(f'{", ".join(missing)} is required for integration tests')

  def _elapsed_ms(self, started: float) -> float:
    return (self._clock() - started) * 1000

  async def run_test_suite(self) -> TestSuiteResult:
    """Run the suite once.

    Returns:
        TestSuiteResult; setup, spawn and timeout failures are reported as
        unsuccessful results rather than raised
    """
    run_id = generate_run_id()
    started = self._clock()
    logger.info('suite.started', test_pattern=self.config.test_pattern, output_dir=self.config.output_dir)

    try:
      self.validate_environment()
    except SetupError as e:
      # Nothing is written to disk for setup failures
      elapsed = self._elapsed_ms(started)
      logger.error('suite.setup_failed', error=str(e))
      prom.record_suite_run(False, elapsed / 1000)
      return TestSuiteResult(
        success=False,
        report=build_error_report(str(e), elapsed),
        analysis=None,
        execution_time=elapsed,
        exit_code=1,
        stderr=str(e),
      )

    self.collector.reset()
    self.profiler.start()
    try:
      execution = await self._execute(run_id)
    except TestExecutionError as e:
      elapsed = self._elapsed_ms(started)
      logger.error('suite.execution_failed', error=str(e), error_type=type(e).__name__)
      report = build_error_report(str(e), elapsed, error_type=type(e).__name__)
      artifacts = self._write_artifacts(report, artifact_timestamp())
      prom.record_suite_run(False, elapsed / 1000)
      return TestSuiteResult(
        success=False,
        report=report,
        analysis=None,
        execution_time=elapsed,
        exit_code=1,
        stderr=str(e),
        artifacts=artifacts,
      )
    finally:
      self.profiler.stop()

    retained = self.profiler.measure_after_gc()
    logger.debug('suite.memory_retained', retained_bytes=retained)

    report = self._build_report(execution, self._elapsed_ms(started))

    analysis = None
    baseline_updated = False
    timestamp = artifact_timestamp()
    artifacts = Artifacts()
    if self.config.performance_baselines:
      outcome = self.analyzer.analyze(report)
      analysis = outcome.analysis
      baseline_updated = outcome.baseline_updated
      artifacts.analysis_path = outcome.analysis_path

    written = self._write_artifacts(report, timestamp)
    artifacts.report_path = written.report_path
    artifacts.metrics_path = written.metrics_path
    artifacts.coverage_path = written.coverage_path

    critical_issues = analysis.summary.critical_issues if analysis else 0
    deliveries: List[DeliveryOutcome] = []
    if self.dispatcher.enabled and (not report.summary.success or critical_issues > 0):
      deliveries = await self._send_alerts(report, analysis)

    success = report.summary.success and critical_issues == 0
    elapsed = self._elapsed_ms(started)
    prom.record_suite_run(success, elapsed / 1000)
    logger.info(
      'suite.completed',
      success=success,
      exit_code=execution.exit_code,
      total=report.summary.total,
      failed=report.summary.failed,
      critical_issues=critical_issues,
      duration_ms=round(elapsed, 1),
    )

    return TestSuiteResult(
      success=success,
      report=report,
      analysis=analysis,
      execution_time=elapsed,
      exit_code=execution.exit_code,
      stdout=execution.stdout,
      stderr=execution.stderr,
      artifacts=artifacts,
      alerts=deliveries,
      baseline_updated=baseline_updated,
    )

  async def _execute(self, run_id: str) -> ExecutionResult:
    """Spawn the test command and wait for it under the timeout.

    Raises:
        TestExecutionError: If the command could not be started
        TestExecutionTimeout: If it ran past the configured timeout
    """
    args = self.build_command()
    self.report_path.parent.mkdir(parents=True, exist_ok=True)
    self.report_path.unlink(missing_ok=True)
    env = {**self.env, REPORT_PATH_ENV: str(self.report_path), RUN_ID_ENV: run_id}
    logger.info('suite.spawning', command=' '.join(args))

    try:
      proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
        cwd=self.config.cwd,
      )
    except OSError as e:
      raise TestExecutionError(f'Failed to run test command: {e}') from e

    stdout: List[str] = []
    stderr: List[str] = []
    echo = not self.config.ci_mode

    async def pump(stream, sink: List[str], target) -> None:
      decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
      while True:
        chunk = await stream.read(4096)
        if not chunk:
          sink.append(decoder.decode(b'', final=True))
          return
        text = decoder.decode(chunk)
        sink.append(text)
        if echo:
          target.write(text)
          target.flush()

    try:
      await asyncio.wait_for(
        asyncio.gather(pump(proc.stdout, stdout, sys.stdout), pump(proc.stderr, stderr, sys.stderr), proc.wait()),
        timeout=self.config.timeout,
      )
    except asyncio.TimeoutError:
      # The child may exit right at the deadline
      with contextlib.suppress(ProcessLookupError):
        proc.kill()
      await proc.wait()
      raise TestExecutionTimeout(f'Test execution timed out after {self.config.timeout}s')

    return ExecutionResult(exit_code=proc.returncode, stdout=''.join(stdout), stderr=''.join(stderr))

  def _parse(self, execution: ExecutionResult) -> ParseResult:
    if self.report_path.is_file():
      parsed = parse_test_output(self.report_path.read_text(encoding='utf-8', errors='replace'))
      if isinstance(parsed, StructuredReport):
        return parsed
      logger.warning('suite.report_file_unusable', path=str(self.report_path))
    return parse_test_output(execution.stdout)

  def _build_report(self, execution: ExecutionResult, elapsed_ms: float) -> TestReport:
    parsed = self._parse(execution)
    passed_exit = execution.exit_code == 0

    if isinstance(parsed, StructuredReport):
      report = parsed.report.model_copy(deep=True)
      report.summary.success = report.summary.success and passed_exit
      logger.info('suite.output_parsed', source=parsed.source, total=report.summary.total)
    elif isinstance(parsed, FallbackCounts):
      report = TestReport(
        summary=TestSummary(
          total=parsed.total,
          passed=parsed.passed,
          failed=parsed.failed,
          skipped=parsed.skipped,
          success=passed_exit and parsed.failed == 0,
        )
      )
      logger.info('suite.output_parsed', source=parsed.source, total=parsed.total)
    elif isinstance(parsed, Unparseable):
      report = TestReport(summary=TestSummary(success=passed_exit))
      logger.warning('suite.output_unparseable', reason=parsed.reason, exit_code=execution.exit_code)
    else:
      raise TypeError(f'unexpected parse result: {parsed!r}')

    collected = self.collector.get_metrics()
    if self.config.collect_metrics:
      report.metrics = report.metrics or collected
    else:
      report.metrics = None
    samples = self.collector.memory_samples
    report.performance = build_performance_report(report, collected, samples[-1].heap_used if samples else 0)
    report.duration = elapsed_ms
    report.environment = 'ci' if self.config.ci_mode else 'test'
    report.quality_gates = evaluate_quality_gates(report, self.config.quality_gates)
    return report

  def _write_artifacts(self, report: TestReport, timestamp: str) -> Artifacts:
    artifacts = Artifacts(report_path=self.artifact_store.save_report(report, timestamp))
    if report.metrics is not None:
      artifacts.metrics_path = self.artifact_store.save_metrics(self.collector.export_to_json(), timestamp)
    coverage = Path(self.config.cwd or '.') / self.config.coverage_file
    artifacts.coverage_path = self.artifact_store.copy_coverage(coverage, timestamp)
    return artifacts

  async def _send_alerts(self, report: TestReport, analysis: Optional[PerformanceAnalysis]) -> List[DeliveryOutcome]:
    summary = report.summary
    alerts = []
    if not summary.success:
      alerts.append(
        suite_alert(
          'test_failure',
          Severity.HIGH,
          f'Integration tests failed: {summary.failed} of {summary.total} tests failed',
          summary.to_json_dict(),
        )
      )
    if analysis is not None:
      if analysis.summary.critical_issues > 0:
        alerts.append(
          suite_alert(
            'performance_regression',
            Severity.CRITICAL,
            f'Critical performance regressions detected: {analysis.summary.critical_issues} issues',
            analysis.summary.to_json_dict(),
          )
        )
      alerts.extend(analysis.alerting)
    return await self.dispatcher.dispatch(alerts)


async def run_test_suite(config: Optional[TestSuiteConfig] = None, **kwargs) -> TestSuiteResult:
  """Run a suite with a fresh runner."""
  return await TestSuiteRunner(config, **kwargs).run_test_suite()
