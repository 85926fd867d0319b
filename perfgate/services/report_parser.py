"""Parse test-runner output into a normalized result.

parse_test_output() never raises. It returns one of three variants and callers
are expected to handle each of them:

  StructuredReport  a full TestReport (native document, pytest-json-report or
                    vitest JSON)
  FallbackCounts    pass/fail/skip counts only (playwright stats or text
                    summary lines such as "3 passed, 1 failed")
  Unparseable       nothing usable was found
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.test_report import (
  SuiteReport,
  TestCaseReport,
  TestError,
  TestReport,
  TestStatus,
  TestSummary,
)

logger = StructuredLogger(__name__)

COUNT_PATTERNS = {
  'passed': re.compile(r'(\d+) passed'),
  'failed': re.compile(r'(\d+) failed'),
  'skipped': re.compile(r'(\d+) skipped'),
  'errors': re.compile(r'(\d+) errors?\b'),
}

PYTEST_OUTCOMES = {
  'passed': TestStatus.PASSED,
  'xpassed': TestStatus.PASSED,
  'failed': TestStatus.FAILED,
  'error': TestStatus.FAILED,
  'skipped': TestStatus.SKIPPED,
  'xfailed': TestStatus.SKIPPED,
}

VITEST_STATUSES = {
  'passed': TestStatus.PASSED,
  'failed': TestStatus.FAILED,
  'skipped': TestStatus.SKIPPED,
  'pending': TestStatus.SKIPPED,
  'todo': TestStatus.TODO,
}


@dataclass(frozen=True)
class StructuredReport:
  report: TestReport
  source: str


@dataclass(frozen=True)
class FallbackCounts:
  passed: int = 0
  failed: int = 0
  skipped: int = 0
  source: str = 'text'

  @property
  def total(self) -> int:
    return self.passed + self.failed + self.skipped


@dataclass(frozen=True)
class Unparseable:
  reason: str


ParseResult = Union[StructuredReport, FallbackCounts, Unparseable]


def _load_json(text: str) -> Optional[Any]:
  stripped = text.strip()
  if not stripped:
    return None
  try:
    return json.loads(stripped)
  except ValueError:
    pass

  # Reporters often print banners around the JSON body
  start, end = stripped.find('{'), stripped.rfind('}')
  if start == -1 or end <= start:
    return None
  try:
    return json.loads(stripped[start:end + 1])
  except ValueError:
    return None


def _summarize(suites: List[SuiteReport]) -> TestSummary:
  tests = [test for suite in suites for test in suite.tests]
  counts = {status: sum(1 for test in tests if test.status == status) for status in TestStatus}
  return TestSummary(
    total=len(tests),
    passed=counts[TestStatus.PASSED],
    failed=counts[TestStatus.FAILED],
    skipped=counts[TestStatus.SKIPPED],
    todo=counts[TestStatus.TODO],
    success=counts[TestStatus.FAILED] == 0,
  )


def _suite_status(tests: List[TestCaseReport]) -> TestStatus:
  if any(test.status == TestStatus.FAILED for test in tests):
    return TestStatus.FAILED
  if tests and all(test.status == TestStatus.SKIPPED for test in tests):
    return TestStatus.SKIPPED
  return TestStatus.PASSED


def _pytest_error(entry: Dict[str, Any]) -> Optional[TestError]:
  for phase in ('setup', 'call', 'teardown'):
    stage = entry.get(phase) or {}
    if stage.get('outcome') in ('failed', 'error') or 'crash' in stage:
      crash = stage.get('crash') or {}
      return TestError(
        message=crash.get('message') or str(stage.get('longrepr', 'test failed')),
        type='AssertionError' if phase == 'call' else f'{phase.capitalize()}Error',
        stack=stage.get('longrepr'),
      )
  return None


def _from_pytest_json(document: Dict[str, Any]) -> TestReport:
  """Build a report from a pytest-json-report document."""
  grouped: Dict[str, List[TestCaseReport]] = {}
  for entry in document.get('tests', []):
    nodeid = entry.get('nodeid', '')
    file, _, test_name = nodeid.partition('::')
    status = PYTEST_OUTCOMES.get(entry.get('outcome', ''), TestStatus.FAILED)
    duration = sum((entry.get(phase) or {}).get('duration', 0.0) for phase in ('setup', 'call', 'teardown'))
    grouped.setdefault(file, []).append(
      TestCaseReport(
        name=test_name or nodeid,
        status=status,
        duration=duration * 1000,
        error=_pytest_error(entry) if status == TestStatus.FAILED else None,
      )
    )

  suites = [
    SuiteReport(
      name=file,
      file=file,
      duration=sum(test.duration for test in tests),
      tests=tests,
      status=_suite_status(tests),
    )
    for file, tests in grouped.items()
  ]
  summary = _summarize(suites)
  exit_code = document.get('exitcode')
  if exit_code is not None:
    summary.success = summary.success and exit_code == 0
  return TestReport(summary=summary, suites=suites, duration=float(document.get('duration', 0.0)) * 1000)


def _from_vitest_json(document: Dict[str, Any]) -> TestReport:
  """Build a report from a vitest (jest-compatible) JSON document."""
  suites = []
  for result in document.get('testResults', []):
    tests = []
    for assertion in result.get('assertionResults', []):
      status = VITEST_STATUSES.get(assertion.get('status', ''), TestStatus.FAILED)
      failures = assertion.get('failureMessages') or []
      tests.append(
        TestCaseReport(
          name=assertion.get('fullName') or assertion.get('title', ''),
          status=status,
          duration=float(assertion.get('duration') or 0.0),
          error=TestError(message='\n'.join(failures)) if failures else None,
        )
      )
    start, end = result.get('startTime'), result.get('endTime')
    suites.append(
      SuiteReport(
        name=result.get('name', ''),
        file=result.get('name', ''),
        duration=float(end - start) if start is not None and end is not None else 0.0,
        tests=tests,
        status=_suite_status(tests),
      )
    )

  summary = _summarize(suites)
  if not suites:
    summary = TestSummary(
      total=document.get('numTotalTests', 0),
      passed=document.get('numPassedTests', 0),
      failed=document.get('numFailedTests', 0),
      skipped=document.get('numPendingTests', 0),
      todo=document.get('numTodoTests', 0),
      success=document.get('numFailedTests', 0) == 0,
    )
  if 'success' in document:
    summary.success = bool(document['success']) and summary.success
  return TestReport(summary=summary, suites=suites)


def _from_playwright_stats(stats: Dict[str, Any]) -> FallbackCounts:
  return FallbackCounts(
    passed=int(stats.get('passed', stats.get('expected', 0)) or 0),
    failed=int(stats.get('failed', stats.get('unexpected', 0)) or 0),
    skipped=int(stats.get('skipped', 0) or 0),
    source='playwright',
  )


def parse_json_document(document: Any) -> Optional[ParseResult]:
  """Recognise a decoded JSON document, or return None."""
  if not isinstance(document, dict):
    return None

  try:
    if 'summary' in document and 'suites' in document:
      return StructuredReport(report=TestReport.model_validate(document), source='native')
    if 'summary' in document and 'tests' in document:
      return StructuredReport(report=_from_pytest_json(document), source='pytest-json-report')
    if 'testResults' in document or 'numTotalTests' in document:
      return StructuredReport(report=_from_vitest_json(document), source='vitest')
    if isinstance(document.get('stats'), dict):
      return _from_playwright_stats(document['stats'])
  except (ValidationError, TypeError, ValueError, AttributeError) as e:
    logger.warning('parser.json_document_invalid', error=str(e))
  return None


def parse_text_counts(text: str) -> Optional[FallbackCounts]:
  """Extract "N passed / N failed / N skipped" counts from runner output."""
  found = {key: pattern.search(text) for key, pattern in COUNT_PATTERNS.items()}
  if not any(found.values()):
    return None
  counts = {key: int(match.group(1)) if match else 0 for key, match in found.items()}
  return FallbackCounts(
    passed=counts['passed'],
    failed=counts['failed'] + counts['errors'],
    skipped=counts['skipped'],
  )


def parse_test_output(text: str) -> ParseResult:
  """Parse raw runner output.

  Args:
      text: Captured stdout (or the contents of a report file)

  Returns:
      StructuredReport, FallbackCounts or Unparseable
  """
  if not text or not text.strip():
    return Unparseable(reason='empty output')

  document = _load_json(text)
  if document is not None:
    parsed = parse_json_document(document)
    if parsed is not None:
      return parsed
    logger.debug('parser.json_unrecognised')

  counts = parse_text_counts(text)
  if counts is not None:
    return counts
  return Unparseable(reason='no JSON report or summary line found')
