"""Timestamped run artifacts plus `latest-*` pointer copies."""

import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.base import CamelModel
from perfgate.models.performance import PerformanceAnalysis
from perfgate.models.test_report import TestReport

logger = StructuredLogger(__name__)

ANALYSIS_PREFIX = 'performance-analysis'
REPORT_PREFIX = 'test-report'
METRICS_PREFIX = 'metrics'
COVERAGE_PREFIX = 'coverage'

LATEST_ANALYSIS = 'latest-performance-analysis.json'
LATEST_REPORT = 'latest-report.json'
LATEST_METRICS = 'latest-metrics.json'

ARTIFACT_PREFIXES = (ANALYSIS_PREFIX, REPORT_PREFIX, METRICS_PREFIX, COVERAGE_PREFIX)


def artifact_timestamp(now: Optional[datetime] = None) -> str:
  """Filesystem-safe ISO-8601 timestamp, e.g. 2024-05-01T10-20-30-123Z."""
  now = now or datetime.now(timezone.utc)
  iso = now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')
  return iso.replace(':', '-').replace('.', '-')


class ArtifactStore:
  """Writes and reads artifacts under a reports directory.

  Write failures are logged and reported through the return value; they never
  interrupt a run.
  """

  def __init__(self, reports_dir: Union[str, Path]):
    self.reports_dir = Path(reports_dir)

  def _write(self, prefix: str, content: str, latest: Optional[str], timestamp: Optional[str]) -> Optional[Path]:
    stamp = timestamp or artifact_timestamp()
    path = self.reports_dir / f'{prefix}-{stamp}.json'
    try:
      self.reports_dir.mkdir(parents=True, exist_ok=True)
      path.write_text(content, encoding='utf-8')
      if latest:
        (self.reports_dir / latest).write_text(content, encoding='utf-8')
    except OSError as e:
      logger.error('artifact.write_failed', path=str(path), error=str(e))
      return None

    logger.info('artifact.written', path=str(path), kind=prefix)
    return path

  def save_analysis(self, analysis: PerformanceAnalysis, timestamp: Optional[str] = None) -> Optional[Path]:
    return self._write(ANALYSIS_PREFIX, analysis.to_json(), LATEST_ANALYSIS, timestamp)

  def save_report(self, report: TestReport, timestamp: Optional[str] = None) -> Optional[Path]:
    return self._write(REPORT_PREFIX, report.to_json(), LATEST_REPORT, timestamp)

  def save_metrics(self, metrics_json: str, timestamp: Optional[str] = None) -> Optional[Path]:
    """Persist a collector export (see MetricsCollector.export_to_json)."""
    return self._write(METRICS_PREFIX, metrics_json, LATEST_METRICS, timestamp)

  def copy_coverage(self, coverage_file: Union[str, Path], timestamp: Optional[str] = None) -> Optional[Path]:
    """Copy a coverage summary into the reports directory if it exists.

    Returns:
        Destination path, or None when there was nothing to copy
    """
    source = Path(coverage_file)
    if not source.is_file():
      return None

    destination = self.reports_dir / f'{COVERAGE_PREFIX}-{timestamp or artifact_timestamp()}.json'
    try:
      self.reports_dir.mkdir(parents=True, exist_ok=True)
      shutil.copyfile(source, destination)
    except OSError as e:
      logger.error('artifact.write_failed', path=str(destination), error=str(e))
      return None

    logger.info('artifact.written', path=str(destination), kind=COVERAGE_PREFIX)
    return destination

  def _load_latest(self, filename: str, model: type[CamelModel]):
    path = self.reports_dir / filename
    if not path.exists():
      return None
    try:
      return model.model_validate_json(path.read_text(encoding='utf-8'))
    except (OSError, ValueError, ValidationError) as e:
      logger.warning('artifact.read_failed', path=str(path), error=str(e))
      return None

  def load_latest_analysis(self) -> Optional[PerformanceAnalysis]:
    return self._load_latest(LATEST_ANALYSIS, PerformanceAnalysis)

  def load_latest_report(self) -> Optional[TestReport]:
    return self._load_latest(LATEST_REPORT, TestReport)

  def list_artifacts(self) -> List[Path]:
    """Timestamped artifacts, oldest first. Pointer files are not included."""
    if not self.reports_dir.is_dir():
      return []
    found = [
      path
      for path in self.reports_dir.glob('*.json')
      if path.name.startswith(tuple(f'{prefix}-' for prefix in ARTIFACT_PREFIXES))
    ]
    return sorted(found, key=lambda path: path.stat().st_mtime)

  def cleanup(self, older_than_days: float, now: Optional[float] = None) -> List[Path]:
    """Delete timestamped artifacts older than the given age.

    Args:
        older_than_days: Age threshold in days
        now: Reference epoch seconds (defaults to the current time)

    Returns:
        Removed paths
    """
    cutoff = (now if now is not None else time.time()) - older_than_days * 86400
    removed = []
    for path in self.list_artifacts():
      if path.stat().st_mtime < cutoff:
        path.unlink()
        removed.append(path)

    logger.info('artifact.cleanup', removed=len(removed), older_than_days=older_than_days)
    return removed

  def summary(self) -> dict:
    """Counts of stored artifacts by kind, used by the status command."""
    counts = {prefix: 0 for prefix in ARTIFACT_PREFIXES}
    for path in self.list_artifacts():
      for prefix in ARTIFACT_PREFIXES:
        if path.name.startswith(f'{prefix}-'):
          counts[prefix] += 1
          break
    return counts
