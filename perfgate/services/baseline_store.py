"""Persisted performance baselines.

The store is a single JSON document, `performance-baselines.json`, mapping a
test identifier to its last accepted PerformanceBaseline. It is read once per
analysis and replaced as a whole at most once; there is no locking, so callers
must not run concurrent analyses against the same directory.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Union

from pydantic import ValidationError

from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.performance import PerformanceBaseline

logger = StructuredLogger(__name__)

BASELINE_FILENAME = 'performance-baselines.json'


class BaselineStore:
  """Reads and replaces the baseline file under a directory."""

  def __init__(self, baseline_dir: Union[str, Path]):
    self.baseline_dir = Path(baseline_dir)

  @property
  def path(self) -> Path:
    return self.baseline_dir / BASELINE_FILENAME

  def exists(self) -> bool:
    return self.path.exists()

  def load(self) -> Dict[str, PerformanceBaseline]:
    """Load stored baselines.

    Returns:
        Mapping of test name to baseline; empty when the file is absent,
        corrupt or unreadable
    """
    if not self.path.exists():
      return {}

    try:
      data = json.loads(self.path.read_text(encoding='utf-8'))
      if not isinstance(data, dict):
        raise ValueError('baseline document is not an object')
      return {name: PerformanceBaseline.model_validate(value) for name, value in data.items()}
    except (OSError, ValueError, ValidationError) as e:
      logger.warning('baselines.load_failed', path=str(self.path), error=str(e))
      return {}

  def save(self, baselines: Dict[str, PerformanceBaseline]) -> bool:
    """Replace the stored baselines atomically.

    Args:
        baselines: Mapping of test name to baseline

    Returns:
        True when the file was written
    """
    payload = {name: baseline.to_json_dict() for name, baseline in baselines.items()}
    try:
      self.baseline_dir.mkdir(parents=True, exist_ok=True)
      fd, tmp_path = tempfile.mkstemp(dir=self.baseline_dir, prefix='.baselines-', suffix='.tmp')
      try:
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
          json.dump(payload, handle, indent=2)
        os.replace(tmp_path, self.path)
      except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    except OSError as e:
      logger.error('baselines.save_failed', path=str(self.path), error=str(e))
      return False

    logger.info('baselines.updated', path=str(self.path), tests=len(baselines))
    return True

  def reset(self) -> bool:
    """Delete the baseline file.

    Returns:
        True when a file was removed
    """
    if not self.path.exists():
      return False
    self.path.unlink()
    logger.info('baselines.reset', path=str(self.path))
    return True
