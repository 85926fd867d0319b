"""Configuration and runtime capabilities.

Environment variables are read from an explicit mapping rather than ambient
globals so services stay testable without a real process environment.
"""

import gc
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import psutil
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_REPORTS_DIR = './reports/integration'
TRUTHY = {'1', 'true', 'yes', 'on'}


def load_env_files(paths: Iterable[str] = ('.env', '.env.local')) -> list[Path]:
  """Load environment variables from dotenv files that exist.

  Values already present in the process environment win.

  Args:
      paths: Candidate dotenv files, in load order

  Returns:
      Files that were loaded
  """
  loaded = []
  for candidate in paths:
    path = Path(candidate)
    if path.exists():
      load_dotenv(path, override=False)
      loaded.append(path)
  return loaded


def _flag(env: Mapping[str, str], key: str, default: bool = False) -> bool:
  value = env.get(key)
  if value is None:
    return default
  return value.strip().lower() in TRUTHY


@dataclass
class RuntimeCapabilities:
  """Process-level capabilities handed to the profiler and collector.

  Attributes:
      heap_usage: Returns current memory usage in bytes
      collect_garbage: Forces a collection; None when the runtime cannot
      metrics_enabled: Mirror samples into prometheus collectors
  """

  heap_usage: Callable[[], int]
  collect_garbage: Optional[Callable[[], Any]] = None
  metrics_enabled: bool = False


def _resident_set_size() -> int:
  return psutil.Process().memory_info().rss


def default_runtime(env: Optional[Mapping[str, str]] = None) -> RuntimeCapabilities:
  """Build runtime capabilities for the current process.

  Args:
      env: Environment mapping (defaults to os.environ)

  Returns:
      RuntimeCapabilities backed by psutil and the gc module
  """
  env = os.environ if env is None else env
  return RuntimeCapabilities(
    heap_usage=_resident_set_size,
    collect_garbage=gc.collect,
    metrics_enabled=_flag(env, 'PERFGATE_METRICS', default=True),
  )


class Settings(BaseModel):
  """Process-wide settings resolved from the environment."""

  reports_dir: str = Field(default=DEFAULT_REPORTS_DIR, description='Artifact output directory')
  baseline_dir: Optional[str] = Field(
    default=None, description='Baseline directory (defaults to <reports_dir>/baselines)'
  )
  ci_mode: bool = Field(default=False, description='Running under CI')
  metrics_enabled: bool = Field(default=True, description='Export prometheus metrics')
  log_level: str = Field(default='INFO', description='Log level name')
  slack_webhook: Optional[str] = Field(default=None, description='Slack incoming webhook URL')
  slack_channel: str = Field(default='#alerts', description='Slack channel override')

  @classmethod
  def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'Settings':
    """Resolve settings from an environment mapping.

    Args:
        env: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance
    """
    env = os.environ if env is None else env
    return cls(
      reports_dir=env.get('PERFGATE_REPORTS_DIR', DEFAULT_REPORTS_DIR),
      baseline_dir=env.get('PERFGATE_BASELINE_DIR'),
      ci_mode=_flag(env, 'CI'),
      metrics_enabled=_flag(env, 'PERFGATE_METRICS', default=True),
      log_level=env.get('LOG_LEVEL', 'INFO'),
      slack_webhook=env.get('SLACK_WEBHOOK_URL') or None,
      slack_channel=env.get('SLACK_CHANNEL', '#alerts'),
    )

  @property
  def resolved_baseline_dir(self) -> str:
    return self.baseline_dir or str(Path(self.reports_dir) / 'baselines')
