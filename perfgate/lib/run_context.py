"""Run identifiers for log correlation.

Each TestSuiteRunner.run_test_suite() call stamps a fresh id into a
contextvar. JSONFormatter copies it into every record, so log lines from the
subprocess pumps, the memory sampler and alert delivery of one suite run can
be grouped even when runs overlap (e.g. `perfgate watch`).
"""

import contextvars
from uuid import uuid4

NO_RUN_ID = 'no-run-id'

# Tasks spawned during a run inherit the value
run_id: contextvars.ContextVar[str] = contextvars.ContextVar('run_id', default=NO_RUN_ID)


def get_run_id() -> str:
  """Id of the suite run in progress, or 'no-run-id' outside of one."""
  return run_id.get()


def set_run_id(value: str) -> None:
  run_id.set(value)


def generate_run_id() -> str:
  """Start a new run: mint an id, make it current and return it.

  The runner also hands the id to the test command as PERFGATE_RUN_ID.
  """
  value = str(uuid4())
  set_run_id(value)
  return value


def reset_run_id() -> None:
  """Leave the run; used by tests between cases."""
  run_id.set(NO_RUN_ID)
