"""Quality gates evaluated against a finished TestReport.

Gate results are informational: they are embedded in the report and logged,
but they do not decide the run's success.
"""

from typing import Callable, Dict, List, Optional

from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.performance import MIB
from perfgate.models.test_report import GateOperator, QualityGate, QualityGateResult, TestReport

logger = StructuredLogger(__name__)

EQ_TOLERANCE = 0.001


def default_quality_gates() -> List[QualityGate]:
  return [
    QualityGate(
      name='Test Success Rate',
      type='coverage',
      threshold=100,
      operator=GateOperator.EQ,
      description='All tests must pass',
    ),
    QualityGate(
      name='Average Test Duration',
      type='performance',
      threshold=5000,
      operator=GateOperator.LT,
      description='Average test duration should be under 5 seconds',
    ),
    QualityGate(
      name='Cache Hit Rate',
      type='metrics',
      threshold=0.8,
      operator=GateOperator.GTE,
      description='Cache hit rate should be at least 80%',
    ),
    QualityGate(
      name='API Error Rate',
      type='metrics',
      threshold=0.05,
      operator=GateOperator.LT,
      description='API error rate should be under 5%',
    ),
    QualityGate(
      name='Memory Growth',
      type='performance',
      threshold=100 * MIB,
      operator=GateOperator.LT,
      description='Memory growth should be under 100MB',
    ),
  ]


def _success_rate(report: TestReport) -> float:
  summary = report.summary
  return summary.passed / summary.total * 100 if summary.total > 0 else 0.0


GATE_VALUES: Dict[str, Callable[[TestReport], float]] = {
  'Test Success Rate': _success_rate,
  'Average Test Duration': lambda report: report.performance.average_test_duration,
  'Cache Hit Rate': lambda report: report.metrics.cache.hit_rate if report.metrics else 0.0,
  'API Error Rate': lambda report: report.metrics.api_calls.error_rate if report.metrics else 0.0,
  'Memory Growth': lambda report: report.metrics.memory.growth if report.metrics else 0.0,
}


def gate_passes(operator: GateOperator, value: float, threshold: float) -> bool:
  if operator == GateOperator.GT:
    return value > threshold
  if operator == GateOperator.GTE:
    return value >= threshold
  if operator == GateOperator.LT:
    return value < threshold
  if operator == GateOperator.LTE:
    return value <= threshold
  return abs(value - threshold) < EQ_TOLERANCE


def evaluate_quality_gates(
  report: TestReport,
  gates: Optional[List[QualityGate]] = None,
) -> List[QualityGateResult]:
  """Evaluate gates against a report.

  Args:
      report: Finished report
      gates: Gates to evaluate; defaults to default_quality_gates()

  Returns:
      One result per gate, in order. Gates with an unknown name evaluate
      against 0.
  """
  results = []
  for gate in gates if gates is not None else default_quality_gates():
    extractor = GATE_VALUES.get(gate.name)
    value = float(extractor(report)) if extractor else 0.0
    passed = gate_passes(gate.operator, value, gate.threshold)
    op = gate.operator.value
    message = (
      f'✅ {gate.name}: {value:g} {op} {gate.threshold:g}'
      if passed
      else f'❌ {gate.name}: {value:g} not {op} {gate.threshold:g}'
    )
    results.append(QualityGateResult(gate=gate, value=value, passed=passed, message=message))

  failed = [result.gate.name for result in results if not result.passed]
  if failed:
    logger.warning('quality_gates.failed', failed_gates=failed)
  return results
