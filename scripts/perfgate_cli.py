"""perfgate command line interface.

Commands:
- run: Execute the test suite, analyze performance and write artifacts
- analyze: Analyze an existing test report against the stored baselines
- report: Print or write the text report for the latest analysis
- cleanup: Prune old artifacts and optionally reset baselines
- watch: Re-run the suite whenever files under the test path change
- status: Show the latest run, analysis and stored artifacts

Exit code is 0 on success and 1 on test failure or critical regression.
"""

import asyncio
import shlex
import sys
import time
from pathlib import Path
from typing import Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from perfgate.lib.config import Settings, load_env_files
from perfgate.lib.metrics import export_textfile
from perfgate.lib.structured_logger import configure_logging
from perfgate.models.performance import PerformanceAnalysis, Severity
from perfgate.models.test_report import TestReport
from perfgate.services.artifact_store import LATEST_REPORT, ArtifactStore
from perfgate.services.baseline_store import BaselineStore
from perfgate.services.performance_analyzer import PerformanceAnalyzer, generate_performance_report
from perfgate.services.test_suite_runner import REPORTERS, AlertingConfig, TestSuiteConfig, TestSuiteResult, TestSuiteRunner

console = Console()

METRICS_TEXTFILE = 'perfgate.prom'
SEVERITY_STYLES = {
  Severity.CRITICAL: 'bold red',
  Severity.HIGH: 'red',
  Severity.MEDIUM: 'yellow',
  Severity.LOW: 'dim',
}


def _settings(ctx: click.Context) -> Settings:
  return ctx.obj['settings']


def _reports_dir(ctx: click.Context, output_dir: Optional[str]) -> str:
  return output_dir or _settings(ctx).reports_dir


def _baseline_dir(ctx: click.Context, output_dir: Optional[str]) -> str:
  settings = _settings(ctx)
  if settings.baseline_dir:
    return settings.baseline_dir
  return str(Path(_reports_dir(ctx, output_dir)) / 'baselines')


def _export_metrics(ctx: click.Context, reports_dir: str) -> None:
  if _settings(ctx).metrics_enabled:
    export_textfile(Path(reports_dir) / METRICS_TEXTFILE)


def _print_analysis(analysis: PerformanceAnalysis) -> None:
  summary = analysis.summary
  table = Table(title='Performance Analysis')
  table.add_column('Tests', justify='right')
  table.add_column('Regressions', justify='right')
  table.add_column('Improvements', justify='right')
  table.add_column('Stable', justify='right')
  table.add_column('Critical', justify='right')
  table.add_row(
    str(summary.total_tests),
    str(summary.regressions),
    str(summary.improvements),
    str(summary.stable),
    f'[bold red]{summary.critical_issues}[/bold red]' if summary.critical_issues else '0',
  )
  console.print(table)

  if analysis.regressions:
    rows = Table(title='Regressions')
    rows.add_column('Test', style='cyan')
    rows.add_column('Metric')
    rows.add_column('Baseline', justify='right')
    rows.add_column('Current', justify='right')
    rows.add_column('Change', justify='right')
    rows.add_column('Severity')
    for row in analysis.regressions:
      style = SEVERITY_STYLES[row.severity]
      rows.add_row(
        escape(row.test_name),
        row.metric.value,
        f'{row.baseline:g}',
        f'{row.current:g}',
        f'{row.regression_percent:+.1f}%',
        f'[{style}]{row.severity.value}[/{style}]',
      )
    console.print(rows)

  for text in analysis.recommendations:
    console.print(f'[yellow]- {escape(text)}[/yellow]')


def _print_run(result: TestSuiteResult) -> None:
  summary = result.report.summary
  table = Table(title='Test Suite')
  table.add_column('Total', justify='right')
  table.add_column('Passed', justify='right', style='green')
  table.add_column('Failed', justify='right', style='red')
  table.add_column('Skipped', justify='right')
  table.add_column('Duration', justify='right')
  table.add_row(
    str(summary.total),
    str(summary.passed),
    str(summary.failed),
    str(summary.skipped),
    f'{result.execution_time / 1000:.2f}s',
  )
  console.print(table)

  for gate in result.report.quality_gates:
    console.print(f'  {escape(gate.message)}')

  if result.analysis is not None:
    _print_analysis(result.analysis)

  artifacts: Dict[str, Optional[Path]] = vars(result.artifacts)
  for key, path in artifacts.items():
    if path:
      console.print(f'[dim]{key}: {path}[/dim]')

  if result.success:
    console.print('\n[bold green]✓ Test suite passed[/bold green]')
  else:
    console.print('\n[bold red]✗ Test suite failed[/bold red]')
    if result.stderr and result.report.suites and result.report.suites[0].file == 'runner':
      console.print(f'[red]{escape(result.stderr.strip())}[/red]')


@click.group()
@click.option('--log-level', default=None, help='Log level (defaults to LOG_LEVEL)')
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]):
  """Performance-regression gate for integration test runs."""
  load_env_files()
  settings = Settings.from_env()
  configure_logging(log_level or settings.log_level)
  ctx.ensure_object(dict)
  ctx.obj['settings'] = settings


def _suite_config(ctx: click.Context, **options) -> TestSuiteConfig:
  slack_webhook = options.pop('slack_webhook')
  slack_channel = options.pop('slack_channel')
  command = options.pop('command')
  required_env = options.pop('required_env')
  # Flags only ever switch these on; otherwise settings decide
  for flag in ('bail', 'ci_mode'):
    if not options[flag]:
      options[flag] = None

  config = TestSuiteConfig.from_settings(_settings(ctx), **options)
  if slack_webhook:
    config.alerting = AlertingConfig(slack_webhook=slack_webhook, slack_channel=slack_channel)
  elif config.alerting and slack_channel:
    config.alerting.slack_channel = slack_channel
  if command:
    config.command = shlex.split(command)
  if required_env:
    config.required_env = tuple(required_env)
  return config


def run_options(func):
  """Options shared by `run` and `watch`."""
  decorators = [
    click.option('--pattern', 'test_pattern', default=None, help='Test path or pattern'),
    click.option('--timeout', type=float, default=None, help='Wall-clock timeout in seconds'),
    click.option('--retries', type=int, default=None, help='Retries for failing tests'),
    click.option('--parallel/--no-parallel', default=None, help='Run tests in parallel'),
    click.option('--coverage/--no-coverage', default=None, help='Collect coverage'),
    click.option('--bail', is_flag=True, help='Stop on first failure'),
    click.option('--ci', 'ci_mode', is_flag=True, help='CI mode (no output echo)'),
    click.option('--reporter', type=click.Choice(REPORTERS), default=None, help='Reporter type'),
    click.option('--metrics/--no-metrics', 'collect_metrics', default=None, help='Collect runtime metrics'),
    click.option('--baselines/--no-baselines', 'performance_baselines', default=None, help='Analyze against baselines'),
    click.option('--output-dir', default=None, help='Reports directory'),
    click.option('--slack-webhook', default=None, help='Slack incoming webhook URL'),
    click.option('--slack-channel', default=None, help='Slack channel'),
    click.option('--command', default=None, help='Test command to run instead of pytest'),
    click.option('--require-env', 'required_env', multiple=True, help='Required environment variable'),
  ]
  for decorator in reversed(decorators):
    func = decorator(func)
  return func


@cli.command()
@run_options
@click.pass_context
def run(ctx: click.Context, **options):
  """Run the test suite with performance analysis."""
  config = _suite_config(ctx, **options)
  console.print(f'[bold]Running test suite[/bold] [dim]({config.output_dir})[/dim]')

  result = asyncio.run(TestSuiteRunner(config).run_test_suite())
  _print_run(result)
  _export_metrics(ctx, config.output_dir)
  sys.exit(0 if result.success else 1)


@cli.command()
@click.option('--report', 'report_file', default=None, help='Test report JSON (defaults to the latest report)')
@click.option('--output-dir', default=None, help='Reports directory')
@click.pass_context
def analyze(ctx: click.Context, report_file: Optional[str], output_dir: Optional[str]):
  """Analyze an existing test report against the stored baselines."""
  reports_dir = _reports_dir(ctx, output_dir)
  path = Path(report_file) if report_file else Path(reports_dir) / LATEST_REPORT
  if not path.is_file():
    console.print(f'[red]Error: report not found: {path}[/red]')
    sys.exit(1)

  try:
    report = TestReport.model_validate_json(path.read_text(encoding='utf-8'))
  except ValueError as e:
    console.print(f'[red]Error: invalid test report {path}: {escape(str(e))}[/red]')
    sys.exit(1)

  analyzer = PerformanceAnalyzer(BaselineStore(_baseline_dir(ctx, output_dir)), ArtifactStore(reports_dir))
  outcome = analyzer.analyze(report)
  _print_analysis(outcome.analysis)
  if outcome.baseline_updated:
    console.print('[green]✓ Baselines updated[/green]')
  _export_metrics(ctx, reports_dir)
  sys.exit(1 if outcome.analysis.summary.critical_issues > 0 else 0)


@cli.command()
@click.option('--output-dir', default=None, help='Reports directory')
@click.option('--out', 'out_file', default=None, help='Write the report to this file instead of stdout')
@click.pass_context
def report(ctx: click.Context, output_dir: Optional[str], out_file: Optional[str]):
  """Print the text report for the latest analysis."""
  analysis = ArtifactStore(_reports_dir(ctx, output_dir)).load_latest_analysis()
  if analysis is None:
    console.print('[red]Error: no performance analysis found[/red]')
    sys.exit(1)

  text = generate_performance_report(analysis)
  if out_file:
    Path(out_file).write_text(text, encoding='utf-8')
    console.print(f'[green]✓ Report written to {out_file}[/green]')
  else:
    click.echo(text)


@cli.command()
@click.option('--older-than', type=float, default=30, help='Remove artifacts older than this many days')
@click.option('--reset-baselines', is_flag=True, help='Also delete stored baselines (destructive!)')
@click.option('--output-dir', default=None, help='Reports directory')
@click.pass_context
def cleanup(ctx: click.Context, older_than: float, reset_baselines: bool, output_dir: Optional[str]):
  """Prune old artifacts and optionally reset baselines."""
  removed = ArtifactStore(_reports_dir(ctx, output_dir)).cleanup(older_than)
  console.print(f'[green]✓ Removed {len(removed)} artifact(s) older than {older_than:g} day(s)[/green]')

  if reset_baselines:
    if BaselineStore(_baseline_dir(ctx, output_dir)).reset():
      console.print('[green]✓ Baselines reset[/green]')
    else:
      console.print('[dim]No baselines to reset[/dim]')


def _snapshot(root: Path) -> Dict[Path, float]:
  if root.is_file():
    return {root: root.stat().st_mtime}
  if not root.is_dir():
    return {}
  return {path: path.stat().st_mtime for path in root.rglob('*.py') if path.is_file()}


@cli.command()
@run_options
@click.option('--interval', type=float, default=1.0, help='Polling interval in seconds')
@click.option('--max-runs', type=int, default=None, hidden=True)
@click.pass_context
def watch(ctx: click.Context, interval: float, max_runs: Optional[int], **options):
  """Re-run the suite whenever watched files change."""
  config = _suite_config(ctx, **options)
  root = Path(config.test_pattern or '.')
  console.print(f'[bold]Watching {root} for changes[/bold] [dim](Ctrl+C to stop)[/dim]')

  runs = 0
  last: Optional[Dict[Path, float]] = None
  try:
    while max_runs is None or runs < max_runs:
      current = _snapshot(root)
      if current != last:
        last = current
        runs += 1
        result = asyncio.run(TestSuiteRunner(config).run_test_suite())
        _print_run(result)
        _export_metrics(ctx, config.output_dir)
        continue
      time.sleep(interval)
  except KeyboardInterrupt:
    console.print('\n[dim]Stopped watching[/dim]')


@cli.command()
@click.option('--output-dir', default=None, help='Reports directory')
@click.pass_context
def status(ctx: click.Context, output_dir: Optional[str]):
  """Show the latest run, analysis and stored artifacts."""
  reports_dir = _reports_dir(ctx, output_dir)
  store = ArtifactStore(reports_dir)

  latest = store.load_latest_report()
  if latest is None:
    console.print('[yellow]No test report found[/yellow]')
  else:
    summary = latest.summary
    table = Table(title=f'Latest Run ({latest.timestamp})')
    table.add_column('Total', justify='right')
    table.add_column('Passed', justify='right', style='green')
    table.add_column('Failed', justify='right', style='red')
    table.add_column('Skipped', justify='right')
    table.add_column('Success')
    table.add_row(
      str(summary.total),
      str(summary.passed),
      str(summary.failed),
      str(summary.skipped),
      '[green]yes[/green]' if summary.success else '[red]no[/red]',
    )
    console.print(table)

  analysis = store.load_latest_analysis()
  if analysis is None:
    console.print('[yellow]No performance analysis found[/yellow]')
  else:
    _print_analysis(analysis)

  artifacts = Table(title='Artifacts')
  artifacts.add_column('Kind', style='cyan')
  artifacts.add_column('Count', justify='right')
  for kind, count in store.summary().items():
    artifacts.add_row(kind, str(count))
  baselines = BaselineStore(_baseline_dir(ctx, output_dir)).load()
  artifacts.add_row('baselines', str(len(baselines)))
  console.print(artifacts)


def main():
  cli(prog_name='perfgate')


if __name__ == '__main__':
  main()
