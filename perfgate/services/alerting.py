"""Alert delivery for suite failures and performance regressions.

Channels are thin transport adapters. The dispatcher isolates every channel:
a failing delivery is logged and counted, never raised, so alerting can not
change the outcome of a run.
"""

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from perfgate.lib import metrics as prom
from perfgate.lib.structured_logger import StructuredLogger
from perfgate.models.performance import AlertConfig, AlertType, Severity

logger = StructuredLogger(__name__)

DEFAULT_SLACK_CHANNEL = '#alerts'
DEFAULT_TIMEOUT_SECONDS = 10.0


class AlertDeliveryError(Exception):
  """Raised by a channel when a notification could not be delivered."""


def alert_kind(alert: AlertConfig) -> str:
  """Human-facing alert category (e.g. test_failure, performance_regression)."""
  return str(alert.data.get('kind', 'performance_regression'))


class HttpChannel:
  """Base for channels that POST JSON with retries on 5xx and timeouts."""

  name = 'webhook'

  def __init__(
    self,
    url: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_retries: int = 3,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
  ):
    if not url:
      raise ValueError(f'{self.name} channel requires a URL')
    self.url = url
    self.timeout = timeout
    self.max_retries = max_retries
    self.transport = transport
    self._sleep = sleep

  def build_payload(self, alert: AlertConfig) -> Dict[str, Any]:
    return alert.to_json_dict()

  async def send(self, alert: AlertConfig) -> None:
    """POST the alert payload.

    Raises:
        AlertDeliveryError: If every attempt failed or the endpoint rejected
            the request
    """
    payload = self.build_payload(alert)
    last_error: Optional[Exception] = None

    async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
      for attempt in range(1, self.max_retries + 1):
        try:
          response = await client.post(self.url, json=payload)
          response.raise_for_status()
          return
        except httpx.HTTPStatusError as e:
          last_error = e
          # Client errors will not succeed on retry
          if e.response.status_code < 500:
            break
        except httpx.HTTPError as e:
          last_error = e

        if attempt < self.max_retries:
          wait_time = 0.5 * 2 ** (attempt - 1)
          logger.warning('alert.retry', channel=self.name, attempt=attempt, wait_seconds=wait_time)
          await self._sleep(wait_time)

    raise AlertDeliveryError(f'{self.name} delivery failed: {last_error}') from last_error


class SlackChannel(HttpChannel):
  """Slack incoming-webhook channel."""

  name = 'slack'

  def __init__(self, webhook: str, channel: str = DEFAULT_SLACK_CHANNEL, **kwargs):
    super().__init__(webhook, **kwargs)
    self.channel = channel or DEFAULT_SLACK_CHANNEL

  def build_payload(self, alert: AlertConfig) -> Dict[str, Any]:
    return {
      'channel': self.channel,
      'text': alert.message,
      'attachments': [
        {
          'color': 'danger' if alert.severity == Severity.CRITICAL else 'warning',
          'fields': [
            {'title': 'Type', 'value': alert_kind(alert), 'short': True},
            {'title': 'Severity', 'value': alert.severity.value, 'short': True},
          ],
        }
      ],
    }


class WebhookChannel(HttpChannel):
  """Generic JSON webhook; posts the alert document as-is."""

  name = 'webhook'


@dataclass
class SmtpSettings:
  host: str
  port: int = 587
  secure: bool = True
  user: Optional[str] = None
  password: Optional[str] = None
  sender: str = 'perfgate@localhost'


class EmailChannel:
  """Plain-text e-mail channel. smtplib runs in a worker thread."""

  name = 'email'

  def __init__(self, recipients: List[str], smtp: SmtpSettings, smtp_factory: Callable[..., Any] = smtplib.SMTP):
    if not recipients:
      raise ValueError('email channel requires at least one recipient')
    self.recipients = recipients
    self.smtp = smtp
    self._smtp_factory = smtp_factory

  def build_message(self, alert: AlertConfig) -> EmailMessage:
    message = EmailMessage()
    message['Subject'] = f'[perfgate] {alert.severity.value.upper()}: {alert_kind(alert)}'
    message['From'] = self.smtp.sender
    message['To'] = ', '.join(self.recipients)
    body = [alert.message, '']
    body += [f'{key}: {value}' for key, value in alert.data.items()]
    message.set_content('\n'.join(body))
    return message

  def _send_sync(self, message: EmailMessage) -> None:
    with self._smtp_factory(self.smtp.host, self.smtp.port) as client:
      if self.smtp.secure:
        client.starttls()
      if self.smtp.user:
        client.login(self.smtp.user, self.smtp.password or '')
      client.send_message(message)

  async def send(self, alert: AlertConfig) -> None:
    try:
      await asyncio.to_thread(self._send_sync, self.build_message(alert))
    except (smtplib.SMTPException, OSError) as e:
      raise AlertDeliveryError(f'email delivery failed: {e}') from e


@dataclass
class DeliveryOutcome:
  channel: str
  message: str
  delivered: bool
  error: Optional[str] = None


@dataclass
class AlertDispatcher:
  """Fans alert intents out to every configured channel."""

  channels: List[Any] = field(default_factory=list)

  @property
  def enabled(self) -> bool:
    return bool(self.channels)

  async def _deliver(self, channel, alert: AlertConfig) -> DeliveryOutcome:
    try:
      await channel.send(alert)
    except Exception as e:
      # Delivery failures must never affect the run outcome
      logger.error('alert.delivery_failed', channel=channel.name, severity=alert.severity.value, error=str(e))
      prom.record_alert_delivery(channel.name, 'failed')
      return DeliveryOutcome(channel=channel.name, message=alert.message, delivered=False, error=str(e))

    logger.info('alert.delivered', channel=channel.name, severity=alert.severity.value)
    prom.record_alert_delivery(channel.name, 'sent')
    return DeliveryOutcome(channel=channel.name, message=alert.message, delivered=True)

  async def dispatch(self, alerts: List[AlertConfig]) -> List[DeliveryOutcome]:
    """Deliver each alert to each channel concurrently.

    Returns:
        One outcome per (alert, channel) pair
    """
    if not self.channels or not alerts:
      return []
    return list(
      await asyncio.gather(*(self._deliver(channel, alert) for alert in alerts for channel in self.channels))
    )


def build_dispatcher(
  slack_webhook: Optional[str] = None,
  slack_channel: Optional[str] = None,
  webhook_url: Optional[str] = None,
  email_recipients: Optional[List[str]] = None,
  smtp: Optional[SmtpSettings] = None,
) -> AlertDispatcher:
  """Build a dispatcher from optional channel settings."""
  channels: List[Any] = []
  if slack_webhook:
    channels.append(SlackChannel(slack_webhook, channel=slack_channel or DEFAULT_SLACK_CHANNEL))
  if webhook_url:
    channels.append(WebhookChannel(webhook_url))
  if email_recipients and smtp:
    channels.append(EmailChannel(email_recipients, smtp))
  return AlertDispatcher(channels=channels)


def suite_alert(kind: str, severity: Severity, message: str, data: Dict[str, Any]) -> AlertConfig:
  """Alert intent for a suite-level condition."""
  return AlertConfig(type=AlertType.SLACK, severity=severity, message=message, data={'kind': kind, **data})
