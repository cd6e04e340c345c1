"""
core/notifier.py -- The "send notification" capability.

Email delivery is an external collaborator. The auth core only needs to hand
off a short message addressed to an account; how it reaches the user is the
receiver's business. Two implementations:

  WebhookNotifier -- POSTs JSON to NOTIFY_WEBHOOK_URL with requests. The
                     mailer service behind that URL renders and sends.
  LogNotifier     -- writes the message to the log. Used when no webhook is
                     configured (dev, tests).

Delivery is best-effort. A failed notification is logged and swallowed: a
security notice that cannot be delivered must never undo the credential
change that triggered it.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, audit/.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

import requests

from core.config import Settings

logger = logging.getLogger("civicauth.notifier")


@dataclass
class Notification:
    recipient: str
    subject: str
    template: str  # "welcome", "credentials_changed", "provider_linked"
    context: dict = field(default_factory=dict)


class LogNotifier:
    def send(self, notification: Notification) -> bool:
        logger.info(
            "Notification %r to %s: %s",
            notification.template,
            notification.recipient,
            notification.subject,
        )
        return True


class WebhookNotifier:
    """Deliver notifications by POSTing them to a mailer webhook."""

    def __init__(self, url: str, timeout: float = 5.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, notification: Notification) -> bool:
        try:
            resp = self._session.post(self.url, json=asdict(notification), timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Notification %r to %s not delivered: %s", notification.template, notification.recipient, exc)
            return False
        return True

    def close(self) -> None:
        self._session.close()


def build_notifier(settings: Settings) -> LogNotifier | WebhookNotifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url, timeout=settings.notify_timeout_seconds)
    return LogNotifier()
