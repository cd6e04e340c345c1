"""
tests/test_notifier.py -- Tests for core/notifier.py.

Delivery is best-effort: a failing webhook returns False and never raises.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import requests

from core.config import Settings
from core.notifier import LogNotifier, Notification, WebhookNotifier, build_notifier

NOTE = Notification(recipient="a@example.com", subject="Hello", template="welcome", context={"username": "a"})


def test_webhook_posts_json():
    session = MagicMock()
    notifier = WebhookNotifier("https://mailer.example/hook", timeout=2.0, session=session)
    assert notifier.send(NOTE) is True
    session.post.assert_called_once()
    args, kwargs = session.post.call_args
    assert args == ("https://mailer.example/hook",)
    assert kwargs["json"]["template"] == "welcome"
    assert kwargs["json"]["context"] == {"username": "a"}
    assert kwargs["timeout"] == 2.0


def test_webhook_failure_is_swallowed():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("mailer down")
    notifier = WebhookNotifier("https://mailer.example/hook", session=session)
    assert notifier.send(NOTE) is False


def test_webhook_http_error_is_swallowed():
    session = MagicMock()
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502")
    assert WebhookNotifier("https://mailer.example/hook", session=session).send(NOTE) is False


def test_build_notifier_selects_implementation():
    assert isinstance(build_notifier(Settings(_env_file=None, debug=True)), LogNotifier)
    webhook = build_notifier(Settings(_env_file=None, debug=True, notify_webhook_url="https://mailer.example/hook"))
    assert isinstance(webhook, WebhookNotifier)
    webhook.close()
