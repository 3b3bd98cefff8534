from __future__ import annotations

import json
from urllib.error import URLError

from app.db.memory import InMemoryDatabase
from app.services.notifications import (
    LoggingNotifier,
    WebhookNotifier,
    create_notifier_from_env,
    notify_after_commit,
)


class _Recorder:
    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str, dict]] = []
        self._error = error

    def send(self, template_key, phone, payload):
        if self._error is not None:
            raise self._error
        self.sent.append((template_key, phone, payload))


def test_notification_waits_for_commit():
    session = InMemoryDatabase().open_session()
    session.begin()
    recorder = _Recorder()
    notify_after_commit(session, recorder, "merchant_new_order", "+2011", {"order_id": 1})
    assert recorder.sent == []
    session.commit()
    assert recorder.sent == [("merchant_new_order", "+2011", {"order_id": 1})]


def test_missing_phone_skips_notification():
    session = InMemoryDatabase().open_session()
    session.begin()
    recorder = _Recorder()
    notify_after_commit(session, recorder, "customer_welcome", None, {})
    session.commit()
    assert recorder.sent == []


def test_delivery_failure_is_logged_not_raised(caplog):
    session = InMemoryDatabase().open_session()
    session.begin()
    notify_after_commit(session, _Recorder(URLError("down")), "customer_welcome", "0100", {})
    session.commit()
    assert "notification_failed template=customer_welcome" in caplog.text


def test_env_selects_webhook_notifier():
    assert isinstance(create_notifier_from_env({}), LoggingNotifier)
    notifier = create_notifier_from_env({"SF_NOTIFY_WEBHOOK_URL": "https://hooks.example/notify"})
    assert isinstance(notifier, WebhookNotifier)


def test_webhook_posts_json(monkeypatch):
    captured: dict = {}

    class _Response:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def read(self):
            return b"{}"

    def _urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _Response()

    monkeypatch.setattr("app.services.notifications.request.urlopen", _urlopen)
    WebhookNotifier("https://hooks.example/notify", timeout_s=2.5).send("customer_welcome", "0100", {"code": 3})

    assert captured == {
        "url": "https://hooks.example/notify",
        "method": "POST",
        "body": {"template_key": "customer_welcome", "phone": "0100", "payload": {"code": 3}},
        "timeout": 2.5,
    }
