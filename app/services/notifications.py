from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from typing import Any, Protocol
from urllib import request
from urllib.error import URLError

from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

MERCHANT_NEW_ORDER = "merchant_new_order"
CUSTOMER_ORDER_CONFIRMED = "customer_order_confirmed"
CUSTOMER_WELCOME = "customer_welcome"
CUSTOMER_OUT_FOR_DELIVERY = "customer_out_for_delivery"
CUSTOMER_ORDER_CANCELLED = "customer_order_cancelled"
CUSTOMER_ORDER_DELIVERED = "customer_order_delivered"
CUSTOMER_REPLACEMENT_PROPOSED = "customer_replacement_proposed"
MERCHANT_REPLACEMENT_ACCEPTED = "merchant_replacement_accepted"
MERCHANT_REPLACEMENT_REJECTED = "merchant_replacement_rejected"
MERCHANT_ORDER_REJECTED_BY_CUSTOMER = "merchant_order_rejected_by_customer"


class Notifier(Protocol):
    def send(self, template_key: str, phone: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    def send(self, template_key: str, phone: str, payload: dict[str, Any]) -> None:
        logger.info("notification template=%s phone=%s keys=%s", template_key, phone, sorted(payload))


class WebhookNotifier:
    """POST each notification as JSON to an external delivery service."""

    def __init__(self, url: str, *, timeout_s: float = 5.0) -> None:
        if not url.strip():
            raise ValueError("SF_NOTIFY_WEBHOOK_URL must not be empty")
        self._url = url.strip()
        self._timeout_s = timeout_s

    def send(self, template_key: str, phone: str, payload: dict[str, Any]) -> None:
        body = json.dumps(
            jsonable_encoder({"template_key": template_key, "phone": phone, "payload": payload}),
            ensure_ascii=False,
            sort_keys=True,
        ).encode("utf-8")
        req = request.Request(
            self._url,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        with request.urlopen(req, timeout=self._timeout_s) as resp:
            resp.read()


def create_notifier_from_env(environ: Mapping[str, str] | None = None) -> Notifier:
    env = os.environ if environ is None else environ
    url = env.get("SF_NOTIFY_WEBHOOK_URL", "").strip()
    if url:
        timeout_ms = float(env.get("SF_NOTIFY_TIMEOUT_MS", "5000"))
        return WebhookNotifier(url, timeout_s=timeout_ms / 1000.0)
    return LoggingNotifier()


def notify_after_commit(
    session: Any,
    notifier: Notifier,
    template_key: str,
    phone: str | None,
    payload: dict[str, Any],
) -> None:
    """Queue a notification that is only sent once ``session`` commits.

    Delivery failures are logged; they never undo the transition that queued them.
    """
    if not phone:
        return

    def _send() -> None:
        try:
            notifier.send(template_key, phone, payload)
        except (TimeoutError, URLError, ValueError, OSError) as exc:
            logger.warning("notification_failed template=%s error=%s", template_key, exc)

    session.after_commit(_send)
