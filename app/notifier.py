"""
Optional alert delivery for session events.

- WebhookNotifier: POST JSON to NOTIFY_WEBHOOK_URL (Slack/Discord-compatible
  webhooks accept it too).
- GotifyNotifier: POST /message with an app token (GOTIFY_URL, GOTIFY_TOKEN,
  GOTIFY_PRIORITY 1..10).
- Each respects its own minimum level (NOTIFY_MIN_LEVEL / GOTIFY_MIN_LEVEL,
  DEBUG|INFO|WARNING|ERROR|CRITICAL; default WARNING) and is silently inert when
  not configured. Delivery is best-effort: failures are logged, never raised.
"""

from __future__ import annotations
import logging
import os

import requests

log = logging.getLogger("notifier")

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}
APP_TAG = "Lasso"


class _LevelFilter:
    def __init__(self, min_level: str):
        self.min_level = _LEVELS.get(min_level.upper(), 30)

    def wants(self, level: str) -> bool:
        return _LEVELS.get(level.upper(), 30) >= self.min_level


class WebhookNotifier(_LevelFilter):
    def __init__(self, webhook_url: str | None, min_level: str = "WARNING",
                 app_tag: str = APP_TAG, timeout: float = 5):
        super().__init__(min_level)
        self.webhook_url = webhook_url.strip() if webhook_url else None
        self.app_tag = app_tag
        self.timeout = timeout

    def send(self, level: str, title: str, message: str, extra: dict | None = None):
        if not self.webhook_url or not self.wants(level):
            return
        payload = {
            "level": level.upper(),
            "title": f"{self.app_tag}: {title}",
            "message": message,
            "extra": extra or {},
        }
        try:
            requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            log.debug("Webhook send failed: %s", e)


class GotifyNotifier(_LevelFilter):
    def __init__(self, url: str | None, token: str | None, min_level: str = "WARNING",
                 default_priority: int = 5, app_tag: str = APP_TAG, timeout: float = 5):
        super().__init__(min_level)
        self.url = url.rstrip("/") if url else None
        self.token = token.strip() if token else None
        self.default_priority = default_priority
        self.app_tag = app_tag
        self.timeout = timeout

    def send(self, level: str, title: str, message: str, extra: dict | None = None,
             priority: int | None = None):
        if not self.url or not self.token or not self.wants(level):
            return
        body = {
            "title": f"{self.app_tag}: {title}",
            "message": message if not extra else f"{message}\n\n{extra}",
            "priority": priority if priority is not None else self.default_priority,
        }
        try:
            requests.post(f"{self.url}/message", json=body,
                          headers={"X-Gotify-Key": self.token}, timeout=self.timeout)
        except requests.RequestException as e:
            log.debug("Gotify send failed: %s", e)


class Alerter:
    """Fan out one alert to every configured notifier."""

    def __init__(self, *notifiers):
        self.notifiers = notifiers

    def __call__(self, level: str, title: str, message: str, extra: dict | None = None):
        for n in self.notifiers:
            try:
                n.send(level, title, message, extra)
            except Exception:
                log.exception("Notifier %s failed", type(n).__name__)


def from_env() -> Alerter:
    app_tag = os.getenv("APP_TAG", APP_TAG)
    webhook = WebhookNotifier(
        webhook_url=os.getenv("NOTIFY_WEBHOOK_URL"),
        min_level=os.getenv("NOTIFY_MIN_LEVEL", "WARNING"),
        app_tag=app_tag,
    )
    gotify = GotifyNotifier(
        url=os.getenv("GOTIFY_URL"),
        token=os.getenv("GOTIFY_TOKEN"),
        min_level=os.getenv("GOTIFY_MIN_LEVEL", "WARNING"),
        default_priority=int(os.getenv("GOTIFY_PRIORITY", "5")),
        app_tag=app_tag,
    )
    return Alerter(webhook, gotify)
