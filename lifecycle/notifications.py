"""
Caseflow — Notification Dispatch

The lifecycle only *requests* notifications; delivery belongs to
whatever dispatcher is plugged in. Dispatch is fire-and-forget: the
transition engine and the escalation evaluator log and swallow any
dispatcher error.

Dispatchers:
  - LoggingDispatcher:   logs each request (default without webhooks)
  - RecordingDispatcher: keeps the most recent requests in memory (tests)
  - WebhookDispatcher:   POSTs to configured HTTP targets in background
                         threads with bounded retries and delivery records

Usage:
    from lifecycle.notifications import WebhookDispatcher, WebhookTarget

    dispatcher = WebhookDispatcher([WebhookTarget(url="https://hooks.example.com/cf")])
    dispatcher.dispatch("stage_transition", ["partner"], "stage_transition",
                        {"case_id": "case_1", "to_stage": "Tribunal"})
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from lifecycle.types import Case

logger = logging.getLogger("caseflow.notifications")


class NotificationDispatcher(Protocol):
    def dispatch(
        self,
        event_type: str,
        recipients: list[str],
        template: str,
        context: dict[str, Any],
    ) -> None: ...


# ═══════════════════════════════════════════════════════════════════
# Transition notification policy
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class NotificationPolicy:
    """
    Which transitions notify stakeholders: cases at or above
    ``high_value_threshold`` in dispute, or owned by a senior tier.
    """
    high_value_threshold: float = 10_000_000.0
    senior_tiers: tuple[str, ...] = ("Partner", "Director")
    recipients: tuple[str, ...] = ("case_owner", "partner")
    template: str = "stage_transition"

    def applies_to(self, case: Case) -> bool:
        if case.amount_in_dispute >= self.high_value_threshold:
            return True
        seniority = case.owner_seniority.lower()
        return any(seniority == t.lower() for t in self.senior_tiers)

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> NotificationPolicy:
        data = data or {}
        return NotificationPolicy(
            high_value_threshold=float(data.get("high_value_threshold", 10_000_000.0)),
            senior_tiers=tuple(data.get("senior_tiers") or ("Partner", "Director")),
            recipients=tuple(data.get("recipients") or ("case_owner", "partner")),
            template=str(data.get("template", "stage_transition")),
        )


# ═══════════════════════════════════════════════════════════════════
# In-process dispatchers
# ═══════════════════════════════════════════════════════════════════

@dataclass
class NotificationRequest:
    event_type: str
    recipients: list[str]
    template: str
    context: dict[str, Any]
    requested_at: float = 0.0


class LoggingDispatcher:
    """Writes each request to the caseflow.notifications log and keeps nothing."""

    def dispatch(self, event_type, recipients, template, context) -> None:
        logger.info(
            "Notification requested: %s → %s (template %s, case %s)",
            event_type, list(recipients), template, context.get("case_id", ""),
        )


class RecordingDispatcher:
    """Keeps the last ``max_requests`` requests in memory. Thread-safe."""

    def __init__(self, max_requests: int = 1000):
        self._requests: deque[NotificationRequest] = deque(maxlen=max_requests)
        self._lock = threading.Lock()

    def dispatch(self, event_type, recipients, template, context) -> None:
        with self._lock:
            self._requests.append(NotificationRequest(
                event_type=event_type,
                recipients=list(recipients),
                template=template,
                context=dict(context),
                requested_at=time.time(),
            ))
        logger.debug("Recorded notification %s → %s", event_type, recipients)

    @property
    def requests(self) -> list[NotificationRequest]:
        with self._lock:
            return list(self._requests)

    def of_type(self, event_type: str) -> list[NotificationRequest]:
        return [r for r in self.requests if r.event_type == event_type]


# ═══════════════════════════════════════════════════════════════════
# Webhook dispatcher
# ═══════════════════════════════════════════════════════════════════

@dataclass
class WebhookTarget:
    """A single webhook endpoint."""
    url: str
    format: str = "generic"     # generic, teams, slack
    enabled: bool = True
    event_types: list[str] | None = None    # None = all events
    max_retries: int = 2
    timeout_seconds: float = 10.0
    headers: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> WebhookTarget:
        return WebhookTarget(
            url=data["url"],
            format=data.get("format", "generic"),
            enabled=bool(data.get("enabled", True)),
            event_types=data.get("event_types"),
            max_retries=int(data.get("max_retries", 2)),
            timeout_seconds=float(data.get("timeout_seconds", 10.0)),
            headers=dict(data.get("headers") or {}),
        )


@dataclass
class DeliveryRecord:
    delivery_id: str
    webhook_url: str
    event_type: str
    status: str         # pending, delivered, failed
    attempts: int = 0
    last_attempt_at: float = 0.0
    error: str = ""
    created_at: float = 0.0


class WebhookDispatcher:
    """
    Non-blocking webhook sender.

    Each matching target gets its own daemon thread; finished threads
    are dropped on the next dispatch and only the last ``max_deliveries``
    records are kept. ``backoff_fn`` maps the failed attempt number to a
    sleep in seconds.
    """

    def __init__(
        self,
        targets: list[WebhookTarget] | None = None,
        http_client: Callable | None = None,
        backoff_fn: Callable[[int], float] | None = None,
        max_deliveries: int = 100,
    ):
        self.targets = targets or []
        self._http_client = http_client or _default_http_client
        self._backoff_fn = backoff_fn or (lambda attempt: min(2 ** attempt, 10))
        self._deliveries: deque[DeliveryRecord] = deque(maxlen=max_deliveries)
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def dispatch(self, event_type, recipients, template, context) -> None:
        for target in self.targets:
            if not target.enabled:
                continue
            if target.event_types and event_type not in target.event_types:
                continue

            payload = _format_payload(target.format, event_type, recipients, template, context)
            record = DeliveryRecord(
                delivery_id=f"dlv_{uuid.uuid4().hex[:12]}",
                webhook_url=target.url,
                event_type=event_type,
                status="pending",
                created_at=time.time(),
            )
            thread = threading.Thread(
                target=self._deliver,
                args=(target, payload, record),
                daemon=True,
            )
            with self._lock:
                self._threads = [t for t in self._threads if t.is_alive()]
                self._deliveries.append(record)
                self._threads.append(thread)
            thread.start()

    def _deliver(self, target: WebhookTarget, payload: dict, record: DeliveryRecord):
        for attempt in range(1, target.max_retries + 1):
            record.attempts = attempt
            record.last_attempt_at = time.time()
            try:
                response = self._http_client(
                    url=target.url,
                    payload=payload,
                    headers=target.headers,
                    timeout=target.timeout_seconds,
                )
                if response.get("success"):
                    record.status = "delivered"
                    logger.info(
                        "Webhook delivered: %s → %s (attempt %d)",
                        record.delivery_id, target.url[:50], attempt,
                    )
                    return
                record.error = response.get("error", "unknown error")
                logger.warning(
                    "Webhook failed: %s → %s: %s (attempt %d/%d)",
                    record.delivery_id, target.url[:50], record.error,
                    attempt, target.max_retries,
                )
            except Exception as e:
                record.error = str(e)[:200]
                logger.warning(
                    "Webhook error: %s → %s: %s (attempt %d/%d)",
                    record.delivery_id, target.url[:50], e,
                    attempt, target.max_retries,
                )

            if attempt < target.max_retries:
                time.sleep(self._backoff_fn(attempt))

        record.status = "failed"
        logger.error(
            "Webhook exhausted retries: %s → %s after %d attempts",
            record.delivery_id, target.url[:50], target.max_retries,
        )

    def wait(self, timeout: float = 5.0) -> None:
        """Join delivery threads started so far."""
        with self._lock:
            threads = list(self._threads)
        deadline = time.time() + timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.time()))

    @property
    def deliveries(self) -> list[dict[str, Any]]:
        """Most recent delivery records, for diagnostics."""
        with self._lock:
            return [
                {
                    "delivery_id": d.delivery_id,
                    "webhook_url": d.webhook_url[:50],
                    "event_type": d.event_type,
                    "status": d.status,
                    "attempts": d.attempts,
                    "error": d.error,
                }
                for d in self._deliveries
            ]


# ═══════════════════════════════════════════════════════════════════
# Payload Formatters
# ═══════════════════════════════════════════════════════════════════

def _headline(event_type: str, context: dict[str, Any]) -> str:
    if event_type == "stage_transition":
        return (f"Case {context.get('case_number') or context.get('case_id', '')}: "
                f"{context.get('from_stage', '')} → {context.get('to_stage', '')}")
    if event_type == "escalation":
        return f"Task escalated: {context.get('task_title', context.get('task_id', ''))}"
    return event_type.replace("_", " ").title()


def _format_payload(
    fmt: str,
    event_type: str,
    recipients: list[str],
    template: str,
    context: dict[str, Any],
) -> dict[str, Any]:
    headline = _headline(event_type, context)
    if fmt == "teams":
        return {
            "@type": "MessageCard",
            "@context": "http://schema.org/extensions",
            "summary": headline,
            "themeColor": "D63B00" if event_type == "escalation" else "2DC72D",
            "title": headline,
            "sections": [{
                "facts": [{"name": k, "value": str(v)} for k, v in context.items()],
            }],
        }
    if fmt == "slack":
        return {
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": headline}},
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*{k}:* {v}"}
                        for k, v in list(context.items())[:10]
                    ],
                },
            ],
        }
    return {
        "event_type": event_type,
        "recipients": list(recipients),
        "template": template,
        "headline": headline,
        "context": context,
        "timestamp": time.time(),
    }


# ═══════════════════════════════════════════════════════════════════
# Default HTTP Client
# ═══════════════════════════════════════════════════════════════════

def _default_http_client(
    url: str,
    payload: dict,
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> dict[str, Any]:
    """
    HTTP POST using urllib.
    Returns {"success": bool, "status_code": int, "error": str}.
    """
    import urllib.error
    import urllib.request

    data = json.dumps(payload, default=str).encode("utf-8")
    all_headers = {"Content-Type": "application/json"}
    if headers:
        all_headers.update(headers)

    req = urllib.request.Request(url, data=data, headers=all_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return {"success": resp.status < 400, "status_code": resp.status}
    except urllib.error.HTTPError as e:
        return {"success": False, "status_code": e.code, "error": str(e)}
    except OSError as e:
        return {"success": False, "status_code": 0, "error": str(e)}
