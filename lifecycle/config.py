"""
Caseflow — Lifecycle Configuration

Turns the merged YAML config (infra.config.load_config) into immutable,
typed objects built once at process start: stage catalog, template
table, notification policy, default escalation rules, reservation TTL,
retry policy and business calendar.

Usage:
    from lifecycle.config import load_lifecycle_config

    cfg = load_lifecycle_config(env="prod")
    cfg.catalog.canonicalize("HC")     # "High Court"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infra.config import get_config_value, load_config
from lifecycle.business_days import HolidayCalendar
from lifecycle.catalog import StageCatalog
from lifecycle.footprints import DEFAULT_RESERVATION_TTL
from lifecycle.notifications import NotificationPolicy, WebhookTarget
from lifecycle.retry import RetryPolicy
from lifecycle.templates import TemplateTable
from lifecycle.types import EscalationRule, EscalationTrigger, TaskPriority

logger = logging.getLogger("caseflow.config")

DEFAULT_CONFIG_PATH = Path(__file__).with_name("config.yaml")


def _rule_from_dict(data: dict[str, Any], position: int) -> EscalationRule:
    hours = data.get("hours_overdue")
    return EscalationRule(
        rule_id=f"default_{position}",
        tenant_id="",
        name=str(data["name"]),
        description=str(data.get("description", "")),
        trigger=EscalationTrigger(data.get("trigger", EscalationTrigger.TASK_OVERDUE.value)),
        hours_overdue=float(hours) if hours is not None else None,
        priorities=[TaskPriority(p) for p in data.get("priorities") or []],
        stages=list(data.get("stages") or []),
        notify_roles=list(data.get("notify_roles") or []),
        escalate_to_role=str(data.get("escalate_to_role", "")),
        email_template=str(data.get("email_template", "")),
        level=int(data.get("level", 1)),
        position=position,
        is_active=bool(data.get("is_active", True)),
    )


@dataclass(frozen=True)
class LifecycleConfig:
    catalog: StageCatalog
    templates: TemplateTable
    notification_policy: NotificationPolicy
    escalation_rules: tuple[EscalationRule, ...]
    reservation_ttl: float = DEFAULT_RESERVATION_TTL
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    calendar: HolidayCalendar = field(default_factory=HolidayCalendar)
    webhooks: tuple[WebhookTarget, ...] = ()
    sweep_interval_minutes: int = 15
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LifecycleConfig:
        rules = tuple(
            _rule_from_dict(r, i)
            for i, r in enumerate(get_config_value("escalation.default_rules", data, []) or [])
        )
        webhooks = tuple(
            WebhookTarget.from_dict(w)
            for w in get_config_value("notifications.webhooks", data, []) or []
        )
        return cls(
            catalog=StageCatalog.from_dict(data.get("stages")),
            templates=TemplateTable.from_dict(data.get("templates")),
            notification_policy=NotificationPolicy.from_dict(data.get("notifications")),
            escalation_rules=rules,
            reservation_ttl=float(get_config_value(
                "footprints.reservation_ttl_seconds", data, DEFAULT_RESERVATION_TTL,
            )),
            retry_policy=RetryPolicy.from_dict(data.get("retry")),
            calendar=HolidayCalendar.from_dict(data.get("calendar")),
            webhooks=webhooks,
            sweep_interval_minutes=int(get_config_value("escalation.sweep_interval_minutes", data, 15)),
            log_level=str(get_config_value("logging.level", data, "INFO")),
        )


def load_lifecycle_config(
    path: str | Path | None = None,
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> LifecycleConfig:
    """Load base YAML + overlay + CF_* overrides into a LifecycleConfig."""
    base = Path(path) if path else DEFAULT_CONFIG_PATH
    raw = load_config(base, env=env, config_dir=config_dir, include_env_vars=include_env_vars)
    cfg = LifecycleConfig.from_dict(raw)
    logger.info(
        "Lifecycle config loaded: %d stages, template version %s, env=%s",
        len(cfg.catalog.stages), cfg.templates.version, raw.get("_active_env"),
    )
    return cfg
