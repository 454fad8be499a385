"""
Caseflow — Task Template Resolver

Rule-based lookup of the task checklist a transition should provision.

  base set  = table[(to_stage, transition_type)]
              falling back to defaults[transition_type]
  modifiers = declared-order rules on case attributes
              (amount in dispute, owner seniority, stage, type)
              that append extra templates

The resolver holds no state beyond its immutable table, so resolving
the same inputs twice yields the same list in the same order.

Usage:
    resolver = TaskTemplateResolver(TemplateTable.from_dict(cfg["templates"]))
    templates = resolver.resolve("Assessment", "Adjudication",
                                 TransitionType.FORWARD, case.template_attributes())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from lifecycle.errors import TemplateResolutionError
from lifecycle.types import TaskPriority, TransitionType

logger = logging.getLogger("caseflow.templates")


@dataclass(frozen=True)
class TaskTemplate:
    template_id: str
    title: str
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    due_days: int = 5
    assigned_role: str = ""
    mandatory: bool = True

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TaskTemplate:
        try:
            return TaskTemplate(
                template_id=str(data["id"]),
                title=str(data["title"]),
                description=str(data.get("description", "")),
                priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
                due_days=int(data.get("due_days", 5)),
                assigned_role=str(data.get("assigned_role", "")),
                mandatory=bool(data.get("mandatory", True)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise TemplateResolutionError(
                f"Malformed task template: {e}", template=data,
            ) from e


@dataclass(frozen=True)
class TemplateModifier:
    """
    Adds templates when every stated condition holds.
    Conditions left unset are ignored.
    """
    name: str
    add: tuple[TaskTemplate, ...]
    min_amount_in_dispute: float | None = None
    owner_seniority: tuple[str, ...] = ()
    to_stages: tuple[str, ...] = ()
    transition_types: tuple[TransitionType, ...] = ()

    def applies(
        self,
        to_stage: str,
        transition_type: TransitionType,
        attributes: dict[str, Any],
    ) -> bool:
        if self.min_amount_in_dispute is not None:
            amount = attributes.get("amount_in_dispute") or 0
            if float(amount) < self.min_amount_in_dispute:
                return False
        if self.owner_seniority:
            seniority = str(attributes.get("owner_seniority") or "").lower()
            if seniority not in {s.lower() for s in self.owner_seniority}:
                return False
        if self.to_stages and to_stage not in self.to_stages:
            return False
        if self.transition_types and transition_type not in self.transition_types:
            return False
        return True

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TemplateModifier:
        when = data.get("when") or {}
        try:
            amount = when.get("min_amount_in_dispute")
            return TemplateModifier(
                name=str(data["name"]),
                add=tuple(TaskTemplate.from_dict(t) for t in data.get("add") or []),
                min_amount_in_dispute=float(amount) if amount is not None else None,
                owner_seniority=tuple(when.get("owner_seniority") or ()),
                to_stages=tuple(when.get("to_stages") or ()),
                transition_types=tuple(
                    TransitionType(t) for t in when.get("transition_types") or ()
                ),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise TemplateResolutionError(
                f"Malformed template modifier: {e}", modifier=data,
            ) from e


@dataclass(frozen=True)
class TemplateTable:
    version: str
    entries: dict[tuple[str, TransitionType], tuple[TaskTemplate, ...]] = field(default_factory=dict)
    defaults: dict[TransitionType, tuple[TaskTemplate, ...]] = field(default_factory=dict)
    modifiers: tuple[TemplateModifier, ...] = ()

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> TemplateTable:
        """
        Build from the ``templates`` config section:

            version: "2025.1"
            stages:
              Adjudication:
                Forward: [{id, title, priority, due_days, ...}, ...]
            defaults:
              Remand: [...]
            modifiers:
              - name: high_value_review
                when: {min_amount_in_dispute: 10000000}
                add: [...]
        """
        data = data or {}
        entries: dict[tuple[str, TransitionType], tuple[TaskTemplate, ...]] = {}
        for stage, by_type in (data.get("stages") or {}).items():
            for ttype, templates in (by_type or {}).items():
                entries[(stage, TransitionType(ttype))] = tuple(
                    TaskTemplate.from_dict(t) for t in templates or []
                )
        defaults = {
            TransitionType(ttype): tuple(TaskTemplate.from_dict(t) for t in templates or [])
            for ttype, templates in (data.get("defaults") or {}).items()
        }
        modifiers = tuple(TemplateModifier.from_dict(m) for m in data.get("modifiers") or [])
        return TemplateTable(
            version=str(data.get("version", "1")),
            entries=entries,
            defaults=defaults,
            modifiers=modifiers,
        )


class TaskTemplateResolver:
    """Pure lookup over a TemplateTable."""

    def __init__(self, table: TemplateTable):
        self.table = table

    @property
    def version(self) -> str:
        return self.table.version

    def resolve(
        self,
        from_stage: str,
        to_stage: str,
        transition_type: TransitionType,
        case_attributes: dict[str, Any] | None = None,
    ) -> list[TaskTemplate]:
        base = self.table.entries.get((to_stage, transition_type))
        if base is None:
            base = self.table.defaults.get(transition_type)
        if base is None:
            raise TemplateResolutionError(
                f"No task templates configured for {transition_type.value} into {to_stage}",
                from_stage=from_stage,
                to_stage=to_stage,
                transition_type=transition_type.value,
            )

        attributes = case_attributes or {}
        resolved: list[TaskTemplate] = list(base)
        seen = {t.template_id for t in resolved}
        for modifier in self.table.modifiers:
            if not modifier.applies(to_stage, transition_type, attributes):
                continue
            for template in modifier.add:
                if template.template_id not in seen:
                    resolved.append(template)
                    seen.add(template.template_id)

        logger.debug(
            "Resolved %d templates for %s -> %s (%s), version %s",
            len(resolved), from_stage, to_stage, transition_type.value, self.version,
        )
        return resolved
