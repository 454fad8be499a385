"""
Caseflow — Stage Catalog

Ordered list of lifecycle stages plus the canonicalization of legacy
and free-text stage labels. Built once from configuration and passed
to every component that needs stage ordering.

Usage:
    catalog = StageCatalog.from_dict(cfg["stages"])
    catalog.canonicalize("gstat")          # "Tribunal"
    catalog.next_forward("Adjudication")   # "First Appeal"
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from lifecycle.errors import InvalidTransitionError, UnknownStageError
from lifecycle.types import TransitionType

DEFAULT_STAGES = (
    "Assessment",
    "Adjudication",
    "First Appeal",
    "Tribunal",
    "High Court",
    "Supreme Court",
)


def _normalize(label: str) -> str:
    return re.sub(r"[\s_\-]+", " ", label).strip().lower()


@dataclass(frozen=True)
class StageCatalog:
    """Immutable stage ordering and label lookup."""
    stages: tuple[str, ...] = DEFAULT_STAGES
    aliases: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stages:
            raise ValueError("Stage catalog needs at least one stage")
        if len(set(self.stages)) != len(self.stages):
            raise ValueError(f"Duplicate stage keys in catalog: {self.stages}")
        lookup = {_normalize(s): s for s in self.stages}
        for alias, target in self.aliases.items():
            if target not in self.stages:
                raise ValueError(f"Alias {alias!r} points at unknown stage {target!r}")
            lookup[_normalize(alias)] = target
        object.__setattr__(self, "_lookup", MappingProxyType(lookup))
        object.__setattr__(
            self, "_order", MappingProxyType({s: i for i, s in enumerate(self.stages)})
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> StageCatalog:
        data = data or {}
        stages = tuple(data.get("order") or DEFAULT_STAGES)
        aliases = dict(data.get("aliases") or {})
        return cls(stages=stages, aliases=MappingProxyType(aliases))

    # ─── Lookup ────────────────────────────────────────────────────

    def canonicalize(self, label: str | None) -> str:
        if not label or not label.strip():
            raise UnknownStageError(label or "")
        key = self._lookup.get(_normalize(label))
        if key is None:
            raise UnknownStageError(label)
        return key

    def order(self, stage_key: str) -> int:
        try:
            return self._order[stage_key]
        except KeyError:
            raise UnknownStageError(stage_key) from None

    def next_forward(self, stage_key: str) -> str | None:
        idx = self.order(stage_key)
        if idx + 1 < len(self.stages):
            return self.stages[idx + 1]
        return None

    def stages_after(self, stage_key: str) -> list[str]:
        return list(self.stages[self.order(stage_key) + 1:])

    def stages_before(self, stage_key: str) -> list[str]:
        return list(self.stages[:self.order(stage_key)])

    @property
    def initial_stage(self) -> str:
        return self.stages[0]

    # ─── Transition classification ─────────────────────────────────

    def classify(self, from_key: str, to_key: str) -> TransitionType:
        """Forward if the target is later, Remand if earlier."""
        src, dst = self.order(from_key), self.order(to_key)
        if dst > src:
            return TransitionType.FORWARD
        if dst < src:
            return TransitionType.REMAND
        raise InvalidTransitionError(
            f"Target stage equals source stage: {from_key}",
            from_stage=from_key, to_stage=to_key,
        )

    def available_targets(self, stage_key: str, transition_type: TransitionType) -> list[str]:
        if transition_type == TransitionType.FORWARD:
            return self.stages_after(stage_key)
        return list(reversed(self.stages_before(stage_key)))
