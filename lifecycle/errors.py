"""
Caseflow — Lifecycle Error Hierarchy

Typed errors so callers can tell apart:
- Terminal failures (unknown stage, illegal transition) → surface, never retry
- Retryable failures (template lookup, persistence) → retry with backoff
- Non-fatal conditions (no escalation target) → logged, work continues

Each error carries: retryable flag, terminal flag, and a detail dict.
"""

from __future__ import annotations


# ═══════════════════════════════════════════════════════════════
# Base
# ═══════════════════════════════════════════════════════════════

class LifecycleError(Exception):
    """Base exception for all lifecycle errors."""
    retryable: bool = False
    terminal: bool = False

    def __init__(self, message: str = "", **kwargs):
        self.detail = kwargs
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# Terminal: the request itself is wrong
# ═══════════════════════════════════════════════════════════════

class UnknownStageError(LifecycleError):
    """A stage label could not be canonicalized."""
    terminal = True

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"Unknown stage label: {label!r}", label=label)


class InvalidTransitionError(LifecycleError):
    """Transition is not Forward or Remand, or the case is not at the from-stage."""
    terminal = True


class RecordNotFoundError(LifecycleError):
    """A case, stage instance, task or escalation event does not exist."""
    terminal = True

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}", kind=kind, record_id=record_id)


class StepOrderError(LifecycleError):
    """Workflow step action is not allowed in the step's or instance's current state."""
    terminal = True


class EscalationError(LifecycleError):
    """Escalation event action is not allowed in the event's current state."""
    terminal = True


# ═══════════════════════════════════════════════════════════════
# Retryable: safe to call again with the same arguments
# ═══════════════════════════════════════════════════════════════

class TemplateResolutionError(LifecycleError):
    """Task template table could not be read or resolved."""
    retryable = True


class PersistenceError(LifecycleError):
    """The atomic unit of a transition failed and was rolled back."""
    retryable = True


# ═══════════════════════════════════════════════════════════════
# Non-fatal
# ═══════════════════════════════════════════════════════════════

class EscalationTargetNotFoundError(LifecycleError):
    """No employee holds the rule's target role. The event is still recorded."""

    def __init__(self, role: str, tenant_id: str):
        self.role = role
        super().__init__(
            f"No active employee with role {role!r} in tenant {tenant_id}",
            role=role, tenant_id=tenant_id,
        )
