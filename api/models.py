"""
Caseflow — API Models

Request bodies for the API server as plain dataclasses with validate().
No FastAPI dependency — used by server and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any

from lifecycle.types import ReplyFilingStatus, StepKey


def _required(value: Any, name: str) -> list[str]:
    if not value or not isinstance(value, str):
        return [f"{name} is required and must be a string"]
    return []


@dataclass
class CaseSubmission:
    """POST /v1/cases request body."""
    tenant_id: str
    owner_id: str
    current_stage: str = ""
    amount_in_dispute: float = 0.0
    owner_seniority: str = ""
    region: str = ""
    case_number: str = ""
    title: str = ""
    case_id: str = ""
    actor: str = "api"

    @staticmethod
    def from_body(body: dict[str, Any]) -> CaseSubmission:
        return CaseSubmission(
            tenant_id=body.get("tenant_id", ""),
            owner_id=body.get("owner_id", ""),
            current_stage=body.get("current_stage", ""),
            amount_in_dispute=body.get("amount_in_dispute", 0.0),
            owner_seniority=body.get("owner_seniority", ""),
            region=body.get("region", ""),
            case_number=body.get("case_number", ""),
            title=body.get("title", ""),
            case_id=body.get("case_id", ""),
            actor=body.get("actor", "api"),
        )

    def validate(self) -> list[str]:
        errors = _required(self.tenant_id, "tenant_id") + _required(self.owner_id, "owner_id")
        if not isinstance(self.amount_in_dispute, (int, float)) or self.amount_in_dispute < 0:
            errors.append("amount_in_dispute must be a non-negative number")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TransitionRequest:
    """POST /v1/cases/{id}/transitions body."""
    to_stage: str
    from_stage: str = ""
    actor: str = "api"
    comments: str = ""
    idempotency_key: str = ""

    @staticmethod
    def from_body(body: dict[str, Any]) -> TransitionRequest:
        return TransitionRequest(
            to_stage=body.get("to_stage", ""),
            from_stage=body.get("from_stage", ""),
            actor=body.get("actor", "api"),
            comments=body.get("comments", ""),
            idempotency_key=body.get("idempotency_key", ""),
        )

    def validate(self) -> list[str]:
        errors = _required(self.to_stage, "to_stage")
        if not isinstance(self.idempotency_key, str):
            errors.append("idempotency_key must be a string")
        return errors


@dataclass
class StepAction:
    """POST /v1/stage-instances/{id}/steps/{step}/complete or /skip body."""
    step_key: str
    actor: str = "api"
    notes: str = ""
    reason: str = ""

    def validate(self, skipping: bool = False) -> list[str]:
        errors = []
        if self.step_key not in {k.value for k in StepKey}:
            errors.append(f"step must be one of {[k.value for k in StepKey]}")
        if skipping and (not isinstance(self.reason, str) or not self.reason.strip()):
            errors.append("reason is required to skip a step")
        return errors


@dataclass
class NoticeSubmission:
    """POST /v1/cases/{id}/notices body."""
    reference: str = ""


@dataclass
class ReplySubmission:
    """POST /v1/cases/{id}/replies body."""
    notice_id: str
    filing_status: str = ReplyFilingStatus.FILED.value

    def validate(self) -> list[str]:
        errors = _required(self.notice_id, "notice_id")
        if self.filing_status not in {s.value for s in ReplyFilingStatus}:
            errors.append(f"filing_status must be one of {[s.value for s in ReplyFilingStatus]}")
        return errors


@dataclass
class ResolveAction:
    """POST /v1/escalations/{id}/resolve body."""
    resolved_by: str
    notes: str = ""

    def validate(self) -> list[str]:
        return _required(self.resolved_by, "resolved_by")
