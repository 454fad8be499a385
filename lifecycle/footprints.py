"""
Caseflow — Idempotency Footprint Store

A footprint proves that a transition signature has produced its tasks.
Lifecycle of a footprint row:

  (none) ──try_acquire──▶ reserved ──commit──▶ committed
                             │
                             ├──release──▶ (none)
                             └──TTL passes──▶ reclaimable by the next try_acquire

try_acquire is a conditional insert: of two racing callers on one
signature exactly one gets ACQUIRED. The other gets ALREADY_EXISTS with
the current row, which the engine treats as a replay, not a fault.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from lifecycle.store import LifecycleStore
from lifecycle.types import (
    AcquireResult,
    AcquireStatus,
    Footprint,
    FootprintStatus,
    TransitionSignature,
    new_id,
)

logger = logging.getLogger("caseflow.footprints")

DEFAULT_RESERVATION_TTL = 300.0


class FootprintStore:
    """Atomic check-and-reserve over the footprints table."""

    def __init__(
        self,
        store: LifecycleStore,
        reservation_ttl: float = DEFAULT_RESERVATION_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.reservation_ttl = reservation_ttl
        self.clock = clock

    def try_acquire(self, signature: TransitionSignature, tenant_id: str) -> AcquireResult:
        now = self.clock()
        attempt_id = new_id("att")
        footprint = Footprint(
            signature=signature.digest,
            tenant_id=tenant_id,
            case_id=signature.case_id,
            from_stage=signature.from_stage,
            to_stage=signature.to_stage,
            transition_type=signature.transition_type,
            cycle_no=signature.cycle_no,
            status=FootprintStatus.RESERVED,
            attempt_id=attempt_id,
            reserved_at=now,
            expires_at=now + self.reservation_ttl,
        )

        if self.store.insert_footprint(footprint):
            return AcquireResult(AcquireStatus.ACQUIRED, footprint)

        if self.store.reclaim_footprint(
            footprint.signature, attempt_id, now, footprint.expires_at, now
        ):
            logger.warning(
                "Reclaimed abandoned reservation %s for case %s",
                footprint.signature[:16], signature.case_id,
            )
            return AcquireResult(AcquireStatus.ACQUIRED, footprint, reclaimed=True)

        existing = self.store.get_footprint(footprint.signature)
        if existing is None:
            # Released between our insert and our read; one more insert decides it
            if self.store.insert_footprint(footprint):
                return AcquireResult(AcquireStatus.ACQUIRED, footprint)
            existing = self.store.get_footprint(footprint.signature)
        return AcquireResult(AcquireStatus.ALREADY_EXISTS, existing or footprint)

    def commit(
        self,
        footprint: Footprint,
        task_ids: list[str],
        template_version: str,
        stage_instance_id: str = "",
        timeline_entry_id: str = "",
    ) -> bool:
        """
        Finalize a reservation. Returns False when the reservation is no
        longer held by this attempt (expired and taken over).
        """
        committed = self.store.commit_footprint(
            footprint.signature,
            footprint.attempt_id,
            task_ids,
            template_version,
            stage_instance_id,
            timeline_entry_id,
            self.clock(),
        )
        if committed:
            footprint.status = FootprintStatus.COMMITTED
            footprint.task_ids = list(task_ids)
            footprint.template_version = template_version
            footprint.stage_instance_id = stage_instance_id
            footprint.timeline_entry_id = timeline_entry_id
        return committed

    def release(self, footprint: Footprint) -> bool:
        """Drop an uncommitted reservation so a retry can acquire at once."""
        released = self.store.delete_reservation(footprint.signature, footprint.attempt_id)
        if released:
            logger.info("Released reservation %s", footprint.signature[:16])
        return released

    def lookup(self, case_id: str) -> list[Footprint]:
        return self.store.list_footprints(case_id)

    def get(self, signature: str) -> Footprint | None:
        return self.store.get_footprint(signature)

    def reap_expired(self) -> int:
        """Delete reservations past their expiry."""
        reaped = self.store.delete_expired_reservations(self.clock())
        if reaped:
            logger.info("Reaped %d expired reservations", reaped)
        return reaped
