"""
Caseflow — Workflow Step Tracker Tests

Tests:
  - Step progression and the single InProgress pointer
  - Ordering rules, including the closure fast path
  - Closure hands off exactly one forward transition
  - Skips need a reason; closed instances reject changes
  - can_close reasons and the aggregated workflow state
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from lifecycle.config import DEFAULT_CONFIG_PATH, load_lifecycle_config
from lifecycle.errors import RecordNotFoundError, StepOrderError
from lifecycle.notifications import RecordingDispatcher
from lifecycle.runtime import CaseLifecycle
from lifecycle.types import Case, ReplyFilingStatus, StageInstanceStatus, StepKey, StepStatus
from lifecycle.workflow import NO_NOTICES, STEPS_INCOMPLETE

CONFIG = load_lifecycle_config(DEFAULT_CONFIG_PATH, include_env_vars=False)


class FakeClock:
    def __init__(self, now=datetime(2025, 8, 11, 9, 0, tzinfo=timezone.utc).timestamp()):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class WorkflowTestCase(unittest.TestCase):

    stage = "Assessment"

    def setUp(self):
        self.clock = FakeClock()
        self.lc = CaseLifecycle(CONFIG, dispatcher=RecordingDispatcher(),
                                clock=self.clock, sleep_fn=lambda s: None)
        self.lc.start_case(Case.create("t1", self.stage, owner_id="emp_1", case_id="case_1"))
        self.si = self.lc.active_instance("case_1").stage_instance_id
        self.clock.advance(60)

    def tearDown(self):
        self.lc.close()

    def statuses(self):
        return {s.step_key.value: s.status for s in self.lc.tracker.get_steps(self.si)}

    def set_steps(self, **statuses):
        for step in self.lc.tracker.get_steps(self.si):
            if step.step_key.value in statuses:
                step.status = statuses[step.step_key.value]
                self.lc.store.update_step(step)

    def assertSingleInProgress(self):
        in_progress = [k for k, v in self.statuses().items() if v == StepStatus.IN_PROGRESS]
        self.assertLessEqual(len(in_progress), 1, in_progress)


# ═══════════════════════════════════════════════════════════════
# Progression
# ═══════════════════════════════════════════════════════════════

class TestProgression(WorkflowTestCase):

    def test_new_instance_starts_at_notices(self):
        self.assertEqual(self.statuses(), {
            "notices": StepStatus.IN_PROGRESS,
            "reply": StepStatus.PENDING,
            "hearings": StepStatus.PENDING,
            "closure": StepStatus.PENDING,
        })

    def test_completion_moves_pointer(self):
        outcome = self.lc.complete_step(self.si, "notices", actor="emp_1", notes="SCN logged")
        self.assertEqual(outcome.to_dict()["current_step"], "reply")
        steps = {s.step_key: s for s in outcome.steps}
        self.assertEqual(steps[StepKey.NOTICES].completed_by, "emp_1")
        self.assertEqual(steps[StepKey.NOTICES].completed_at, self.clock.now)
        self.assertEqual(steps[StepKey.REPLY].status, StepStatus.IN_PROGRESS)

    def test_full_walk_keeps_single_pointer(self):
        for key in ("notices", "reply"):
            self.lc.complete_step(self.si, key)
            self.assertSingleInProgress()
        self.lc.skip_step(self.si, "hearings", "No hearing granted")
        self.assertSingleInProgress()
        self.assertEqual(self.statuses()["closure"], StepStatus.IN_PROGRESS)

    def test_skip_ahead_does_not_add_pointer(self):
        self.lc.skip_step(self.si, "reply", "Reply not required")
        self.assertSingleInProgress()
        self.assertEqual(self.statuses()["notices"], StepStatus.IN_PROGRESS)

        self.lc.complete_step(self.si, "notices")
        self.assertEqual(self.statuses()["hearings"], StepStatus.IN_PROGRESS)
        self.assertSingleInProgress()

    def test_completing_terminal_step_is_noop(self):
        self.lc.complete_step(self.si, "notices", actor="emp_1")
        self.clock.advance(60)
        outcome = self.lc.complete_step(self.si, "notices", actor="emp_2")
        notices = next(s for s in outcome.steps if s.step_key == StepKey.NOTICES)
        self.assertEqual(notices.completed_by, "emp_1")


class TestScenarios(WorkflowTestCase):

    def setUp(self):
        super().setUp()
        self.set_steps(notices=StepStatus.COMPLETED, reply=StepStatus.COMPLETED,
                       hearings=StepStatus.PENDING, closure=StepStatus.PENDING)

    def test_hearings_then_closure(self):
        outcome = self.lc.complete_step(self.si, "hearings")
        self.assertEqual(self.statuses()["hearings"], StepStatus.COMPLETED)
        self.assertEqual(self.statuses()["closure"], StepStatus.IN_PROGRESS)
        self.assertIsNone(outcome.transition)
        self.assertEqual(self.lc.get_case("case_1").current_stage, "Assessment")

        engine = self.lc.engine
        with patch.object(engine, "process_transition", wraps=engine.process_transition) as spy:
            outcome = self.lc.complete_step(self.si, "closure", actor="emp_1")

        self.assertEqual(spy.call_count, 1)
        self.assertEqual(self.statuses()["closure"], StepStatus.COMPLETED)
        self.assertEqual(outcome.transition.to_stage, "Adjudication")
        self.assertFalse(outcome.transition.replayed)
        self.assertEqual(self.lc.get_case("case_1").current_stage, "Adjudication")
        self.assertEqual(len(self.lc.footprints_for("case_1")), 1)


# ═══════════════════════════════════════════════════════════════
# Ordering and guards
# ═══════════════════════════════════════════════════════════════

class TestOrdering(WorkflowTestCase):

    def test_reply_needs_notices(self):
        with self.assertRaises(StepOrderError) as ctx:
            self.lc.complete_step(self.si, "reply")
        self.assertEqual(ctx.exception.detail["blocking"], ["notices"])
        self.assertEqual(self.statuses()["reply"], StepStatus.PENDING)

    def test_hearings_needs_reply(self):
        self.lc.complete_step(self.si, "notices")
        with self.assertRaises(StepOrderError) as ctx:
            self.lc.complete_step(self.si, "hearings")
        self.assertEqual(ctx.exception.detail["blocking"], ["reply"])

    def test_closure_needs_only_notices(self):
        with self.assertRaises(StepOrderError):
            self.lc.complete_step(self.si, "closure")

        self.lc.complete_step(self.si, "notices")
        outcome = self.lc.complete_step(self.si, "closure")
        self.assertEqual(outcome.transition.to_stage, "Adjudication")
        self.assertEqual(self.statuses()["reply"], StepStatus.IN_PROGRESS)

    def test_closed_instance_rejects_changes(self):
        self.lc.complete_step(self.si, "notices")
        self.lc.complete_step(self.si, "closure")
        self.assertEqual(self.lc.store.get_stage_instance(self.si).status, StageInstanceStatus.CLOSED)
        with self.assertRaises(StepOrderError):
            self.lc.complete_step(self.si, "reply")
        with self.assertRaises(StepOrderError):
            self.lc.skip_step(self.si, "hearings", "moot")

    def test_repeated_closure_replays_transition(self):
        self.lc.complete_step(self.si, "notices")
        first = self.lc.complete_step(self.si, "closure").transition
        again = self.lc.complete_step(self.si, "closure").transition
        self.assertTrue(again.replayed)
        self.assertEqual(again.tasks_created, first.tasks_created)
        self.assertEqual(len(self.lc.footprints_for("case_1")), 1)

    def test_archived_closure_after_remand_only_replays(self):
        self.lc.complete_step(self.si, "notices")
        first = self.lc.complete_step(self.si, "closure").transition
        self.clock.advance(60)
        self.lc.transition("case_1", "Assessment")
        reopened = self.lc.active_instance("case_1")
        self.assertEqual(reopened.cycle_no, 2)
        self.clock.advance(60)

        engine = self.lc.engine
        with patch.object(engine, "process_transition", wraps=engine.process_transition) as spy:
            again = self.lc.complete_step(self.si, "closure").transition

        self.assertEqual(spy.call_count, 0)
        self.assertTrue(again.replayed)
        self.assertEqual(again.signature, first.signature)
        self.assertEqual(self.lc.get_case("case_1").current_stage, "Assessment")
        self.assertEqual(len(self.lc.footprints_for("case_1")), 2)
        current = self.lc.store.get_stage_instance(reopened.stage_instance_id)
        self.assertEqual(current.status, StageInstanceStatus.ACTIVE)
        notices = next(s for s in self.lc.tracker.get_steps(current.stage_instance_id)
                       if s.step_key == StepKey.NOTICES)
        self.assertEqual(notices.status, StepStatus.IN_PROGRESS)

    def test_closure_signature_uses_instance_cycle(self):
        self.lc.complete_step(self.si, "notices")
        self.lc.complete_step(self.si, "closure")
        self.clock.advance(60)
        self.lc.transition("case_1", "Assessment")
        si2 = self.lc.active_instance("case_1").stage_instance_id
        self.clock.advance(60)

        self.lc.complete_step(si2, "notices")
        second = self.lc.complete_step(si2, "closure").transition
        self.assertFalse(second.replayed)
        self.assertEqual(self.lc.get_case("case_1").current_stage, "Adjudication")
        cycles = sorted(fp.cycle_no for fp in self.lc.footprints_for("case_1")
                        if fp.from_stage == "Assessment")
        self.assertEqual(cycles, [1, 2])

    def test_skip_requires_reason(self):
        for reason in ("", "   "):
            with self.assertRaises(StepOrderError):
                self.lc.skip_step(self.si, "hearings", reason)
        outcome = self.lc.skip_step(self.si, "hearings", "  Waived by authority ")
        hearings = next(s for s in outcome.steps if s.step_key == StepKey.HEARINGS)
        self.assertEqual(hearings.status, StepStatus.SKIPPED)
        self.assertEqual(hearings.notes, "Skipped: Waived by authority")

    def test_unknown_step(self):
        with self.assertRaises(StepOrderError):
            self.lc.complete_step(self.si, "appeal")

    def test_unknown_instance(self):
        with self.assertRaises(RecordNotFoundError):
            self.lc.complete_step("si_missing", "notices")


class TestFinalStage(WorkflowTestCase):

    stage = "Supreme Court"

    def test_closure_of_last_stage_has_no_transition(self):
        self.lc.complete_step(self.si, "notices")
        outcome = self.lc.complete_step(self.si, "closure")
        self.assertIsNone(outcome.transition)
        self.assertEqual(self.lc.get_case("case_1").current_stage, "Supreme Court")
        self.assertEqual(self.lc.footprints_for("case_1"), [])


# ═══════════════════════════════════════════════════════════════
# Read side
# ═══════════════════════════════════════════════════════════════

class TestCanClose(WorkflowTestCase):

    def test_fresh_instance(self):
        check = self.lc.tracker.can_close(self.si)
        self.assertFalse(check.can_close)
        self.assertEqual(check.blocking_reasons, [NO_NOTICES, STEPS_INCOMPLETE])

    def test_unanswered_notice_blocks(self):
        self.lc.record_notice("case_1", reference="SCN-1")
        self.lc.complete_step(self.si, "notices")
        check = self.lc.tracker.can_close(self.si)
        self.assertEqual(check.blocking_reasons, ["1 notice(s) require a reply"])

    def test_draft_reply_still_blocks(self):
        notice = self.lc.record_notice("case_1")
        self.lc.record_reply("case_1", notice.notice_id, ReplyFilingStatus.DRAFT)
        self.lc.complete_step(self.si, "notices")
        self.assertFalse(self.lc.tracker.can_close(self.si).can_close)

    def test_ready(self):
        notice = self.lc.record_notice("case_1")
        self.lc.record_reply("case_1", notice.notice_id)
        self.lc.complete_step(self.si, "notices")
        check = self.lc.tracker.can_close(self.si)
        self.assertTrue(check.can_close)
        self.assertEqual(check.blocking_reasons, [])


class TestWorkflowState(WorkflowTestCase):

    def test_counts_and_rows(self):
        notice = self.lc.record_notice("case_1")
        self.lc.record_notice("case_1")
        self.lc.record_reply("case_1", notice.notice_id)
        self.lc.schedule_hearing("case_1", self.clock.now + 86400, stage_instance_id=self.si)
        self.lc.complete_step(self.si, "notices")

        state = self.lc.workflow_state(self.si)
        self.assertEqual(state.stage_key, "Assessment")
        self.assertEqual((state.notices_count, state.pending_replies), (2, 1))
        self.assertEqual((state.replies_count, state.hearings_count), (1, 1))
        self.assertEqual(state.current_step, StepKey.REPLY)
        self.assertEqual(state.progress, 25)
        self.assertFalse(state.can_close)

        rows = state.rows()
        self.assertEqual([r["label"] for r in rows], ["Notices", "Reply", "Hearings", "Stage Closure"])
        self.assertEqual(rows[1]["subtitle"], "1 awaiting reply")
        self.assertTrue(rows[1]["is_current"])
        self.assertEqual(state.to_dict()["rows"], rows)

    def test_summary(self):
        self.assertIsNone(self.lc.tracker.workflow_summary(self.si)["last_activity"])
        notice = self.lc.record_notice("case_1")
        self.lc.record_reply("case_1", notice.notice_id)
        self.lc.schedule_hearing("case_1", self.clock.now + 86400, stage_instance_id=self.si)
        self.lc.complete_step(self.si, "notices")
        self.clock.advance(120)
        self.lc.skip_step(self.si, "reply", "No reply needed")
        summary = self.lc.tracker.workflow_summary(self.si)
        self.assertEqual(summary["case_id"], "case_1")
        self.assertEqual((summary["steps_completed"], summary["steps_total"]), (2, 4))
        self.assertEqual(
            (summary["notices_count"], summary["replies_count"], summary["hearings_count"]),
            (1, 1, 1),
        )
        self.assertEqual(summary["last_activity"], self.clock.now)
        self.assertEqual(summary["progress"], 50)
        self.assertEqual(summary["current_step"], "hearings")
        self.assertEqual(summary["counts"], {
            "Pending": 1, "InProgress": 1, "Completed": 1, "Skipped": 1,
        })

    def test_summary_of_missing_instance(self):
        with self.assertRaises(RecordNotFoundError):
            self.lc.tracker.workflow_summary("si_missing")

    def test_missing_instance(self):
        with self.assertRaises(RecordNotFoundError):
            self.lc.workflow_state("si_missing")


if __name__ == "__main__":
    unittest.main()
