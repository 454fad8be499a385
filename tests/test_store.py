"""
Caseflow — Lifecycle Store Tests

Row mapping round trips for the typed records, conditional writes,
and the notice/reply/hearing read models.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from lifecycle.store import LifecycleStore
from lifecycle.types import (
    Case, Employee, EmployeeStatus, EscalationEvent, EscalationRule,
    EscalationStatus, EscalationTrigger, Footprint, FootprintStatus, Hearing,
    Notice, NoticeStatus, Reply, ReplyFilingStatus, StageInstance,
    StageInstanceStatus, StepKey, StepStatus, Task, TaskPriority, TaskStatus,
    TransitionType, initial_workflow_steps,
)

NOW = 1_750_000_000.0


def _footprint(signature="sig", attempt="att_1", expires=NOW + 300):
    return Footprint(
        signature=signature, tenant_id="t1", case_id="c1",
        from_stage="Assessment", to_stage="Adjudication",
        transition_type=TransitionType.FORWARD, cycle_no=1,
        status=FootprintStatus.RESERVED, attempt_id=attempt,
        reserved_at=NOW, expires_at=expires,
    )


class StoreTestCase(unittest.TestCase):

    def setUp(self):
        self.store = LifecycleStore()
        self.case = Case.create("t1", "Assessment", owner_id="emp_1", case_id="c1",
                                amount_in_dispute=1500.5, region="MH")
        self.store.save_case(self.case)

    def tearDown(self):
        self.store.close()


class TestCases(StoreTestCase):

    def test_round_trip(self):
        loaded = self.store.get_case("c1")
        self.assertEqual(loaded.current_stage, "Assessment")
        self.assertEqual(loaded.amount_in_dispute, 1500.5)
        self.assertEqual(loaded.region, "MH")

    def test_missing(self):
        self.assertIsNone(self.store.get_case("nope"))

    def test_advance_is_conditional(self):
        self.assertTrue(self.store.advance_case_stage("c1", "Assessment", "Adjudication", NOW))
        self.assertFalse(self.store.advance_case_stage("c1", "Assessment", "Tribunal", NOW))
        self.assertEqual(self.store.get_case("c1").current_stage, "Adjudication")


class TestStageInstances(StoreTestCase):

    def test_cycles_and_active(self):
        self.assertEqual(self.store.max_cycle("c1", "Assessment"), 0)
        first = StageInstance.create("t1", "c1", "Assessment", 1, now=NOW)
        self.store.insert_stage_instance(first)
        self.store.close_stage_instance(first.stage_instance_id, NOW + 1)
        second = StageInstance.create("t1", "c1", "Assessment", 2, now=NOW + 2)
        self.store.insert_stage_instance(second)

        self.assertEqual(self.store.max_cycle("c1", "Assessment"), 2)
        active = self.store.get_active_stage_instance("c1")
        self.assertEqual(active.stage_instance_id, second.stage_instance_id)
        closed = self.store.get_stage_instance(first.stage_instance_id)
        self.assertEqual(closed.status, StageInstanceStatus.CLOSED)
        self.assertEqual(closed.ended_at, NOW + 1)

    def test_duplicate_cycle_rejected(self):
        self.store.insert_stage_instance(StageInstance.create("t1", "c1", "Assessment", 1, now=NOW))
        with self.assertRaises(Exception):
            self.store.insert_stage_instance(
                StageInstance.create("t1", "c1", "Assessment", 1, now=NOW))


class TestTasksAndSteps(StoreTestCase):

    def test_task_round_trip_and_overdue(self):
        late = Task.create("t1", "c1", "Draft reply", due_at=NOW - 10, assignee_id="emp_1",
                           priority=TaskPriority.HIGH, now=NOW)
        future = Task.create("t1", "c1", "Hearing prep", due_at=NOW + 10, assignee_id="emp_1",
                             now=NOW)
        done = Task.create("t1", "c1", "Old", due_at=NOW - 100, assignee_id="emp_1", now=NOW)
        for t in (late, future, done):
            self.store.save_task(t)
        self.store.update_task_status(done.task_id, TaskStatus.COMPLETED, NOW)

        overdue = self.store.list_overdue_tasks(NOW)
        self.assertEqual([t.task_id for t in overdue], [late.task_id])
        self.assertEqual(overdue[0].priority, TaskPriority.HIGH)
        self.assertEqual(len(self.store.list_tasks(case_id="c1")), 3)

    def test_steps_ordered_and_insert_idempotent(self):
        steps = initial_workflow_steps("si_1", NOW)
        self.store.insert_steps(steps)
        self.store.insert_steps(steps)
        loaded = self.store.get_steps("si_1")
        self.assertEqual([s.step_key for s in loaded], list(StepKey))
        self.assertEqual(loaded[0].status, StepStatus.IN_PROGRESS)

        loaded[0].status = StepStatus.COMPLETED
        loaded[0].completed_by = "emp_1"
        self.store.update_step(loaded[0])
        self.assertEqual(self.store.get_steps("si_1")[0].completed_by, "emp_1")


class TestFootprintRows(StoreTestCase):

    def test_conditional_insert(self):
        self.assertTrue(self.store.insert_footprint(_footprint()))
        self.assertFalse(self.store.insert_footprint(_footprint(attempt="att_2")))
        self.assertEqual(self.store.get_footprint("sig").attempt_id, "att_1")

    def test_reclaim_only_when_expired(self):
        self.store.insert_footprint(_footprint(expires=NOW + 10))
        self.assertFalse(self.store.reclaim_footprint("sig", "att_2", NOW, NOW + 300, NOW + 5))
        self.assertTrue(self.store.reclaim_footprint("sig", "att_2", NOW, NOW + 300, NOW + 11))
        self.assertEqual(self.store.get_footprint("sig").attempt_id, "att_2")

    def test_commit_requires_holder(self):
        self.store.insert_footprint(_footprint())
        self.assertFalse(self.store.commit_footprint("sig", "att_x", ["t"], "v", "", "", NOW))
        self.assertTrue(self.store.commit_footprint("sig", "att_1", ["t1", "t2"], "v", "si", "tl", NOW))
        fp = self.store.get_footprint("sig")
        self.assertEqual(fp.status, FootprintStatus.COMMITTED)
        self.assertEqual(fp.task_ids, ["t1", "t2"])
        self.assertFalse(self.store.delete_reservation("sig", "att_1"))

    def test_delete_expired(self):
        self.store.insert_footprint(_footprint("old", expires=NOW - 1))
        self.store.insert_footprint(_footprint("fresh", expires=NOW + 100))
        self.assertEqual(self.store.delete_expired_reservations(NOW), 1)
        self.assertEqual([f.signature for f in self.store.list_footprints("c1")], ["fresh"])


class TestTimeline(StoreTestCase):

    def test_append_order_and_metadata(self):
        for i in range(3):
            self.store.append_timeline("t1", "c1", "note", f"Entry {i}", metadata={"i": i}, now=NOW)
        entries = self.store.list_timeline("c1")
        self.assertEqual([e.title for e in entries], ["Entry 0", "Entry 1", "Entry 2"])
        self.assertEqual(entries[2].metadata, {"i": 2})


class TestReadModels(StoreTestCase):

    def test_reply_status_moves_notice(self):
        self.store.save_notice(Notice("n1", "t1", "c1", "si_1", received_at=NOW))
        self.store.save_notice(Notice("n2", "t1", "c1", "si_1", received_at=NOW + 1))
        self.store.save_reply(Reply("r1", "t1", "c1", "n1", ReplyFilingStatus.FILED, NOW))
        self.store.save_reply(Reply("r2", "t1", "c1", "n2", ReplyFilingStatus.DRAFT))
        statuses = [n.status for n in self.store.list_notices("si_1")]
        self.assertEqual(statuses, [NoticeStatus.REPLIED, NoticeStatus.REPLY_PENDING])
        self.assertEqual(self.store.count_replies("c1"), 2)

    def test_hearing_count_falls_back_to_case(self):
        self.store.save_hearing(Hearing("h1", "t1", "c1", None, NOW))
        self.assertEqual(self.store.count_hearings("si_1", "c1"), 1)
        self.store.save_hearing(Hearing("h2", "t1", "c1", "si_1", NOW))
        self.store.save_hearing(Hearing("h3", "t1", "c1", "si_1", NOW))
        self.assertEqual(self.store.count_hearings("si_1", "c1"), 2)


class TestEmployeesAndEscalation(StoreTestCase):

    def test_find_by_role_skips_inactive(self):
        self.store.save_employee(Employee("e1", "t1", "Asha", "Senior Manager",
                                          status=EmployeeStatus.INACTIVE))
        self.store.save_employee(Employee("e2", "t1", "Bala", "Manager"))
        self.assertEqual(self.store.find_active_employee_by_role("t1", "manager").employee_id, "e2")
        self.assertIsNone(self.store.find_active_employee_by_role("t2", "Manager"))

    def test_rule_round_trip(self):
        rule = EscalationRule("r1", "t1", "Overdue", EscalationTrigger.TASK_OVERDUE,
                              hours_overdue=24, priorities=[TaskPriority.CRITICAL],
                              notify_roles=["Manager"], level=2, position=0)
        self.store.save_rule(rule)
        loaded = self.store.list_rules("t1")[0]
        self.assertEqual(loaded.priorities, [TaskPriority.CRITICAL])
        self.assertEqual(loaded.level, 2)
        self.assertTrue(loaded.is_active)

    def test_one_pending_event_per_task(self):
        first = EscalationEvent.create("t1", "r1", "task_1", now=NOW)
        self.assertTrue(self.store.insert_event(first))
        self.assertFalse(self.store.insert_event(EscalationEvent.create("t1", "r1", "task_1", now=NOW)))
        self.assertTrue(self.store.has_pending_event("task_1"))

        first.status = EscalationStatus.RESOLVED
        self.store.update_event(first)
        self.assertFalse(self.store.has_pending_event("task_1"))
        self.assertTrue(self.store.insert_event(EscalationEvent.create("t1", "r1", "task_1", now=NOW)))
        self.assertEqual(len(self.store.list_events(task_id="task_1")), 2)

    def test_stats(self):
        self.store.insert_footprint(_footprint())
        self.assertEqual(self.store.stats()["footprints"], {"reserved": 1})


if __name__ == "__main__":
    unittest.main()
