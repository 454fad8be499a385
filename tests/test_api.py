"""
Caseflow — API Tests

Request model validation runs everywhere; endpoint tests need FastAPI
and httpx (TestClient) and are skipped without them.
"""

import asyncio
import importlib.util
import os
import sys
import threading
import unittest
from datetime import datetime, timezone

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from api.models import (
    CaseSubmission, ReplySubmission, ResolveAction, StepAction, TransitionRequest,
)
from lifecycle.config import DEFAULT_CONFIG_PATH, load_lifecycle_config
from lifecycle.errors import (
    InvalidTransitionError, PersistenceError, RecordNotFoundError,
    TemplateResolutionError, UnknownStageError,
)
from lifecycle.notifications import RecordingDispatcher
from lifecycle.runtime import CaseLifecycle
from lifecycle.types import Case, Employee, Task, TaskPriority

HAS_CLIENT = all(importlib.util.find_spec(m) for m in ("fastapi", "httpx"))


# ═══════════════════════════════════════════════════════════════
# Request models
# ═══════════════════════════════════════════════════════════════

class TestCaseSubmission(unittest.TestCase):

    def test_valid(self):
        sub = CaseSubmission.from_body({"tenant_id": "t1", "owner_id": "emp_1",
                                        "amount_in_dispute": 1200})
        self.assertEqual(sub.validate(), [])
        self.assertEqual(sub.to_dict()["amount_in_dispute"], 1200)

    def test_missing_fields(self):
        errors = CaseSubmission.from_body({}).validate()
        self.assertEqual(len(errors), 2)

    def test_negative_amount(self):
        sub = CaseSubmission.from_body({"tenant_id": "t1", "owner_id": "e", "amount_in_dispute": -5})
        self.assertIn("amount_in_dispute must be a non-negative number", sub.validate())

    def test_non_numeric_amount(self):
        sub = CaseSubmission.from_body({"tenant_id": "t1", "owner_id": "e", "amount_in_dispute": "lots"})
        self.assertEqual(len(sub.validate()), 1)


class TestActionModels(unittest.TestCase):

    def test_transition_request(self):
        self.assertEqual(TransitionRequest.from_body({"to_stage": "Tribunal"}).validate(), [])
        self.assertEqual(len(TransitionRequest.from_body({}).validate()), 1)
        bad_key = TransitionRequest.from_body({"to_stage": "Tribunal", "idempotency_key": 7})
        self.assertEqual(bad_key.validate(), ["idempotency_key must be a string"])

    def test_step_action(self):
        self.assertEqual(StepAction("notices").validate(), [])
        self.assertEqual(len(StepAction("appeal").validate()), 1)
        self.assertEqual(StepAction("hearings").validate(skipping=True),
                         ["reason is required to skip a step"])
        self.assertEqual(StepAction("hearings", reason="waived").validate(skipping=True), [])

    def test_reply_submission(self):
        self.assertEqual(ReplySubmission("ntc_1").validate(), [])
        self.assertEqual(len(ReplySubmission("ntc_1", filing_status="Sent").validate()), 1)
        self.assertEqual(len(ReplySubmission("").validate()), 1)

    def test_resolve_action(self):
        self.assertEqual(ResolveAction("mgr_1").validate(), [])
        self.assertEqual(len(ResolveAction("").validate()), 1)


class TestStatusMapping(unittest.TestCase):

    def test_codes(self):
        from api.server import status_for
        self.assertEqual(status_for(RecordNotFoundError("case", "c")), 404)
        self.assertEqual(status_for(UnknownStageError("x")), 422)
        self.assertEqual(status_for(InvalidTransitionError("no")), 409)
        self.assertEqual(status_for(PersistenceError("db")), 503)


# ═══════════════════════════════════════════════════════════════
# Endpoints
# ═══════════════════════════════════════════════════════════════

@unittest.skipUnless(HAS_CLIENT, "fastapi and httpx not installed")
class TestEndpoints(unittest.TestCase):

    def setUp(self):
        from fastapi.testclient import TestClient
        from api.server import create_app

        config = load_lifecycle_config(DEFAULT_CONFIG_PATH, include_env_vars=False)
        self.lc = CaseLifecycle(config, dispatcher=RecordingDispatcher(), sleep_fn=lambda s: None)
        self.client = TestClient(create_app(lifecycle=self.lc))

    def tearDown(self):
        self.lc.close()

    def create_case(self, **extra):
        body = {"tenant_id": "t1", "owner_id": "emp_1", "case_id": "case_1", **extra}
        resp = self.client.post("/v1/cases", json=body)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_health(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")
        self.assertEqual(self.client.get("/ready").status_code, 200)

    def test_create_case_defaults_to_initial_stage(self):
        created = self.create_case()
        self.assertEqual(created["current_stage"], "Assessment")
        self.assertEqual(created["cycle_no"], 1)

        state = self.client.get("/v1/cases/case_1").json()
        self.assertEqual(state["current_stage"], "Assessment")
        self.assertEqual(state["current_instance"], created["stage_instance_id"])

    def test_create_case_validation(self):
        resp = self.client.post("/v1/cases", json={"owner_id": "emp_1"})
        self.assertEqual(resp.status_code, 422)
        self.assertIn("errors", resp.json())

    def test_transition_and_replay(self):
        self.create_case()
        first = self.client.post("/v1/cases/case_1/transitions", json={"to_stage": "Adjudication"})
        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(len(first.json()["tasks_created"]), 3)

        again = self.client.post("/v1/cases/case_1/transitions",
                                 json={"from_stage": "Assessment", "to_stage": "Adjudication"})
        self.assertTrue(again.json()["replayed"])

        tasks = self.client.get("/v1/cases/case_1/tasks").json()
        self.assertEqual(tasks["count"], 3)
        footprints = self.client.get("/v1/cases/case_1/footprints").json()["footprints"]
        self.assertEqual(len(footprints), 1)
        timeline = self.client.get("/v1/cases/case_1/timeline").json()["entries"]
        self.assertEqual([e["entry_type"] for e in timeline], ["case_created", "stage_change"])

    def test_error_mapping(self):
        self.create_case()
        resp = self.client.post("/v1/cases/case_1/transitions", json={"to_stage": "Arbitration"})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["error"], "UnknownStageError")

        resp = self.client.post("/v1/cases/case_1/transitions", json={"to_stage": "Assessment"})
        self.assertEqual(resp.status_code, 409)
        self.assertFalse(resp.json()["retryable"])

        self.assertEqual(self.client.get("/v1/cases/nope").status_code, 404)

    def test_workflow_endpoints(self):
        si = self.create_case()["stage_instance_id"]
        notice = self.client.post("/v1/cases/case_1/notices", json={"reference": "SCN-1"})
        self.assertEqual(notice.status_code, 201)
        reply = self.client.post("/v1/cases/case_1/replies",
                                 json={"notice_id": notice.json()["notice_id"]})
        self.assertEqual(reply.status_code, 201)
        self.assertEqual(reply.json()["filing_status"], "Filed")

        resp = self.client.post(f"/v1/stage-instances/{si}/steps/notices/complete",
                                json={"actor": "emp_1"})
        self.assertEqual(resp.json()["current_step"], "reply")

        resp = self.client.post(f"/v1/stage-instances/{si}/steps/hearings/skip", json={})
        self.assertEqual(resp.status_code, 422)

        resp = self.client.post(f"/v1/stage-instances/{si}/steps/hearings/complete", json={})
        self.assertEqual(resp.status_code, 409)

        state = self.client.get(f"/v1/stage-instances/{si}/workflow").json()
        self.assertTrue(state["can_close"])
        self.assertEqual(state["progress"], 25)

        resp = self.client.post(f"/v1/stage-instances/{si}/steps/closure/complete", json={})
        self.assertEqual(resp.json()["transition"]["to_stage"], "Adjudication")

    def test_escalation_endpoints(self):
        now = datetime.now(timezone.utc).timestamp()
        self.lc.store.save_employee(Employee("mgr_1", "t1", "Manoj", "Manager"))
        self.lc.store.save_task(Task.create("t1", "case_1", "File appeal", due_at=now - 30 * 3600,
                                            assignee_id="emp_1", priority=TaskPriority.CRITICAL))

        self.assertEqual(self.client.post("/v1/escalations/sweep").json()["events_created"], 1)
        listed = self.client.get("/v1/escalations", params={"status": "pending"}).json()
        self.assertEqual(listed["count"], 1)
        event_id = listed["events"][0]["event_id"]

        resp = self.client.post(f"/v1/escalations/{event_id}/contacted", json={"notes": "called"})
        self.assertEqual(resp.json()["status"], "contacted")
        resp = self.client.post(f"/v1/escalations/{event_id}/resolve", json={})
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post(f"/v1/escalations/{event_id}/resolve", json={"resolved_by": "mgr_1"})
        self.assertEqual(resp.json()["status"], "resolved")
        resp = self.client.post(f"/v1/escalations/{event_id}/escalate", json={})
        self.assertEqual(resp.status_code, 409)

    def test_maintenance_and_stats(self):
        self.assertEqual(self.client.post("/v1/maintenance/reap").json(), {"reservations_removed": 0})
        self.create_case()
        self.client.post("/v1/cases/case_1/transitions", json={"to_stage": "Adjudication"})
        stats = self.client.get("/v1/stats").json()
        self.assertEqual(stats["footprints"], {"committed": 1})
        self.assertEqual(stats["tasks"], {"Open": 3})


@unittest.skipUnless(HAS_CLIENT, "fastapi and httpx not installed")
class TestBlockingWorkOffLoop(unittest.TestCase):

    def test_health_answers_during_retry_backoff(self):
        import httpx
        from api.server import create_app

        backing_off = threading.Event()
        release = threading.Event()

        def sleep_fn(seconds):
            backing_off.set()
            release.wait(5)

        config = load_lifecycle_config(DEFAULT_CONFIG_PATH, include_env_vars=False)
        lc = CaseLifecycle(config, dispatcher=RecordingDispatcher(), sleep_fn=sleep_fn)
        lc.start_case(Case.create("t1", "Assessment", owner_id="emp_1", case_id="case_1"))

        resolve = lc.engine.resolver.resolve
        calls = []

        def flaky_resolve(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise TemplateResolutionError("template table reloading")
            return resolve(*args, **kwargs)

        lc.engine.resolver.resolve = flaky_resolve
        app = create_app(lifecycle=lc)

        async def scenario():
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                pending = asyncio.create_task(client.post(
                    "/v1/cases/case_1/transitions", json={"to_stage": "Adjudication"},
                ))
                self.assertTrue(await asyncio.to_thread(backing_off.wait, 5))
                health = await asyncio.wait_for(client.get("/health"), timeout=2)
                still_running = not pending.done()
                release.set()
                return health, still_running, await pending

        try:
            health, still_running, moved = asyncio.run(scenario())
        finally:
            release.set()
            lc.close()

        self.assertEqual(health.status_code, 200)
        self.assertTrue(still_running)
        self.assertEqual(moved.status_code, 200, moved.text)
        self.assertEqual(moved.json()["to_stage"], "Adjudication")
        self.assertEqual(len(calls), 2)


if __name__ == "__main__":
    unittest.main()
