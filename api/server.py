"""
Caseflow — API Server

FastAPI application serving:
  POST /v1/cases                                   — register a case
  GET  /v1/cases/{id}                              — lifecycle state
  GET  /v1/cases/{id}/tasks                        — case tasks
  GET  /v1/cases/{id}/timeline                     — case timeline
  GET  /v1/cases/{id}/footprints                   — transition footprints
  POST /v1/cases/{id}/transitions                  — move the case
  POST /v1/cases/{id}/notices                      — record a notice
  POST /v1/cases/{id}/replies                      — record a reply
  GET  /v1/stage-instances/{id}/workflow           — workflow state
  POST /v1/stage-instances/{id}/steps/{step}/complete
  POST /v1/stage-instances/{id}/steps/{step}/skip
  POST /v1/escalations/sweep                       — run one sweep
  GET  /v1/escalations                             — list events
  POST /v1/escalations/{id}/contacted|resolve|escalate
  POST /v1/maintenance/reap                        — drop expired reservations
  GET  /v1/stats, /health, /ready

Lifecycle calls are synchronous (database I/O, retry backoff sleeps), so
handlers hand them to the threadpool and the event loop only parses
bodies and writes responses.

Lifecycle errors map to HTTP status:
  RecordNotFoundError → 404, UnknownStageError → 422,
  other terminal errors → 409, retryable errors → 503

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

Requires: pip install fastapi uvicorn
"""

import json
import logging
import threading
import time
from dataclasses import asdict
from typing import Any, Callable

from lifecycle.errors import LifecycleError, RecordNotFoundError, UnknownStageError

logger = logging.getLogger("caseflow.api")


def status_for(error: LifecycleError) -> int:
    if isinstance(error, RecordNotFoundError):
        return 404
    if isinstance(error, UnknownStageError):
        return 422
    if error.retryable:
        return 503
    if error.terminal:
        return 409
    return 500


def create_app(lifecycle: Any = None) -> Any:
    """
    Create and configure the FastAPI application.

    ``lifecycle`` is a CaseLifecycle; when omitted one is built on first
    request from the packaged config and the CF_DB_* environment.
    """
    from fastapi import FastAPI, Request
    from fastapi.concurrency import run_in_threadpool
    from fastapi.responses import JSONResponse

    from api.models import (
        CaseSubmission, TransitionRequest, StepAction,
        NoticeSubmission, ReplySubmission, ResolveAction,
    )
    from lifecycle.runtime import CaseLifecycle
    from lifecycle.types import Case, ReplyFilingStatus

    app = FastAPI(
        title="Caseflow API",
        version="0.1.0",
        description="Case stage lifecycle and task automation",
    )

    # ── State ────────────────────────────────────────────────

    _lifecycle: CaseLifecycle | None = lifecycle
    _lifecycle_lock = threading.Lock()

    def get_lifecycle() -> CaseLifecycle:
        nonlocal _lifecycle
        with _lifecycle_lock:
            if _lifecycle is None:
                from infra.db import create_backend
                _lifecycle = CaseLifecycle(db=create_backend())
            return _lifecycle

    async def blocking(work: Callable[[CaseLifecycle], Any]) -> Any:
        """Run ``work(lifecycle)`` on the threadpool."""
        return await run_in_threadpool(lambda: work(get_lifecycle()))

    async def read_body(request: Request) -> dict[str, Any]:
        raw = await request.body()
        return json.loads(raw) if raw else {}

    @app.on_event("shutdown")
    async def shutdown():
        if _lifecycle is not None:
            _lifecycle.close()

    @app.exception_handler(LifecycleError)
    async def lifecycle_error(request: Request, exc: LifecycleError):
        code = status_for(exc)
        logger.info("%s %s → %d %s: %s", request.method, request.url.path, code,
                    type(exc).__name__, exc)
        return JSONResponse(status_code=code, content={
            "error": type(exc).__name__,
            "message": str(exc),
            "detail": json.loads(json.dumps(exc.detail, default=str)),
            "retryable": exc.retryable,
        })

    # ── Cases ─────────────────────────────────────────────────

    @app.post("/v1/cases")
    async def create_case(request: Request):
        submission = CaseSubmission.from_body(await read_body(request))
        errors = submission.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})

        def start(lc: CaseLifecycle) -> dict[str, Any]:
            case = Case.create(
                tenant_id=submission.tenant_id,
                current_stage=submission.current_stage or lc.config.catalog.initial_stage,
                owner_id=submission.owner_id,
                amount_in_dispute=float(submission.amount_in_dispute),
                owner_seniority=submission.owner_seniority,
                region=submission.region,
                case_number=submission.case_number,
                title=submission.title,
                case_id=submission.case_id,
            )
            instance = lc.start_case(case, actor=submission.actor)
            return {
                "case_id": case.case_id,
                "current_stage": case.current_stage,
                "stage_instance_id": instance.stage_instance_id,
                "cycle_no": instance.cycle_no,
            }

        return JSONResponse(status_code=201, content=await blocking(start))

    @app.get("/v1/cases/{case_id}")
    async def get_case(case_id: str):
        return JSONResponse(content=await blocking(lambda lc: lc.lifecycle_state(case_id)))

    @app.get("/v1/cases/{case_id}/tasks")
    async def get_tasks(case_id: str):
        def tasks(lc: CaseLifecycle) -> list[dict[str, Any]]:
            lc.get_case(case_id)
            return [t.to_dict() for t in lc.store.list_tasks(case_id=case_id)]

        rows = await blocking(tasks)
        return JSONResponse(content={"count": len(rows), "tasks": rows})

    @app.get("/v1/cases/{case_id}/timeline")
    async def get_timeline(case_id: str):
        def timeline(lc: CaseLifecycle) -> list[dict[str, Any]]:
            lc.get_case(case_id)
            return [asdict(e) for e in lc.store.list_timeline(case_id)]

        return JSONResponse(content={"entries": await blocking(timeline)})

    @app.get("/v1/cases/{case_id}/footprints")
    async def get_footprints(case_id: str):
        footprints = await blocking(lambda lc: lc.footprints_for(case_id))
        return JSONResponse(content={"footprints": [fp.to_dict() for fp in footprints]})

    @app.post("/v1/cases/{case_id}/transitions")
    async def transition(case_id: str, request: Request):
        req = TransitionRequest.from_body(await read_body(request))
        errors = req.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        result = await blocking(lambda lc: lc.transition(
            case_id,
            req.to_stage,
            from_stage=req.from_stage or None,
            actor=req.actor,
            comments=req.comments,
            idempotency_key=req.idempotency_key,
        ))
        return JSONResponse(content=result.to_dict())

    @app.post("/v1/cases/{case_id}/notices")
    async def record_notice(case_id: str, request: Request):
        body = await read_body(request)
        sub = NoticeSubmission(reference=str(body.get("reference", "")))
        notice = await blocking(lambda lc: lc.record_notice(case_id, reference=sub.reference))
        return JSONResponse(status_code=201, content={
            "notice_id": notice.notice_id,
            "stage_instance_id": notice.stage_instance_id,
            "status": notice.status.value,
        })

    @app.post("/v1/cases/{case_id}/replies")
    async def record_reply(case_id: str, request: Request):
        body = await read_body(request)
        sub = ReplySubmission(
            notice_id=body.get("notice_id", ""),
            filing_status=body.get("filing_status", ReplyFilingStatus.FILED.value),
        )
        errors = sub.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        reply = await blocking(lambda lc: lc.record_reply(
            case_id, sub.notice_id, ReplyFilingStatus(sub.filing_status),
        ))
        return JSONResponse(status_code=201, content={
            "reply_id": reply.reply_id,
            "notice_id": reply.notice_id,
            "filing_status": reply.filing_status.value,
        })

    # ── Workflow ──────────────────────────────────────────────

    @app.get("/v1/stage-instances/{stage_instance_id}/workflow")
    async def workflow_state(stage_instance_id: str):
        state = await blocking(lambda lc: lc.workflow_state(stage_instance_id))
        return JSONResponse(content=state.to_dict())

    @app.post("/v1/stage-instances/{stage_instance_id}/steps/{step_key}/complete")
    async def complete_step(stage_instance_id: str, step_key: str, request: Request):
        body = await read_body(request)
        action = StepAction(step_key=step_key, actor=body.get("actor", "api"),
                            notes=body.get("notes", ""))
        errors = action.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        outcome = await blocking(lambda lc: lc.complete_step(
            stage_instance_id, action.step_key, actor=action.actor, notes=action.notes,
        ))
        return JSONResponse(content=outcome.to_dict())

    @app.post("/v1/stage-instances/{stage_instance_id}/steps/{step_key}/skip")
    async def skip_step(stage_instance_id: str, step_key: str, request: Request):
        body = await read_body(request)
        action = StepAction(step_key=step_key, actor=body.get("actor", "api"),
                            reason=body.get("reason", ""))
        errors = action.validate(skipping=True)
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        outcome = await blocking(lambda lc: lc.skip_step(
            stage_instance_id, action.step_key, action.reason, actor=action.actor,
        ))
        return JSONResponse(content=outcome.to_dict())

    # ── Escalations ───────────────────────────────────────────

    @app.post("/v1/escalations/sweep")
    async def sweep(tenant_id: str | None = None):
        created = await blocking(lambda lc: lc.check_and_escalate(tenant_id))
        return JSONResponse(content={"events_created": created})

    @app.get("/v1/escalations")
    async def list_escalations(tenant_id: str | None = None, status: str | None = None,
                               limit: int = 100):
        events = await blocking(lambda lc: lc.list_escalations(
            tenant_id=tenant_id, status=status, limit=limit,
        ))
        return JSONResponse(content={
            "count": len(events),
            "events": [e.to_dict() for e in events],
        })

    @app.post("/v1/escalations/{event_id}/contacted")
    async def mark_contacted(event_id: str, request: Request):
        body = await read_body(request)
        event = await blocking(lambda lc: lc.mark_contacted(event_id, notes=body.get("notes", "")))
        return JSONResponse(content=event.to_dict())

    @app.post("/v1/escalations/{event_id}/resolve")
    async def resolve(event_id: str, request: Request):
        body = await read_body(request)
        action = ResolveAction(resolved_by=body.get("resolved_by", ""), notes=body.get("notes", ""))
        errors = action.validate()
        if errors:
            return JSONResponse(status_code=422, content={"errors": errors})
        event = await blocking(lambda lc: lc.resolve_escalation(
            event_id, action.resolved_by, action.notes,
        ))
        return JSONResponse(content=event.to_dict())

    @app.post("/v1/escalations/{event_id}/escalate")
    async def escalate(event_id: str, request: Request):
        body = await read_body(request)
        event = await blocking(lambda lc: lc.escalate(event_id, notes=body.get("notes", "")))
        return JSONResponse(status_code=201, content=event.to_dict())

    # ── Maintenance ───────────────────────────────────────────

    @app.post("/v1/maintenance/reap")
    async def reap():
        removed = await blocking(lambda lc: lc.reap_expired_reservations())
        return JSONResponse(content={"reservations_removed": removed})

    @app.get("/v1/stats")
    async def get_stats():
        return JSONResponse(content=await blocking(lambda lc: lc.stats()))

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    @app.get("/ready")
    async def ready():
        try:
            await blocking(lambda lc: lc.stats())
            return JSONResponse(content={"status": "ok"})
        except Exception as e:
            return JSONResponse(
                status_code=503,
                content={"status": "fail", "error": str(e)[:200]},
            )

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    app = create_app()
except ImportError:
    # FastAPI not installed; app creation deferred
    app = None
