"""
Caseflow — Lifecycle Store

Persistence for cases, stage instances, tasks, workflow steps,
footprints, timeline entries, notice/reply/hearing read models,
employees and escalation rules/events. Runs on infra.db so the same
code serves SQLite and PostgreSQL.

This is the only module that knows column names. Everything above it
works with the typed records from lifecycle.types.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator

from infra.db import DatabaseBackend, SQLiteBackend
from lifecycle.types import (
    Case,
    Employee,
    EmployeeStatus,
    EscalationEvent,
    EscalationRule,
    EscalationStatus,
    EscalationTrigger,
    Footprint,
    FootprintStatus,
    Hearing,
    Notice,
    NoticeStatus,
    Reply,
    ReplyFilingStatus,
    StageInstance,
    StageInstanceStatus,
    StepKey,
    StepStatus,
    Task,
    TaskOrigin,
    TaskPriority,
    TaskStatus,
    TimelineEntry,
    TransitionType,
    WorkflowStep,
    new_id,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS cases (
    case_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    current_stage TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    amount_in_dispute REAL DEFAULT 0,
    owner_seniority TEXT DEFAULT '',
    region TEXT DEFAULT '',
    case_number TEXT DEFAULT '',
    title TEXT DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS stage_instances (
    stage_instance_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    stage_key TEXT NOT NULL,
    cycle_no INTEGER NOT NULL,
    status TEXT NOT NULL,
    started_at REAL NOT NULL,
    ended_at REAL,
    created_by TEXT DEFAULT 'system',
    UNIQUE (case_id, stage_key, cycle_no)
);

CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    priority TEXT NOT NULL,
    due_at REAL NOT NULL,
    assignee_id TEXT DEFAULT '',
    status TEXT NOT NULL,
    origin TEXT NOT NULL,
    template_id TEXT DEFAULT '',
    stage_instance_id TEXT DEFAULT '',
    stage_key TEXT DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS workflow_steps (
    stage_instance_id TEXT NOT NULL,
    step_key TEXT NOT NULL,
    status TEXT NOT NULL,
    completed_at REAL,
    completed_by TEXT DEFAULT '',
    notes TEXT DEFAULT '',
    updated_at REAL NOT NULL,
    PRIMARY KEY (stage_instance_id, step_key)
);

CREATE TABLE IF NOT EXISTS footprints (
    signature TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    from_stage TEXT NOT NULL,
    to_stage TEXT NOT NULL,
    transition_type TEXT NOT NULL,
    cycle_no INTEGER NOT NULL,
    status TEXT NOT NULL,
    attempt_id TEXT NOT NULL,
    reserved_at REAL NOT NULL,
    expires_at REAL NOT NULL,
    committed_at REAL,
    task_ids TEXT DEFAULT '[]',
    template_version TEXT DEFAULT '',
    stage_instance_id TEXT DEFAULT '',
    timeline_entry_id TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS timeline_entries (
    entry_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    entry_type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    metadata TEXT DEFAULT '{}',
    created_by TEXT DEFAULT 'system',
    created_at REAL NOT NULL,
    UNIQUE (case_id, seq)
);

CREATE TABLE IF NOT EXISTS notices (
    notice_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    stage_instance_id TEXT NOT NULL,
    status TEXT NOT NULL,
    reference TEXT DEFAULT '',
    received_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS replies (
    reply_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    notice_id TEXT NOT NULL,
    filing_status TEXT NOT NULL,
    filed_at REAL
);

CREATE TABLE IF NOT EXISTS hearings (
    hearing_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    case_id TEXT NOT NULL,
    stage_instance_id TEXT,
    hearing_at REAL NOT NULL,
    status TEXT DEFAULT 'Scheduled'
);

CREATE TABLE IF NOT EXISTS employees (
    employee_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    role TEXT NOT NULL,
    reporting_to TEXT DEFAULT '',
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS escalation_rules (
    rule_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT DEFAULT '',
    trigger_type TEXT NOT NULL,
    hours_overdue REAL,
    priorities TEXT DEFAULT '[]',
    stages TEXT DEFAULT '[]',
    notify_roles TEXT DEFAULT '[]',
    escalate_to_role TEXT DEFAULT '',
    email_template TEXT DEFAULT '',
    level INTEGER DEFAULT 1,
    sort_order INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS escalation_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    task_id TEXT NOT NULL,
    status TEXT NOT NULL,
    triggered_at REAL NOT NULL,
    escalated_to TEXT DEFAULT '',
    current_level INTEGER DEFAULT 1,
    notes TEXT DEFAULT '',
    resolved_at REAL,
    resolved_by TEXT DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_stage_instances_case ON stage_instances(case_id, stage_key);
CREATE INDEX IF NOT EXISTS idx_tasks_case ON tasks(case_id);
CREATE INDEX IF NOT EXISTS idx_tasks_due ON tasks(status, due_at);
CREATE INDEX IF NOT EXISTS idx_footprints_case ON footprints(case_id);
CREATE INDEX IF NOT EXISTS idx_notices_instance ON notices(stage_instance_id);
CREATE INDEX IF NOT EXISTS idx_escalation_events_task ON escalation_events(task_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_escalation_one_pending
    ON escalation_events(task_id) WHERE status = 'pending';
"""


class LifecycleStore:
    """Typed persistence for the case lifecycle."""

    def __init__(self, db: DatabaseBackend | None = None):
        self.db = db or SQLiteBackend(":memory:")
        self.db.executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Usage:
            with store.transaction():
                store.save_task(task)
                store.advance_case_stage(case_id, old, new)
                # Both committed atomically, or both rolled back
        """
        with self.db.transaction():
            yield

    def _upsert(
        self,
        table: str,
        keys: tuple[str, ...],
        row: dict[str, Any],
        replace: bool = True,
    ) -> bool:
        """Insert ``row``; on a key conflict update it, or keep the stored row when not ``replace``."""
        cols = list(row)
        if replace:
            updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c not in keys)
            on_conflict = f"DO UPDATE SET {updates}"
        else:
            on_conflict = "DO NOTHING"
        self.db.execute(
            f"INSERT INTO {table} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT ({', '.join(keys)}) {on_conflict}",
            tuple(row.values()),
        )
        return self.db.rowcount > 0

    # ─── Cases ───────────────────────────────────────────────────────

    def save_case(self, case: Case) -> None:
        self._upsert("cases", ("case_id",), {
            "case_id": case.case_id,
            "tenant_id": case.tenant_id,
            "current_stage": case.current_stage,
            "owner_id": case.owner_id,
            "amount_in_dispute": case.amount_in_dispute,
            "owner_seniority": case.owner_seniority,
            "region": case.region,
            "case_number": case.case_number,
            "title": case.title,
            "created_at": case.created_at,
            "updated_at": case.updated_at,
        })

    def get_case(self, case_id: str) -> Case | None:
        row = self.db.fetchone("SELECT * FROM cases WHERE case_id = ?", (case_id,))
        if not row:
            return None
        return Case(
            case_id=row["case_id"],
            tenant_id=row["tenant_id"],
            current_stage=row["current_stage"],
            owner_id=row["owner_id"],
            amount_in_dispute=row["amount_in_dispute"] or 0.0,
            owner_seniority=row["owner_seniority"] or "",
            region=row["region"] or "",
            case_number=row["case_number"] or "",
            title=row["title"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def advance_case_stage(
        self,
        case_id: str,
        from_stage: str,
        to_stage: str,
        now: float | None = None,
    ) -> bool:
        """Move the case only if it is still at ``from_stage``."""
        cursor = self.db.execute(
            "UPDATE cases SET current_stage = ?, updated_at = ? "
            "WHERE case_id = ? AND current_stage = ?",
            (to_stage, now or time.time(), case_id, from_stage),
        )
        return cursor.rowcount == 1

    # ─── Stage Instances ─────────────────────────────────────────────

    def insert_stage_instance(self, inst: StageInstance) -> None:
        self.db.execute("""
            INSERT INTO stage_instances
            (stage_instance_id, tenant_id, case_id, stage_key, cycle_no,
             status, started_at, ended_at, created_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            inst.stage_instance_id, inst.tenant_id, inst.case_id, inst.stage_key,
            inst.cycle_no, inst.status.value, inst.started_at, inst.ended_at,
            inst.created_by,
        ))

    def get_stage_instance(self, stage_instance_id: str) -> StageInstance | None:
        row = self.db.fetchone(
            "SELECT * FROM stage_instances WHERE stage_instance_id = ?", (stage_instance_id,)
        )
        return self._row_to_stage_instance(row) if row else None

    def get_active_stage_instance(self, case_id: str) -> StageInstance | None:
        row = self.db.fetchone(
            "SELECT * FROM stage_instances WHERE case_id = ? AND status = ? "
            "ORDER BY started_at DESC LIMIT 1",
            (case_id, StageInstanceStatus.ACTIVE.value),
        )
        return self._row_to_stage_instance(row) if row else None

    def list_stage_instances(self, case_id: str) -> list[StageInstance]:
        rows = self.db.fetchall(
            "SELECT * FROM stage_instances WHERE case_id = ? ORDER BY started_at, cycle_no",
            (case_id,),
        )
        return [self._row_to_stage_instance(r) for r in rows]

    def max_cycle(self, case_id: str, stage_key: str) -> int:
        """Highest cycle number for a stage on a case, 0 if never visited."""
        row = self.db.fetchone(
            "SELECT MAX(cycle_no) AS cycle FROM stage_instances "
            "WHERE case_id = ? AND stage_key = ?",
            (case_id, stage_key),
        )
        return int(row["cycle"]) if row and row["cycle"] is not None else 0

    def close_stage_instance(self, stage_instance_id: str, now: float) -> None:
        self.db.execute(
            "UPDATE stage_instances SET status = ?, ended_at = ? WHERE stage_instance_id = ?",
            (StageInstanceStatus.CLOSED.value, now, stage_instance_id),
        )

    def _row_to_stage_instance(self, row) -> StageInstance:
        return StageInstance(
            stage_instance_id=row["stage_instance_id"],
            tenant_id=row["tenant_id"],
            case_id=row["case_id"],
            stage_key=row["stage_key"],
            cycle_no=row["cycle_no"],
            status=StageInstanceStatus(row["status"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            created_by=row["created_by"] or "system",
        )

    # ─── Tasks ───────────────────────────────────────────────────────

    def save_task(self, task: Task) -> None:
        self._upsert("tasks", ("task_id",), {
            "task_id": task.task_id,
            "tenant_id": task.tenant_id,
            "case_id": task.case_id,
            "title": task.title,
            "description": task.description,
            "priority": task.priority.value,
            "due_at": task.due_at,
            "assignee_id": task.assignee_id,
            "status": task.status.value,
            "origin": task.origin.value,
            "template_id": task.template_id,
            "stage_instance_id": task.stage_instance_id,
            "stage_key": task.stage_key,
            "created_at": task.created_at,
            "updated_at": task.updated_at,
        })

    def get_task(self, task_id: str) -> Task | None:
        row = self.db.fetchone("SELECT * FROM tasks WHERE task_id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        case_id: str | None = None,
        stage_instance_id: str | None = None,
        origin: TaskOrigin | None = None,
    ) -> list[Task]:
        query = "SELECT * FROM tasks WHERE 1=1"
        params: list[Any] = []
        if case_id:
            query += " AND case_id = ?"
            params.append(case_id)
        if stage_instance_id:
            query += " AND stage_instance_id = ?"
            params.append(stage_instance_id)
        if origin:
            query += " AND origin = ?"
            params.append(origin.value)
        query += " ORDER BY created_at, task_id"
        return [self._row_to_task(r) for r in self.db.fetchall(query, tuple(params))]

    def list_overdue_tasks(self, now: float, tenant_id: str | None = None) -> list[Task]:
        """Non-terminal tasks whose due date has passed, oldest first."""
        query = "SELECT * FROM tasks WHERE status IN (?, ?) AND due_at < ?"
        params: list[Any] = [TaskStatus.OPEN.value, TaskStatus.IN_PROGRESS.value, now]
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY due_at, task_id"
        return [self._row_to_task(r) for r in self.db.fetchall(query, tuple(params))]

    def update_task_status(self, task_id: str, status: TaskStatus, now: float | None = None) -> None:
        self.db.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE task_id = ?",
            (status.value, now or time.time(), task_id),
        )

    def _row_to_task(self, row) -> Task:
        return Task(
            task_id=row["task_id"],
            tenant_id=row["tenant_id"],
            case_id=row["case_id"],
            title=row["title"],
            description=row["description"] or "",
            priority=TaskPriority(row["priority"]),
            due_at=row["due_at"],
            assignee_id=row["assignee_id"] or "",
            status=TaskStatus(row["status"]),
            origin=TaskOrigin(row["origin"]),
            template_id=row["template_id"] or "",
            stage_instance_id=row["stage_instance_id"] or "",
            stage_key=row["stage_key"] or "",
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ─── Workflow Steps ──────────────────────────────────────────────

    def insert_steps(self, steps: list[WorkflowStep]) -> None:
        for step in steps:
            self.db.execute("""
                INSERT INTO workflow_steps
                (stage_instance_id, step_key, status, completed_at,
                 completed_by, notes, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (stage_instance_id, step_key) DO NOTHING
            """, (
                step.stage_instance_id, step.step_key.value, step.status.value,
                step.completed_at, step.completed_by, step.notes, step.updated_at,
            ))

    def get_steps(self, stage_instance_id: str) -> list[WorkflowStep]:
        rows = self.db.fetchall(
            "SELECT * FROM workflow_steps WHERE stage_instance_id = ?", (stage_instance_id,)
        )
        order = {key: i for i, key in enumerate(StepKey)}
        steps = [
            WorkflowStep(
                stage_instance_id=r["stage_instance_id"],
                step_key=StepKey(r["step_key"]),
                status=StepStatus(r["status"]),
                completed_at=r["completed_at"],
                completed_by=r["completed_by"] or "",
                notes=r["notes"] or "",
                updated_at=r["updated_at"],
            )
            for r in rows
        ]
        return sorted(steps, key=lambda s: order[s.step_key])

    def update_step(self, step: WorkflowStep) -> None:
        self.db.execute("""
            UPDATE workflow_steps
            SET status = ?, completed_at = ?, completed_by = ?, notes = ?, updated_at = ?
            WHERE stage_instance_id = ? AND step_key = ?
        """, (
            step.status.value, step.completed_at, step.completed_by, step.notes,
            step.updated_at, step.stage_instance_id, step.step_key.value,
        ))

    # ─── Footprints ──────────────────────────────────────────────────

    def insert_footprint(self, fp: Footprint) -> bool:
        """Conditional insert. False when the signature already has a row."""
        cursor = self.db.execute("""
            INSERT INTO footprints
            (signature, tenant_id, case_id, from_stage, to_stage, transition_type,
             cycle_no, status, attempt_id, reserved_at, expires_at, committed_at,
             task_ids, template_version, stage_instance_id, timeline_entry_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (signature) DO NOTHING
        """, (
            fp.signature, fp.tenant_id, fp.case_id, fp.from_stage, fp.to_stage,
            fp.transition_type.value, fp.cycle_no, fp.status.value, fp.attempt_id,
            fp.reserved_at, fp.expires_at, fp.committed_at,
            json.dumps(fp.task_ids), fp.template_version,
            fp.stage_instance_id, fp.timeline_entry_id,
        ))
        return cursor.rowcount == 1

    def reclaim_footprint(
        self,
        signature: str,
        attempt_id: str,
        reserved_at: float,
        expires_at: float,
        now: float,
    ) -> bool:
        """Take over a reservation whose expiry has passed. False if none qualifies."""
        cursor = self.db.execute("""
            UPDATE footprints
            SET attempt_id = ?, reserved_at = ?, expires_at = ?
            WHERE signature = ? AND status = ? AND expires_at < ?
        """, (
            attempt_id, reserved_at, expires_at,
            signature, FootprintStatus.RESERVED.value, now,
        ))
        return cursor.rowcount == 1

    def commit_footprint(
        self,
        signature: str,
        attempt_id: str,
        task_ids: list[str],
        template_version: str,
        stage_instance_id: str,
        timeline_entry_id: str,
        committed_at: float,
    ) -> bool:
        """Finalize a reservation still held by ``attempt_id``."""
        cursor = self.db.execute("""
            UPDATE footprints
            SET status = ?, committed_at = ?, task_ids = ?, template_version = ?,
                stage_instance_id = ?, timeline_entry_id = ?
            WHERE signature = ? AND attempt_id = ? AND status = ?
        """, (
            FootprintStatus.COMMITTED.value, committed_at, json.dumps(task_ids),
            template_version, stage_instance_id, timeline_entry_id,
            signature, attempt_id, FootprintStatus.RESERVED.value,
        ))
        return cursor.rowcount == 1

    def delete_reservation(self, signature: str, attempt_id: str) -> bool:
        cursor = self.db.execute(
            "DELETE FROM footprints WHERE signature = ? AND attempt_id = ? AND status = ?",
            (signature, attempt_id, FootprintStatus.RESERVED.value),
        )
        return cursor.rowcount == 1

    def delete_expired_reservations(self, now: float) -> int:
        cursor = self.db.execute(
            "DELETE FROM footprints WHERE status = ? AND expires_at < ?",
            (FootprintStatus.RESERVED.value, now),
        )
        return cursor.rowcount

    def get_footprint(self, signature: str) -> Footprint | None:
        row = self.db.fetchone("SELECT * FROM footprints WHERE signature = ?", (signature,))
        return self._row_to_footprint(row) if row else None

    def list_footprints(self, case_id: str) -> list[Footprint]:
        rows = self.db.fetchall(
            "SELECT * FROM footprints WHERE case_id = ? ORDER BY reserved_at", (case_id,)
        )
        return [self._row_to_footprint(r) for r in rows]

    def _row_to_footprint(self, row) -> Footprint:
        return Footprint(
            signature=row["signature"],
            tenant_id=row["tenant_id"],
            case_id=row["case_id"],
            from_stage=row["from_stage"],
            to_stage=row["to_stage"],
            transition_type=TransitionType(row["transition_type"]),
            cycle_no=row["cycle_no"],
            status=FootprintStatus(row["status"]),
            attempt_id=row["attempt_id"],
            reserved_at=row["reserved_at"],
            expires_at=row["expires_at"],
            committed_at=row["committed_at"],
            task_ids=json.loads(row["task_ids"] or "[]"),
            template_version=row["template_version"] or "",
            stage_instance_id=row["stage_instance_id"] or "",
            timeline_entry_id=row["timeline_entry_id"] or "",
        )

    # ─── Timeline ────────────────────────────────────────────────────

    def append_timeline(
        self,
        tenant_id: str,
        case_id: str,
        entry_type: str,
        title: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        created_by: str = "system",
        now: float | None = None,
    ) -> TimelineEntry:
        entry = TimelineEntry(
            entry_id=new_id("tl"),
            tenant_id=tenant_id,
            case_id=case_id,
            entry_type=entry_type,
            title=title,
            description=description,
            metadata=metadata or {},
            created_by=created_by,
            created_at=now or time.time(),
        )
        with self.db.transaction():
            row = self.db.fetchone(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM timeline_entries WHERE case_id = ?",
                (case_id,),
            )
            self.db.execute("""
                INSERT INTO timeline_entries
                (entry_id, tenant_id, case_id, seq, entry_type, title,
                 description, metadata, created_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.entry_id, tenant_id, case_id, int(row["seq"]) + 1, entry_type,
                title, description, json.dumps(entry.metadata, default=str),
                created_by, entry.created_at,
            ))
        return entry

    def list_timeline(self, case_id: str) -> list[TimelineEntry]:
        rows = self.db.fetchall(
            "SELECT * FROM timeline_entries WHERE case_id = ? ORDER BY seq", (case_id,)
        )
        return [
            TimelineEntry(
                entry_id=r["entry_id"],
                tenant_id=r["tenant_id"],
                case_id=r["case_id"],
                entry_type=r["entry_type"],
                title=r["title"],
                description=r["description"] or "",
                metadata=json.loads(r["metadata"] or "{}"),
                created_by=r["created_by"] or "system",
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ─── Notices / Replies / Hearings ────────────────────────────────

    def save_notice(self, notice: Notice) -> None:
        self._upsert("notices", ("notice_id",), {
            "notice_id": notice.notice_id,
            "tenant_id": notice.tenant_id,
            "case_id": notice.case_id,
            "stage_instance_id": notice.stage_instance_id,
            "status": notice.status.value,
            "reference": notice.reference,
            "received_at": notice.received_at or time.time(),
        })

    def list_notices(self, stage_instance_id: str) -> list[Notice]:
        rows = self.db.fetchall(
            "SELECT * FROM notices WHERE stage_instance_id = ? ORDER BY received_at",
            (stage_instance_id,),
        )
        return [
            Notice(
                notice_id=r["notice_id"],
                tenant_id=r["tenant_id"],
                case_id=r["case_id"],
                stage_instance_id=r["stage_instance_id"],
                status=NoticeStatus(r["status"]),
                reference=r["reference"] or "",
                received_at=r["received_at"],
            )
            for r in rows
        ]

    def save_reply(self, reply: Reply) -> None:
        """Record a reply and move its notice to Replied or Reply Pending."""
        filed = reply.filing_status in (ReplyFilingStatus.FILED, ReplyFilingStatus.ACKNOWLEDGED)
        notice_status = NoticeStatus.REPLIED if filed else NoticeStatus.REPLY_PENDING
        with self.db.transaction():
            self._upsert("replies", ("reply_id",), {
                "reply_id": reply.reply_id,
                "tenant_id": reply.tenant_id,
                "case_id": reply.case_id,
                "notice_id": reply.notice_id,
                "filing_status": reply.filing_status.value,
                "filed_at": reply.filed_at,
            })
            self.db.execute(
                "UPDATE notices SET status = ? WHERE notice_id = ?",
                (notice_status.value, reply.notice_id),
            )

    def count_replies(self, case_id: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS cnt FROM replies WHERE case_id = ?", (case_id,)
        )
        return int(row["cnt"])

    def save_hearing(self, hearing: Hearing) -> None:
        self._upsert("hearings", ("hearing_id",), {
            "hearing_id": hearing.hearing_id,
            "tenant_id": hearing.tenant_id,
            "case_id": hearing.case_id,
            "stage_instance_id": hearing.stage_instance_id,
            "hearing_at": hearing.hearing_at,
            "status": hearing.status,
        })

    def count_hearings(self, stage_instance_id: str, case_id: str) -> int:
        """Hearings of the stage instance, else case hearings not tied to any instance."""
        row = self.db.fetchone(
            "SELECT COUNT(*) AS cnt FROM hearings WHERE stage_instance_id = ?",
            (stage_instance_id,),
        )
        count = int(row["cnt"])
        if count:
            return count
        row = self.db.fetchone(
            "SELECT COUNT(*) AS cnt FROM hearings WHERE case_id = ? AND stage_instance_id IS NULL",
            (case_id,),
        )
        return int(row["cnt"])

    # ─── Employees ───────────────────────────────────────────────────

    def save_employee(self, emp: Employee) -> None:
        self._upsert("employees", ("employee_id",), {
            "employee_id": emp.employee_id,
            "tenant_id": emp.tenant_id,
            "name": emp.name,
            "role": emp.role,
            "reporting_to": emp.reporting_to,
            "status": emp.status.value,
        })

    def get_employee(self, employee_id: str) -> Employee | None:
        row = self.db.fetchone("SELECT * FROM employees WHERE employee_id = ?", (employee_id,))
        return self._row_to_employee(row) if row else None

    def find_active_employee_by_role(self, tenant_id: str, role: str) -> Employee | None:
        rows = self.db.fetchall(
            "SELECT * FROM employees WHERE tenant_id = ? AND status = ? ORDER BY name, employee_id",
            (tenant_id, EmployeeStatus.ACTIVE.value),
        )
        for row in rows:
            emp = self._row_to_employee(row)
            if emp.holds_role(role):
                return emp
        return None

    def _row_to_employee(self, row) -> Employee:
        return Employee(
            employee_id=row["employee_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            role=row["role"],
            reporting_to=row["reporting_to"] or "",
            status=EmployeeStatus(row["status"]),
        )

    # ─── Escalation Rules ────────────────────────────────────────────

    def save_rule(self, rule: EscalationRule, replace: bool = True) -> bool:
        """Returns False when ``replace`` is off and the rule id already exists."""
        return self._upsert("escalation_rules", ("rule_id",), {
            "rule_id": rule.rule_id,
            "tenant_id": rule.tenant_id,
            "name": rule.name,
            "description": rule.description,
            "trigger_type": rule.trigger.value,
            "hours_overdue": rule.hours_overdue,
            "priorities": json.dumps([p.value for p in rule.priorities]),
            "stages": json.dumps(rule.stages),
            "notify_roles": json.dumps(rule.notify_roles),
            "escalate_to_role": rule.escalate_to_role,
            "email_template": rule.email_template,
            "level": rule.level,
            "sort_order": rule.position,
            "is_active": 1 if rule.is_active else 0,
        }, replace=replace)

    def list_rules(self, tenant_id: str) -> list[EscalationRule]:
        rows = self.db.fetchall(
            "SELECT * FROM escalation_rules WHERE tenant_id = ? ORDER BY sort_order, rule_id",
            (tenant_id,),
        )
        return [
            EscalationRule(
                rule_id=r["rule_id"],
                tenant_id=r["tenant_id"],
                name=r["name"],
                description=r["description"] or "",
                trigger=EscalationTrigger(r["trigger_type"]),
                hours_overdue=r["hours_overdue"],
                priorities=[TaskPriority(p) for p in json.loads(r["priorities"] or "[]")],
                stages=json.loads(r["stages"] or "[]"),
                notify_roles=json.loads(r["notify_roles"] or "[]"),
                escalate_to_role=r["escalate_to_role"] or "",
                email_template=r["email_template"] or "",
                level=r["level"],
                position=r["sort_order"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]

    # ─── Escalation Events ───────────────────────────────────────────

    def insert_event(self, event: EscalationEvent) -> bool:
        """False when the task already has a pending event."""
        cursor = self.db.execute("""
            INSERT INTO escalation_events
            (event_id, tenant_id, rule_id, task_id, status, triggered_at,
             escalated_to, current_level, notes, resolved_at, resolved_by)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        """, (
            event.event_id, event.tenant_id, event.rule_id, event.task_id,
            event.status.value, event.triggered_at, event.escalated_to,
            event.current_level, event.notes, event.resolved_at, event.resolved_by,
        ))
        return cursor.rowcount == 1

    def update_event(self, event: EscalationEvent) -> None:
        self.db.execute("""
            UPDATE escalation_events
            SET status = ?, escalated_to = ?, current_level = ?, notes = ?,
                resolved_at = ?, resolved_by = ?
            WHERE event_id = ?
        """, (
            event.status.value, event.escalated_to, event.current_level, event.notes,
            event.resolved_at, event.resolved_by, event.event_id,
        ))

    def get_event(self, event_id: str) -> EscalationEvent | None:
        row = self.db.fetchone("SELECT * FROM escalation_events WHERE event_id = ?", (event_id,))
        return self._row_to_event(row) if row else None

    def has_pending_event(self, task_id: str) -> bool:
        row = self.db.fetchone(
            "SELECT 1 AS hit FROM escalation_events WHERE task_id = ? AND status = ?",
            (task_id, EscalationStatus.PENDING.value),
        )
        return row is not None

    def list_events(
        self,
        tenant_id: str | None = None,
        task_id: str | None = None,
        status: EscalationStatus | None = None,
        limit: int = 100,
    ) -> list[EscalationEvent]:
        query = "SELECT * FROM escalation_events WHERE 1=1"
        params: list[Any] = []
        if tenant_id:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY triggered_at DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_event(r) for r in self.db.fetchall(query, tuple(params))]

    def _row_to_event(self, row) -> EscalationEvent:
        return EscalationEvent(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            rule_id=row["rule_id"],
            task_id=row["task_id"],
            status=EscalationStatus(row["status"]),
            triggered_at=row["triggered_at"],
            escalated_to=row["escalated_to"] or "",
            current_level=row["current_level"],
            notes=row["notes"] or "",
            resolved_at=row["resolved_at"],
            resolved_by=row["resolved_by"] or "",
        )

    # ─── Statistics ──────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        footprints = self.db.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM footprints GROUP BY status"
        )
        tasks = self.db.fetchall("SELECT status, COUNT(*) AS cnt FROM tasks GROUP BY status")
        events = self.db.fetchall(
            "SELECT status, COUNT(*) AS cnt FROM escalation_events GROUP BY status"
        )
        return {
            "footprints": {r["status"]: r["cnt"] for r in footprints},
            "tasks": {r["status"]: r["cnt"] for r in tasks},
            "escalation_events": {r["status"]: r["cnt"] for r in events},
        }

    def close(self) -> None:
        self.db.close()
