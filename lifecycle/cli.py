"""
Caseflow — Lifecycle CLI

Operate on a lifecycle database from the shell. Every command prints JSON
on stdout; errors go to stderr with exit status 1.

Usage:
    # Create tables
    python -m lifecycle.cli --db caseflow.db init-db

    # Register a case at its opening stage
    python -m lifecycle.cli start-case --tenant t1 --owner emp_1 \\
        --stage Assessment --amount 25000000

    # Move a case (legacy labels such as "HC" are accepted)
    python -m lifecycle.cli transition <case_id> Adjudication --actor emp_1

    # Drive the workflow steps of a stage instance
    python -m lifecycle.cli complete-step <stage_instance_id> notices
    python -m lifecycle.cli skip-step <stage_instance_id> hearings --reason "No hearing"

    # Inspect
    python -m lifecycle.cli state <case_id>
    python -m lifecycle.cli footprints <case_id>

    # Maintenance
    python -m lifecycle.cli escalate [--tenant t1]
    python -m lifecycle.cli reap
"""

from __future__ import annotations

import argparse
import json
import sys

from infra.db import create_backend
from infra.logging import configure_logging
from lifecycle.config import load_lifecycle_config
from lifecycle.errors import LifecycleError
from lifecycle.runtime import CaseLifecycle
from lifecycle.types import Case


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_init_db(args, lc: CaseLifecycle):
    """Tables are created when the store opens; report what is there."""
    _print({"database": lc.store.db.backend_type, "stats": lc.stats()})


def cmd_start_case(args, lc: CaseLifecycle):
    case = Case.create(
        tenant_id=args.tenant,
        current_stage=args.stage or lc.config.catalog.initial_stage,
        owner_id=args.owner,
        amount_in_dispute=args.amount,
        owner_seniority=args.seniority,
        region=args.region,
        case_number=args.number,
        title=args.title,
        case_id=args.case_id or "",
    )
    instance = lc.start_case(case, actor=args.actor)
    _print({
        "case_id": case.case_id,
        "current_stage": case.current_stage,
        "stage_instance_id": instance.stage_instance_id,
        "cycle_no": instance.cycle_no,
    })


def cmd_transition(args, lc: CaseLifecycle):
    result = lc.transition(
        args.case_id,
        args.to_stage,
        from_stage=args.from_stage,
        actor=args.actor,
        comments=args.comments,
        idempotency_key=args.idempotency_key,
    )
    _print(result.to_dict())


def cmd_complete_step(args, lc: CaseLifecycle):
    outcome = lc.complete_step(args.stage_instance_id, args.step, actor=args.actor, notes=args.notes)
    _print(outcome.to_dict())


def cmd_skip_step(args, lc: CaseLifecycle):
    outcome = lc.skip_step(args.stage_instance_id, args.step, args.reason, actor=args.actor)
    _print(outcome.to_dict())


def cmd_state(args, lc: CaseLifecycle):
    state = lc.lifecycle_state(args.case_id)
    if state["current_instance"]:
        state["workflow"] = lc.workflow_state(state["current_instance"]).to_dict()
    _print(state)


def cmd_footprints(args, lc: CaseLifecycle):
    _print([fp.to_dict() for fp in lc.footprints_for(args.case_id)])


def cmd_escalate(args, lc: CaseLifecycle):
    created = lc.check_and_escalate(args.tenant)
    events = lc.list_escalations(tenant_id=args.tenant, status="pending")
    _print({"events_created": created, "pending": [e.to_dict() for e in events]})


def cmd_reap(args, lc: CaseLifecycle):
    _print({"reservations_removed": lc.reap_expired_reservations()})


COMMANDS = {
    "init-db": cmd_init_db,
    "start-case": cmd_start_case,
    "transition": cmd_transition,
    "complete-step": cmd_complete_step,
    "skip-step": cmd_skip_step,
    "state": cmd_state,
    "footprints": cmd_footprints,
    "escalate": cmd_escalate,
    "reap": cmd_reap,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="caseflow", description="Case lifecycle engine")
    parser.add_argument("--db", default="", help="SQLite path (default: CF_DB_PATH or caseflow.db)")
    parser.add_argument("--config", default="", help="Base YAML config (default: packaged)")
    parser.add_argument("--env", default="", help="Config overlay environment (default: CF_ENV)")
    parser.add_argument("--log-level", default="", help="Override configured log level")
    subs = parser.add_subparsers(dest="command")

    subs.add_parser("init-db", help="Create tables and show row counts")

    start_p = subs.add_parser("start-case", help="Register a case and open its first stage")
    start_p.add_argument("--tenant", required=True)
    start_p.add_argument("--owner", required=True)
    start_p.add_argument("--stage", default="", help="Opening stage (default: first in catalog)")
    start_p.add_argument("--amount", type=float, default=0.0)
    start_p.add_argument("--seniority", default="")
    start_p.add_argument("--region", default="")
    start_p.add_argument("--number", default="")
    start_p.add_argument("--title", default="")
    start_p.add_argument("--case-id", default="")
    start_p.add_argument("--actor", default="cli")

    tr_p = subs.add_parser("transition", help="Move a case to another stage")
    tr_p.add_argument("case_id")
    tr_p.add_argument("to_stage")
    tr_p.add_argument("--from", dest="from_stage", default=None)
    tr_p.add_argument("--actor", default="cli")
    tr_p.add_argument("--comments", default="")
    tr_p.add_argument("--idempotency-key", default="")

    done_p = subs.add_parser("complete-step", help="Complete a workflow step")
    done_p.add_argument("stage_instance_id")
    done_p.add_argument("step", choices=["notices", "reply", "hearings", "closure"])
    done_p.add_argument("--actor", default="cli")
    done_p.add_argument("--notes", default="")

    skip_p = subs.add_parser("skip-step", help="Skip a workflow step")
    skip_p.add_argument("stage_instance_id")
    skip_p.add_argument("step", choices=["notices", "reply", "hearings", "closure"])
    skip_p.add_argument("--reason", required=True)
    skip_p.add_argument("--actor", default="cli")

    state_p = subs.add_parser("state", help="Show stage instances and workflow of a case")
    state_p.add_argument("case_id")

    fp_p = subs.add_parser("footprints", help="List transition footprints of a case")
    fp_p.add_argument("case_id")

    esc_p = subs.add_parser("escalate", help="Run one overdue-task escalation sweep")
    esc_p.add_argument("--tenant", default=None)

    subs.add_parser("reap", help="Remove expired footprint reservations")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    config = load_lifecycle_config(args.config or None, env=args.env)
    configure_logging(level=args.log_level or config.log_level, stream=sys.stderr)
    lc = CaseLifecycle(config=config, db=create_backend(path=args.db))
    try:
        COMMANDS[args.command](args, lc)
    except LifecycleError as e:
        print(json.dumps({"error": type(e).__name__, "message": str(e), **e.detail}, default=str),
              file=sys.stderr)
        return 1
    finally:
        lc.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
