"""
Decision Core — Coordinator CLI

Operate the workflow runtime from a shell. Every command works against
the configured checkpoint store, so a workflow started by the API can be
inspected or approved here and vice versa.

Usage:
    # Trigger a decision round and run it to completion or pause
    python -m coordinator.cli run --trigger quality_deviation \\
        --context '{"free_lime": 2.1}'

    # Inspect
    python -m coordinator.cli status <request_id>
    python -m coordinator.cli log <request_id>
    python -m coordinator.cli stats

    # Human approval
    python -m coordinator.cli pending
    python -m coordinator.cli approve <request_id> --approver 'Name' --proposals prop_a
    python -m coordinator.cli reject <request_id> --approver 'Name' --rationale 'Why'

    # Operations
    python -m coordinator.cli abort <request_id> --reason 'Why'
    python -m coordinator.cli recover
"""

from __future__ import annotations

import argparse
import json
import sys
import time

from coordinator.errors import IllegalStateTransition, StoreUnavailable, WorkflowNotFound
from coordinator.runtime import Coordinator
from coordinator.types import Trigger, WorkflowRequest
from engine.config import load_config
from engine.logging import configure_logging


def _print_state(state):
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  WORKFLOW {state.request_id}", file=sys.stderr)
    print(f"{'─' * 70}", file=sys.stderr)
    print(f"  conversation: {state.conversation_id}", file=sys.stderr)
    print(f"  trigger:      {state.request.trigger}", file=sys.stderr)
    print(f"  status:       {state.status.value}", file=sys.stderr)
    print(f"  proposals:    {len(state.proposals)}", file=sys.stderr)
    for err in state.proposer_errors:
        print(f"    ✗ {err.proposer_id}: {err.reason}", file=sys.stderr)
    print(f"  conflicts:    {len(state.conflicts)}", file=sys.stderr)
    for c in state.conflicts:
        print(f"    {c.type:9s} {c.severity:8s} {', '.join(c.involved_proposal_ids)}", file=sys.stderr)
    if state.decision:
        d = state.decision
        print(f"  decision:     {d.decision_type} ({d.source}, confidence {d.confidence:.2f})",
              file=sys.stderr)
        print(f"    {d.rationale}", file=sys.stderr)
    for r in state.command_results:
        mark = "✓" if r.succeeded else "✗"
        print(f"    {mark} {r.control_variable} → {r.executed_value if r.succeeded else r.error}",
              file=sys.stderr)
    if state.error:
        print(f"  error:        {state.error}", file=sys.stderr)
    print(f"{'═' * 70}\n", file=sys.stderr)


def cmd_run(args, coord: Coordinator):
    """Trigger a decision round."""
    try:
        context = json.loads(args.context) if args.context else {}
        request = WorkflowRequest.create(
            args.trigger, context,
            conversation_id=args.conversation or "",
            request_id=args.request_id or "",
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    start = time.time()
    state = coord.start(request)
    _print_state(state)
    print(f"  elapsed: {time.time() - start:.2f}s", file=sys.stderr)
    if state.status.value == "paused_for_human":
        print(f"  Approve: python -m coordinator.cli approve {state.request_id}", file=sys.stderr)
        print(f"  Reject:  python -m coordinator.cli reject {state.request_id}", file=sys.stderr)
    print(json.dumps({"request_id": state.request_id, "status": state.status.value}))


def cmd_status(args, coord: Coordinator):
    state = coord.get_state(args.request_id)
    if state is None:
        print(f"Workflow not found: {args.request_id}", file=sys.stderr)
        sys.exit(1)
    if args.json:
        print(json.dumps(state.to_dict(), indent=2, default=str))
    else:
        _print_state(state)


def cmd_pending(args, coord: Coordinator):
    """List workflows awaiting human approval."""
    approvals = coord.list_pending_approvals()
    if not approvals:
        print("No workflows pending approval.")
        return

    print(f"\nPending Approvals ({len(approvals)})")
    print(f"{'─' * 70}")
    for a in approvals:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(a["paused_at"]))
        print(f"  {a['request_id']}")
        print(f"    trigger:    {a['trigger']}")
        print(f"    decision:   {a['decision_type']} ({a['decision_id']})")
        print(f"    proposals:  {', '.join(a['proposal_ids'])}")
        print(f"    rationale:  {a['rationale']}")
        print(f"    paused:     {ts}")
        print()
    print("Approve:  python -m coordinator.cli approve <request_id> --approver 'Name'")
    print("Reject:   python -m coordinator.cli reject <request_id> --rationale 'Why'")


def cmd_approve(args, coord: Coordinator):
    """Approve a paused workflow and continue it."""
    try:
        state = coord.approve(
            args.request_id,
            approver=args.approver,
            rationale=args.rationale,
            approved_proposal_ids=args.proposals or None,
        )
    except (WorkflowNotFound, IllegalStateTransition, ValueError) as e:
        print(f"\n  ✗ FAILED: {e}", file=sys.stderr)
        sys.exit(1)
    _print_state(state)


def cmd_reject(args, coord: Coordinator):
    """Reject a paused workflow."""
    try:
        state = coord.reject(args.request_id, approver=args.approver, rationale=args.rationale)
    except (WorkflowNotFound, IllegalStateTransition) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Rejected: {state.request_id} [{state.status.value}]")


def cmd_abort(args, coord: Coordinator):
    try:
        state = coord.abort(args.request_id, reason=args.reason)
    except (WorkflowNotFound, IllegalStateTransition) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Aborted: {state.request_id} ({state.error})")


def cmd_recover(args, coord: Coordinator):
    """Resume every interrupted workflow."""
    states = coord.recover()
    if not states:
        print("Nothing to recover.")
        return
    for s in states:
        print(f"  {s.request_id}: {s.status.value}")


def cmd_log(args, coord: Coordinator):
    """Show the message exchange for a workflow."""
    try:
        entries = coord.get_communication_log(args.request_id)
    except WorkflowNotFound as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if not entries:
        print("No messages logged.")
        return

    print(f"\nCommunication Log ({len(entries)} messages)")
    print(f"{'─' * 70}")
    for e in entries:
        ts = time.strftime("%H:%M:%S", time.localtime(e["created_at"]))
        arrow = "→" if e["direction"] == "outbound" else "←"
        print(f"  [{ts}] {arrow} {e['message_type']:16s} {e['sender_id']} → {e['recipient_id']} "
              f"[{e['status']}]")
        if args.verbose:
            print(f"           {json.dumps(e['payload'], default=str)[:120]}")


def cmd_stats(args, coord: Coordinator):
    """Show coordinator statistics."""
    print(json.dumps(coord.stats(days=args.days), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decision Core — Workflow Coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config", default="",
        help="Coordinator config YAML (default: config/coordinator.yaml)",
    )
    parser.add_argument("--db", default="", help="Override the SQLite checkpoint store path")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")

    subs = parser.add_subparsers(dest="command", help="Command")

    run_p = subs.add_parser("run", help="Trigger a decision round")
    run_p.add_argument("--trigger", "-t", required=True, choices=[t.value for t in Trigger])
    run_p.add_argument("--context", "-c", help="JSON context object")
    run_p.add_argument("--conversation", help="Conversation id (default: request id)")
    run_p.add_argument("--request-id", help="Explicit request id (idempotent re-submission)")

    status_p = subs.add_parser("status", help="Show a workflow")
    status_p.add_argument("request_id")
    status_p.add_argument("--json", action="store_true", help="Print the full state as JSON")

    subs.add_parser("pending", help="List workflows awaiting human approval")

    approve_p = subs.add_parser("approve", help="Approve a paused workflow")
    approve_p.add_argument("request_id")
    approve_p.add_argument("--approver", "-a", default="", help="Approver name")
    approve_p.add_argument("--rationale", "-r", default="", help="Approval rationale")
    approve_p.add_argument(
        "--proposals", "-p", nargs="*", default=[],
        help="Chosen proposal ids (required for a deferred decision)",
    )

    reject_p = subs.add_parser("reject", help="Reject a paused workflow")
    reject_p.add_argument("request_id")
    reject_p.add_argument("--approver", "-a", default="", help="Approver name")
    reject_p.add_argument("--rationale", "-r", default="", help="Rejection rationale")

    abort_p = subs.add_parser("abort", help="Cancel a workflow")
    abort_p.add_argument("request_id")
    abort_p.add_argument("--reason", default="", help="Cancellation reason")

    subs.add_parser("recover", help="Resume interrupted workflows")

    log_p = subs.add_parser("log", help="Show the message exchange for a workflow")
    log_p.add_argument("request_id")
    log_p.add_argument("--verbose", "-v", action="store_true")

    stats_p = subs.add_parser("stats", help="Show coordinator statistics")
    stats_p.add_argument("--days", type=int, default=7)

    return parser


COMMANDS = {
    "run": cmd_run,
    "status": cmd_status,
    "pending": cmd_pending,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "abort": cmd_abort,
    "recover": cmd_recover,
    "log": cmd_log,
    "stats": cmd_stats,
}


def main(argv=None, coord: Coordinator | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(level=args.log_level)

    if coord is None:
        config = load_config(args.config)
        if args.db:
            config.setdefault("store", {})
            config["store"] = {**config["store"], "backend": "sqlite", "path": args.db}
        coord = Coordinator(config=config)

    try:
        COMMANDS[args.command](args, coord)
    except StoreUnavailable as e:
        print(f"\n  ✗ Store unavailable: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
