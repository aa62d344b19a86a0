"""
Decision Core — Workflow Runtime Tests

End-to-end runs against in-process proposers and executor.

Tests:
  - happy path, conflict fallback, proposer timeout, zero proposals
  - human approval: deferred choice, in-place sign-off, rejection,
    and chaining from a decision recorded before its state checkpoint
  - abort, including an abort racing an in-flight run
  - dispatch failures: all failed → error, partial → completed
  - resume after a store outage re-enters at the saved step without
    re-executing commands
  - inbound protocol messages (status, approval decisions)
"""

import os
import sys
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from coordinator.errors import IllegalStateTransition, StoreUnavailable, WorkflowNotFound
from coordinator.store import CheckpointStore
from coordinator.types import Decision, DecisionType, WorkflowRequest, WorkflowStatus
from fake_agents import FakeExecutor, FakeProposer, action, build, operator_message


def worked_example():
    return [
        FakeProposer("quality-agent", urgency="high", objective="quality",
                     actions=[action("kiln_speed", 3.2, 3.35)]),
        FakeProposer("energy-agent", urgency="medium", objective="cost",
                     actions=[action("kiln_speed", 3.2, 3.05)]),
    ]


def disjoint():
    return [
        FakeProposer("quality-agent", objective="quality", actions=[action("kiln_speed", 3.2, 3.3)]),
        FakeProposer("energy-agent", actions=[action("mill_power", 900, 880)]),
    ]


def tied():
    return [
        FakeProposer("quality-agent", urgency="high", objective="quality",
                     actions=[action("kiln_speed", 3.2, 3.35)]),
        FakeProposer("lab-agent", urgency="high", objective="quality",
                     actions=[action("kiln_speed", 3.2, 3.05)]),
    ]


class FlakyStore(CheckpointStore):
    """Raises StoreUnavailable when asked to save the given status."""

    fail_on = None

    def save_state(self, state):
        if self.fail_on is not None and state.status == self.fail_on:
            raise StoreUnavailable(f"injected outage saving {state.status.value}")
        return super().save_state(state)


class RuntimeTestCase(unittest.TestCase):

    def coordinator(self, proposers, executor=None, **kwargs):
        coord, transport = build(proposers, executor=executor, **kwargs)
        self.addCleanup(coord.close)
        return coord

    @staticmethod
    def request(trigger="quality_deviation", request_id="req_1"):
        return WorkflowRequest.create(trigger, {"free_lime": 2.3}, request_id=request_id)

    @staticmethod
    def proposal_id(state, proposer_id):
        return next(p.proposal_id for p in state.proposals if p.proposer_id == proposer_id)


class TestHappyPath(RuntimeTestCase):

    def test_no_conflict_executes_everything(self):
        executor = FakeExecutor()
        coord = self.coordinator(disjoint(), executor)
        state = coord.start(self.request())

        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.conflicts, [])
        self.assertEqual(state.decision.decision_type, "approved")
        self.assertEqual(state.decision.source, "policy")
        self.assertEqual(executor.variables, ["kiln_speed", "mill_power"])
        self.assertEqual([r.status for r in state.command_results], ["success", "success"])
        self.assertEqual(
            [h["to"] for h in state.history],
            ["initializing", "collecting", "analyzing", "resolving", "deciding", "executing", "completed"],
        )

    def test_state_persisted(self):
        coord = self.coordinator(disjoint())
        coord.start(self.request())
        saved = coord.get_state("req_1")
        self.assertEqual(saved.status, WorkflowStatus.COMPLETED)
        self.assertEqual(len(saved.proposals), 2)
        self.assertEqual(len(coord.get_decisions("req_1")), 1)

    def test_communication_log(self):
        coord = self.coordinator(disjoint())
        coord.start(self.request())
        entries = coord.get_communication_log("req_1")
        types = {e["message_type"] for e in entries}
        self.assertTrue({"request_proposal", "proposal", "command", "status"} <= types)
        self.assertEqual(len({e["message_id"] for e in entries}), len(entries))

    def test_worked_example_fallback(self):
        executor = FakeExecutor()
        coord = self.coordinator(worked_example(), executor)
        state = coord.start(self.request())

        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual([c.type for c in state.conflicts], ["direct"])
        decision = state.decision
        self.assertEqual(decision.source, "fallback")
        self.assertEqual(decision.decision_type, "approved")
        self.assertEqual([a.proposer_id for a in decision.approved_actions], ["quality-agent"])
        self.assertEqual([a.proposer_id for a in decision.rejected_actions], ["energy-agent"])
        self.assertEqual(executor.commands[0]["action"]["proposed_value"], 3.35)
        self.assertEqual(len(executor.commands), 1)

    def test_same_variable_different_setpoints_commands_once(self):
        executor = FakeExecutor()
        coord = self.coordinator([
            FakeProposer("quality-agent", urgency="high", actions=[action("kiln_speed", 3.2, 3.35)]),
            FakeProposer("energy-agent", urgency="medium", actions=[action("kiln_speed", 3.2, 3.25)]),
        ], executor)
        state = coord.start(self.request())

        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual([c.type for c in state.conflicts], ["resource"])
        self.assertEqual([a.proposer_id for a in state.decision.approved_actions], ["quality-agent"])
        self.assertEqual(
            [(c["action"]["control_variable"], c["action"]["proposed_value"]) for c in executor.commands],
            [("kiln_speed", 3.35)],
        )

    def test_same_variable_same_setpoint_commands_once(self):
        executor = FakeExecutor()
        coord = self.coordinator([
            FakeProposer("quality-agent", urgency="high", actions=[action("kiln_speed", 3.2, 3.3)]),
            FakeProposer("energy-agent", urgency="low", actions=[action("kiln_speed", 3.2, 3.3)]),
        ], executor)
        state = coord.start(self.request())

        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual([c.type for c in state.conflicts], ["priority"])
        self.assertEqual(len(state.decision.approved_actions), 2)
        self.assertEqual(executor.variables, ["kiln_speed"])

    def test_proposer_timeout_excluded(self):
        slow = FakeProposer("energy-agent", actions=[action("mill_power", 900, 880)], delay=1.0)
        fast = FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)])
        executor = FakeExecutor()
        coord = self.coordinator(
            [fast, slow], executor, protocol={"collect_timeout_seconds": 0.2},
        )
        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual([p.proposer_id for p in state.proposals], ["quality-agent"])
        self.assertEqual([(e.proposer_id, e.reason) for e in state.proposer_errors],
                         [("energy-agent", "timeout")])
        self.assertEqual(executor.variables, ["kiln_speed"])

    def test_zero_proposals(self):
        executor = FakeExecutor()
        coord = self.coordinator(
            [FakeProposer("quality-agent", abstain=True), FakeProposer("energy-agent", abstain=True)],
            executor,
        )
        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.decision_type, "none_required")
        self.assertEqual(coord.get_decisions("req_1")[0]["decision_type"], "none_required")
        self.assertEqual(executor.commands, [])

    def test_accept_is_idempotent(self):
        coord = self.coordinator(disjoint())
        first = coord.accept(self.request())
        second = coord.accept(self.request())
        self.assertEqual(first.version, 1)
        self.assertEqual(second.version, 1)
        self.assertEqual(second.status, WorkflowStatus.INITIALIZING)

    def test_run_unknown(self):
        coord = self.coordinator(disjoint())
        with self.assertRaises(WorkflowNotFound):
            coord.run("req_missing")

    def test_terminal_run_is_noop(self):
        executor = FakeExecutor()
        coord = self.coordinator(disjoint(), executor)
        coord.start(self.request())
        state = coord.run("req_1")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(len(executor.commands), 2)

    def test_unexpected_failure_becomes_error(self):
        coord = self.coordinator(disjoint())
        with mock.patch.object(coord.policy, "resolve", side_effect=RuntimeError("boom")):
            state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.ERROR)
        self.assertEqual(state.error, "RuntimeError: boom")
        self.assertEqual(coord.get_state("req_1").status, WorkflowStatus.ERROR)


class TestHumanApproval(RuntimeTestCase):

    def test_tie_pauses_for_human(self):
        coord = self.coordinator(tied())
        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.PAUSED_FOR_HUMAN)
        self.assertEqual(state.decision.decision_type, "deferred")
        self.assertEqual(state.decision.human_approval_status, "pending")

        pending = coord.list_pending_approvals()
        self.assertEqual([p["request_id"] for p in pending], ["req_1"])
        self.assertEqual(len(pending[0]["proposal_ids"]), 2)

    def test_approve_deferred_with_choice(self):
        executor = FakeExecutor()
        coord = self.coordinator(tied(), executor)
        paused = coord.start(self.request())
        chosen = self.proposal_id(paused, "quality-agent")

        state = coord.approve("req_1", approver="operator-7", approved_proposal_ids=[chosen])
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.source, "human")
        self.assertEqual(state.decision.revision, 2)
        self.assertEqual(executor.commands[0]["action"]["proposed_value"], 3.35)
        self.assertEqual(executor.commands[0]["decision_id"], state.decision.decision_id)

        history = coord.get_decisions("req_1")
        self.assertEqual(len(history), 2)
        self.assertEqual(history[0]["superseded_by"], history[1]["decision_id"])
        self.assertEqual(history[1]["approver"], "operator-7")
        self.assertEqual(coord.list_pending_approvals(), [])

    def test_approve_deferred_requires_valid_choice(self):
        coord = self.coordinator(tied())
        paused = coord.start(self.request())
        both = [p.proposal_id for p in paused.proposals]

        for choice in ([], ["prop_unknown"], both):
            with self.assertRaises(ValueError):
                coord.approve("req_1", approved_proposal_ids=choice)
        self.assertEqual(coord.get_state("req_1").status, WorkflowStatus.PAUSED_FOR_HUMAN)
        self.assertEqual(len(coord.get_decisions("req_1")), 1)

    def test_approve_deferred_rejects_different_setpoints(self):
        coord = self.coordinator(tied() + [
            FakeProposer("ops-agent", urgency="high", objective="quality",
                         actions=[action("kiln_speed", 3.2, 3.3)]),
        ])
        paused = coord.start(self.request())
        self.assertEqual(paused.decision.decision_type, "deferred")
        choice = [self.proposal_id(paused, "quality-agent"), self.proposal_id(paused, "ops-agent")]

        with self.assertRaises(ValueError) as ctx:
            coord.approve("req_1", approved_proposal_ids=choice)
        self.assertIn("kiln_speed", str(ctx.exception))
        self.assertEqual(coord.get_state("req_1").status, WorkflowStatus.PAUSED_FOR_HUMAN)

    def test_oracle_rejection_needing_sign_off_pauses(self):
        class RejectingOracle:
            def score(self, oracle_request):
                return {"decision_type": "rejected", "human_approval_required": True,
                        "rationale": "neither is safe", "confidence": 0.6}

        executor = FakeExecutor()
        coord = self.coordinator(worked_example(), executor)
        coord.policy.oracle = RejectingOracle()
        paused = coord.start(self.request())

        self.assertEqual(paused.status, WorkflowStatus.PAUSED_FOR_HUMAN)
        self.assertEqual(paused.decision.decision_type, "rejected")
        self.assertEqual(paused.decision.human_approval_status, "pending")

        state = coord.approve("req_1", approver="shift-lead")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.human_approval_status, "approved")
        self.assertEqual(executor.commands, [])

    def test_reject(self):
        executor = FakeExecutor()
        coord = self.coordinator(tied(), executor)
        coord.start(self.request())
        state = coord.reject("req_1", approver="operator-7", rationale="unsafe")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.decision_type, "rejected")
        self.assertIn("unsafe", state.decision.rationale)
        self.assertEqual(executor.commands, [])

    def test_approve_requires_paused(self):
        coord = self.coordinator(disjoint())
        coord.start(self.request())
        with self.assertRaises(IllegalStateTransition):
            coord.approve("req_1")
        with self.assertRaises(IllegalStateTransition):
            coord.reject("req_1")

    def test_governance_sign_off_in_place(self):
        executor = FakeExecutor()
        coord = self.coordinator(disjoint(), executor, human_approval={"triggers": ["emergency"]})
        paused = coord.start(self.request(trigger="emergency"))
        self.assertEqual(paused.status, WorkflowStatus.PAUSED_FOR_HUMAN)
        self.assertEqual(paused.decision.decision_type, "approved")
        self.assertEqual(executor.commands, [])

        state = coord.approve("req_1", approver="shift-lead")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.decision_id, paused.decision.decision_id)
        self.assertEqual(state.decision.human_approval_status, "approved")
        self.assertEqual(len(executor.commands), 2)

        history = coord.get_decisions("req_1")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0]["approver"], "shift-lead")

    def test_reject_after_choice_recorded_but_not_checkpointed(self):
        coord = self.coordinator(tied())
        paused = coord.start(self.request())
        quality = next(p for p in paused.proposals if p.proposer_id == "quality-agent")
        # approve() saved its decision, then the process died before the state checkpoint
        recorded = Decision.create(
            "req_1", DecisionType.APPROVED, revision=2,
            approved_actions=list(quality.actions),
            source="human", supersedes=paused.decision.decision_id, approver="operator-7",
        )
        coord.store.save_decision(recorded)

        state = coord.reject("req_1", approver="operator-9")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.revision, 3)
        self.assertEqual(state.decision.supersedes, recorded.decision_id)

        history = coord.get_decisions("req_1")
        self.assertEqual([d["decision_type"] for d in history], ["deferred", "approved", "rejected"])
        self.assertEqual([d["revision"] for d in history], [1, 2, 3])
        self.assertEqual(history[1]["superseded_by"], state.decision.decision_id)
        self.assertEqual(coord.store.get_active_decision("req_1").decision_type, "rejected")

    def test_retried_choice_after_lost_checkpoint_supersedes_recorded_one(self):
        executor = FakeExecutor()
        coord = self.coordinator(tied(), executor)
        paused = coord.start(self.request())
        lab = self.proposal_id(paused, "lab-agent")
        recorded = Decision.create(
            "req_1", DecisionType.APPROVED, revision=2,
            source="human", supersedes=paused.decision.decision_id, approver="operator-7",
        )
        coord.store.save_decision(recorded)

        state = coord.approve("req_1", approver="operator-7", approved_proposal_ids=[lab])
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.revision, 3)
        self.assertEqual(state.decision.supersedes, recorded.decision_id)
        self.assertEqual(executor.commands[0]["action"]["proposed_value"], 3.05)
        self.assertEqual(len(coord.get_decisions("req_1")), 3)


class TestAbort(RuntimeTestCase):

    def test_abort_paused(self):
        coord = self.coordinator(tied())
        coord.start(self.request())
        state = coord.abort("req_1", reason="shift change")
        self.assertEqual(state.status, WorkflowStatus.ERROR)
        self.assertEqual(state.error, "cancelled: shift change")
        with self.assertRaises(IllegalStateTransition):
            coord.abort("req_1")

    def test_abort_missing(self):
        coord = self.coordinator(disjoint())
        with self.assertRaises(WorkflowNotFound):
            coord.abort("req_missing")

    def test_abort_during_run_wins(self):
        proposers = disjoint()
        executor = FakeExecutor()
        coord = self.coordinator(proposers, executor)
        proposers[0].on_request = lambda m: coord.abort(m.payload["request"]["request_id"], "operator stop")

        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.ERROR)
        self.assertEqual(state.error, "cancelled: operator stop")
        self.assertEqual(executor.commands, [])
        self.assertEqual(coord.get_state("req_1").proposals, [])


class TestDispatchOutcome(RuntimeTestCase):

    def test_all_commands_failed(self):
        coord = self.coordinator(disjoint(), register_executor=False)
        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.ERROR)
        self.assertTrue(state.error.startswith("all 2 command(s) failed"))
        self.assertEqual([r.status for r in state.command_results], ["failed", "failed"])
        # The decision itself stands
        self.assertEqual(coord.get_decisions("req_1")[0]["decision_type"], "approved")

    def test_partial_failure_completes(self):
        executor = FakeExecutor(fail_variables={"kiln_speed"})
        coord = self.coordinator(disjoint(), executor)
        state = coord.start(self.request())
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertIn("partial failure", state.history[-1]["note"])
        self.assertEqual([r.status for r in state.command_results], ["failed", "success"])


class TestResume(RuntimeTestCase):

    def test_resume_after_outage_before_resolving(self):
        baseline = self.coordinator(worked_example()).start(self.request())

        store = FlakyStore()
        store.fail_on = WorkflowStatus.RESOLVING
        coord = self.coordinator(worked_example(), store=store)
        with self.assertRaises(StoreUnavailable):
            coord.start(self.request())
        self.assertEqual(coord.get_state("req_1").status, WorkflowStatus.ANALYZING)

        store.fail_on = None
        state = coord.resume("req_1")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(state.decision.decision_id, baseline.decision.decision_id)
        self.assertEqual(state.decision.decision_type, baseline.decision.decision_type)
        self.assertEqual(
            [a.to_dict() for a in state.decision.approved_actions],
            [a.to_dict() for a in baseline.decision.approved_actions],
        )
        self.assertEqual(state.decision.rationale, baseline.decision.rationale)

    def test_resume_after_dispatch_does_not_reexecute(self):
        executor = FakeExecutor()
        store = FlakyStore()
        store.fail_on = WorkflowStatus.COMPLETED
        coord = self.coordinator(disjoint(), executor, store=store)
        with self.assertRaises(StoreUnavailable):
            coord.start(self.request())
        self.assertEqual(coord.get_state("req_1").status, WorkflowStatus.EXECUTING)
        self.assertEqual(len(executor.commands), 2)

        store.fail_on = None
        state = coord.resume("req_1")
        self.assertEqual(state.status, WorkflowStatus.COMPLETED)
        self.assertEqual(len(executor.commands), 2)
        self.assertEqual([r.status for r in state.command_results], ["success", "success"])

    def test_recover_runs_accepted_workflows(self):
        coord = self.coordinator(disjoint())
        coord.accept(self.request(request_id="req_a"))
        coord.accept(self.request(request_id="req_b"))
        recovered = coord.recover()
        self.assertEqual(sorted(s.request_id for s in recovered), ["req_a", "req_b"])
        self.assertTrue(all(s.status == WorkflowStatus.COMPLETED for s in recovered))
        self.assertEqual(coord.recover(), [])

    def test_recover_skips_paused(self):
        coord = self.coordinator(tied())
        coord.start(self.request())
        self.assertEqual(coord.recover(), [])


class TestInboundMessages(RuntimeTestCase):

    def receive(self, coord, msg_type, payload):
        envelope, token = operator_message(msg_type, payload)
        return coord.receiver().receive(envelope, token)

    def test_status_query(self):
        coord = self.coordinator(disjoint())
        coord.start(self.request())
        reply = self.receive(coord, "status", {"request_id": "req_1"})
        self.assertEqual(reply["type"], "status")
        self.assertEqual(reply["payload"]["state"]["status"], "completed")
        self.assertEqual(reply["recipient_id"], "operator-console")

    def test_approval_decision(self):
        coord = self.coordinator(tied())
        paused = coord.start(self.request())
        reply = self.receive(coord, "decision", {
            "request_id": "req_1", "approve": True,
            "approved_proposal_ids": [self.proposal_id(paused, "lab-agent")],
        })
        self.assertEqual(reply["payload"], {"request_id": "req_1", "status": "completed"})
        history = coord.get_decisions("req_1")
        self.assertEqual(history[-1]["approver"], "operator-console")

    def test_rejection_decision(self):
        coord = self.coordinator(tied())
        coord.start(self.request())
        reply = self.receive(coord, "decision", {"request_id": "req_1", "approve": False})
        self.assertEqual(reply["payload"]["status"], "completed")
        self.assertEqual(coord.get_state("req_1").decision.decision_type, "rejected")

    def test_invalid_choice_is_error_reply(self):
        coord = self.coordinator(tied())
        coord.start(self.request())
        reply = self.receive(coord, "decision", {"request_id": "req_1", "approve": True})
        self.assertEqual(reply["type"], "error")

    def test_unsupported_type(self):
        coord = self.coordinator(disjoint())
        reply = self.receive(coord, "data", {"request_id": "req_1"})
        self.assertEqual(reply["type"], "error")
        self.assertIn("unsupported", reply["payload"]["error"])

    def test_missing_request_id(self):
        coord = self.coordinator(disjoint())
        reply = self.receive(coord, "status", {})
        self.assertEqual(reply["payload"]["error"], "request_id is required")

    def test_unknown_workflow(self):
        coord = self.coordinator(disjoint())
        reply = self.receive(coord, "status", {"request_id": "req_missing"})
        self.assertIn("not found", reply["payload"]["error"])

    def test_duplicate_delivery_processed_once(self):
        coord = self.coordinator(tied())
        paused = coord.start(self.request())
        envelope, token = operator_message("decision", {
            "request_id": "req_1", "approve": True,
            "approved_proposal_ids": [self.proposal_id(paused, "quality-agent")],
        })
        first = coord.receiver().receive(envelope, token)
        second = coord.receiver().receive(envelope, token)
        self.assertEqual(first, second)
        self.assertEqual(len(coord.get_decisions("req_1")), 2)


class TestStats(RuntimeTestCase):

    def test_stats(self):
        coord = self.coordinator(disjoint())
        coord.start(self.request(request_id="req_a"))
        coord.accept(self.request(request_id="req_b"))
        stats = coord.stats()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["by_status"], {"completed": 1, "initializing": 1})
        self.assertEqual(stats["success_rate"], 1.0)
        self.assertEqual(stats["decisions_by_source"], {"policy": 1})


if __name__ == "__main__":
    unittest.main()
