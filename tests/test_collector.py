"""
Decision Core — Proposal Collector Tests

Tests:
  - concurrent fan-out, results in proposer order
  - a silent proposer becomes a timeout error; the others still count
  - abstention, malformed proposals, unreachable and unauthenticated peers
  - provenance stamped by the collector, not trusted from the payload
  - message priority follows the trigger
"""

import os
import sys
import time
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from coordinator.collector import ProposalCollector, priority_for
from coordinator.types import ProposerRef, WorkflowRequest
from engine.retry import RetryPolicy
from fake_agents import KEY, FakeProposer, action, register
from protocol.auth import TokenSigner, TokenVerifier
from protocol.client import ProtocolClient
from protocol.messages import MessagePriority, MessageType
from protocol.receiver import MessageReceiver
from protocol.transport import InProcessTransport


class CollectorTestCase(unittest.TestCase):

    def setUp(self):
        self.transport = InProcessTransport()
        self.client = ProtocolClient(
            "master-control", self.transport, TokenSigner(KEY),
            policy=RetryPolicy(max_attempts=2, backoff_base=0.0, jitter=0.0),
            sleep_fn=lambda s: None,
        )
        self.collector = ProposalCollector(self.client, max_workers=4)
        self.addCleanup(self.collector.shutdown)
        self.request = WorkflowRequest.create(
            "quality_deviation", {"free_lime": 2.3}, request_id="req_1", conversation_id="conv_1",
        )

    def add(self, proposer):
        register(self.transport, proposer.agent_id, proposer)
        return ProposerRef(proposer.agent_id, capabilities=("kiln",))

    def collect(self, refs, timeout=2.0):
        return self.collector.collect(self.request, refs, timeout=timeout)


class TestCollect(CollectorTestCase):

    def test_all_respond(self):
        refs = [
            self.add(FakeProposer("quality-agent", urgency="high",
                                  actions=[action("kiln_speed", 3.2, 3.35)], objective="quality")),
            self.add(FakeProposer("energy-agent", actions=[action("mill_power", 900, 880)])),
        ]
        proposals, errors = self.collect(refs)
        self.assertEqual(errors, [])
        self.assertEqual([p.proposer_id for p in proposals], ["quality-agent", "energy-agent"])
        quality = proposals[0]
        self.assertEqual(quality.request_id, "req_1")
        self.assertEqual(quality.objective, "quality")
        self.assertEqual(quality.actions[0].proposal_id, quality.proposal_id)
        self.assertEqual(quality.actions[0].proposer_id, "quality-agent")

    def test_request_message_contents(self):
        proposer = FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)])
        self.collect([self.add(proposer)])
        message = proposer.requests[0]
        self.assertEqual(message.type, "request_proposal")
        self.assertEqual(message.conversation_id, "conv_1")
        self.assertEqual(message.priority, "high")
        self.assertEqual(message.payload["request"]["context"], {"free_lime": 2.3})
        self.assertEqual(message.payload["capabilities"], ["kiln"])

    def test_timeout_excludes_only_the_silent_proposer(self):
        refs = [
            self.add(FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)])),
            self.add(FakeProposer("energy-agent", actions=[action("mill_power", 900, 880)], delay=1.5)),
        ]
        t0 = time.time()
        proposals, errors = self.collect(refs, timeout=0.2)
        self.assertLess(time.time() - t0, 1.0)
        self.assertEqual([p.proposer_id for p in proposals], ["quality-agent"])
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].proposer_id, "energy-agent")
        self.assertEqual(errors[0].reason, "timeout")

    def test_abstain(self):
        refs = [
            self.add(FakeProposer("quality-agent", abstain=True)),
            self.add(FakeProposer("energy-agent", actions=[action("mill_power", 900, 880)])),
        ]
        proposals, errors = self.collect(refs)
        self.assertEqual([p.proposer_id for p in proposals], ["energy-agent"])
        self.assertEqual(errors, [])

    def test_everyone_abstains(self):
        proposals, errors = self.collect([self.add(FakeProposer("quality-agent", abstain=True))])
        self.assertEqual((proposals, errors), ([], []))

    def test_unknown_urgency_is_invalid(self):
        ref = self.add(FakeProposer("quality-agent", urgency="panic",
                                    actions=[action("kiln_speed", 3.2, 3.3)]))
        proposals, errors = self.collect([ref])
        self.assertEqual(proposals, [])
        self.assertEqual(errors[0].reason, "invalid_proposal")

    def test_malformed_actions_rejected_at_boundary(self):
        ref = self.add(FakeProposer("quality-agent", actions=[
            {"control_variable": "kiln_speed", "current_value": "fast", "proposed_value": 3.3},
        ]))
        _, errors = self.collect([ref])
        self.assertEqual(errors[0].reason, "invalid_proposal")

    def test_empty_actions_invalid(self):
        _, errors = self.collect([self.add(FakeProposer("quality-agent", actions=[]))])
        self.assertEqual(errors[0].reason, "invalid_proposal")

    def test_unreachable_proposer(self):
        refs = [
            ProposerRef("emissions-agent"),
            self.add(FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)])),
        ]
        proposals, errors = self.collect(refs)
        self.assertEqual(len(proposals), 1)
        self.assertEqual(errors[0].proposer_id, "emissions-agent")
        self.assertEqual(errors[0].reason, "delivery_failed")

    def test_proposer_with_other_key_fails_authentication(self):
        proposer = FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)])
        self.transport.register("quality-agent", MessageReceiver(
            "quality-agent",
            TokenVerifier("different-key-0123456789abcdef-0123456789", audience="quality-agent"),
            proposer,
        ))
        _, errors = self.collect([ProposerRef("quality-agent")])
        self.assertEqual(errors[0].reason, "authentication")
        self.assertEqual(proposer.requests, [])

    def test_error_reply(self):
        register(self.transport, "quality-agent",
                 lambda m: m.reply(MessageType.ERROR, {"error": "sensor offline"}))
        _, errors = self.collect([ProposerRef("quality-agent")])
        self.assertEqual(errors[0].reason, "delivery_failed")
        self.assertIn("sensor offline", errors[0].detail)

    def test_payload_provenance_not_trusted(self):
        def handler(message):
            return message.reply(MessageType.PROPOSAL, {"proposal": {
                "request_id": "req_other", "urgency": "high",
                "actions": [action("kiln_speed", 3.2, 3.3)],
            }})

        register(self.transport, "quality-agent", handler)
        _, errors = self.collect([ProposerRef("quality-agent")])
        self.assertEqual(errors[0].reason, "invalid_proposal")

    def test_proposal_type_maps_to_class(self):
        def handler(message):
            return message.reply(MessageType.PROPOSAL, {"proposal": {
                "urgency": "high", "proposal_type": "stability",
                "actions": [action("kiln_speed", 3.2, 3.1)],
            }})

        register(self.transport, "stability-agent", handler)
        proposals, _ = self.collect([ProposerRef("stability-agent")])
        self.assertEqual(proposals[0].objective, "safety")

    def test_proposal_ids_deterministic(self):
        ref = self.add(FakeProposer("quality-agent", actions=[action("kiln_speed", 3.2, 3.3)]))
        first, _ = self.collect([ref])
        second, _ = self.collect([ref])
        self.assertEqual(first[0].proposal_id, second[0].proposal_id)


class TestPriority(unittest.TestCase):

    def test_trigger_priority(self):
        cases = {
            "emergency": MessagePriority.CRITICAL,
            "quality_deviation": MessagePriority.HIGH,
            "scheduled": MessagePriority.NORMAL,
            "market_change": MessagePriority.NORMAL,
        }
        for trigger, expected in cases.items():
            self.assertEqual(priority_for(WorkflowRequest.create(trigger)), expected)


if __name__ == "__main__":
    unittest.main()
