"""
Decision Core — Conflict Detector Tests

Tests:
  - each rule: direct, resource, priority, indirect
  - epsilon threshold
  - disjoint variables never conflict
  - permutation invariance
  - severity escalation for critical proposals
"""

import itertools
import os
import random
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from coordinator.conflicts import DetectorConfig, conflicting_pairs, detect, net_deltas
from coordinator.types import ControlAction, Proposal


def proposal(pid, urgency="medium", constraints=(), objective="cost", **moves):
    """moves: variable=(current, proposed)"""
    actions = [
        ControlAction(var, cur, new, pid, f"{pid}-agent")
        for var, (cur, new) in sorted(moves.items())
    ]
    return Proposal(
        proposal_id=pid, request_id="req_1", proposer_id=f"{pid}-agent",
        urgency=urgency, actions=actions, constraints=list(constraints), objective=objective,
    )


CONFIG = DetectorConfig(
    ceilings={"fuel_flow": 1.5, "kiln_speed": 0.2},
    subsystems={"kiln_speed": "kiln", "fuel_flow": "kiln", "mill_power": "mill"},
)


class TestWorkedExamples(unittest.TestCase):

    def test_opposite_kiln_speed_moves(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.35))
        b = proposal("b", urgency="medium", kiln_speed=(3.2, 3.05))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].type, "direct")
        self.assertEqual(conflicts[0].involved_proposal_ids, ["a", "b"])
        self.assertEqual(conflicts[0].control_variables, ["kiln_speed"])
        self.assertEqual(conflicts[0].severity, "high")

    def test_disjoint_variables(self):
        a = proposal("a", fuel_flow=(4.0, 4.2))
        b = proposal("b", mill_power=(900, 880))
        self.assertEqual(detect([a, b], CONFIG), [])


class TestRules(unittest.TestCase):

    def test_direct_needs_both_above_epsilon(self):
        a = proposal("a", kiln_speed=(3.2, 3.3))
        b = proposal("b", kiln_speed=(3.2, 3.195))
        types = [c.type for c in detect([a, b], CONFIG)]
        self.assertNotIn("direct", types)
        # 3.3 and 3.195 are still different setpoints
        self.assertEqual(types, ["resource"])

    def test_same_setpoint_within_ceiling(self):
        a = proposal("a", kiln_speed=(3.2, 3.25))
        b = proposal("b", kiln_speed=(3.2, 3.255))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_same_direction_different_setpoints(self):
        a = proposal("a", kiln_speed=(3.2, 3.28))
        b = proposal("b", kiln_speed=(3.2, 3.3))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual([c.type for c in conflicts], ["resource"])
        self.assertEqual(conflicts[0].control_variables, ["kiln_speed"])
        self.assertIn("sets kiln_speed to 3.28", conflicts[0].description)

    def test_different_setpoints_suppress_priority(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.35))
        b = proposal("b", urgency="medium", kiln_speed=(3.2, 3.25))
        self.assertEqual([c.type for c in detect([a, b], CONFIG)], ["resource"])

    def test_resource_ceiling_exceeded(self):
        a = proposal("a", fuel_flow=(4.0, 5.0))
        b = proposal("b", fuel_flow=(4.0, 4.8))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual([c.type for c in conflicts], ["resource"])
        self.assertEqual(conflicts[0].severity, "medium")

    def test_no_ceiling_no_resource_conflict(self):
        a = proposal("a", mill_power=(900, 1000))
        b = proposal("b", mill_power=(950, 1000.005))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_priority_same_subsystem(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.3))
        b = proposal("b", urgency="low", fuel_flow=(4.0, 4.1))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual([c.type for c in conflicts], ["priority"])
        self.assertEqual(conflicts[0].control_variables, ["fuel_flow", "kiln_speed"])
        self.assertEqual(conflicts[0].severity, "low")

    def test_priority_same_variable(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.25))
        b = proposal("b", urgency="low", kiln_speed=(3.2, 3.25))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual([c.type for c in conflicts], ["priority"])
        self.assertEqual(conflicts[0].control_variables, ["kiln_speed"])

    def test_priority_same_variable_outside_any_subsystem(self):
        a = proposal("a", urgency="high", feed_rate=(120, 125))
        b = proposal("b", urgency="low", feed_rate=(120, 125))
        self.assertEqual([c.type for c in detect([a, b], CONFIG)], ["priority"])

    def test_priority_needs_different_urgency(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.3))
        b = proposal("b", urgency="high", fuel_flow=(4.0, 4.1))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_priority_needs_shared_subsystem(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.3))
        b = proposal("b", urgency="low", mill_power=(900, 950))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_priority_suppressed_by_direct(self):
        a = proposal("a", urgency="high", kiln_speed=(3.2, 3.35), fuel_flow=(4.0, 4.1))
        b = proposal("b", urgency="low", kiln_speed=(3.2, 3.05))
        self.assertEqual([c.type for c in detect([a, b], CONFIG)], ["direct"])

    def test_indirect_constraint(self):
        a = proposal("a", constraints=["mill_power"], kiln_speed=(3.2, 3.3))
        b = proposal("b", mill_power=(900, 950))
        conflicts = detect([a, b], CONFIG)
        self.assertEqual([c.type for c in conflicts], ["indirect"])
        self.assertEqual(conflicts[0].control_variables, ["mill_power"])

    def test_constraint_on_own_variable_ignored(self):
        a = proposal("a", constraints=["kiln_speed"], kiln_speed=(3.2, 3.25))
        b = proposal("b", kiln_speed=(3.2, 3.25))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_constraint_on_unchanged_variable_ignored(self):
        a = proposal("a", constraints=["mill_power"], kiln_speed=(3.2, 3.3))
        b = proposal("b", mill_power=(900, 900.005))
        self.assertEqual(detect([a, b], CONFIG), [])

    def test_critical_escalates_severity(self):
        a = proposal("a", urgency="critical", kiln_speed=(3.2, 3.0))
        b = proposal("b", urgency="critical", kiln_speed=(3.2, 3.4))
        self.assertEqual(detect([a, b], CONFIG)[0].severity, "critical")

    def test_single_proposal(self):
        self.assertEqual(detect([proposal("a", kiln_speed=(3.2, 3.0))], CONFIG), [])

    def test_net_deltas_sum_per_variable(self):
        p = proposal("a", kiln_speed=(3.2, 3.3))
        p.actions.append(ControlAction("kiln_speed", 3.3, 3.25))
        self.assertAlmostEqual(net_deltas(p)["kiln_speed"], 0.05)


class TestDeterminism(unittest.TestCase):

    def setUp(self):
        self.proposals = [
            proposal("p1", urgency="high", kiln_speed=(3.2, 3.35)),
            proposal("p2", urgency="medium", kiln_speed=(3.2, 3.05)),
            proposal("p3", urgency="low", fuel_flow=(4.0, 5.0)),
            proposal("p4", urgency="medium", fuel_flow=(4.0, 4.8), constraints=["mill_power"]),
            proposal("p5", urgency="critical", mill_power=(900, 950)),
        ]

    def test_permutation_invariance(self):
        expected = [c.to_dict() for c in detect(self.proposals, CONFIG)]
        self.assertTrue(expected)
        for perm in itertools.permutations(self.proposals):
            self.assertEqual([c.to_dict() for c in detect(list(perm), CONFIG)], expected)

    def test_repeatable_shuffles(self):
        rng = random.Random(7)
        expected = detect(self.proposals, CONFIG)
        for _ in range(20):
            shuffled = list(self.proposals)
            rng.shuffle(shuffled)
            self.assertEqual(
                [c.conflict_id for c in detect(shuffled, CONFIG)],
                [c.conflict_id for c in expected],
            )

    def test_canonical_order(self):
        types = [c.type for c in detect(self.proposals, CONFIG)]
        order = {"direct": 0, "resource": 1, "priority": 2, "indirect": 3}
        self.assertEqual(types, sorted(types, key=order.get))

    def test_conflicting_pairs(self):
        conflicts = detect(self.proposals, CONFIG)
        self.assertEqual(
            conflicting_pairs(conflicts, ["direct"]), {frozenset({"p1", "p2"})},
        )


class TestDetectorConfig(unittest.TestCase):

    def test_from_config(self):
        cfg = DetectorConfig.from_config({
            "epsilon": "0.05",
            "ceilings": {"fuel_flow": "1.5"},
            "subsystems": {"fuel_flow": "kiln"},
        })
        self.assertEqual(cfg.epsilon, 0.05)
        self.assertEqual(cfg.ceilings, {"fuel_flow": 1.5})
        self.assertEqual(cfg.subsystems, {"fuel_flow": "kiln"})

    def test_defaults(self):
        cfg = DetectorConfig.from_config(None)
        self.assertEqual(cfg.epsilon, 0.01)
        self.assertEqual(cfg.ceilings, {})


if __name__ == "__main__":
    unittest.main()
