"""
Decision Core — Resolution Policy Engine

Turns a proposal set and its conflicts into exactly one Decision.

  - No conflicts: every action approved verbatim, oracle not called.
    Setpoints on one variable that still disagree are ranked as in
    the fallback instead.
  - Conflicts: the reasoning oracle is asked for a decision, under a
    hard timeout and a circuit breaker. Its answer is validated
    against the constitution before it is trusted.
  - Oracle failure of any kind: deterministic fallback ranked by
    (constitutional class, urgency, proposal id).

The constitution is a module constant. It is not configurable.
Human-approval governance (confidence floor, trigger list, conflict
severity) is applied last and only ever adds a review requirement.
"""

from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from coordinator.conflicts import DEFAULT_EPSILON, conflicting_pairs
from coordinator.errors import OracleUnavailable, PolicyInvariantViolation
from coordinator.types import (
    ConflictType,
    Conflict,
    ControlAction,
    Decision,
    DecisionSource,
    DecisionType,
    HumanApprovalStatus,
    Objective,
    Proposal,
    WorkflowRequest,
)
from engine.retry import CircuitBreaker, CircuitBreakerOpen
from protocol.messages import is_number

if TYPE_CHECKING:
    from coordinator.oracle import Oracle
    from engine.logging import StructuredLogger

logger = logging.getLogger("decision_core.policy")


# ─── Constitution ────────────────────────────────────────────────────

CONSTITUTION: tuple[str, ...] = (
    Objective.SAFETY.value,
    Objective.QUALITY.value,
    Objective.EMISSIONS.value,
    Objective.COST.value,
)

# 0 is the highest priority class
CLASS_RANK: dict[str, int] = {name: i for i, name in enumerate(CONSTITUTION)}

_BLOCKING = (ConflictType.DIRECT.value, ConflictType.RESOURCE.value, ConflictType.INDIRECT.value)
_ORACLE_TYPES = {
    DecisionType.APPROVED.value,
    DecisionType.REJECTED.value,
    DecisionType.MODIFIED.value,
    DecisionType.DEFERRED.value,
}

DEFAULT_ORACLE_TIMEOUT = 10.0


def rank_key(p: Proposal) -> tuple[int, int, str]:
    """Constitutional class first, then urgency (highest first), then id."""
    return (CLASS_RANK[p.objective], -p.urgency_rank, p.proposal_id)


# ─── Human Approval Governance ───────────────────────────────────────

@dataclass
class HumanApprovalPolicy:
    """When an otherwise-final decision still needs a human signature."""
    below_confidence: float = 0.0
    triggers: list[str] = field(default_factory=list)
    severities: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None) -> HumanApprovalPolicy:
        """
        Config format:
            human_approval:
              below_confidence: 0.3
              triggers: [emergency]
              severities: [critical]
        """
        cfg = cfg or {}
        return cls(
            below_confidence=float(cfg.get("below_confidence", 0.0)),
            triggers=list(cfg.get("triggers") or []),
            severities=list(cfg.get("severities") or []),
        )

    def reasons(self, request: WorkflowRequest, decision: Decision, conflicts: list[Conflict]) -> list[str]:
        found = []
        if decision.confidence < self.below_confidence:
            found.append(f"confidence {decision.confidence:.2f} below {self.below_confidence:.2f}")
        if request.trigger in self.triggers:
            found.append(f"trigger '{request.trigger}' requires sign-off")
        severe = sorted({c.severity for c in conflicts if c.severity in self.severities})
        if severe:
            found.append(f"{'/'.join(severe)} conflict present")
        return found


# ─── Policy Engine ───────────────────────────────────────────────────

class PolicyEngine:
    """Resolves proposals into a Decision. Never returns without one."""

    def __init__(
        self,
        oracle: Oracle | None = None,
        oracle_timeout: float = DEFAULT_ORACLE_TIMEOUT,
        breaker: CircuitBreaker | None = None,
        human_approval: HumanApprovalPolicy | None = None,
        max_oracle_workers: int = 4,
        epsilon: float = DEFAULT_EPSILON,
    ):
        self.oracle = oracle
        self.oracle_timeout = oracle_timeout
        self.breaker = breaker or CircuitBreaker(threshold=5, reset_seconds=60.0)
        self.human_approval = human_approval or HumanApprovalPolicy()
        self.epsilon = epsilon
        # Long-lived pool; a hung oracle call keeps its thread, not the caller
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_oracle_workers, thread_name_prefix="oracle",
        )

    def resolve(
        self,
        request: WorkflowRequest,
        proposals: list[Proposal],
        conflicts: list[Conflict],
        revision: int = 1,
        log: StructuredLogger | None = None,
    ) -> Decision:
        if not proposals:
            decision = Decision.create(
                request.request_id, DecisionType.NONE_REQUIRED, revision=revision,
                rationale="No proposals received; no action required",
                confidence=1.0,
            )
            return decision

        if not conflicts:
            actions = [a for p in sorted(proposals, key=rank_key) for a in p.actions]
            disagreements = setpoint_disagreements(actions, {}, self.epsilon)
            if disagreements:
                reason = f"setpoints disagree: {'; '.join(disagreements)}"
                logger.warning("Resolving %s by rank: %s", request.request_id, reason)
                decision = self.fallback(request, proposals, conflicts, revision, reason)
                return self.apply_governance(request, decision, conflicts)
            decision = Decision.create(
                request.request_id, DecisionType.APPROVED, revision=revision,
                approved_actions=actions,
                rationale=f"No conflicts among {len(proposals)} proposal(s); approved verbatim",
                confidence=min(p.confidence for p in proposals),
                source=DecisionSource.POLICY.value,
            )
            return self.apply_governance(request, decision, conflicts)

        try:
            raw = self._call_oracle(self.build_oracle_request(request, proposals, conflicts))
            decision = self.validate_oracle_decision(raw, request, proposals, revision)
        except PolicyInvariantViolation as e:
            logger.warning("Oracle decision for %s rejected: %s", request.request_id, e)
            reason = f"invariant violation: {e}"
        except (OracleUnavailable, CircuitBreakerOpen) as e:
            reason = f"oracle unavailable: {e}"
        except (KeyError, TypeError, ValueError) as e:
            reason = f"unparseable oracle decision: {e}"
        else:
            return self.apply_governance(request, decision, conflicts)

        logger.warning("Falling back for %s: %s", request.request_id, reason)
        if log is not None:
            log.on_oracle_fallback(reason)
        decision = self.fallback(request, proposals, conflicts, revision, reason)

        return self.apply_governance(request, decision, conflicts)

    # ─── Oracle ──────────────────────────────────────────────────────

    def build_oracle_request(
        self, request: WorkflowRequest, proposals: list[Proposal], conflicts: list[Conflict],
    ) -> dict[str, Any]:
        return {
            "request_id": request.request_id,
            "conversation_id": request.conversation_id,
            "trigger": request.trigger,
            "context": request.context,
            "constitution": list(CONSTITUTION),
            "proposals": [p.to_dict() for p in sorted(proposals, key=lambda p: p.proposal_id)],
            "conflicts": [c.to_dict() for c in conflicts],
        }

    def _call_oracle(self, oracle_request: dict[str, Any]) -> dict[str, Any]:
        if self.oracle is None:
            raise OracleUnavailable("no oracle configured")
        self.breaker.check()

        future = self._pool.submit(self.oracle.score, oracle_request)
        try:
            raw = future.result(timeout=self.oracle_timeout)
        except concurrent.futures.TimeoutError:
            self.breaker.record_failure()
            raise OracleUnavailable(f"oracle did not answer within {self.oracle_timeout}s")
        except OracleUnavailable:
            self.breaker.record_failure()
            raise
        except Exception as e:
            self.breaker.record_failure()
            raise OracleUnavailable(f"oracle failed: {e}") from e
        self.breaker.record_success()
        if not isinstance(raw, dict):
            raise OracleUnavailable(f"oracle returned {type(raw).__name__}, expected object")
        return raw

    def validate_oracle_decision(
        self,
        raw: dict[str, Any],
        request: WorkflowRequest,
        proposals: list[Proposal],
        revision: int = 1,
    ) -> Decision:
        """
        Turn an oracle answer into a Decision, or raise PolicyInvariantViolation.

        Answer format:
            {"decision_type": "approved",
             "approved_actions": [{"proposal_id": "...", "control_variable": "...",
                                   "proposed_value": 3.35}],
             "rejected_actions": [{"proposal_id": "...", "control_variable": "..."}],
             "modifications": {"kiln_speed": 3.3},
             "rationale": "...", "confidence": 0.8,
             "human_approval_required": false}

        Actions the answer does not mention are treated as rejected.
        """
        violations: list[str] = []
        by_id = {p.proposal_id: p for p in proposals}
        index: dict[tuple[str, str], tuple[Proposal, ControlAction]] = {}
        for p in proposals:
            for a in p.actions:
                index[(p.proposal_id, a.control_variable)] = (p, a)

        decision_type = raw.get("decision_type")
        if decision_type not in _ORACLE_TYPES:
            violations.append(f"unknown decision_type {decision_type!r}")

        modifications = raw.get("modifications") or {}
        if not isinstance(modifications, dict) or not all(is_number(v) for v in modifications.values()):
            violations.append("modifications must map variables to numbers")
            modifications = {}

        confidence = raw.get("confidence", 0.0)
        if not is_number(confidence) or not 0.0 <= confidence <= 1.0:
            violations.append(f"confidence {confidence!r} is outside [0, 1]")
            confidence = 0.0

        def lookup(entry: Any, where: str) -> tuple[Proposal, ControlAction] | None:
            if not isinstance(entry, dict):
                violations.append(f"{where} entry must be an object")
                return None
            key = (entry.get("proposal_id"), entry.get("control_variable"))
            if key[0] not in by_id:
                violations.append(f"{where} references unknown proposal {key[0]!r}")
                return None
            if key not in index:
                violations.append(f"{where} references {key[1]!r}, not an action of {key[0]}")
                return None
            return index[key]

        approved: list[tuple[Proposal, ControlAction]] = []
        for entry in raw.get("approved_actions") or []:
            found = lookup(entry, "approved_actions")
            if found is None:
                continue
            p, a = found
            value = entry.get("proposed_value", a.proposed_value)
            if value != a.proposed_value and a.control_variable not in modifications:
                violations.append(
                    f"approved {a.control_variable}={value!r} from {p.proposal_id} matches no "
                    f"proposal and is not listed in modifications"
                )
            approved.append(found)

        approved_keys = {(p.proposal_id, a.control_variable) for p, a in approved}
        rejected_keys = set()
        for entry in raw.get("rejected_actions") or []:
            found = lookup(entry, "rejected_actions")
            if found is None:
                continue
            key = (found[0].proposal_id, found[1].control_variable)
            if key in approved_keys:
                violations.append(f"{key[1]} of {key[0]} is both approved and rejected")
            rejected_keys.add(key)

        approved_vars = {a.control_variable for _, a in approved}
        for var in modifications:
            if var not in approved_vars:
                violations.append(f"modification of {var} has no approved action")

        violations.extend(
            f"approved actions disagree on {d}"
            for d in setpoint_disagreements([a for _, a in approved], modifications, self.epsilon)
        )

        rejected = [
            (p, a) for key, (p, a) in sorted(index.items()) if key not in approved_keys
        ]
        violations.extend(constitution_violations(approved, rejected))

        if decision_type == DecisionType.DEFERRED.value and approved:
            violations.append("a deferred decision cannot approve actions")

        if violations:
            raise PolicyInvariantViolation(violations)

        if decision_type == DecisionType.APPROVED.value and modifications:
            decision_type = DecisionType.MODIFIED.value
        if decision_type in (DecisionType.APPROVED.value, DecisionType.MODIFIED.value) and not approved:
            decision_type = DecisionType.REJECTED.value

        deferred = decision_type == DecisionType.DEFERRED.value
        return Decision.create(
            request.request_id, decision_type, revision=revision,
            approved_actions=[a for _, a in approved],
            rejected_actions=[] if deferred else [a for _, a in rejected],
            modifications={k: float(v) for k, v in modifications.items()},
            rationale=str(raw.get("rationale", ""))[:4000],
            confidence=float(confidence),
            human_approval_required=deferred or bool(raw.get("human_approval_required", False)),
            source=DecisionSource.ORACLE.value,
        )

    # ─── Deterministic Fallback ──────────────────────────────────────

    def fallback(
        self,
        request: WorkflowRequest,
        proposals: list[Proposal],
        conflicts: list[Conflict],
        revision: int = 1,
        reason: str = "",
    ) -> Decision:
        ranked = sorted(proposals, key=rank_key)
        top = rank_key(ranked[0])[:2]
        top_tier = [p for p in ranked if rank_key(p)[:2] == top]

        direct = conflicting_pairs(conflicts, [ConflictType.DIRECT.value])
        tied = sorted({
            pid
            for pair in direct
            if all(pid in {p.proposal_id for p in top_tier} for pid in pair)
            for pid in pair
        })
        if tied:
            return Decision.create(
                request.request_id, DecisionType.DEFERRED, revision=revision,
                rationale=(
                    f"Fallback ({reason}): proposals {', '.join(tied)} share the top "
                    f"priority class ({top_tier[0].objective}, {top_tier[0].urgency}) and "
                    f"directly conflict; deferring to a human"
                ),
                confidence=0.0,
                human_approval_required=True,
                source=DecisionSource.FALLBACK.value,
            )

        blocking = conflicting_pairs(conflicts, _BLOCKING)
        accepted: list[Proposal] = []
        approved: list[ControlAction] = []
        rejected: list[ControlAction] = []
        refused: dict[str, int] = {}   # variable → best class rank refused on it
        setpoints: dict[str, ControlAction] = {}
        notes = []

        for p in ranked:
            p_rank = CLASS_RANK[p.objective]
            blocker = next(
                (a for a in accepted if frozenset((p.proposal_id, a.proposal_id)) in blocking),
                None,
            )
            outranked = sorted(v for v in p.variables if refused.get(v, p_rank) < p_rank)
            clash = next(
                (setpoints[a.control_variable] for a in p.actions
                 if a.control_variable in setpoints
                 and abs(setpoints[a.control_variable].proposed_value - a.proposed_value) > self.epsilon),
                None,
            )
            if blocker is None and not outranked and clash is None:
                accepted.append(p)
                approved.extend(p.actions)
                for a in p.actions:
                    setpoints.setdefault(a.control_variable, a)
                continue

            rejected.extend(p.actions)
            for v in p.variables:
                refused[v] = min(refused.get(v, p_rank), p_rank)
            if blocker is not None:
                notes.append(f"{p.proposal_id} conflicts with higher-ranked {blocker.proposal_id}")
            elif outranked:
                notes.append(f"{p.proposal_id} touches {', '.join(outranked)} refused to a higher class")
            else:
                notes.append(
                    f"{p.proposal_id} sets {clash.control_variable} away from "
                    f"{clash.proposed_value:g} already approved for {clash.proposal_id}"
                )

        accepted_ids = ", ".join(p.proposal_id for p in accepted) or "none"
        rationale = f"Fallback ({reason}): accepted {accepted_ids} by constitutional rank"
        if notes:
            rationale += "; " + "; ".join(notes)

        return Decision.create(
            request.request_id,
            DecisionType.APPROVED if accepted else DecisionType.REJECTED,
            revision=revision,
            approved_actions=approved,
            rejected_actions=rejected,
            rationale=rationale,
            confidence=min((p.confidence for p in accepted), default=0.0),
            source=DecisionSource.FALLBACK.value,
        )

    # ─── Governance ──────────────────────────────────────────────────

    def apply_governance(
        self, request: WorkflowRequest, decision: Decision, conflicts: list[Conflict],
    ) -> Decision:
        """
        Only ever adds a review requirement; never removes one.

        Configured gates skip rejections, but a decision that already asks
        for a human (an oracle's rejection included) always waits for one.
        """
        gated = decision.decision_type not in (DecisionType.REJECTED.value, DecisionType.NONE_REQUIRED.value)
        if gated and not decision.human_approval_required:
            reasons = self.human_approval.reasons(request, decision, conflicts)
            if reasons:
                decision.human_approval_required = True
                decision.rationale += f" [human review: {'; '.join(reasons)}]"
        if decision.human_approval_required:
            decision.human_approval_status = HumanApprovalStatus.PENDING.value
        return decision

    def shutdown(self):
        self._pool.shutdown(wait=False)


def constitution_violations(
    approved: list[tuple[Proposal, ControlAction]],
    rejected: list[tuple[Proposal, ControlAction]],
) -> list[str]:
    """Per variable, every approved class must rank at or above every rejected class."""
    violations = []
    for p, a in approved:
        for q, b in rejected:
            if a.control_variable == b.control_variable and CLASS_RANK[p.objective] > CLASS_RANK[q.objective]:
                violations.append(
                    f"{a.control_variable}: approved {p.objective} ({p.proposal_id}) over "
                    f"rejected {q.objective} ({q.proposal_id})"
                )
    return violations


def setpoint_disagreements(
    actions: list[ControlAction], modifications: dict[str, Any], epsilon: float,
) -> list[str]:
    """Variables whose approved setpoints differ by more than epsilon."""
    values: dict[str, list[float]] = {}
    for a in actions:
        values.setdefault(a.control_variable, []).append(
            float(modifications.get(a.control_variable, a.proposed_value))
        )
    return [
        f"{var}: {sorted(set(vals))}"
        for var, vals in sorted(values.items())
        if max(vals) - min(vals) > epsilon
    ]


def load_policy_engine(config: dict[str, Any], oracle: Oracle | None = None) -> PolicyEngine:
    """
    Build a PolicyEngine from coordinator YAML config.

    Expected structure:
        oracle:
          timeout_seconds: 10
          circuit_breaker_threshold: 5
          circuit_breaker_reset_seconds: 60
        conflicts:
          epsilon: 0.01
        human_approval:
          below_confidence: 0.3
          triggers: [emergency]
    """
    oracle_cfg = config.get("oracle") or {}
    return PolicyEngine(
        oracle=oracle,
        oracle_timeout=float(oracle_cfg.get("timeout_seconds", DEFAULT_ORACLE_TIMEOUT)),
        breaker=CircuitBreaker(
            threshold=int(oracle_cfg.get("circuit_breaker_threshold", 5)),
            reset_seconds=float(oracle_cfg.get("circuit_breaker_reset_seconds", 60.0)),
        ),
        human_approval=HumanApprovalPolicy.from_config(config.get("human_approval")),
        epsilon=float((config.get("conflicts") or {}).get("epsilon", DEFAULT_EPSILON)),
    )
