"""
Decision Core — Coordinator Type Definitions

All data structures for workflow requests, proposals, conflicts,
decisions, command results and the persisted workflow envelope.
Every record converts to and from a JSON-shaped dict.
"""

from __future__ import annotations

import enum
import hashlib
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from coordinator.errors import IllegalStateTransition


# ─── Enumerations ───────────────────────────────────────────────────

class Trigger(str, enum.Enum):
    QUALITY_DEVIATION = "quality_deviation"
    MARKET_CHANGE = "market_change"
    SCHEDULED = "scheduled"
    EMERGENCY = "emergency"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


URGENCY_RANK = {
    Urgency.LOW.value: 0,
    Urgency.MEDIUM.value: 1,
    Urgency.HIGH.value: 2,
    Urgency.CRITICAL.value: 3,
}


class Objective(str, enum.Enum):
    """Constitutional priority class of a proposal."""
    SAFETY = "safety"
    QUALITY = "quality"
    EMISSIONS = "emissions"
    COST = "cost"


# Proposer-declared proposal types and the class each one serves
PROPOSAL_TYPE_OBJECTIVES = {
    "stability": Objective.SAFETY.value,
    "emergency": Objective.SAFETY.value,
    "quality": Objective.QUALITY.value,
    "emissions": Objective.EMISSIONS.value,
    "optimization": Objective.COST.value,
}


class ConflictType(str, enum.Enum):
    DIRECT = "direct"
    INDIRECT = "indirect"
    PRIORITY = "priority"
    RESOURCE = "resource"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DecisionType(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    MODIFIED = "modified"
    DEFERRED = "deferred"
    NONE_REQUIRED = "none_required"


class DecisionSource(str, enum.Enum):
    POLICY = "policy"        # no conflicts, approved verbatim
    ORACLE = "oracle"
    FALLBACK = "fallback"
    HUMAN = "human"


class HumanApprovalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowStatus(str, enum.Enum):
    """Each status names the last step whose result is durably saved."""
    INITIALIZING = "initializing"
    COLLECTING = "collecting"
    ANALYZING = "analyzing"
    RESOLVING = "resolving"
    DECIDING = "deciding"
    PAUSED_FOR_HUMAN = "paused_for_human"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.ERROR})

_E = WorkflowStatus.ERROR
TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.INITIALIZING: frozenset({WorkflowStatus.COLLECTING, _E}),
    # Zero proposals completes straight from collection
    WorkflowStatus.COLLECTING: frozenset({WorkflowStatus.ANALYZING, WorkflowStatus.COMPLETED, _E}),
    WorkflowStatus.ANALYZING: frozenset({WorkflowStatus.RESOLVING, _E}),
    WorkflowStatus.RESOLVING: frozenset({WorkflowStatus.DECIDING, _E}),
    WorkflowStatus.DECIDING: frozenset({
        WorkflowStatus.EXECUTING, WorkflowStatus.PAUSED_FOR_HUMAN, WorkflowStatus.COMPLETED, _E,
    }),
    WorkflowStatus.PAUSED_FOR_HUMAN: frozenset({WorkflowStatus.DECIDING, _E}),
    WorkflowStatus.EXECUTING: frozenset({WorkflowStatus.COMPLETED, _E}),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.ERROR: frozenset(),
}


class CommandStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


def _value(v: Any) -> Any:
    return v.value if isinstance(v, enum.Enum) else v


def stable_id(prefix: str, *parts: Any) -> str:
    """Deterministic short id from the given parts."""
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return f"{prefix}_{digest[:16]}"


# ─── Request ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WorkflowRequest:
    """External trigger for one decision round. Never mutated."""
    request_id: str
    conversation_id: str
    trigger: str
    context: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def create(
        trigger: str,
        context: dict[str, Any] | None = None,
        conversation_id: str = "",
        request_id: str = "",
    ) -> WorkflowRequest:
        trigger = _value(trigger)
        if trigger not in {t.value for t in Trigger}:
            raise ValueError(f"unknown trigger: {trigger!r}")
        rid = request_id or f"req_{uuid.uuid4().hex[:12]}"
        return WorkflowRequest(
            request_id=rid,
            conversation_id=conversation_id or rid,
            trigger=trigger,
            context=dict(context or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "conversation_id": self.conversation_id,
            "trigger": self.trigger,
            "context": self.context,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> WorkflowRequest:
        return cls(
            request_id=d["request_id"],
            conversation_id=d.get("conversation_id") or d["request_id"],
            trigger=d["trigger"],
            context=d.get("context") or {},
            created_at=float(d.get("created_at") or time.time()),
        )


# ─── Proposals ──────────────────────────────────────────────────────

@dataclass
class ControlAction:
    control_variable: str
    current_value: float
    proposed_value: float
    # Provenance, stamped at collection time
    proposal_id: str = ""
    proposer_id: str = ""

    @property
    def delta(self) -> float:
        return self.proposed_value - self.current_value

    def to_dict(self) -> dict[str, Any]:
        return {
            "control_variable": self.control_variable,
            "current_value": self.current_value,
            "proposed_value": self.proposed_value,
            "delta": self.delta,
            "proposal_id": self.proposal_id,
            "proposer_id": self.proposer_id,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ControlAction:
        return cls(
            control_variable=d["control_variable"],
            current_value=float(d["current_value"]),
            proposed_value=float(d["proposed_value"]),
            proposal_id=d.get("proposal_id", ""),
            proposer_id=d.get("proposer_id", ""),
        )


@dataclass
class Proposal:
    """One proposer's recommendation for one request. Immutable once stored."""
    proposal_id: str
    request_id: str
    proposer_id: str
    urgency: str
    actions: list[ControlAction]
    expected_outcome: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.5
    constraints: list[str] = field(default_factory=list)
    objective: str = Objective.COST.value
    proposal_type: str = ""

    @property
    def urgency_rank(self) -> int:
        return URGENCY_RANK[self.urgency]

    @property
    def variables(self) -> set[str]:
        return {a.control_variable for a in self.actions}

    def to_dict(self) -> dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "request_id": self.request_id,
            "proposer_id": self.proposer_id,
            "urgency": self.urgency,
            "actions": [a.to_dict() for a in self.actions],
            "expected_outcome": self.expected_outcome,
            "confidence": self.confidence,
            "constraints": list(self.constraints),
            "objective": self.objective,
            "proposal_type": self.proposal_type,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Proposal:
        return cls(
            proposal_id=d["proposal_id"],
            request_id=d["request_id"],
            proposer_id=d["proposer_id"],
            urgency=d["urgency"],
            actions=[ControlAction.from_dict(a) for a in d.get("actions", [])],
            expected_outcome=d.get("expected_outcome") or {},
            confidence=float(d.get("confidence", 0.5)),
            constraints=list(d.get("constraints") or []),
            objective=d.get("objective") or Objective.COST.value,
            proposal_type=d.get("proposal_type", ""),
        )

    @classmethod
    def from_proposer(cls, d: dict[str, Any], request_id: str, proposer_id: str) -> Proposal:
        """
        Build a proposal from a proposer's reply payload.

        Provenance (request id, proposer id, per-action proposal id) is
        stamped here rather than trusted from the payload.

        Raises:
            ValueError / KeyError / TypeError on malformed content.
        """
        if d.get("request_id") not in (None, "", request_id):
            raise ValueError(f"proposal answers request {d['request_id']}, expected {request_id}")

        urgency = d.get("urgency", "")
        if urgency not in URGENCY_RANK:
            raise ValueError(f"unknown urgency: {urgency!r}")

        confidence = float(d.get("confidence", 0.5))
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence {confidence} is outside [0, 1]")

        proposal_type = d.get("proposal_type", "") or ""
        objective = d.get("objective") or PROPOSAL_TYPE_OBJECTIVES.get(
            proposal_type, Objective.COST.value
        )
        if objective not in {o.value for o in Objective}:
            raise ValueError(f"unknown objective: {objective!r}")

        constraints = d.get("constraints") or []
        if not isinstance(constraints, list) or not all(isinstance(c, str) for c in constraints):
            raise ValueError("constraints must be a list of variable names")

        proposal_id = d.get("proposal_id") or stable_id("prop", request_id, proposer_id)
        raw_actions = d.get("actions") or []
        if not raw_actions:
            raise ValueError("proposal carries no actions")
        actions = []
        for a in raw_actions:
            action = ControlAction.from_dict(a)
            action.proposal_id = proposal_id
            action.proposer_id = proposer_id
            actions.append(action)

        return cls(
            proposal_id=proposal_id,
            request_id=request_id,
            proposer_id=proposer_id,
            urgency=urgency,
            actions=actions,
            expected_outcome=d.get("expected_outcome") or {},
            confidence=confidence,
            constraints=constraints,
            objective=objective,
            proposal_type=proposal_type,
        )


@dataclass(frozen=True)
class ProposerRef:
    proposer_id: str
    endpoint: str = ""
    capabilities: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ProposerRef:
        return cls(
            proposer_id=d["proposer_id"],
            endpoint=d.get("endpoint", ""),
            capabilities=tuple(d.get("capabilities") or ()),
        )


@dataclass
class ProposerError:
    proposer_id: str
    reason: str          # timeout | delivery_failed | authentication | invalid_proposal
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"proposer_id": self.proposer_id, "reason": self.reason, "detail": self.detail}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ProposerError:
        return cls(proposer_id=d["proposer_id"], reason=d["reason"], detail=d.get("detail", ""))


# ─── Conflicts ──────────────────────────────────────────────────────

@dataclass
class Conflict:
    """Derived from a proposal set; recomputed, never hand-edited."""
    type: str
    severity: str
    involved_proposal_ids: list[str]
    control_variables: list[str]
    description: str

    @property
    def conflict_id(self) -> str:
        return stable_id(
            "cfl", self.type, ",".join(self.involved_proposal_ids), ",".join(self.control_variables),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conflict_id": self.conflict_id,
            "type": self.type,
            "severity": self.severity,
            "involved_proposal_ids": list(self.involved_proposal_ids),
            "control_variables": list(self.control_variables),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Conflict:
        return cls(
            type=d["type"],
            severity=d["severity"],
            involved_proposal_ids=list(d["involved_proposal_ids"]),
            control_variables=list(d.get("control_variables") or []),
            description=d.get("description", ""),
        )


# ─── Decisions ──────────────────────────────────────────────────────

def decision_id_for(request_id: str, revision: int) -> str:
    return stable_id("dec", request_id, revision)


@dataclass
class Decision:
    decision_id: str
    request_id: str
    decision_type: str
    approved_actions: list[ControlAction] = field(default_factory=list)
    rejected_actions: list[ControlAction] = field(default_factory=list)
    # control_variable → value replacing the proposed value
    modifications: dict[str, float] = field(default_factory=dict)
    rationale: str = ""
    confidence: float = 0.0
    constitutional_compliance: bool = True
    human_approval_required: bool = False
    human_approval_status: str | None = None
    source: str = DecisionSource.POLICY.value
    revision: int = 1
    supersedes: str | None = None
    approver: str | None = None
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def create(request_id: str, decision_type: str, revision: int = 1, **kwargs) -> Decision:
        return Decision(
            decision_id=decision_id_for(request_id, revision),
            request_id=request_id,
            decision_type=_value(decision_type),
            revision=revision,
            **kwargs,
        )

    @property
    def executable_actions(self) -> list[ControlAction]:
        """
        Approved actions with modifications applied, in decision order.

        One per control variable: commands are absolute setpoints, so
        later approved actions on a variable already commanded are
        folded into the first.
        """
        if self.decision_type in (
            DecisionType.REJECTED.value, DecisionType.DEFERRED.value, DecisionType.NONE_REQUIRED.value,
        ):
            return []
        actions = []
        seen = set()
        for a in self.approved_actions:
            if a.control_variable in seen:
                continue
            seen.add(a.control_variable)
            value = self.modifications.get(a.control_variable, a.proposed_value)
            actions.append(ControlAction(
                control_variable=a.control_variable,
                current_value=a.current_value,
                proposed_value=value,
                proposal_id=a.proposal_id,
                proposer_id=a.proposer_id,
            ))
        return actions

    @property
    def awaiting_human(self) -> bool:
        return (
            self.human_approval_required
            and self.human_approval_status == HumanApprovalStatus.PENDING.value
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "request_id": self.request_id,
            "decision_type": self.decision_type,
            "approved_actions": [a.to_dict() for a in self.approved_actions],
            "rejected_actions": [a.to_dict() for a in self.rejected_actions],
            "modifications": dict(self.modifications),
            "rationale": self.rationale,
            "confidence": self.confidence,
            "constitutional_compliance": self.constitutional_compliance,
            "human_approval_required": self.human_approval_required,
            "human_approval_status": self.human_approval_status,
            "source": self.source,
            "revision": self.revision,
            "supersedes": self.supersedes,
            "approver": self.approver,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Decision:
        return cls(
            decision_id=d["decision_id"],
            request_id=d["request_id"],
            decision_type=d["decision_type"],
            approved_actions=[ControlAction.from_dict(a) for a in d.get("approved_actions", [])],
            rejected_actions=[ControlAction.from_dict(a) for a in d.get("rejected_actions", [])],
            modifications={k: float(v) for k, v in (d.get("modifications") or {}).items()},
            rationale=d.get("rationale", ""),
            confidence=float(d.get("confidence", 0.0)),
            constitutional_compliance=bool(d.get("constitutional_compliance", True)),
            human_approval_required=bool(d.get("human_approval_required", False)),
            human_approval_status=d.get("human_approval_status"),
            source=d.get("source", DecisionSource.POLICY.value),
            revision=int(d.get("revision", 1)),
            supersedes=d.get("supersedes"),
            approver=d.get("approver"),
            created_at=float(d.get("created_at") or time.time()),
        )


# ─── Execution ──────────────────────────────────────────────────────

@dataclass
class CommandResult:
    command_id: str
    decision_id: str
    control_variable: str
    status: str
    executed_value: float | None = None
    error: str | None = None
    completed_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.status == CommandStatus.SUCCESS.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "decision_id": self.decision_id,
            "control_variable": self.control_variable,
            "status": self.status,
            "executed_value": self.executed_value,
            "error": self.error,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> CommandResult:
        return cls(
            command_id=d["command_id"],
            decision_id=d["decision_id"],
            control_variable=d["control_variable"],
            status=d["status"],
            executed_value=d.get("executed_value"),
            error=d.get("error"),
            completed_at=float(d.get("completed_at") or time.time()),
        )


# ─── Workflow State ─────────────────────────────────────────────────

@dataclass
class WorkflowState:
    """
    The mutable envelope for one request. Only the workflow runtime
    mutates it; every other component receives and returns values.
    """
    request: WorkflowRequest
    status: WorkflowStatus = WorkflowStatus.INITIALIZING
    proposals: list[Proposal] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    decision: Decision | None = None
    error: str | None = None
    updated_at: float = field(default_factory=time.time)
    proposer_errors: list[ProposerError] = field(default_factory=list)
    command_results: list[CommandResult] = field(default_factory=list)
    # Compare-and-swap version; 0 means never saved
    version: int = 0
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def request_id(self) -> str:
        return self.request.request_id

    @property
    def conversation_id(self) -> str:
        return self.request.conversation_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, to_status: WorkflowStatus, note: str = "") -> None:
        """Move to a new status; raises IllegalStateTransition if not allowed."""
        to_status = WorkflowStatus(to_status)
        if to_status not in TRANSITIONS[self.status]:
            raise IllegalStateTransition(self.request_id, self.status.value, to_status.value)
        now = time.time()
        entry: dict[str, Any] = {"from": self.status.value, "to": to_status.value, "at": now}
        if note:
            entry["note"] = note
        self.history.append(entry)
        self.status = to_status
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "request": self.request.to_dict(),
            "status": self.status.value,
            "proposals": [p.to_dict() for p in self.proposals],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "decision": self.decision.to_dict() if self.decision else None,
            "error": self.error,
            "updated_at": self.updated_at,
            "proposer_errors": [e.to_dict() for e in self.proposer_errors],
            "command_results": [r.to_dict() for r in self.command_results],
            "version": self.version,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> WorkflowState:
        return cls(
            request=WorkflowRequest.from_dict(d["request"]),
            status=WorkflowStatus(d["status"]),
            proposals=[Proposal.from_dict(p) for p in d.get("proposals", [])],
            conflicts=[Conflict.from_dict(c) for c in d.get("conflicts", [])],
            decision=Decision.from_dict(d["decision"]) if d.get("decision") else None,
            error=d.get("error"),
            updated_at=float(d.get("updated_at") or time.time()),
            proposer_errors=[ProposerError.from_dict(e) for e in d.get("proposer_errors", [])],
            command_results=[CommandResult.from_dict(r) for r in d.get("command_results", [])],
            version=int(d.get("version", 0)),
            history=list(d.get("history") or []),
        )
