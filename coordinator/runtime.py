"""
Decision Core — Workflow Runtime

The coordinator. Drives one request through

    initializing → collecting → analyzing → resolving → deciding
        → executing → completed | error
    deciding → paused_for_human → deciding

Each status names the last step whose result is durably saved. A step
computes its result, saves the state (compare-and-swap on the version
column), and only then advances. run() re-enters at the step after the
saved status, so a crashed instance resumes exactly where it left off:

    initializing      collect proposals
    collecting        detect conflicts (or complete on zero proposals)
    analyzing         resolve into a decision
    resolving         record the decision in the history
    deciding          pause for a human, complete, or start executing
    executing         dispatch commands (re-dispatch is deduplicated)

The interface (accept/run/approve/reject/abort/recover) is
topology-independent: the same calls back the CLI, the HTTP API and
inbound protocol messages.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

from coordinator.collector import DEFAULT_COLLECT_TIMEOUT, ProposalCollector
from coordinator.conflicts import DetectorConfig, conflicting_pairs, detect
from coordinator.contracts import (
    CommunicationLogEntry, CoordinatorStats, PendingApproval, assert_contract, assert_contracts,
)
from coordinator.dispatcher import DecisionDispatcher
from coordinator.errors import (
    ConcurrentModification,
    IllegalStateTransition,
    StoreUnavailable,
    WorkflowNotFound,
)
from coordinator.oracle import Oracle, create_oracle
from coordinator.policy import (
    PolicyEngine,
    constitution_violations,
    load_policy_engine,
    rank_key,
    setpoint_disagreements,
)
from coordinator.store import CheckpointStore
from coordinator.types import (
    ConflictType,
    Decision,
    DecisionSource,
    DecisionType,
    HumanApprovalStatus,
    ProposerRef,
    WorkflowRequest,
    WorkflowState,
    WorkflowStatus,
)
from engine.config import load_config
from engine.logging import StructuredLogger
from engine.retry import policy_from_config
from protocol.auth import TokenSigner, TokenVerifier, load_signing_key
from protocol.client import DEFAULT_TIMEOUT_SECONDS, ProtocolClient
from protocol.messages import AgentMessage, MessageType
from protocol.receiver import MessageReceiver
from protocol.transport import HttpTransport, Transport

logger = logging.getLogger("decision_core.runtime")

_ABORT_ATTEMPTS = 5


class Coordinator:
    """
    Workflow runtime over a CheckpointStore.

    Collaborators are built from config unless injected. Tests inject an
    in-memory store, an InProcessTransport and a fixed signing key.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        store: CheckpointStore | None = None,
        transport: Transport | None = None,
        signing_key: str = "",
        oracle: Oracle | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.config = config or {}
        self.agent_id = self.config.get("agent_id", "master-control")

        self.store = store or CheckpointStore.from_config(self.config.get("store"))

        protocol_cfg = self.config.get("protocol") or {}
        key = signing_key or load_signing_key()
        self.signer = TokenSigner(key, ttl_seconds=int(protocol_cfg.get("token_ttl_seconds", 300)))
        self.verifier = TokenVerifier(key, audience=self.agent_id)

        self.proposers = [ProposerRef.from_dict(p) for p in self.config.get("proposers") or []]
        executor_cfg = self.config.get("executor") or {}
        oracle_cfg = self.config.get("oracle") or {}

        self.transport = transport or HttpTransport(self._endpoints(executor_cfg, oracle_cfg))
        self.client = ProtocolClient(
            self.agent_id,
            self.transport,
            self.signer,
            policy=policy_from_config(protocol_cfg),
            timeout=float(protocol_cfg.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS)),
            log_sink=self.store.append_communication_log,
            sleep_fn=sleep_fn,
        )

        self.collect_timeout = float(protocol_cfg.get("collect_timeout_seconds", DEFAULT_COLLECT_TIMEOUT))
        self.collector = ProposalCollector(
            self.client, max_workers=max(1, len(self.proposers)),
        )
        self.detector_config = DetectorConfig.from_config(self.config.get("conflicts"))
        if oracle is None:
            oracle = create_oracle(oracle_cfg, self.client)
        self.policy: PolicyEngine = load_policy_engine(self.config, oracle)
        self.dispatcher = DecisionDispatcher(
            self.client, executor_id=executor_cfg.get("agent_id", "command-executor"),
        )

        self._steps = {
            WorkflowStatus.INITIALIZING: self._collect,
            WorkflowStatus.COLLECTING: self._analyze,
            WorkflowStatus.ANALYZING: self._resolve,
            WorkflowStatus.RESOLVING: self._decide,
            WorkflowStatus.DECIDING: self._execute,
            WorkflowStatus.EXECUTING: self._dispatch,
        }
        self._receiver: MessageReceiver | None = None

    @classmethod
    def from_config(cls, config_path: str | Path | None = None, **kwargs) -> Coordinator:
        """Load layered YAML config (base + env overlay + CC_ env vars)."""
        return cls(config=load_config(str(config_path or "")), **kwargs)

    def _endpoints(self, executor_cfg: dict[str, Any], oracle_cfg: dict[str, Any]) -> dict[str, str]:
        endpoints = {p.proposer_id: p.endpoint for p in self.proposers if p.endpoint}
        if executor_cfg.get("endpoint"):
            endpoints[executor_cfg.get("agent_id", "command-executor")] = executor_cfg["endpoint"]
        if oracle_cfg.get("endpoint"):
            endpoints[oracle_cfg.get("recipient", "reasoning-oracle")] = oracle_cfg["endpoint"]
        return endpoints

    # ─── Public API ──────────────────────────────────────────────────

    def accept(self, request: WorkflowRequest) -> WorkflowState:
        """Persist a new workflow. A request_id seen before returns its state."""
        existing = self.store.load_state(request.request_id)
        if existing is not None:
            logger.info("Request %s already accepted (%s)", request.request_id, existing.status.value)
            return existing

        state = WorkflowState(request=request)
        state.history.append({"from": None, "to": state.status.value, "at": state.updated_at})
        try:
            self.store.save_state(state)
        except ConcurrentModification:
            # Accepted concurrently by another caller
            return self._load(request.request_id)
        logger.info("Accepted %s (trigger=%s)", request.request_id, request.trigger)
        return state

    def start(self, request: WorkflowRequest) -> WorkflowState:
        self.accept(request)
        return self.run(request.request_id)

    def run(self, request_id: str) -> WorkflowState:
        """
        Drive a workflow from its saved status until it pauses or ends.

        Raises:
            WorkflowNotFound: no such request
            StoreUnavailable: the workflow stays at its last saved status
        """
        state = self._load(request_id)
        if state.is_terminal or state.status == WorkflowStatus.PAUSED_FOR_HUMAN:
            return state

        log = StructuredLogger(request_id=state.request_id, conversation_id=state.conversation_id)
        resumed_from = "" if state.status == WorkflowStatus.INITIALIZING else state.status.value
        log.on_workflow_start(state.request.trigger, resumed_from=resumed_from)
        started = time.time()

        try:
            while not state.is_terminal and state.status != WorkflowStatus.PAUSED_FOR_HUMAN:
                self._steps[state.status](state, log)
        except ConcurrentModification as e:
            logger.warning("Run of %s stopped: %s", request_id, e)
            state = self._load(request_id)
            log.on_workflow_end(state.status.value, time.time() - started, state.error)
            return state
        except StoreUnavailable:
            log.on_workflow_end("interrupted", time.time() - started, "store unavailable")
            raise
        except Exception as e:
            logger.exception("Workflow %s failed in %s", request_id, state.status.value)
            self._fail(state, f"{type(e).__name__}: {e}", log)

        log.on_workflow_end(state.status.value, time.time() - started, state.error)
        return state

    def resume(self, request_id: str) -> WorkflowState:
        """Continue a workflow from its last checkpoint."""
        return self.run(request_id)

    def recover(self) -> list[WorkflowState]:
        """Resume every non-terminal, non-paused workflow. Call once at boot."""
        resumable = self.store.list_resumable()
        if resumable:
            logger.info("Recovering %d workflow(s)", len(resumable))
        return [self.run(s.request_id) for s in resumable]

    def approve(
        self,
        request_id: str,
        approver: str = "",
        rationale: str = "",
        approved_proposal_ids: list[str] | None = None,
    ) -> WorkflowState:
        """
        Approve a paused decision and continue the workflow.

        A deferred decision needs the chosen proposals; the approval is
        recorded as a new superseding decision. Any other paused decision
        is signed off in place.

        Raises:
            IllegalStateTransition: the workflow is not paused
            ValueError: the chosen proposals are unknown or conflict
        """
        state = self._load(request_id)
        self._require_paused(state, WorkflowStatus.DECIDING)
        prior = state.decision
        live = self._live_decision(state)
        approver = approver or "operator"

        if prior.decision_type == DecisionType.DEFERRED.value:
            decision = self._human_choice(state, live, approver, rationale, approved_proposal_ids or [])
        else:
            decision = Decision.from_dict(prior.to_dict())
            decision.human_approval_status = HumanApprovalStatus.APPROVED.value
            decision.approver = approver
            if rationale:
                decision.rationale += f" [approved by {approver}: {rationale}]"
            if live.decision_id != prior.decision_id:
                decision = self._signed_off_copy(decision, live)

        self.store.save_decision(decision)
        state.decision = decision
        log = StructuredLogger(request_id=state.request_id, conversation_id=state.conversation_id)
        self._log_decision(log, decision)
        self._advance(state, WorkflowStatus.DECIDING, log, note=f"approved by {approver}")
        logger.info("Approved %s by %s", request_id, approver)
        return self.run(request_id)

    def reject(self, request_id: str, approver: str = "", rationale: str = "") -> WorkflowState:
        """Reject a paused decision. The workflow completes with nothing executed."""
        state = self._load(request_id)
        self._require_paused(state, WorkflowStatus.DECIDING)
        prior = self._live_decision(state)
        approver = approver or "operator"

        decision = Decision.create(
            request_id,
            DecisionType.REJECTED,
            revision=prior.revision + 1,
            rejected_actions=[a for p in state.proposals for a in p.actions],
            rationale=f"Rejected by {approver}" + (f": {rationale}" if rationale else ""),
            confidence=prior.confidence,
            human_approval_required=True,
            human_approval_status=HumanApprovalStatus.REJECTED.value,
            source=DecisionSource.HUMAN.value,
            supersedes=prior.decision_id,
            approver=approver,
        )
        self.store.save_decision(decision)
        state.decision = decision
        log = StructuredLogger(request_id=state.request_id, conversation_id=state.conversation_id)
        self._log_decision(log, decision)
        self._advance(state, WorkflowStatus.DECIDING, log, note=f"rejected by {approver}")
        logger.info("Rejected %s by %s", request_id, approver)
        return self.run(request_id)

    def abort(self, request_id: str, reason: str = "") -> WorkflowState:
        """
        Move a workflow to error immediately. An in-flight run loses its
        next compare-and-swap and discards its results.
        """
        for _ in range(_ABORT_ATTEMPTS):
            state = self._load(request_id)
            if state.is_terminal:
                raise IllegalStateTransition(request_id, state.status.value, WorkflowStatus.ERROR.value)
            state.error = f"cancelled: {reason}" if reason else "cancelled"
            state.transition(WorkflowStatus.ERROR, note=state.error)
            try:
                self.store.save_state(state)
            except ConcurrentModification:
                continue
            logger.info("Aborted %s: %s", request_id, state.error)
            return state
        raise ConcurrentModification(request_id, state.version)

    def get_state(self, request_id: str) -> WorkflowState | None:
        return self.store.load_state(request_id)

    def get_decisions(self, request_id: str) -> list[dict[str, Any]]:
        return self.store.get_decisions(request_id)

    def get_communication_log(self, request_id: str) -> list[dict[str, Any]]:
        """Every message exchanged in the workflow's conversation."""
        state = self._load(request_id)
        entries = self.store.get_communication_log(state.conversation_id)
        assert_contracts(entries, CommunicationLogEntry, "get_communication_log")
        return entries

    def list_pending_approvals(self) -> list[dict[str, Any]]:
        """Workflows paused for a human, oldest first."""
        paused = self.store.list_states(status=WorkflowStatus.PAUSED_FOR_HUMAN.value)
        approvals = []
        for state in sorted(paused, key=lambda s: s.updated_at):
            decision = state.decision
            entry = {
                "request_id": state.request_id,
                "conversation_id": state.conversation_id,
                "trigger": state.request.trigger,
                "decision_id": decision.decision_id if decision else "",
                "decision_type": decision.decision_type if decision else "",
                "rationale": decision.rationale if decision else "",
                "confidence": decision.confidence if decision else 0.0,
                "proposal_ids": [p.proposal_id for p in state.proposals],
                "paused_at": state.updated_at,
            }
            assert_contract(entry, PendingApproval, "list_pending_approvals")
            approvals.append(entry)
        return approvals

    def stats(self, days: int = 7) -> dict[str, Any]:
        result = self.store.stats(days)
        assert_contract(result, CoordinatorStats, "stats")
        return result

    # ─── Inbound Protocol ────────────────────────────────────────────

    def receiver(self) -> MessageReceiver:
        """The idempotent receiver for messages addressed to this coordinator."""
        if self._receiver is None:
            self._receiver = MessageReceiver(
                self.agent_id,
                self.verifier,
                self.handle_message,
                dedup=self.store.dedup_table(),
                log_sink=self.store.append_communication_log,
            )
        return self._receiver

    def handle_message(self, message: AgentMessage) -> AgentMessage:
        """
        status    {"request_id"} → status reply with the workflow state
        decision  {"request_id", "approve", "approver", "rationale",
                   "approved_proposal_ids"} → human approval event
        """
        payload = message.payload
        request_id = payload.get("request_id")
        if message.type not in (MessageType.STATUS.value, MessageType.DECISION.value):
            return message.reply(MessageType.ERROR, {"error": f"unsupported message type {message.type}"})
        if not isinstance(request_id, str) or not request_id:
            return message.reply(MessageType.ERROR, {"error": "request_id is required"})

        try:
            if message.type == MessageType.STATUS.value:
                state = self._load(request_id)
                return message.reply(MessageType.STATUS, {"state": state.to_dict()})

            if payload.get("approve"):
                state = self.approve(
                    request_id,
                    approver=str(payload.get("approver") or message.sender_id),
                    rationale=str(payload.get("rationale") or ""),
                    approved_proposal_ids=payload.get("approved_proposal_ids"),
                )
            else:
                state = self.reject(
                    request_id,
                    approver=str(payload.get("approver") or message.sender_id),
                    rationale=str(payload.get("rationale") or ""),
                )
        except (WorkflowNotFound, IllegalStateTransition, ValueError) as e:
            return message.reply(MessageType.ERROR, {"error": str(e)})
        return message.reply(
            MessageType.STATUS, {"request_id": request_id, "status": state.status.value},
        )

    def close(self):
        self.collector.shutdown()
        self.policy.shutdown()
        self.store.close()

    # ─── Steps ───────────────────────────────────────────────────────

    def _collect(self, state: WorkflowState, log: StructuredLogger) -> None:
        proposals, errors = self.collector.collect(state.request, self.proposers, self.collect_timeout)
        log.on_proposals_collected(len(proposals), [e.to_dict() for e in errors])
        state.proposals = proposals
        state.proposer_errors = errors
        self._advance(state, WorkflowStatus.COLLECTING, log)

    def _analyze(self, state: WorkflowState, log: StructuredLogger) -> None:
        if not state.proposals:
            decision = self.policy.resolve(state.request, [], [], log=log)
            self.store.save_decision(decision)
            state.decision = decision
            self._log_decision(log, decision)
            self._advance(state, WorkflowStatus.COMPLETED, log, note="no proposals received")
            return

        conflicts = detect(state.proposals, self.detector_config)
        log.on_conflicts_detected([c.to_dict() for c in conflicts])
        state.conflicts = conflicts
        self._advance(state, WorkflowStatus.ANALYZING, log)

    def _resolve(self, state: WorkflowState, log: StructuredLogger) -> None:
        state.decision = self.policy.resolve(state.request, state.proposals, state.conflicts, log=log)
        self._advance(state, WorkflowStatus.RESOLVING, log)

    def _decide(self, state: WorkflowState, log: StructuredLogger) -> None:
        self.store.save_decision(state.decision)
        self._log_decision(log, state.decision)
        self._advance(state, WorkflowStatus.DECIDING, log)

    def _execute(self, state: WorkflowState, log: StructuredLogger) -> None:
        decision = state.decision
        if decision.awaiting_human:
            self._advance(state, WorkflowStatus.PAUSED_FOR_HUMAN, log, note="awaiting human approval")
            return
        if not decision.executable_actions:
            self._advance(
                state, WorkflowStatus.COMPLETED, log,
                note=f"{decision.decision_type} decision, nothing to execute",
            )
            return
        self._advance(state, WorkflowStatus.EXECUTING, log)
        self._dispatch(state, log)

    def _dispatch(self, state: WorkflowState, log: StructuredLogger) -> None:
        results = self.dispatcher.dispatch(state.decision, state.conversation_id)
        for r in results:
            log.on_command_result(r.command_id, r.control_variable, r.status, r.error)
        state.command_results = results

        failed = [r for r in results if not r.succeeded]
        if results and len(failed) == len(results):
            state.error = f"all {len(results)} command(s) failed: " + "; ".join(
                f"{r.control_variable}: {r.error}" for r in failed
            )
            self._advance(state, WorkflowStatus.ERROR, log, note=state.error)
            return

        note = ""
        if failed:
            note = f"partial failure: {len(failed)} of {len(results)} command(s) failed (" + ", ".join(
                r.control_variable for r in failed
            ) + ")"
        self._advance(state, WorkflowStatus.COMPLETED, log, note=note)

    # ─── Helpers ─────────────────────────────────────────────────────

    def _load(self, request_id: str) -> WorkflowState:
        state = self.store.load_state(request_id)
        if state is None:
            raise WorkflowNotFound(request_id)
        return state

    def _advance(
        self, state: WorkflowState, to_status: WorkflowStatus, log: StructuredLogger, note: str = "",
    ) -> None:
        from_status = state.status.value
        state.transition(to_status, note=note)
        self.store.save_state(state)
        log.on_transition(from_status, to_status.value)

    def _fail(self, state: WorkflowState, error: str, log: StructuredLogger) -> None:
        """Persist error from whatever status the run reached."""
        current = self.store.load_state(state.request_id)
        if current is None or current.is_terminal:
            return
        current.error = error
        current.transition(WorkflowStatus.ERROR, note=error)
        try:
            self.store.save_state(current)
        except ConcurrentModification:
            logger.warning("Could not record failure of %s: changed concurrently", state.request_id)
            return
        log.on_transition(state.status.value, WorkflowStatus.ERROR.value)
        state.status = current.status
        state.error = current.error
        state.version = current.version

    @staticmethod
    def _require_paused(state: WorkflowState, to_status: WorkflowStatus) -> None:
        if state.status != WorkflowStatus.PAUSED_FOR_HUMAN or state.decision is None:
            raise IllegalStateTransition(state.request_id, state.status.value, to_status.value)

    def _live_decision(self, state: WorkflowState) -> Decision:
        """
        The decision a new human decision must supersede.

        Normally the paused one. A human decision recorded just before its
        state save was lost is newer, and the history chain continues from it.
        """
        live = self.store.get_active_decision(state.request_id)
        if live is not None and live.revision > state.decision.revision:
            return live
        return state.decision

    @staticmethod
    def _signed_off_copy(decision: Decision, live: Decision) -> Decision:
        return Decision.create(
            decision.request_id,
            decision.decision_type,
            revision=live.revision + 1,
            approved_actions=decision.approved_actions,
            rejected_actions=decision.rejected_actions,
            modifications=decision.modifications,
            rationale=decision.rationale,
            confidence=decision.confidence,
            constitutional_compliance=decision.constitutional_compliance,
            human_approval_required=True,
            human_approval_status=decision.human_approval_status,
            source=decision.source,
            supersedes=live.decision_id,
            approver=decision.approver,
        )

    def _human_choice(
        self, state: WorkflowState, live: Decision, approver: str, rationale: str, proposal_ids: list[str],
    ) -> Decision:
        if not proposal_ids:
            raise ValueError("approving a deferred decision requires approved_proposal_ids")
        known = {p.proposal_id: p for p in state.proposals}
        unknown = sorted(set(proposal_ids) - set(known))
        if unknown:
            raise ValueError(f"unknown proposal id(s): {', '.join(unknown)}")

        chosen = sorted((known[pid] for pid in set(proposal_ids)), key=rank_key)
        direct = conflicting_pairs(detect(chosen, self.detector_config), [ConflictType.DIRECT.value])
        if direct:
            pairs = ", ".join(" / ".join(sorted(pair)) for pair in sorted(direct, key=sorted))
            raise ValueError(f"chosen proposals conflict directly: {pairs}")
        disagreements = setpoint_disagreements(
            [a for p in chosen for a in p.actions], {}, self.detector_config.epsilon,
        )
        if disagreements:
            raise ValueError("chosen proposals set different values: " + "; ".join(disagreements))

        chosen_ids = {p.proposal_id for p in chosen}
        others = [p for p in state.proposals if p.proposal_id not in chosen_ids]
        violations = constitution_violations(
            [(p, a) for p in chosen for a in p.actions],
            [(p, a) for p in others for a in p.actions],
        )
        if violations:
            raise ValueError("choice violates the constitution: " + "; ".join(violations))

        text = f"Human choice by {approver}: {', '.join(p.proposal_id for p in chosen)}"
        if rationale:
            text += f" ({rationale})"
        return Decision.create(
            state.request_id,
            DecisionType.APPROVED,
            revision=live.revision + 1,
            approved_actions=[a for p in chosen for a in p.actions],
            rejected_actions=[a for p in others for a in p.actions],
            rationale=text,
            confidence=min(p.confidence for p in chosen),
            human_approval_required=True,
            human_approval_status=HumanApprovalStatus.APPROVED.value,
            source=DecisionSource.HUMAN.value,
            supersedes=live.decision_id,
            approver=approver,
        )

    @staticmethod
    def _log_decision(log: StructuredLogger, decision: Decision) -> None:
        log.on_decision(
            decision.decision_id,
            decision.decision_type,
            decision.source,
            len(decision.approved_actions),
            len(decision.rejected_actions),
            decision.human_approval_required,
        )
