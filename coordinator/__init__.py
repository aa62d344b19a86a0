"""
Decision Core — Workflow Coordinator

Collects control proposals from specialist agents, detects conflicts,
resolves them under a fixed priority constitution, and dispatches one
authoritative decision per request. Every transition is checkpointed so
a crashed instance resumes where it left off.

Usage:
    from coordinator.runtime import Coordinator
    from coordinator.types import WorkflowRequest

    coord = Coordinator.from_config()
    state = coord.start(WorkflowRequest.create("quality_deviation", {"free_lime": 2.1}))
"""

from coordinator.types import (
    Conflict,
    ConflictType,
    ControlAction,
    Decision,
    DecisionSource,
    DecisionType,
    Proposal,
    ProposerError,
    ProposerRef,
    Trigger,
    WorkflowRequest,
    WorkflowState,
    WorkflowStatus,
)
from coordinator.store import CheckpointStore
from coordinator.runtime import Coordinator
