"""
Decision Core — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, worker, and tests.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from coordinator.types import Trigger


class JobStatus(str, enum.Enum):
    """Status of a run in the worker backend."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowSubmission:
    """POST /v1/workflows request body."""
    trigger: str
    context: dict[str, Any] = field(default_factory=dict)
    conversation_id: str = ""
    request_id: str = ""

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> WorkflowSubmission:
        return cls(
            trigger=body.get("trigger", ""),
            context=body.get("context", {}),
            conversation_id=body.get("conversation_id") or "",
            request_id=body.get("request_id") or "",
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        valid = sorted(t.value for t in Trigger)
        if self.trigger not in valid:
            errors.append(f"trigger is required and must be one of {valid}")
        if not isinstance(self.context, dict):
            errors.append("context must be an object")
        if not isinstance(self.conversation_id, str):
            errors.append("conversation_id must be a string")
        if not isinstance(self.request_id, str):
            errors.append("request_id must be a string")
        return errors


@dataclass
class WorkflowAccepted:
    """POST /v1/workflows response, returned before the run starts."""
    request_id: str
    conversation_id: str
    status: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalAction:
    """POST /v1/workflows/{id}/approval body."""
    approve: bool
    approver: str
    rationale: str = ""
    approved_proposal_ids: list[str] | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> ApprovalAction:
        return cls(
            approve=body.get("approve"),
            approver=body.get("approver", ""),
            rationale=body.get("rationale", ""),
            approved_proposal_ids=body.get("approved_proposal_ids"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.approve, bool):
            errors.append("approve is required and must be a boolean")
        if not self.approver or not isinstance(self.approver, str):
            errors.append("approver is required and must be a string")
        if not isinstance(self.rationale, str):
            errors.append("rationale must be a string")
        ids = self.approved_proposal_ids
        if ids is not None and (
            not isinstance(ids, list) or not all(isinstance(i, str) for i in ids)
        ):
            errors.append("approved_proposal_ids must be a list of strings")
        return errors


@dataclass
class AbortAction:
    """POST /v1/workflows/{id}/abort body."""
    reason: str = ""

    def validate(self) -> list[str]:
        if not isinstance(self.reason, str):
            return ["reason must be a string"]
        return []
