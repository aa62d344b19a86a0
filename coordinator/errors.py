"""
Decision Core — Coordinator Error Taxonomy

Recovery policy by error:

    AuthenticationError       reject, do not process
    DeliveryFailed            retried by the client, then surfaced
    ProposerTimeout           tolerated; proposer excluded from the round
    StoreUnavailable          fatal to the current step; resume later
    ConcurrentModification    losing writer reloads and stops
    DecisionConflict          a second live decision for a request
    OracleUnavailable         deterministic fallback
    PolicyInvariantViolation  deterministic fallback
    CommandExecutionFailed    recorded per command
    IllegalStateTransition    programming or operator error
"""

from __future__ import annotations

from protocol.errors import (  # noqa: F401  re-exported
    AuthenticationError, DeliveryFailed, MessageValidationError, ProtocolError,
)


class ProposerTimeout(Exception):
    def __init__(self, proposer_id: str, timeout: float):
        self.proposer_id = proposer_id
        self.timeout = timeout
        super().__init__(f"{proposer_id} did not respond within {timeout}s")


class StoreUnavailable(Exception):
    """The checkpoint store could not complete a read or write."""
    pass


class ConcurrentModification(Exception):
    """A compare-and-swap on a workflow state lost to another writer."""

    def __init__(self, request_id: str, expected_version: int):
        self.request_id = request_id
        self.expected_version = expected_version
        super().__init__(
            f"workflow {request_id} changed concurrently (expected version {expected_version})"
        )


class DecisionConflict(Exception):
    """Recording this decision would leave two non-superseded decisions."""
    pass


class WorkflowNotFound(LookupError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"workflow not found: {request_id}")


class OracleUnavailable(Exception):
    """The reasoning oracle failed, timed out, or returned an unusable answer."""
    pass


class PolicyInvariantViolation(Exception):
    """An oracle decision breaks the constitution or references unknown data."""

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))


class CommandExecutionFailed(Exception):
    def __init__(self, command_id: str, control_variable: str, reason: str):
        self.command_id = command_id
        self.control_variable = control_variable
        self.reason = reason
        super().__init__(f"command {command_id} ({control_variable}) failed: {reason}")


class IllegalStateTransition(Exception):
    def __init__(self, request_id: str, from_status: str, to_status: str):
        self.request_id = request_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"{request_id}: illegal transition {from_status} → {to_status}")
