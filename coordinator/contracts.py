"""
Decision Core — Typed Contracts

TypedDict definitions for every dict that crosses a module boundary
between the runtime, the CLI and the HTTP API. These serve three purposes:

  1. EDITOR: Type checkers (mypy/pyright) catch field mismatches at edit time
  2. RUNTIME: validate() functions catch mismatches at startup or test time
  3. DOCUMENTATION: Single source of truth for what each dict must contain

Usage:
    from coordinator.contracts import PendingApproval, validate

    approval: PendingApproval = {...}
    validate(approval, PendingApproval, "list_pending_approvals")
"""

from __future__ import annotations

import os
from typing import Any, TypedDict, get_type_hints


# ═══════════════════════════════════════════════════════════════════
# list_pending_approvals() → cmd_pending(), GET /v1/approvals
# ═══════════════════════════════════════════════════════════════════

class PendingApproval(TypedDict):
    request_id: str
    conversation_id: str
    trigger: str
    decision_id: str
    decision_type: str
    rationale: str
    confidence: float
    proposal_ids: list[str]
    paused_at: float


# ═══════════════════════════════════════════════════════════════════
# store.get_communication_log() → cmd_log(), GET /v1/workflows/{id}/log
# ═══════════════════════════════════════════════════════════════════

class CommunicationLogEntry(TypedDict):
    message_id: str
    conversation_id: str
    correlation_id: str
    sender_id: str
    recipient_id: str
    message_type: str
    priority: str
    direction: str
    status: str
    payload: dict[str, Any]
    created_at: float


# ═══════════════════════════════════════════════════════════════════
# stats() return value
# ═══════════════════════════════════════════════════════════════════

class CoordinatorStats(TypedDict, total=False):
    window_days: int
    total: int
    by_status: dict[str, int]
    pending_approvals: int
    avg_latency_s: float | None
    success_rate: float | None
    decisions_by_source: dict[str, int]


# ═══════════════════════════════════════════════════════════════════
# Runtime validation
# ═══════════════════════════════════════════════════════════════════

def validate(data: dict, contract: type, context: str = "") -> list[str]:
    """
    Validate a dict against a TypedDict contract at runtime.

    Returns list of missing required keys. Empty list = valid.
    """
    hints = get_type_hints(contract)
    required = getattr(contract, "__required_keys__", set(hints.keys()))

    missing = []
    for key in sorted(required):
        if key not in data:
            missing.append(f"{context}: missing required key '{key}'")
    return missing


def validate_all(items: list[dict], contract: type, context: str = "") -> list[str]:
    """Validate a list of dicts against a TypedDict."""
    errors = []
    for i, item in enumerate(items):
        errors.extend(validate(item, contract, f"{context}[{i}]"))
    return errors


# ═══════════════════════════════════════════════════════════════════
# Dev-mode boundary assertion (opt-in via CC_STRICT=1)
# ═══════════════════════════════════════════════════════════════════

_STRICT = "CC_STRICT" in os.environ


class ContractViolation(Exception):
    """Raised in strict mode when a dict doesn't match its TypedDict contract."""
    pass


def assert_contract(data: dict, contract: type, context: str = ""):
    """
    In strict mode, raise immediately on contract violation.
    In normal mode, no-op.
    """
    if not _STRICT:
        return
    errors = validate(data, contract, context)
    if errors:
        raise ContractViolation(
            f"Contract violation at {context}:\n  " + "\n  ".join(errors)
        )


def assert_contracts(items: list[dict], contract: type, context: str = ""):
    """assert_contract() for every dict in a list."""
    if not _STRICT:
        return
    errors = validate_all(items, contract, context)
    if errors:
        raise ContractViolation(
            f"Contract violation at {context}:\n  " + "\n  ".join(errors)
        )
