"""
Decision Core — Message Envelope and Schema Validation

AgentMessage is the wire unit between the coordinator and its peers
(proposers, reasoning oracle, command executor). Every envelope that
crosses the protocol boundary, in either direction, goes through
validate_message() exactly once; everything behind the boundary
receives already-validated AgentMessage instances.

Messages are write-once. A retried send reuses the same message_id,
which receivers treat as an idempotency key.
"""

from __future__ import annotations

import enum
import json
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from protocol.errors import MessageValidationError


PROTOCOL_VERSION = "1.0"

AGENT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*[a-z0-9]$")
MESSAGE_ID_PATTERN = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$")
CONTROL_VARIABLE_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

MAX_PAYLOAD_BYTES = 1024 * 1024
MAX_STRING_FIELD = 1000
MAX_ACTIONS = 100

# Namespace for message ids derived from stable inputs (command dispatch)
_MESSAGE_NAMESPACE = uuid.UUID("6f1c2b7e-3d4a-5e9f-8a1b-2c3d4e5f6a7b")


class MessageType(str, enum.Enum):
    PROPOSAL = "proposal"
    REQUEST_PROPOSAL = "request_proposal"
    DECISION = "decision"
    STATUS = "status"
    DATA = "data"
    COMMAND = "command"
    ERROR = "error"


class MessagePriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


def new_message_id() -> str:
    return str(uuid.uuid4())


def derived_message_id(*parts: str) -> str:
    """Stable message id for a send that must dedup across process restarts."""
    return str(uuid.uuid5(_MESSAGE_NAMESPACE, "|".join(parts)))


@dataclass
class AgentMessage:
    """One protocol envelope. Immutable by convention once sent."""
    sender_id: str
    recipient_id: str
    type: str
    payload: dict[str, Any]
    conversation_id: str
    message_id: str = field(default_factory=new_message_id)
    correlation_id: str = ""
    protocol_version: str = PROTOCOL_VERSION
    priority: str = MessagePriority.NORMAL.value
    issued_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if isinstance(self.type, MessageType):
            self.type = self.type.value
        if isinstance(self.priority, MessagePriority):
            self.priority = self.priority.value
        if not self.correlation_id:
            self.correlation_id = self.message_id

    def reply(self, type: str | MessageType, payload: dict[str, Any]) -> AgentMessage:
        """Build the response to this message, echoing its correlation id."""
        return AgentMessage(
            sender_id=self.recipient_id,
            recipient_id=self.sender_id,
            type=type,
            payload=payload,
            conversation_id=self.conversation_id,
            correlation_id=self.correlation_id,
            priority=self.priority,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "correlation_id": self.correlation_id,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "type": self.type,
            "payload": self.payload,
            "protocol_version": self.protocol_version,
            "priority": self.priority,
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentMessage:
        """Build from a dict that already passed validate_message()."""
        return cls(
            sender_id=data["sender_id"],
            recipient_id=data["recipient_id"],
            type=data["type"],
            payload=data["payload"],
            conversation_id=data["conversation_id"],
            message_id=data["message_id"],
            correlation_id=data.get("correlation_id") or data["message_id"],
            protocol_version=data.get("protocol_version", PROTOCOL_VERSION),
            priority=data.get("priority", MessagePriority.NORMAL.value),
            issued_at=float(data.get("issued_at") or time.time()),
        )


# ═══════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════

_REQUIRED_FIELDS = (
    "message_id", "conversation_id", "sender_id", "recipient_id", "type", "payload",
)
_TYPES = {t.value for t in MessageType}
_PRIORITIES = {p.value for p in MessagePriority}


def is_number(value: Any) -> bool:
    """True for finite ints and floats; bools are not numbers here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def validate_actions(actions: Any, where: str = "actions") -> list[str]:
    """Check a list of {control_variable, current_value, proposed_value} dicts."""
    if not isinstance(actions, list):
        return [f"{where} must be a list"]
    if len(actions) > MAX_ACTIONS:
        return [f"{where} has {len(actions)} entries (max {MAX_ACTIONS})"]
    errors = []
    for i, action in enumerate(actions):
        errors.extend(validate_action(action, f"{where}[{i}]"))
    return errors


def validate_action(action: Any, where: str = "action") -> list[str]:
    if not isinstance(action, dict):
        return [f"{where} must be an object"]
    errors = []
    variable = action.get("control_variable")
    if not isinstance(variable, str) or not CONTROL_VARIABLE_PATTERN.match(variable):
        errors.append(f"{where}.control_variable is invalid: {variable!r}")
    for key in ("current_value", "proposed_value"):
        if not is_number(action.get(key)):
            errors.append(f"{where}.{key} must be numeric")
    return errors


def _validate_payload(msg_type: str, payload: dict[str, Any]) -> list[str]:
    """Type-specific payload rules."""
    if msg_type == MessageType.PROPOSAL.value:
        if "proposal" not in payload:
            return ["proposal payload must carry a 'proposal' key (null to abstain)"]
        proposal = payload["proposal"]
        if proposal is None:
            return []
        if not isinstance(proposal, dict):
            return ["payload.proposal must be an object or null"]
        return validate_actions(proposal.get("actions"), "payload.proposal.actions")
    if msg_type == MessageType.COMMAND.value:
        errors = []
        if not isinstance(payload.get("decision_id"), str) or not payload.get("decision_id"):
            errors.append("command payload requires decision_id")
        errors.extend(validate_action(payload.get("action"), "payload.action"))
        return errors
    return []


def validate_message(data: Any) -> AgentMessage:
    """
    Validate a raw envelope and return the AgentMessage.

    Raises:
        MessageValidationError listing every rule the envelope breaks.
    """
    if not isinstance(data, dict):
        raise MessageValidationError(["message must be an object"])

    errors: list[str] = []
    for name in _REQUIRED_FIELDS:
        if data.get(name) in (None, ""):
            errors.append(f"missing required field: {name}")
    if errors:
        raise MessageValidationError(errors)

    for name in ("message_id", "correlation_id"):
        value = data.get(name)
        if value and (not isinstance(value, str) or not MESSAGE_ID_PATTERN.match(value)):
            errors.append(f"{name} is not a lowercase UUID: {value!r}")

    for name in ("sender_id", "recipient_id"):
        value = data[name]
        if not isinstance(value, str) or not AGENT_ID_PATTERN.match(value):
            errors.append(f"{name} is not a valid agent id: {value!r}")

    conversation_id = data["conversation_id"]
    if not isinstance(conversation_id, str) or len(conversation_id) > MAX_STRING_FIELD:
        errors.append("conversation_id must be a string of at most 1000 characters")

    if data["type"] not in _TYPES:
        errors.append(f"unknown message type: {data['type']!r}")

    priority = data.get("priority", MessagePriority.NORMAL.value)
    if priority not in _PRIORITIES:
        errors.append(f"unknown priority: {priority!r}")

    version = data.get("protocol_version", PROTOCOL_VERSION)
    if version != PROTOCOL_VERSION:
        errors.append(f"unsupported protocol version: {version!r}")

    issued_at = data.get("issued_at")
    if issued_at is not None and not is_number(issued_at):
        errors.append("issued_at must be a unix timestamp")

    payload = data["payload"]
    if not isinstance(payload, dict):
        errors.append("payload must be an object")
    else:
        try:
            size = len(json.dumps(payload).encode("utf-8"))
        except (TypeError, ValueError):
            errors.append("payload is not JSON-serializable")
        else:
            if size > MAX_PAYLOAD_BYTES:
                errors.append(f"payload too large: {size} bytes (max {MAX_PAYLOAD_BYTES})")
            elif data["type"] in _TYPES:
                errors.extend(_validate_payload(data["type"], payload))

    if errors:
        raise MessageValidationError(errors)
    return AgentMessage.from_dict(data)
