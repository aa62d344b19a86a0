"""
Decision Core — Reasoning Oracle Adapters

The oracle is an opaque, untrusted capability:

    score(oracle_request: dict) -> dict   (raw decision, validated by the policy engine)

Any failure raises OracleUnavailable; the policy engine then uses its
deterministic fallback.

  NullOracle      no oracle configured; always unavailable
  ProtocolOracle  sends a `data` message to a remote oracle agent and
                  expects a `decision` reply
  LLMOracle       asks a LangChain chat model for a JSON decision
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol

from coordinator.errors import OracleUnavailable
from engine.retry import RetriesExhausted, RetryPolicy, call_with_retry
from protocol.client import ProtocolClient
from protocol.errors import AuthenticationError, DeliveryFailed, ProtocolError
from protocol.messages import MessagePriority, MessageType

logger = logging.getLogger("decision_core.oracle")


class Oracle(Protocol):
    def score(self, oracle_request: dict[str, Any]) -> dict[str, Any]:
        ...


class NullOracle:
    def score(self, oracle_request: dict[str, Any]) -> dict[str, Any]:
        raise OracleUnavailable("no reasoning oracle configured")


class ProtocolOracle:
    """Remote oracle reached through the message protocol."""

    def __init__(self, client: ProtocolClient, recipient_id: str, timeout: float | None = None):
        self.client = client
        self.recipient_id = recipient_id
        self.timeout = timeout

    def score(self, oracle_request: dict[str, Any]) -> dict[str, Any]:
        message = self.client.message(
            self.recipient_id,
            MessageType.DATA,
            {"kind": "score_request", "request": oracle_request},
            conversation_id=oracle_request.get("conversation_id") or oracle_request["request_id"],
            priority=MessagePriority.HIGH,
        )
        try:
            reply = self.client.send(self.recipient_id, message, timeout=self.timeout)
        except (DeliveryFailed, AuthenticationError, ProtocolError) as e:
            raise OracleUnavailable(f"{self.recipient_id}: {e}") from e

        if reply.type != MessageType.DECISION.value:
            raise OracleUnavailable(f"{self.recipient_id} replied {reply.type}, expected decision")
        decision = reply.payload.get("decision")
        if not isinstance(decision, dict):
            raise OracleUnavailable(f"{self.recipient_id} reply carries no decision object")
        return decision


# ═══════════════════════════════════════════════════════════════════
# LLM Oracle
# ═══════════════════════════════════════════════════════════════════

SYSTEM_PROMPT = """You arbitrate between control proposals for a cement kiln line.
The constitution ranks objectives strictly: safety > quality > emissions > cost.
Never approve an action on a variable while rejecting an action on the same
variable that serves a higher-ranked objective.

Answer with ONE JSON object and nothing else:
{"decision_type": "approved" | "modified" | "rejected" | "deferred",
 "approved_actions": [{"proposal_id": str, "control_variable": str, "proposed_value": number}],
 "rejected_actions": [{"proposal_id": str, "control_variable": str}],
 "modifications": {control_variable: number},
 "rationale": str,
 "confidence": number between 0 and 1,
 "human_approval_required": bool}
"""


def extract_json(text: str) -> dict[str, Any]:
    """Pull the first JSON object out of a model response."""
    fenced = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()

    start = text.find("{")
    if start == -1:
        raise ValueError(f"No JSON object found in response: {text[:200]}")

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if c == "\\" and in_string:
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return json.loads(text[start:i + 1])
    raise ValueError("Unterminated JSON object in response")


class LLMOracle:
    """Chat-model oracle. The model is built lazily through engine.llm."""

    def __init__(
        self,
        llm: Any = None,
        model: str = "default",
        provider: str | None = None,
        policy: RetryPolicy | None = None,
    ):
        self._llm = llm
        self.model = model
        self.provider = provider
        self.policy = policy or RetryPolicy(max_attempts=2, backoff_base=0.5)

    @property
    def llm(self):
        if self._llm is None:
            from engine.llm import create_llm
            self._llm = create_llm(model=self.model, provider=self.provider, temperature=0.0)
        return self._llm

    def score(self, oracle_request: dict[str, Any]) -> dict[str, Any]:
        from langchain_core.messages import HumanMessage, SystemMessage

        messages = [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(content=json.dumps(oracle_request, indent=2, default=str)),
        ]
        try:
            llm = self.llm
            result = call_with_retry(
                lambda: llm.invoke(messages),
                self.policy,
                step_name=f"oracle:{self.model}",
            )
        except RetriesExhausted as e:
            raise OracleUnavailable(str(e)) from e
        except EnvironmentError as e:
            raise OracleUnavailable(f"no LLM provider: {e}") from e

        content = result.value.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )
        try:
            return extract_json(content)
        except ValueError as e:
            raise OracleUnavailable(f"model answer is not JSON: {e}") from e


def create_oracle(cfg: dict[str, Any] | None, client: ProtocolClient | None = None) -> Oracle:
    """
    Config format:
        oracle:
          kind: protocol        # protocol | llm | none
          recipient: reasoning-oracle
          model: default
          provider: openai
    """
    cfg = cfg or {}
    kind = cfg.get("kind", "none")
    if kind == "protocol":
        if client is None:
            raise ValueError("protocol oracle requires a ProtocolClient")
        return ProtocolOracle(client, cfg.get("recipient", "reasoning-oracle"))
    if kind == "llm":
        return LLMOracle(model=cfg.get("model", "default"), provider=cfg.get("provider"))
    if kind == "none":
        return NullOracle()
    raise ValueError(f"Unknown oracle kind: {kind}")
