"""
Decision Core — Idempotent Message Receiver

receive(envelope, token) is the inbound protocol boundary:

  1. Schema validation (MessageValidationError)
  2. Credential verification against this agent, the sender and the
     message id (AuthenticationError)
  3. Dedup by message_id: the handler runs at most once per id; the
     first reply is recorded and returned verbatim to any duplicate,
     including duplicates arriving concurrently

A handler that raises records nothing, so the sender's retry gets a
fresh attempt.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Protocol

from protocol.auth import TokenVerifier
from protocol.errors import AuthenticationError
from protocol.messages import AgentMessage, validate_message

logger = logging.getLogger("decision_core.protocol.receiver")

Handler = Callable[[AgentMessage], AgentMessage]

_LOCK_STRIPES = 64


class DedupTable(Protocol):
    def get(self, message_id: str) -> dict[str, Any] | None:
        ...

    def put(self, message_id: str, response: dict[str, Any]) -> bool:
        """Record a response; False if one was already recorded."""
        ...


class InMemoryDedupTable:
    """Process-local dedup table. Lost on restart."""

    def __init__(self):
        self._responses: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, message_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._responses.get(message_id)

    def put(self, message_id: str, response: dict[str, Any]) -> bool:
        with self._lock:
            if message_id in self._responses:
                return False
            self._responses[message_id] = response
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._responses)


class MessageReceiver:
    """Validates, authenticates and dedups inbound messages for one agent."""

    def __init__(
        self,
        agent_id: str,
        verifier: TokenVerifier,
        handler: Handler,
        dedup: DedupTable | None = None,
        log_sink: Callable[[AgentMessage, str, str], Any] | None = None,
    ):
        self.agent_id = agent_id
        self.verifier = verifier
        self.handler = handler
        self.dedup = dedup if dedup is not None else InMemoryDedupTable()
        self.log_sink = log_sink
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self.processed = 0
        self.duplicates = 0

    def _lock_for(self, message_id: str) -> threading.Lock:
        return self._locks[hash(message_id) % _LOCK_STRIPES]

    def receive(self, envelope: Any, token: str) -> dict[str, Any]:
        """
        Process one inbound envelope and return the serialized reply.

        Raises:
            MessageValidationError: schema violation
            AuthenticationError: bad credential or misaddressed message
        """
        message = validate_message(envelope)
        if message.recipient_id != self.agent_id:
            raise AuthenticationError(
                f"message addressed to {message.recipient_id}, this is {self.agent_id}"
            )
        self.verifier.verify(token, sender_id=message.sender_id, message_id=message.message_id)

        with self._lock_for(message.message_id):
            recorded = self.dedup.get(message.message_id)
            if recorded is not None:
                self.duplicates += 1
                logger.info(
                    "Duplicate message %s from %s, returning recorded reply",
                    message.message_id, message.sender_id,
                )
                return recorded

            reply = self.handler(message)
            response = reply.to_dict()
            if not self.dedup.put(message.message_id, response):
                # Another process recorded it first; its reply is authoritative
                return self.dedup.get(message.message_id) or response
            self.processed += 1

        if self.log_sink is not None:
            self.log_sink(message, "inbound", "processed")
        return response
