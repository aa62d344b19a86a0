"""
Decision Core — Protocol Client

send(recipient, message) is the only way the coordinator talks to a
peer. Per call:

  1. Validate the outbound envelope (same rules the peer applies)
  2. Sign a fresh bearer credential per attempt, same message_id
  3. Deliver through the transport with a fixed per-attempt timeout,
     retrying transient failures with exponential backoff. A peer that
     exhausts its retries too often trips its circuit breaker and is
     not contacted again until the breaker resets
  4. Validate the reply and check it echoes our correlation_id

Authentication and protocol errors are never retried. Exhausted
retries raise DeliveryFailed; nothing is swallowed.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any, Callable

from engine.retry import (
    CircuitBreaker, CircuitBreakerOpen, RetriesExhausted, RetryPolicy, call_with_retry,
)
from protocol.auth import TokenSigner
from protocol.errors import (
    AuthenticationError, DeliveryFailed, MessageValidationError, ProtocolError,
)
from protocol.messages import AgentMessage, validate_message
from protocol.transport import Transport

logger = logging.getLogger("decision_core.protocol.client")

DEFAULT_TIMEOUT_SECONDS = 30.0

# (message, direction, status) -> bool ; e.g. CheckpointStore.append_communication_log
LogSink = Callable[[AgentMessage, str, str], Any]


class ProtocolClient:
    """Authenticated, retried request/response sends for one agent."""

    def __init__(
        self,
        agent_id: str,
        transport: Transport,
        signer: TokenSigner,
        policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        log_sink: LogSink | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self.agent_id = agent_id
        self.transport = transport
        self.signer = signer
        # Retrying cannot fix a bad credential or a malformed exchange
        self.policy = dataclasses.replace(
            policy or RetryPolicy(),
            non_retryable_exceptions=(AuthenticationError, ProtocolError),
        )
        self.timeout = timeout
        self.log_sink = log_sink
        self._sleep_fn = sleep_fn
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()

    def breaker(self, recipient_id: str) -> CircuitBreaker:
        """Get or create the circuit breaker for one peer."""
        with self._breakers_lock:
            if recipient_id not in self._breakers:
                self._breakers[recipient_id] = CircuitBreaker.from_policy(self.policy)
            return self._breakers[recipient_id]

    def message(
        self,
        recipient_id: str,
        type: str,
        payload: dict[str, Any],
        conversation_id: str,
        **kwargs,
    ) -> AgentMessage:
        """Convenience constructor stamping this agent as sender."""
        return AgentMessage(
            sender_id=self.agent_id,
            recipient_id=recipient_id,
            type=type,
            payload=payload,
            conversation_id=conversation_id,
            **kwargs,
        )

    def send(self, recipient_id: str, message: AgentMessage, timeout: float | None = None) -> AgentMessage:
        """
        Deliver a message and return the validated reply.

        Raises:
            MessageValidationError: the outbound message is malformed
            AuthenticationError: the peer rejected our credential
            ProtocolError: the reply is malformed or answers another message
            DeliveryFailed: every attempt failed transiently, or the peer's
                circuit breaker is open
        """
        if message.recipient_id != recipient_id:
            raise MessageValidationError(
                [f"recipient_id {message.recipient_id!r} does not match {recipient_id!r}"]
            )
        if message.sender_id != self.agent_id:
            raise MessageValidationError(
                [f"sender_id {message.sender_id!r} is not this agent ({self.agent_id})"]
            )
        envelope = message.to_dict()
        validate_message(envelope)
        per_attempt = timeout or self.timeout

        def attempt() -> dict[str, Any]:
            token = self.signer.sign(self.agent_id, recipient_id, message.message_id)
            return self.transport.deliver(recipient_id, envelope, token, per_attempt)

        try:
            result = call_with_retry(
                attempt,
                self.policy,
                step_name=f"send:{recipient_id}:{message.type}",
                breaker=self.breaker(recipient_id),
                sleep_fn=self._sleep_fn,
            )
        except RetriesExhausted as e:
            self._log(message, "outbound", "failed")
            raise DeliveryFailed(recipient_id, message.message_id, e.attempts, e.last_error) from e
        except CircuitBreakerOpen as e:
            self._log(message, "outbound", "failed")
            raise DeliveryFailed(recipient_id, message.message_id, 0, e) from e
        except AuthenticationError:
            self._log(message, "outbound", "rejected")
            raise
        except ProtocolError:
            self._log(message, "outbound", "rejected")
            raise

        self._log(message, "outbound", "delivered")

        try:
            reply = validate_message(result.value)
        except MessageValidationError as e:
            raise ProtocolError(f"invalid reply from {recipient_id}: {e}") from e
        if reply.correlation_id != message.correlation_id:
            raise ProtocolError(
                f"reply from {recipient_id} has correlation_id {reply.correlation_id}, "
                f"expected {message.correlation_id}"
            )
        if reply.sender_id != recipient_id:
            raise ProtocolError(f"reply claims sender {reply.sender_id}, expected {recipient_id}")

        self._log(reply, "inbound", "received")
        logger.debug(
            "Sent %s %s → %s (attempts=%d, reply=%s)",
            message.type, message.message_id, recipient_id, result.attempts, reply.type,
        )
        return reply

    def _log(self, message: AgentMessage, direction: str, status: str) -> None:
        if self.log_sink is not None:
            self.log_sink(message, direction, status)
