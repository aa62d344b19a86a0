"""
Decision Core — Message Protocol Errors

Every failure the protocol layer surfaces to a caller. Transports map
wire-level failures onto these so the client and the receiver behave
the same whether a peer is in-process or across HTTP.
"""

from __future__ import annotations


class ProtocolError(Exception):
    """A peer replied with something that is not a valid answer to our message."""
    pass


class MessageValidationError(ProtocolError):
    """An envelope failed schema validation at the protocol boundary."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid message")


class AuthenticationError(Exception):
    """Bearer credential missing, invalid, expired or naming the wrong party."""
    pass


class TransientDeliveryError(ConnectionError):
    """
    A single delivery attempt failed in a way a retry may fix
    (peer unreachable, 5xx, rate limited). Subclasses ConnectionError
    so the default retry policy treats it as retryable.
    """

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)


class DeliveryFailed(Exception):
    """Every delivery attempt for a message failed."""

    def __init__(self, recipient_id: str, message_id: str, attempts: int, last_error: Exception | None):
        self.recipient_id = recipient_id
        self.message_id = message_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"delivery of {message_id} to {recipient_id} failed after "
            f"{attempts} attempt(s): {last_error}"
        )
