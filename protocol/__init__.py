"""
Decision Core - Message Protocol

Authenticated, idempotent request/response messaging between the
coordinator and its peers.
"""

from protocol.auth import TokenSigner, TokenVerifier, load_signing_key
from protocol.client import ProtocolClient
from protocol.errors import (
    AuthenticationError, DeliveryFailed, MessageValidationError, ProtocolError,
    TransientDeliveryError,
)
from protocol.messages import (
    PROTOCOL_VERSION, AgentMessage, MessagePriority, MessageType,
    derived_message_id, new_message_id, validate_message,
)
from protocol.receiver import InMemoryDedupTable, MessageReceiver
from protocol.transport import HttpTransport, InProcessTransport
