"""
Decision Core — Transports

A transport performs ONE delivery attempt of a signed envelope and
returns the peer's raw reply. Retries, dedup and validation live in
the client and receiver; transports only map wire failures onto the
protocol error taxonomy:

    401 / 403                → AuthenticationError   (not retried)
    400 / 422                → ProtocolError         (not retried)
    429 / 5xx / unreachable  → TransientDeliveryError (retried)
    timeout                  → TimeoutError          (retried)

InProcessTransport routes to MessageReceiver instances registered in
the same process (tests, single-binary deployments). HttpTransport
POSTs to {endpoint}/a2a/receive with an Authorization: Bearer header.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from typing import Any, Callable, Protocol

from protocol.errors import (
    AuthenticationError, MessageValidationError, ProtocolError, TransientDeliveryError,
)

logger = logging.getLogger("decision_core.protocol.transport")


class Transport(Protocol):
    def deliver(
        self, recipient_id: str, envelope: dict[str, Any], token: str, timeout: float,
    ) -> dict[str, Any]:
        ...


# ═══════════════════════════════════════════════════════════════════
# In-Process
# ═══════════════════════════════════════════════════════════════════

class InProcessTransport:
    """Recipient id → receiver registry. Calls are synchronous."""

    def __init__(self):
        self._receivers: dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, agent_id: str, receiver: Any) -> None:
        """receiver: anything with receive(envelope, token) -> dict."""
        with self._lock:
            self._receivers[agent_id] = receiver

    def unregister(self, agent_id: str) -> None:
        with self._lock:
            self._receivers.pop(agent_id, None)

    def deliver(
        self, recipient_id: str, envelope: dict[str, Any], token: str, timeout: float,
    ) -> dict[str, Any]:
        with self._lock:
            receiver = self._receivers.get(recipient_id)
        if receiver is None:
            raise TransientDeliveryError(f"no route to {recipient_id}")

        try:
            return receiver.receive(envelope, token)
        except (AuthenticationError, ProtocolError, TimeoutError, ConnectionError):
            raise
        except Exception as e:
            # The peer failed while handling; equivalent to an HTTP 500
            raise TransientDeliveryError(f"{recipient_id} failed: {e}", status_code=500) from e


# ═══════════════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════════════

def _default_http_client(
    url: str,
    payload: dict,
    headers: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> dict[str, Any]:
    """
    Default HTTP POST client using urllib.
    Returns {"status_code": int, "body": dict | None, "error": str}.
    Timeouts raise TimeoutError.
    """
    data = json.dumps(payload).encode("utf-8")
    all_headers = {"Content-Type": "application/json"}
    if headers:
        all_headers.update(headers)

    req = urllib.request.Request(url, data=data, headers=all_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
            return {"status_code": resp.status, "body": json.loads(raw) if raw else None}
    except urllib.error.HTTPError as e:
        return {"status_code": e.code, "body": None, "error": str(e)}
    except urllib.error.URLError as e:
        if isinstance(e.reason, (socket.timeout, TimeoutError)):
            raise TimeoutError(f"POST {url} timed out after {timeout}s") from e
        return {"status_code": 0, "body": None, "error": str(e.reason)}
    except (socket.timeout, TimeoutError) as e:
        raise TimeoutError(f"POST {url} timed out after {timeout}s") from e


class HttpTransport:
    """POST {endpoint}/a2a/receive for each recipient in the endpoint map."""

    def __init__(
        self,
        endpoints: dict[str, str],
        http_client: Callable[..., dict[str, Any]] | None = None,
    ):
        self.endpoints = {k: v.rstrip("/") for k, v in endpoints.items()}
        self._http_client = http_client or _default_http_client

    def deliver(
        self, recipient_id: str, envelope: dict[str, Any], token: str, timeout: float,
    ) -> dict[str, Any]:
        endpoint = self.endpoints.get(recipient_id)
        if not endpoint:
            raise TransientDeliveryError(f"no endpoint configured for {recipient_id}")

        url = f"{endpoint}/a2a/receive"
        result = self._http_client(
            url,
            {"message": envelope},
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
        )
        status = result.get("status_code", 0)
        error = result.get("error", "")

        if status in (401, 403):
            raise AuthenticationError(f"{recipient_id} rejected credential ({status})")
        if status in (400, 422):
            raise MessageValidationError([f"{recipient_id} rejected message ({status}): {error}"])
        if status == 0 or status == 429 or status >= 500:
            raise TransientDeliveryError(
                f"POST {url} failed ({status or 'unreachable'}): {error}", status_code=status,
            )
        if status >= 400:
            raise ProtocolError(f"{recipient_id} returned HTTP {status}: {error}")

        body = result.get("body")
        if not isinstance(body, dict):
            raise ProtocolError(f"{recipient_id} returned a non-object body")
        return body
