"""
Decision Core — Proposal Collector

Fans one request_proposal message out to every proposer concurrently
and joins up to a deadline. Late, unreachable, unauthenticated or
malformed proposers become typed ProposerErrors; they never abort the
round. A proposer may abstain by replying {"proposal": null}.

Output order follows the proposer list, not arrival order.
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any

from coordinator.errors import ProposerTimeout
from coordinator.types import Proposal, ProposerError, ProposerRef, Trigger, WorkflowRequest
from protocol.client import ProtocolClient
from protocol.errors import AuthenticationError, DeliveryFailed, ProtocolError
from protocol.messages import MessagePriority, MessageType

logger = logging.getLogger("decision_core.collector")

DEFAULT_COLLECT_TIMEOUT = 30.0


def priority_for(request: WorkflowRequest) -> MessagePriority:
    if request.trigger == Trigger.EMERGENCY.value:
        return MessagePriority.CRITICAL
    if request.trigger == Trigger.QUALITY_DEVIATION.value:
        return MessagePriority.HIGH
    return MessagePriority.NORMAL


class ProposalCollector:
    """Concurrent request/response round against a list of proposers."""

    def __init__(self, client: ProtocolClient, max_workers: int = 8):
        self.client = client
        # Long-lived pool; a proposer that never answers holds a thread, not the round
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="collector",
        )

    def collect(
        self,
        request: WorkflowRequest,
        proposers: list[ProposerRef],
        timeout: float = DEFAULT_COLLECT_TIMEOUT,
    ) -> tuple[list[Proposal], list[ProposerError]]:
        futures = {
            ref.proposer_id: self._pool.submit(self._request_one, request, ref, timeout)
            for ref in proposers
        }
        concurrent.futures.wait(futures.values(), timeout=timeout)

        proposals: list[Proposal] = []
        errors: list[ProposerError] = []
        seen_ids: set[str] = set()

        for ref in proposers:
            future = futures[ref.proposer_id]
            if not future.done():
                future.cancel()
                errors.append(ProposerError(
                    ref.proposer_id, "timeout", str(ProposerTimeout(ref.proposer_id, timeout)),
                ))
                continue

            outcome = self._outcome(ref, future)
            if isinstance(outcome, ProposerError):
                errors.append(outcome)
            elif outcome is not None:
                if outcome.proposal_id in seen_ids:
                    errors.append(ProposerError(
                        ref.proposer_id, "invalid_proposal",
                        f"duplicate proposal_id {outcome.proposal_id}",
                    ))
                    continue
                seen_ids.add(outcome.proposal_id)
                proposals.append(outcome)

        for err in errors:
            logger.warning(
                "Proposer %s excluded from %s: %s (%s)",
                err.proposer_id, request.request_id, err.reason, err.detail,
            )
        logger.info(
            "Collected %d proposal(s) for %s from %d proposer(s)",
            len(proposals), request.request_id, len(proposers),
        )
        return proposals, errors

    def _outcome(self, ref: ProposerRef, future: concurrent.futures.Future) -> Any:
        try:
            return future.result()
        except DeliveryFailed as e:
            return ProposerError(ref.proposer_id, "delivery_failed", str(e))
        except AuthenticationError as e:
            return ProposerError(ref.proposer_id, "authentication", str(e))
        except (ProtocolError, ValueError, KeyError, TypeError) as e:
            return ProposerError(ref.proposer_id, "invalid_proposal", str(e))

    def _request_one(
        self, request: WorkflowRequest, ref: ProposerRef, timeout: float,
    ) -> Proposal | ProposerError | None:
        message = self.client.message(
            ref.proposer_id,
            MessageType.REQUEST_PROPOSAL,
            {"request": request.to_dict(), "capabilities": list(ref.capabilities)},
            conversation_id=request.conversation_id,
            priority=priority_for(request),
        )
        reply = self.client.send(ref.proposer_id, message, timeout=timeout)

        if reply.type == MessageType.ERROR.value:
            return ProposerError(
                ref.proposer_id, "delivery_failed", str(reply.payload.get("error", "error reply")),
            )
        if reply.type != MessageType.PROPOSAL.value:
            return ProposerError(
                ref.proposer_id, "invalid_proposal", f"unexpected reply type {reply.type}",
            )

        body = reply.payload.get("proposal")
        if body is None:
            logger.info("Proposer %s abstained on %s", ref.proposer_id, request.request_id)
            return None
        return Proposal.from_proposer(body, request.request_id, ref.proposer_id)

    def shutdown(self):
        self._pool.shutdown(wait=False)
