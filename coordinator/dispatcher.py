"""
Decision Core — Decision Dispatcher

One `command` message per approved action to the command executor,
carrying the decision_id as the authorization token. Command message
ids are derived from (decision_id, action index), so a re-dispatch
after a crash reuses them and the executor's dedup absorbs it.

Failures are recorded per command and never alter the decision.
"""

from __future__ import annotations

import logging
import time

from coordinator.errors import CommandExecutionFailed
from coordinator.types import CommandResult, CommandStatus, Decision, stable_id
from protocol.client import ProtocolClient
from protocol.errors import AuthenticationError, DeliveryFailed, ProtocolError
from protocol.messages import MessagePriority, MessageType, derived_message_id, is_number

logger = logging.getLogger("decision_core.dispatcher")


class DecisionDispatcher:
    def __init__(self, client: ProtocolClient, executor_id: str = "command-executor"):
        self.client = client
        self.executor_id = executor_id

    def dispatch(self, decision: Decision, conversation_id: str) -> list[CommandResult]:
        results = []
        for index, action in enumerate(decision.executable_actions):
            command_id = stable_id("cmd", decision.decision_id, index)
            try:
                executed = self._send_command(decision, conversation_id, command_id, index, action)
                results.append(CommandResult(
                    command_id=command_id,
                    decision_id=decision.decision_id,
                    control_variable=action.control_variable,
                    status=CommandStatus.SUCCESS.value,
                    executed_value=executed,
                ))
            except CommandExecutionFailed as e:
                logger.warning("%s", e)
                results.append(CommandResult(
                    command_id=command_id,
                    decision_id=decision.decision_id,
                    control_variable=action.control_variable,
                    status=CommandStatus.FAILED.value,
                    error=e.reason,
                ))
        return results

    def _send_command(self, decision, conversation_id, command_id, index, action) -> float:
        message = self.client.message(
            self.executor_id,
            MessageType.COMMAND,
            {
                "command_id": command_id,
                "decision_id": decision.decision_id,
                "request_id": decision.request_id,
                "action": {
                    "control_variable": action.control_variable,
                    "current_value": action.current_value,
                    "proposed_value": action.proposed_value,
                },
            },
            conversation_id=conversation_id,
            message_id=derived_message_id(decision.decision_id, str(index)),
            priority=MessagePriority.HIGH,
            issued_at=time.time(),
        )
        try:
            reply = self.client.send(self.executor_id, message)
        except (DeliveryFailed, AuthenticationError, ProtocolError) as e:
            raise CommandExecutionFailed(command_id, action.control_variable, str(e)) from e

        payload = reply.payload
        if reply.type == MessageType.ERROR.value or payload.get("status") != CommandStatus.SUCCESS.value:
            reason = payload.get("error") or f"executor reported {payload.get('status', reply.type)}"
            raise CommandExecutionFailed(command_id, action.control_variable, str(reason))

        executed = payload.get("executed_value", action.proposed_value)
        return float(executed) if is_number(executed) else action.proposed_value
