"""
MQTT v5 RPC Request Handler and Response Publisher.

This module is responsible for:
- Parsing MQTT v5 command messages from gate/control, extracting the
  action, response topic and correlation data.
- Handing the press to the `GateController`'s Command Queue.
- Publishing success or failure responses back to the requesting
  client with its correlation data echoed.
"""
import logging
from typing import Any, Awaitable, Callable

from mqtt_gate.models import (
    CommandResponsePayload,
    CommandStatus,
    GateCommandPayload,
    MQTTMessage,
    PayloadError,
    UnknownActionError,
)
from mqtt_gate.server.hardware import GateController

logger = logging.getLogger(__name__)

PublishMethod = Callable[..., Awaitable[Any]]


class CommandHandler:
    """
    Handles incoming MQTT v5 gate commands and publishes responses.
    """
    def __init__(self, controller: GateController, publish: PublishMethod):
        self.controller = controller
        self.publish = publish

    async def handle_message(self, message):
        """
        Callback for one message on gate/control.
        """
        properties = message.properties
        reply_to = getattr(properties, "ResponseTopic", None)
        correlation_data = getattr(properties, "CorrelationData", None)

        try:
            command = GateCommandPayload.from_bytes(message.payload)
        except UnknownActionError as e:
            logger.error(f"Rejecting command: {e}")
            if reply_to:
                await self._respond(reply_to, correlation_data, CommandResponsePayload(
                    status=CommandStatus.FAILURE.value, error=str(e)))
            return
        except PayloadError as e:
            logger.error(f"Dropping malformed command: {e}")
            return

        action = command.action
        logger.info(f"Received command '{action.value}' (reply to {reply_to or '-'})")
        try:
            await self.controller.submit(action)
            response = CommandResponsePayload(status=CommandStatus.SUCCESS.value, action=action.value)
        except Exception as e:
            logger.error(f"GPIO action error for '{action.value}': {e}")
            response = CommandResponsePayload(status=CommandStatus.FAILURE.value, action=action.value, error=str(e))

        if reply_to:
            await self._respond(reply_to, correlation_data, response)

    async def _respond(self, reply_to: str, correlation_data, response: CommandResponsePayload):
        message = MQTTMessage(
            topic=reply_to,
            message=response,
            qos=1,
            correlation_data=bytes(correlation_data) if correlation_data else None,
        )
        try:
            await self.publish(**message.to_aiomqtt_args())
            logger.debug(f"Published response to '{reply_to}': {response.to_json()}")
        except Exception as e:
            logger.error(f"Error publishing acknowledgment to '{reply_to}': {e}")
