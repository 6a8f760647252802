import json
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from mqtt_gate.models import GateAction
from mqtt_gate.server.hardware import GateController
from mqtt_gate.server.rpc_handler import CommandHandler

"""
MQTT v5 RPC Request Handler and Response Publisher.
Tests the functionality of the rpc_handler.py module, ensuring correct parsing
of incoming gate commands, handing them to the controller, and publishing
MQTT v5 responses with the correlation data echoed.
"""

REPLY_TO = "gate/responses/gate_app_1a2b3c4d"
TOKEN = b"000001-0123456789ab"


def make_message(payload, response_topic=REPLY_TO, correlation_data=TOKEN):
    properties = Properties(PacketTypes.PUBLISH)
    if response_topic:
        properties.ResponseTopic = response_topic
    if correlation_data:
        properties.CorrelationData = correlation_data
    if isinstance(payload, dict):
        payload = json.dumps(payload).encode()
    return SimpleNamespace(topic="gate/control", payload=payload, properties=properties)


@pytest.fixture
def mock_controller(mocker):
    """
    Mocks the GateController; submit() resolves immediately.
    """
    controller = mocker.MagicMock(spec=GateController)
    controller.submit = AsyncMock(return_value=None)
    return controller


@pytest.fixture
def publish():
    return AsyncMock()


@pytest.fixture
def handler(mock_controller, publish):
    return CommandHandler(mock_controller, publish)


def published_response(publish):
    kwargs = publish.await_args.kwargs
    return kwargs, json.loads(kwargs["payload"])


@pytest.mark.asyncio
async def test_successful_press_is_acknowledged(handler, mock_controller, publish):
    await handler.handle_message(make_message({"action": "full"}))

    mock_controller.submit.assert_awaited_once_with(GateAction.FULL)
    publish.assert_awaited_once()
    kwargs, body = published_response(publish)
    assert kwargs["topic"] == REPLY_TO
    assert kwargs["qos"] == 1
    assert kwargs["properties"].CorrelationData == TOKEN
    assert body == {"status": "success", "action": "full"}


@pytest.mark.asyncio
async def test_hardware_failure_is_reported(handler, mock_controller, publish):
    mock_controller.submit.side_effect = RuntimeError("relay stuck")

    await handler.handle_message(make_message({"action": "pedestrian"}))

    _, body = published_response(publish)
    assert body == {"status": "failure", "action": "pedestrian", "error": "relay stuck"}


@pytest.mark.asyncio
async def test_unknown_action_gets_a_failure_response(handler, mock_controller, publish):
    await handler.handle_message(make_message({"action": "open_sesame"}))

    mock_controller.submit.assert_not_awaited()
    kwargs, body = published_response(publish)
    assert body["status"] == "failure"
    assert "open_sesame" in body["error"]
    assert kwargs["properties"].CorrelationData == TOKEN


@pytest.mark.asyncio
async def test_malformed_command_is_dropped(handler, mock_controller, publish):
    await handler.handle_message(make_message(b"{not json"))

    mock_controller.submit.assert_not_awaited()
    publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_command_without_response_topic_is_executed_silently(handler, mock_controller, publish):
    await handler.handle_message(make_message({"action": "left"}, response_topic=None, correlation_data=None))

    mock_controller.submit.assert_awaited_once_with(GateAction.LEFT)
    publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_error_does_not_escape(handler, publish):
    publish.side_effect = ConnectionError("broker went away")

    await handler.handle_message(make_message({"action": "right"}))

    publish.assert_awaited_once()
