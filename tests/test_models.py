import json
from datetime import datetime, timezone

import pytest

from mqtt_gate.models import (
    CONTROL_TOPIC,
    ClientPresencePayload,
    CommandResponsePayload,
    DevicePresencePayload,
    GateAction,
    GateCommandPayload,
    HeartbeatPayload,
    MQTTMessage,
    PayloadError,
    PresenceStatus,
    UnknownActionError,
    ViewingSide,
    parse_heartbeat_timestamp,
    response_topic,
    session_id_from_response_topic,
    to_wire_action,
)

"""
Wire protocol tests: topic helpers, perspective translation, payload
decoding and the MQTT v5 envelope.
"""


@pytest.mark.parametrize("action, side, expected", [
    (GateAction.LEFT, ViewingSide.INSIDE, GateAction.LEFT),
    (GateAction.RIGHT, ViewingSide.INSIDE, GateAction.RIGHT),
    (GateAction.LEFT, ViewingSide.OUTSIDE, GateAction.RIGHT),
    (GateAction.RIGHT, ViewingSide.OUTSIDE, GateAction.LEFT),
    (GateAction.FULL, ViewingSide.OUTSIDE, GateAction.FULL),
    (GateAction.PEDESTRIAN, ViewingSide.OUTSIDE, GateAction.PEDESTRIAN),
])
def test_to_wire_action(action, side, expected):
    assert to_wire_action(action, side) is expected


def test_response_topic_helpers():
    topic = response_topic("gate_app_1a2b3c4d")
    assert topic == "gate/responses/gate_app_1a2b3c4d"
    assert session_id_from_response_topic(topic) == "gate_app_1a2b3c4d"
    assert session_id_from_response_topic("gate/responses/") is None
    assert session_id_from_response_topic(CONTROL_TOPIC) is None


def test_command_payload_encoding():
    payload = GateCommandPayload(action=GateAction.PEDESTRIAN)
    assert json.loads(payload.to_bytes()) == {"action": "pedestrian"}
    assert GateCommandPayload.from_bytes(b'{"action": "left"}').action is GateAction.LEFT


def test_unknown_action_is_distinguished_from_malformed_json():
    with pytest.raises(UnknownActionError):
        GateCommandPayload.from_bytes(b'{"action": "open_sesame"}')
    with pytest.raises(PayloadError) as exc_info:
        GateCommandPayload.from_bytes(b'{"action": ')
    assert not isinstance(exc_info.value, UnknownActionError)
    with pytest.raises(PayloadError):
        GateCommandPayload.from_bytes(b'["full"]')


@pytest.mark.parametrize("raw, ok, error", [
    (b'{"status": "success", "action": "full"}', True, None),
    (b'{"status": "failure", "error": "relay stuck"}', False, "relay stuck"),
    (b'{"status": "failed"}', False, None),
])
def test_command_response_decoding(raw, ok, error):
    response = CommandResponsePayload.from_bytes(raw)
    assert response.ok is ok
    assert response.error == error


def test_command_response_without_status_is_rejected():
    with pytest.raises(PayloadError):
        CommandResponsePayload.from_bytes(b'{"action": "full"}')


def test_optional_fields_are_left_off_the_wire():
    assert CommandResponsePayload(status="success").to_dict() == {"status": "success"}


def test_heartbeat_payloads():
    hb = HeartbeatPayload.now()
    assert hb.hb.endswith("Z")
    assert hb.timestamp.tzinfo is not None
    assert HeartbeatPayload.from_bytes(b'{"hb": 0}').timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(PayloadError):
        HeartbeatPayload.from_bytes(b'{"status": "online"}')


@pytest.mark.parametrize("value, expected", [
    (1714564800000, datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
    ("1714564800000", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
    ("2024-05-01T12:00:00Z", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
    ("2024-05-01T14:00:00+02:00", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
    ("yesterday", None),
    (None, None),
    (True, None),
])
def test_parse_heartbeat_timestamp(value, expected):
    assert parse_heartbeat_timestamp(value) == expected


def test_presence_payloads():
    assert json.loads(DevicePresencePayload().to_bytes()) == {"status": "online"}
    assert DevicePresencePayload.from_bytes(b'{"status": "offline"}').status is PresenceStatus.OFFLINE
    with pytest.raises(PayloadError):
        DevicePresencePayload.from_bytes(b'{"status": "sleeping"}')

    presence = ClientPresencePayload(session_id="gate_app_42", status=PresenceStatus.OFFLINE)
    assert json.loads(presence.to_bytes()) == {"sessionId": "gate_app_42", "status": "offline"}
    assert ClientPresencePayload.from_bytes(presence.to_bytes()) == presence


def test_mqtt_message_carries_v5_properties():
    message = MQTTMessage(
        topic=CONTROL_TOPIC,
        message=GateCommandPayload(action=GateAction.FULL),
        qos=1,
        response_topic="gate/responses/gate_app_1",
        correlation_data=b"000001-abcdef",
    )
    args = message.to_aiomqtt_args()

    assert args["topic"] == CONTROL_TOPIC
    assert args["qos"] == 1
    assert args["retain"] is False
    assert json.loads(args["payload"]) == {"action": "full"}
    assert args["properties"].ResponseTopic == "gate/responses/gate_app_1"
    assert args["properties"].CorrelationData == b"000001-abcdef"


def test_mqtt_message_without_properties():
    args = MQTTMessage(topic="gate/status", message=DevicePresencePayload(), retain=True).to_aiomqtt_args()
    assert "properties" not in args
    assert args["retain"] is True
