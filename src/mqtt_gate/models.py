"""
Data Models for the Gate Wire Protocol.

Defines the payloads exchanged between gate clients and the gate device,
the topic layout, and the MQTT envelope used to publish them.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
import json
from typing import Any, Dict, Optional

from enum import Enum

from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

# --- Topics ---

CONTROL_TOPIC = "gate/control"          # command requests (client -> device)
STATUS_TOPIC = "gate/status"            # heartbeat + device presence
CLIENTS_TOPIC = "gate/clients"          # client presence / Will target
RESPONSE_TOPIC_PREFIX = "gate/responses/"


def response_topic(session_id: str) -> str:
    """Reply address for commands issued by the given session."""
    return f"{RESPONSE_TOPIC_PREFIX}{session_id}"


def session_id_from_response_topic(topic: str) -> Optional[str]:
    if not topic.startswith(RESPONSE_TOPIC_PREFIX):
        return None
    return topic[len(RESPONSE_TOPIC_PREFIX):] or None


class GateAction(str, Enum):
    FULL = "full"
    PEDESTRIAN = "pedestrian"
    LEFT = "left"
    RIGHT = "right"


class ViewingSide(str, Enum):
    """Which side of the gate the operator is looking from."""
    INSIDE = "inside"
    OUTSIDE = "outside"


def to_wire_action(action: GateAction, side: ViewingSide) -> GateAction:
    """
    Left and right are relative to the operator. The actuator is wired from
    the inside perspective, so an operator standing outside gets them swapped.
    """
    if side is ViewingSide.OUTSIDE:
        if action is GateAction.LEFT:
            return GateAction.RIGHT
        if action is GateAction.RIGHT:
            return GateAction.LEFT
    return action


class CommandStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class PresenceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class PayloadError(ValueError):
    """Raised when an inbound payload cannot be decoded."""


class UnknownActionError(PayloadError):
    """A well-formed command naming an action the gate does not have."""


# --- Base Classes ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""

    def to_dict(self) -> Dict[str, Any]:
        # Optional fields are left off the wire rather than sent as null
        return {key: value for key, value in asdict(self).items() if value is not None}

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        raise NotImplementedError

    @classmethod
    def from_bytes(cls, raw):
        """Decodes a JSON payload, raising PayloadError for anything malformed."""
        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode('utf-8')
            data = json.loads(raw)
        except (TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PayloadError(f"Invalid JSON payload: {e}") from e
        if not isinstance(data, dict):
            raise PayloadError(f"Expected a JSON object, got {type(data).__name__}")
        return cls.from_dict(data)


# --- Payloads ---

@dataclass(frozen=True, kw_only=True)
class GateCommandPayload(BasePayload):
    """Command request published on gate/control."""
    action: GateAction

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateCommandPayload":
        try:
            return cls(action=GateAction(data.get("action")))
        except ValueError as e:
            raise UnknownActionError(f"Unknown action: {data.get('action')!r}") from e


@dataclass(frozen=True, kw_only=True)
class CommandResponsePayload(BasePayload):
    """Response published by the device on the requester's reply topic."""
    status: str
    action: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        # The device historically reported "failed"; anything but success is a failure
        return self.status == CommandStatus.SUCCESS.value

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandResponsePayload":
        status = data.get("status")
        if not isinstance(status, str):
            raise PayloadError("Response payload has no status")
        error = data.get("error")
        return cls(status=status, action=data.get("action"), error=str(error) if error is not None else None)


@dataclass(frozen=True, kw_only=True)
class HeartbeatPayload(BasePayload):
    """Liveness signal from the gate device. `hb` is epoch millis or an ISO-8601 string."""
    hb: Any

    @classmethod
    def now(cls) -> "HeartbeatPayload":
        return cls(hb=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"))

    @property
    def timestamp(self) -> Optional[datetime]:
        return parse_heartbeat_timestamp(self.hb)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HeartbeatPayload":
        if "hb" not in data:
            raise PayloadError("Not a heartbeat payload")
        return cls(hb=data["hb"])


@dataclass(frozen=True, kw_only=True)
class DevicePresencePayload(BasePayload):
    """Online/offline announcement of the gate device on gate/status."""
    status: PresenceStatus = field(default=PresenceStatus.ONLINE)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevicePresencePayload":
        try:
            return cls(status=PresenceStatus(data.get("status")))
        except ValueError as e:
            raise PayloadError(f"Unknown presence status: {data.get('status')!r}") from e


@dataclass(frozen=True, kw_only=True)
class ClientPresencePayload(BasePayload):
    """Presence of one client session on gate/clients (also used as its Will)."""
    session_id: str
    status: PresenceStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"sessionId": self.session_id, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientPresencePayload":
        try:
            return cls(session_id=str(data["sessionId"]), status=PresenceStatus(data.get("status")))
        except (KeyError, ValueError) as e:
            raise PayloadError(f"Invalid client presence payload: {data!r}") from e


def parse_heartbeat_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a heartbeat stamp to an aware datetime.
    The device clock is only trusted for display, so failures return None.
    """
    if isinstance(value, bool) or value is None:
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return None


# --- The "Envelope" (The MQTT Context) ---

@dataclass(frozen=True)
class MQTTMessage:
    """
    Represents a full MQTT message (Envelope + Letter).

    The parameter names match aiomqtt's `Client.publish`, so `to_aiomqtt_args()`
    can be spread directly into it.
    """
    topic: str
    message: BasePayload
    qos: int = 0
    retain: bool = False

    # MQTT v5 Properties
    response_topic: Optional[str] = None
    correlation_data: Optional[bytes] = None

    def properties(self) -> Optional[Properties]:
        if self.response_topic is None and self.correlation_data is None:
            return None
        props = Properties(PacketTypes.PUBLISH)
        if self.response_topic is not None:
            props.ResponseTopic = self.response_topic
        if self.correlation_data is not None:
            props.CorrelationData = self.correlation_data
        return props

    def to_aiomqtt_args(self) -> Dict[str, Any]:
        """Returns dict suitable for client.publish(**args)"""
        return {
            "topic": self.topic,
            "payload": self.message.to_bytes(),
            "qos": self.qos,
            "retain": self.retain,
            **({'properties': self.properties()} if self.properties() is not None else {}),
        }
