"""
Pytest Configuration and Fixtures for the mqtt_gate project.

This module provides:
- gpiozero's MockFactory so relay tests run on any development machine.
- An in-memory stand-in for `aiomqtt.Client` so the connection logic can be
  exercised without a broker.
"""

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, List, Optional

import pytest
import pytest_asyncio
from aiomqtt import MqttError
from gpiozero import Device
from gpiozero.pins.mock import MockFactory
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from mqtt_gate.client.connection import ConnectionManager
from mqtt_gate.client.credentials import InMemoryCredentialStore

# --- Configure GPIO Zero to use MockFactory ---
# Any DigitalOutputDevice(pin) created by the code under test gets a mock pin.
# Read https://gpiozero.readthedocs.io/en/stable/api_pins.html for more details on pin factories.
_mock_factory_instance = MockFactory()
Device.pin_factory = _mock_factory_instance


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture(autouse=True)
def reset_mock_gpio_pins_before_each_test():
    """
    Resets the MockFactory's pins before each test to ensure a clean state.
    """
    _mock_factory_instance.reset()


# --- Fake MQTT transport ---

_DISCONNECT = object()


@dataclass
class FakePublish:
    topic: str
    payload: Any
    qos: int
    retain: bool
    properties: Optional[Properties]

    def json(self):
        return json.loads(self.payload)


@dataclass
class FakeMessage:
    topic: str
    payload: bytes
    properties: Optional[Properties] = None


class FakeMQTTClient:
    """Implements the slice of aiomqtt.Client the project uses."""

    def __init__(self, broker: "FakeBroker", hostname: str, port: int, **kwargs):
        self.broker = broker
        self.hostname = hostname
        self.port = port
        self.kwargs = kwargs
        self.identifier = kwargs.get("identifier")
        self.will = kwargs.get("will")
        self.subscriptions: List[str] = []
        self.published: List[FakePublish] = []
        self.connected = False
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        if self.broker.connect_gate is not None:
            await self.broker.connect_gate.wait()
        if self.broker.connect_errors:
            raise self.broker.connect_errors.pop(0)
        self.connected = True
        self.broker.active += 1
        self.broker.max_active = max(self.broker.max_active, self.broker.active)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.connected:
            self.connected = False
            self.broker.active -= 1
        self.closed = True
        return False

    async def subscribe(self, topic, qos=0, **kwargs):
        self.subscriptions.append(topic)

    async def publish(self, topic, payload=None, qos=0, retain=False, properties=None, **kwargs):
        if self.broker.publish_gate is not None:
            await self.broker.publish_gate.wait()
        if not self.connected:
            raise MqttError("Not connected")
        if self.broker.publish_error is not None:
            raise self.broker.publish_error
        record = FakePublish(topic, payload, qos, retain, properties)
        self.published.append(record)
        self.broker.published.append(record)

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            item = await self._incoming.get()
            if item is _DISCONNECT:
                raise MqttError("Disconnected during message iteration")
            yield item

    # --- test controls ---

    def inject(self, topic: str, payload, correlation_data: Optional[bytes] = None, response_topic: Optional[str] = None):
        properties = None
        if correlation_data is not None or response_topic is not None:
            properties = Properties(PacketTypes.PUBLISH)
            if correlation_data is not None:
                properties.CorrelationData = correlation_data
            if response_topic is not None:
                properties.ResponseTopic = response_topic
        if isinstance(payload, dict):
            payload = json.dumps(payload).encode("utf-8")
        self._incoming.put_nowait(FakeMessage(topic, payload, properties))

    def drop_connection(self):
        self._incoming.put_nowait(_DISCONNECT)

    def published_on(self, topic: str) -> List[FakePublish]:
        return [p for p in self.published if p.topic == topic]


class FakeBroker:
    """Hands out FakeMQTTClients and lets tests script connect behaviour."""

    def __init__(self):
        self.clients: List[FakeMQTTClient] = []
        self.published: List[FakePublish] = []
        self.connect_errors: List[BaseException] = []
        self.connect_gate: Optional[asyncio.Event] = None
        self.publish_error: Optional[BaseException] = None
        self.publish_gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    def client_factory(self, hostname, port=1883, **kwargs):
        client = FakeMQTTClient(self, hostname, port, **kwargs)
        self.clients.append(client)
        return client

    @property
    def last_client(self) -> FakeMQTTClient:
        return self.clients[-1]


FAST_CLIENT_CONFIG = {
    "retry_backoff": 0.01,
    "reconnect_watchdog": 0.5,
    "liveness_poll_interval": 0.05,
    "presence_timeout": 0.1,
}


@pytest.fixture
def fake_broker():
    return FakeBroker()


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest_asyncio.fixture
async def make_manager(fake_broker, credential_store):
    """
    Builds ConnectionManagers wired to the fake broker with short timers.
    Every manager is logged out afterwards so no session outlives its test.
    """
    managers = []

    def factory(**client_overrides):
        config = {
            "mqtt": {"host": "broker.test", "port": 8883},
            "client": {**FAST_CLIENT_CONFIG, **client_overrides},
        }
        manager = ConnectionManager(config, credential_store, client_factory=fake_broker.client_factory)
        managers.append(manager)
        return manager

    yield factory

    # Release a held connect or publish so teardown cannot block on it
    for gate in (fake_broker.connect_gate, fake_broker.publish_gate):
        if gate is not None:
            gate.set()
    for manager in managers:
        await asyncio.wait_for(manager.logout(), timeout=2)


async def _wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until
