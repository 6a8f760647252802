"""
Gate Device MQTT Connection Management.

This module is responsible for:
- Keeping a persistent MQTT v5 connection to the broker, with a retained
  Last Will announcing the device offline.
- Subscribing to gate/control and dispatching each command to the
  `CommandHandler` as its own task.
- Publishing heartbeats and presence on gate/status from an internal queue.
"""
import asyncio
import logging
from typing import Optional, Set

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion, TLSParameters, Will

from mqtt_gate.models import (
    CONTROL_TOPIC,
    STATUS_TOPIC,
    BasePayload,
    DevicePresencePayload,
    HeartbeatPayload,
    MQTTMessage,
    PresenceStatus,
)
from mqtt_gate.server.hardware import GateController
from mqtt_gate.server.rpc_handler import CommandHandler

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 60.0


class GateMQTTManager:
    event_queue: asyncio.Queue
    config: dict
    host: str
    port: int
    _main_task: Optional[asyncio.Task]
    username: Optional[str]
    password: Optional[str]
    client_id: str

    """
    Manages the device's broker connection, command intake and heartbeat.
    """
    def __init__(self, event_queue: asyncio.Queue, controller: GateController, config: dict):
        self.event_queue = event_queue

        # Configuration extraction with defaults
        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        gate_conf = self.config.get('gate', {})
        self.host = mqtt_conf.get('host', 'localhost')
        self.port = int(mqtt_conf.get('port', 1883)) # Must be int
        self.transport = mqtt_conf.get('transport', 'tcp')
        self.websocket_path = mqtt_conf.get('websocket_path', '/mqtt' if self.transport == 'websockets' else None)
        self.use_tls = bool(mqtt_conf.get('tls', False))
        self.keepalive = int(mqtt_conf.get('keepalive', 20))
        self.reconnect_interval = float(mqtt_conf.get('reconnect_interval', 5.0))
        self.heartbeat_interval = float(gate_conf.get('heartbeat_interval', DEFAULT_HEARTBEAT_INTERVAL))

        # Identity & Auth
        self.client_id = mqtt_conf.get('client_id', 'gate-remote')
        self.username = mqtt_conf.get('username', None)
        self.password = mqtt_conf.get('password', None)

        self.command_handler = CommandHandler(controller, self.publish)

        # Internal state
        self._main_task: Optional[asyncio.Task] = None
        self._client: Optional[MQTTClient] = None
        self._handler_tasks: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def start(self):
        """
        Launches the main MQTT loop in the background.
        """
        logger.info(f"Starting Gate MQTT Manager, connecting to {self.host}:{self.port}...")
        self._main_task = asyncio.create_task(self._main_loop())

    async def stop(self):
        """
        Cancels the main loop, which closes the connection.
        """
        if self._main_task:
            logger.info("Stopping Gate MQTT Manager...")
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                logger.info("Gate MQTT Manager stopped gracefully.")
            except Exception as e:
                logger.error(f"Error during MQTT stop: {e}")
            self._main_task = None

    def _build_client(self) -> MQTTClient:
        # If we crash, the broker sets gate/status = offline (retained)
        last_will = Will(
            topic=STATUS_TOPIC,
            payload=DevicePresencePayload(status=PresenceStatus.OFFLINE).to_bytes(),
            qos=1,
            retain=True,
        )
        tls_params = TLSParameters() if self.use_tls else None
        return MQTTClient(self.host,
                          self.port,
                          protocol=ProtocolVersion.V5,
                          identifier=self.client_id,
                          username=self.username,
                          password=self.password,
                          will=last_will,
                          transport=self.transport,
                          websocket_path=self.websocket_path,
                          tls_params=tls_params,
                          keepalive=self.keepalive)

    async def _main_loop(self):
        """
        The persistent connection loop. It reconnects after reconnect_interval
        whenever the connection drops or cannot be established.
        """
        while True:
            try:
                # The connection is ONLY valid inside this block
                async with self._build_client() as client:
                    self._client = client
                    await client.publish(STATUS_TOPIC,
                                         payload=DevicePresencePayload(status=PresenceStatus.ONLINE).to_bytes(),
                                         qos=1,
                                         retain=True)
                    await client.subscribe(CONTROL_TOPIC, qos=1)
                    logger.info(f"Connected to broker as {self.client_id}! Status: online")

                    # Both loops run INSIDE the connection context so they have the active client.
                    publisher = asyncio.create_task(self._publisher_loop(client))
                    heartbeat = asyncio.create_task(self._heartbeat_loop())
                    try:
                        async for message in client.messages:
                            self._dispatch(message)
                    finally:
                        heartbeat.cancel()
                        publisher.cancel()

            except asyncio.CancelledError:
                raise # Let the stop() method handle this
            except MqttError as e:
                logger.error(f"MQTT Connection lost: {e}. Retrying in {self.reconnect_interval}s...")
                await asyncio.sleep(self.reconnect_interval)
            finally:
                self._client = None

    def _dispatch(self, message):
        if str(message.topic) != CONTROL_TOPIC:
            logger.debug(f"Ignoring message on '{message.topic}'")
            return
        # One task per command so a held button never blocks the message loop
        task = asyncio.create_task(self.command_handler.handle_message(message))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _heartbeat_loop(self):
        """Announces liveness right away, then every heartbeat_interval."""
        while True:
            self.publish_event(HeartbeatPayload.now())
            await asyncio.sleep(self.heartbeat_interval)

    async def _publisher_loop(self, client: MQTTClient):
        """The background worker that pushes queued events to the world."""
        while True:
            # 1. Wait for an item from the event_queue
            event: BasePayload = await self.event_queue.get()
            try:
                if isinstance(event, HeartbeatPayload):
                    message = MQTTMessage(topic=STATUS_TOPIC, message=event, qos=1)
                elif isinstance(event, DevicePresencePayload):
                    message = MQTTMessage(topic=STATUS_TOPIC, message=event, qos=1, retain=True)
                else:
                    logger.warning(f"Don't know where to publish {type(event).__name__}; dropped")
                    continue

                # 2. Publish and mark as done
                await client.publish(**message.to_aiomqtt_args())
                logger.debug(f"Published event to topic '{message.topic}': {event.to_json()}")
            finally:
                self.event_queue.task_done()

    async def publish(self, **publish_args):
        """Publishes on the active connection; used for command responses."""
        if self._client is None:
            raise MqttError("Not connected to the broker")
        await self._client.publish(**publish_args)

    def publish_event(self, payload: BasePayload):
        """
        Queues a heartbeat or presence payload for the publisher loop.
        Must be called from the event loop; other threads go through
        loop.call_soon_threadsafe(manager.publish_event, payload).
        """
        logger.debug(f"Request to publish: {payload}")
        self.event_queue.put_nowait(payload)
