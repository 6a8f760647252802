"""
MQTT v5 Client Connection and Command Lifecycle Management.

This module provides:
- `ConnectionManager`, which owns the single session with the broker and
  drives it through its state machine.
- MQTT v5 Request/Response for gate commands: correlation tokens, a
  per-session reply topic, and matching of out-of-order responses.
- Bounded automatic reconnection triggered by host lifecycle signals, with a
  guard against overlapping attempts and a watchdog for stuck ones.
"""
import asyncio
import logging
import secrets
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from aiomqtt import Client as MQTTClient, ProtocolVersion, Will

from mqtt_gate.client.correlation import CommandRegistry
from mqtt_gate.client.credentials import CredentialStore, clear_credentials, load_credentials, save_credentials
from mqtt_gate.client.errors import (
    GateClientError,
    MissingCredentialsError,
    PublishFailure,
    SetupFailure,
    TransportFailure,
    classify_failure,
)
from mqtt_gate.client.events import EventEmitter, EventListener, EventType
from mqtt_gate.client.lifecycle import LifecycleSignal
from mqtt_gate.client.liveness import DEFAULT_HEARTBEAT_TIMEOUT, LivenessMonitor
from mqtt_gate.models import (
    CLIENTS_TOPIC,
    CONTROL_TOPIC,
    RESPONSE_TOPIC_PREFIX,
    STATUS_TOPIC,
    ClientPresencePayload,
    CommandResponsePayload,
    DevicePresencePayload,
    GateAction,
    GateCommandPayload,
    HeartbeatPayload,
    MQTTMessage,
    PayloadError,
    PresenceStatus,
    ViewingSide,
    response_topic,
    session_id_from_response_topic,
    to_wire_action,
)

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"   # connecting, but not started by the user
    LOGGING_OUT = "logging_out"


@dataclass(eq=False)
class Session:
    """One connection attempt chain. Each attempt gets a fresh session_id."""
    username: str
    password: str = field(repr=False)
    remember: bool = False
    automatic: bool = False
    session_id: str = ""
    connected: bool = False
    disconnect_reason: Optional[str] = None
    outcome: Optional[asyncio.Future] = field(default=None, repr=False)


class ConnectionManager:
    """
    Owns the one MQTT session of a gate client.

    All state lives here and is only mutated from the event loop, either by
    the public methods or by the session task's handlers. Public methods never
    raise for operational failures: they update `status`, `last_error` and
    `state`, and emit a `ClientEvent`.
    """
    config: dict
    host: str
    port: int
    state: ConnectionState
    status: str
    last_error: Optional[GateClientError]
    remember: bool
    viewing_side: ViewingSide

    def __init__(self,
                 config: dict,
                 credential_store: CredentialStore,
                 on_status: Optional[Callable[[str], None]] = None,
                 client_factory: Callable[..., Any] = MQTTClient,
                 clock: Callable[[], float] = time.monotonic):
        # Configuration extraction with defaults
        self.config = config or {}
        mqtt_conf = self.config.get('mqtt', {})
        client_conf = self.config.get('client', {})
        self.host = mqtt_conf.get('host', 'localhost')
        self.port = int(mqtt_conf.get('port', 1883))
        self.transport = mqtt_conf.get('transport', 'tcp')
        self.websocket_path = mqtt_conf.get('websocket_path', '/mqtt' if self.transport == 'websockets' else None)
        self.use_tls = bool(mqtt_conf.get('tls', False))
        self.keepalive = int(mqtt_conf.get('keepalive', 30))
        self.connect_timeout = float(mqtt_conf.get('timeout', 3))
        self.client_id_prefix = mqtt_conf.get('client_id_prefix', 'gate_app_')

        self.max_connect_attempts = max(1, int(client_conf.get('max_connect_attempts', 3)))
        self.retry_backoff = float(client_conf.get('retry_backoff', 2.0))
        self.reconnect_watchdog = float(client_conf.get('reconnect_watchdog', 10.0))
        self.liveness_poll_interval = float(client_conf.get('liveness_poll_interval', 5.0))
        self.presence_timeout = float(client_conf.get('presence_timeout', 1.0))
        command_timeout = client_conf.get('command_timeout', 30.0)
        self.command_timeout = float(command_timeout) if command_timeout is not None else None

        # Collaborators
        self.credential_store = credential_store
        self._client_factory = client_factory
        self._on_status = on_status
        self._events = EventEmitter()
        self.registry = CommandRegistry(clock=clock)
        self.liveness = LivenessMonitor(
            timeout=float(client_conf.get('heartbeat_timeout', DEFAULT_HEARTBEAT_TIMEOUT)),
            clock=clock,
            on_change=self._on_liveness_change,
        )

        # Internal state
        self.state = ConnectionState.DISCONNECTED
        self.status = "Enter credentials"
        self.last_error = None
        self.viewing_side = ViewingSide.INSIDE
        self._session: Optional[Session] = None
        self._session_task: Optional[asyncio.Task] = None
        self._session_lock = asyncio.Lock()
        self._client = None
        self._logged_out = False
        self._reconnect_outstanding = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._abandon_task: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._liveness_task: Optional[asyncio.Task] = None

        try:
            self.remember = load_credentials(credential_store).remember
        except Exception as e:
            logger.error(f"Could not read stored credentials: {e}")
            self.remember = False

    # --- Introspection ---

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def session_id(self) -> Optional[str]:
        return self._session.session_id if self._session else None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def gate_online(self) -> bool:
        return self.liveness.online

    @property
    def reconnect_outstanding(self) -> bool:
        return self._reconnect_outstanding

    def add_listener(self, listener: EventListener) -> None:
        self._events.add_listener(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._events.remove_listener(listener)

    # --- User operations ---

    async def connect(self, username: str, password: str, remember: Optional[bool] = None) -> bool:
        """
        Starts a user-initiated session, replacing whatever session exists.

        Returns True once the broker accepted the session and False on any
        failure; the reason is in `last_error` and `status`.
        """
        if remember is not None:
            self.remember = remember
        if not username or not password:
            self._report_error(MissingCredentialsError())
            return False
        self._logged_out = False
        return await self._start_session(username, password, automatic=False)

    async def logout(self) -> None:
        """
        Ends the session from any state, including mid-connect. Lifecycle
        signals stay ignored until the next explicit connect.
        """
        logger.info("Logging out...")
        self._logged_out = True
        self._cancel_reconnect()
        self._set_state(ConnectionState.LOGGING_OUT)

        # A connect issued meanwhile waits for the lock and starts afterwards
        async with self._session_lock:
            session, client = self._session, self._client
            if session is not None and session.connected and client is not None:
                # Graceful notice; the Will only fires on unclean loss
                await self._publish_presence(client, session, PresenceStatus.OFFLINE)
            await self._teardown("logout")

            self._stop_liveness_polling()
            self.liveness.reset()
            if not self.remember:
                self._forget_credentials()
            self._set_state(ConnectionState.DISCONNECTED)
            self._set_status("Logged out")

    async def send_command(self, action) -> Optional[str]:
        """
        Publishes a gate command and returns its correlation token, or None if
        it could not be sent. The gate's answer arrives later as a status
        update and a COMMAND_RESOLVED event.
        """
        try:
            action = GateAction(action)
        except ValueError:
            self._report_error(PublishFailure(f"unknown action {action!r}"), status=f"Unknown action: {action}")
            return None

        session, client = self._session, self._client
        if self.state is not ConnectionState.CONNECTED or session is None or client is None:
            self._report_error(PublishFailure("not connected"), status="Not connected")
            return None

        wire_action = to_wire_action(action, self.viewing_side)
        reply_to = response_topic(session.session_id)
        token = self.registry.issue(action, reply_to=reply_to)
        message = MQTTMessage(
            topic=CONTROL_TOPIC,
            message=GateCommandPayload(action=wire_action),
            qos=1,
            response_topic=reply_to,
            correlation_data=token.encode('utf-8'),
        )
        self._events.emit(EventType.COMMAND_ISSUED, token=token, action=action.value, wire_action=wire_action.value)

        try:
            await client.publish(**message.to_aiomqtt_args())
        except asyncio.CancelledError:
            self.registry.discard(token)
            raise
        except Exception as e:
            self.registry.discard(token)
            if session is not self._session:
                logger.debug(f"Publish of {action.value} interrupted by session teardown: {e}")
                return None
            self._report_error(PublishFailure(str(e)), status=f"Error: {e}")
            return None

        logger.info(f"Sent command {action.value} (wire: {wire_action.value}, token {token})")
        if token in self.registry:
            # The response can beat the PUBACK; don't overwrite its outcome
            self._set_status(f"Sent: {action.value}")
        return token

    def set_remember(self, remember: bool) -> None:
        """Turning remember off forgets stored credentials immediately."""
        self.remember = remember
        if self._session is not None:
            self._session.remember = remember
        if not remember:
            self._forget_credentials()

    def toggle_viewing_side(self) -> ViewingSide:
        if self.viewing_side is ViewingSide.INSIDE:
            self.viewing_side = ViewingSide.OUTSIDE
        else:
            self.viewing_side = ViewingSide.INSIDE
        logger.info(f"Viewing side is now {self.viewing_side.value}")
        return self.viewing_side

    # --- Lifecycle-driven reconnection ---

    def request_reconnect(self, signal: LifecycleSignal = LifecycleSignal.APP_BECAME_VISIBLE) -> bool:
        """
        Single entry point for every host lifecycle signal.

        Starts one automatic session if the client is disconnected, remembered
        credentials are complete, and no attempt is outstanding. Returns
        whether an attempt was started.
        """
        if self._logged_out:
            logger.debug(f"Logged out; ignoring {signal.value}")
            return False
        if self._reconnect_outstanding:
            logger.debug(f"Reconnect already outstanding; ignoring {signal.value}")
            return False
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug(f"Ignoring {signal.value} while {self.state.value}")
            return False
        try:
            stored = load_credentials(self.credential_store)
        except Exception as e:
            self._report_error(SetupFailure(f"credential store unavailable: {e}"), status=None)
            return False
        if not stored.remember or not stored.complete:
            logger.debug(f"No remembered credentials; {signal.value} does not reconnect")
            return False

        self._reconnect_outstanding = True
        self.remember = True
        logger.info(f"Reconnecting after {signal.value}")
        self._events.emit(EventType.RECONNECT_REQUESTED, signal=signal.value)
        self._set_state(ConnectionState.RECONNECTING)
        self._set_status("Reconnecting...")
        self._arm_watchdog()
        self._reconnect_task = asyncio.create_task(
            self._start_session(stored.username, stored.password, automatic=True)
        )
        return True

    def _arm_watchdog(self):
        self._cancel_watchdog()
        loop = asyncio.get_running_loop()
        self._watchdog = loop.call_later(self.reconnect_watchdog, self._on_watchdog_expired)

    def _cancel_watchdog(self):
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None

    def _cancel_reconnect(self):
        self._reconnect_outstanding = False
        self._cancel_watchdog()

    def _on_watchdog_expired(self):
        self._watchdog = None
        if not self._reconnect_outstanding:
            return
        logger.warning(f"Reconnect did not complete within {self.reconnect_watchdog}s; giving up quietly")
        self._reconnect_outstanding = False
        self.registry.drop_all()
        self._set_state(ConnectionState.DISCONNECTED)
        self._set_status("Disconnected")
        session = self._session
        if session is not None and session.automatic and not session.connected:
            self._abandon_task = asyncio.create_task(self._abandon_session(session))

    async def _abandon_session(self, session: Session):
        """Tears down a stuck automatic session and waits until its client is gone."""
        async with self._session_lock:
            # A newer session or a late success since the watchdog fired wins
            if self._session is session and not session.connected:
                await self._teardown("reconnect watchdog")

    # --- Session management ---

    async def _start_session(self, username: str, password: str, automatic: bool) -> bool:
        async with self._session_lock:
            if automatic and not self._reconnect_outstanding:
                # Superseded by a user connect, a logout, or the watchdog
                return False
            if not automatic:
                self._cancel_reconnect()
            await self._teardown("superseded")

            session = Session(username=username, password=password, remember=self.remember, automatic=automatic)
            session.outcome = asyncio.get_running_loop().create_future()
            self._session = session
            self._set_state(ConnectionState.RECONNECTING if automatic else ConnectionState.CONNECTING)
            self._session_task = asyncio.create_task(self._run_session(session))
        return await session.outcome

    async def _teardown(self, reason: str):
        """Cancels the live session, if any, and waits until it is gone."""
        session, task = self._session, self._session_task
        self._session = None
        self._session_task = None
        self.registry.drop_all()
        if session is not None:
            session.disconnect_reason = reason
            logger.debug(f"Tearing down session {session.session_id or '<unassigned>'} ({reason})")
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._client = None

    async def _run_session(self, session: Session):
        """Drives one session through its connect attempts until it ends."""
        attempt = 0
        try:
            while True:
                attempt += 1
                try:
                    await self._run_attempt(session)
                    failure: GateClientError = TransportFailure("connection closed by broker")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    failure = classify_failure(e)

                if session.connected:
                    self._session_closed(session, failure)
                    return
                if failure.retryable and attempt < self.max_connect_attempts:
                    logger.warning(f"Connect attempt {attempt}/{self.max_connect_attempts} failed: {failure}. "
                                   f"Retrying in {self.retry_backoff}s...")
                    self._set_state(ConnectionState.RECONNECTING)
                    await asyncio.sleep(self.retry_backoff)
                    continue
                self._session_failed(session, failure)
                return
        finally:
            if session.outcome is not None and not session.outcome.done():
                session.outcome.set_result(False)

    async def _run_attempt(self, session: Session):
        session.session_id = self._new_session_id()
        self._set_state(ConnectionState.CONNECTING)
        self._set_status("Reconnecting..." if session.automatic else "Connecting...")
        try:
            client = self._build_client(session)
        except Exception as e:
            raise SetupFailure(f"{type(e).__name__}: {e}") from e

        logger.info(f"Connecting to {self.host}:{self.port} as {session.session_id}...")
        try:
            # The connection is ONLY valid inside this block
            async with client:
                self._client = client
                await client.subscribe(STATUS_TOPIC, qos=1)
                await client.subscribe(response_topic(session.session_id), qos=1)
                self._session_connected(session)
                await self._publish_presence(client, session, PresenceStatus.ONLINE)
                if session.outcome is not None and not session.outcome.done():
                    session.outcome.set_result(True)
                async for message in client.messages:
                    self._handle_message(session, message)
        finally:
            if self._client is client:
                self._client = None

    def _build_client(self, session: Session):
        # If this instance vanishes uncleanly, the broker announces it on gate/clients
        last_will = Will(
            topic=CLIENTS_TOPIC,
            payload=ClientPresencePayload(session_id=session.session_id, status=PresenceStatus.OFFLINE).to_bytes(),
            qos=1,
            retain=False,
        )
        return self._client_factory(
            self.host,
            self.port,
            protocol=ProtocolVersion.V5,
            identifier=session.session_id,
            username=session.username,
            password=session.password,
            will=last_will,
            transport=self.transport,
            websocket_path=self.websocket_path,
            tls_context=ssl.create_default_context() if self.use_tls else None,
            keepalive=self.keepalive,
            timeout=self.connect_timeout,
        )

    def _new_session_id(self) -> str:
        return f"{self.client_id_prefix}{secrets.token_hex(4)}"

    def _session_connected(self, session: Session):
        session.connected = True
        self._cancel_watchdog()
        self._reconnect_outstanding = False
        self.last_error = None
        if session.remember:
            try:
                save_credentials(self.credential_store, session.username, session.password, remember=True)
            except Exception as e:
                logger.error(f"Could not persist credentials: {e}")
        self._set_state(ConnectionState.CONNECTED)
        self._set_status("Connected")
        self._start_liveness_polling()
        logger.info(f"Connected to {self.host}:{self.port} as {session.session_id}")

    def _session_failed(self, session: Session, failure: GateClientError):
        session.disconnect_reason = failure.user_message
        if self._session is session:
            self._session = None
            self._session_task = None
        self.registry.drop_all()
        if self.state is ConnectionState.LOGGING_OUT:
            return
        if session.automatic:
            self._cancel_reconnect()
            # Background attempts are not worth an error banner
            self._report_error(failure, status="Disconnected")
        else:
            self._report_error(failure, status=f"Connection failed: {failure.user_message}")
        self._set_state(ConnectionState.DISCONNECTED)

    def _session_closed(self, session: Session, failure: GateClientError):
        session.disconnect_reason = failure.user_message
        if self._session is session:
            self._session = None
            self._session_task = None
        self.registry.drop_all()
        if self.state is ConnectionState.LOGGING_OUT:
            return
        logger.warning(f"Connection to broker lost: {failure}")
        self._report_error(failure, status=f"Disconnected: {failure.user_message}")
        self._set_state(ConnectionState.DISCONNECTED)
        self.request_reconnect(LifecycleSignal.TRANSPORT_CLOSED_UNEXPECTEDLY)

    async def _publish_presence(self, client, session: Session, status: PresenceStatus):
        message = MQTTMessage(
            topic=CLIENTS_TOPIC,
            message=ClientPresencePayload(session_id=session.session_id, status=status),
            qos=1,
        )
        try:
            # aiomqtt bounds the PUBACK wait itself
            await client.publish(**message.to_aiomqtt_args(), timeout=self.presence_timeout)
        except Exception as e:
            # Best effort: a lost connection or a slow PUBACK must not block the caller
            logger.warning(f"Could not publish {status.value} presence for {session.session_id}: {e!r}")

    def _forget_credentials(self):
        try:
            clear_credentials(self.credential_store)
        except Exception as e:
            logger.error(f"Could not clear stored credentials: {e}")

    # --- Inbound messages ---

    def _handle_message(self, session: Session, message):
        if session is not self._session:
            return
        topic = str(message.topic)
        if topic == STATUS_TOPIC:
            self._handle_status(message.payload)
        elif topic.startswith(RESPONSE_TOPIC_PREFIX):
            self._handle_response(session, topic, message)
        else:
            logger.debug(f"Ignoring message on unexpected topic {topic}")

    def _handle_status(self, payload):
        try:
            heartbeat = HeartbeatPayload.from_bytes(payload)
        except PayloadError:
            self._handle_device_presence(payload)
            return
        online = self.liveness.record_heartbeat(heartbeat.timestamp)
        logger.debug(f"Heartbeat {heartbeat.hb!r}; gate online={online}")
        self._events.emit(EventType.HEARTBEAT, hb=heartbeat.hb, online=online)

    def _handle_device_presence(self, payload):
        try:
            presence = DevicePresencePayload.from_bytes(payload)
        except PayloadError as e:
            logger.warning(f"Ignoring malformed status message: {e}")
            return
        # Presence is informational; only heartbeats move the liveness verdict
        logger.info(f"Gate device reports {presence.status.value}")
        self._events.emit(EventType.PRESENCE, status=presence.status.value)

    def _handle_response(self, session: Session, topic: str, message):
        if session_id_from_response_topic(topic) != session.session_id:
            logger.debug(f"Ignoring response addressed to a superseded session ({topic})")
            return
        correlation = getattr(message.properties, "CorrelationData", None)
        token = bytes(correlation).decode('utf-8', errors='replace') if correlation else None
        try:
            response = CommandResponsePayload.from_bytes(message.payload)
        except PayloadError as e:
            logger.warning(f"Malformed command response on {topic}: {e}")
            return

        action = self.registry.resolve(token, response, reply_to=topic)
        if action is None:
            return
        self._events.emit(EventType.COMMAND_RESOLVED, token=token, action=action.value,
                          ok=response.ok, error=response.error)
        if response.ok:
            self._set_status(f"Gate {action.value}: success")
        else:
            self._set_status(f"Gate {action.value} failed: {response.error or response.status}")

    # --- Liveness polling ---

    def _start_liveness_polling(self):
        self._stop_liveness_polling()
        self._liveness_task = asyncio.create_task(self._liveness_loop())

    def _stop_liveness_polling(self):
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            self._liveness_task = None

    async def _liveness_loop(self):
        """Fixed-interval poll instead of one timer per heartbeat."""
        try:
            while True:
                await asyncio.sleep(self.liveness_poll_interval)
                online = self.liveness.evaluate()
                self._expire_pending_commands()
                if not online and self.state is not ConnectionState.CONNECTED:
                    # Verdict settled and no session feeds heartbeats
                    logger.debug("Liveness polling finished.")
                    return
        except asyncio.CancelledError:
            logger.debug("Liveness polling stopped.")
            raise

    def _expire_pending_commands(self):
        if self.command_timeout is None:
            return
        for pending in self.registry.expire(self.command_timeout):
            self._events.emit(EventType.COMMAND_EXPIRED, token=pending.token, action=pending.action.value)
            self._set_status(f"No response for {pending.action.value}")

    def _on_liveness_change(self, online: bool):
        self._events.emit(EventType.LIVENESS_CHANGED, online=online)

    # --- State & status reporting ---

    def _set_state(self, state: ConnectionState):
        if state is self.state:
            return
        previous, self.state = self.state, state
        logger.info(f"Connection state {previous.value} -> {state.value}")
        automatic = self._session.automatic if self._session else False
        self._events.emit(EventType.STATE_CHANGED, previous=previous.value, state=state.value, automatic=automatic)

    def _set_status(self, text: str):
        self.status = text
        if self._on_status:
            try:
                self._on_status(text)
            except Exception:
                logger.exception("Status callback failed")
        self._events.emit(EventType.STATUS, status=text)

    def _report_error(self, error: GateClientError, status: Optional[str] = ""):
        """Records a failure. status "" means use the error's own message, None means stay quiet."""
        self.last_error = error
        logger.warning(f"{type(error).__name__}: {error}")
        self._events.emit(EventType.ERROR, error=error, state=self.state.value)
        if status == "":
            status = error.user_message
        if status is not None:
            self._set_status(status)
