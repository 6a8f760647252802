"""
Client error taxonomy.

Every failure the ConnectionManager handles is converted into one of these
before it becomes a status message, so the UI only ever deals with a
`user_message`.
"""
import asyncio

from aiomqtt import MqttCodeError, MqttError

# CONNACK reason codes that mean "your credentials are wrong":
# MQTT 3.1.1 (4 bad username/password, 5 not authorized) and MQTT 5 (134, 135)
AUTH_REJECTION_CODES = frozenset({4, 5, 134, 135})


class GateClientError(Exception):
    """Base class for all errors surfaced by the gate client."""
    retryable = False
    default_message = "Unexpected error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.default_message)
        self.detail = detail

    @property
    def user_message(self) -> str:
        if self.detail and self.detail != self.default_message:
            return f"{self.default_message}: {self.detail}"
        return self.default_message


class MissingCredentialsError(GateClientError):
    default_message = "Please enter both username and password"

    @property
    def user_message(self) -> str:
        return self.default_message


class AuthenticationRejected(GateClientError):
    default_message = "Authentication rejected"


class TransportFailure(GateClientError):
    retryable = True
    default_message = "Network error"


class PublishFailure(GateClientError):
    default_message = "Command could not be sent"


class SetupFailure(GateClientError):
    default_message = "Setup error"


def reason_code_value(rc) -> int:
    """aiomqtt hands out plain ints for MQTT 3.1.1 and ReasonCode objects for MQTT 5."""
    return int(getattr(rc, "value", rc))


def classify_failure(exc: BaseException) -> GateClientError:
    """Maps a transport-level exception onto the client taxonomy."""
    if isinstance(exc, GateClientError):
        return exc
    if isinstance(exc, MqttCodeError):
        try:
            code = reason_code_value(exc.rc)
        except (TypeError, ValueError):
            code = None
        if code in AUTH_REJECTION_CODES:
            return AuthenticationRejected(str(exc))
        return TransportFailure(str(exc))
    if isinstance(exc, (MqttError, OSError, asyncio.TimeoutError)):
        return TransportFailure(str(exc) or type(exc).__name__)
    return SetupFailure(f"{type(exc).__name__}: {exc}")
