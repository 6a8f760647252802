"""
Client-side components for gate remote-control applications.

`ConnectionManager` is the entry point: it keeps one MQTT v5 session to the
broker, sends gate commands as Request/Response RPCs and tracks whether the
gate device is alive. Host applications feed it lifecycle signals through
`LifecycleBridge`.
"""
from mqtt_gate.client.connection import ConnectionManager, ConnectionState
from mqtt_gate.client.lifecycle import LifecycleBridge, LifecycleSignal

__all__ = ["ConnectionManager", "ConnectionState", "LifecycleBridge", "LifecycleSignal"]
