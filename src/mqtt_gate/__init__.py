"""
mqtt_gate

This package provides an asynchronous MQTT v5 remote control for a gate
actuator: the client-side connection and command lifecycle manager, and the
device-side service that presses the gate's relays.
"""
__version__ = "0.1.0"
