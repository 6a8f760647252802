"""
Gate Relay Control and the Async/Sync Bridge.

This module contains the `GateController` class, which is the core
of the device-side concurrency model. It is responsible for:
- Initializing and holding one `gpiozero` output per gate button.
- Managing the Command Queue (network -> hardware) for sequential presses.
- Running the single, dedicated worker thread for blocking GPIO work.
- Reporting each press outcome back to the asyncio loop via `loop.call_soon_threadsafe`.
"""
import asyncio
import logging as log
import queue
import threading
import time

from gpiozero import DigitalOutputDevice
from mqtt_gate.models import GateAction

# BCM numbering: GPIO17 (P1-11), GPIO4 (P1-7), GPIO27 (P1-13), GPIO22 (P1-15)
DEFAULT_PINS = {
    GateAction.FULL: 17,
    GateAction.PEDESTRIAN: 4,
    GateAction.RIGHT: 27,
    GateAction.LEFT: 22,
}
DEFAULT_PRESS_DURATION = 1.0

logger = log.getLogger(__name__)


def _settle(future: asyncio.Future, error: BaseException | None = None):
    """Runs on the event loop. The waiter may have given up already."""
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)


class GateController:
    config: dict
    async_loop: asyncio.AbstractEventLoop # reference to the main asyncio event loop
    relays: dict[GateAction, DigitalOutputDevice] # one output per gate button

    # Presses block for press_duration, so they run on one worker thread fed by a
    # standard `queue.Queue`; this also serializes them so two buttons are never held at once.
    inbound_command_queue: queue.Queue

    _worker_thread: threading.Thread | None
    _worker_running: threading.Event

    """
    Drives the gate controller's buttons through relays and bridges asyncio to blocking GPIO calls.
    """
    def __init__(self, async_loop: asyncio.AbstractEventLoop, config: dict):
        self.config = config or {}
        gate_conf = self.config.get("gate", {})
        self.async_loop = async_loop
        self.press_duration = float(gate_conf.get("press_duration", DEFAULT_PRESS_DURATION))
        self.pins = dict(DEFAULT_PINS)
        for name, pin in (gate_conf.get("pins") or {}).items():
            self.pins[GateAction(name)] = int(pin)
        self.relays: dict[GateAction, DigitalOutputDevice] = {}
        self.inbound_command_queue = queue.Queue()
        self._worker_thread = None
        self._worker_running = threading.Event()

    def initialize_gpio_devices(self):
        """
        Creates one output per action, all driven low.
        Relies on gpiozero's configured pin factory (a real Pi, or MockFactory in tests).
        """
        for action, pin in self.pins.items():
            try:
                self.relays[action] = DigitalOutputDevice(pin, initial_value=False)
                logger.info(f"Initialized relay for '{action.value}' on GPIO{pin}")
            except Exception as e:
                logger.error(f"Failed to initialize relay for '{action.value}' on GPIO{pin}: {e}")
                raise

    def start_worker_thread(self):
        """
        Starts the dedicated synchronous worker thread if it's not already running.
        """
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_running.set()
            self._worker_thread = threading.Thread(target=self._worker_loop, name="GateWorker", daemon=True)
            self._worker_thread.start()
            logger.info("Gate worker thread started.")
        else:
            logger.warning("Attempted to start worker thread, but it's already running.")

    def stop_worker_thread(self):
        """
        Signals the worker thread to stop and waits for it to finish.
        """
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_running.clear()
            self.inbound_command_queue.put(None) # Sentinel value to unblock the worker if it's waiting
            self._worker_thread.join()
            logger.info("Gate worker thread stopped.")
        else:
            logger.warning("Attempted to stop worker thread, but it was not running.")

    def submit(self, action: GateAction) -> asyncio.Future:
        """
        Queues a press and returns a future on the event loop that completes
        when the press is done, or fails with the GPIO error.
        Must be called from the event loop thread.
        """
        future = self.async_loop.create_future()
        self.inbound_command_queue.put((GateAction(action), future))
        logger.debug(f"Queued press of '{action}'")
        return future

    def _worker_loop(self):
        """
        The main loop for the synchronous worker thread.
        It continuously pulls presses from the command queue and executes them.
        """
        logger.info("Gate worker loop has started.")

        while self._worker_running.is_set():
            try:
                # timeout so is_set() is checked regularly for shutdown
                command = self.inbound_command_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            if command is None: # Sentinel value for shutdown
                logger.info("Worker loop received shutdown signal. Unblocking...")
                self.inbound_command_queue.task_done()
                break

            action, future = command
            error = None
            try:
                self.press(action)
            except Exception as e:
                logger.error(f"Error pressing '{action.value}': {e}")
                error = e
            try:
                self.async_loop.call_soon_threadsafe(_settle, future, error)
            except RuntimeError as e:
                # Loop already closed during shutdown
                logger.warning(f"Could not report press of '{action.value}': {e}")
            # Mark done regardless of whether the press succeeded
            self.inbound_command_queue.task_done()

        logger.info("Gate worker loop has stopped.")

    def press(self, action: GateAction):
        """
        Holds the button for press_duration. Blocking; only call from the worker thread.
        """
        relay = self.relays.get(GateAction(action))
        if relay is None:
            raise LookupError(f"No relay configured for '{action}'")
        logger.info(f"Pressing '{action.value}' for {self.press_duration}s")
        relay.on()
        try:
            time.sleep(self.press_duration)
        finally:
            relay.off()

    def close(self):
        """Drives every relay low and releases the pins."""
        for action, relay in self.relays.items():
            try:
                relay.off()
                relay.close()
            except Exception as e:
                logger.error(f"Failed to release relay '{action.value}': {e}")
        self.relays.clear()
