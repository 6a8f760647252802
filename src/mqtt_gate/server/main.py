"""
Main entry point for the gate device service.

This module is responsible for:
- Loading configuration (YAML file plus GATE_MQTT_* environment overrides).
- Initializing the GateController and its relay outputs.
- Starting the Gate MQTT Manager (commands, responses, heartbeat).
- Managing the overall application lifecycle (start, graceful stop on SIGINT/SIGTERM).
"""

import asyncio
import logging
import os
import signal

from pathlib import Path
from typing import Dict, Any

from mqtt_gate.config_loader import apply_env_overrides, load_config
from mqtt_gate.models import DevicePresencePayload, PresenceStatus
from mqtt_gate.server.hardware import GateController
from mqtt_gate.server.mqtt import GateMQTTManager

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

def setup_logging():
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

async def shutdown(signal_name: str, loop: asyncio.AbstractEventLoop, mqtt_manager: GateMQTTManager, controller: GateController):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    # Explicitly announce 'offline', since the Last Will is not delivered on a clean disconnect.
    mqtt_manager.publish_event(DevicePresencePayload(status=PresenceStatus.OFFLINE))
    logger.info("Publishing offline status before stopping services...")

    await asyncio.sleep(0.1) # Give it a moment to publish before we disconnect

    # Stop MQTT Manager (Async)
    await mqtt_manager.stop()

    # Stop the GPIO worker (Sync) and leave every relay released
    controller.stop_worker_thread()
    controller.close()

    # Cancel all remaining tasks
    tasks = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
    for task in tasks:
        task.cancel()

    # Await cancellation to finish safely
    await asyncio.gather(*tasks, return_exceptions=True)

    # Stop the loop
    loop.stop()

async def main_application_runner(config_path=None):
    setup_logging()
    logger.info("Starting gate device service...")

    # Load config
    config_path = config_path or os.environ.get("GATE_CONFIG", DEFAULT_CONFIG_PATH)
    config: Dict[str, Any] = apply_env_overrides(load_config(config_path))

    loop = asyncio.get_running_loop()

    # Instantiate the relay controller and its outputs
    controller = GateController(async_loop=loop, config=config)
    controller.initialize_gpio_devices()
    controller.start_worker_thread() # Presses run on a separate thread

    # Instantiate and start the MQTT side
    event_queue = asyncio.Queue()
    mqtt_manager = GateMQTTManager(event_queue=event_queue, controller=controller, config=config)
    await mqtt_manager.start() # Starts the MQTT loop in the background

    # This tells Python what to do when you press Ctrl+C in the terminal.
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, loop, mqtt_manager, controller))
        )

    logger.info("Gate device service is fully operational. Press Ctrl+C to exit.")

    # The Infinite Wait
    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        pass

def run():
    """Console script entry point."""
    try:
        asyncio.run(main_application_runner())
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass

if __name__ == "__main__":
    run()
