"""
Host lifecycle integration.

Hosts report visibility, app-state and focus changes in their own vocabulary.
`LifecycleBridge` turns all of them into the same reconnect request on the
ConnectionManager, which owns the guard against overlapping attempts.
"""
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class LifecycleSignal(str, Enum):
    APP_BECAME_VISIBLE = "app_became_visible"
    APP_BECAME_ACTIVE = "app_became_active"
    WINDOW_GAINED_FOCUS = "window_gained_focus"
    TRANSPORT_CLOSED_UNEXPECTEDLY = "transport_closed_unexpectedly"


class LifecycleBridge:
    def __init__(self, manager):
        self.manager = manager

    def notify(self, signal: LifecycleSignal) -> bool:
        """Returns True if this signal started a reconnection attempt."""
        logger.debug(f"Lifecycle signal: {signal.value}")
        return self.manager.request_reconnect(signal)

    def app_became_visible(self) -> bool:
        return self.notify(LifecycleSignal.APP_BECAME_VISIBLE)

    def app_became_active(self) -> bool:
        return self.notify(LifecycleSignal.APP_BECAME_ACTIVE)

    def window_gained_focus(self) -> bool:
        return self.notify(LifecycleSignal.WINDOW_GAINED_FOCUS)

    def transport_closed_unexpectedly(self) -> bool:
        return self.notify(LifecycleSignal.TRANSPORT_CLOSED_UNEXPECTEDLY)

    # --- Host adapters ---

    def on_visibility_change(self, visible: bool) -> bool:
        return self.app_became_visible() if visible else False

    def on_app_state_change(self, state: str) -> bool:
        # Mobile hosts report "active", "inactive" or "background"
        return self.app_became_active() if state == "active" else False

    def on_focus_change(self, focused: bool) -> bool:
        return self.window_gained_focus() if focused else False
