import asyncio, logging
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class NetworkGate:
    """
    Capability flag for live store access. Subscriptions pause and new
    listens are refused while the gate is disabled.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    def enable(self):
        self._set(True)

    def disable(self):
        self._set(False)

    def add_listener(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _set(self, enabled: bool):
        if enabled == self._enabled:
            return
        self._enabled = enabled
        logger.info(f"Live store access {'enabled' if enabled else 'disabled'}")
        for callback in list(self._listeners):
            try:
                callback(enabled)
            except Exception:
                logger.error("Network gate listener failed", exc_info=True)


class ConnectivityState(str, Enum):
    CONNECTED = "connected"
    OFFLINE = "offline"
    BACKGROUND = "background"


class ConnectivityMonitor:
    """
    Folds online/offline and visibility signals into one state and flips
    the gate accordingly. Coming back from the background waits for a
    settle delay before live access is re-enabled.
    """

    def __init__(self, gate: NetworkGate, settle_delay: float = 1.5):
        self.gate = gate
        self.settle_delay = settle_delay
        self._online = True
        self._visible = True
        self._state = ConnectivityState.CONNECTED
        self._pending_enable: Optional[asyncio.TimerHandle] = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    def handle_online(self):
        self._online = True
        self._update()

    def handle_offline(self):
        self._online = False
        self._update()

    def handle_visibility(self, visible: bool):
        self._visible = visible
        self._update()

    def close(self):
        self._cancel_pending()

    def _derive(self) -> ConnectivityState:
        if not self._online:
            return ConnectivityState.OFFLINE
        if not self._visible:
            return ConnectivityState.BACKGROUND
        return ConnectivityState.CONNECTED

    def _update(self):
        previous = self._state
        current = self._derive()
        if current == previous:
            return

        self._state = current
        logger.info(f"Connectivity changed: {previous.value} -> {current.value}")
        self._cancel_pending()

        if current != ConnectivityState.CONNECTED:
            self.gate.disable()
        elif previous == ConnectivityState.BACKGROUND and self.settle_delay > 0:
            loop = asyncio.get_running_loop()
            self._pending_enable = loop.call_later(self.settle_delay, self._settled)
        else:
            self.gate.enable()

    def _settled(self):
        self._pending_enable = None
        if self._state == ConnectivityState.CONNECTED:
            self.gate.enable()

    def _cancel_pending(self):
        if self._pending_enable is not None:
            self._pending_enable.cancel()
            self._pending_enable = None
