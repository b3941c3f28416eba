import asyncio, logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from marketplace.services.connectivity import NetworkGate
from marketplace.utils.exceptions import is_permission_denied, is_retryable

logger = logging.getLogger(__name__)

# listen(on_next, on_error) -> unsubscribe
Listen = Callable[[Callable[[Any], None], Callable[[Exception], None]], Callable[[], None]]


class SubscriptionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    RETRYING = "retrying"
    PAUSED = "paused"
    FALLBACK = "fallback"


class RetryingSubscription:
    """
    Live query with linear-backoff retries and a one-shot fetch fallback.

    Every snapshot replaces the delivered value. Retryable errors re-listen
    after attempt * base_delay, up to max_attempts; permission-denied
    delivers the empty value; exhausted or fatal errors fall back to one
    fetch, and a failed fetch delivers the empty value. Nothing is raised
    to the owner. While the gate is disabled the subscription is paused.
    """

    def __init__(
        self,
        name: str,
        listen: Listen,
        fetch: Callable[[], Awaitable[Any]],
        on_update: Callable[[Any], None],
        empty: Callable[[], Any] = list,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        is_retryable: Callable[[Exception], bool] = is_retryable,
        gate: Optional[NetworkGate] = None,
    ):
        self.name = name
        self.listen = listen
        self.fetch = fetch
        self.on_update = on_update
        self.empty = empty
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.is_retryable = is_retryable
        self.gate = gate

        self._state = SubscriptionState.IDLE
        self._active = False
        self._generation = 0
        self._attempt = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._remove_gate_listener: Optional[Callable[[], None]] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def attempt(self) -> int:
        return self._attempt

    def start(self):
        if self._active:
            return
        self._active = True
        self._attempt = 0
        if self.gate is not None:
            self._remove_gate_listener = self.gate.add_listener(self._on_gate_change)
        self._open()

    def cancel(self):
        """Stop delivering immediately; callbacks still in flight are dropped."""
        self._active = False
        self._generation += 1
        self._cancel_task()
        self._close_listen()
        if self._remove_gate_listener is not None:
            self._remove_gate_listener()
            self._remove_gate_listener = None
        self._state = SubscriptionState.IDLE

    def _current(self, generation: int) -> bool:
        return self._active and generation == self._generation

    def _open(self):
        self._close_listen()
        if self.gate is not None and not self.gate.enabled:
            logger.info(f"{self.name}: live access disabled, paused")
            self._state = SubscriptionState.PAUSED
            return

        self._generation += 1
        generation = self._generation
        self._state = SubscriptionState.LISTENING
        try:
            self._unsubscribe = self.listen(
                lambda value: self._on_next(generation, value),
                lambda error: self._on_error(generation, error),
            )
        except Exception as e:
            self._on_error(generation, e)

    def _on_next(self, generation: int, value: Any):
        if not self._current(generation):
            return
        self._attempt = 0
        self._state = SubscriptionState.LISTENING
        self.on_update(value)

    def _on_error(self, generation: int, error: Exception):
        if not self._current(generation):
            return
        # the failed listen is dead; drop anything it still delivers
        self._generation += 1
        self._close_listen()

        if is_permission_denied(error):
            # routine for users that have nothing to read yet
            logger.info(f"{self.name}: permission denied, treating as empty")
            self._state = SubscriptionState.IDLE
            self.on_update(self.empty())
            return

        if self.gate is not None and not self.gate.enabled:
            self._state = SubscriptionState.PAUSED
            return

        loop = asyncio.get_running_loop()
        if self.is_retryable(error) and self._attempt < self.max_attempts:
            self._attempt += 1
            delay = self._attempt * self.base_delay
            logger.warning(f"{self.name}: {error}, retry {self._attempt}/{self.max_attempts} in {delay}s")
            self._state = SubscriptionState.RETRYING
            self._task = loop.create_task(self._retry_after(delay))
            return

        logger.error(f"{self.name}: giving up on live updates ({error}), fetching once")
        self._state = SubscriptionState.FALLBACK
        self._task = loop.create_task(self._fallback(self._generation))

    async def _retry_after(self, delay: float):
        await asyncio.sleep(delay)
        self._task = None
        if self._active:
            self._open()

    async def _fallback(self, generation: int):
        try:
            value = await self.fetch()
        except Exception as e:
            logger.error(f"{self.name}: manual fetch failed: {str(e)}")
            value = self.empty()

        if self._current(generation):
            self._task = None
            self.on_update(value)

    def _on_gate_change(self, enabled: bool):
        if not self._active:
            return

        if not enabled:
            if self._state in (SubscriptionState.LISTENING, SubscriptionState.RETRYING, SubscriptionState.FALLBACK):
                self._generation += 1
                self._cancel_task()
                self._close_listen()
                self._state = SubscriptionState.PAUSED
                logger.info(f"{self.name}: paused while offline")
            return

        if self._state in (SubscriptionState.PAUSED, SubscriptionState.FALLBACK):
            logger.info(f"{self.name}: resuming live updates")
            self._attempt = 0
            self._cancel_task()
            self._open()

    def _cancel_task(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def _close_listen(self):
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        try:
            unsubscribe()
        except Exception:
            logger.warning(f"{self.name}: unsubscribe failed", exc_info=True)
