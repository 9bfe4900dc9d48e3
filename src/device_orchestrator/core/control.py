"""Cooperative run control and the progress stream."""

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class RunControl:
    """Stop/pause token shared by reference with every task loop.

    Both flags are only observed at defined poll points: the top of a task
    loop, the pause wait, and between scheduler waves. Calls already in
    flight (model requests, device actions) are allowed to finish.
    """

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._pause_event = threading.Event()

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def is_paused(self) -> bool:
        return self._pause_event.is_set()

    def stop(self):
        self._stop_event.set()
        self._pause_event.clear()

    def pause(self):
        if not self.is_stopped:
            self._pause_event.set()

    def resume(self):
        self._pause_event.clear()

    def reset(self):
        self._stop_event.clear()
        self._pause_event.clear()

    def wait_while_paused(self, on_pause: Callable[[], None] | None = None) -> bool:
        """Block while paused, polling every ``poll_interval`` seconds.

        ``on_pause`` runs once when the wait begins. Returns False if the run
        was stopped while waiting.
        """
        if self.is_paused and not self.is_stopped and on_pause is not None:
            on_pause()
        while self.is_paused and not self.is_stopped:
            self._stop_event.wait(self.poll_interval)
        return not self.is_stopped


Observer = Callable[[object], None]


class ProgressBus:
    """Push-model event stream with any number of independent observers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def unsubscribe():
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: object):
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Progress observer failed on %r", type(event).__name__)
