# src/kubestrap/observers/dispatcher.py
from __future__ import annotations
import logging
import threading
from typing import List, Optional
from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("kubestrap")


class EventBus:
    """Events arrive from per-node worker threads; observers see them one at a time."""

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers = observers or []
        self._lock = threading.Lock()

    def emit(self, event: BaseEvent) -> None:
        with self._lock:
            for ob in self._observers:
                try:
                    ob.notify(event)
                except Exception as e:
                    # observers must not break a bootstrap
                    log.warning("observer %s failed on %s: %s",
                                type(ob).__name__, type(event).__name__, e)
