from __future__ import annotations
import logging
from .events import BaseEvent


class LoggerObserver:
    """Mirrors events into the run log file (DEBUG, so the console stays quiet)."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        etype = event.__class__.__name__
        msg = ", ".join(f"{k}={v}" for k, v in d.items() if k not in ("ts", "run_id", "env", "context"))
        self.logger.debug("[EVENT] %s: %s", etype, msg)
