from __future__ import annotations
import json
from pathlib import Path
from .interface import Observer
from .events import BaseEvent
from kubestrap.logging.log import redact


class JsonFileObserver(Observer):
    """One JSON object per line; registered secrets are scrubbed before writing."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps({"type": event.__class__.__name__, **event.dict()}, default=str)
        with self.path.open("a") as f:
            f.write(redact(line) + "\n")
