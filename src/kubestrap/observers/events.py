# src/kubestrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap/teardown invocation
    env: str          # dev/staging/prod
    context: Optional[str]  # control-plane node name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    kind: str
    nodes: List[str]

@dataclass(frozen=True)
class PhaseEntered(BaseEvent):
    phase: str

@dataclass(frozen=True)
class PhaseFailed(BaseEvent):
    phase: str
    error: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    status: str       # "Done" | "Failed"
    failed_phase: Optional[str]
    summary: str


# ---------------------------------------------------------------------
# Per-node steps
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepCompleted(BaseEvent):
    node: str
    step: str
    phase: Optional[str]
    status: str       # "succeeded" | "skipped" | "failed"
    error: Optional[str] = None
    detail: Optional[str] = None
    duration_ms: int = 0


# ---------------------------------------------------------------------
# Control plane / validation
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TokenIssued(BaseEvent):
    endpoint: str     # the token itself is never part of an event

@dataclass(frozen=True)
class ValidationWarning(BaseEvent):
    node: str
    step: str
    detail: Optional[str]


# ---------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TeardownStarted(BaseEvent):
    nodes: List[str]

@dataclass(frozen=True)
class TeardownSummary(BaseEvent):
    status: str
    summary: str
