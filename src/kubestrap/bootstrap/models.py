# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from kubestrap.config.models import InventorySpec


class Role(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


@dataclass(frozen=True)
class Node:
    """
    A host taking part in the cluster, as loaded from the inventory.
    """
    name: str                     # hostname kubelet registers under
    address: str                  # IP or DNS to connect
    role: Role
    username: str                 # SSH username
    port: int = 22
    pkey_path: Optional[Path] = None
    password: Optional[str] = field(default=None, repr=False)
    become_password: Optional[str] = field(default=None, repr=False)
    interpreter: str = "/bin/bash"

    @property
    def home(self) -> str:
        return "/root" if self.username == "root" else f"/home/{self.username}"


@dataclass(frozen=True)
class Inventory:
    master: Node
    workers: Tuple[Node, ...] = ()

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return (self.master,) + self.workers

    def get(self, name: str) -> Node:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)

    @classmethod
    def from_spec(cls, spec: InventorySpec) -> "Inventory":
        conn = spec.connection

        def _node(ns, role: Role) -> Node:
            return Node(
                name=ns.name,
                address=ns.address,
                role=role,
                username=conn.user,
                port=ns.port,
                pkey_path=conn.pkey_path,
                password=conn.password,
                become_password=conn.become_password,
                interpreter=conn.interpreter,
            )

        return cls(
            master=_node(spec.master, Role.CONTROL_PLANE),
            workers=tuple(_node(w, Role.WORKER) for w in spec.workers),
        )


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"        # precondition already satisfied
    FAILED = "failed"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class Phase(str, Enum):
    IDLE = "Idle"
    COMMON_PROVISIONED = "CommonProvisioned"
    CONTROL_PLANE_READY = "ControlPlaneReady"
    TOKEN_ISSUED = "TokenIssued"
    WORKERS_JOINING = "WorkersJoining"
    CLUSTER_VERIFIED = "ClusterVerified"
    DONE = "Done"
    FAILED = "Failed"
    TEARDOWN = "Teardown"


@dataclass(frozen=True)
class StepResult:
    node: str
    step: str
    status: StepStatus
    phase: Optional[str] = None
    error: Optional[str] = None          # taxonomy name, e.g. "StepExecutionFailure"
    detail: Optional[str] = None
    severity: Severity = Severity.ERROR
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    @property
    def blocking(self) -> bool:
        return self.failed and self.severity == Severity.ERROR

    def dict(self) -> dict:
        return {
            "node": self.node,
            "step": self.step,
            "status": self.status.value,
            "phase": self.phase,
            "error": self.error,
            "detail": self.detail,
            "severity": self.severity.value,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True, repr=False)
class JoinToken:
    endpoint: str                 # host:port of the API server
    token: str
    ca_cert_hash: str             # sha256:<hex>

    def command(self, cri_socket: Optional[str] = None) -> str:
        cmd = (
            f"kubeadm join {self.endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash}"
        )
        if cri_socket:
            cmd += f" --cri-socket {cri_socket}"
        return cmd

    def __repr__(self) -> str:
        return f"JoinToken(endpoint={self.endpoint!r}, token=<redacted>)"


@dataclass(frozen=True, repr=False)
class ClusterCredentials:
    endpoint: str
    kubeconfig: str

    def __repr__(self) -> str:
        return f"ClusterCredentials(endpoint={self.endpoint!r})"


@dataclass(frozen=True)
class ClusterBootstrapState:
    """
    Per-run record threaded through the phases. Phases never mutate it;
    they return an evolved copy (dataclasses.replace).
    """
    phase: Phase = Phase.IDLE
    control_plane_initialized: bool = False
    credentials: Optional[ClusterCredentials] = None
    token: Optional[JoinToken] = None
    join_status: Dict[str, StepStatus] = field(default_factory=dict)
    readiness: Dict[str, bool] = field(default_factory=dict)

    @property
    def joined_workers(self) -> List[str]:
        return [n for n, s in self.join_status.items() if s != StepStatus.FAILED]


@dataclass(frozen=True)
class PhaseOutcome:
    state: ClusterBootstrapState
    results: List[StepResult]

    @property
    def ok(self) -> bool:
        return not any(r.blocking for r in self.results)


@dataclass
class RunReport:
    kind: str                                   # "bootstrap" | "teardown" | "verify"
    results: List[StepResult] = field(default_factory=list)
    phases: List[Phase] = field(default_factory=lambda: [Phase.IDLE])
    status: Phase = Phase.IDLE
    failed_phase: Optional[Phase] = None
    detail: Optional[str] = None
    credentials_path: Optional[Path] = None

    def extend(self, results: List[StepResult]) -> None:
        self.results.extend(results)

    @property
    def ok(self) -> bool:
        return self.status == Phase.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    @property
    def failures(self) -> List[StepResult]:
        return [r for r in self.results if r.blocking]

    @property
    def warnings(self) -> List[StepResult]:
        return [r for r in self.results if r.failed and r.severity == Severity.WARNING]

    def for_node(self, name: str) -> List[StepResult]:
        return [r for r in self.results if r.node == name]

    def summary(self) -> str:
        counts = {s: 0 for s in StepStatus}
        for r in self.results:
            counts[r.status] += 1
        head = f"{self.kind} {self.status.value}"
        if self.failed_phase:
            head += f" at {self.failed_phase.value}"
        return (
            f"{head}: SUCCEEDED={counts[StepStatus.SUCCEEDED]} "
            f"SKIPPED={counts[StepStatus.SKIPPED]} FAILED={counts[StepStatus.FAILED]} "
            f"WARNINGS={len(self.warnings)}"
        )

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "status": self.status.value,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "detail": self.detail,
            "phases": [p.value for p in self.phases],
            "credentials_path": str(self.credentials_path) if self.credentials_path else None,
            "results": [r.dict() for r in self.results],
        }
