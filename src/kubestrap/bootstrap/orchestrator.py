# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/orchestrator.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from kubestrap.bootstrap.control_plane import (
    control_plane_steps,
    initialize_control_plane,
    provision_control_plane,
)
from kubestrap.bootstrap.credentials import write_credentials
from kubestrap.bootstrap.errors import InvalidTransition, TokenExtractionError
from kubestrap.bootstrap.models import (
    ClusterBootstrapState,
    Inventory,
    Phase,
    PhaseOutcome,
    RunReport,
    Severity,
    StepResult,
    StepStatus,
)
from kubestrap.bootstrap.readiness import verify_nodes_ready
from kubestrap.bootstrap.steps import COMMON_STEPS, ProvisioningStep
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.bootstrap.token_broker import extract_join_token
from kubestrap.bootstrap.validator import validate_workload
from kubestrap.bootstrap.worker_joiner import join_workers
from kubestrap.config.models import ClusterSpec, ValidationSpec
from kubestrap.executor.interface import CommandExecutor
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    PhaseEntered,
    PhaseFailed,
    RunStarted,
    RunSummary,
    StepCompleted,
    TokenIssued,
    ValidationWarning,
    new_ctx,
    now_ts,
)

log = logging.getLogger("kubestrap")


# Bootstrap phase graph. Every non-terminal phase may also move to Failed.
TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.IDLE: frozenset({Phase.COMMON_PROVISIONED}),
    Phase.COMMON_PROVISIONED: frozenset({Phase.CONTROL_PLANE_READY}),
    Phase.CONTROL_PLANE_READY: frozenset({Phase.TOKEN_ISSUED}),
    Phase.TOKEN_ISSUED: frozenset({Phase.WORKERS_JOINING}),
    Phase.WORKERS_JOINING: frozenset({Phase.CLUSTER_VERIFIED}),
    Phase.CLUSTER_VERIFIED: frozenset({Phase.DONE}),
    Phase.DONE: frozenset(),
    Phase.FAILED: frozenset(),
}

TERMINAL: FrozenSet[Phase] = frozenset({Phase.DONE, Phase.FAILED})


def can_transition(src: Phase, dst: Phase) -> bool:
    if dst == Phase.FAILED:
        return src not in TERMINAL
    return dst in TRANSITIONS.get(src, frozenset())


class _PhaseAborted(Exception):
    def __init__(self, phase: Phase, detail: str):
        super().__init__(detail)
        self.phase = phase
        self.detail = detail


class BootstrapOrchestrator:
    """
    Drives one bootstrap run:

      Idle -> CommonProvisioned -> ControlPlaneReady -> TokenIssued
           -> WorkersJoining -> ClusterVerified -> Done

    with Failed reachable from any phase. A failed phase ends the run; nothing
    is retried and nothing is rolled back. Teardown is a separate entry point
    (kubestrap.bootstrap.teardown) and does not use this state machine.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        inventory: Inventory,
        cluster: ClusterSpec,
        validation: Optional[ValidationSpec] = None,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        steps: Sequence[ProvisioningStep] = COMMON_STEPS,
        renderer: Optional[TemplateRenderer] = None,
        credentials_path: Optional[Path] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.inventory = inventory
        self.cluster = cluster
        self.validation = validation or ValidationSpec()
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(env="dev", context=inventory.master.name)
        self.steps = tuple(steps)
        self.renderer = renderer or TemplateRenderer()
        self.credentials_path = credentials_path if credentials_path is not None else cluster.credentials_path
        self.cancel = cancel or threading.Event()
        self.sleep = sleep
        self.clock = clock
        self.state = ClusterBootstrapState()
        self.report = RunReport(kind="bootstrap")

    # ------------------ plumbing ------------------

    def _ctx(self) -> dict:
        return {**self.run_ctx, "ts": now_ts()}

    def _on_result(self, res: StepResult) -> None:
        self.bus.emit(StepCompleted(
            node=res.node, step=res.step, phase=res.phase, status=res.status.value,
            error=res.error, detail=res.detail, duration_ms=res.duration_ms, **self._ctx(),
        ))

    def _record(self, results: List[StepResult], *, emit: bool = False) -> None:
        self.report.extend(results)
        if emit:
            for r in results:
                self._on_result(r)

    def _advance(self, state: ClusterBootstrapState, phase: Phase) -> ClusterBootstrapState:
        if not can_transition(state.phase, phase):
            raise InvalidTransition(f"{state.phase.value} -> {phase.value}")
        log.info("Phase: %s -> %s", state.phase.value, phase.value)
        self.state = replace(state, phase=phase)
        self.report.phases.append(phase)
        self.report.status = phase
        self.bus.emit(PhaseEntered(phase=phase.value, **self._ctx()))
        return self.state

    def _check_cancel(self, next_phase: Phase) -> None:
        if self.cancel.is_set():
            raise _PhaseAborted(next_phase, "run cancelled")

    def _require(self, outcome: PhaseOutcome, phase: Phase) -> None:
        if not outcome.ok:
            failed = sorted({f"{r.node}/{r.step}" for r in outcome.results if r.blocking})
            raise _PhaseAborted(phase, f"failed steps: {', '.join(failed)}")

    # ------------------ run ------------------

    def run(self) -> RunReport:
        master = self.inventory.master
        workers = self.inventory.workers
        cluster = self.cluster
        common = dict(renderer=self.renderer, cancel=self.cancel, on_result=self._on_result)

        self.bus.emit(RunStarted(kind="bootstrap", nodes=[n.name for n in self.inventory.nodes], **self._ctx()))
        state = self.state

        try:
            # 1) Common provisioning on the control-plane node
            outcome = provision_control_plane(
                self.executor, master, state, cluster, steps=self.steps, **common,
            )
            self._record(outcome.results)
            self._require(outcome, Phase.COMMON_PROVISIONED)
            self._check_cancel(Phase.COMMON_PROVISIONED)
            state = self._advance(outcome.state, Phase.COMMON_PROVISIONED)

            # 2) reset + kubeadm init + credentials + join command
            self._check_cancel(Phase.CONTROL_PLANE_READY)
            cp = initialize_control_plane(
                self.executor, master, state, cluster,
                cancel=self.cancel, on_result=self._on_result,
            )
            self._record(cp.results)
            self._require(cp, Phase.CONTROL_PLANE_READY)
            self._check_cancel(Phase.CONTROL_PLANE_READY)
            if cp.join_output is None or not cp.state.control_plane_initialized:
                raise _PhaseAborted(Phase.CONTROL_PLANE_READY, "control plane produced no join command")
            state = self._advance(cp.state, Phase.CONTROL_PLANE_READY)

            # 3) Token issuance, strictly after a successful init
            try:
                token = extract_join_token(cp.join_output)
            except TokenExtractionError as e:
                self._record([StepResult(
                    node=master.name, step="token-extraction", status=StepStatus.FAILED,
                    phase=Phase.TOKEN_ISSUED.value, error=type(e).__name__, detail=str(e),
                )], emit=True)
                raise _PhaseAborted(Phase.TOKEN_ISSUED, f"{type(e).__name__}: {e}")
            state = self._advance(replace(state, token=token), Phase.TOKEN_ISSUED)
            self.bus.emit(TokenIssued(endpoint=token.endpoint, **self._ctx()))

            # 4) Worker fan-out, joined at a barrier
            self._check_cancel(Phase.WORKERS_JOINING)
            state = self._advance(state, Phase.WORKERS_JOINING)
            joined = join_workers(
                self.executor, workers, state, cluster, steps=self.steps, **common,
            )
            self._record(joined.results)
            state = self.state = replace(joined.state, phase=state.phase)
            not_joined = sorted(n for n, s in state.join_status.items() if s == StepStatus.FAILED)
            self._check_cancel(Phase.WORKERS_JOINING)

            # 5) Readiness of everything that did join
            ready = verify_nodes_ready(
                self.executor, master, [master.name] + state.joined_workers, state, cluster,
                sleep=self.sleep, clock=self.clock, cancel=self.cancel, on_result=self._on_result,
            )
            self._record(ready.results)
            state = self.state = ready.state
            if not_joined:
                raise _PhaseAborted(Phase.WORKERS_JOINING, f"workers failed to join: {', '.join(not_joined)}")
            self._check_cancel(Phase.CLUSTER_VERIFIED)
            if not ready.ok:
                pending = sorted(n for n, ok in state.readiness.items() if not ok)
                raise _PhaseAborted(Phase.CLUSTER_VERIFIED, f"ReadinessTimeout: {', '.join(pending)}")
            state = self._advance(state, Phase.CLUSTER_VERIFIED)

            # 6) Functional validation
            self._check_cancel(Phase.DONE)
            if self.validation.enabled:
                results = validate_workload(
                    self.executor, master, cluster, self.validation,
                    renderer=self.renderer, sleep=self.sleep, clock=self.clock,
                    cancel=self.cancel, on_result=self._on_result,
                )
                self._record(results)
                for r in results:
                    if r.failed and r.severity == Severity.WARNING:
                        self.bus.emit(ValidationWarning(node=r.node, step=r.step, detail=r.detail, **self._ctx()))
                self._require(PhaseOutcome(state=state, results=results), Phase.DONE)
            else:
                self._record([StepResult(
                    node=master.name, step="workload-validation", status=StepStatus.SKIPPED,
                    phase=Phase.DONE.value, detail="validation disabled",
                )], emit=True)

            # 7) Export credentials, only for a finished run
            if self.credentials_path is not None and state.credentials is not None:
                try:
                    self.report.credentials_path = write_credentials(state.credentials, self.credentials_path)
                except OSError as e:
                    self._record([StepResult(
                        node=master.name, step="export-credentials", status=StepStatus.FAILED,
                        phase=Phase.DONE.value, error="StepExecutionFailure", detail=str(e),
                    )], emit=True)
                    raise _PhaseAborted(Phase.DONE, f"could not write credentials: {e}")
            self._advance(state, Phase.DONE)

        except _PhaseAborted as abort:
            self._fail(abort.phase, abort.detail)

        self.bus.emit(RunSummary(
            status=self.report.status.value,
            failed_phase=self.report.failed_phase.value if self.report.failed_phase else None,
            summary=self.report.summary(),
            **self._ctx(),
        ))
        log.info(self.report.summary())
        return self.report

    def _fail(self, phase: Phase, detail: str) -> None:
        log.error("Bootstrap failed at %s: %s", phase.value, detail)
        if not can_transition(self.state.phase, Phase.FAILED):
            raise InvalidTransition(f"{self.state.phase.value} -> {Phase.FAILED.value}")
        self.state = replace(self.state, phase=Phase.FAILED)
        self.report.phases.append(Phase.FAILED)
        self.report.status = Phase.FAILED
        self.report.failed_phase = phase
        self.report.detail = detail
        self.bus.emit(PhaseFailed(phase=phase.value, error=detail, **self._ctx()))


def describe_plan(
    inventory: Inventory,
    cluster: ClusterSpec,
    validation: Optional[ValidationSpec] = None,
    steps: Sequence[ProvisioningStep] = COMMON_STEPS,
) -> List[Tuple[str, str, List[str]]]:
    """(phase, node, step names) in execution order, without touching any host."""
    validation = validation or ValidationSpec()
    master = inventory.master
    common = [s.name for s in steps if s.applies_to(master)]
    plan: List[Tuple[str, str, List[str]]] = [
        (Phase.COMMON_PROVISIONED.value, master.name, common),
        (
            Phase.CONTROL_PLANE_READY.value,
            master.name,
            [s.name for s in control_plane_steps(master, cluster)] + ["admin-credentials", "join-command"],
        ),
        (Phase.TOKEN_ISSUED.value, master.name, ["token-extraction"]),
    ]
    for w in inventory.workers:
        plan.append((
            Phase.WORKERS_JOINING.value,
            w.name,
            [s.name for s in steps if s.applies_to(w)] + ["reset", "join"],
        ))
    plan.append((Phase.CLUSTER_VERIFIED.value, "*", ["node-ready"]))
    if validation.enabled:
        plan.append((
            Phase.DONE.value,
            master.name,
            ["workload-deploy", "workload-scheduled", "workload-placement", "workload-cleanup"],
        ))
    return plan


def verify_cluster(
    executor: CommandExecutor,
    inventory: Inventory,
    cluster: ClusterSpec,
    validation: Optional[ValidationSpec] = None,
    *,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
    renderer: Optional[TemplateRenderer] = None,
    cancel: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RunReport:
    """
    Readiness and workload checks against an already-bootstrapped cluster.
    Nothing is provisioned and no credentials are written.
    """
    validation = validation or ValidationSpec()
    bus = bus or EventBus()
    ctx = run_ctx or new_ctx(env="dev", context=inventory.master.name)
    master = inventory.master
    report = RunReport(kind="verify")

    def _on_result(res: StepResult) -> None:
        bus.emit(StepCompleted(
            node=res.node, step=res.step, phase=res.phase, status=res.status.value,
            error=res.error, detail=res.detail, duration_ms=res.duration_ms, **ctx,
        ))

    bus.emit(RunStarted(kind="verify", nodes=[n.name for n in inventory.nodes], **ctx))
    ready = verify_nodes_ready(
        executor, master, [n.name for n in inventory.nodes], ClusterBootstrapState(), cluster,
        sleep=sleep, clock=clock, cancel=cancel, on_result=_on_result,
    )
    report.extend(ready.results)

    if not ready.ok:
        pending = sorted(n for n, ok in ready.state.readiness.items() if not ok)
        report.failed_phase = Phase.CLUSTER_VERIFIED
        report.detail = f"ReadinessTimeout: {', '.join(pending)}"
    else:
        report.phases.append(Phase.CLUSTER_VERIFIED)
        if validation.enabled:
            results = validate_workload(
                executor, master, cluster, validation,
                renderer=renderer, sleep=sleep, clock=clock, cancel=cancel, on_result=_on_result,
            )
            report.extend(results)
            for r in results:
                if r.failed and r.severity == Severity.WARNING:
                    bus.emit(ValidationWarning(node=r.node, step=r.step, detail=r.detail, **ctx))
            if any(r.blocking for r in results):
                report.failed_phase = Phase.DONE
                report.detail = "workload validation failed"

    if report.failed_phase:
        report.status = Phase.FAILED
        report.phases.append(Phase.FAILED)
        bus.emit(PhaseFailed(phase=report.failed_phase.value, error=report.detail, **ctx))
    else:
        report.status = Phase.DONE
        report.phases.append(Phase.DONE)

    bus.emit(RunSummary(
        status=report.status.value,
        failed_phase=report.failed_phase.value if report.failed_phase else None,
        summary=report.summary(),
        **ctx,
    ))
    log.info(report.summary())
    return report
