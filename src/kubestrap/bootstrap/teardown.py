# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/teardown.py
from __future__ import annotations

import concurrent.futures
import logging
from typing import Callable, Dict, List, Optional

from kubestrap.bootstrap.errors import TeardownResidualFailure
from kubestrap.bootstrap.models import Inventory, Node, Phase, RunReport, StepResult
from kubestrap.bootstrap.steps import apply_steps, teardown_steps
from kubestrap.executor.interface import CommandExecutor
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import StepCompleted, TeardownStarted, TeardownSummary, new_ctx

log = logging.getLogger("kubestrap")


def teardown_node(
    executor: CommandExecutor,
    node: Node,
    *,
    cri_socket: Optional[str] = None,
    timeout: float = 300.0,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> List[StepResult]:
    """
    Every cleanup action runs even when an earlier one failed; a failure is
    recorded as TeardownResidualFailure and the next action proceeds.
    """
    log.info("[%s] Tearing down...", node.name)
    return apply_steps(
        executor, node, teardown_steps(node, cri_socket),
        stop_on_failure=False,
        phase=Phase.TEARDOWN.value,
        timeout=timeout,
        error_kind=TeardownResidualFailure,
        on_result=on_result,
    )


def teardown(
    executor: CommandExecutor,
    inventory: Inventory,
    *,
    cri_socket: Optional[str] = None,
    timeout: float = 300.0,
    max_parallel: int = 16,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> RunReport:
    """
    Reverse cluster state on every inventory node in parallel. Needs nothing
    but the inventory; safe on nodes that never joined and safe to repeat.
    """
    bus = bus or EventBus()
    ctx = run_ctx or new_ctx(env="teardown", context=None)
    nodes = inventory.nodes
    bus.emit(TeardownStarted(nodes=[n.name for n in nodes], **ctx))

    def _on_result(res: StepResult) -> None:
        bus.emit(StepCompleted(
            node=res.node, step=res.step, phase=res.phase, status=res.status.value,
            error=res.error, detail=res.detail, duration_ms=res.duration_ms, **ctx,
        ))

    per_node: Dict[str, List[StepResult]] = {}
    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max(1, min(len(nodes), max_parallel)), thread_name_prefix="teardown"
    ) as pool:
        futures = {
            pool.submit(
                teardown_node, executor, n,
                cri_socket=cri_socket, timeout=timeout, on_result=_on_result,
            ): n
            for n in nodes
        }
        for fut in concurrent.futures.as_completed(futures):
            per_node[futures[fut].name] = fut.result()

    report = RunReport(kind="teardown")
    for n in nodes:
        report.extend(per_node[n.name])
    report.phases.append(Phase.TEARDOWN)

    failed_nodes = sorted({r.node for r in report.failures})
    if failed_nodes:
        report.status = Phase.FAILED
        report.failed_phase = Phase.TEARDOWN
        report.detail = f"residual cleanup failures on: {', '.join(failed_nodes)}"
        log.error("Teardown left residue on %s", ", ".join(failed_nodes))
    else:
        report.status = Phase.DONE
        log.info("Teardown complete on %d node(s)", len(nodes))

    bus.emit(TeardownSummary(status=report.status.value, summary=report.summary(), **ctx))
    return report
