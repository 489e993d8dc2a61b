# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/worker_joiner.py
from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence

from kubestrap.bootstrap.models import (
    ClusterBootstrapState,
    JoinToken,
    Node,
    Phase,
    PhaseOutcome,
    StepResult,
    StepStatus,
)
from kubestrap.bootstrap.steps import COMMON_STEPS, ProvisioningStep, apply_steps, reset_step
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.config.models import ClusterSpec
from kubestrap.executor.interface import CommandExecutor

log = logging.getLogger("kubestrap")


def join_steps(node: Node, token: JoinToken, cluster: ClusterSpec) -> List[ProvisioningStep]:
    return [
        reset_step(node, cluster.cri_socket),
        ProvisioningStep(
            name="join",
            apply=(f"{token.command(cluster.cri_socket)} --node-name {node.name}",),
            verify="test -s /etc/kubernetes/kubelet.conf",
            timeout=cluster.init_timeout,
        ),
    ]


def join_worker(
    executor: CommandExecutor,
    node: Node,
    token: JoinToken,
    cluster: ClusterSpec,
    *,
    steps: Sequence[ProvisioningStep] = COMMON_STEPS,
    renderer: Optional[TemplateRenderer] = None,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> List[StepResult]:
    """
    Common catalog, then reset and join. Stops at this node's first failure.
    """
    phase = Phase.WORKERS_JOINING.value
    log.info("[%s] Joining worker to %s...", node.name, token.endpoint)
    results = apply_steps(
        executor, node, steps,
        phase=phase, timeout=cluster.command_timeout,
        renderer=renderer, cancel=cancel, on_result=on_result,
    )
    if any(r.failed for r in results):
        return results
    results += apply_steps(
        executor, node, join_steps(node, token, cluster),
        phase=phase, timeout=cluster.command_timeout,
        cancel=cancel, on_result=on_result,
    )
    return results


def _join_status(results: List[StepResult]) -> StepStatus:
    if any(r.failed for r in results):
        return StepStatus.FAILED
    if any(r.step == "join" and r.status == StepStatus.SUCCEEDED for r in results):
        return StepStatus.SUCCEEDED
    # cancelled before the join action ran
    return StepStatus.FAILED


def join_workers(
    executor: CommandExecutor,
    workers: Sequence[Node],
    state: ClusterBootstrapState,
    cluster: ClusterSpec,
    *,
    steps: Sequence[ProvisioningStep] = COMMON_STEPS,
    renderer: Optional[TemplateRenderer] = None,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> PhaseOutcome:
    """
    Fan the join out over every worker and wait for all of them, successful
    or not, before returning. One worker failing never stops the others.
    """
    token = state.token
    if token is None:
        raise ValueError("join_workers requires a state with an issued join token")

    per_node: Dict[str, List[StepResult]] = {}
    if workers:
        max_workers = max(1, min(len(workers), cluster.max_parallel))
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="join"
        ) as pool:
            futures = {
                pool.submit(
                    join_worker, executor, w, token, cluster,
                    steps=steps, renderer=renderer, cancel=cancel, on_result=on_result,
                ): w
                for w in workers
            }
            for fut in concurrent.futures.as_completed(futures):
                per_node[futures[fut].name] = fut.result()

    results: List[StepResult] = []
    join_status = dict(state.join_status)
    for w in workers:
        node_results = per_node.get(w.name, [])
        results.extend(node_results)
        join_status[w.name] = _join_status(node_results)
        if join_status[w.name] == StepStatus.FAILED:
            log.error("[%s] worker did not join", w.name)

    return PhaseOutcome(state=replace(state, join_status=join_status), results=results)
