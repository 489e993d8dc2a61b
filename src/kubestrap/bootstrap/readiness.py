# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/readiness.py
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, FrozenSet, Iterable, List, Optional, Set

from kubestrap.bootstrap.errors import ReadinessTimeout
from kubestrap.bootstrap.models import (
    ClusterBootstrapState,
    Node,
    Phase,
    PhaseOutcome,
    StepResult,
    StepStatus,
)
from kubestrap.config.models import ClusterSpec
from kubestrap.executor.interface import CommandExecutor, ExecutorError

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class PollResult:
    ready: FrozenSet[str]
    pending: FrozenSet[str]
    attempts: int
    elapsed: float
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.pending

    def error(self, timeout: float) -> ReadinessTimeout:
        return ReadinessTimeout(self.pending, timeout)


def poll_until(
    probe: Callable[[], Iterable[str]],
    targets: Iterable[str],
    *,
    interval: float,
    timeout: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancel: Optional[threading.Event] = None,
) -> PollResult:
    """
    Call probe() every `interval` seconds until every target is in the set it
    returns, or `timeout` seconds have passed. A probe that raises counts as
    "nothing ready yet". Never raises on deadline; inspect PollResult.ok.
    """
    wanted: Set[str] = set(targets)
    start = clock()
    deadline = start + timeout
    attempts = 0
    ready: Set[str] = set()

    while True:
        attempts += 1
        try:
            ready = set(probe()) & wanted
        except (ExecutorError, ValueError, KeyError) as e:
            log.debug("readiness probe attempt %d failed: %s", attempts, e)
            ready = set()

        pending = wanted - ready
        if not pending:
            return PollResult(frozenset(ready), frozenset(), attempts, clock() - start)
        if cancel is not None and cancel.is_set():
            return PollResult(frozenset(ready), frozenset(pending), attempts, clock() - start, cancelled=True)
        if clock() + interval > deadline:
            log.warning("still waiting on %s after %d attempts", ", ".join(sorted(pending)), attempts)
            return PollResult(frozenset(ready), frozenset(pending), attempts, clock() - start)
        log.debug("waiting on %s (attempt %d)", ", ".join(sorted(pending)), attempts)
        sleep(interval)


def ready_nodes(nodes_json: str) -> Set[str]:
    """Names of nodes whose Ready condition is True in `kubectl get nodes -o json`."""
    data = json.loads(nodes_json or "{}")
    out: Set[str] = set()
    for item in data.get("items", []):
        conditions = item.get("status", {}).get("conditions", [])
        if any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
            out.add(item["metadata"]["name"])
    return out


def node_probe(
    executor: CommandExecutor,
    master: Node,
    cluster: ClusterSpec,
) -> Callable[[], Set[str]]:
    cmd = f"kubectl --kubeconfig {cluster.admin_kubeconfig} get nodes -o json"

    def _probe() -> Set[str]:
        res = executor.execute(master, cmd, cluster.command_timeout)
        if not res.ok:
            raise ValueError(f"kubectl get nodes exited {res.exit_code}: {res.tail(3)}")
        return ready_nodes(res.stdout)

    return _probe


def verify_nodes_ready(
    executor: CommandExecutor,
    master: Node,
    targets: Iterable[str],
    state: ClusterBootstrapState,
    cluster: ClusterSpec,
    *,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> PhaseOutcome:
    """
    Wait until every named node reports Ready. Node registration and CNI
    start-up lag behind a successful join, so this always polls.
    Nodes still pending at the deadline get a failed ReadinessTimeout result.
    """
    names = list(dict.fromkeys(targets))
    phase = Phase.CLUSTER_VERIFIED.value
    log.info("Waiting for nodes to become Ready: %s", ", ".join(names))

    poll = poll_until(
        node_probe(executor, master, cluster), names,
        interval=cluster.readiness_interval,
        timeout=cluster.readiness_timeout,
        sleep=sleep, clock=clock, cancel=cancel,
    )

    results: List[StepResult] = []
    timeout_error = poll.error(cluster.readiness_timeout)
    for name in names:
        if name in poll.ready:
            res = StepResult(node=name, step="node-ready", status=StepStatus.SUCCEEDED, phase=phase)
        else:
            res = StepResult(
                node=name, step="node-ready", status=StepStatus.FAILED, phase=phase,
                error=type(timeout_error).__name__, detail=str(timeout_error),
            )
        results.append(res)
        if on_result:
            on_result(res)

    readiness = dict(state.readiness)
    readiness.update({n: n in poll.ready for n in names})
    return PhaseOutcome(state=replace(state, readiness=readiness), results=results)
