# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/validator.py
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from kubestrap.bootstrap.models import Node, Phase, Severity, StepResult, StepStatus
from kubestrap.bootstrap.readiness import poll_until
from kubestrap.bootstrap.steps import ProvisioningStep, apply_step
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.config.models import ClusterSpec, ValidationSpec
from kubestrap.executor.interface import CommandExecutor, ExecutorError

log = logging.getLogger("kubestrap")


def pod_placement(pods_json: str) -> Dict[str, str]:
    """
    {pod name: node name} for Running pods that have been scheduled. Pods
    already marked for deletion still report Running and are left out.
    """
    data = json.loads(pods_json or "{}")
    out: Dict[str, str] = {}
    for item in data.get("items", []):
        if item.get("metadata", {}).get("deletionTimestamp"):
            continue
        node_name = item.get("spec", {}).get("nodeName")
        if node_name and item.get("status", {}).get("phase") == "Running":
            out[item["metadata"]["name"]] = node_name
    return out


def validate_workload(
    executor: CommandExecutor,
    master: Node,
    cluster: ClusterSpec,
    validation: ValidationSpec,
    *,
    renderer: Optional[TemplateRenderer] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> List[StepResult]:
    """
    Deploy a throwaway replicated workload, wait for every replica to run,
    check the replicas landed on more than one node, and delete it.
    The delete is issued whatever happened before it.
    """
    phase = Phase.DONE.value
    renderer = renderer or TemplateRenderer()
    kubectl = f"kubectl --kubeconfig {cluster.admin_kubeconfig} -n {validation.namespace}"
    manifest_path = f"/tmp/{validation.name}.yaml"
    results: List[StepResult] = []

    def _record(res: StepResult) -> None:
        results.append(res)
        if on_result:
            on_result(res)

    manifest = renderer.render(
        "validation-deployment.yaml.j2",
        {
            "name": validation.name,
            "namespace": validation.namespace,
            "replicas": validation.replicas,
            "image": validation.image,
        },
    )

    try:
        try:
            executor.put_text(master, manifest_path, manifest, 0o644)
        except ExecutorError as e:
            _record(StepResult(
                node=master.name, step="workload-deploy", status=StepStatus.FAILED,
                phase=phase, error="StepExecutionFailure", detail=str(e),
            ))
            return results

        deployed = apply_step(
            executor, master,
            ProvisioningStep(name="workload-deploy", apply=(f"{kubectl} apply -f {manifest_path}",)),
            phase=phase, timeout=cluster.command_timeout,
        )
        _record(deployed)
        if deployed.failed:
            return results

        placement: Dict[str, str] = {}
        expected = [f"replica-{i}" for i in range(validation.replicas)]

        def _probe():
            res = executor.execute(master, f"{kubectl} get pods -l app={validation.name} -o json",
                                   cluster.command_timeout)
            if not res.ok:
                raise ValueError(f"kubectl get pods exited {res.exit_code}")
            placement.clear()
            placement.update(pod_placement(res.stdout))
            # exact count: surplus pods mean an older replica set is still around
            return expected if len(placement) == validation.replicas else []

        poll = poll_until(
            _probe, expected,
            interval=validation.interval, timeout=validation.timeout,
            sleep=sleep, clock=clock, cancel=cancel,
        )
        if not poll.ok:
            _record(StepResult(
                node=master.name, step="workload-scheduled", status=StepStatus.FAILED, phase=phase,
                error="ReadinessTimeout",
                detail=f"{len(placement)}/{validation.replicas} replicas running after {validation.timeout:g}s",
            ))
            return results
        _record(StepResult(node=master.name, step="workload-scheduled", status=StepStatus.SUCCEEDED, phase=phase))

        nodes = sorted(set(placement.values()))
        if len(nodes) > 1:
            log.info("Validation replicas spread across %s", ", ".join(nodes))
            _record(StepResult(
                node=master.name, step="workload-placement", status=StepStatus.SUCCEEDED,
                phase=phase, detail=f"replicas on {', '.join(nodes)}",
            ))
        else:
            log.warning("All validation replicas landed on %s; cross-node scheduling unproven", nodes)
            _record(StepResult(
                node=master.name, step="workload-placement", status=StepStatus.FAILED,
                phase=phase, severity=Severity.WARNING, error="PlacementCheck",
                detail=f"all replicas on {', '.join(nodes) or 'no node'}",
            ))
        return results

    finally:
        cleanup = apply_step(
            executor, master,
            ProvisioningStep(
                name="workload-cleanup",
                apply=(
                    f"{kubectl} delete -f {manifest_path} --ignore-not-found --wait=false",
                    f"rm -f {manifest_path}",
                ),
            ),
            phase=phase, timeout=cluster.command_timeout,
        )
        if cleanup.failed:
            cleanup = replace(cleanup, severity=Severity.WARNING)
        _record(cleanup)
