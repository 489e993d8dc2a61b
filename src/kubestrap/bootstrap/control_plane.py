# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/control_plane.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence

from kubestrap.bootstrap.credentials import parse_admin_kubeconfig
from kubestrap.bootstrap.errors import PhaseContractViolation
from kubestrap.bootstrap.models import (
    ClusterBootstrapState,
    Node,
    Phase,
    PhaseOutcome,
    StepResult,
    StepStatus,
)
from kubestrap.bootstrap.steps import (
    COMMON_STEPS,
    ProvisioningStep,
    apply_steps,
    capture,
    reset_step,
)
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.config.models import ClusterSpec
from kubestrap.executor.interface import CommandExecutor

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class ControlPlaneOutcome(PhaseOutcome):
    join_output: Optional[str] = None


def init_command(node: Node, cluster: ClusterSpec) -> str:
    advertise = cluster.advertise_address or node.address
    cmd = (
        f"kubeadm init --pod-network-cidr={cluster.pod_network_cidr} "
        f"--apiserver-advertise-address={advertise} --node-name {node.name}"
    )
    if cluster.kubernetes_version:
        cmd += f" --kubernetes-version {cluster.kubernetes_version}"
    if cluster.cri_socket:
        cmd += f" --cri-socket {cluster.cri_socket}"
    return cmd


def control_plane_steps(node: Node, cluster: ClusterSpec) -> List[ProvisioningStep]:
    """reset -> init -> user kubeconfig -> pod network, in that order."""
    admin = cluster.admin_kubeconfig
    user = node.username
    steps = [
        reset_step(node, cluster.cri_socket),
        ProvisioningStep(
            name="init",
            apply=(init_command(node, cluster),),
            verify=f"test -s {admin}",
            timeout=cluster.init_timeout,
        ),
        ProvisioningStep(
            name="user-kubeconfig",
            apply=(
                f"install -d -m 0700 -o {user} -g {user} {node.home}/.kube",
                f"install -m 0600 -o {user} -g {user} {admin} {node.home}/.kube/config",
            ),
        ),
    ]
    if cluster.network_manifest:
        steps.append(
            ProvisioningStep(
                name="pod-network",
                apply=(f"kubectl --kubeconfig {admin} apply -f {cluster.network_manifest}",),
            )
        )
    return steps


def provision_control_plane(
    executor: CommandExecutor,
    node: Node,
    state: ClusterBootstrapState,
    cluster: ClusterSpec,
    *,
    steps: Sequence[ProvisioningStep] = COMMON_STEPS,
    renderer: Optional[TemplateRenderer] = None,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> PhaseOutcome:
    """Common step catalog on the control-plane node."""
    log.info("[%s] Provisioning control-plane node...", node.name)
    results = apply_steps(
        executor, node, steps,
        phase=Phase.COMMON_PROVISIONED.value,
        timeout=cluster.command_timeout,
        renderer=renderer,
        cancel=cancel,
        on_result=on_result,
    )
    return PhaseOutcome(state=state, results=results)


def initialize_control_plane(
    executor: CommandExecutor,
    node: Node,
    state: ClusterBootstrapState,
    cluster: ClusterSpec,
    *,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
) -> ControlPlaneOutcome:
    """
    One-time cluster initialization. kubeadm init is not re-runnable, so the
    node is reset first; the phase as a whole can be repeated after a failure.
    On success the state carries the admin credentials and the raw join
    command output is returned for the token broker.
    """
    phase = Phase.CONTROL_PLANE_READY.value
    log.info("[%s] Initializing control plane...", node.name)

    results = apply_steps(
        executor, node, control_plane_steps(node, cluster),
        phase=phase,
        timeout=cluster.command_timeout,
        cancel=cancel,
        on_result=on_result,
    )
    if any(r.failed for r in results) or (cancel is not None and cancel.is_set()):
        return ControlPlaneOutcome(state=state, results=results)

    if not cluster.network_manifest:
        skipped = StepResult(node=node.name, step="pod-network", status=StepStatus.SKIPPED, phase=phase)
        results.append(skipped)
        if on_result:
            on_result(skipped)

    res, kubeconfig_text = capture(
        executor, node, "admin-credentials", f"cat {cluster.admin_kubeconfig}",
        phase=phase, timeout=cluster.command_timeout,
    )
    credentials = None
    if kubeconfig_text is not None:
        try:
            credentials = parse_admin_kubeconfig(kubeconfig_text)
        except PhaseContractViolation as e:
            res = replace(res, status=StepStatus.FAILED, error=type(e).__name__, detail=str(e))
    results.append(res)
    if on_result:
        on_result(res)
    if credentials is None:
        return ControlPlaneOutcome(state=state, results=results)

    res, join_output = capture(
        executor, node, "join-command", "kubeadm token create --print-join-command",
        phase=phase, timeout=cluster.command_timeout,
    )
    results.append(res)
    if on_result:
        on_result(res)
    if join_output is None:
        return ControlPlaneOutcome(state=state, results=results)

    new_state = replace(state, control_plane_initialized=True, credentials=credentials)
    return ControlPlaneOutcome(state=new_state, results=results, join_output=join_output)
