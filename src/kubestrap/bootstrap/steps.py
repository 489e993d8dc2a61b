# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/steps.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple, Type

from kubestrap.bootstrap.errors import BootstrapError, StepExecutionFailure
from kubestrap.bootstrap.models import Node, Role, StepResult, StepStatus
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.executor.interface import CommandExecutor, ExecutorError
from kubestrap.logging.log import redact

log = logging.getLogger("kubestrap")

ALL_ROLES: FrozenSet[Role] = frozenset(Role)

KERNEL_MODULES = ("overlay", "br_netfilter")

DEFAULT_CONTEXT = {
    "kernel_modules": KERNEL_MODULES,
}


@dataclass(frozen=True)
class FileArtifact:
    path: str
    template: str
    mode: int = 0o644


@dataclass(frozen=True)
class ProvisioningStep:
    """
    One idempotent unit of node configuration.

    check:  exit 0 means the step is already satisfied and nothing runs.
            None means the step always applies (reset-before-act actions).
    apply:  commands run once each, in order; the first non-zero exit fails the step.
    verify: postcondition, run after apply.
    """
    name: str
    apply: Tuple[str, ...]
    check: Optional[str] = None
    verify: Optional[str] = None
    roles: FrozenSet[Role] = ALL_ROLES
    files: Tuple[FileArtifact, ...] = ()
    timeout: Optional[float] = None

    def applies_to(self, node: Node) -> bool:
        return node.role in self.roles


# ------------------ engine ------------------

def _result(node: Node, step: ProvisioningStep, status: StepStatus, t0: float, **kw) -> StepResult:
    return StepResult(
        node=node.name,
        step=step.name,
        status=status,
        duration_ms=int((time.monotonic() - t0) * 1000),
        **kw,
    )


def apply_step(
    executor: CommandExecutor,
    node: Node,
    step: ProvisioningStep,
    *,
    phase: Optional[str] = None,
    timeout: float = 300.0,
    renderer: Optional[TemplateRenderer] = None,
    context: Optional[dict] = None,
    error_kind: Type[BootstrapError] = StepExecutionFailure,
) -> StepResult:
    """
    Apply a single step to a node. Exactly one attempt; never raises for
    command or connectivity failures, those become a failed StepResult.
    """
    t0 = time.monotonic()
    step_timeout = step.timeout or timeout

    try:
        if step.check is not None:
            res = executor.execute(node, step.check, step_timeout)
            if res.ok:
                log.info("[%s] %s: already satisfied, skipping", node.name, step.name)
                return _result(node, step, StepStatus.SKIPPED, t0, phase=phase)

        if step.files:
            renderer = renderer or TemplateRenderer()
            ctx = {**DEFAULT_CONTEXT, "node": node, **(context or {})}
            for artifact in step.files:
                content = renderer.render(artifact.template, ctx)
                executor.put_text(node, artifact.path, content, artifact.mode)

        for cmd in step.apply:
            res = executor.execute(node, cmd, step_timeout)
            if not res.ok:
                raise StepExecutionFailure(node.name, step.name, f"exit {res.exit_code}: {res.tail()}")

        if step.verify is not None:
            res = executor.execute(node, step.verify, step_timeout)
            if not res.ok:
                raise StepExecutionFailure(node.name, step.name, f"postcondition failed: {res.tail()}")

    except (StepExecutionFailure, ExecutorError) as exc:
        detail = redact(str(exc))
        log.error("[%s] %s failed: %s", node.name, step.name, detail)
        return _result(
            node, step, StepStatus.FAILED, t0,
            phase=phase, error=error_kind.__name__, detail=detail,
        )

    log.info("[%s] %s: done", node.name, step.name)
    return _result(node, step, StepStatus.SUCCEEDED, t0, phase=phase)


def capture(
    executor: CommandExecutor,
    node: Node,
    name: str,
    command: str,
    *,
    phase: Optional[str] = None,
    timeout: float = 300.0,
) -> Tuple[StepResult, Optional[str]]:
    """
    Run a read-only command whose stdout a later phase parses.
    Returns the step result and stdout (None when the command failed).
    """
    t0 = time.monotonic()
    step = ProvisioningStep(name=name, apply=(command,))
    try:
        res = executor.execute(node, command, timeout)
    except ExecutorError as exc:
        detail = redact(str(exc))
        log.error("[%s] %s failed: %s", node.name, name, detail)
        return _result(node, step, StepStatus.FAILED, t0, phase=phase,
                       error=StepExecutionFailure.__name__, detail=detail), None
    if not res.ok:
        detail = redact(f"exit {res.exit_code}: {res.tail()}")
        log.error("[%s] %s failed: %s", node.name, name, detail)
        return _result(node, step, StepStatus.FAILED, t0, phase=phase,
                       error=StepExecutionFailure.__name__, detail=detail), None
    return _result(node, step, StepStatus.SUCCEEDED, t0, phase=phase), res.stdout


def apply_steps(
    executor: CommandExecutor,
    node: Node,
    steps: Iterable[ProvisioningStep],
    *,
    stop_on_failure: bool = True,
    cancel: Optional[threading.Event] = None,
    on_result: Optional[Callable[[StepResult], None]] = None,
    **kwargs,
) -> List[StepResult]:
    """
    Apply steps to one node in declared order, skipping those not meant for
    the node's role. A failure aborts the rest of this node's steps unless
    stop_on_failure is False.
    """
    results: List[StepResult] = []
    for step in steps:
        if not step.applies_to(node):
            continue
        if cancel is not None and cancel.is_set():
            log.warning("[%s] run cancelled before %s", node.name, step.name)
            break
        res = apply_step(executor, node, step, **kwargs)
        results.append(res)
        if on_result:
            on_result(res)
        if res.failed and stop_on_failure:
            break
    return results


# ------------------ catalogs ------------------

COMMON_STEPS: Tuple[ProvisioningStep, ...] = (
    ProvisioningStep(
        name="preflight-binaries",
        check="command -v kubeadm >/dev/null && command -v kubelet >/dev/null && command -v kubectl >/dev/null",
        apply=("echo 'kubeadm, kubelet and kubectl must be installed before bootstrap' >&2; exit 1",),
    ),
    ProvisioningStep(
        name="disable-swap",
        check="test -z \"$(swapon --noheadings)\" && ! grep -Eq '^[^#].*\\sswap\\s' /etc/fstab",
        apply=(
            "swapoff -a",
            "sed -i -E 's/^([^#].*\\sswap\\s.*)$/# \\1/' /etc/fstab",
        ),
        verify="test -z \"$(swapon --noheadings)\"",
    ),
    ProvisioningStep(
        name="kernel-modules",
        check=(
            "test -f /etc/modules-load.d/k8s.conf"
            + "".join(f" && lsmod | grep -q '^{m} '" for m in KERNEL_MODULES)
        ),
        files=(FileArtifact("/etc/modules-load.d/k8s.conf", "k8s-modules.conf.j2"),),
        apply=tuple(f"modprobe {m}" for m in KERNEL_MODULES),
    ),
    ProvisioningStep(
        name="sysctl-networking",
        check=(
            "test -f /etc/sysctl.d/99-kubernetes-cri.conf"
            " && test \"$(sysctl -n net.ipv4.ip_forward)\" = 1"
            " && test \"$(sysctl -n net.bridge.bridge-nf-call-iptables)\" = 1"
        ),
        files=(FileArtifact("/etc/sysctl.d/99-kubernetes-cri.conf", "99-kubernetes-cri.conf.j2"),),
        apply=("sysctl --system",),
        verify="test \"$(sysctl -n net.ipv4.ip_forward)\" = 1",
    ),
    ProvisioningStep(
        name="container-runtime",
        check="systemctl is-active --quiet containerd && grep -q 'SystemdCgroup = true' /etc/containerd/config.toml",
        apply=(
            "install -d -m 0755 /etc/containerd",
            "containerd config default | sed 's/SystemdCgroup = false/SystemdCgroup = true/' > /etc/containerd/config.toml",
            "systemctl enable containerd",
            "systemctl restart containerd",
        ),
        verify="systemctl is-active --quiet containerd",
    ),
    ProvisioningStep(
        name="kubelet-enabled",
        check="systemctl is-enabled --quiet kubelet",
        apply=("systemctl enable kubelet",),
    ),
)


def _cri_flag(cri_socket: Optional[str]) -> str:
    return f" --cri-socket {cri_socket}" if cri_socket else ""


def reset_step(node: Node, cri_socket: Optional[str] = None) -> ProvisioningStep:
    """
    Unconditional reset run before kubeadm init/join, which refuse to run
    against a node that already belongs to a cluster.
    """
    return ProvisioningStep(
        name="reset",
        apply=(
            f"kubeadm reset -f{_cri_flag(cri_socket)}",
            f"rm -rf /etc/cni/net.d /root/.kube/config {node.home}/.kube/config",
        ),
    )


def teardown_steps(node: Node, cri_socket: Optional[str] = None) -> Tuple[ProvisioningStep, ...]:
    """
    Cleanup actions for one node. Each check holds on a node that was never
    provisioned, so teardown there is all skipped.
    """
    # files kubeadm leaves behind when a join dies during the kubelet TLS bootstrap
    join_residue = (
        "/etc/kubernetes/pki", "/etc/kubernetes/bootstrap-kubelet.conf",
        "/var/lib/kubelet/config.yaml", "/var/lib/kubelet/kubeadm-flags.env", "/var/lib/kubelet/pki",
    )
    dirs = ("/etc/cni/net.d", "/var/lib/cni", "/var/lib/etcd", "/root/.kube", f"{node.home}/.kube") + join_residue
    return (
        ProvisioningStep(
            name="reset-cluster-membership",
            check=(
                "test ! -e /etc/kubernetes/kubelet.conf"
                " && test ! -e /etc/kubernetes/admin.conf"
                " && test ! -e /etc/kubernetes/manifests/kube-apiserver.yaml"
                " && test ! -e /etc/kubernetes/bootstrap-kubelet.conf"
                " && test ! -d /etc/kubernetes/pki"
                " && test ! -e /var/lib/kubelet/config.yaml"
            ),
            apply=(f"kubeadm reset -f{_cri_flag(cri_socket)}",),
        ),
        ProvisioningStep(
            name="remove-config-dirs",
            check=" && ".join(f"test ! -e {d}" for d in dict.fromkeys(dirs)),
            apply=(f"rm -rf {' '.join(dict.fromkeys(dirs))}",),
        ),
        ProvisioningStep(
            name="flush-network-rules",
            check=(
                "! iptables-save 2>/dev/null | grep -q KUBE-"
                " && ! ip link show cni0 >/dev/null 2>&1"
                " && ! ip link show flannel.1 >/dev/null 2>&1"
            ),
            apply=(
                "iptables -F && iptables -t nat -F && iptables -t mangle -F && iptables -X",
                "ip link delete cni0 2>/dev/null || true",
                "ip link delete flannel.1 2>/dev/null || true",
                "if command -v ipvsadm >/dev/null; then ipvsadm --clear; fi",
            ),
        ),
    )
