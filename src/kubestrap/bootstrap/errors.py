# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/errors.py
from typing import Iterable


class BootstrapError(RuntimeError):
    """Base class for cluster bootstrap failures."""


class PreconditionUnmet(BootstrapError):
    """A step's check did not hold. The engine applies the step instead of raising."""


class StepExecutionFailure(BootstrapError):
    def __init__(self, node: str, step: str, message: str):
        super().__init__(f"[{node}] {step}: {message}")
        self.node = node
        self.step = step


class PhaseContractViolation(BootstrapError):
    """A phase produced output that no longer matches what later phases rely on."""


class TokenExtractionError(PhaseContractViolation):
    pass


class ReadinessTimeout(BootstrapError):
    def __init__(self, pending: Iterable[str], timeout: float):
        self.pending = sorted(pending)
        self.timeout = timeout
        super().__init__(
            f"not ready after {timeout:g}s: {', '.join(self.pending) or '-'}"
        )


class TeardownResidualFailure(BootstrapError):
    pass


class InvalidTransition(BootstrapError):
    pass
