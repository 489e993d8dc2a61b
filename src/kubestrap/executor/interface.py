# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/executor/interface.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from kubestrap.bootstrap.models import Node


class ExecutorError(RuntimeError):
    """Base class for failures at the command executor boundary."""


class ConnectionFailed(ExecutorError):
    """Raised when a node cannot be reached or authenticated."""


class CommandTimeout(ExecutorError):
    def __init__(self, node: str, timeout: float):
        super().__init__(f"command on {node} timed out after {timeout:g}s")
        self.node = node
        self.timeout = timeout


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, lines: int = 20) -> str:
        """Last lines of stderr (or stdout when stderr is empty) for diagnostics."""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


class CommandExecutor(Protocol):
    """
    Runs privileged commands on inventory nodes.
    Non-zero exit is reported through CommandResult, never raised;
    only timeouts and connectivity problems raise ExecutorError.
    """

    def execute(self, node: "Node", command: str, timeout: float) -> CommandResult: ...

    def put_text(self, node: "Node", path: str, content: str, mode: int = 0o644) -> None: ...

    def close(self) -> None: ...
