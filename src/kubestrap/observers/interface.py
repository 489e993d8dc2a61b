# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/interface.py
from __future__ import annotations

from typing import Protocol, runtime_checkable

from .events import BaseEvent


@runtime_checkable
class Observer(Protocol):
    """Receives run events. EventBus delivers them one at a time, from whichever node thread emitted."""

    def notify(self, event: BaseEvent) -> None: ...
