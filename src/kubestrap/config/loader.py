# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/loader.py

import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from .models import KubestrapConfig

log = logging.getLogger("kubestrap")

SECRETS_ENV = "KUBESTRAP_SECRETS_FILE"


def _overlay(cluster: dict, secrets: dict) -> dict:
    # nested mappings merge key by key; blank secret values never clear a setting
    for key, value in secrets.items():
        current = cluster.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _overlay(current, value)
        elif value is not None and value != "":
            cluster[key] = value
    return cluster


def _secrets_path(cluster_file: Path) -> Optional[Path]:
    override = os.environ.get(SECRETS_ENV)
    if override:
        if Path(override).is_file():
            return Path(override)
        log.warning("%s points at %s, which is not a file; ignoring it", SECRETS_ENV, override)
        return None
    beside = cluster_file.with_name("secrets.yaml")
    return beside if beside.is_file() else None


def _read(path: Path) -> dict:
    data = yaml.safe_load(os.path.expandvars(path.read_text()))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    return data


def load_config(path: str | Path) -> KubestrapConfig:
    """
    Read a cluster definition and validate it.

    SSH passwords and key paths usually stay out of the cluster file. They go
    in a ``secrets.yaml`` laid out the same way, found through
    ``KUBESTRAP_SECRETS_FILE`` or next to the cluster file, and overlaid on it
    before validation. ``${VAR}`` references are expanded in both files.
    """
    path = Path(path)
    data = _read(path)

    secrets = _secrets_path(path)
    if secrets is not None:
        log.debug("Overlaying connection secrets from %s", secrets)
        _overlay(data, _read(secrets))

    return KubestrapConfig.model_validate(data)
