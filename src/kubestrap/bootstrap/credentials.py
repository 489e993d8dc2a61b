# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/credentials.py
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from kubestrap.bootstrap.errors import PhaseContractViolation
from kubestrap.bootstrap.models import ClusterCredentials

log = logging.getLogger("kubestrap")


def parse_admin_kubeconfig(text: str) -> ClusterCredentials:
    """
    Build ClusterCredentials from the admin kubeconfig kubeadm wrote on the
    control-plane node. The endpoint is the first cluster's server URL.
    """
    try:
        data = yaml.safe_load(text) or {}
        server = data["clusters"][0]["cluster"]["server"]
    except (yaml.YAMLError, KeyError, IndexError, TypeError) as e:
        raise PhaseContractViolation("admin kubeconfig has no cluster server entry") from e
    return ClusterCredentials(endpoint=server, kubeconfig=text)


def write_credentials(creds: ClusterCredentials, path: Path) -> Path:
    """
    Write the kubeconfig for operator use. Owner read/write only,
    including when the file already existed with wider permissions.
    """
    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(creds.kubeconfig)
    os.chmod(path, 0o600)
    log.info("Cluster credentials for %s written to %s", creds.endpoint, path)
    return path
