# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/token_broker.py
from __future__ import annotations

import re

from kubestrap.bootstrap.errors import TokenExtractionError
from kubestrap.bootstrap.models import JoinToken
from kubestrap.logging.log import register_secret

_JOIN_RE = re.compile(r"kubeadm\s+join\s+(?P<endpoint>[^\s\\]+)(?P<flags>[^\n]*)")
_TOKEN_RE = re.compile(r"--token[\s=]+(?P<token>[a-z0-9]{6}\.[a-z0-9]{16})\b")
_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash[\s=]+(?P<hash>sha256:[a-f0-9]{64})\b")


def extract_join_token(output: str) -> JoinToken:
    """
    Parse the join material out of `kubeadm token create --print-join-command`
    (or the tail of `kubeadm init`). Line continuations are folded first.

    Raises TokenExtractionError when any piece is missing; that means kubeadm's
    output changed shape, so the caller must not retry.
    """
    folded = re.sub(r"\\\s*\n\s*", " ", output or "")

    m = _JOIN_RE.search(folded)
    if not m:
        raise TokenExtractionError("no 'kubeadm join <endpoint>' line in control-plane output")

    flags = m.group("flags")
    token = _TOKEN_RE.search(flags)
    ca_hash = _HASH_RE.search(flags)
    if not token:
        raise TokenExtractionError("join command has no bootstrap token")
    if not ca_hash:
        raise TokenExtractionError("join command has no discovery CA cert hash")

    register_secret(token.group("token"))
    return JoinToken(
        endpoint=m.group("endpoint"),
        token=token.group("token"),
        ca_cert_hash=ca_hash.group("hash"),
    )
