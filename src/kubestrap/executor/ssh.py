# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/executor/ssh.py
from __future__ import annotations

import itertools
import logging
import os
import shlex
import socket
import threading
import time
from typing import Dict, Optional

import paramiko

from kubestrap.bootstrap.models import Node
from kubestrap.executor.interface import CommandResult, CommandTimeout, ConnectionFailed, ExecutorError
from kubestrap.utils.retry import RetryError, retry

log = logging.getLogger("kubestrap")

_counter = itertools.count(1)

_CHUNK = 32768
_POLL_INTERVAL = 0.1


def load_pkey(path) -> paramiko.PKey:
    """Try the key types we support in turn; the first that parses wins."""
    key_path = str(path)
    last: Optional[Exception] = None
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException as e:
            last = e
    raise ConnectionFailed(f"unsupported private key format for {key_path}: {last}")


class SshExecutor:
    """
    CommandExecutor over paramiko. One client per node, opened lazily and
    reused for every command; commands run through `sudo -S` unless the
    connection user is root.

    Command output is never logged: it can carry the join token or the
    admin kubeconfig.
    """

    def __init__(
        self,
        connect_timeout: float = 20.0,
        connect_retries: int = 3,
        connect_retry_delay: float = 10.0,
    ):
        self.connect_timeout = connect_timeout
        self.connect_retries = connect_retries
        self.connect_retry_delay = connect_retry_delay
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    # ------------------ connection ------------------

    def _lock_for(self, node: Node) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(node.name, threading.Lock())

    def _open(self, node: Node) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = load_pkey(node.pkey_path) if node.pkey_path else None
        client.connect(
            hostname=node.address,
            port=node.port,
            username=node.username,
            password=node.password if not pkey else None,
            pkey=pkey,
            timeout=self.connect_timeout,
            look_for_keys=pkey is None and node.password is None,
            allow_agent=pkey is None and node.password is None,
        )
        return client

    def _client(self, node: Node) -> paramiko.SSHClient:
        with self._lock_for(node):
            client = self._clients.get(node.name)
            transport = client.get_transport() if client else None
            if client is not None and transport is not None and transport.is_active():
                return client

            def _on_retry(attempt: int, exc: Exception) -> None:
                log.warning("[%s] SSH connect attempt %d/%d failed: %s",
                            node.name, attempt, self.connect_retries, exc)

            connect = retry(
                retries=self.connect_retries,
                delay=self.connect_retry_delay,
                retry_on=(paramiko.SSHException, socket.error),
                on_retry=_on_retry,
            )(self._open)
            try:
                client = connect(node)
            except RetryError as e:
                raise ConnectionFailed(
                    f"cannot reach {node.name} ({node.address}:{node.port}): {e.__cause__}"
                ) from e
            log.debug("[%s] SSH session opened to %s", node.name, node.address)
            self._clients[node.name] = client
            return client

    def close(self) -> None:
        with self._guard:
            clients = list(self._clients.items())
            self._clients.clear()
        for name, client in clients:
            client.close()
            log.debug("[%s] SSH session closed", name)

    # ------------------ commands ------------------

    def _wrap(self, node: Node, command: str) -> str:
        shell = f"{node.interpreter} -c {shlex.quote(command)}"
        if node.username == "root":
            return shell
        return f"sudo -S -p '' {shell}"

    def _collect(self, node: Node, channel: paramiko.Channel, timeout: float):
        """
        Read both streams until the command exits. exec_command's timeout only
        bounds a single read, so the whole run is held to its own deadline and
        the channel is closed when it passes, which ends the remote process.
        """
        deadline = time.monotonic() + timeout
        out, err = [], []
        while True:
            if channel.recv_ready():
                out.append(channel.recv(_CHUNK))
            elif channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_CHUNK))
            elif channel.exit_status_ready():
                break
            else:
                time.sleep(_POLL_INTERVAL)
            if time.monotonic() >= deadline and not channel.exit_status_ready():
                channel.close()
                raise CommandTimeout(node.name, timeout)

        return (
            b"".join(out).decode("utf-8", errors="replace"),
            b"".join(err).decode("utf-8", errors="replace"),
            channel.recv_exit_status(),
        )

    def execute(self, node: Node, command: str, timeout: float) -> CommandResult:
        client = self._client(node)
        log.debug("[%s] $ %s", node.name, command)
        try:
            stdin, stdout, stderr = client.exec_command(self._wrap(node, command), timeout=timeout)
            secret = node.become_password or node.password
            if node.username != "root" and secret:
                stdin.write(secret + "\n")
                stdin.flush()
            stdin.channel.shutdown_write()
            out, err, code = self._collect(node, stdout.channel, timeout)
        except socket.timeout as e:
            raise CommandTimeout(node.name, timeout) from e
        except paramiko.SSHException as e:
            with self._guard:
                self._clients.pop(node.name, None)
            raise ConnectionFailed(f"SSH session to {node.name} failed: {e}") from e

        result = CommandResult(exit_code=code, stdout=out, stderr=err)
        if not result.ok:
            log.debug("[%s] exit %d: %s", node.name, code, result.tail(5))
        return result

    def put_text(self, node: Node, path: str, content: str, mode: int = 0o644) -> None:
        """
        Upload through SFTP to a temp path, then install it into place as root
        so root-owned targets keep their ownership.
        """
        client = self._client(node)
        tmp_remote = f"/tmp/.kubestrap_tmp_{os.getpid()}_{next(_counter)}"
        try:
            sftp = client.open_sftp()
            try:
                with sftp.file(tmp_remote, "w") as f:
                    f.write(content)
                sftp.chmod(tmp_remote, 0o600)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise ConnectionFailed(f"upload to {node.name}:{path} failed: {e}") from e

        parent = os.path.dirname(path) or "/"
        cmd = (
            f"install -d {shlex.quote(parent)} && "
            f"install -m {oct(mode)[2:]} -o root -g root {tmp_remote} {shlex.quote(path)}; "
            f"rc=$?; rm -f {tmp_remote}; exit $rc"
        )
        res = self.execute(node, cmd, self.connect_timeout * 3)
        if not res.ok:
            raise ExecutorError(f"install of {path} on {node.name} failed: {res.tail(3)}")
        log.debug("[%s] wrote %s (mode %s)", node.name, path, oct(mode))
