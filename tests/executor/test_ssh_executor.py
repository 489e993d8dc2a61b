import shlex
import socket
import time

import pytest

import kubestrap.executor.ssh as ssh_mod
from kubestrap.bootstrap.models import Node, Role
from kubestrap.executor.interface import CommandTimeout, ConnectionFailed, ExecutorError
from kubestrap.executor.ssh import SshExecutor

# ----------------- Fakes for Paramiko -----------------


class _FakeChannel:
    def __init__(self, log, out="", err="", rc=0, trickle=False, recv_exc=None):
        self.log = log
        self._out = out.encode()
        self._err = err.encode()
        self._rc = rc
        self._trickle = trickle
        self._exc = recv_exc
        self.write_closed = False
        self.closed = False

    def recv_ready(self):
        return self._trickle or self._exc is not None or bool(self._out)

    def recv(self, n):
        if self._exc:
            raise self._exc
        if self._trickle:
            # a command that keeps printing and never exits
            time.sleep(0.01)
            return b"."
        chunk, self._out = self._out[:n], self._out[n:]
        return chunk

    def recv_stderr_ready(self):
        return bool(self._err)

    def recv_stderr(self, n):
        chunk, self._err = self._err[:n], self._err[n:]
        return chunk

    def exit_status_ready(self):
        return not self._trickle

    def recv_exit_status(self):
        return self._rc

    def shutdown_write(self):
        self.write_closed = True

    def close(self):
        self.closed = True
        self.log.append(("channel_close",))


class _Stdin:
    def __init__(self, log, channel):
        self.log = log
        self.channel = channel

    def write(self, data):
        self.log.append(("stdin", data))

    def flush(self):
        pass


class _Stream:
    def __init__(self, channel):
        self.channel = channel


class _FakeFile:
    def __init__(self, log, path):
        self.log = log
        self.path = path
        self._buf = []

    def write(self, data):
        self._buf.append(data)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.log.append(("sftp_write", self.path, "".join(self._buf)))


class FakeSFTP:
    def __init__(self, log):
        self.log = log

    def file(self, path, mode):
        return _FakeFile(self.log, path)

    def chmod(self, path, mode):
        self.log.append(("sftp_chmod", path, mode))

    def close(self):
        self.log.append(("sftp_close",))


class _Transport:
    def is_active(self):
        return True


class FakeSSHClient:
    log = []
    responses = {}
    connect_failures = 0
    read_timeout = False
    trickle = False

    def __init__(self):
        self._connected = False

    def set_missing_host_key_policy(self, policy):
        pass

    def connect(self, **kw):
        if FakeSSHClient.connect_failures:
            FakeSSHClient.connect_failures -= 1
            self.log.append(("connect_failed", kw["hostname"]))
            raise socket.error("connection refused")
        self.log.append(("connect", kw))
        self._connected = True

    def get_transport(self):
        return _Transport() if self._connected else None

    def open_sftp(self):
        return FakeSFTP(self.log)

    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd, timeout))
        out, err, rc = self.responses.get(cmd, ("", "", 0))
        ch = _FakeChannel(
            self.log, out, err, rc,
            trickle=FakeSSHClient.trickle,
            recv_exc=socket.timeout() if FakeSSHClient.read_timeout else None,
        )
        return _Stdin(self.log, ch), _Stream(ch), _Stream(ch)

    def close(self):
        self.log.append(("close",))


@pytest.fixture
def client_log(monkeypatch):
    FakeSSHClient.log = []
    FakeSSHClient.responses = {}
    FakeSSHClient.connect_failures = 0
    FakeSSHClient.read_timeout = False
    FakeSSHClient.trickle = False
    monkeypatch.setattr(ssh_mod.paramiko, "SSHClient", FakeSSHClient)
    return FakeSSHClient.log


def _node(user="ubuntu", **kw):
    return Node(name="w1", address="10.0.0.11", role=Role.WORKER, username=user, **kw)


def _execs(log):
    return [e for e in log if e[0] == "exec"]


# ----------------- Tests -----------------


def test_commands_run_through_sudo_with_become_password(client_log):
    ex = SshExecutor(connect_retry_delay=0)
    node = _node(become_password="hunter2")

    res = ex.execute(node, "systemctl enable kubelet", 30)

    assert res.ok
    (_, cmd, timeout), = _execs(client_log)
    assert cmd == "sudo -S -p '' /bin/bash -c " + shlex.quote("systemctl enable kubelet")
    assert timeout == 30
    assert ("stdin", "hunter2\n") in client_log


def test_root_user_skips_sudo(client_log):
    ex = SshExecutor(connect_retry_delay=0)

    ex.execute(_node(user="root"), "swapoff -a", 10)

    (_, cmd, _), = _execs(client_log)
    assert cmd == "/bin/bash -c 'swapoff -a'"
    assert not any(e[0] == "stdin" for e in client_log)


def test_interpreter_is_configurable(client_log):
    ex = SshExecutor(connect_retry_delay=0)

    ex.execute(_node(user="root", interpreter="/bin/sh"), "true", 10)

    assert _execs(client_log)[0][1] == "/bin/sh -c true"


def test_non_zero_exit_is_returned_not_raised(client_log):
    node = _node(user="root")
    FakeSSHClient.responses["/bin/bash -c false"] = ("", "boom\n", 1)
    ex = SshExecutor(connect_retry_delay=0)

    res = ex.execute(node, "false", 10)

    assert res.exit_code == 1
    assert res.stderr == "boom\n"


def test_session_is_reused_per_node(client_log):
    ex = SshExecutor(connect_retry_delay=0)
    node = _node()

    ex.execute(node, "true", 10)
    ex.execute(node, "true", 10)

    assert sum(1 for e in client_log if e[0] == "connect") == 1


def test_connect_is_retried_then_reported(client_log):
    FakeSSHClient.connect_failures = 5
    ex = SshExecutor(connect_retries=3, connect_retry_delay=0)

    with pytest.raises(ConnectionFailed, match="cannot reach w1"):
        ex.execute(_node(), "true", 10)

    assert sum(1 for e in client_log if e[0] == "connect_failed") == 3


def test_connect_recovers_within_retries(client_log):
    FakeSSHClient.connect_failures = 2
    ex = SshExecutor(connect_retries=3, connect_retry_delay=0)

    assert ex.execute(_node(), "true", 10).ok


def test_read_timeout_raises_command_timeout(client_log):
    FakeSSHClient.read_timeout = True
    ex = SshExecutor(connect_retry_delay=0)

    with pytest.raises(CommandTimeout) as exc:
        ex.execute(_node(), "kubeadm init", 900)

    assert isinstance(exc.value, ExecutorError)
    assert exc.value.timeout == 900


def test_chatty_command_is_cut_off_at_the_overall_deadline(client_log):
    FakeSSHClient.trickle = True
    ex = SshExecutor(connect_retry_delay=0)

    t0 = time.monotonic()
    with pytest.raises(CommandTimeout) as exc:
        ex.execute(_node(), "kubeadm init", 0.2)

    assert time.monotonic() - t0 < 5
    assert exc.value.timeout == 0.2
    # closing the channel is what stops the remote process
    assert ("channel_close",) in client_log


def test_put_text_uploads_then_installs_as_root(client_log):
    ex = SshExecutor(connect_retry_delay=0)
    node = _node(user="root")

    ex.put_text(node, "/etc/sysctl.d/99-kubernetes-cri.conf", "net.ipv4.ip_forward = 1\n", 0o644)

    (_, tmp_path, content), = [e for e in client_log if e[0] == "sftp_write"]
    assert tmp_path.startswith("/tmp/.kubestrap_tmp_")
    assert content == "net.ipv4.ip_forward = 1\n"
    (_, install_cmd, _), = _execs(client_log)
    assert f"install -m 644 -o root -g root {tmp_path} /etc/sysctl.d/99-kubernetes-cri.conf" in install_cmd
    assert f"rm -f {tmp_path}" in install_cmd


def test_put_text_install_failure_raises(client_log):
    ex = SshExecutor(connect_retry_delay=0)
    node = _node(user="root")
    FakeSSHClient.responses = _AnyCommand(("", "read-only file system", 1))

    with pytest.raises(ExecutorError, match="install of /etc/x"):
        ex.put_text(node, "/etc/x", "data")


def test_close_closes_every_session(client_log):
    ex = SshExecutor(connect_retry_delay=0)
    ex.execute(_node(), "true", 10)
    ex.execute(Node(name="w2", address="10.0.0.12", role=Role.WORKER, username="ubuntu"), "true", 10)

    ex.close()

    assert sum(1 for e in client_log if e[0] == "close") == 2


class _AnyCommand(dict):
    def __init__(self, response):
        super().__init__()
        self._response = response

    def get(self, key, default=None):
        return self._response
