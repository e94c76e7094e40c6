import logging
import socket
import threading

import paramiko
import pytest

from kubeha.errors import LogicalError, TransientError
from kubeha.execution import ssh
from kubeha.execution.models import Command, sh
from kubeha.execution.ssh import SshExecutor
from kubeha.inventory.models import Node, NodeRole

# ----------------- Fakes for Paramiko -----------------

class _FakeChannel:
    """Serves canned output; ``endless`` keeps printing and never exits."""

    def __init__(self, out="", err="", rc=0, exc=None, endless=False):
        self._out = out.encode()
        self._err = err.encode()
        self._rc = rc
        self._exc = exc
        self._endless = endless
        self.write_closed = False
        self.closed = False
    def recv_ready(self): return self._endless or self._exc is not None or bool(self._out)
    def recv(self, n):
        if self._exc:
            raise self._exc
        if self._endless:
            return b"Waiting for cache lock\n"
        data, self._out = self._out[:n], self._out[n:]
        return data
    def recv_stderr_ready(self): return bool(self._err)
    def recv_stderr(self, n):
        data, self._err = self._err[:n], self._err[n:]
        return data
    def exit_status_ready(self): return not self._endless
    def recv_exit_status(self): return self._rc
    def shutdown_write(self): self.write_closed = True
    def close(self): self.closed = True

class _Stdin:
    def __init__(self, channel):
        self.channel = channel
        self.data = []
    def write(self, data): self.data.append(data)

class _Stream:
    def __init__(self, channel):
        self.channel = channel

class FakeSSHClient:
    def __init__(self, log, state):
        self.log = log
        self.state = state
        self.stdins = []
        self.channels = []
    def set_missing_host_key_policy(self, policy): pass
    def connect(self, **kw):
        self.log.append(("connect", kw))
        hook = self.state.get("connect_hook")
        if hook:
            hook(kw["hostname"])
        if self.state["connect_error"]:
            raise self.state["connect_error"]
    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd, timeout))
        ch = _FakeChannel(**self.state["responses"].get(cmd, {}))
        self.channels.append(ch)
        stdin = _Stdin(ch)
        self.stdins.append(stdin)
        return stdin, _Stream(ch), _Stream(ch)
    def close(self):
        self.log.append(("close",))


NODE = Node("10.0.0.5", NodeRole.WORKER, "ubuntu", port=2222)


@pytest.fixture
def fake_clients(monkeypatch):
    log, clients = [], []
    state = {"responses": {}, "connect_error": None}
    lock = threading.Lock()

    def _factory():
        c = FakeSSHClient(log, state)
        with lock:
            clients.append(c)
        return c

    monkeypatch.setattr(ssh.paramiko, "SSHClient", _factory)
    return log, clients, state


def _executor(*nodes, **kw):
    nodes = nodes or (NODE,)
    return SshExecutor({n.address: n for n in nodes}, poll_interval=0, **kw)


def test_execute_runs_rendered_command_and_reuses_client(fake_clients):
    log, clients, state = fake_clients
    cmd = Command(argv=("kubectl", "get", "nodes"), sudo=True)
    state["responses"][cmd.render()] = {"out": "node-a Ready\n"}

    ex = _executor()
    res = ex.execute(NODE.address, cmd, timeout=30)
    ex.execute(NODE.address, cmd, timeout=30)

    assert res.ok and res.stdout == "node-a Ready\n"
    connects = [e for e in log if e[0] == "connect"]
    assert len(connects) == 1
    kw = connects[0][1]
    assert (kw["hostname"], kw["port"], kw["username"]) == ("10.0.0.5", 2222, "ubuntu")
    assert ("exec", "sudo -n kubectl get nodes", 30) in log


def test_stdin_is_written_then_closed(fake_clients):
    _, clients, _ = fake_clients
    _executor().execute(NODE.address, Command(argv=("tee", "/etc/x"), stdin="payload\n"), timeout=5)
    [stdin] = clients[0].stdins
    assert stdin.data == ["payload\n"]
    assert stdin.channel.write_closed


def test_non_zero_exit_is_returned_not_raised(fake_clients):
    _, _, state = fake_clients
    cmd = Command(argv=("false",))
    state["responses"][cmd.render()] = {"err": "nope", "rc": 1}
    res = _executor().execute(NODE.address, cmd, timeout=5)
    assert (res.ok, res.exit_code, res.stderr) == (False, 1, "nope")


def test_large_output_is_read_in_full(fake_clients):
    _, _, state = fake_clients
    cmd = Command(argv=("journalctl",))
    state["responses"][cmd.render()] = {"out": "x" * 100000, "err": "warn\n"}
    res = _executor().execute(NODE.address, cmd, timeout=5)
    assert len(res.stdout) == 100000 and res.stderr == "warn\n"


def test_read_timeout_is_transient_and_drops_client(fake_clients):
    log, clients, state = fake_clients
    cmd = Command(argv=("sleep", "100"))
    state["responses"][cmd.render()] = {"exc": socket.timeout("timed out")}

    ex = _executor()
    with pytest.raises(TransientError):
        ex.execute(NODE.address, cmd, timeout=1)
    assert ("close",) in log

    ex.execute(NODE.address, Command(argv=("true",)), timeout=1)
    assert len(clients) == 2


def test_chatty_command_still_hits_the_deadline(fake_clients):
    _, clients, state = fake_clients
    cmd = Command(argv=("apt-get", "install", "-y", "kubeadm"))
    state["responses"][cmd.render()] = {"endless": True}

    with pytest.raises(TransientError, match="timed out"):
        _executor().execute(NODE.address, cmd, timeout=0.05)
    assert clients[0].channels[0].closed


def test_waiting_for_exit_sleeps_between_polls(fake_clients, monkeypatch):
    _, _, state = fake_clients
    cmd = Command(argv=("true",))
    state["responses"][cmd.render()] = {"out": "done"}
    polls = {"n": 0}
    ready = _FakeChannel.exit_status_ready

    def _slow_exit(self):
        polls["n"] += 1
        return polls["n"] > 2 and ready(self)

    monkeypatch.setattr(_FakeChannel, "exit_status_ready", _slow_exit)
    sleeps = []
    ex = SshExecutor({NODE.address: NODE}, poll_interval=0.25, sleep=sleeps.append)
    assert ex.execute(NODE.address, cmd, timeout=5).stdout == "done"
    assert sleeps == [0.25, 0.25]


@pytest.mark.parametrize("error", [
    paramiko.SSHException("banner"),
    ConnectionRefusedError("refused"),
    EOFError(),
])
def test_connection_failures_are_transient_and_close_the_client(fake_clients, error):
    log, _, state = fake_clients
    state["connect_error"] = error
    with pytest.raises(TransientError):
        _executor().execute(NODE.address, Command(argv=("true",)), timeout=1)
    assert ("close",) in log


def test_authentication_failure_is_logical(fake_clients):
    log, _, state = fake_clients
    state["connect_error"] = paramiko.AuthenticationException("denied")
    with pytest.raises(LogicalError, match="authentication failed"):
        _executor().execute(NODE.address, Command(argv=("true",)), timeout=1)
    assert ("close",) in log


def test_missing_key_file_is_logical(fake_clients, tmp_path):
    log, _, _ = fake_clients
    node = Node("10.0.0.7", NodeRole.WORKER, "ubuntu", pkey_path=tmp_path / "id_missing")
    with pytest.raises(LogicalError, match="cannot read private key"):
        _executor(node).execute(node.address, Command(argv=("true",)), timeout=1)
    assert not [e for e in log if e[0] == "connect"]


def test_unsupported_key_format_is_logical(fake_clients, tmp_path):
    key = tmp_path / "id_garbage"
    key.write_text("this is not a private key\n")
    node = Node("10.0.0.7", NodeRole.WORKER, "ubuntu", pkey_path=key)
    with pytest.raises(LogicalError, match="unsupported private key format"):
        _executor(node).execute(node.address, Command(argv=("true",)), timeout=1)


def test_slow_handshake_does_not_hold_up_other_nodes(fake_clients):
    _, _, state = fake_clients
    entered, release = threading.Event(), threading.Event()

    def _hook(hostname):
        if hostname == "slow":
            entered.set()
            release.wait(5)

    state["connect_hook"] = _hook
    slow = Node("slow", NodeRole.WORKER, "ubuntu")
    ex = _executor(NODE, slow)
    blocked = threading.Thread(target=ex.execute, args=("slow", Command(argv=("true",)), 1))
    blocked.start()
    try:
        assert entered.wait(2)
        done = threading.Event()

        def _fast():
            ex.execute(NODE.address, Command(argv=("true",)), 1)
            done.set()

        threading.Thread(target=_fast).start()
        assert done.wait(2)
    finally:
        release.set()
        blocked.join(5)


def test_concurrent_first_use_of_a_node_connects_once(fake_clients):
    log, _, state = fake_clients
    entered, release = threading.Event(), threading.Event()

    def _hook(hostname):
        entered.set()
        release.wait(5)

    state["connect_hook"] = _hook
    ex = _executor()
    threads = [
        threading.Thread(target=ex.execute, args=(NODE.address, Command(argv=("true",)), 1))
        for _ in range(3)
    ]
    for t in threads:
        t.start()
    assert entered.wait(2)
    release.set()
    for t in threads:
        t.join(5)
    assert len([e for e in log if e[0] == "connect"]) == 1
    assert len([e for e in log if e[0] == "exec"]) == 3


def test_close_closes_every_client(fake_clients):
    log, _, _ = fake_clients
    other = Node("10.0.0.6", NodeRole.WORKER, "ubuntu")
    ex = _executor(NODE, other)
    ex.execute(NODE.address, Command(argv=("true",)), timeout=1)
    ex.execute(other.address, Command(argv=("true",)), timeout=1)
    ex.close()
    assert log.count(("close",)) == 2


def test_secret_commands_are_not_logged(fake_clients, caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("kubeha"), "propagate", True)
    caplog.set_level(logging.DEBUG, logger="kubeha")
    cmd = sh('kubeadm join "$1" --token "$2"', "cp:6443", "abcdef.0123456789abcdef", secret=True)
    _executor().execute(NODE.address, cmd, timeout=1)
    assert "abcdef.0123456789abcdef" not in caplog.text
    assert "<redacted>" in caplog.text
