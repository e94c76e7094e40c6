import pytest

from kubeha.errors import TransientError
from kubeha.execution.local import LocalExecutor
from kubeha.execution.models import Command, StagePayload, sh


def test_render_quotes_every_argument():
    cmd = Command(argv=("echo", "a b", "$HOME", "x;rm -rf /"), sudo=True, env={"LC_ALL": "C"})
    assert cmd.render() == "sudo -n env LC_ALL=C echo 'a b' '$HOME' 'x;rm -rf /'"


def test_sh_passes_values_as_positional_parameters():
    cmd = sh('[ -f "$1" ] || touch "$1"', "/tmp/it's here")
    assert cmd.argv == ("sh", "-c", '[ -f "$1" ] || touch "$1"', "sh", "/tmp/it's here")


def test_secret_commands_describe_and_repr_redacted():
    cmd = sh('kubeadm join --token "$1"', "abc.def", secret=True)
    assert cmd.describe() == "sh <redacted>"
    assert "abc.def" not in repr(cmd)
    assert "abc.def" in cmd.render()


def test_payload_redacts_every_secret():
    payload = StagePayload((Command(argv=("true",)),), redactions=("tok", "", "hash"))
    assert payload.redact("tok and hash") == "*** and ***"
    assert "tok" not in repr(payload)
    assert len(payload) == 1


def test_local_executor_captures_output_and_exit_code():
    res = LocalExecutor().execute("localhost", sh("echo out; echo err >&2; exit 3"), timeout=10)
    assert (res.stdout, res.stderr, res.exit_code) == ("out\n", "err\n", 3)


def test_local_executor_feeds_stdin_and_env():
    ex = LocalExecutor()
    assert ex.execute("localhost", Command(argv=("cat",), stdin="data"), timeout=10).stdout == "data"
    res = ex.execute("localhost", Command(argv=("sh", "-c", 'echo "$GREETING"'), env={"GREETING": "hi"}), timeout=10)
    assert res.stdout == "hi\n"


def test_local_executor_timeout_is_transient():
    with pytest.raises(TransientError):
        LocalExecutor().execute("localhost", Command(argv=("sleep", "5")), timeout=0.2)


def test_local_executor_missing_binary_is_exit_127():
    res = LocalExecutor().execute("localhost", Command(argv=("kubeha-no-such-binary",)), timeout=5)
    assert res.exit_code == 127 and not res.ok
