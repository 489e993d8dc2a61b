import threading

from conftest import make_node, nodes_json

from kubestrap.bootstrap.errors import ReadinessTimeout
from kubestrap.bootstrap.models import ClusterBootstrapState, Role, StepStatus
from kubestrap.bootstrap.readiness import poll_until, ready_nodes, verify_nodes_ready
from kubestrap.executor.interface import ConnectionFailed


def test_poll_returns_as_soon_as_everything_is_ready(clock):
    answers = iter([{"a"}, {"a", "b"}])

    res = poll_until(lambda: next(answers), ["a", "b"], interval=1, timeout=10,
                     sleep=clock.sleep, clock=clock)

    assert res.ok
    assert res.attempts == 2
    assert clock.sleeps == [1]


def test_poll_gives_up_after_two_intervals(clock):
    res = poll_until(lambda: {"a"}, ["a", "b"], interval=1, timeout=2,
                     sleep=clock.sleep, clock=clock)

    assert not res.ok
    assert res.pending == frozenset({"b"})
    assert res.attempts == 3
    assert clock.now == 2


def test_probe_errors_count_as_not_ready(clock):
    calls = []

    def _probe():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionFailed("apiserver not up yet")
        return {"a"}

    res = poll_until(_probe, ["a"], interval=1, timeout=5, sleep=clock.sleep, clock=clock)

    assert res.ok
    assert res.attempts == 2


def test_poll_stops_on_cancel(clock):
    cancel = threading.Event()
    cancel.set()

    res = poll_until(lambda: set(), ["a"], interval=1, timeout=100,
                     sleep=clock.sleep, clock=clock, cancel=cancel)

    assert res.cancelled
    assert res.attempts == 1


def test_timeout_error_lists_pending_nodes():
    res = poll_until(lambda: set(), ["w2", "w1"], interval=1, timeout=0,
                     sleep=lambda s: None)

    err = res.error(600)

    assert isinstance(err, ReadinessTimeout)
    assert err.pending == ["w1", "w2"]
    assert "w1, w2" in str(err)


def test_ready_nodes_reads_ready_condition():
    assert ready_nodes(nodes_json("m1", "w1", not_ready=("w2",))) == {"m1", "w1"}
    assert ready_nodes("") == set()


def test_verify_nodes_ready_reports_each_node(fake, cluster, clock):
    master = make_node("m1", Role.CONTROL_PLANE)
    fake.on("get nodes -o json", stdout=nodes_json("m1", "w1", not_ready=("w2",)))

    out = verify_nodes_ready(
        fake, master, ["m1", "w1", "w2"], ClusterBootstrapState(), cluster,
        sleep=clock.sleep, clock=clock,
    )

    by_node = {r.node: r for r in out.results}
    assert by_node["m1"].status == StepStatus.SUCCEEDED
    assert by_node["w1"].status == StepStatus.SUCCEEDED
    assert by_node["w2"].status == StepStatus.FAILED
    assert by_node["w2"].error == "ReadinessTimeout"
    assert out.state.readiness == {"m1": True, "w1": True, "w2": False}
    assert not out.ok
    assert fake.commands("m1") == ["kubectl --kubeconfig /etc/kubernetes/admin.conf get nodes -o json"] * 3


def test_failed_kubectl_keeps_polling(fake, cluster, clock):
    master = make_node("m1", Role.CONTROL_PLANE)
    fake.on("get nodes -o json", exit_code=1, stderr="connection refused")

    out = verify_nodes_ready(fake, master, ["m1"], ClusterBootstrapState(), cluster,
                             sleep=clock.sleep, clock=clock)

    assert not out.ok
    assert len(fake.commands()) == 3
