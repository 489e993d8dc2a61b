from conftest import make_node, pods_json

from kubestrap.bootstrap.models import Role, Severity, StepStatus
from kubestrap.bootstrap.validator import pod_placement, validate_workload

DELETE = "delete -f /tmp/kubestrap-validation.yaml"


def _run(fake, cluster, validation, clock):
    master = make_node("m1", Role.CONTROL_PLANE)
    return validate_workload(fake, master, cluster, validation, sleep=clock.sleep, clock=clock)


def _by_step(results):
    return {r.step: r for r in results}


def test_spread_workload_passes_and_is_deleted(fake, cluster, validation, clock):
    fake.on("get pods -l app=kubestrap-validation", stdout=pods_json({"a": "w1", "b": "w2"}))

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-deploy"].status == StepStatus.SUCCEEDED
    assert results["workload-scheduled"].status == StepStatus.SUCCEEDED
    assert results["workload-placement"].status == StepStatus.SUCCEEDED
    assert results["workload-cleanup"].status == StepStatus.SUCCEEDED
    assert fake.ran(DELETE, node="m1")

    (_, path, manifest, _), = fake.files
    assert path == "/tmp/kubestrap-validation.yaml"
    assert "replicas: 2" in manifest
    assert "podAntiAffinity" in manifest


def test_single_node_placement_is_a_warning_and_still_deleted(fake, cluster, validation, clock):
    fake.on("get pods -l app=", stdout=pods_json({"a": "w1", "b": "w1"}))

    results = _run(fake, cluster, validation, clock)
    placement = _by_step(results)["workload-placement"]

    assert placement.failed
    assert placement.severity == Severity.WARNING
    assert not placement.blocking
    assert not any(r.blocking for r in results)
    assert fake.ran(DELETE)


def test_replicas_never_running_fails_and_still_deletes(fake, cluster, validation, clock):
    fake.on("get pods -l app=", stdout=pods_json({"a": "w1"}, pending=1))

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-scheduled"].blocking
    assert results["workload-scheduled"].error == "ReadinessTimeout"
    assert "workload-placement" not in results
    assert fake.ran(DELETE)


def test_apply_failure_still_deletes(fake, cluster, validation, clock):
    fake.on("apply -f /tmp/kubestrap-validation.yaml", exit_code=1, stderr="forbidden")

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-deploy"].blocking
    assert "workload-scheduled" not in results
    assert fake.ran(DELETE)


def test_failed_cleanup_is_only_a_warning(fake, cluster, validation, clock):
    fake.on("get pods -l app=", stdout=pods_json({"a": "w1", "b": "w2"}))
    fake.on(DELETE, exit_code=1, stderr="apiserver gone")

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-cleanup"].failed
    assert results["workload-cleanup"].severity == Severity.WARNING


def test_pod_placement_ignores_unscheduled_pods():
    assert pod_placement(pods_json({"a": "w1"}, pending=2)) == {"a": "w1"}


def test_terminating_pods_from_an_earlier_run_are_not_counted(fake, cluster, validation, clock):
    fake.on("get pods -l app=", stdout=pods_json({"a": "w1", "b": "w1"}, terminating={"old": "w2"}))

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-scheduled"].status == StepStatus.SUCCEEDED
    placement = results["workload-placement"]
    assert placement.failed
    assert placement.severity == Severity.WARNING
    assert placement.detail == "all replicas on w1"


def test_replicas_are_not_ready_until_every_one_runs(fake, cluster, validation, clock):
    fake.on("get pods -l app=", stdout=pods_json({"a": "w1"}, terminating={"old": "w2"}))

    results = _by_step(_run(fake, cluster, validation, clock))

    assert results["workload-scheduled"].error == "ReadinessTimeout"
    assert "1/2 replicas" in results["workload-scheduled"].detail


def test_pod_placement_ignores_pods_being_deleted():
    assert pod_placement(pods_json({"a": "w1"}, terminating={"b": "w2"})) == {"a": "w1"}
