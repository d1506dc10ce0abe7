import threading

import pytest

from errors import ResourceConflictError
from update_manager import ImageUpdateManager

IMAGE = "itzg/minecraft-server:java21"


@pytest.fixture
def manager(containers, session_factory):
    return ImageUpdateManager(containers, session_factory, image=IMAGE)


def test_updates_running_and_stopped_servers(manager, containers, add_server):
    add_server("a")
    add_server("b")
    add_server("c")
    containers.add("mc-a", status="running")
    containers.add("mc-b", status="exited")

    result = manager.run()

    statuses = {s.server_id: s.status for s in result.servers}
    assert statuses == {"a": "completed", "b": "completed", "c": "skipped"}
    assert result.success
    assert containers.pulled == [(IMAGE, "local")]
    assert containers.containers["mc-a"]["status"] == "running"
    assert containers.containers["mc-a"]["image"] == IMAGE
    assert containers.containers["mc-b"]["status"] == "created"
    assert result.servers[0].steps == ["pulled", "stopped", "recreated", "started"]
    assert manager.last_result is result
    assert not manager.running


def test_pulls_once_per_environment(manager, containers, add_server):
    add_server("a", environment_id="local")
    add_server("b", environment_id="eu-1")
    add_server("c", environment_id="eu-1")
    for name, env in (("mc-a", "local"), ("mc-b", "eu-1"), ("mc-c", "eu-1")):
        containers.add(name, environment_id=env)

    manager.run()

    assert containers.pulled == [(IMAGE, "local"), (IMAGE, "eu-1")]


def test_failure_is_recorded_per_server(manager, containers, add_server):
    add_server("a")
    add_server("b")
    containers.add("mc-a")
    containers.add("mc-b")
    containers.failures["recreate"] = RuntimeError("image not found")

    result = manager.run(["a"])

    assert [s.server_id for s in result.servers] == ["a"]
    assert result.servers[0].status == "failed"
    assert result.servers[0].error == "image not found"
    assert not result.success


def test_cancel_without_run_is_a_noop(manager):
    assert manager.cancel() is False


def test_concurrent_run_conflicts_and_cancel_restores_server(manager, containers, add_server):
    add_server("a")
    add_server("b")
    containers.add("mc-a", status="running")
    containers.add("mc-b", status="running")

    pulling = threading.Event()
    release = threading.Event()
    original_pull = containers.pull_image

    def slow_pull(image, environment_id):
        pulling.set()
        release.wait(5)
        return original_pull(image, environment_id)

    containers.pull_image = slow_pull
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.setdefault("result", manager.run()))
    worker.start()
    assert pulling.wait(5)

    assert manager.running
    with pytest.raises(ResourceConflictError):
        manager.run()
    assert manager.cancel() is True

    release.set()
    worker.join(5)

    result = outcome["result"]
    assert result.cancelled
    assert [s.status for s in result.servers] == ["cancelled", "cancelled"]
    assert result.servers[0].steps == ["pulled", "stopped", "started"]
    assert containers.containers["mc-a"]["status"] == "running"
    assert containers.containers["mc-a"]["image"] != IMAGE
    assert not any(c[0] == "recreate" for c in containers.calls)
    assert not manager.running
