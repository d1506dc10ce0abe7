import pytest

from bulk_operations import BulkAction, BulkOperationRunner
from decommission import DecommissionOrchestrator
from errors import ValidationError
from models import Server
from provisioning import ProvisioningOrchestrator, ProvisioningRequest


@pytest.fixture
def fleet(allocator, containers, file_store, downloader, dns, session_factory):
    provisioner = ProvisioningOrchestrator(allocator, containers, file_store, downloader, dns, session_factory,
                                           dns_domain="example.net", dns_target="play.example.net")
    ids = []
    for i in range(4):
        outcome = provisioner.create_server(
            "alice@example.com", ProvisioningRequest(f"World {i}", "paper", "1.21.1"))
        containers.add(outcome.container_name, status="running")
        ids.append(outcome.server_id)
    return ids


@pytest.fixture
def runner(allocator, containers, file_store, dns, session_factory):
    decommission = DecommissionOrchestrator(allocator, containers, file_store, dns, None, session_factory,
                                            dns_domain="example.net")
    return BulkOperationRunner(containers, file_store, decommission, session_factory, max_workers=3,
                               image="itzg/minecraft-server:java21")


def test_failures_are_isolated_and_order_kept(runner, fleet, containers):
    ids = fleet[:2] + ["missing"] + fleet[2:]

    result = runner.run("stop", ids, "alice@example.com")

    assert [r.server_id for r in result.results] == ids
    assert result.successful == 4
    assert result.failed == 1
    assert result.results[2].error == "Server missing not found"
    assert all(containers.containers[f"mc-{sid}"]["status"] == "exited" for sid in fleet)


def test_container_error_only_fails_that_item(runner, fleet, containers):
    del containers.containers[f"mc-{fleet[1]}"]

    result = runner.run(BulkAction.RESTART, fleet, "alice@example.com")

    assert result.total == 4
    assert result.failed == 1
    assert not result.results[1].success
    assert "not found" in result.results[1].error


def test_start_creates_missing_container(runner, fleet, containers):
    del containers.containers[f"mc-{fleet[0]}"]

    result = runner.run("start", fleet[:1], "alice@example.com")

    assert result.results[0].success
    assert result.results[0].message == "Container created and started"
    assert containers.containers[f"mc-{fleet[0]}"]["image"] == "itzg/minecraft-server:java21"


def test_non_owner_cannot_touch_servers(runner, fleet):
    result = runner.run("stop", fleet, "bob@example.com")
    assert result.successful == 0

    admin = runner.run("stop", fleet, "root@example.com", is_admin=True)
    assert admin.successful == 4


def test_bulk_delete(runner, fleet, session_factory):
    result = runner.run("delete", fleet[:2], "alice@example.com")

    assert result.successful == 2
    db = session_factory()
    try:
        remaining = {s.unique_id for s in db.query(Server).all()}
    finally:
        db.close()
    assert remaining == set(fleet[2:])
    assert result.to_dict()["action"] == "delete"


def test_rejects_bad_requests(runner):
    with pytest.raises(ValidationError):
        runner.run("explode", ["a"], "alice@example.com")
    with pytest.raises(ValidationError):
        runner.run("stop", [], "alice@example.com")
