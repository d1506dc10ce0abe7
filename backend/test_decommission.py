import pytest

from decommission import DecommissionOrchestrator, DeleteOptions
from errors import ServerNotFoundError
from models import PortReservation, Server
from provisioning import ProvisioningOrchestrator, ProvisioningRequest


@pytest.fixture
def provisioner(allocator, containers, file_store, downloader, dns, session_factory):
    return ProvisioningOrchestrator(allocator, containers, file_store, downloader, dns, session_factory,
                                    dns_domain="example.net", dns_target="play.example.net")


@pytest.fixture
def make_decommission(allocator, containers, file_store, dns, session_factory):
    def _make(**kwargs):
        kwargs.setdefault("dns_domain", "example.net")
        kwargs.setdefault("delete_folders", True)
        return DecommissionOrchestrator(allocator, containers, file_store, dns, None, session_factory, **kwargs)
    return _make


@pytest.fixture
def server(provisioner, containers):
    outcome = provisioner.create_server(
        "alice@example.com", ProvisioningRequest("Survival", "paper", "1.21.1", subdomain="survival"))
    containers.add(outcome.container_name)
    return outcome


def _rows(session_factory, model):
    db = session_factory()
    try:
        return db.query(model).all()
    finally:
        db.close()


def test_full_delete_archives_and_releases(make_decommission, server, containers, file_store, dns, session_factory):
    dns.add("survival.example.net", "A")
    dns.add("lobby.example.net", "CNAME")

    result = make_decommission().delete_server(server.server_id, "alice@example.com")

    assert result.success
    assert result.status_code == 200
    assert result.container_removed
    assert server.container_name not in containers.containers
    assert result.dns_deleted == {"srv": 1, "cname": 0, "a": 1, "other": 0}
    assert [r.name for r in dns.records] == ["lobby.example.net"]
    assert result.files_archived and result.archive_method == "move"
    assert result.archive_path.startswith(f"/servers/{server.server_id}-deleted-")
    assert file_store.exists(f"{result.archive_path}/server.properties")
    assert not file_store.exists(server.files_root)
    assert sorted(result.ports_released) == [25565, 35565]
    assert _rows(session_factory, Server) == []
    assert _rows(session_factory, PortReservation) == []


def test_missing_container_is_a_warning(make_decommission, server, containers):
    del containers.containers[server.container_name]

    result = make_decommission().delete_server("survival", "alice@example.com")

    assert result.success
    assert not result.container_removed
    assert result.status_code == 207
    assert any("not found" in w for w in result.warnings)


def test_dns_failure_does_not_stop_other_steps(make_decommission, server, dns, session_factory):
    dns.delete_error = RuntimeError("rate limited")

    result = make_decommission().delete_server("Survival", "alice@example.com")

    assert result.record_deleted
    assert not result.success
    assert result.status_code == 207
    assert any(e.startswith("dns:") and "rate limited" in e for e in result.errors)
    assert _rows(session_factory, PortReservation) == []


def test_folder_kept_when_not_archiving_and_deletion_disabled(make_decommission, server, file_store):
    result = make_decommission(delete_folders=False).delete_server(
        server.server_id, "alice@example.com", DeleteOptions(archive_files=False))

    assert result.record_deleted
    assert not result.files_archived
    assert not result.files_deleted
    assert file_store.exists(server.files_root)
    assert any("DELETE_SERVER_FOLDERS" in w for w in result.warnings)


def test_folder_deleted_without_archive(make_decommission, server, file_store):
    result = make_decommission().delete_server(
        server.server_id, "alice@example.com", DeleteOptions(archive_files=False))

    assert result.files_deleted
    assert not file_store.exists(server.files_root)


def test_unconfigured_dns_is_a_warning(make_decommission, server, dns):
    result = make_decommission(dns_domain="").delete_server(server.server_id, "alice@example.com")
    assert result.success
    assert any("DNS is not configured" in w for w in result.warnings)
    assert len(dns.records) == 1


def test_other_users_server_is_not_found(make_decommission, server):
    decommission = make_decommission()
    with pytest.raises(ServerNotFoundError):
        decommission.delete_server(server.server_id, "bob@example.com")
    with pytest.raises(ServerNotFoundError):
        decommission.delete_server("does-not-exist", "alice@example.com")

    result = decommission.delete_server(server.server_id, "root@example.com", is_admin=True)
    assert result.record_deleted
