import pytest

from file_store import FileStoreError, archive_directory


def _seed(store, root="/servers/alice/abc"):
    store.create_directory(f"{root}/world")
    store.upload_file(f"{root}/server.properties", "motd=hi\n")
    store.upload_file(f"{root}/world/level.dat", b"\x00\x01")
    return root


def test_paths_cannot_escape_root(file_store):
    with pytest.raises(FileStoreError):
        file_store.host_path("/servers/../../etc/passwd")
    with pytest.raises(FileStoreError):
        file_store.delete_directory("/")


def test_upload_and_read(file_store):
    file_store.upload_file("/proxies/velocity/velocity.toml", "bind = \"0.0.0.0:25577\"\n")
    assert file_store.get_file_contents("/proxies/velocity/velocity.toml").startswith("bind")
    assert not file_store.exists("/proxies/velocity/velocity.toml.tmp")
    with pytest.raises(FileStoreError):
        file_store.get_file_contents("/proxies/missing.toml")


def test_archive_prefers_move(file_store):
    root = _seed(file_store)
    method, path = archive_directory(file_store, root, "/servers/abc-deleted-2026-01-01")
    assert (method, path) == ("move", "/servers/abc-deleted-2026-01-01")
    assert not file_store.exists(root)
    assert file_store.exists("/servers/abc-deleted-2026-01-01/world/level.dat")


def test_archive_falls_back_to_copy(file_store, monkeypatch):
    root = _seed(file_store)

    def cross_device(source, destination):
        raise OSError("Invalid cross-device link")

    monkeypatch.setattr(file_store, "move_file", cross_device)
    method, path = archive_directory(file_store, root, "/servers/abc-deleted-2026-01-01")

    assert method == "copy_delete"
    assert not file_store.exists(root)
    assert file_store.get_file_contents(f"{path}/server.properties") == "motd=hi\n"


def test_archive_renames_when_destination_taken(file_store):
    root = _seed(file_store)
    file_store.create_directory("/servers/alice/abc-deleted-2026-01-01")

    method, path = archive_directory(file_store, root, "/servers/alice/abc-deleted-2026-01-01")

    assert method == "rename_fallback"
    assert path == "/servers/alice/abc-deleted-2026-01-01-1"
    assert file_store.exists(f"{path}/server.properties")


def test_archive_reports_every_failure(file_store):
    with pytest.raises(FileStoreError) as exc:
        archive_directory(file_store, "/servers/alice/missing", "/servers/missing-deleted")
    message = str(exc.value)
    assert "move:" in message and "copy_delete:" in message and "rename_fallback:" in message


def test_directory_listing(file_store):
    root = _seed(file_store)
    listing = file_store.get_directory_contents(root)
    assert [(i["name"], i["is_dir"]) for i in listing] == [("server.properties", False), ("world", True)]
    assert listing[0]["size"] == len("motd=hi\n")
    with pytest.raises(FileStoreError):
        file_store.get_directory_contents("/servers/alice/missing")
