from pathlib import Path
import sys
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

here = Path(__file__).resolve()
backend_dir = here.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from database import init_db  # noqa: E402
from dns_client import DNSRecord, SRV_SERVICE  # noqa: E402
from download_manager import RuntimeArtifact  # noqa: E402
from errors import OrchestratorUnavailableError  # noqa: E402
from file_store import LocalFileStore  # noqa: E402
from models import Server, User  # noqa: E402
from port_allocator import PortAllocator  # noqa: E402


class FakeContainerClient:
    """In-memory stand-in for the Docker orchestrator client."""

    def __init__(self):
        self.containers = {}
        self.bound_ports = set()
        self.calls = []
        self.failures = {}
        self.available = True
        self.pulled = []
        self._lock = threading.Lock()

    def add(self, name, environment_id="local", status="running", image="itzg/minecraft-server:latest",
            labels=None):
        self.containers[name] = {
            "id": f"id-{name}",
            "name": name,
            "environment_id": environment_id,
            "status": status,
            "image": image,
            "labels": dict(labels or {}),
            "networks": ["fleetgate"],
            "ports": {},
        }
        return self.containers[name]

    def _record(self, method, *args):
        with self._lock:
            self.calls.append((method,) + args)
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    def _require(self, name):
        container = self.containers.get(name)
        if container is None:
            raise LookupError(f"Container {name} not found")
        return container

    def ensure_available(self, environment_id):
        self._record("ensure_available", environment_id)
        if not self.available:
            raise OrchestratorUnavailableError(f"Container orchestrator for '{environment_id}' is unreachable")

    def ping(self, environment_id):
        return self.available

    def environment_exists(self, environment_id):
        return True

    def find_by_identifier(self, name, environment_id):
        return self.containers.get(name)

    def start(self, name, environment_id):
        self._record("start", name)
        self._require(name)["status"] = "running"
        return {"status": "running"}

    def stop(self, name, environment_id, timeout=30):
        self._record("stop", name)
        self._require(name)["status"] = "exited"
        return {"status": "exited"}

    def restart(self, name, environment_id, timeout=30):
        self._record("restart", name)
        self._require(name)["status"] = "running"
        return {"status": "running"}

    def remove(self, name, environment_id, force=True, remove_volumes=True):
        self._record("remove", name)
        return self.containers.pop(name, None) is not None

    def state(self, name, environment_id):
        container = self.containers.get(name)
        if container is None:
            return None
        return {"status": container["status"], "exit_code": container.get("exit_code", 0),
                "health": container.get("health")}

    def list_containers(self, environment_id, running_only=True):
        self._record("list_containers", environment_id)
        return [dict(c) for c in self.containers.values()
                if c["environment_id"] == environment_id and (not running_only or c["status"] == "running")]

    def used_host_ports(self, environment_id):
        self._record("used_host_ports", environment_id)
        return set(self.bound_ports)

    def run_server_container(self, server, host_path, image):
        self._record("run_server_container", server.container_name)
        self.add(server.container_name, server.environment_id, "running", image)
        return {"status": "running"}

    def pull_image(self, image, environment_id):
        self._record("pull_image", image)
        self.pulled.append((image, environment_id))
        return "sha256:new"

    def recreate(self, name, environment_id, image):
        self._record("recreate", name)
        container = self._require(name)
        container["image"] = image
        container["status"] = "created"
        return {"status": "created"}


class FakeDNSClient:
    def __init__(self):
        self.records = []
        self.create_error = None
        self.delete_error = None
        self._next = 1000

    def create_srv_record(self, domain, subdomain, port, target, priority=0, weight=5, ttl=600):
        if self.create_error:
            raise self.create_error
        self._next += 1
        record = DNSRecord(str(self._next), f"{SRV_SERVICE}.{subdomain}.{domain}", "SRV", f"{weight} {port} {target}")
        self.records.append(record)
        return record.id

    def add(self, name, record_type):
        self._next += 1
        self.records.append(DNSRecord(str(self._next), name, record_type))

    def get_records(self, domain):
        return list(self.records)

    def delete_record(self, domain, record_id):
        if self.delete_error:
            raise self.delete_error
        self.records = [r for r in self.records if r.id != record_id]


class FakeDownloader:
    def __init__(self, artifact=None, error=None):
        self.artifact = artifact
        self.error = error
        self.requests = []

    def fetch(self, server_type, version):
        self.requests.append((server_type, version))
        if self.error:
            raise self.error
        return self.artifact


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    init_db(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def containers():
    return FakeContainerClient()


@pytest.fixture
def file_store(tmp_path):
    root = tmp_path / "store"
    root.mkdir()
    return LocalFileStore(root)


@pytest.fixture
def dns():
    return FakeDNSClient()


@pytest.fixture
def downloader():
    return FakeDownloader(RuntimeArtifact("server.jar", "https://example.invalid/server.jar", b"PK" + b"\0" * 6000))


@pytest.fixture
def allocator(containers, session_factory):
    return PortAllocator(containers, session_factory)


@pytest.fixture
def add_user(session_factory):
    def _add(email, role="user", reserved_ports=None, reserved_port_ranges=None):
        db = session_factory()
        try:
            db.add(User(email=email, username=email.split("@")[0], role=role,
                        reserved_ports=list(reserved_ports or []),
                        reserved_port_ranges=list(reserved_port_ranges or [])))
            db.commit()
        finally:
            db.close()
        return email
    return _add


@pytest.fixture
def add_server(session_factory):
    """Insert a server row directly, bypassing provisioning."""
    counter = {"port": 25565}

    def _add(unique_id, owner_email="alice@example.com", status="offline", environment_id="local", **kwargs):
        port = counter["port"]
        counter["port"] += 1
        db = session_factory()
        try:
            db.add(Server(unique_id=unique_id, owner_email=owner_email,
                          server_name=kwargs.pop("server_name", unique_id),
                          server_type=kwargs.pop("server_type", "paper"),
                          version=kwargs.pop("version", "1.21.1"),
                          environment_id=environment_id, port=port, status=status,
                          container_name=f"mc-{unique_id}",
                          files_root=f"/servers/{owner_email.split('@')[0]}/{unique_id}",
                          **kwargs))
            db.commit()
        finally:
            db.close()
        return unique_id
    return _add
