from typing import Dict, List, Optional
import logging
import threading
import time

import docker
from docker.errors import DockerException, NotFound

from config import (
    CONTAINER_PREFIX,
    DOCKER_ENVIRONMENTS,
    DOCKER_NETWORK,
    DOCKER_TIMEOUT,
    SERVER_INTERNAL_PORT,
    STOP_TIMEOUT,
)
from errors import OrchestratorUnavailableError

logger = logging.getLogger(__name__)

SERVER_LABEL = "fleetgate.server"


def container_name_for(server_id: str) -> str:
    """Containers are named deterministically after the server's unique id."""
    return f"{CONTAINER_PREFIX}{server_id}"


def parse_environments(raw: str) -> Dict[str, Optional[str]]:
    """Parse ``"local,remote=tcp://10.0.0.5:2375"`` into ``{name: base_url}``.

    A bare name maps to None, meaning the docker environment variables.
    """
    envs: Dict[str, Optional[str]] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        if "=" in part:
            name, url = part.split("=", 1)
            envs[name.strip()] = url.strip() or None
        else:
            envs[part] = None
    return envs


class DockerOrchestratorClient:
    """Container orchestrator backed by one docker engine per environment."""

    def __init__(self, environments: Optional[Dict[str, Optional[str]]] = None, timeout: int = DOCKER_TIMEOUT):
        self.environments = environments if environments is not None else parse_environments(DOCKER_ENVIRONMENTS)
        self.timeout = timeout
        self._clients: Dict[str, docker.DockerClient] = {}
        self._lock = threading.Lock()

    # ==================== Clients ====================

    def _init_client(self, environment_id: str) -> docker.DockerClient:
        base_url = self.environments.get(environment_id)
        if base_url:
            return docker.DockerClient(base_url=base_url, timeout=self.timeout)
        return docker.from_env(timeout=self.timeout)

    def _client(self, environment_id: str) -> docker.DockerClient:
        if environment_id not in self.environments:
            raise OrchestratorUnavailableError(f"Unknown environment '{environment_id}'")
        with self._lock:
            client = self._clients.get(environment_id)
            if client is None:
                try:
                    client = self._init_client(environment_id)
                except DockerException as e:
                    raise OrchestratorUnavailableError(
                        f"Cannot connect to docker for environment '{environment_id}': {e}"
                    ) from e
                self._clients[environment_id] = client
            return client

    def environment_exists(self, environment_id: str) -> bool:
        return environment_id in self.environments

    def ping(self, environment_id: str) -> bool:
        try:
            return bool(self._client(environment_id).ping())
        except OrchestratorUnavailableError:
            return False
        except Exception as e:
            logger.warning(f"Docker ping failed for {environment_id}: {e}")
            # Drop the cached client so the next call reconnects
            with self._lock:
                self._clients.pop(environment_id, None)
            return False

    def ensure_available(self, environment_id: str) -> None:
        if not self.environment_exists(environment_id):
            raise OrchestratorUnavailableError(f"Execution environment '{environment_id}' does not exist")
        if not self.ping(environment_id):
            raise OrchestratorUnavailableError(f"Container orchestrator for '{environment_id}' is unreachable")

    # ==================== Containers ====================

    def find_by_identifier(self, identifier: str, environment_id: str):
        try:
            return self._client(environment_id).containers.get(identifier)
        except NotFound:
            return None

    def _require(self, identifier: str, environment_id: str):
        container = self.find_by_identifier(identifier, environment_id)
        if container is None:
            raise NotFound(f"Container {identifier} not found")
        return container

    def start(self, identifier: str, environment_id: str) -> dict:
        container = self._require(identifier, environment_id)
        container.start()
        container.reload()
        logger.info(f"Started container {container.name}")
        return {"id": container.id, "status": container.status}

    def stop(self, identifier: str, environment_id: str, timeout: int = STOP_TIMEOUT) -> dict:
        container = self._require(identifier, environment_id)
        container.reload()
        if container.status != "running":
            return {"id": container.id, "status": container.status, "method": "noop"}
        container.stop(timeout=timeout)
        container.reload()
        logger.info(f"Stopped container {container.name}")
        return {"id": container.id, "status": container.status, "method": "docker-stop"}

    def restart(self, identifier: str, environment_id: str, timeout: int = STOP_TIMEOUT) -> dict:
        container = self._require(identifier, environment_id)
        container.restart(timeout=timeout)
        container.reload()
        logger.info(f"Restarted container {container.name}")
        return {"id": container.id, "status": container.status}

    def remove(self, identifier: str, environment_id: str, force: bool = True, remove_volumes: bool = True) -> bool:
        """Remove a container. Returns False when it did not exist."""
        container = self.find_by_identifier(identifier, environment_id)
        if container is None:
            return False
        if not force and container.status in ("running", "restarting"):
            container.stop(timeout=STOP_TIMEOUT)
        container.remove(force=force, v=remove_volumes)
        logger.info(f"Removed container {identifier} (volumes={remove_volumes})")
        return True

    def state(self, identifier: str, environment_id: str) -> Optional[dict]:
        container = self.find_by_identifier(identifier, environment_id)
        if container is None:
            return None
        attrs_state = (container.attrs or {}).get("State", {}) or {}
        return {
            "status": container.status,
            "exit_code": attrs_state.get("ExitCode"),
            "health": (attrs_state.get("Health") or {}).get("Status"),
        }

    def list_containers(self, environment_id: str, running_only: bool = True) -> List[dict]:
        containers = self._client(environment_id).containers.list(all=not running_only)
        result = []
        for c in containers:
            attrs = c.attrs or {}
            config = attrs.get("Config", {}) or {}
            networks = ((attrs.get("NetworkSettings", {}) or {}).get("Networks", {}) or {})
            result.append({
                "id": c.id,
                "name": c.name,
                "image": config.get("Image", ""),
                "labels": config.get("Labels", {}) or {},
                "status": c.status,
                "networks": list(networks.keys()),
                "ports": (attrs.get("NetworkSettings", {}) or {}).get("Ports", {}) or {},
            })
        return result

    def used_host_ports(self, environment_id: str) -> set:
        """Host ports bound by any container in the environment, running or not."""
        used: set = set()
        try:
            containers = self._client(environment_id).containers.list(all=True)
        except OrchestratorUnavailableError:
            raise
        except Exception as e:
            raise OrchestratorUnavailableError(f"Could not list containers in '{environment_id}': {e}") from e
        for c in containers:
            ports = ((c.attrs or {}).get("NetworkSettings", {}) or {}).get("Ports", {}) or {}
            for bindings in ports.values():
                if not bindings or not isinstance(bindings, list):
                    continue
                for b in bindings:
                    hp = b.get("HostPort")
                    if hp and str(hp).isdigit():
                        used.add(int(hp))
        return used

    # ==================== Lifecycle ====================

    def run_server_container(self, server, host_path: str, image: str) -> dict:
        """Create and start the container for a server record."""
        client = self._client(server.environment_id)
        env = {
            "EULA": "TRUE",
            "TYPE": (server.server_type or "vanilla").upper(),
            "VERSION": server.version,
            "MEMORY": f"{server.memory_mb or 2048}M",
        }
        ports = {f"{SERVER_INTERNAL_PORT}/tcp": server.port}
        if server.rcon_port:
            env["ENABLE_RCON"] = "true"
            ports["25575/tcp"] = server.rcon_port
        container = client.containers.run(
            image,
            name=server.container_name,
            detach=True,
            environment=env,
            ports=ports,
            volumes={host_path: {"bind": "/data", "mode": "rw"}},
            labels={SERVER_LABEL: server.unique_id, "fleetgate.owner": server.owner_email},
            network=DOCKER_NETWORK or None,
            restart_policy={"Name": "unless-stopped"},
        )
        logger.info(f"Created container {container.name} for server {server.unique_id}")
        return {"id": container.id, "status": container.status}

    def get_archive(self, identifier: str, environment_id: str, path: str) -> bytes:
        """Tar stream of ``path`` inside the container."""
        container = self._require(identifier, environment_id)
        stream, _ = container.get_archive(path)
        return b"".join(stream)

    def execute(self, identifier: str, environment_id: str, command) -> dict:
        container = self._require(identifier, environment_id)
        result = container.exec_run(command)
        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        return {"exit_code": result.exit_code, "output": output}

    def pull_image(self, image: str, environment_id: str) -> str:
        pulled = self._client(environment_id).images.pull(image)
        return getattr(pulled, "id", "") or ""

    def recreate(self, identifier: str, environment_id: str, image: str) -> dict:
        """Replace a container with one running ``image``, keeping its settings."""
        client = self._client(environment_id)
        container = self._require(identifier, environment_id)
        attrs = container.attrs or {}
        config = attrs.get("Config", {}) or {}
        host_config = attrs.get("HostConfig", {}) or {}

        env = {}
        for entry in config.get("Env", []) or []:
            if "=" in entry:
                k, v = entry.split("=", 1)
                env[k] = v
        ports = {}
        for container_port, bindings in (host_config.get("PortBindings") or {}).items():
            if bindings:
                ports[container_port] = int(bindings[0].get("HostPort"))
        volumes = {}
        for bind in host_config.get("Binds") or []:
            parts = bind.split(":")
            if len(parts) >= 2:
                volumes[parts[0]] = {"bind": parts[1], "mode": parts[2] if len(parts) > 2 else "rw"}
        network = host_config.get("NetworkMode") or None
        if network == "default":
            network = None

        name = container.name
        if container.status == "running":
            container.stop(timeout=STOP_TIMEOUT)
        container.remove(force=True)

        # Docker can take a moment to release the name
        for _ in range(10):
            if self.find_by_identifier(name, environment_id) is None:
                break
            time.sleep(0.5)

        new_container = client.containers.create(
            image,
            name=name,
            environment=env,
            ports=ports,
            volumes=volumes,
            labels=config.get("Labels", {}) or {},
            network=network,
            restart_policy=host_config.get("RestartPolicy") or {"Name": "unless-stopped"},
        )
        logger.info(f"Recreated container {name} with image {image}")
        return {"id": new_container.id, "status": new_container.status}
