from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import logging
import threading

from config import SERVER_IMAGE
from database import DatabaseSession, SessionLocal
from errors import ResourceConflictError
from models import Server

logger = logging.getLogger(__name__)


class UpdateCancelled(Exception):
    pass


@dataclass
class ServerUpdateResult:
    server_id: str
    server_name: str
    status: str = "pending"  # pending|completed|failed|skipped|cancelled
    error: Optional[str] = None
    steps: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "status": self.status,
            "error": self.error,
            "steps": list(self.steps),
        }


@dataclass
class UpdateRunResult:
    image: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    servers: List[ServerUpdateResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and all(s.status in ("completed", "skipped") for s in self.servers)

    def to_dict(self) -> dict:
        return {
            "image": self.image,
            "success": self.success,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "updated": [s.server_id for s in self.servers if s.status == "completed"],
            "failed": [s.server_id for s in self.servers if s.status == "failed"],
            "servers": [s.to_dict() for s in self.servers],
            "errors": list(self.errors),
        }


class ImageUpdateManager:
    """Rolls server containers onto a freshly pulled image.

    Triggered from outside (the internal API); one run at a time.
    Cancelling takes effect at the next checkpoint, never mid-call.
    """

    def __init__(self, container_client, session_factory=SessionLocal, image: str = SERVER_IMAGE):
        self.container_client = container_client
        self.session_factory = session_factory
        self.image = image
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self.last_result: Optional[UpdateRunResult] = None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> bool:
        """Ask the active run to stop. Returns False when nothing is running."""
        if not self.running:
            return False
        self._cancel.set()
        logger.info("Image update cancellation requested")
        return True

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise UpdateCancelled()

    def run(self, server_ids: Optional[List[str]] = None) -> UpdateRunResult:
        if not self._run_lock.acquire(blocking=False):
            raise ResourceConflictError("An image update is already in progress")
        self._cancel.clear()
        result = UpdateRunResult(self.image)
        try:
            with DatabaseSession(self.session_factory) as db:
                query = db.query(Server)
                if server_ids:
                    query = query.filter(Server.unique_id.in_(list(server_ids)))
                servers = query.order_by(Server.id).all()
            logger.info(f"Updating {len(servers)} server(s) to {self.image}")

            pulled = set()
            for server in servers:
                item = ServerUpdateResult(server.unique_id, server.server_name)
                result.servers.append(item)
                try:
                    self._checkpoint()
                    if server.environment_id not in pulled:
                        self.container_client.pull_image(self.image, server.environment_id)
                        pulled.add(server.environment_id)
                        item.steps.append("pulled")
                    self._update_one(server, item)
                except UpdateCancelled:
                    item.status = "cancelled"
                    result.cancelled = True
                    break
                except Exception as e:
                    item.status = "failed"
                    item.error = str(e)
                    logger.error(f"Updating {server.unique_id} failed: {e}")

            if result.cancelled:
                done = {s.server_id for s in result.servers}
                for server in servers:
                    if server.unique_id not in done:
                        result.servers.append(ServerUpdateResult(server.unique_id, server.server_name, "cancelled"))
                logger.info("Image update cancelled")
        finally:
            result.finished_at = datetime.utcnow()
            self.last_result = result
            self._cancel.clear()
            self._run_lock.release()
        return result

    def _update_one(self, server: Server, item: ServerUpdateResult) -> None:
        env = server.environment_id
        if self.container_client.find_by_identifier(server.container_name, env) is None:
            item.status = "skipped"
            item.steps.append("no container")
            return
        state = self.container_client.state(server.container_name, env) or {}
        was_running = state.get("status") == "running"

        self.container_client.stop(server.container_name, env)
        item.steps.append("stopped")
        if self._cancel.is_set():
            # Leave the server as it was found
            if was_running:
                self.container_client.start(server.container_name, env)
                item.steps.append("started")
            raise UpdateCancelled()

        self.container_client.recreate(server.container_name, env, self.image)
        item.steps.append("recreated")

        if was_running:
            self.container_client.start(server.container_name, env)
            item.steps.append("started")
        item.status = "completed"
