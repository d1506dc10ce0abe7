from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import logging

from config import BULK_MAX_WORKERS, SERVER_IMAGE
from database import DatabaseSession, SessionLocal
from decommission import DeleteOptions
from errors import OrchestrationError, ServerNotFoundError, ValidationError
from models import Server

logger = logging.getLogger(__name__)


class BulkAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    DELETE = "delete"

    @classmethod
    def parse(cls, value) -> "BulkAction":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown bulk action '{value}'",
                                  {"supported": [a.value for a in cls]}) from None


@dataclass
class BulkItemResult:
    server_id: str
    success: bool
    message: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"server_id": self.server_id, "success": self.success, "message": self.message, "error": self.error}


@dataclass
class BulkResult:
    action: BulkAction
    results: List[BulkItemResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful

    @property
    def total(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "results": [r.to_dict() for r in self.results],
            "successful": self.successful,
            "failed": self.failed,
            "total": self.total,
        }


class BulkOperationRunner:
    def __init__(self, container_client, file_store, decommission, session_factory=SessionLocal,
                 max_workers: int = BULK_MAX_WORKERS, image: str = SERVER_IMAGE):
        self.container_client = container_client
        self.file_store = file_store
        self.decommission = decommission
        self.session_factory = session_factory
        self.max_workers = max(1, max_workers)
        self.image = image

    def run(self, action, server_ids: List[str], actor_email: Optional[str], is_admin: bool = False) -> BulkResult:
        action = BulkAction.parse(action)
        if not server_ids:
            raise ValidationError("No servers selected")
        result = BulkResult(action)
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(server_ids))) as executor:
            futures = [executor.submit(self._run_one, action, sid, actor_email, is_admin) for sid in server_ids]
            # Results keep the request order
            result.results = [f.result() for f in futures]
        logger.info(f"Bulk {action.value} by {actor_email}: {result.successful}/{result.total} succeeded")
        return result

    def _load(self, server_id: str, actor_email: Optional[str], is_admin: bool) -> Server:
        with DatabaseSession(self.session_factory) as db:
            query = db.query(Server).filter(Server.unique_id == server_id)
            if not is_admin:
                query = query.filter(Server.owner_email == actor_email)
            server = query.first()
        if server is None:
            raise ServerNotFoundError(f"Server {server_id} not found")
        return server

    def _run_one(self, action: BulkAction, server_id: str, actor_email: Optional[str], is_admin: bool) -> BulkItemResult:
        try:
            if action == BulkAction.DELETE:
                deletion = self.decommission.delete_server(
                    server_id, actor_email, DeleteOptions(reason="bulk"), is_admin=is_admin)
                if not deletion.success:
                    return BulkItemResult(server_id, False, error="; ".join(deletion.errors) or "Delete incomplete")
                return BulkItemResult(server_id, True, "Server deleted")

            server = self._load(server_id, actor_email, is_admin)
            env = server.environment_id
            if action == BulkAction.START:
                if self.container_client.find_by_identifier(server.container_name, env) is None:
                    host_path = str(self.file_store.host_path(server.files_root))
                    self.container_client.run_server_container(server, host_path, self.image)
                    return BulkItemResult(server_id, True, "Container created and started")
                self.container_client.start(server.container_name, env)
                return BulkItemResult(server_id, True, "Server started")
            if action == BulkAction.STOP:
                self.container_client.stop(server.container_name, env)
                return BulkItemResult(server_id, True, "Server stopped")
            self.container_client.restart(server.container_name, env)
            return BulkItemResult(server_id, True, "Server restarted")
        except OrchestrationError as e:
            return BulkItemResult(server_id, False, error=e.message)
        except Exception as e:
            logger.error(f"Bulk {action.value} on {server_id} failed: {e}")
            return BulkItemResult(server_id, False, error=str(e))
