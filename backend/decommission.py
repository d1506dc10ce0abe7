"""Server deletion.

Every step is attempted even when an earlier one failed; problems are
collected on the DeletionResult instead of aborting the request.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from sqlalchemy import or_

from config import DELETE_SERVER_FOLDERS, DNS_DOMAIN
from database import DatabaseSession, SessionLocal
from dns_client import cleanup_server_records
from errors import ServerNotFoundError
from file_store import archive_directory
from models import Server
import server_files

logger = logging.getLogger(__name__)


@dataclass
class DeleteOptions:
    force: bool = True
    remove_volumes: bool = True
    archive_files: bool = True
    reason: Optional[str] = None


@dataclass
class DeletionResult:
    server_id: str
    server_name: str = ""
    container_removed: bool = False
    proxies_cleaned: List[str] = field(default_factory=list)
    dns_deleted: Dict[str, int] = field(default_factory=dict)
    files_archived: bool = False
    archive_method: Optional[str] = None
    archive_path: Optional[str] = None
    files_deleted: bool = False
    record_deleted: bool = False
    ports_released: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        logger.warning(f"Delete {self.server_id}: {message}")
        self.warnings.append(message)

    def fail(self, step: str, message) -> None:
        logger.error(f"Delete {self.server_id} failed at {step}: {message}")
        self.errors.append(f"{step}: {message}")

    @property
    def success(self) -> bool:
        return self.record_deleted and not self.errors

    @property
    def status_code(self) -> int:
        return 207 if (self.warnings or self.errors) else 200

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "success": self.success,
            "container_removed": self.container_removed,
            "proxies_cleaned": list(self.proxies_cleaned),
            "dns_deleted": dict(self.dns_deleted),
            "files_archived": self.files_archived,
            "archive_method": self.archive_method,
            "archive_path": self.archive_path,
            "files_deleted": self.files_deleted,
            "record_deleted": self.record_deleted,
            "ports_released": list(self.ports_released),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


class DecommissionOrchestrator:
    def __init__(self, allocator, container_client, file_store, dns_client=None, deployer=None,
                 session_factory=SessionLocal, dns_domain: str = DNS_DOMAIN,
                 delete_folders: bool = DELETE_SERVER_FOLDERS):
        self.allocator = allocator
        self.container_client = container_client
        self.file_store = file_store
        self.dns_client = dns_client
        self.deployer = deployer
        self.session_factory = session_factory
        self.dns_domain = dns_domain
        self.delete_folders = delete_folders

    def find_server(self, identifier: str, owner_email: Optional[str], is_admin: bool = False) -> Server:
        """Look a server up by unique id, subdomain or name."""
        with DatabaseSession(self.session_factory) as db:
            query = db.query(Server).filter(or_(
                Server.unique_id == identifier,
                Server.subdomain_name == (identifier or "").lower(),
                Server.server_name == identifier,
            ))
            if not is_admin:
                query = query.filter(Server.owner_email == owner_email)
            server = query.first()
        if server is None:
            raise ServerNotFoundError(f"Server {identifier} not found")
        return server

    def delete_server(self, identifier: str, owner_email: Optional[str], options: Optional[DeleteOptions] = None,
                      is_admin: bool = False) -> DeletionResult:
        options = options or DeleteOptions()
        server = self.find_server(identifier, owner_email, is_admin)
        result = DeletionResult(server.unique_id, server.server_name)
        logger.info(f"Deleting server {server.unique_id} ({server.server_name})"
                    + (f": {options.reason}" if options.reason else ""))

        self._remove_container(server, options, result)
        self._remove_from_proxies(server, result)
        self._cleanup_dns(server, result)
        self._archive_and_delete_files(server, options, result)
        self._delete_record(server, result)

        logger.info(f"Deleted server {server.unique_id}: {len(result.warnings)} warning(s), "
                    f"{len(result.errors)} error(s)")
        return result

    # ==================== Steps ====================

    def _remove_container(self, server: Server, options: DeleteOptions, result: DeletionResult) -> None:
        try:
            removed = self.container_client.remove(
                server.container_name, server.environment_id,
                force=options.force, remove_volumes=options.remove_volumes)
        except Exception as e:
            result.fail("container", e)
            return
        if removed:
            result.container_removed = True
        else:
            result.warn(f"Container {server.container_name} not found")

    def _remove_from_proxies(self, server: Server, result: DeletionResult) -> None:
        if self.deployer is None:
            return
        try:
            report = self.deployer.undeploy(server.unique_id)
        except Exception as e:
            result.fail("proxies", e)
            return
        result.proxies_cleaned = list(report.get("cleaned", []))
        for error in report.get("errors", []):
            result.fail("proxies", error)

    def _cleanup_dns(self, server: Server, result: DeletionResult) -> None:
        if not server.subdomain_name:
            return
        if self.dns_client is None or not self.dns_domain:
            result.warn("DNS is not configured; records were not cleaned up")
            return
        try:
            report = cleanup_server_records(self.dns_client, self.dns_domain, server.subdomain_name)
        except Exception as e:
            result.fail("dns", e)
            return
        result.dns_deleted = {"srv": report.srv, "cname": report.cname, "a": report.a, "other": report.other}
        for error in report.errors:
            result.fail("dns", error)
        if report.total == 0 and not report.errors:
            result.warn(f"No DNS records found for {server.subdomain_name}")

    def _archive_and_delete_files(self, server: Server, options: DeleteOptions, result: DeletionResult) -> None:
        root = server.files_root
        try:
            present = self.file_store.exists(root)
        except Exception as e:
            result.fail("files", e)
            return
        if not present:
            result.warn(f"Server folder {root} not found")
            return

        archived_ok = True
        if options.archive_files:
            try:
                method, path = archive_directory(self.file_store, root, server_files.archive_root(server.unique_id))
                result.files_archived = True
                result.archive_method = method
                result.archive_path = path
                if method != "move":
                    result.warn(f"Archived with {method} to {path}")
            except Exception as e:
                archived_ok = False
                result.fail("archive", e)

        if not archived_ok:
            result.warn("Server files were kept because archiving failed")
            return

        if not result.files_archived and not self.delete_folders:
            result.warn("Server folder kept (DELETE_SERVER_FOLDERS=false)")
            return
        try:
            # After an archive this only clears leftovers of a partial copy
            self.file_store.delete_directory(root)
            result.files_deleted = not self.file_store.exists(root)
        except Exception as e:
            result.fail("files", e)

    def _delete_record(self, server: Server, result: DeletionResult) -> None:
        try:
            with DatabaseSession(self.session_factory) as db:
                db.query(Server).filter(Server.unique_id == server.unique_id).delete(synchronize_session=False)
            result.record_deleted = True
        except Exception as e:
            result.fail("record", e)
            return
        try:
            result.ports_released = self.allocator.release_server(server.unique_id)
        except Exception as e:
            result.fail("ports", e)
