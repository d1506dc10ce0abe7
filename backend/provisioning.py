"""Server creation saga.

VALIDATING -> PORT_ALLOCATED -> REMOTE_RESOURCES_CREATED -> PERSISTED -> DONE,
falling into ROLLING_BACK -> FAILED from any step after ports are claimed.
While the saga runs the ledger is the source of truth for what exists; the
server record is only written once everything it points at is in place.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
import logging
import re
import uuid

from sqlalchemy.exc import IntegrityError

from config import (
    DEFAULT_ENVIRONMENT,
    DNS_DOMAIN,
    DNS_TARGET_HOST,
    MAX_MEMORY_MB,
    MIN_MEMORY_MB,
    SUPPORTED_SERVER_TYPES,
)
from container_client import container_name_for
from database import DatabaseSession, SessionLocal
from errors import (
    OrchestrationError,
    PartialExternalFailure,
    ProvisioningError,
    ResourceConflictError,
    ValidationError,
)
from models import Server
from rollback import Compensator, RollbackLedger, UndoAction, UndoKind
import server_files

logger = logging.getLogger(__name__)


PROHIBITED_SUBDOMAINS = frozenset({
    "admin", "api", "www", "mail", "ftp", "root", "test", "dev", "staging", "production",
    "prod", "demo", "beta", "alpha", "support", "help", "docs", "blog", "news", "shop",
    "store", "cdn", "static", "assets", "media", "images", "files", "download", "upload",
    "backup", "panel", "control", "console", "dashboard", "manager", "system", "config",
    "settings", "status", "health", "monitor", "logs", "metrics", "analytics",
})

SUBDOMAIN_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
SERVER_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.-]{0,63}$")


class ProvisioningState(str, Enum):
    VALIDATING = "validating"
    PORT_ALLOCATED = "port_allocated"
    REMOTE_RESOURCES_CREATED = "remote_resources_created"
    PERSISTED = "persisted"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


@dataclass
class ProvisioningRequest:
    server_name: str
    server_type: str
    version: str
    memory_mb: int = 2048
    subdomain: Optional[str] = None
    environment_id: str = DEFAULT_ENVIRONMENT
    needs_rcon: bool = True
    preferred_port: Optional[int] = None
    server_config: Dict = field(default_factory=dict)


@dataclass
class ProvisioningOutcome:
    server_id: str
    port: int
    rcon_port: Optional[int]
    environment_id: str
    container_name: str
    files_root: str
    subdomain: Optional[str] = None
    dns_record_id: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "port": self.port,
            "rcon_port": self.rcon_port,
            "environment_id": self.environment_id,
            "container_name": self.container_name,
            "files_root": self.files_root,
            "subdomain": self.subdomain,
            "dns_record_id": self.dns_record_id,
            "warnings": list(self.warnings),
        }


@dataclass
class SubdomainCheck:
    valid: bool
    reserved: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "reserved": self.reserved, "error": self.error}


class _Run:
    """Per-request saga bookkeeping."""

    def __init__(self, server_id: str):
        self.server_id = server_id
        self.ledger = RollbackLedger()
        self.state = ProvisioningState.VALIDATING
        self.history: List[str] = [self.state.value]

    def advance(self, state: ProvisioningState) -> None:
        logger.debug(f"Provisioning {self.server_id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state.value)


def build_compensator(allocator, container_client, file_store, dns_client=None,
                      session_factory=SessionLocal) -> Compensator:
    """Compensator shared by the creation saga and manual reconciliation."""

    def release_port(action: UndoAction) -> None:
        allocator.release(int(action.target), action.param("environment_id", DEFAULT_ENVIRONMENT))

    def delete_directory(action: UndoAction) -> None:
        file_store.delete_directory(action.target)

    def delete_file(action: UndoAction) -> None:
        file_store.delete_file(action.target)

    def delete_record(action: UndoAction) -> None:
        with DatabaseSession(session_factory) as db:
            db.query(Server).filter(Server.unique_id == action.target).delete(synchronize_session=False)

    def delete_dns_record(action: UndoAction) -> None:
        if dns_client is None:
            raise RuntimeError("DNS client not configured")
        dns_client.delete_record(action.param("domain"), action.target)

    def remove_container(action: UndoAction) -> None:
        container_client.remove(action.target, action.param("environment_id", DEFAULT_ENVIRONMENT),
                                force=True, remove_volumes=True)

    return Compensator({
        UndoKind.RELEASE_PORT: release_port,
        UndoKind.DELETE_DIRECTORY: delete_directory,
        UndoKind.DELETE_FILE: delete_file,
        UndoKind.DELETE_RECORD: delete_record,
        UndoKind.DELETE_DNS_RECORD: delete_dns_record,
        UndoKind.REMOVE_CONTAINER: remove_container,
    })


class ProvisioningOrchestrator:
    def __init__(self, allocator, container_client, file_store, downloader, dns_client=None,
                 session_factory=SessionLocal, dns_domain: str = DNS_DOMAIN, dns_target: str = DNS_TARGET_HOST):
        self.allocator = allocator
        self.container_client = container_client
        self.file_store = file_store
        self.downloader = downloader
        self.dns_client = dns_client
        self.session_factory = session_factory
        self.dns_domain = dns_domain
        self.dns_target = dns_target
        self.compensator = build_compensator(allocator, container_client, file_store, dns_client, session_factory)

    # ==================== Validation ====================

    def validate_subdomain(self, subdomain: str, is_admin: bool = False) -> SubdomainCheck:
        sub = (subdomain or "").strip().lower()
        if not SUBDOMAIN_RE.match(sub):
            return SubdomainCheck(False, error=f'"{subdomain}" is not a valid subdomain')
        reserved = sub in PROHIBITED_SUBDOMAINS
        if reserved and not is_admin:
            return SubdomainCheck(
                False, True, f'The subdomain "{sub}" is reserved and can only be used by administrators.')
        if not self.check_subdomain_available(sub):
            return SubdomainCheck(False, reserved, f'The subdomain "{sub}" is already in use.')
        return SubdomainCheck(True, reserved)

    def check_subdomain_available(self, subdomain: str) -> bool:
        sub = (subdomain or "").strip().lower()
        with DatabaseSession(self.session_factory) as db:
            return db.query(Server.id).filter(Server.subdomain_name == sub).first() is None

    def _validate(self, owner_email: str, request: ProvisioningRequest, is_admin: bool) -> None:
        if not owner_email:
            raise ValidationError("Owner is required")
        name = (request.server_name or "").strip()
        if not SERVER_NAME_RE.match(name):
            raise ValidationError("Server name must be 1-64 characters of letters, digits, spaces, '.', '_' or '-'")
        if (request.server_type or "").lower() not in SUPPORTED_SERVER_TYPES:
            raise ValidationError(f"Unsupported server type '{request.server_type}'",
                                  {"supported": list(SUPPORTED_SERVER_TYPES)})
        if not (request.version or "").strip():
            raise ValidationError("Version is required")
        if not (MIN_MEMORY_MB <= int(request.memory_mb) <= MAX_MEMORY_MB):
            raise ValidationError(f"Memory must be between {MIN_MEMORY_MB} and {MAX_MEMORY_MB} MB")

        with DatabaseSession(self.session_factory) as db:
            duplicate = db.query(Server.id).filter(
                Server.owner_email == owner_email, Server.server_name == name
            ).first()
        if duplicate:
            raise ResourceConflictError(f'You already have a server named "{name}"')

        if request.subdomain:
            check = self.validate_subdomain(request.subdomain, is_admin)
            if not check.valid:
                if check.reserved or "already in use" in (check.error or ""):
                    raise ResourceConflictError(check.error, {"reserved": check.reserved})
                raise ValidationError(check.error)

    # ==================== Saga ====================

    def create_server(self, owner_email: str, request: ProvisioningRequest, is_admin: bool = False) -> ProvisioningOutcome:
        run = _Run(uuid.uuid4().hex[:12])
        request.server_name = (request.server_name or "").strip()
        request.server_type = (request.server_type or "").lower()
        subdomain = request.subdomain.strip().lower() if request.subdomain else None
        request.subdomain = subdomain

        # Validation and the orchestrator precondition create nothing
        self._validate(owner_email, request, is_admin)
        self.container_client.ensure_available(request.environment_id)

        allocation = self.allocator.allocate(
            owner_email,
            needs_rcon=request.needs_rcon,
            environment_id=request.environment_id,
            preferred_port=request.preferred_port,
            server_id=run.server_id,
        )
        for port in (allocation.port, allocation.rcon_port):
            if port is not None:
                run.ledger.register(UndoAction.of(
                    UndoKind.RELEASE_PORT, port, environment_id=request.environment_id))
        run.advance(ProvisioningState.PORT_ALLOCATED)

        outcome = ProvisioningOutcome(
            server_id=run.server_id,
            port=allocation.port,
            rcon_port=allocation.rcon_port,
            environment_id=request.environment_id,
            container_name=container_name_for(run.server_id),
            files_root=server_files.server_root(owner_email, run.server_id),
            subdomain=subdomain,
        )

        try:
            self._create_layout(run, request, outcome)
            self._create_dns(run, outcome)
            run.advance(ProvisioningState.REMOTE_RESOURCES_CREATED)

            self._persist(run, owner_email, request, outcome)
            run.advance(ProvisioningState.PERSISTED)
        except Exception as exc:
            self._fail(run, exc)

        run.advance(ProvisioningState.DONE)
        outcome.states = list(run.history)
        logger.info(f"Provisioned server {run.server_id} ({request.server_name}) for {owner_email} "
                    f"on port {outcome.port}")
        return outcome

    def _fail(self, run: _Run, exc: Exception) -> None:
        failed_in = run.state.value
        logger.error(f"Provisioning {run.server_id} failed after {failed_in}: {exc}")
        run.advance(ProvisioningState.ROLLING_BACK)
        report = run.ledger.execute(self.compensator)
        run.advance(ProvisioningState.FAILED)
        if report.failures:
            logger.error(f"Rollback of {run.server_id} left {len(report.failures)} resource(s) to reconcile")
        cause = exc
        if isinstance(exc, IntegrityError):
            cause = ResourceConflictError("Server name or subdomain was taken concurrently")
        elif not isinstance(exc, OrchestrationError):
            cause = PartialExternalFailure(failed_in, str(exc))
        raise ProvisioningError(cause, report.failures, run.history) from exc

    def _create_layout(self, run: _Run, request: ProvisioningRequest, outcome: ProvisioningOutcome) -> None:
        root = outcome.files_root
        if self.file_store.exists(root):
            raise ResourceConflictError(f"Server folder {root} already exists")
        self.file_store.create_directory(root)
        run.ledger.register(UndoAction.of(UndoKind.DELETE_DIRECTORY, root))

        for folder in server_files.layout_folders(root):
            self.file_store.create_directory(folder)
        overrides = dict(request.server_config.get("properties", {})) if request.server_config else {}
        for rel, content in server_files.initial_files(request.server_name, outcome.rcon_port, overrides).items():
            self.file_store.upload_file(f"{root}/{rel}", content)

        artifact = self.downloader.fetch(request.server_type, request.version)
        if artifact is None:
            outcome.warnings.append(f"{request.server_type} runtime will be provided by the container image")
        else:
            self.file_store.upload_file(f"{root}/{artifact.filename}", artifact.content)

    def _create_dns(self, run: _Run, outcome: ProvisioningOutcome) -> None:
        if not outcome.subdomain:
            return
        if self.dns_client is None or not self.dns_domain or not self.dns_target:
            outcome.warnings.append("DNS is not configured; no SRV record was created")
            return
        record_id = self.dns_client.create_srv_record(
            self.dns_domain, outcome.subdomain, outcome.port, self.dns_target)
        run.ledger.register(UndoAction.of(UndoKind.DELETE_DNS_RECORD, record_id, domain=self.dns_domain))
        outcome.dns_record_id = record_id

    def _persist(self, run: _Run, owner_email: str, request: ProvisioningRequest, outcome: ProvisioningOutcome) -> None:
        # Registered first so a commit that fails after the insert still rolls back
        run.ledger.register(UndoAction.of(UndoKind.DELETE_RECORD, run.server_id))
        with DatabaseSession(self.session_factory) as db:
            db.add(Server(
                unique_id=run.server_id,
                owner_email=owner_email,
                server_name=request.server_name,
                server_type=request.server_type,
                version=request.version,
                memory_mb=int(request.memory_mb),
                server_config=dict(request.server_config or {}),
                environment_id=request.environment_id,
                port=outcome.port,
                rcon_port=outcome.rcon_port,
                subdomain_name=outcome.subdomain,
                dns_record_id=outcome.dns_record_id,
                status="offline",
                container_name=outcome.container_name,
                files_root=outcome.files_root,
            ))
