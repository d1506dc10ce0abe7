"""Port allocation per execution environment.

Game ports come from one authoritative range (GAME_PORT_START..GAME_PORT_END)
that also bounds admin reservations. RCON ports come from a separate range
and are never reservable. Claims are rows in ``port_reservations`` whose
``(environment_id, port)`` unique constraint backs up the in-process lock.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging
import threading

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from config import (
    DEFAULT_ENVIRONMENT,
    GAME_PORT_END,
    GAME_PORT_START,
    IMPORTANT_PORTS,
    RCON_PORT_END,
    RCON_PORT_START,
)
from database import DatabaseSession, SessionLocal
from errors import OrchestratorUnavailableError, PortsExhaustedError
from models import PortReservation, User

logger = logging.getLogger(__name__)

CLAIM_ATTEMPTS = 5


class ConflictType(str, Enum):
    OUT_OF_RANGE = "out_of_range"
    IMPORTANT = "important"
    CONTAINER = "container"
    DATABASE = "database"
    RESERVED = "reserved"


class PortKind(str, Enum):
    GAME = "game"
    RCON = "rcon"
    USER_SINGLE = "user-reserved-single"
    USER_RANGE = "user-reserved-range"


@dataclass
class AvailabilityCheck:
    port: int
    available: bool
    reason: Optional[str] = None
    conflict_type: Optional[ConflictType] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["conflict_type"] = self.conflict_type.value if self.conflict_type else None
        return data


@dataclass
class PortAllocation:
    port: int
    rcon_port: Optional[int]
    environment_id: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReservationResult:
    success: bool
    error: Optional[str] = None
    reserved: List = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _expand_range(entry: dict) -> range:
    return range(int(entry["start"]), int(entry["end"]) + 1)


class PortAllocator:
    def __init__(self, container_client, session_factory=SessionLocal,
                 game_range: Tuple[int, int] = (GAME_PORT_START, GAME_PORT_END),
                 rcon_range: Tuple[int, int] = (RCON_PORT_START, RCON_PORT_END),
                 important_ports: Iterable[int] = IMPORTANT_PORTS):
        self.container_client = container_client
        self.session_factory = session_factory
        self.game_range = game_range
        self.rcon_range = rcon_range
        self.important_ports = frozenset(important_ports)
        self._env_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, environment_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._env_locks.get(environment_id)
            if lock is None:
                lock = threading.Lock()
                self._env_locks[environment_id] = lock
            return lock

    def in_game_range(self, port: int) -> bool:
        return self.game_range[0] <= port <= self.game_range[1]

    # ==================== Lookups ====================

    def _container_ports(self, environment_id: str) -> Set[int]:
        try:
            return set(self.container_client.used_host_ports(environment_id))
        except OrchestratorUnavailableError:
            raise
        except Exception as e:
            raise OrchestratorUnavailableError(f"Could not read bound ports in '{environment_id}': {e}") from e

    @staticmethod
    def _held_rows(db, environment_id: str, exclude_server_id: Optional[str] = None) -> List[PortReservation]:
        query = db.query(PortReservation).filter(PortReservation.environment_id == environment_id)
        if exclude_server_id:
            query = query.filter(or_(PortReservation.server_id.is_(None),
                                     PortReservation.server_id != exclude_server_id))
        return query.all()

    @staticmethod
    def _user_reservations(db) -> Dict[str, Set[int]]:
        """All user reservations keyed by email, ranges expanded."""
        reservations: Dict[str, Set[int]] = {}
        users = db.query(User).all()
        for user in users:
            ports = set(int(p) for p in (user.reserved_ports or []))
            for entry in user.reserved_port_ranges or []:
                ports.update(_expand_range(entry))
            if ports:
                reservations[user.email] = ports
        return reservations

    def _reserved_by_others(self, db, owner_email: Optional[str]) -> Dict[int, str]:
        blocked: Dict[int, str] = {}
        for email, ports in self._user_reservations(db).items():
            if email == owner_email:
                continue
            for port in ports:
                blocked[port] = email
        return blocked

    def _own_candidates(self, db, owner_email: str) -> List[int]:
        user = db.query(User).filter(User.email == owner_email).first()
        if user is None:
            return []
        ordered: List[int] = sorted(set(int(p) for p in (user.reserved_ports or [])))
        for entry in user.reserved_port_ranges or []:
            for port in _expand_range(entry):
                if port not in ordered:
                    ordered.append(port)
        return [p for p in ordered if self.in_game_range(p)]

    # ==================== Availability ====================

    def is_available(self, port: int, owner_email: Optional[str], environment_id: str = DEFAULT_ENVIRONMENT,
                     exclude_server_id: Optional[str] = None) -> AvailabilityCheck:
        if not self.in_game_range(port):
            return AvailabilityCheck(port, False, f"Port {port} is outside {self.game_range[0]}-{self.game_range[1]}",
                                     ConflictType.OUT_OF_RANGE)
        if port in self.important_ports:
            return AvailabilityCheck(port, False, f"Port {port} is reserved for infrastructure",
                                     ConflictType.IMPORTANT)

        with DatabaseSession(self.session_factory) as db:
            rows = self._held_rows(db, environment_id, exclude_server_id)
            own_ports = set()
            if exclude_server_id:
                own_ports = {
                    r.port for r in db.query(PortReservation).filter(
                        PortReservation.server_id == exclude_server_id,
                        PortReservation.environment_id == environment_id,
                    )
                }
            if port in self._container_ports(environment_id) and port not in own_ports:
                return AvailabilityCheck(port, False, f"Port {port} is bound by a running container",
                                         ConflictType.CONTAINER)
            holder = next((r for r in rows if r.port == port), None)
            if holder is not None:
                return AvailabilityCheck(port, False, f"Port {port} is assigned to server {holder.server_id}",
                                         ConflictType.DATABASE)
            other = self._reserved_by_others(db, owner_email).get(port)
            if other is not None:
                return AvailabilityCheck(port, False, f"Port {port} is reserved for another user",
                                         ConflictType.RESERVED)
        return AvailabilityCheck(port, True)

    # ==================== Allocation ====================

    def allocate(self, owner_email: str, needs_rcon: bool = True, environment_id: str = DEFAULT_ENVIRONMENT,
                 preferred_port: Optional[int] = None, server_id: Optional[str] = None) -> PortAllocation:
        """Claim the lowest free game port (and an RCON port) for ``owner_email``.

        The owner's own reservations are tried before the general range.
        Raises PortsExhaustedError when nothing is left.
        """
        contested: Set[int] = set()
        with self._lock_for(environment_id):
            for attempt in range(CLAIM_ATTEMPTS):
                bound = self._container_ports(environment_id)
                with DatabaseSession(self.session_factory) as db:
                    held = {r.port for r in self._held_rows(db, environment_id)}
                    blocked = set(self._reserved_by_others(db, owner_email))
                    unavailable = bound | held | blocked | self.important_ports | contested

                    game_port = self._pick_game_port(db, owner_email, preferred_port, unavailable)
                    if game_port is None:
                        raise PortsExhaustedError(
                            f"No free game ports in {self.game_range[0]}-{self.game_range[1]} for {environment_id}"
                        )
                    rcon_port = None
                    if needs_rcon:
                        rcon_port = next(
                            (p for p in range(self.rcon_range[0], self.rcon_range[1] + 1) if p not in unavailable),
                            None,
                        )
                        if rcon_port is None:
                            raise PortsExhaustedError(
                                f"No free RCON ports in {self.rcon_range[0]}-{self.rcon_range[1]} for {environment_id}"
                            )

                    db.add(PortReservation(environment_id=environment_id, port=game_port, kind=PortKind.GAME.value,
                                           server_id=server_id, owner_email=owner_email))
                    if rcon_port is not None:
                        db.add(PortReservation(environment_id=environment_id, port=rcon_port,
                                               kind=PortKind.RCON.value, server_id=server_id,
                                               owner_email=owner_email))
                    try:
                        db.flush()
                    except IntegrityError:
                        # Another process claimed one of them first
                        db.rollback()
                        contested.update({game_port, rcon_port} - {None})
                        logger.warning(f"Port claim raced in {environment_id} (attempt {attempt + 1}); retrying")
                        continue

                logger.info(f"Allocated port {game_port} (rcon {rcon_port}) in {environment_id} for {owner_email}")
                return PortAllocation(game_port, rcon_port, environment_id)

        raise PortsExhaustedError(f"Could not claim a port in {environment_id} after {CLAIM_ATTEMPTS} attempts")

    def _pick_game_port(self, db, owner_email: str, preferred_port: Optional[int], unavailable: Set[int]) -> Optional[int]:
        candidates: List[int] = []
        if preferred_port is not None and self.in_game_range(preferred_port):
            candidates.append(preferred_port)
        candidates.extend(self._own_candidates(db, owner_email))
        candidates.extend(range(self.game_range[0], self.game_range[1] + 1))
        return next((p for p in candidates if p not in unavailable), None)

    def release(self, port: int, environment_id: str = DEFAULT_ENVIRONMENT) -> bool:
        """Free a claimed port. Releasing a free port is a no-op."""
        with DatabaseSession(self.session_factory) as db:
            deleted = db.query(PortReservation).filter(
                PortReservation.environment_id == environment_id,
                PortReservation.port == port,
            ).delete(synchronize_session=False)
        if deleted:
            logger.info(f"Released port {port} in {environment_id}")
        return bool(deleted)

    def release_server(self, server_id: str) -> List[int]:
        with DatabaseSession(self.session_factory) as db:
            rows = db.query(PortReservation).filter(PortReservation.server_id == server_id).all()
            ports = [r.port for r in rows]
            for row in rows:
                db.delete(row)
        if ports:
            logger.info(f"Released ports {ports} held by {server_id}")
        return ports

    # ==================== User reservations ====================

    def _check_admin(self, db, admin_email: str) -> Optional[str]:
        admin = db.query(User).filter(User.email == admin_email).first()
        if admin is None or not admin.is_admin:
            return "Only administrators can reserve ports"
        return None

    def reserve_for_user(self, admin_email: str, target_email: str, ports: List[int]) -> ReservationResult:
        with DatabaseSession(self.session_factory) as db:
            error = self._check_admin(db, admin_email)
            if error:
                return ReservationResult(False, error)
            target = db.query(User).filter(User.email == target_email).first()
            if target is None:
                return ReservationResult(False, f"User {target_email} not found")

            others = self._reserved_by_others(db, target_email)
            held = {r.port: r for r in db.query(PortReservation).all()}
            for port in ports:
                if not isinstance(port, int) or not self.in_game_range(port):
                    return ReservationResult(
                        False, f"Port {port} must be between {self.game_range[0]} and {self.game_range[1]}")
                if port in self.important_ports:
                    return ReservationResult(False, f"Port {port} is reserved for infrastructure")
                if port in others:
                    return ReservationResult(False, f"Port {port} is already reserved by another user")
                row = held.get(port)
                if row is not None and row.owner_email != target_email:
                    return ReservationResult(False, f"Port {port} is in use by server {row.server_id}")

            merged = sorted(set(int(p) for p in (target.reserved_ports or [])) | set(ports))
            target.reserved_ports = merged
        logger.info(f"{admin_email} reserved ports {ports} for {target_email}")
        return ReservationResult(True, reserved=list(ports))

    def validate_reserved_ranges(self, db, target_email: str, ranges: List[dict]) -> List[str]:
        errors: List[str] = []
        others = self._reserved_by_others(db, target_email)
        seen: Set[int] = set()
        for entry in ranges:
            try:
                start, end = int(entry["start"]), int(entry["end"])
            except (KeyError, TypeError, ValueError):
                errors.append(f"Invalid range {entry!r}")
                continue
            if start > end:
                errors.append(f"Range {start}-{end} starts after it ends")
                continue
            if not (self.in_game_range(start) and self.in_game_range(end)):
                errors.append(f"Range {start}-{end} must lie within {self.game_range[0]}-{self.game_range[1]}")
                continue
            span = set(range(start, end + 1))
            if span & seen:
                errors.append(f"Range {start}-{end} overlaps another requested range")
            if span & set(others):
                errors.append(f"Range {start}-{end} overlaps ports reserved by another user")
            seen |= span
        return errors

    def reserve_ranges_for_user(self, admin_email: str, target_email: str, ranges: List[dict]) -> ReservationResult:
        with DatabaseSession(self.session_factory) as db:
            error = self._check_admin(db, admin_email)
            if error:
                return ReservationResult(False, error)
            target = db.query(User).filter(User.email == target_email).first()
            if target is None:
                return ReservationResult(False, f"User {target_email} not found")
            errors = self.validate_reserved_ranges(db, target_email, ranges)
            if errors:
                return ReservationResult(False, "; ".join(errors))
            cleaned = [
                {"start": int(r["start"]), "end": int(r["end"]), "description": r.get("description", "")}
                for r in ranges
            ]
            target.reserved_port_ranges = list(target.reserved_port_ranges or []) + cleaned
        logger.info(f"{admin_email} reserved ranges {cleaned} for {target_email}")
        return ReservationResult(True, reserved=cleaned)

    # ==================== Reporting ====================

    def usage_report(self, environment_id: str = DEFAULT_ENVIRONMENT) -> dict:
        universe = set(range(self.game_range[0], self.game_range[1] + 1))
        container_ports = self._container_ports(environment_id) & universe
        with DatabaseSession(self.session_factory) as db:
            database_ports = {r.port for r in self._held_rows(db, environment_id)} & universe
            user_reserved = {}
            for user in db.query(User).all():
                single = sorted(int(p) for p in (user.reserved_ports or []))
                ranged = sorted({p for entry in (user.reserved_port_ranges or []) for p in _expand_range(entry)})
                if single or ranged:
                    user_reserved[user.email] = {
                        PortKind.USER_SINGLE.value: single,
                        PortKind.USER_RANGE.value: ranged,
                    }
        important = self.important_ports & universe
        used = container_ports | database_ports
        return {
            "environment_id": environment_id,
            "range": {"start": self.game_range[0], "end": self.game_range[1]},
            "rcon_range": {"start": self.rcon_range[0], "end": self.rcon_range[1]},
            "total_ports": len(universe),
            "used_ports": len(used),
            "available_ports": len(universe - used - important),
            "container_ports": sorted(container_ports),
            "database_ports": sorted(database_ports),
            "user_reserved": user_reserved,
            "important_ports": sorted(important),
        }
