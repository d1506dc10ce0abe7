"""Compensation for multi-step workflows.

Forward steps register small value descriptors (``UndoAction``) as they
succeed. On failure the ledger hands them, newest first, to a
``Compensator`` that knows how to undo each kind of resource.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import threading

from errors import RollbackFailure

logger = logging.getLogger(__name__)


class UndoKind(str, Enum):
    RELEASE_PORT = "release_port"
    DELETE_DIRECTORY = "delete_directory"
    DELETE_FILE = "delete_file"
    DELETE_RECORD = "delete_record"
    DELETE_DNS_RECORD = "delete_dns_record"
    REMOVE_CONTAINER = "remove_container"


@dataclass(frozen=True)
class UndoAction:
    kind: UndoKind
    target: str
    params: Tuple[Tuple[str, Any], ...] = ()
    label: str = ""

    @classmethod
    def of(cls, kind: UndoKind, target, label: str = "", **params) -> "UndoAction":
        return cls(kind, str(target), tuple(sorted(params.items())), label or f"{kind.value} {target}")

    def param(self, name: str, default=None):
        return dict(self.params).get(name, default)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "target": self.target, "params": dict(self.params), "label": self.label}


@dataclass
class RollbackReport:
    executed: List[UndoAction] = field(default_factory=list)
    failures: List[RollbackFailure] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failures


class Compensator:
    """Maps each UndoKind to the function that undoes it.

    Handlers must treat an already-absent resource as success.
    """

    def __init__(self, handlers: Optional[Dict[UndoKind, Callable[[UndoAction], None]]] = None):
        self.handlers: Dict[UndoKind, Callable[[UndoAction], None]] = dict(handlers or {})

    def register(self, kind: UndoKind, handler: Callable[[UndoAction], None]) -> None:
        self.handlers[kind] = handler

    def __call__(self, action: UndoAction) -> None:
        handler = self.handlers.get(action.kind)
        if handler is None:
            raise RollbackFailure(action.label, f"no compensator registered for {action.kind.value}")
        handler(action)


class RollbackLedger:
    def __init__(self):
        self._actions: List[UndoAction] = []
        self._executed = False
        self._lock = threading.Lock()

    def register(self, action: UndoAction) -> None:
        with self._lock:
            if self._executed:
                raise RuntimeError("Ledger already executed")
            self._actions.append(action)
        logger.debug(f"Registered rollback action: {action.label}")

    @property
    def actions(self) -> List[UndoAction]:
        return list(self._actions)

    def __len__(self) -> int:
        return len(self._actions)

    def execute(self, compensator: Callable[[UndoAction], None]) -> RollbackReport:
        """Run every action once, newest first. Failures are collected, not raised."""
        report = RollbackReport()
        with self._lock:
            if self._executed:
                return report
            self._executed = True
            pending = list(reversed(self._actions))

        for action in pending:
            try:
                compensator(action)
                logger.info(f"Rollback: {action.label}")
            except RollbackFailure as e:
                logger.error(f"Rollback action failed: {e.message}")
                report.failures.append(e)
            except Exception as e:
                logger.error(f"Rollback action '{action.label}' failed: {e}")
                report.failures.append(RollbackFailure(action.label, str(e)))
            report.executed.append(action)
        return report
