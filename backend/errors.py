"""Error taxonomy shared by the orchestration workflows.

Every error carries an HTTP status so the API layer can render it without a
per-route translation table.
"""
from typing import Any, Dict, List, Optional


class OrchestrationError(Exception):
    status_code = 500
    code = "orchestration_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(OrchestrationError):
    """Bad input. Raised before any side effect."""
    status_code = 400
    code = "validation_error"


class ServerNotFoundError(OrchestrationError):
    status_code = 404
    code = "server_not_found"


class ResourceConflictError(OrchestrationError):
    """Port, subdomain or name already taken."""
    status_code = 409
    code = "resource_conflict"


class PortsExhaustedError(OrchestrationError):
    status_code = 409
    code = "ports_exhausted"


class OrchestratorUnavailableError(OrchestrationError):
    """Container orchestrator unreachable. Fatal for the request, never retried."""
    status_code = 503
    code = "orchestrator_unavailable"


class PartialExternalFailure(OrchestrationError):
    """An external system step failed part way through a workflow."""
    status_code = 502
    code = "external_failure"

    def __init__(self, step: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{step}: {message}", details)
        self.step = step


class RollbackFailure(OrchestrationError):
    """A compensating action failed. Recorded, never raised past the ledger."""
    code = "rollback_failure"

    def __init__(self, action_label: str, message: str):
        super().__init__(f"{action_label}: {message}")
        self.action_label = action_label


class UnsupportedProxyTypeError(OrchestrationError):
    status_code = 400
    code = "unsupported_proxy_type"


class RetryTimeoutError(OrchestrationError):
    status_code = 504
    code = "retry_timeout"


class ProvisioningError(OrchestrationError):
    """Creation failed after rollback was attempted.

    ``cause`` is the original failure and stays the primary reported error;
    ``rollback_errors`` lists compensations that could not be completed.
    """
    code = "provisioning_failed"

    def __init__(self, cause: Exception, rollback_errors: Optional[List[RollbackFailure]] = None,
                 states: Optional[List[str]] = None):
        super().__init__(str(cause))
        self.cause = cause
        self.rollback_errors = list(rollback_errors or [])
        self.states = list(states or [])
        self.status_code = getattr(cause, "status_code", 500)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "error": getattr(self.cause, "code", self.code),
            "message": self.message,
            "rolled_back": True,
        }
        if self.rollback_errors:
            data["rollback_errors"] = [e.message for e in self.rollback_errors]
        return data
