# mindtrack/errors.py
"""Error taxonomy for the clinical-record core.

Every error carries the HTTP status the API boundary should answer with, so
routers never have to inspect messages to pick a response code.
"""
from typing import Any, Dict, Optional


class CRUDError(Exception):
    """Base class for every error raised by the record-integrity core."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "detail": self.message, **self.details}


class ValidationError(CRUDError):
    """Malformed input or a missing required field."""

    status_code = 400


class ReferenceNotFound(CRUDError):
    """A patient, clinician or appointment reference could not be resolved."""

    status_code = 404

    def __init__(self, reference_type: str, raw_value: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{reference_type} reference '{raw_value}' could not be resolved",
            {"reference_type": reference_type, "reference": str(raw_value)},
        )
        self.reference_type = reference_type
        self.raw_value = raw_value


class InvalidTransition(CRUDError):
    """An illegal status change was requested."""

    status_code = 409

    def __init__(self, entity: str, current: str, requested: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move {entity} from '{current}' to '{requested}'",
            {"entity": entity, "current_status": current, "requested_status": requested},
        )
        self.current = current
        self.requested = requested


class ConflictError(CRUDError):
    """A concurrent writer changed the record first."""

    status_code = 409


class Forbidden(CRUDError):
    """The caller's context does not allow the requested access."""

    status_code = 403


class NotFound(CRUDError):
    """The requested resource does not exist."""

    status_code = 404


class AuditIntegrityError(CRUDError):
    """An audit entry could not be appended, or a write against an existing entry was attempted."""

    status_code = 500
