# mindtrack/storage.py
"""Persistence interface shared by the CRUD layer and the lifecycle services.

All writes go through ``unit_of_work`` so an entity mutation and the audit
entry describing it are committed together or not at all.
"""
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import models
from .errors import (
    AuditIntegrityError, ConflictError, CRUDError, NotFound, ReferenceNotFound,
)

logger = logging.getLogger(__name__)

_UOW_DEPTH = "mindtrack.uow_depth"


def translate_db_error(exc: Exception) -> Exception:
    """Map SQLAlchemy failures onto the error taxonomy; other exceptions pass through."""
    if isinstance(exc, CRUDError):
        return exc
    if isinstance(exc, StaleDataError):
        return ConflictError(
            "The record was modified by another request; reload and try again",
            {"reason": str(exc)},
        )
    if isinstance(exc, IntegrityError):
        message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
        if "foreign key" in message:
            return ReferenceNotFound("reference", "unknown", "A referenced record does not exist")
        return ConflictError("Integrity constraint violated", {"reason": str(exc.orig)})
    if isinstance(exc, SQLAlchemyError):
        logger.error(f"Database error: {exc}")
        return CRUDError(f"Database operation failed: {exc}")
    return exc


@contextmanager
def unit_of_work(db: Session):
    """Commit on success, roll back on any error. Nested blocks join the outermost one."""
    depth = db.info.get(_UOW_DEPTH, 0)
    db.info[_UOW_DEPTH] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except Exception as exc:
        if depth == 0:
            db.rollback()
        translated = translate_db_error(exc)
        if translated is exc:
            raise
        raise translated from exc
    finally:
        db.info[_UOW_DEPTH] = depth


def check_version(entity: Any, expected_version: Optional[int]) -> None:
    if expected_version is None:
        return
    if entity.version != expected_version:
        raise ConflictError(
            f"{type(entity).__name__} {entity.id} is at version {entity.version}, "
            f"expected {expected_version}",
            {"current_version": entity.version, "expected_version": expected_version},
        )


# ==================== ENTITY OPERATIONS ====================

def insert(db: Session, entity: models.Base) -> models.Base:
    db.add(entity)
    db.flush()
    return entity


def find_by_id(db: Session, model: Type[models.Base], entity_id: Any,
               for_update: bool = False) -> Optional[models.Base]:
    if entity_id is None:
        return None
    if for_update:
        # FOR UPDATE is a no-op on SQLite; the version column still catches races there
        return db.get(model, entity_id, with_for_update=True, populate_existing=True)
    return db.get(model, entity_id)


def require(db: Session, model: Type[models.Base], entity_id: Any,
            for_update: bool = False) -> models.Base:
    entity = find_by_id(db, model, entity_id, for_update=for_update)
    if entity is None:
        raise NotFound(f"{model.__name__} {entity_id} not found")
    return entity


def find_many(db: Session, model: Type[models.Base], filters: Optional[Dict[str, Any]] = None,
              order_by: Iterable = (), limit: Optional[int] = None, offset: int = 0) -> List[models.Base]:
    """Equality filters; a list or tuple value becomes an IN clause."""
    query = db.query(model)
    for field, value in (filters or {}).items():
        column = getattr(model, field)
        if isinstance(value, (list, tuple, set, frozenset)):
            query = query.filter(column.in_(list(value)))
        elif value is None:
            query = query.filter(column.is_(None))
        else:
            query = query.filter(column == value)
    if order_by:
        query = query.order_by(*order_by)
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def update(db: Session, model: Type[models.Base], entity_id: Any, patch: Dict[str, Any],
           expected_version: Optional[int] = None) -> Tuple[models.Base, Dict[str, Dict[str, Any]]]:
    """Apply ``patch`` and return the entity plus an {field: {old, new}} change map."""
    entity = require(db, model, entity_id, for_update=expected_version is not None)
    check_version(entity, expected_version)

    changes = {}
    for field, value in patch.items():
        current = getattr(entity, field)
        if current != value:
            changes[field] = {"old": current, "new": value}
            setattr(entity, field, value)
    if changes:
        db.flush()
    return entity, changes


def _seen_version(db: Session, model: Type[models.Base], entity_id: Any) -> Optional[int]:
    # identity map first; a plain read (no lock) otherwise
    seen = find_by_id(db, model, entity_id)
    return getattr(seen, "version", None) if seen is not None else None


def status_transition(db: Session, model: Type[models.Base], entity_id: Any, new_status: Any,
                      expected_version: Optional[int] = None,
                      validator: Optional[Callable[[Any, Any], None]] = None,
                      extra: Optional[Dict[str, Any]] = None) -> Tuple[models.Base, Any]:
    """Lock, version-check, validate and apply a status change. Returns (entity, old_status).

    Without ``expected_version`` the version this session already holds is the
    expected one, so a writer that committed between that read and the lock is
    a ConflictError rather than a transition out of its new status.
    """
    if expected_version is None:
        expected_version = _seen_version(db, model, entity_id)
    entity = require(db, model, entity_id, for_update=True)
    check_version(entity, expected_version)

    old_status = entity.status
    if validator is not None:
        validator(old_status, new_status)
    entity.status = new_status
    for field, value in (extra or {}).items():
        setattr(entity, field, value)
    db.flush()
    return entity, old_status


def soft_delete(db: Session, model: Type[models.Base], entity_id: Any,
                expected_version: Optional[int] = None) -> models.Base:
    """Users get ``deleted_at``; patients move to inactive. Rows are never removed."""
    if model is models.Patient:
        entity, _ = status_transition(
            db, model, entity_id, models.PatientStatus.inactive, expected_version=expected_version,
            validator=models.validate_patient_transition,
        )
        return entity
    if not hasattr(model, "deleted_at"):
        raise CRUDError(f"{model.__name__} does not support soft delete")
    entity = require(db, model, entity_id)
    entity.deleted_at = models.utcnow()
    db.flush()
    return entity


# ==================== AUDIT OPERATIONS ====================

def append_audit(db: Session, entry: models.AuditLog) -> models.AuditLog:
    try:
        db.add(entry)
        db.flush()
    except SQLAlchemyError as exc:
        logger.error(f"Failed to append audit entry: {exc}")
        raise AuditIntegrityError(f"Failed to append audit entry: {exc}") from exc
    return entry


def query_audit(db: Session, user_id: Optional[str] = None, action: Optional[str] = None,
                resource_type: Optional[str] = None, resource_id: Optional[str] = None,
                start_date=None, end_date=None,
                limit: Optional[int] = None, offset: int = 0) -> List[models.AuditLog]:
    """Audit entries, newest first; the integer id breaks timestamp ties."""
    query = db.query(models.AuditLog)
    if user_id is not None:
        query = query.filter(models.AuditLog.user_id == str(user_id))
    if action is not None:
        query = query.filter(models.AuditLog.action == _value(action))
    if resource_type is not None:
        query = query.filter(models.AuditLog.resource_type == _value(resource_type))
    if resource_id is not None:
        query = query.filter(models.AuditLog.resource_id == str(resource_id))
    if start_date is not None:
        query = query.filter(models.AuditLog.timestamp >= start_date)
    if end_date is not None:
        query = query.filter(models.AuditLog.timestamp <= end_date)

    query = query.order_by(models.AuditLog.timestamp.desc(), models.AuditLog.id.desc())
    if offset:
        query = query.offset(offset)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def _value(member: Any) -> Any:
    return getattr(member, "value", member)
