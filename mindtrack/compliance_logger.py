# mindtrack/compliance_logger.py
from collections import Counter
from datetime import timedelta
from typing import Optional, Any, Dict, List, Union

import structlog
from pydantic_core import to_jsonable_python
from sqlalchemy.orm import Session

from . import models, schemas, storage
from .config import get_settings
from .errors import Forbidden, NotFound, ValidationError
from .storage import unit_of_work

# Resources whose existence (and owner) can be checked before returning history
_RESOURCE_MODELS = {
	models.ResourceType.patient: models.Patient,
	models.ResourceType.appointment: models.Appointment,
	models.ResourceType.treatment_record: models.TreatmentRecord,
	models.ResourceType.user: models.User,
	models.ResourceType.discharge_request: models.DischargeRequest,
}

_AUTH_ACTIONS = frozenset({
	models.AuditAction.LOGIN,
	models.AuditAction.LOGOUT,
	models.AuditAction.PASSWORD_RESET,
	models.AuditAction.PASSWORD_CHANGE,
})


def _coerce(enum_cls, value, label: str):
	if isinstance(value, enum_cls):
		return value
	try:
		return enum_cls(value)
	except ValueError as exc:
		raise ValidationError(f"Unknown audit {label} '{value}'") from exc


class ComplianceLogger:
	"""Append-only audit recorder that writes every compliance event to the AuditLog table.

	Entries are appended in the caller's session so they commit (or roll back)
	together with the mutation they describe.
	"""

	def __init__(self, system_actor_id: Optional[str] = None):
		self._system_actor_id = system_actor_id
		self.logger = structlog.get_logger(__name__)

	@property
	def system_actor_id(self) -> str:
		return self._system_actor_id or get_settings().system_actor_id

	# ==================== RECORDING ====================

	def record(
		self,
		db: Session,
		user_id: Any,
		action: Union[models.AuditAction, str],
		resource_type: Union[models.ResourceType, str],
		resource_id: Any,
		details: Optional[Dict[str, Any]] = None,
		context: Optional[Union[schemas.AuditContext, Dict[str, Any]]] = None,
	) -> models.AuditLog:
		"""Append one immutable entry. Missing context fields are stored as NULL."""
		action = _coerce(models.AuditAction, action, "action")
		resource_type = _coerce(models.ResourceType, resource_type, "resource type")
		if resource_id is None or str(resource_id).strip() == "":
			raise ValidationError("Audit entries require a resource id")

		if context is None:
			context = schemas.AuditContext()
		elif isinstance(context, dict):
			context = schemas.AuditContext(**context)

		entry = models.AuditLog(
			user_id=str(user_id) if user_id is not None else self.system_actor_id,
			action=action.value,
			resource_type=resource_type.value,
			resource_id=str(resource_id),
			details=to_jsonable_python(details) if details is not None else None,
			timestamp=models.utcnow(),
			ip_address=context.ip_address,
			user_agent=context.user_agent,
			session_id=context.session_id,
		)
		with unit_of_work(db):
			storage.append_audit(db, entry)

		self.logger.debug(
			"audit_recorded",
			audit_id=entry.id,
			action=entry.action,
			resource_type=entry.resource_type,
			resource_id=entry.resource_id,
			user_id=entry.user_id,
		)
		return entry

	def log_access(
		self,
		db: Session,
		user_id: Any,
		resource_type: Union[models.ResourceType, str],
		resource_id: Any,
		purpose: Optional[str] = None,
		context: Optional[schemas.AuditContext] = None,
	) -> models.AuditLog:
		"""Logs a read of protected data."""
		details = {"purpose": purpose} if purpose else None
		return self.record(db, user_id, models.AuditAction.READ, resource_type, resource_id, details, context)

	def log_emergency_access(
		self,
		db: Session,
		user_id: Any,
		patient_id: Any,
		justification: str,
		context: Optional[schemas.AuditContext] = None,
	) -> models.AuditLog:
		"""Break-the-glass access to a patient chart; a justification is mandatory."""
		if not justification or not justification.strip():
			raise ValidationError("Emergency access requires a justification")
		entry = self.record(
			db, user_id, models.AuditAction.EMERGENCY_ACCESS, models.ResourceType.patient, patient_id,
			{"justification": justification, "emergency": True}, context,
		)
		self.logger.warning("emergency_access", user_id=str(user_id), patient_id=str(patient_id))
		return entry

	def log_auth_activity(
		self,
		db: Session,
		user_id: Any,
		action: Union[models.AuditAction, str],
		success: bool = True,
		context: Optional[schemas.AuditContext] = None,
	) -> models.AuditLog:
		"""Login/logout and credential events, recorded against the session resource."""
		action = _coerce(models.AuditAction, action, "action")
		if action not in _AUTH_ACTIONS:
			raise ValidationError(f"'{action.value}' is not an authentication action")
		session_id = context.session_id if context and context.session_id else None
		return self.record(
			db, user_id, action, models.ResourceType.session, session_id or str(user_id),
			{"success": success}, context,
		)

	# ==================== QUERIES ====================

	def history(
		self,
		db: Session,
		resource_type: Union[models.ResourceType, str],
		resource_id: Any,
		query_context: Optional[schemas.AuditQueryContext] = None,
		limit: Optional[int] = None,
		offset: int = 0,
	) -> List[models.AuditLog]:
		"""Entries for one resource, newest first.

		NotFound when nothing is known about the resource; Forbidden when it is
		known but ``query_context`` may not see it. A None context is an
		internal caller and is always allowed.
		"""
		resource_type = _coerce(models.ResourceType, resource_type, "resource type")
		resource = self._load_resource(db, resource_type, resource_id)
		entries = storage.query_audit(
			db, resource_type=resource_type, resource_id=str(resource_id), limit=limit, offset=offset
		)
		if resource is None and not entries and not self._has_entries(db, resource_type, resource_id):
			raise NotFound(f"No {resource_type.value} '{resource_id}' and no audit history for it")

		if not self._may_view_resource(query_context, resource_type, resource_id, resource):
			self.logger.warning(
				"audit_history_denied",
				resource_type=resource_type.value,
				resource_id=str(resource_id),
				requested_by=query_context.user_id,
			)
			raise Forbidden(f"Not allowed to view history for {resource_type.value} '{resource_id}'")
		return entries

	def history_for_user(
		self,
		db: Session,
		user_id: Any,
		query_context: Optional[schemas.AuditQueryContext] = None,
		limit: Optional[int] = None,
		offset: int = 0,
	) -> List[models.AuditLog]:
		"""Everything a user did, newest first."""
		user = self._load_resource(db, models.ResourceType.user, user_id)
		entries = storage.query_audit(db, user_id=str(user_id), limit=limit, offset=offset)
		if user is None and not entries and not storage.query_audit(db, user_id=str(user_id), limit=1):
			raise NotFound(f"No user '{user_id}' and no audit history for it")

		if query_context is not None and query_context.role != models.UserRole.admin \
				and query_context.user_id != str(user_id):
			raise Forbidden(f"Not allowed to view activity of user '{user_id}'")
		return entries

	def query(self, db: Session, filters: Optional[schemas.AuditLogFilter] = None) -> List[models.AuditLog]:
		filters = filters or schemas.AuditLogFilter()
		return storage.query_audit(
			db,
			user_id=filters.user_id,
			action=filters.action,
			resource_type=filters.resource_type,
			resource_id=filters.resource_id,
			start_date=filters.start_date,
			end_date=filters.end_date,
			limit=filters.limit,
			offset=filters.offset,
		)

	def summary(self, db: Session, days: Optional[int] = None, now=None) -> schemas.AuditSummary:
		"""Counts by action and by user over the trailing window, plus the ten latest entries."""
		days = days or get_settings().audit_summary_days
		since = (now or models.utcnow()) - timedelta(days=days)
		entries = storage.query_audit(db, start_date=since)

		return schemas.AuditSummary(
			days=days,
			total_logs=len(entries),
			by_action=dict(Counter(e.action for e in entries)),
			by_user=dict(Counter(e.user_id for e in entries)),
			recent_activity=[schemas.AuditLogResponse.model_validate(e) for e in entries[:10]],
		)

	# ==================== HELPERS ====================

	def _load_resource(self, db: Session, resource_type: models.ResourceType, resource_id: Any):
		from .references import parse_identifier

		model = _RESOURCE_MODELS.get(resource_type)
		identifier = parse_identifier(resource_id)
		if model is None or identifier is None:
			return None
		return db.get(model, identifier)

	def _has_entries(self, db: Session, resource_type: models.ResourceType, resource_id: Any) -> bool:
		return bool(storage.query_audit(db, resource_type=resource_type, resource_id=str(resource_id), limit=1))

	def _may_view_resource(self, query_context, resource_type, resource_id, resource) -> bool:
		if query_context is None or query_context.role == models.UserRole.admin:
			return True
		if query_context.role != models.UserRole.clinical:
			return False

		viewer = query_context.user_id
		if resource_type == models.ResourceType.user:
			return str(resource_id) == viewer or (resource is not None and str(resource.id) == viewer)
		if resource is None:
			return False
		if resource_type == models.ResourceType.patient:
			owners = (resource.assigned_clinical_id, resource.created_by)
		elif resource_type in (models.ResourceType.appointment, models.ResourceType.treatment_record):
			owners = (resource.clinical_id, resource.created_by)
		elif resource_type == models.ResourceType.discharge_request:
			owners = (resource.requested_by, resource.patient.assigned_clinical_id)
		else:
			return False
		return viewer in {str(owner) for owner in owners if owner is not None}


# Singleton instance for global import
compliance_logger = ComplianceLogger()
