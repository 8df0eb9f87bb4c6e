from typing import Any, Optional
import logging

from sqlalchemy.orm import Session

from . import models


class ComplianceLogger:
	"""Audit trail writer. Rows are added to the caller's session so they commit with the change they describe."""

	def __init__(self, source: str = "clinicbook"):
		self.source = source
		self.logger = logging.getLogger("clinicbook.audit")

	def log_event(
		self,
		db: Session,
		action: str,
		resource_type: str,
		resource_id: Optional[int] = None,
		clinic_id: Optional[int] = None,
		actor_staff_id: Optional[int] = None,
		actor_role: Optional[str] = None,
		old_value: Optional[str] = None,
		new_value: Optional[str] = None,
		details: Optional[str] = None,
		**_: Any
	) -> models.AuditLog:
		"""Adds an AuditLog row to the session without committing."""
		try:
			action_enum = models.AuditAction(action.upper())
		except ValueError:
			action_enum = models.AuditAction.UPDATE

		entry = models.AuditLog(
			clinic_id=clinic_id,
			actor_staff_id=actor_staff_id,
			actor_role=actor_role or "system",
			action=action_enum,
			resource_type=resource_type,
			resource_id=resource_id,
			old_value=old_value,
			new_value=new_value,
			details=details,
		)
		db.add(entry)
		self.logger.info(
			"audit %s %s:%s %s -> %s by staff=%s",
			action_enum.value, resource_type, resource_id, old_value, new_value, actor_staff_id,
		)
		return entry

	def log_status_change(
		self,
		db: Session,
		appointment: models.Appointment,
		old_status: models.AppointmentStatus,
		new_status: models.AppointmentStatus,
		actor_staff_id: Optional[int] = None,
		actor_role: Optional[str] = None,
		reason: Optional[str] = None,
	) -> models.AuditLog:
		return self.log_event(
			db,
			action="STATUS_CHANGE",
			resource_type="appointment",
			resource_id=appointment.id,
			clinic_id=appointment.clinic_id,
			actor_staff_id=actor_staff_id,
			actor_role=actor_role,
			old_value=old_status.value,
			new_value=new_status.value,
			details=reason,
		)


compliance_logger = ComplianceLogger()
