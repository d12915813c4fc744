# hospital_app/compliance_logger.py
from datetime import datetime, timezone
from typing import Optional, Any
import logging

from sqlalchemy.exc import SQLAlchemyError

from . import models
from .database import SessionLocal


class ComplianceLogger:
	"""Stores audit events in the AuditLog table.

	Uses its own session, so callers must log only after their business
	transaction has committed. A failed audit write is logged and never
	propagates into the business operation.
	"""

	def __init__(self, institution_id: str = 'HOSPITAL-MAIN'):
		self.institution_id = institution_id
		self.logger = logging.getLogger(__name__)

	def log_event(
		self,
		user_id: Optional[int],
		role: Optional[str],
		action: Any,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[int] = None,
		username: Optional[str] = None,
		**_: Any
	) -> None:
		"""Logs an event into the AuditLog table. Unknown actions fall back to UPDATE."""
		if isinstance(action, models.AuditAction):
			action_enum = action
		else:
			try:
				action_enum = models.AuditAction((action or '').upper())
			except ValueError:
				action_enum = models.AuditAction.UPDATE

		db = SessionLocal()
		try:
			db_log = models.AuditLog(
				user_id=user_id,
				username=username if username else (str(user_id) if user_id else 'System'),
				role=role.value if isinstance(role, models.UserRole) else role,
				action=action_enum,
				category=category or 'GENERAL',
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=resource_id,
				details=details,
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error(f"Failed to save compliance log to DB: {e}")
		finally:
			db.close()

	def log_actor_event(self, actor, action: Any, category: str, **kwargs: Any) -> None:
		"""Shorthand for events performed by an authenticated actor."""
		self.log_event(
			user_id=actor.user_id if actor else None,
			role=actor.role if actor else None,
			username=actor.username if actor else None,
			action=action,
			category=category,
			**kwargs
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
