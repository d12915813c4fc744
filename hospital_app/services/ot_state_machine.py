# hospital_app/services/ot_state_machine.py
"""Operation theatre case lifecycle.

    scheduled -> in_prep -> in_progress -> completed
    scheduled | in_prep -> cancelled

``postponed`` is a stored status that no transition enters or leaves.
Phase progress (pre-op / intra-op / post-op) is derived on read and never stored.
"""
import logging
from typing import Iterable, List, Optional, Set

from sqlalchemy import update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..errors import (
    AuthorizationError, HospitalError, IllegalTransition, NotFound, PersistenceError, ValidationError,
)
from ..security import OT_SCHEDULING_ROLES

logger = logging.getLogger(__name__)

Status = models.OtCaseStatus
PhaseStatus = schemas.PhaseStatus

OT_TRANSITIONS = {
    Status.scheduled: frozenset({Status.in_prep, Status.cancelled}),
    Status.in_prep: frozenset({Status.in_progress, Status.cancelled}),
    Status.in_progress: frozenset({Status.completed}),
}

TERMINAL_STATUSES = frozenset({Status.completed, Status.cancelled, Status.postponed})


def can_transition(current: models.OtCaseStatus, target: models.OtCaseStatus) -> bool:
    return target in OT_TRANSITIONS.get(current, frozenset())


def allowed_targets(current: models.OtCaseStatus) -> List[models.OtCaseStatus]:
    return sorted(OT_TRANSITIONS.get(current, frozenset()), key=lambda s: list(Status).index(s))


def ensure_can_manage(actor: Optional[schemas.Actor], action: str) -> None:
    if actor is None or actor.role not in OT_SCHEDULING_ROLES:
        role = actor.role.value if actor else None
        compliance_logger.log_actor_event(
            actor, models.AuditAction.ACCESS_DENIED, "OT",
            severity="WARN", resource_type="OtCase", details=f"{role} attempted to {action}",
        )
        raise AuthorizationError(f"Role {role} may not {action}", role=role)


def validate_transition(current: models.OtCaseStatus, target: models.OtCaseStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(
            f"Cannot move OT case from {current.value} to {target.value}",
            from_status=current.value,
            to_status=target.value,
            allowed=[s.value for s in allowed_targets(current)],
        )


def derive_phases(status: models.OtCaseStatus, record_kinds: Iterable[models.OtRecordKind]) -> schemas.OtPhases:
    kinds: Set[models.OtRecordKind] = set(record_kinds)

    pre_op = PhaseStatus.complete if models.OtRecordKind.preop_checklist in kinds else PhaseStatus.pending

    if models.OtRecordKind.surgeon_notes in kinds:
        intra_op = PhaseStatus.complete
    elif status == Status.in_progress:
        intra_op = PhaseStatus.active
    else:
        intra_op = PhaseStatus.pending

    post_op = PhaseStatus.complete if status == Status.completed else PhaseStatus.pending
    return schemas.OtPhases(pre_op=pre_op, intra_op=intra_op, post_op=post_op)


def get_case_or_404(db: Session, case_id: int) -> models.OtCase:
    case = db.query(models.OtCase).filter(models.OtCase.id == case_id).first()
    if not case:
        raise NotFound(f"OT case {case_id} not found", case_id=case_id)
    return case


def record_kinds_for_case(db: Session, case_id: int) -> Set[models.OtRecordKind]:
    rows = db.query(models.OtPhaseRecord.kind).filter(models.OtPhaseRecord.case_id == case_id).all()
    return {row[0] for row in rows}


def get_phases(db: Session, case_id: int) -> schemas.OtPhases:
    case = get_case_or_404(db, case_id)
    return derive_phases(case.status, record_kinds_for_case(db, case_id))


def _check_preop_gate(db: Session, case: models.OtCase) -> None:
    """Surgery start requires a fully ticked pre-op checklist and a passed sign-in gate."""
    records = {
        record.kind: record
        for record in db.query(models.OtPhaseRecord).filter(
            models.OtPhaseRecord.case_id == case.id,
            models.OtPhaseRecord.kind.in_([models.OtRecordKind.preop_checklist, models.OtRecordKind.safety_checklist]),
        )
    }
    problems = []

    checklist = records.get(models.OtRecordKind.preop_checklist)
    if checklist is None:
        problems.append("pre-op checklist missing")
    else:
        parsed = schemas.PreopChecklistRecord.model_validate(checklist.payload)
        pending = [item for item in schemas.PREOP_CHECKLIST_ITEMS if not getattr(parsed, item)]
        if pending:
            problems.append(f"pre-op checklist incomplete: {', '.join(pending)}")

    safety = records.get(models.OtRecordKind.safety_checklist)
    if safety is None:
        problems.append("safety checklist missing")
    else:
        sign_in = schemas.SafetyChecklistRecord.model_validate(safety.payload).sign_in
        if not sign_in.passed():
            problems.append("safety checklist sign-in gate not passed")

    if problems:
        raise ValidationError("Pre-operative requirements not met", case_id=case.id, problems=problems)


def transition_status(
    db: Session,
    case_id: int,
    target: models.OtCaseStatus,
    actor: Optional[schemas.Actor],
) -> models.OtCase:
    """Move a case along the lifecycle. Role is checked before the transition itself."""
    ensure_can_manage(actor, "change OT case status")

    case = get_case_or_404(db, case_id)
    current = case.status
    validate_transition(current, target)

    if target == Status.in_progress and get_settings().ot_require_preop_checklist:
        _check_preop_gate(db, case)

    try:
        result = db.execute(
            update(models.OtCase)
            .where(models.OtCase.id == case_id, models.OtCase.status == current)
            .values(status=target, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IllegalTransition(
                f"OT case {case_id} changed status concurrently",
                from_status=current.value, to_status=target.value,
            )
        db.add(models.OtStatusChange(
            case_id=case_id,
            from_status=current,
            to_status=target,
            changed_by=actor.user_id,
            changed_by_role=actor.role.value,
        ))
        db.commit()
    except HospitalError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during OT status change for case {case_id}: {e}")
        raise PersistenceError("A database error occurred while changing the OT case status.")

    logger.info(f"OT case {case_id}: {current.value} -> {target.value} by {actor.username}")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.OT_STATUS_CHANGED, "OT",
        resource_type="OtCase", resource_id=case_id,
        details=f"{current.value} -> {target.value}",
    )
    db.refresh(case)
    return case


def get_status_history(db: Session, case_id: int) -> List[models.OtStatusChange]:
    get_case_or_404(db, case_id)
    return db.query(models.OtStatusChange).filter(
        models.OtStatusChange.case_id == case_id
    ).order_by(models.OtStatusChange.id).all()
