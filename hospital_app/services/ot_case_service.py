# hospital_app/services/ot_case_service.py
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..errors import NotFound, ValidationError
from .ot_state_machine import ensure_can_manage, get_case_or_404

logger = logging.getLogger(__name__)

# Only changeable while the case is still in the scheduled state
SCHEDULING_FIELDS = ("scheduled_date", "scheduled_time", "ot_room")
REQUIRED_FIELDS = ("procedure_name", "priority", "scheduled_date")


def _active_doctor(db: Session, doctor_id: int, role_label: str) -> models.Doctor:
    doctor = crud.get_doctor(db, doctor_id)
    if not doctor:
        raise NotFound(f"{role_label.capitalize()} {doctor_id} not found", doctor_id=doctor_id)
    if not doctor.is_active:
        raise ValidationError(f"{role_label.capitalize()} {doctor_id} is not available", doctor_id=doctor_id)
    return doctor


def create_case(db: Session, data: schemas.OtCaseCreate, actor: Optional[schemas.Actor]) -> models.OtCase:
    """Schedule a surgery for an admitted patient with an available surgeon."""
    ensure_can_manage(actor, "create OT cases")

    patient = crud.get_patient_or_404(db, data.patient_id)
    if not patient.is_admitted:
        raise ValidationError(f"Patient {patient.uhid} is not admitted", patient_id=patient.id)

    surgeon = _active_doctor(db, data.surgeon_id, "surgeon")
    anaesthetist = _active_doctor(db, data.anaesthetist_id, "anaesthetist") if data.anaesthetist_id else None

    db_case = models.OtCase(
        patient_id=patient.id,
        patient_name=patient.name,
        uhid=patient.uhid,
        age=patient.age,
        gender=patient.gender,
        surgeon_id=surgeon.id,
        surgeon_name=surgeon.name,
        anaesthetist_id=anaesthetist.id if anaesthetist else None,
        anaesthetist_name=anaesthetist.name if anaesthetist else None,
        procedure_name=data.procedure_name,
        procedure_code=data.procedure_code,
        diagnosis=data.diagnosis,
        surgery_type=data.surgery_type,
        estimated_duration=data.estimated_duration,
        scheduled_date=data.scheduled_date,
        scheduled_time=data.scheduled_time,
        ot_room=data.ot_room,
        priority=data.priority,
        status=models.OtCaseStatus.scheduled,
        created_by=actor.user_id,
    )
    db.add(db_case)
    crud.commit_or_raise(db, "create OT case")

    logger.info(f"Created OT case {db_case.id} for patient {patient.uhid} ({data.procedure_name})")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.OT_CASE_CREATED, "OT",
        resource_type="OtCase", resource_id=db_case.id,
        details=f"{data.procedure_name} for {patient.uhid} on {data.scheduled_date}",
    )
    db.refresh(db_case)
    return db_case


def update_case(db: Session, case_id: int, data: schemas.OtCaseUpdate, actor: Optional[schemas.Actor]) -> models.OtCase:
    """Edit descriptive fields. Date, time and room are frozen once the case leaves ``scheduled``."""
    ensure_can_manage(actor, "update OT cases")
    db_case = get_case_or_404(db, case_id)
    changes = data.model_dump(exclude_unset=True)

    frozen = [
        field for field in SCHEDULING_FIELDS
        if field in changes and changes[field] != getattr(db_case, field)
    ]
    if frozen and db_case.status != models.OtCaseStatus.scheduled:
        raise ValidationError(
            f"{', '.join(frozen)} cannot change once the case is {db_case.status.value}",
            case_id=case_id, fields=frozen,
        )
    cleared = [field for field in REQUIRED_FIELDS if field in changes and changes[field] is None]
    if cleared:
        raise ValidationError(f"{', '.join(cleared)} cannot be cleared", case_id=case_id, fields=cleared)

    if "anaesthetist_id" in changes:
        anaesthetist_id = changes.pop("anaesthetist_id")
        if anaesthetist_id is None:
            db_case.anaesthetist_id = None
            db_case.anaesthetist_name = None
        else:
            anaesthetist = _active_doctor(db, anaesthetist_id, "anaesthetist")
            db_case.anaesthetist_id = anaesthetist.id
            db_case.anaesthetist_name = anaesthetist.name

    for field, value in changes.items():
        setattr(db_case, field, value)

    crud.commit_or_raise(db, "update OT case")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.OT_CASE_UPDATED, "OT",
        resource_type="OtCase", resource_id=case_id,
        details=f"Updated fields: {', '.join(sorted(data.model_dump(exclude_unset=True))) or 'none'}",
    )
    db.refresh(db_case)
    return db_case


def list_cases(
    db: Session,
    status: Optional[models.OtCaseStatus] = None,
    scheduled_date: Optional[date] = None,
    surgeon_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.OtCase]:
    query = db.query(models.OtCase)
    if status is not None:
        query = query.filter(models.OtCase.status == status)
    if scheduled_date is not None:
        query = query.filter(models.OtCase.scheduled_date == scheduled_date)
    if surgeon_id is not None:
        query = query.filter(models.OtCase.surgeon_id == surgeon_id)
    return query.order_by(models.OtCase.scheduled_date, models.OtCase.scheduled_time, models.OtCase.id).offset(skip).limit(limit).all()


def case_event_payload(case: models.OtCase, previous_status: Optional[models.OtCaseStatus] = None) -> Dict[str, Any]:
    payload = {
        "case_id": case.id,
        "patient_id": case.patient_id,
        "uhid": case.uhid,
        "procedure_name": case.procedure_name,
        "surgeon_id": case.surgeon_id,
        "scheduled_date": case.scheduled_date.isoformat(),
        "ot_room": case.ot_room,
        "status": case.status.value,
    }
    if previous_status is not None:
        payload["previous_status"] = previous_status.value
    return payload
