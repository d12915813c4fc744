# hospital_app/services/clinical_record_store.py
"""Per-case clinical documentation.

Single forms (checklists, notes, assessments) are upserted, one row per
(case, kind). Logs (time-log, charts, consents) are append-only and read back
in insertion order. Every payload is validated against its kind's schema
before it is stored; writing a record never changes the case status.
"""
import logging
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models, schemas
from ..compliance_logger import compliance_logger
from ..errors import AuthorizationError, NotFound, PersistenceError, ValidationError
from ..security import CLINICAL_ROLES
from .ot_state_machine import derive_phases, get_case_or_404

logger = logging.getLogger(__name__)

OBSTETRIC_SURGERY_TYPES = frozenset({
    "obstetric", "obstetrics", "obstetrical", "lscs", "caesarean", "cesarean",
    "c-section", "caesarean_section", "delivery", "normal_delivery", "labour",
})

OBSTETRIC_ONLY = frozenset({models.OtRecordKind.neonate_sheet, models.OtLogKind.labour_chart})


def is_obstetric(case: models.OtCase) -> bool:
    return (case.surgery_type or "").strip().lower() in OBSTETRIC_SURGERY_TYPES


def validate_payload(schema: Type[BaseModel], payload: Any) -> Dict[str, Any]:
    """Parse ``payload`` with ``schema``; returns the JSON-ready, normalised dict."""
    try:
        parsed = schema.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {schema.__name__} payload", errors=errors)
    return parsed.model_dump(mode="json")


def _ensure_can_write(actor: Optional[schemas.Actor]) -> None:
    if actor is None or actor.role not in CLINICAL_ROLES:
        role = actor.role.value if actor else None
        raise AuthorizationError(f"Role {role} may not write clinical records", role=role)


def _ensure_kind_applies(case: models.OtCase, kind: Union[models.OtRecordKind, models.OtLogKind]) -> None:
    if kind in OBSTETRIC_ONLY and not is_obstetric(case):
        raise ValidationError(
            f"{kind.value} is only recorded for obstetric cases",
            case_id=case.id, surgery_type=case.surgery_type,
        )


def upsert_record(
    db: Session,
    case_id: int,
    kind: models.OtRecordKind,
    payload: Any,
    actor: Optional[schemas.Actor],
) -> models.OtPhaseRecord:
    """Create the (case, kind) record or replace its payload in place."""
    _ensure_can_write(actor)
    case = get_case_or_404(db, case_id)
    _ensure_kind_applies(case, kind)
    data = validate_payload(schemas.RECORD_SCHEMAS[kind], payload)

    def _existing() -> Optional[models.OtPhaseRecord]:
        return db.query(models.OtPhaseRecord).filter(
            models.OtPhaseRecord.case_id == case_id,
            models.OtPhaseRecord.kind == kind,
        ).first()

    record = _existing()
    created = record is None
    try:
        if created:
            record = models.OtPhaseRecord(case_id=case_id, kind=kind, payload=data, recorded_by=actor.user_id)
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                # Lost a race with another first save; apply ours as the update
                db.rollback()
                created = False
                record = _existing()
                if record is None:
                    raise
        if not created:
            record.payload = data
            record.recorded_by = actor.user_id
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while saving {kind.value} for OT case {case_id}: {e}")
        raise PersistenceError(f"A database error occurred while saving {kind.value}.")

    logger.info(f"{'Created' if created else 'Updated'} {kind.value} for OT case {case_id}")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.OT_RECORD_SAVED, "OT",
        resource_type="OtPhaseRecord", resource_id=record.id,
        details=f"{kind.value} {'created' if created else 'updated'} for case {case_id}",
    )
    db.refresh(record)
    return record


def get_record(db: Session, case_id: int, kind: models.OtRecordKind) -> models.OtPhaseRecord:
    get_case_or_404(db, case_id)
    record = db.query(models.OtPhaseRecord).filter(
        models.OtPhaseRecord.case_id == case_id,
        models.OtPhaseRecord.kind == kind,
    ).first()
    if not record:
        raise NotFound(f"No {kind.value} recorded for OT case {case_id}", case_id=case_id, kind=kind.value)
    return record


def append_log_entry(
    db: Session,
    case_id: int,
    kind: models.OtLogKind,
    entry: Any,
    actor: Optional[schemas.Actor],
) -> models.OtLogEntry:
    _ensure_can_write(actor)
    case = get_case_or_404(db, case_id)
    _ensure_kind_applies(case, kind)
    data = validate_payload(schemas.LOG_SCHEMAS[kind], entry)

    db_entry = models.OtLogEntry(case_id=case_id, kind=kind, payload=data, recorded_by=actor.user_id)
    db.add(db_entry)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while appending {kind.value} for OT case {case_id}: {e}")
        raise PersistenceError(f"A database error occurred while appending to {kind.value}.")

    compliance_logger.log_actor_event(
        actor, models.AuditAction.OT_LOG_APPENDED, "OT",
        resource_type="OtLogEntry", resource_id=db_entry.id,
        details=f"{kind.value} entry appended for case {case_id}",
    )
    db.refresh(db_entry)
    return db_entry


def list_log_entries(db: Session, case_id: int, kind: models.OtLogKind) -> List[models.OtLogEntry]:
    get_case_or_404(db, case_id)
    return db.query(models.OtLogEntry).filter(
        models.OtLogEntry.case_id == case_id,
        models.OtLogEntry.kind == kind,
    ).order_by(models.OtLogEntry.id).all()


def get_full_case(db: Session, case_id: int) -> schemas.FullOtCase:
    """Case plus every record and log grouped by phase, with derived phase status."""
    case = get_case_or_404(db, case_id)

    records = {
        record.kind: schemas.PhaseRecordResponse.model_validate(record)
        for record in db.query(models.OtPhaseRecord).filter(models.OtPhaseRecord.case_id == case_id)
    }
    logs: Dict[models.OtLogKind, List[schemas.LogEntryResponse]] = {kind: [] for kind in models.OtLogKind}
    for entry in db.query(models.OtLogEntry).filter(models.OtLogEntry.case_id == case_id).order_by(models.OtLogEntry.id):
        logs[entry.kind].append(schemas.LogEntryResponse.model_validate(entry))

    history = db.query(models.OtStatusChange).filter(
        models.OtStatusChange.case_id == case_id
    ).order_by(models.OtStatusChange.id).all()

    Kind = models.OtRecordKind
    return schemas.FullOtCase(
        case=schemas.OtCaseResponse.model_validate(case),
        pre_op=schemas.PreOpBundle(
            counselling=records.get(Kind.counselling),
            preop_checklist=records.get(Kind.preop_checklist),
            pre_anaesthetic_evaluation=records.get(Kind.pre_anaesthetic_evaluation),
            safety_checklist=records.get(Kind.safety_checklist),
        ),
        intra_op=schemas.IntraOpBundle(
            anaesthesia_record=records.get(Kind.anaesthesia_record),
            surgeon_notes=records.get(Kind.surgeon_notes),
            time_log=logs[models.OtLogKind.time_log],
        ),
        post_op=schemas.PostOpBundle(
            postop_assessment=records.get(Kind.postop_assessment),
            neonate_sheet=records.get(Kind.neonate_sheet),
            monitoring_chart=logs[models.OtLogKind.monitoring_chart],
            labour_chart=logs[models.OtLogKind.labour_chart],
        ),
        consents=logs[models.OtLogKind.consent],
        phases=derive_phases(case.status, records.keys()),
        status_history=[schemas.OtStatusChangeResponse.model_validate(change) for change in history],
    )
