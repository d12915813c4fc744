# hospital_app/routers/ot_cases.py
from fastapi import APIRouter, Depends, BackgroundTasks, Body, status
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from datetime import date

from .. import models, schemas
from ..database import get_db
from ..security import get_current_actor
from ..services import clinical_record_store, notification_service, ot_case_service, ot_state_machine
from ..services.notification_service import NotificationService, get_notifier

router = APIRouter(
    prefix="/ot/cases",
    tags=["Operation Theatre"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.OtCaseResponse, status_code=status.HTTP_201_CREATED)
def create_ot_case(
    case: schemas.OtCaseCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
    notifier: NotificationService = Depends(get_notifier),
):
    db_case = ot_case_service.create_case(db, case, actor)
    background_tasks.add_task(
        notifier.publish, notification_service.OT_CASE_CREATED, ot_case_service.case_event_payload(db_case)
    )
    return db_case


@router.get("", response_model=List[schemas.OtCaseResponse])
def read_ot_cases(
    status: Optional[models.OtCaseStatus] = None,
    scheduled_date: Optional[date] = None,
    surgeon_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return ot_case_service.list_cases(
        db, status=status, scheduled_date=scheduled_date, surgeon_id=surgeon_id, skip=skip, limit=limit
    )


@router.get("/{case_id}", response_model=schemas.OtCaseResponse)
def read_ot_case(case_id: int, db: Session = Depends(get_db), actor: schemas.Actor = Depends(get_current_actor)):
    return ot_state_machine.get_case_or_404(db, case_id)


@router.patch("/{case_id}", response_model=schemas.OtCaseResponse)
def update_ot_case(
    case_id: int,
    update: schemas.OtCaseUpdate,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return ot_case_service.update_case(db, case_id, update, actor)


@router.post("/{case_id}/status", response_model=schemas.OtCaseResponse)
def change_ot_case_status(
    case_id: int,
    transition: schemas.OtStatusTransition,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Move the case along scheduled -> in_prep -> in_progress -> completed (or cancel from scheduled/in_prep).
    403 for roles other than admin tier and doctors; 409 `illegal_transition` for any other move.
    """
    db_case = ot_state_machine.transition_status(db, case_id, transition.target_status, actor)
    last_change = ot_state_machine.get_status_history(db, case_id)[-1]
    background_tasks.add_task(
        notifier.publish,
        notification_service.OT_CASE_STATUS_CHANGED,
        ot_case_service.case_event_payload(db_case, previous_status=last_change.from_status),
    )
    return db_case


@router.get("/{case_id}/full", response_model=schemas.FullOtCase)
def read_full_ot_case(case_id: int, db: Session = Depends(get_db), actor: schemas.Actor = Depends(get_current_actor)):
    return clinical_record_store.get_full_case(db, case_id)


@router.get("/{case_id}/phases", response_model=schemas.OtPhases)
def read_ot_case_phases(case_id: int, db: Session = Depends(get_db), actor: schemas.Actor = Depends(get_current_actor)):
    return ot_state_machine.get_phases(db, case_id)


@router.get("/{case_id}/status-history", response_model=List[schemas.OtStatusChangeResponse])
def read_status_history(case_id: int, db: Session = Depends(get_db), actor: schemas.Actor = Depends(get_current_actor)):
    return ot_state_machine.get_status_history(db, case_id)


@router.get("/{case_id}/records/{kind}", response_model=schemas.PhaseRecordResponse)
def read_phase_record(
    case_id: int,
    kind: models.OtRecordKind,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return clinical_record_store.get_record(db, case_id, kind)


@router.put("/{case_id}/records/{kind}", response_model=schemas.PhaseRecordResponse)
def save_phase_record(
    case_id: int,
    kind: models.OtRecordKind,
    payload: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    """Create or replace the case's single record of this kind. The payload shape depends on ``kind``."""
    return clinical_record_store.upsert_record(db, case_id, kind, payload, actor)


@router.get("/{case_id}/logs/{kind}", response_model=List[schemas.LogEntryResponse])
def read_log_entries(
    case_id: int,
    kind: models.OtLogKind,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return clinical_record_store.list_log_entries(db, case_id, kind)


@router.post("/{case_id}/logs/{kind}", response_model=schemas.LogEntryResponse, status_code=status.HTTP_201_CREATED)
def append_log_entry(
    case_id: int,
    kind: models.OtLogKind,
    entry: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return clinical_record_store.append_log_entry(db, case_id, kind, entry, actor)
