# hospital_app/routers/appointments.py
from fastapi import APIRouter, Depends, Request, BackgroundTasks, status
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from .. import crud, models, schemas
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..security import get_current_actor, require_role, FRONT_DESK_ROLES, CLINICAL_ROLES
from ..services import booking_service, notification_service
from ..services.notification_service import NotificationService, get_notifier

router = APIRouter(
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)

require_desk_or_clinical = require_role(*set(FRONT_DESK_ROLES + CLINICAL_ROLES))


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def book_appointment(
    booking: schemas.BookingRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
    notifier: NotificationService = Depends(get_notifier),
):
    """
    Claim one slot for one patient.
    409 `slot_already_booked` means another booking won the slot: refresh availability and pick again.
    """
    appointment = booking_service.book_appointment(db, booking, actor=actor)
    doctor = crud.get_doctor(db, appointment.doctor_id)
    background_tasks.add_task(
        notifier.publish,
        notification_service.APPOINTMENT_BOOKED,
        booking_service.appointment_event_payload(appointment, doctor.name if doctor else None),
    )
    return appointment


@router.get("/appointments", response_model=List[schemas.AppointmentResponse])
def read_appointments(
    skip: int = 0,
    limit: int = 100,
    doctor_id: Optional[int] = None,
    appointment_date: Optional[date] = None,
    status: Optional[models.AppointmentStatus] = None,
    patient_id: Optional[int] = None,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return crud.get_appointments(
        db, skip=skip, limit=limit, doctor_id=doctor_id,
        appointment_date=appointment_date, status=status, patient_id=patient_id,
    )


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
):
    return booking_service.get_appointment_or_404(db, appointment_id)


@router.patch("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    cancel: Optional[schemas.AppointmentCancel] = None,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(get_current_actor),
    notifier: NotificationService = Depends(get_notifier),
):
    """Cancel and release the slot so it shows up as available again."""
    appointment = booking_service.change_appointment_status(
        db, appointment_id, models.AppointmentStatus.cancelled,
        actor=actor, reason=cancel.reason if cancel else None,
    )
    doctor = crud.get_doctor(db, appointment.doctor_id)
    background_tasks.add_task(
        notifier.publish,
        notification_service.APPOINTMENT_CANCELLED,
        booking_service.appointment_event_payload(appointment, doctor.name if doctor else None),
    )
    return appointment


@router.patch("/appointments/{appointment_id}/checkin", response_model=schemas.AppointmentResponse)
def check_in_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_desk_or_clinical),
):
    return booking_service.change_appointment_status(db, appointment_id, models.AppointmentStatus.checked_in, actor=actor)


@router.patch("/appointments/{appointment_id}/complete", response_model=schemas.AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_desk_or_clinical),
):
    return booking_service.change_appointment_status(db, appointment_id, models.AppointmentStatus.completed, actor=actor)
