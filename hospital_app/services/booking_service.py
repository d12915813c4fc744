# hospital_app/services/booking_service.py
"""Atomic appointment booking.

A slot is claimed through its ``schedule_slots`` row: the row is inserted if
missing (ignoring a concurrent insert of the same key), then flipped to booked
with a conditional UPDATE that only matches while it is still free. Exactly one
request can see ``rowcount == 1`` for a given (doctor, date, start).
"""
import logging
import secrets
import string
import time as _time
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..errors import (
    HospitalError, IllegalTransition, NotFound, PersistenceError,
    SlotAlreadyBooked, SlotNotFound, ValidationError,
)
from . import slot_service

logger = logging.getLogger(__name__)

APPOINTMENT_TRANSITIONS = {
    models.AppointmentStatus.scheduled: {
        models.AppointmentStatus.checked_in,
        models.AppointmentStatus.completed,
        models.AppointmentStatus.cancelled,
    },
    models.AppointmentStatus.checked_in: {
        models.AppointmentStatus.completed,
        models.AppointmentStatus.cancelled,
    },
}

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_appointment_code() -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"APT-{int(_time.time() * 1000)}-{suffix}"


def parse_slot_key(slot_key: str) -> Tuple[int, date, int]:
    """Split "doctor_id:YYYY-MM-DD:HH:MM" into (doctor_id, date, minutes since midnight)."""
    parts = (slot_key or "").split(":", 2)
    if len(parts) != 3:
        raise ValidationError(f"Malformed slot key: {slot_key!r}", slot_key=slot_key)
    try:
        doctor_id = int(parts[0])
        slot_date = date.fromisoformat(parts[1])
    except ValueError:
        raise ValidationError(f"Malformed slot key: {slot_key!r}", slot_key=slot_key)
    return doctor_id, slot_date, slot_service.parse_clock(parts[2])


def _slot_reference(request: schemas.BookingRequest) -> Tuple[int, date, int]:
    if request.slot_key:
        return parse_slot_key(request.slot_key)
    missing = [
        name for name in ("doctor_id", "appointment_date", "start_time")
        if getattr(request, name) in (None, "")
    ]
    if missing:
        raise ValidationError(
            "A slot_key or doctor_id, appointment_date and start_time are required",
            missing=missing,
        )
    return request.doctor_id, request.appointment_date, slot_service.parse_clock(request.start_time)


def _claim_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"Slot claims are not supported on {dialect}")
    return insert


def claim_slot(db: Session, doctor_id: int, slot_date: date, slot: schemas.TimeSlot) -> None:
    """Mark the slot booked inside the caller's transaction or raise SlotAlreadyBooked."""
    start = slot_service.clock_to_time(slot_service.parse_clock(slot.start_time))
    end = slot_service.clock_to_time(slot_service.parse_clock(slot.end_time))

    insert = _claim_insert(db)
    db.execute(
        insert(models.ScheduleSlot)
        .values(
            doctor_id=doctor_id,
            slot_date=slot_date,
            start_time=start,
            end_time=end,
            location=slot.location,
            is_booked=False,
        )
        .on_conflict_do_nothing(index_elements=["doctor_id", "slot_date", "start_time"])
    )

    result = db.execute(
        update(models.ScheduleSlot)
        .where(
            models.ScheduleSlot.doctor_id == doctor_id,
            models.ScheduleSlot.slot_date == slot_date,
            models.ScheduleSlot.start_time == start,
            models.ScheduleSlot.is_booked.is_(False),
        )
        .values(is_booked=True, booked_at=datetime.now(timezone.utc), location=slot.location)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise SlotAlreadyBooked(
            f"Slot {slot.start_time} on {slot_date} is already booked",
            slot_key=slot.slot_key,
        )


def book_appointment(
    db: Session,
    request: schemas.BookingRequest,
    actor: Optional[schemas.Actor] = None,
) -> models.Appointment:
    """Convert one slot into one appointment, atomically."""
    doctor_id, slot_date, start_minutes = _slot_reference(request)

    if request.patient_id is None:
        raise ValidationError("patient_id is required", missing=["patient_id"])
    patient = crud.get_patient_or_404(db, request.patient_id)
    patient_name = (request.patient_name or patient.name or "").strip()
    patient_phone = (request.patient_phone or patient.phone_number or "").strip()
    missing = [name for name, value in (("patient_name", patient_name), ("patient_phone", patient_phone)) if not value]
    if missing:
        raise ValidationError("Patient name and contact phone are required", missing=missing)

    doctor = crud.get_doctor_or_404(db, doctor_id)
    slot_key = f"{doctor_id}:{slot_date.isoformat()}:{slot_service.format_clock(start_minutes)}"

    # Re-validate the reference against the current schedule
    candidates = []
    if doctor.is_active:
        blocks = crud.get_schedule_blocks_for_date(db, doctor_id, slot_date)
        candidates = [
            s for s in slot_service.expand_schedule(doctor_id, slot_date, blocks, get_settings().slot_duration_minutes)
            if slot_service.parse_clock(s.start_time) == start_minutes
            and (request.location is None or s.location == request.location)
        ]
    if not candidates:
        raise SlotNotFound(f"No schedule slot for doctor {doctor_id} at {slot_key}", slot_key=slot_key)
    slot = candidates[0]

    try:
        claim_slot(db, doctor_id, slot_date, slot)

        db_appointment = models.Appointment(
            appointment_code=generate_appointment_code(),
            doctor_id=doctor_id,
            patient_id=patient.id,
            patient_name=patient_name,
            patient_phone=patient_phone,
            patient_email=request.patient_email or patient.email,
            appointment_date=slot_date,
            time_slot=slot.start_time,
            start_time=slot_service.clock_to_time(start_minutes),
            end_time=slot_service.clock_to_time(slot_service.parse_clock(slot.end_time)),
            department=request.department or doctor.department,
            location=slot.location,
            symptoms=request.symptoms,
            status=models.AppointmentStatus.scheduled,
            booked_by=actor.user_id if actor else None,
        )
        db.add(db_appointment)
        db.flush()

        db.execute(
            update(models.ScheduleSlot)
            .where(
                models.ScheduleSlot.doctor_id == doctor_id,
                models.ScheduleSlot.slot_date == slot_date,
                models.ScheduleSlot.start_time == db_appointment.start_time,
            )
            .values(appointment_id=db_appointment.id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SlotAlreadyBooked:
        db.rollback()
        logger.info(f"Slot {slot_key} lost to a concurrent booking")
        compliance_logger.log_actor_event(
            actor, models.AuditAction.SLOT_BOOK_FAILED, "APPOINTMENT",
            severity="WARN", resource_type="ScheduleSlot",
            details=f"Slot {slot_key} already booked; request for patient {patient.id} rejected",
        )
        raise
    except HospitalError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during appointment booking for {slot_key}: {e}")
        raise PersistenceError("A database error occurred while booking the appointment.")

    db.refresh(db_appointment)
    logger.info(f"Booked appointment {db_appointment.appointment_code} for patient {patient.id} at {slot_key}")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.APPOINTMENT_BOOKED, "APPOINTMENT",
        resource_type="Appointment", resource_id=db_appointment.id,
        details=f"Appointment {db_appointment.appointment_code} booked for patient {patient.id} at {slot_key}",
    )
    return db_appointment


def get_appointment_or_404(db: Session, appointment_id: int) -> models.Appointment:
    appointment = crud.get_appointment(db, appointment_id)
    if not appointment:
        raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
    return appointment


def change_appointment_status(
    db: Session,
    appointment_id: int,
    target: models.AppointmentStatus,
    actor: Optional[schemas.Actor] = None,
    reason: Optional[str] = None,
) -> models.Appointment:
    """Check-in, complete or cancel. Cancelling releases the slot claim in the same transaction."""
    appointment = get_appointment_or_404(db, appointment_id)
    current = appointment.status
    if target not in APPOINTMENT_TRANSITIONS.get(current, set()):
        raise IllegalTransition(
            f"Cannot move appointment from {current.value} to {target.value}",
            from_status=current.value, to_status=target.value,
        )

    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {"status": target}
    if target == models.AppointmentStatus.checked_in:
        values["checked_in_at"] = now
    elif target == models.AppointmentStatus.completed:
        values["completed_at"] = now
    elif target == models.AppointmentStatus.cancelled:
        values["cancelled_at"] = now
        values["cancellation_reason"] = reason

    try:
        result = db.execute(
            update(models.Appointment)
            .where(models.Appointment.id == appointment_id, models.Appointment.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IllegalTransition(
                f"Appointment {appointment_id} changed concurrently",
                from_status=current.value, to_status=target.value,
            )
        if target == models.AppointmentStatus.cancelled:
            db.execute(
                update(models.ScheduleSlot)
                .where(models.ScheduleSlot.appointment_id == appointment_id)
                .values(is_booked=False, appointment_id=None, booked_at=None)
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except HospitalError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error while updating appointment {appointment_id}: {e}")
        raise PersistenceError("A database error occurred while updating the appointment.")

    db.refresh(appointment)
    logger.info(f"Appointment {appointment.appointment_code} moved {current.value} -> {target.value}")
    compliance_logger.log_actor_event(
        actor, models.AuditAction.APPOINTMENT_STATUS_CHANGED, "APPOINTMENT",
        resource_type="Appointment", resource_id=appointment.id,
        details=f"{current.value} -> {target.value}" + (f" ({reason})" if reason else ""),
    )
    return appointment


def appointment_event_payload(appointment: models.Appointment, doctor_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "appointment_id": appointment.id,
        "appointment_code": appointment.appointment_code,
        "doctor_id": appointment.doctor_id,
        "doctor_name": doctor_name,
        "patient_id": appointment.patient_id,
        "patient_name": appointment.patient_name,
        "patient_email": appointment.patient_email,
        "appointment_date": appointment.appointment_date.isoformat(),
        "time_slot": appointment.time_slot,
        "location": appointment.location,
        "status": appointment.status.value,
        "cancellation_reason": appointment.cancellation_reason,
    }
