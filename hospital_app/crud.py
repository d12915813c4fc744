# hospital_app/crud.py
import logging
from datetime import date, datetime, timezone
from typing import List, Optional, Dict, Any

from sqlalchemy import func, and_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .errors import NotFound, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


def commit_or_raise(db: Session, action: str) -> None:
    """Commit the session; on database failure roll back and raise PersistenceError."""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during {action}: {e}")
        raise PersistenceError(f"A database error occurred while trying to {action}.")


# ==================== Doctors ====================

def get_doctor(db: Session, doctor_id: int) -> Optional[models.Doctor]:
    return db.query(models.Doctor).filter(models.Doctor.id == doctor_id).first()


def get_doctor_or_404(db: Session, doctor_id: int) -> models.Doctor:
    doctor = get_doctor(db, doctor_id)
    if not doctor:
        raise NotFound(f"Doctor {doctor_id} not found", doctor_id=doctor_id)
    return doctor


def get_doctors(db: Session, skip: int = 0, limit: int = 100, department: str = None, is_active: bool = None) -> List[models.Doctor]:
    query = db.query(models.Doctor)
    if department:
        query = query.filter(models.Doctor.department == department)
    if is_active is not None:
        query = query.filter(models.Doctor.is_active == is_active)
    return query.order_by(models.Doctor.name).offset(skip).limit(limit).all()


def create_doctor(db: Session, doctor: schemas.DoctorCreate) -> models.Doctor:
    db_doctor = models.Doctor(**doctor.model_dump())
    db.add(db_doctor)
    commit_or_raise(db, "create doctor")
    db.refresh(db_doctor)
    logger.info(f"Created doctor {db_doctor.id} ({db_doctor.name})")
    return db_doctor


# ==================== Patients ====================

def get_patient(db: Session, patient_id: int) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.id == patient_id).first()


def get_patient_or_404(db: Session, patient_id: int) -> models.Patient:
    patient = get_patient(db, patient_id)
    if not patient:
        raise NotFound(f"Patient {patient_id} not found", patient_id=patient_id)
    return patient


def get_patient_by_uhid(db: Session, uhid: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.uhid == uhid).first()


def get_patients(db: Session, skip: int = 0, limit: int = 100, search: str = None, is_admitted: bool = None) -> List[models.Patient]:
    query = db.query(models.Patient)
    if search:
        pattern = f"%{search}%"
        query = query.filter((models.Patient.name.ilike(pattern)) | (models.Patient.uhid.ilike(pattern)))
    if is_admitted is not None:
        query = query.filter(models.Patient.is_admitted == is_admitted)
    return query.order_by(models.Patient.id).offset(skip).limit(limit).all()


def create_patient(db: Session, patient: schemas.PatientCreate) -> models.Patient:
    if get_patient_by_uhid(db, patient.uhid):
        raise ValidationError(f"A patient with UHID {patient.uhid} already exists", uhid=patient.uhid)

    db_patient = models.Patient(**patient.model_dump())
    if db_patient.is_admitted:
        db_patient.admitted_at = datetime.now(timezone.utc)
    db.add(db_patient)
    commit_or_raise(db, "create patient")
    db.refresh(db_patient)
    logger.info(f"Created patient {db_patient.id} (UHID {db_patient.uhid})")
    return db_patient


def update_patient_admission(db: Session, patient_id: int, update: schemas.PatientAdmissionUpdate) -> models.Patient:
    db_patient = get_patient_or_404(db, patient_id)
    was_admitted = db_patient.is_admitted
    db_patient.is_admitted = update.is_admitted
    db_patient.ward = update.ward if update.is_admitted else None
    if update.is_admitted and not was_admitted:
        db_patient.admitted_at = datetime.now(timezone.utc)
    elif not update.is_admitted:
        db_patient.admitted_at = None
    commit_or_raise(db, "update patient admission")
    db.refresh(db_patient)
    return db_patient


# ==================== Doctor Schedules ====================

def get_schedule_blocks(db: Session, doctor_id: int) -> List[models.DoctorSchedule]:
    return db.query(models.DoctorSchedule).filter(
        models.DoctorSchedule.doctor_id == doctor_id
    ).order_by(models.DoctorSchedule.id).all()


def get_schedule_blocks_for_date(db: Session, doctor_id: int, target_date: date) -> List[models.DoctorSchedule]:
    """Blocks that could apply to ``target_date``: its weekday blocks and any blocks pinned to that date."""
    return db.query(models.DoctorSchedule).filter(
        models.DoctorSchedule.doctor_id == doctor_id,
        (
            (models.DoctorSchedule.specific_date == target_date)
            | and_(
                models.DoctorSchedule.specific_date.is_(None),
                models.DoctorSchedule.day_of_week == target_date.weekday(),
            )
        ),
    ).order_by(models.DoctorSchedule.id).all()


def create_schedule_block(db: Session, doctor_id: int, block: schemas.ScheduleBlockCreate) -> models.DoctorSchedule:
    get_doctor_or_404(db, doctor_id)
    db_block = models.DoctorSchedule(doctor_id=doctor_id, **block.model_dump())
    db.add(db_block)
    commit_or_raise(db, "create schedule block")
    db.refresh(db_block)
    return db_block


def delete_schedule_block(db: Session, block_id: int) -> None:
    db_block = db.query(models.DoctorSchedule).filter(models.DoctorSchedule.id == block_id).first()
    if not db_block:
        raise NotFound(f"Schedule block {block_id} not found", block_id=block_id)
    db.delete(db_block)
    commit_or_raise(db, "delete schedule block")


# ==================== Appointments ====================

def get_appointment(db: Session, appointment_id: int) -> Optional[models.Appointment]:
    return db.query(models.Appointment).filter(models.Appointment.id == appointment_id).first()


def get_appointments(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    doctor_id: Optional[int] = None,
    appointment_date: Optional[date] = None,
    status: Optional[models.AppointmentStatus] = None,
    patient_id: Optional[int] = None,
) -> List[models.Appointment]:
    query = db.query(models.Appointment)
    if doctor_id is not None:
        query = query.filter(models.Appointment.doctor_id == doctor_id)
    if appointment_date is not None:
        query = query.filter(models.Appointment.appointment_date == appointment_date)
    if status is not None:
        query = query.filter(models.Appointment.status == status)
    if patient_id is not None:
        query = query.filter(models.Appointment.patient_id == patient_id)
    return query.order_by(models.Appointment.appointment_date, models.Appointment.start_time).offset(skip).limit(limit).all()


def get_active_appointments_for_day(db: Session, doctor_id: int, target_date: date) -> List[models.Appointment]:
    return db.query(models.Appointment).filter(
        models.Appointment.doctor_id == doctor_id,
        models.Appointment.appointment_date == target_date,
        models.Appointment.status != models.AppointmentStatus.cancelled,
    ).all()


# ==================== Audit Logs ====================

def get_audit_logs(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    user_id: Optional[int] = None,
    category: Optional[str] = None,
    severity: Optional[str] = None,
    resource_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[models.AuditLog]:
    query = db.query(models.AuditLog)
    if user_id is not None:
        query = query.filter(models.AuditLog.user_id == user_id)
    if category:
        query = query.filter(models.AuditLog.category == category)
    if severity:
        query = query.filter(models.AuditLog.severity == severity)
    if resource_type:
        query = query.filter(models.AuditLog.resource_type == resource_type)
    if start_date:
        query = query.filter(func.date(models.AuditLog.timestamp) >= start_date)
    if end_date:
        query = query.filter(func.date(models.AuditLog.timestamp) <= end_date)
    return query.order_by(models.AuditLog.id.desc()).offset(skip).limit(limit).all()


# ==================== Consistency Checks ====================

def run_consistency_checks(db: Session) -> Dict[str, Any]:
    """Cross-check slot claim rows against appointments and return a report."""
    report = {
        "checked_at": datetime.now(timezone.utc),
        "booked_slots_without_appointments": [],
        "appointments_without_booked_slot": [],
        "duplicate_active_appointments": [],
    }

    active_appointment_ids = select(models.Appointment.id).where(
        models.Appointment.status != models.AppointmentStatus.cancelled
    )

    # Check 1: Claimed slots whose appointment is missing or cancelled
    orphan_slots = db.query(models.ScheduleSlot).filter(
        models.ScheduleSlot.is_booked.is_(True),
        (models.ScheduleSlot.appointment_id.is_(None)) | (~models.ScheduleSlot.appointment_id.in_(active_appointment_ids)),
    ).all()
    for slot in orphan_slots:
        report["booked_slots_without_appointments"].append({
            "slot_id": slot.id,
            "doctor_id": slot.doctor_id,
            "slot_date": slot.slot_date.isoformat(),
            "start_time": slot.start_time.strftime("%H:%M"),
            "issue": "Slot is booked but no active appointment is linked to it.",
        })

    # Check 2: Active appointments that do not hold a booked claim row
    claimed_appointment_ids = select(models.ScheduleSlot.appointment_id).where(
        models.ScheduleSlot.is_booked.is_(True),
        models.ScheduleSlot.appointment_id.isnot(None),
    )
    unclaimed = db.query(models.Appointment).filter(
        models.Appointment.status != models.AppointmentStatus.cancelled,
        ~models.Appointment.id.in_(claimed_appointment_ids),
    ).all()
    for appointment in unclaimed:
        report["appointments_without_booked_slot"].append({
            "appointment_id": appointment.id,
            "doctor_id": appointment.doctor_id,
            "appointment_date": appointment.appointment_date.isoformat(),
            "time_slot": appointment.time_slot,
            "issue": "Active appointment has no booked slot claim.",
        })

    # Check 3: More than one active appointment on the same key
    duplicates = db.query(
        models.Appointment.doctor_id,
        models.Appointment.appointment_date,
        models.Appointment.time_slot,
        func.count(models.Appointment.id).label("active_count"),
    ).filter(
        models.Appointment.status != models.AppointmentStatus.cancelled
    ).group_by(
        models.Appointment.doctor_id, models.Appointment.appointment_date, models.Appointment.time_slot
    ).having(func.count(models.Appointment.id) > 1).all()
    for doctor_id, appointment_date, time_slot, active_count in duplicates:
        report["duplicate_active_appointments"].append({
            "doctor_id": doctor_id,
            "appointment_date": appointment_date.isoformat(),
            "time_slot": time_slot,
            "active_count": int(active_count),
            "issue": f"{int(active_count)} active appointments share one slot.",
        })

    return report
