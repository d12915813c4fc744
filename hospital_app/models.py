# hospital_app/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    super_admin = "super_admin"
    admin = "admin"
    doctor = "doctor"
    nurse = "nurse"
    opd_manager = "opd_manager"
    patient = "patient"
    pathology_lab = "pathology_lab"
    medical_store = "medical_store"

    @property
    def is_admin_tier(self) -> bool:
        return self in (UserRole.super_admin, UserRole.admin)


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    checked_in = "checked_in"
    completed = "completed"
    cancelled = "cancelled"


class OtCaseStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_prep = "in_prep"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    postponed = "postponed"


class OtPriority(str, enum.Enum):
    elective = "elective"
    urgent = "urgent"
    emergency = "emergency"


class OtRecordKind(str, enum.Enum):
    """Single editable records, one per case per kind (upsert)."""
    counselling = "counselling"
    preop_checklist = "preop_checklist"
    pre_anaesthetic_evaluation = "pre_anaesthetic_evaluation"
    safety_checklist = "safety_checklist"
    anaesthesia_record = "anaesthesia_record"
    surgeon_notes = "surgeon_notes"
    postop_assessment = "postop_assessment"
    neonate_sheet = "neonate_sheet"


class OtLogKind(str, enum.Enum):
    """Append-only per-case logs, read back in insertion order."""
    time_log = "time_log"
    monitoring_chart = "monitoring_chart"
    labour_chart = "labour_chart"
    consent = "consent"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ACCESS_DENIED = "ACCESS_DENIED"
    APPOINTMENT_BOOKED = "APPOINTMENT_BOOKED"
    APPOINTMENT_STATUS_CHANGED = "APPOINTMENT_STATUS_CHANGED"
    SLOT_BOOK_FAILED = "SLOT_BOOK_FAILED"
    OT_CASE_CREATED = "OT_CASE_CREATED"
    OT_CASE_UPDATED = "OT_CASE_UPDATED"
    OT_STATUS_CHANGED = "OT_STATUS_CHANGED"
    OT_RECORD_SAVED = "OT_RECORD_SAVED"
    OT_LOG_APPENDED = "OT_LOG_APPENDED"


# ==================== Directory Models ====================

class Doctor(Base):
    """Doctor directory entry; source of surgeon/anaesthetist identity and consultation schedules."""
    __tablename__ = "doctors"
    __table_args__ = (
        Index('idx_doctors_department_active', 'department', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    specialization = Column(String(100), nullable=True)
    department = Column(String(100), nullable=True)
    phone_number = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    schedules = relationship("DoctorSchedule", back_populates="doctor", cascade="all, delete-orphan")
    appointments = relationship("Appointment", back_populates="doctor")


class Patient(Base):
    """Patient / admission directory entry."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_admitted', 'is_admitted'),
    )

    id = Column(Integer, primary_key=True, index=True)
    uhid = Column(String(50), unique=True, index=True, nullable=False)  # Unique hospital id
    name = Column(String(150), nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    phone_number = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    # Admission state
    is_admitted = Column(Boolean, default=False, nullable=False)
    ward = Column(String(100), nullable=True)
    admitted_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="patient")
    ot_cases = relationship("OtCase", back_populates="patient")


# ==================== OPD Scheduling Models ====================

class DoctorSchedule(Base):
    """Recurring (day_of_week) or one-off (specific_date) consultation block."""
    __tablename__ = "doctor_schedules"
    __table_args__ = (
        Index('idx_schedule_doctor_day', 'doctor_id', 'day_of_week'),
        Index('idx_schedule_doctor_date', 'doctor_id', 'specific_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)

    day_of_week = Column(Integer, nullable=True)  # 0=Monday, 6=Sunday
    specific_date = Column(Date, nullable=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    location = Column(String(100), nullable=True)
    is_available = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    doctor = relationship("Doctor", back_populates="schedules")


class ScheduleSlot(Base):
    """Claim row for one (doctor, date, start) slot. The unique key is what makes a booking exclusive."""
    __tablename__ = "schedule_slots"
    __table_args__ = (
        UniqueConstraint('doctor_id', 'slot_date', 'start_time', name='uq_doctor_slot_start'),
        Index('idx_slot_doctor_date_booked', 'doctor_id', 'slot_date', 'is_booked'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    location = Column(String(100), nullable=True)
    is_booked = Column(Boolean, default=False, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    appointment = relationship("Appointment", foreign_keys=[appointment_id])


class Appointment(Base):
    """A patient's claim on a doctor's time slot."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_doctor_date', 'doctor_id', 'appointment_date'),
        Index('idx_appointments_patient', 'patient_id'),
        Index('idx_appointments_status_date', 'status', 'appointment_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_code = Column(String(40), unique=True, nullable=False)  # APT-<ms>-<rand>
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)

    # Patient contact snapshot at booking time
    patient_name = Column(String(150), nullable=False)
    patient_phone = Column(String(20), nullable=False)
    patient_email = Column(String(255), nullable=True)

    appointment_date = Column(Date, nullable=False)
    time_slot = Column(String(5), nullable=False)  # "HH:MM", 24-hour
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    department = Column(String(100), nullable=True)
    location = Column(String(100), nullable=True)
    symptoms = Column(Text, nullable=True)

    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.scheduled, nullable=False, index=True)
    booked_by = Column(Integer, nullable=True)  # Actor user id from the token

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    doctor = relationship("Doctor", back_populates="appointments")
    patient = relationship("Patient", back_populates="appointments")


# ==================== Operation Theatre Models ====================

class OtCase(Base):
    """
    Central entity for one surgery.
    All checklists, notes, anaesthesia records and logs attach to this.
    """
    __tablename__ = "ot_cases"
    __table_args__ = (
        Index('idx_ot_cases_status_date', 'status', 'scheduled_date'),
        Index('idx_ot_cases_patient', 'patient_id'),
        Index('idx_ot_cases_surgeon', 'surgeon_id'),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Clinical identity (copied from the admission directory at scheduling time)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    patient_name = Column(String(150), nullable=False)
    uhid = Column(String(50), nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)

    # Care team
    surgeon_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    surgeon_name = Column(String(150), nullable=False)
    anaesthetist_id = Column(Integer, ForeignKey("doctors.id"), nullable=True)
    anaesthetist_name = Column(String(150), nullable=True)

    # Procedure
    procedure_name = Column(String(255), nullable=False)
    procedure_code = Column(String(50), nullable=True)
    diagnosis = Column(Text, nullable=True)
    surgery_type = Column(String(50), nullable=True)
    estimated_duration = Column(Integer, nullable=True)  # minutes

    # Scheduling
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=True)
    ot_room = Column(String(50), nullable=True)

    priority = Column(SQLAlchemyEnum(OtPriority, name='ot_priority'), default=OtPriority.elective, nullable=False)
    status = Column(SQLAlchemyEnum(OtCaseStatus, name='ot_case_status'), default=OtCaseStatus.scheduled, nullable=False, index=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient", back_populates="ot_cases")
    surgeon = relationship("Doctor", foreign_keys=[surgeon_id])
    anaesthetist = relationship("Doctor", foreign_keys=[anaesthetist_id])
    records = relationship("OtPhaseRecord", back_populates="case", cascade="all, delete-orphan")
    log_entries = relationship("OtLogEntry", back_populates="case", cascade="all, delete-orphan", order_by="OtLogEntry.id")
    status_changes = relationship("OtStatusChange", back_populates="case", cascade="all, delete-orphan", order_by="OtStatusChange.id")


class OtPhaseRecord(Base):
    """One editable clinical form per case per kind. Payload is validated against the kind's schema before storage."""
    __tablename__ = "ot_phase_records"
    __table_args__ = (
        UniqueConstraint('case_id', 'kind', name='uq_ot_record_case_kind'),
    )

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("ot_cases.id"), nullable=False)
    kind = Column(SQLAlchemyEnum(OtRecordKind, name='ot_record_kind'), nullable=False)
    payload = Column(JSON, nullable=False)
    recorded_by = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    case = relationship("OtCase", back_populates="records")


class OtLogEntry(Base):
    """Immutable entry of an append-only case log (time-log, charts, consents)."""
    __tablename__ = "ot_log_entries"
    __table_args__ = (
        Index('idx_ot_log_case_kind', 'case_id', 'kind'),
    )

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("ot_cases.id"), nullable=False)
    kind = Column(SQLAlchemyEnum(OtLogKind, name='ot_log_kind'), nullable=False)
    payload = Column(JSON, nullable=False)
    recorded_by = Column(Integer, nullable=True)
    recorded_at = Column(DateTime(timezone=True), server_default=func.now())

    case = relationship("OtCase", back_populates="log_entries")


class OtStatusChange(Base):
    __tablename__ = "ot_status_changes"

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(Integer, ForeignKey("ot_cases.id"), nullable=False, index=True)
    from_status = Column(SQLAlchemyEnum(OtCaseStatus, name='ot_case_status'), nullable=False)
    to_status = Column(SQLAlchemyEnum(OtCaseStatus, name='ot_case_status'), nullable=False)
    changed_by = Column(Integer, nullable=True)
    changed_by_role = Column(String(30), nullable=True)
    changed_at = Column(DateTime(timezone=True), server_default=func.now())

    case = relationship("OtCase", back_populates="status_changes")


# ==================== Audit ====================

class AuditLog(Base):
    """Audit trail of booking and OT mutations"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'timestamp'),
        Index('idx_audit_action_date', 'action', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(50), nullable=True)  # Denormalized for audit integrity
    role = Column(String(30), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
