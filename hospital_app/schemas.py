# hospital_app/schemas.py
from datetime import datetime, date, time
from typing import List, Optional, Dict, Any, Type
from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator, computed_field
from enum import Enum

from .models import (
    UserRole, AppointmentStatus, OtCaseStatus, OtPriority, OtRecordKind, OtLogKind, AuditAction
)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


def _require_text(value: Optional[str], field_name: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{field_name} is required")
    return str(value).strip()


# --- Actor (identity decoded from the bearer token) ---
class Actor(BaseModel):
    user_id: Optional[int] = None
    username: str
    role: UserRole

    @property
    def is_admin_tier(self) -> bool:
        return self.role.is_admin_tier


# ==================== Directory Schemas ====================

class DoctorBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    specialization: Optional[str] = Field(None, max_length=100)
    department: Optional[str] = Field(None, max_length=100)
    phone_number: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    is_active: bool = True


class DoctorCreate(DoctorBase):
    pass


class DoctorResponse(DoctorBase, BaseSchema):
    id: int
    email: Optional[str] = None
    created_at: Optional[datetime] = None


class PatientBase(BaseModel):
    uhid: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=150)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = Field(None, max_length=20)
    phone_number: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None


class PatientCreate(PatientBase):
    is_admitted: bool = False
    ward: Optional[str] = Field(None, max_length=100)


class PatientAdmissionUpdate(BaseModel):
    is_admitted: bool
    ward: Optional[str] = Field(None, max_length=100)


class PatientResponse(PatientBase, BaseSchema):
    id: int
    email: Optional[str] = None
    is_admitted: bool
    ward: Optional[str] = None
    admitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ==================== Schedule & Slot Schemas ====================

class ScheduleBlockCreate(BaseModel):
    """Either a weekly block (day_of_week, 0=Monday) or a one-off block (specific_date)."""
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    specific_date: Optional[date] = None
    start_time: time
    end_time: time
    location: Optional[str] = Field(None, max_length=100)
    is_available: bool = True

    @model_validator(mode="after")
    def check_block_anchor(self):
        if (self.day_of_week is None) == (self.specific_date is None):
            raise ValueError("Exactly one of day_of_week or specific_date must be set")
        return self


class ScheduleBlockResponse(BaseSchema):
    id: int
    doctor_id: int
    day_of_week: Optional[int] = None
    specific_date: Optional[date] = None
    start_time: time
    end_time: time
    location: Optional[str] = None
    is_available: bool


class TimeSlot(BaseModel):
    doctor_id: int
    date: date
    start_time: str  # "HH:MM", 24-hour
    end_time: str
    label: str  # "09:00 AM - 09:30 AM"
    location: Optional[str] = None
    is_available: bool = True

    @computed_field
    @property
    def slot_key(self) -> str:
        return f"{self.doctor_id}:{self.date.isoformat()}:{self.start_time}"


# ==================== Appointment Schemas ====================

class BookingRequest(BaseModel):
    """Slot reference is either ``slot_key`` or the (doctor_id, appointment_date, start_time) triple."""
    slot_key: Optional[str] = None
    doctor_id: Optional[int] = None
    appointment_date: Optional[date] = None
    start_time: Optional[str] = None

    patient_id: Optional[int] = None
    patient_name: Optional[str] = Field(None, max_length=150)
    patient_phone: Optional[str] = Field(None, max_length=20)
    patient_email: Optional[EmailStr] = None
    department: Optional[str] = Field(None, max_length=100)
    location: Optional[str] = Field(None, max_length=100)
    symptoms: Optional[str] = None


class AppointmentCancel(BaseModel):
    reason: Optional[str] = None


class AppointmentResponse(BaseSchema):
    id: int
    appointment_code: str
    doctor_id: int
    patient_id: int
    patient_name: str
    patient_phone: str
    patient_email: Optional[str] = None
    appointment_date: date
    time_slot: str
    start_time: time
    end_time: time
    department: Optional[str] = None
    location: Optional[str] = None
    symptoms: Optional[str] = None
    status: AppointmentStatus
    booked_by: Optional[int] = None
    created_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


# ==================== OT Case Schemas ====================

class OtCaseCreate(BaseModel):
    patient_id: int
    surgeon_id: int
    anaesthetist_id: Optional[int] = None
    procedure_name: str = Field(..., min_length=1, max_length=255)
    procedure_code: Optional[str] = Field(None, max_length=50)
    diagnosis: Optional[str] = None
    surgery_type: Optional[str] = Field(None, max_length=50)
    estimated_duration: Optional[int] = Field(None, ge=1, description="Minutes")
    scheduled_date: date
    scheduled_time: Optional[time] = None
    ot_room: Optional[str] = Field(None, max_length=50)
    priority: OtPriority = OtPriority.elective


class OtCaseUpdate(BaseModel):
    anaesthetist_id: Optional[int] = None
    procedure_name: Optional[str] = Field(None, min_length=1, max_length=255)
    procedure_code: Optional[str] = Field(None, max_length=50)
    diagnosis: Optional[str] = None
    surgery_type: Optional[str] = Field(None, max_length=50)
    estimated_duration: Optional[int] = Field(None, ge=1)
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    ot_room: Optional[str] = Field(None, max_length=50)
    priority: Optional[OtPriority] = None


class OtCaseResponse(BaseSchema):
    id: int
    patient_id: int
    patient_name: str
    uhid: str
    age: Optional[int] = None
    gender: Optional[str] = None
    surgeon_id: int
    surgeon_name: str
    anaesthetist_id: Optional[int] = None
    anaesthetist_name: Optional[str] = None
    procedure_name: str
    procedure_code: Optional[str] = None
    diagnosis: Optional[str] = None
    surgery_type: Optional[str] = None
    estimated_duration: Optional[int] = None
    scheduled_date: date
    scheduled_time: Optional[time] = None
    ot_room: Optional[str] = None
    priority: OtPriority
    status: OtCaseStatus
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OtStatusTransition(BaseModel):
    target_status: OtCaseStatus


class OtStatusChangeResponse(BaseSchema):
    id: int
    case_id: int
    from_status: OtCaseStatus
    to_status: OtCaseStatus
    changed_by: Optional[int] = None
    changed_by_role: Optional[str] = None
    changed_at: Optional[datetime] = None


class PhaseStatus(str, Enum):
    pending = "pending"
    active = "active"
    complete = "complete"


class OtPhases(BaseModel):
    pre_op: PhaseStatus
    intra_op: PhaseStatus
    post_op: PhaseStatus


# ==================== OT Record Payloads ====================
# One concrete schema per record kind; see RECORD_SCHEMAS / LOG_SCHEMAS below.

class CounsellingRecord(BaseModel):
    counsellor_name: str
    counselled_person: Optional[str] = None
    relationship_to_patient: Optional[str] = None
    procedure_explained: bool = False
    risks_explained: bool = False
    alternatives_explained: bool = False
    estimated_cost: Optional[float] = Field(None, ge=0)
    questions_answered: bool = False
    language: Optional[str] = None
    notes: Optional[str] = None
    counselled_at: Optional[datetime] = None

    @field_validator("counsellor_name")
    @classmethod
    def counsellor_required(cls, v):
        return _require_text(v, "counsellor_name")


PREOP_CHECKLIST_ITEMS = (
    "identity_verified",
    "consent_signed",
    "site_marked",
    "npo_confirmed",
    "allergies_checked",
    "jewellery_removed",
    "dentures_removed",
    "prosthesis_removed",
    "makeup_nail_polish_removed",
    "hair_covered",
    "skin_prepared",
    "bowel_prepared",
    "bladder_emptied",
    "iv_line_secured",
    "premedication_given",
    "antibiotic_prophylaxis_given",
    "blood_arranged",
    "investigations_attached",
    "imaging_available",
    "anaesthesia_fitness_obtained",
    "vitals_recorded",
    "hospital_gown_worn",
    "id_band_attached",
    "case_file_complete",
    "implants_available",
)


class PreopChecklistRecord(BaseModel):
    identity_verified: bool = False
    consent_signed: bool = False
    site_marked: bool = False
    npo_confirmed: bool = False
    allergies_checked: bool = False
    jewellery_removed: bool = False
    dentures_removed: bool = False
    prosthesis_removed: bool = False
    makeup_nail_polish_removed: bool = False
    hair_covered: bool = False
    skin_prepared: bool = False
    bowel_prepared: bool = False
    bladder_emptied: bool = False
    iv_line_secured: bool = False
    premedication_given: bool = False
    antibiotic_prophylaxis_given: bool = False
    blood_arranged: bool = False
    investigations_attached: bool = False
    imaging_available: bool = False
    anaesthesia_fitness_obtained: bool = False
    vitals_recorded: bool = False
    hospital_gown_worn: bool = False
    id_band_attached: bool = False
    case_file_complete: bool = False
    implants_available: bool = False

    staff_name: str
    staff_designation: Optional[str] = None
    remarks: Optional[str] = None
    checked_at: Optional[datetime] = None

    @field_validator("staff_name")
    @classmethod
    def staff_required(cls, v):
        return _require_text(v, "staff_name")

    @computed_field
    @property
    def is_complete(self) -> bool:
        return all(getattr(self, item) for item in PREOP_CHECKLIST_ITEMS)


class PreAnaestheticEvaluationRecord(BaseModel):
    # History
    medical_history: Optional[str] = None
    surgical_history: Optional[str] = None
    anaesthesia_history: Optional[str] = None
    drug_history: Optional[str] = None
    allergies: Optional[str] = None
    # Examination
    weight_kg: Optional[float] = Field(None, gt=0)
    height_cm: Optional[float] = Field(None, gt=0)
    pulse: Optional[int] = Field(None, ge=0)
    blood_pressure: Optional[str] = None
    airway_assessment: Optional[str] = None
    mallampati_grade: Optional[int] = Field(None, ge=1, le=4)
    asa_grade: Optional[int] = Field(None, ge=1, le=6)
    cardiovascular_exam: Optional[str] = None
    respiratory_exam: Optional[str] = None
    # Investigations
    haemoglobin: Optional[str] = None
    blood_sugar: Optional[str] = None
    renal_function: Optional[str] = None
    ecg: Optional[str] = None
    chest_xray: Optional[str] = None
    other_investigations: Optional[str] = None

    fit_for_anaesthesia: bool = False
    planned_anaesthesia: Optional[str] = None
    anaesthetist_name: str
    evaluated_at: Optional[datetime] = None

    @field_validator("anaesthetist_name")
    @classmethod
    def anaesthetist_required(cls, v):
        return _require_text(v, "anaesthetist_name")


class YesNoNa(str, Enum):
    yes = "yes"
    no = "no"
    na = "na"


SIGN_IN_RISK_ITEMS = ("known_allergy", "difficult_airway_risk", "blood_loss_risk")


class SafetySignIn(BaseModel):
    """Before induction of anaesthesia."""
    identity_confirmed: YesNoNa = YesNoNa.no
    site_marked: YesNoNa = YesNoNa.no
    consent_confirmed: YesNoNa = YesNoNa.no
    anaesthesia_check_complete: YesNoNa = YesNoNa.no
    pulse_oximeter_functioning: YesNoNa = YesNoNa.no
    # Risk assessments: "no" is a safe answer, only an unanswered question blocks the gate
    known_allergy: Optional[YesNoNa] = None
    difficult_airway_risk: Optional[YesNoNa] = None
    blood_loss_risk: Optional[YesNoNa] = None

    def passed(self) -> bool:
        for name, value in self:
            if name in SIGN_IN_RISK_ITEMS:
                if value is None:
                    return False
            elif value == YesNoNa.no:
                return False
        return True


class SafetyTimeOut(BaseModel):
    """Before skin incision."""
    team_introduced: YesNoNa = YesNoNa.no
    patient_site_procedure_confirmed: YesNoNa = YesNoNa.no
    antibiotic_prophylaxis_given: YesNoNa = YesNoNa.no
    critical_events_reviewed: YesNoNa = YesNoNa.no
    imaging_displayed: YesNoNa = YesNoNa.no


class SafetySignOut(BaseModel):
    """Before the patient leaves the operating room."""
    procedure_recorded: YesNoNa = YesNoNa.no
    counts_correct: YesNoNa = YesNoNa.no
    specimen_labelled: YesNoNa = YesNoNa.no
    equipment_problems_addressed: YesNoNa = YesNoNa.no
    recovery_concerns_reviewed: YesNoNa = YesNoNa.no


class SafetyChecklistRecord(BaseModel):
    sign_in: SafetySignIn = Field(default_factory=SafetySignIn)
    time_out: SafetyTimeOut = Field(default_factory=SafetyTimeOut)
    sign_out: SafetySignOut = Field(default_factory=SafetySignOut)
    coordinator_name: Optional[str] = None
    remarks: Optional[str] = None

    @computed_field
    @property
    def is_complete(self) -> bool:
        # Check items pass when answered yes or explicitly not applicable
        later_gates = (self.time_out, self.sign_out)
        return self.sign_in.passed() and all(
            value != YesNoNa.no for gate in later_gates for value in gate.model_dump().values()
        )


class AnaesthesiaRecord(BaseModel):
    anaesthesia_type: str
    induction_agents: List[str] = Field(default_factory=list)
    maintenance_agents: List[str] = Field(default_factory=list)
    muscle_relaxants: List[str] = Field(default_factory=list)
    airway_device: Optional[str] = None
    fluids: List[str] = Field(default_factory=list)
    blood_products: List[str] = Field(default_factory=list)
    estimated_blood_loss_ml: Optional[int] = Field(None, ge=0)
    urine_output_ml: Optional[int] = Field(None, ge=0)
    complications: Optional[str] = None
    reversal_agents: Optional[str] = None
    disposition: Optional[str] = None  # recovery room, ICU, ward
    anaesthetist_name: str

    @field_validator("anaesthesia_type", "anaesthetist_name")
    @classmethod
    def text_required(cls, v, info):
        return _require_text(v, info.field_name)


class SurgeonNotesRecord(BaseModel):
    pre_operative_diagnosis: Optional[str] = None
    post_operative_diagnosis: Optional[str] = None
    findings: str
    procedure_details: str
    specimens: Optional[str] = None
    specimen_sent_for_histopathology: bool = False
    drains: Optional[str] = None
    closure: Optional[str] = None
    complications: Optional[str] = None
    post_op_instructions: Optional[str] = None
    surgeon_name: str

    @field_validator("findings", "procedure_details", "surgeon_name")
    @classmethod
    def text_required(cls, v, info):
        return _require_text(v, info.field_name)


class AldreteRow(BaseModel):
    """One Aldrete recovery observation. ``total`` is always derived from the five domains."""
    observed_at: Optional[str] = None  # e.g. "on arrival", "15 min"
    activity: int = Field(..., ge=0, le=2)
    respiration: int = Field(..., ge=0, le=2)
    consciousness: int = Field(..., ge=0, le=2)
    o2_saturation: int = Field(..., ge=0, le=2)
    circulation: int = Field(..., ge=0, le=2)

    @model_validator(mode="before")
    @classmethod
    def drop_client_total(cls, data):
        if isinstance(data, dict) and "total" in data:
            data = {k: v for k, v in data.items() if k != "total"}
        return data

    @computed_field
    @property
    def total(self) -> int:
        return self.activity + self.respiration + self.consciousness + self.o2_saturation + self.circulation


class DischargeVitals(BaseModel):
    pulse: Optional[int] = Field(None, ge=0)
    blood_pressure: Optional[str] = None
    spo2: Optional[int] = Field(None, ge=0, le=100)
    temperature: Optional[float] = None
    respiratory_rate: Optional[int] = Field(None, ge=0)
    pain_score: Optional[int] = Field(None, ge=0, le=10)


class PostopAssessmentRecord(BaseModel):
    aldrete_scores: List[AldreteRow] = Field(default_factory=list)
    discharge_vitals: DischargeVitals = Field(default_factory=DischargeVitals)
    shifted_to: Optional[str] = None
    remarks: Optional[str] = None
    recovery_nurse_signature: Optional[str] = None
    anaesthetist_signature: Optional[str] = None

    @computed_field
    @property
    def signed_off(self) -> bool:
        return bool(
            (self.recovery_nurse_signature or "").strip()
            and (self.anaesthetist_signature or "").strip()
        )


class NeonateSheetRecord(BaseModel):
    birth_datetime: datetime
    sex: str
    birth_weight_grams: int = Field(..., gt=0)
    apgar_1_min: Optional[int] = Field(None, ge=0, le=10)
    apgar_5_min: Optional[int] = Field(None, ge=0, le=10)
    resuscitation_required: bool = False
    resuscitation_details: Optional[str] = None
    vitamin_k_given: bool = False
    breastfeeding_initiated: bool = False
    paediatrician_name: Optional[str] = None
    remarks: Optional[str] = None


# --- Append-only log entries ---

class TimeLogEntry(BaseModel):
    event: str  # e.g. "patient_in", "induction", "incision", "closure", "patient_out"
    occurred_at: datetime
    note: Optional[str] = None

    @field_validator("event")
    @classmethod
    def event_required(cls, v):
        return _require_text(v, "event")


class MonitoringChartEntry(BaseModel):
    recorded_at: datetime
    pulse: Optional[int] = Field(None, ge=0)
    blood_pressure: Optional[str] = None
    spo2: Optional[int] = Field(None, ge=0, le=100)
    temperature: Optional[float] = None
    respiratory_rate: Optional[int] = Field(None, ge=0)
    pain_score: Optional[int] = Field(None, ge=0, le=10)
    remarks: Optional[str] = None


class LabourChartEntry(BaseModel):
    recorded_at: datetime
    cervical_dilation_cm: Optional[float] = Field(None, ge=0, le=10)
    head_descent: Optional[str] = None
    contractions_per_10_min: Optional[int] = Field(None, ge=0)
    fetal_heart_rate: Optional[int] = Field(None, ge=0)
    liquor: Optional[str] = None
    moulding: Optional[str] = None
    remarks: Optional[str] = None


class ConsentEntry(BaseModel):
    consent_type: str  # surgical, anaesthesia, blood_transfusion, high_risk
    signed_by: str
    relationship_to_patient: Optional[str] = None
    witness_name: Optional[str] = None
    language: Optional[str] = None
    signed_at: datetime
    notes: Optional[str] = None

    @field_validator("consent_type", "signed_by")
    @classmethod
    def text_required(cls, v, info):
        return _require_text(v, info.field_name)


RECORD_SCHEMAS: Dict[OtRecordKind, Type[BaseModel]] = {
    OtRecordKind.counselling: CounsellingRecord,
    OtRecordKind.preop_checklist: PreopChecklistRecord,
    OtRecordKind.pre_anaesthetic_evaluation: PreAnaestheticEvaluationRecord,
    OtRecordKind.safety_checklist: SafetyChecklistRecord,
    OtRecordKind.anaesthesia_record: AnaesthesiaRecord,
    OtRecordKind.surgeon_notes: SurgeonNotesRecord,
    OtRecordKind.postop_assessment: PostopAssessmentRecord,
    OtRecordKind.neonate_sheet: NeonateSheetRecord,
}

LOG_SCHEMAS: Dict[OtLogKind, Type[BaseModel]] = {
    OtLogKind.time_log: TimeLogEntry,
    OtLogKind.monitoring_chart: MonitoringChartEntry,
    OtLogKind.labour_chart: LabourChartEntry,
    OtLogKind.consent: ConsentEntry,
}


class PhaseRecordResponse(BaseSchema):
    id: int
    case_id: int
    kind: OtRecordKind
    payload: Dict[str, Any]
    recorded_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LogEntryResponse(BaseSchema):
    id: int
    case_id: int
    kind: OtLogKind
    payload: Dict[str, Any]
    recorded_by: Optional[int] = None
    recorded_at: Optional[datetime] = None


# --- Full case aggregate ---

class PreOpBundle(BaseModel):
    counselling: Optional[PhaseRecordResponse] = None
    preop_checklist: Optional[PhaseRecordResponse] = None
    pre_anaesthetic_evaluation: Optional[PhaseRecordResponse] = None
    safety_checklist: Optional[PhaseRecordResponse] = None


class IntraOpBundle(BaseModel):
    anaesthesia_record: Optional[PhaseRecordResponse] = None
    surgeon_notes: Optional[PhaseRecordResponse] = None
    time_log: List[LogEntryResponse] = Field(default_factory=list)


class PostOpBundle(BaseModel):
    postop_assessment: Optional[PhaseRecordResponse] = None
    neonate_sheet: Optional[PhaseRecordResponse] = None
    monitoring_chart: List[LogEntryResponse] = Field(default_factory=list)
    labour_chart: List[LogEntryResponse] = Field(default_factory=list)


class FullOtCase(BaseModel):
    case: OtCaseResponse
    pre_op: PreOpBundle
    intra_op: IntraOpBundle
    post_op: PostOpBundle
    consents: List[LogEntryResponse] = Field(default_factory=list)
    phases: OtPhases
    status_history: List[OtStatusChangeResponse] = Field(default_factory=list)


# ==================== Audit & Health ====================

class AuditLogResponse(BaseSchema):
    id: int
    user_id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[str] = None
    action: AuditAction
    category: str
    severity: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[int] = None
    details: Optional[str] = None
    timestamp: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    app: str
    version: str
    database: str


class ConsistencyReport(BaseModel):
    checked_at: datetime
    booked_slots_without_appointments: List[Dict[str, Any]] = Field(default_factory=list)
    appointments_without_booked_slot: List[Dict[str, Any]] = Field(default_factory=list)
    duplicate_active_appointments: List[Dict[str, Any]] = Field(default_factory=list)
