# tests/test_ot_state_machine.py
from datetime import date, time
from itertools import product

import pytest

from hospital_app import models, schemas
from hospital_app.config import get_settings
from hospital_app.errors import AuthorizationError, IllegalTransition, NotFound, ValidationError
from hospital_app.services import clinical_record_store, ot_case_service, ot_state_machine
from hospital_app.services.ot_state_machine import derive_phases

from conftest import TUESDAY, make_actor

S = models.OtCaseStatus
P = schemas.PhaseStatus
K = models.OtRecordKind

LEGAL = {
    (S.scheduled, S.in_prep),
    (S.in_prep, S.in_progress),
    (S.in_progress, S.completed),
    (S.scheduled, S.cancelled),
    (S.in_prep, S.cancelled),
}


@pytest.mark.parametrize("current,target", list(product(S, S)))
def test_transition_table(current, target):
    assert ot_state_machine.can_transition(current, target) == ((current, target) in LEGAL)


def test_postponed_is_terminal_and_unreachable():
    assert ot_state_machine.allowed_targets(S.postponed) == []
    assert not any(ot_state_machine.can_transition(s, S.postponed) for s in S)


@pytest.mark.parametrize("current,target", list(product(S, S)))
def test_transition_status_applies_only_legal_moves(db, make_case, surgeon_actor, current, target):
    case = make_case(status=current)

    if (current, target) in LEGAL:
        updated = ot_state_machine.transition_status(db, case.id, target, surgeon_actor)
        assert updated.status == target
        history = ot_state_machine.get_status_history(db, case.id)
        assert [(h.from_status, h.to_status) for h in history] == [(current, target)]
        assert history[0].changed_by == surgeon_actor.user_id
        assert history[0].changed_by_role == "doctor"
    else:
        with pytest.raises(IllegalTransition):
            ot_state_machine.transition_status(db, case.id, target, surgeon_actor)
        db.expire_all()
        assert ot_state_machine.get_case_or_404(db, case.id).status == current
        assert ot_state_machine.get_status_history(db, case.id) == []


@pytest.mark.parametrize("role", [
    models.UserRole.nurse,
    models.UserRole.opd_manager,
    models.UserRole.patient,
    models.UserRole.pathology_lab,
    models.UserRole.medical_store,
])
def test_disallowed_roles_get_authorization_error(db, make_case, role):
    case = make_case()
    actor = make_actor(role)
    with pytest.raises(AuthorizationError):
        ot_state_machine.transition_status(db, case.id, S.in_prep, actor)
    # Role is checked before the transition itself and before the lookup
    with pytest.raises(AuthorizationError):
        ot_state_machine.transition_status(db, case.id, S.completed, actor)
    with pytest.raises(AuthorizationError):
        ot_state_machine.transition_status(db, 9999, S.in_prep, actor)
    db.expire_all()
    assert ot_state_machine.get_case_or_404(db, case.id).status == S.scheduled


@pytest.mark.parametrize("role", [models.UserRole.super_admin, models.UserRole.admin, models.UserRole.doctor])
def test_allowed_roles(db, make_case, role):
    case = make_case()
    assert ot_state_machine.transition_status(db, case.id, S.in_prep, make_actor(role)).status == S.in_prep


def test_unknown_case_is_not_found(db, admin):
    with pytest.raises(NotFound):
        ot_state_machine.transition_status(db, 9999, S.in_prep, admin)


def test_new_case_walks_the_lifecycle(db, make_doctor, make_patient, surgeon_actor):
    surgeon = make_doctor(name="Dr. Iyer")
    patient = make_patient()
    case = ot_case_service.create_case(
        db,
        schemas.OtCaseCreate(
            patient_id=patient.id, surgeon_id=surgeon.id, procedure_name="Appendectomy",
            scheduled_date=TUESDAY, scheduled_time=time(8, 30), ot_room="OT-2",
            priority=models.OtPriority.urgent,
        ),
        surgeon_actor,
    )
    assert case.status == S.scheduled
    assert case.uhid == patient.uhid
    assert case.surgeon_name == "Dr. Iyer"
    assert case.created_by == surgeon_actor.user_id

    with pytest.raises(IllegalTransition):
        ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor)
    db.expire_all()
    assert ot_state_machine.get_case_or_404(db, case.id).status == S.scheduled

    ot_state_machine.transition_status(db, case.id, S.in_prep, surgeon_actor)
    assert ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor).status == S.in_progress
    assert ot_state_machine.get_phases(db, case.id).intra_op == P.active

    ot_state_machine.transition_status(db, case.id, S.completed, surgeon_actor)
    history = ot_state_machine.get_status_history(db, case.id)
    assert [h.to_status for h in history] == [S.in_prep, S.in_progress, S.completed]
    assert ot_state_machine.get_phases(db, case.id).post_op == P.complete


@pytest.mark.parametrize("status,kinds,expected", [
    (S.scheduled, set(), (P.pending, P.pending, P.pending)),
    (S.in_prep, {K.preop_checklist}, (P.complete, P.pending, P.pending)),
    (S.in_progress, {K.preop_checklist}, (P.complete, P.active, P.pending)),
    (S.in_progress, {K.surgeon_notes}, (P.pending, P.complete, P.pending)),
    (S.completed, {K.preop_checklist, K.surgeon_notes}, (P.complete, P.complete, P.complete)),
    (S.completed, set(), (P.pending, P.pending, P.complete)),
    (S.cancelled, {K.counselling, K.safety_checklist}, (P.pending, P.pending, P.pending)),
])
def test_derive_phases(status, kinds, expected):
    phases = derive_phases(status, kinds)
    assert (phases.pre_op, phases.intra_op, phases.post_op) == expected


def test_record_writes_never_change_status(db, make_case, nurse):
    case = make_case(status=S.in_prep)
    clinical_record_store.upsert_record(db, case.id, K.preop_checklist, {"staff_name": "Sr. Anita"}, nurse)
    clinical_record_store.append_log_entry(
        db, case.id, models.OtLogKind.time_log, {"event": "patient_in", "occurred_at": "2026-10-20T08:10:00"}, nurse
    )
    db.expire_all()
    assert ot_state_machine.get_case_or_404(db, case.id).status == S.in_prep
    assert ot_state_machine.get_phases(db, case.id).pre_op == P.complete


class TestPreopGate:
    @pytest.fixture(autouse=True)
    def enforce_gate(self, monkeypatch):
        monkeypatch.setattr(get_settings(), "ot_require_preop_checklist", True)

    def test_blocks_surgery_start_without_checklists(self, db, make_case, surgeon_actor):
        case = make_case(status=S.in_prep)
        with pytest.raises(ValidationError) as exc:
            ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor)
        assert "pre-op checklist missing" in exc.value.context["problems"]
        db.expire_all()
        assert ot_state_machine.get_case_or_404(db, case.id).status == S.in_prep

    def record_checklists(self, db, case, nurse, **risks):
        checklist = {item: True for item in schemas.PREOP_CHECKLIST_ITEMS}
        checklist["staff_name"] = "Sr. Anita"
        clinical_record_store.upsert_record(db, case.id, K.preop_checklist, checklist, nurse)
        sign_in = {
            field: "yes" for field in schemas.SafetySignIn.model_fields
            if field not in schemas.SIGN_IN_RISK_ITEMS
        }
        sign_in.update(risks)
        clinical_record_store.upsert_record(db, case.id, K.safety_checklist, {"sign_in": sign_in}, nurse)

    def test_allows_surgery_start_for_low_risk_patient(self, db, make_case, surgeon_actor, nurse):
        case = make_case(status=S.in_prep)
        self.record_checklists(db, case, nurse, known_allergy="no", difficult_airway_risk="no", blood_loss_risk="no")

        assert ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor).status == S.in_progress

    def test_allows_surgery_start_when_risks_are_flagged(self, db, make_case, surgeon_actor, nurse):
        case = make_case(status=S.in_prep)
        self.record_checklists(db, case, nurse, known_allergy="yes", difficult_airway_risk="na", blood_loss_risk="yes")

        assert ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor).status == S.in_progress

    def test_unanswered_risk_question_blocks_surgery_start(self, db, make_case, surgeon_actor, nurse):
        case = make_case(status=S.in_prep)
        self.record_checklists(db, case, nurse, known_allergy="no", difficult_airway_risk="no")

        with pytest.raises(ValidationError) as exc:
            ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor)
        assert exc.value.context["problems"] == ["safety checklist sign-in gate not passed"]

    def test_partially_ticked_checklist_is_reported(self, db, make_case, surgeon_actor, nurse):
        case = make_case(status=S.in_prep)
        clinical_record_store.upsert_record(
            db, case.id, K.preop_checklist, {"staff_name": "Sr. Anita", "consent_signed": True}, nurse
        )
        with pytest.raises(ValidationError) as exc:
            ot_state_machine.transition_status(db, case.id, S.in_progress, surgeon_actor)
        problems = " ".join(exc.value.context["problems"])
        assert "identity_verified" in problems
        assert "consent_signed" not in problems
        assert "safety checklist missing" in problems

    def test_gate_only_applies_to_surgery_start(self, db, make_case, surgeon_actor):
        case = make_case()
        assert ot_state_machine.transition_status(db, case.id, S.in_prep, surgeon_actor).status == S.in_prep


class TestCaseCreation:
    def payload(self, patient_id, surgeon_id, **extra):
        return schemas.OtCaseCreate(
            patient_id=patient_id, surgeon_id=surgeon_id, procedure_name="Hernia repair",
            scheduled_date=date(2026, 10, 22), **extra
        )

    def test_requires_admitted_patient(self, db, make_doctor, make_patient, admin):
        surgeon = make_doctor()
        outpatient = make_patient(is_admitted=False)
        with pytest.raises(ValidationError):
            ot_case_service.create_case(db, self.payload(outpatient.id, surgeon.id), admin)
        with pytest.raises(NotFound):
            ot_case_service.create_case(db, self.payload(999, surgeon.id), admin)
        assert db.query(models.OtCase).count() == 0

    def test_requires_available_surgeon(self, db, make_doctor, make_patient, admin):
        patient = make_patient()
        retired = make_doctor(is_active=False)
        with pytest.raises(NotFound):
            ot_case_service.create_case(db, self.payload(patient.id, 999), admin)
        with pytest.raises(ValidationError):
            ot_case_service.create_case(db, self.payload(patient.id, retired.id), admin)

    def test_anaesthetist_is_copied(self, db, make_doctor, make_patient, admin):
        surgeon = make_doctor()
        anaesthetist = make_doctor(name="Dr. Sen", department="Anaesthesia")
        case = ot_case_service.create_case(
            db, self.payload(make_patient().id, surgeon.id, anaesthetist_id=anaesthetist.id), admin
        )
        assert case.anaesthetist_name == "Dr. Sen"

    def test_nurse_cannot_create(self, db, make_doctor, make_patient, nurse):
        with pytest.raises(AuthorizationError):
            ot_case_service.create_case(db, self.payload(make_patient().id, make_doctor().id), nurse)


class TestCaseUpdate:
    def test_scheduling_fields_editable_while_scheduled(self, db, make_case, admin):
        case = make_case()
        updated = ot_case_service.update_case(
            db, case.id, schemas.OtCaseUpdate(ot_room="OT-3", scheduled_time=time(14, 0)), admin
        )
        assert updated.ot_room == "OT-3"
        assert updated.scheduled_time == time(14, 0)

    def test_scheduling_fields_frozen_after_scheduled(self, db, make_case, admin):
        case = make_case(status=S.in_prep)
        with pytest.raises(ValidationError) as exc:
            ot_case_service.update_case(db, case.id, schemas.OtCaseUpdate(ot_room="OT-9"), admin)
        assert exc.value.context["fields"] == ["ot_room"]

        # Descriptive fields, and resubmitting unchanged values, are still fine
        updated = ot_case_service.update_case(
            db, case.id, schemas.OtCaseUpdate(diagnosis="Calculous cholecystitis", ot_room="OT-1"), admin
        )
        assert updated.diagnosis == "Calculous cholecystitis"

    def test_required_fields_cannot_be_cleared(self, db, make_case, admin):
        case = make_case()
        with pytest.raises(ValidationError) as exc:
            ot_case_service.update_case(
                db, case.id, schemas.OtCaseUpdate(procedure_name=None, diagnosis="changed"), admin
            )
        assert exc.value.context["fields"] == ["procedure_name"]
        db.expire_all()
        assert ot_state_machine.get_case_or_404(db, case.id).diagnosis is None

    def test_list_cases_filters(self, db, make_case):
        make_case()
        make_case(status=S.in_prep)
        assert len(ot_case_service.list_cases(db)) == 2
        assert [c.status for c in ot_case_service.list_cases(db, status=S.in_prep)] == [S.in_prep]
        assert ot_case_service.list_cases(db, scheduled_date=date(2030, 1, 1)) == []
