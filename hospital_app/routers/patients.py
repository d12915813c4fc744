# hospital_app/routers/patients.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas
from ..database import get_db
from ..security import get_current_actor, require_role, FRONT_DESK_ROLES, CLINICAL_ROLES

router = APIRouter(
    prefix="/patients",
    tags=["Patients"],
    dependencies=[Depends(get_current_actor)],
    responses={404: {"description": "Not found"}},
)

# Registration and admission are front desk or clinical staff actions
require_registration_staff = require_role(*set(FRONT_DESK_ROLES + CLINICAL_ROLES))


@router.post("", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_patient(
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_registration_staff),
):
    return crud.create_patient(db=db, patient=patient)


@router.get("", response_model=List[schemas.PatientResponse])
def read_patients(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    is_admitted: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return crud.get_patients(db, skip=skip, limit=limit, search=search, is_admitted=is_admitted)


@router.get("/{patient_id}", response_model=schemas.PatientResponse)
def read_patient(patient_id: int, db: Session = Depends(get_db)):
    return crud.get_patient_or_404(db, patient_id)


@router.patch("/{patient_id}/admission", response_model=schemas.PatientResponse)
def update_admission(
    patient_id: int,
    update: schemas.PatientAdmissionUpdate,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_registration_staff),
):
    """Admit (with ward) or discharge a patient."""
    return crud.update_patient_admission(db, patient_id, update)
