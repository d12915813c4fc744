# hospital_app/routers/doctors.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas
from ..database import get_db
from ..security import get_current_actor, require_admin

router = APIRouter(
    prefix="/doctors",
    tags=["Doctors"],
    dependencies=[Depends(get_current_actor)],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.DoctorResponse, status_code=status.HTTP_201_CREATED)
def create_doctor(
    doctor: schemas.DoctorCreate,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_admin),
):
    return crud.create_doctor(db=db, doctor=doctor)


@router.get("", response_model=List[schemas.DoctorResponse])
def read_doctors(
    skip: int = 0,
    limit: int = 100,
    department: Optional[str] = None,
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return crud.get_doctors(db, skip=skip, limit=limit, department=department, is_active=is_active)


@router.get("/{doctor_id}", response_model=schemas.DoctorResponse)
def read_doctor(doctor_id: int, db: Session = Depends(get_db)):
    return crud.get_doctor_or_404(db, doctor_id)
