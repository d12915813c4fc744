# hospital_app/routers/schedule.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..database import get_db
from ..security import get_current_actor, require_role, FRONT_DESK_ROLES

router = APIRouter(
    prefix="/schedules",
    tags=["schedules"],
    dependencies=[Depends(get_current_actor)],
    responses={404: {"description": "Not found"}},
)

require_schedule_editor = require_role(*FRONT_DESK_ROLES)


@router.get("/by-doctor/{doctor_id}", response_model=List[schemas.ScheduleBlockResponse])
def read_schedule_for_doctor(doctor_id: int, db: Session = Depends(get_db)):
    """All weekly and date-specific blocks for a doctor."""
    crud.get_doctor_or_404(db, doctor_id)
    return crud.get_schedule_blocks(db, doctor_id)


@router.post("/by-doctor/{doctor_id}", response_model=schemas.ScheduleBlockResponse, status_code=status.HTTP_201_CREATED)
def add_schedule_block(
    doctor_id: int,
    block: schemas.ScheduleBlockCreate,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_schedule_editor),
):
    db_block = crud.create_schedule_block(db, doctor_id, block)
    compliance_logger.log_actor_event(
        actor, models.AuditAction.CREATE, "SCHEDULE",
        resource_type="DoctorSchedule", resource_id=db_block.id,
        details=f"Added schedule block for doctor {doctor_id}",
    )
    return db_block


@router.delete("/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_schedule_block(
    block_id: int,
    db: Session = Depends(get_db),
    actor: schemas.Actor = Depends(require_schedule_editor),
):
    crud.delete_schedule_block(db, block_id)
    compliance_logger.log_actor_event(
        actor, models.AuditAction.DELETE, "SCHEDULE",
        resource_type="DoctorSchedule", resource_id=block_id,
        details=f"Removed schedule block {block_id}",
    )
