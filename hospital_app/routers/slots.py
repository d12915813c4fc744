# hospital_app/routers/slots.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from .. import schemas
from ..database import get_db
from ..security import get_current_actor
from ..services import slot_service

router = APIRouter(
    prefix="/slots",
    tags=["slots"],
    dependencies=[Depends(get_current_actor)],
    responses={404: {"description": "Not found"}},
)


@router.get("/{doctor_id}/{target_date}", response_model=List[schemas.TimeSlot])
def get_available_slots(
    doctor_id: int,
    target_date: date,
    location: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Bookable slots for a doctor on a date, in chronological order.
    An empty list means the doctor does not consult that day or is fully booked.
    """
    return slot_service.list_available_slots(db, doctor_id, target_date, location=location)
