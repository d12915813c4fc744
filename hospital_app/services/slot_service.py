# hospital_app/services/slot_service.py
"""Derives bookable consultation slots from doctor schedule blocks.

``resolve_slots`` is a pure function over already-loaded blocks and
appointments; ``list_available_slots`` is the database-backed entry point.
"""
import logging
import re
from datetime import date, time
from typing import Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..errors import ValidationError

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$")


def parse_clock(value: Union[str, time]) -> int:
    """Minutes since midnight for a ``time`` or a "HH:MM", "HH:MM:SS" or "h:MM AM" string."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    match = _CLOCK_RE.match(value or "")
    if not match:
        raise ValidationError(f"Invalid time value: {value!r}", value=value)

    hours, minutes, _, meridiem = match.groups()
    hours, minutes = int(hours), int(minutes)
    if minutes > 59:
        raise ValidationError(f"Invalid time value: {value!r}", value=value)
    if meridiem:
        if not 1 <= hours <= 12:
            raise ValidationError(f"Invalid time value: {value!r}", value=value)
        hours = hours % 12 + (12 if meridiem.lower() == "pm" else 0)
    elif hours > 23:
        raise ValidationError(f"Invalid time value: {value!r}", value=value)
    return hours * 60 + minutes


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def format_label(minutes: int) -> str:
    hours, mins = divmod(minutes, 60)
    suffix = "AM" if hours < 12 else "PM"
    return f"{hours % 12 or 12:02d}:{mins:02d} {suffix}"


def clock_to_time(minutes: int) -> time:
    return time(minutes // 60, minutes % 60)


def applicable_blocks(blocks: Iterable, target_date: date) -> list:
    """Blocks in force on ``target_date``.

    Blocks pinned to the date replace the weekly pattern for that day, so an
    unavailable date-specific block marks the whole day off.
    """
    blocks = list(blocks)
    dated = [b for b in blocks if b.specific_date == target_date]
    if dated:
        return [b for b in dated if b.is_available]
    return [
        b for b in blocks
        if b.specific_date is None and b.day_of_week == target_date.weekday() and b.is_available
    ]


def expand_schedule(
    doctor_id: int,
    target_date: date,
    blocks: Iterable,
    slot_minutes: int = 30,
) -> List[schemas.TimeSlot]:
    """Every candidate slot for the day, ignoring bookings. Sorted chronologically."""
    slots = {}
    for block in applicable_blocks(blocks, target_date):
        start = parse_clock(block.start_time)
        end = parse_clock(block.end_time)
        if end <= start:
            logger.warning(f"Ignoring empty schedule block {getattr(block, 'id', None)} for doctor {doctor_id} ({format_clock(start)}-{format_clock(end)})")
            continue

        cursor = start
        while cursor + slot_minutes <= end:
            key = (cursor, block.location)
            if key in slots:
                logger.warning(f"Overlapping schedule blocks for doctor {doctor_id} on {target_date} at {format_clock(cursor)}; merging duplicate slot")
            else:
                slots[key] = schemas.TimeSlot(
                    doctor_id=doctor_id,
                    date=target_date,
                    start_time=format_clock(cursor),
                    end_time=format_clock(cursor + slot_minutes),
                    label=f"{format_label(cursor)} - {format_label(cursor + slot_minutes)}",
                    location=block.location,
                )
            cursor += slot_minutes

    return [slots[key] for key in sorted(slots, key=lambda k: (k[0], k[1] or ""))]


def resolve_slots(
    doctor_id: int,
    target_date: date,
    blocks: Iterable,
    appointments: Iterable,
    slot_minutes: int = 30,
    location: Optional[str] = None,
) -> List[schemas.TimeSlot]:
    """Bookable slots: schedule candidates minus start-times held by non-cancelled appointments."""
    taken = {
        parse_clock(appointment.start_time)
        for appointment in appointments
        if appointment.status != models.AppointmentStatus.cancelled
        and appointment.appointment_date == target_date
        and appointment.doctor_id == doctor_id
    }

    available = []
    for slot in expand_schedule(doctor_id, target_date, blocks, slot_minutes):
        if parse_clock(slot.start_time) in taken:
            continue
        if location is not None and slot.location != location:
            continue
        available.append(slot)
    return available


def list_available_slots(
    db: Session,
    doctor_id: int,
    target_date: date,
    location: Optional[str] = None,
) -> List[schemas.TimeSlot]:
    doctor = crud.get_doctor_or_404(db, doctor_id)
    if not doctor.is_active:
        logger.info(f"Doctor {doctor_id} is inactive; no slots for {target_date}")
        return []

    blocks = crud.get_schedule_blocks_for_date(db, doctor_id, target_date)
    appointments = crud.get_active_appointments_for_day(db, doctor_id, target_date)
    slots = resolve_slots(
        doctor_id,
        target_date,
        blocks,
        appointments,
        slot_minutes=get_settings().slot_duration_minutes,
        location=location,
    )
    logger.debug(f"Resolved {len(slots)} open slots for doctor {doctor_id} on {target_date}")
    return slots
