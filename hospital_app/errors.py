# hospital_app/errors.py
"""Domain error taxonomy.

Services raise these; ``main.py`` maps every ``HospitalError`` to a JSON body of
the form ``{"error": code, "detail": message, ...context}`` with the class status.
"""
from typing import Any, Dict


class HospitalError(Exception):
    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "detail": self.message}
        body.update(self.context)
        return body


class ValidationError(HospitalError):
    """Required field missing or malformed. Raised before any mutation."""
    status_code = 422
    code = "validation_error"


class NotFound(HospitalError):
    status_code = 404
    code = "not_found"


class SlotNotFound(HospitalError):
    """The slot reference no longer maps to a slot in the doctor's schedule."""
    status_code = 404
    code = "slot_not_found"


class SlotAlreadyBooked(HospitalError):
    """Another booking claimed the slot first. Caller should refresh availability."""
    status_code = 409
    code = "slot_already_booked"


class IllegalTransition(HospitalError):
    status_code = 409
    code = "illegal_transition"


class AuthorizationError(HospitalError):
    status_code = 403
    code = "forbidden"


class PersistenceError(HospitalError):
    status_code = 500
    code = "persistence_error"
