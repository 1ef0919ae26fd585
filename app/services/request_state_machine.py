"""
Adjustment Request State Machine

    pendiente -> en_revision -> ajustado | rechazado

'ajustado' and 'rechazado' are terminal. Re-applying the current status is
always allowed, so an update that only touches notes passes validation.
"""

from typing import List, Dict

from app.core.exceptions import InvalidStatusTransition
from app.models.request import RequestStatus


REQUEST_TRANSITIONS: Dict[str, List[str]] = {
    RequestStatus.PENDIENTE.value: [
        RequestStatus.EN_REVISION.value,
    ],
    RequestStatus.EN_REVISION.value: [
        RequestStatus.AJUSTADO.value,
        RequestStatus.RECHAZADO.value,
    ],
    RequestStatus.AJUSTADO.value: [],   # Terminal state
    RequestStatus.RECHAZADO.value: [],  # Terminal state
}


def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    if current_status == new_status:
        return True
    return new_status in REQUEST_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    return REQUEST_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str) -> None:
    """Raise InvalidStatusTransition unless the change is allowed."""
    if new_status not in REQUEST_TRANSITIONS:
        raise InvalidStatusTransition(f"Unknown request status '{new_status}'")

    if not can_transition(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        raise InvalidStatusTransition(
            f"Invalid status transition from '{current_status}' to '{new_status}'. "
            f"Allowed transitions: {', '.join(allowed) if allowed else 'none (terminal state)'}"
        )
