"""
Count State Machine

All Count status changes are validated here.

    pendiente -> contando -> contado -> cerrado
    pendiente -> cancelado

'contando' is special: it is only reachable from 'pendiente', and asking
for it again (even from 'contando') raises AlreadyStarted, so two
operators cannot both start the same count.
"""

from typing import List, Dict

from app.core.exceptions import AlreadyStarted, InvalidStatusTransition
from app.models.count import CountStatus


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
COUNT_TRANSITIONS: Dict[str, List[str]] = {
    CountStatus.PENDIENTE.value: [
        CountStatus.CONTANDO.value,     # Operator starts counting
        CountStatus.CANCELADO.value,    # Cancel before starting
    ],
    CountStatus.CONTANDO.value: [
        CountStatus.CONTADO.value,      # Operator finished
        CountStatus.CERRADO.value,      # Auto-close once every detail is captured
        CountStatus.CANCELADO.value,
    ],
    CountStatus.CONTADO.value: [
        CountStatus.CERRADO.value,      # Supervisor closes
    ],
    CountStatus.CERRADO.value: [],      # Terminal state
    CountStatus.CANCELADO.value: [],    # Terminal state
}

# Statuses from which adjustment requests may be derived
REQUESTABLE_STATUSES = (CountStatus.CONTADO.value, CountStatus.CERRADO.value)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def can_transition(current_status: str, new_status: str) -> bool:
    """Check if a transition is allowed."""
    return new_status in COUNT_TRANSITIONS.get(current_status, [])


def get_allowed_transitions(current_status: str) -> List[str]:
    """Get list of statuses that can be transitioned to from current status."""
    return COUNT_TRANSITIONS.get(current_status, [])


def validate_transition(current_status: str, new_status: str) -> bool:
    """
    Validate a status transition.

    Returns:
        False for a same-state no-op, True for a real transition

    Raises:
        AlreadyStarted: 'contando' requested on a count past 'pendiente'
        InvalidStatusTransition: any other illegal transition
    """
    if new_status not in COUNT_TRANSITIONS:
        raise InvalidStatusTransition(f"Unknown count status '{new_status}'")

    if new_status == CountStatus.CONTANDO.value and current_status != CountStatus.PENDIENTE.value:
        raise AlreadyStarted(f"Count already started (status '{current_status}')")

    if current_status == new_status:
        return False  # No change, always allowed

    if not can_transition(current_status, new_status):
        allowed = get_allowed_transitions(current_status)
        if not allowed:
            raise InvalidStatusTransition(
                f"Count in '{current_status}' status cannot be modified. This is a terminal state."
            )
        raise InvalidStatusTransition(
            f"Invalid status transition from '{current_status}' to '{new_status}'. "
            f"Allowed transitions: {', '.join(allowed)}"
        )
    return True


def is_terminal(status: str) -> bool:
    """Is this a terminal (final) state?"""
    return status in (CountStatus.CERRADO.value, CountStatus.CANCELADO.value)
