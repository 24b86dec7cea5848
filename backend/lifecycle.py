"""
Purchase request lifecycle.

    pending -> approved -> in-transit -> completed
    pending -> declined

declined and completed are terminal. The table below also says which role may
trigger each move; the caller must additionally be a participant of the
request, which the request service checks.
"""
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from errors import ForbiddenError, InvalidTransitionError, ValidationError


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    IN_TRANSIT = "in-transit"
    COMPLETED = "completed"


INITIAL_STATUS = RequestStatus.PENDING
TERMINAL_STATUSES = frozenset({RequestStatus.DECLINED, RequestStatus.COMPLETED})

TRANSITIONS: Dict[Tuple[RequestStatus, RequestStatus], FrozenSet[str]] = {
    (RequestStatus.PENDING, RequestStatus.APPROVED): frozenset({"farmer"}),
    (RequestStatus.PENDING, RequestStatus.DECLINED): frozenset({"farmer", "vendor"}),
    (RequestStatus.APPROVED, RequestStatus.IN_TRANSIT): frozenset({"farmer"}),
    (RequestStatus.IN_TRANSIT, RequestStatus.COMPLETED): frozenset({"farmer", "vendor"}),
}


def parse_status(value: Optional[str]) -> RequestStatus:
    if value is None or not str(value).strip():
        raise ValidationError(["Status required"])
    try:
        return RequestStatus(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(s.value for s in RequestStatus)
        raise ValidationError([f"Unknown status '{value}' (expected one of {allowed})"])


def is_allowed(current: RequestStatus, requested: RequestStatus, role: str) -> bool:
    return role in TRANSITIONS.get((current, requested), frozenset())


def next_statuses(current: RequestStatus, role: Optional[str] = None) -> List[RequestStatus]:
    return [
        to for (frm, to), roles in TRANSITIONS.items()
        if frm == current and (role is None or role in roles)
    ]


def check_transition(current: RequestStatus, requested: RequestStatus, role: str):
    roles = TRANSITIONS.get((current, requested))
    if roles is None:
        raise InvalidTransitionError(current.value, requested.value)
    if role not in roles:
        raise ForbiddenError(f"A {role} cannot move a request from '{current.value}' to '{requested.value}'")
