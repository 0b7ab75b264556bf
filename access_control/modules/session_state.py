"""
Scan session state machine.

A user's session state is never stored. It is derived from the latest granted
scan event:

    OUTSIDE --entry--> INSIDE --exit--> OUTSIDE

Any other combination is a state-machine violation and is rejected with
``wrong_scan_type_for_state``.
"""

from dataclasses import dataclass
from typing import Optional

from access_control.modules.models import (
    ScanEvent, ScanType, SessionState, REASON_WRONG_SCAN_TYPE,
)

TRANSITIONS = {
    (SessionState.OUTSIDE, ScanType.ENTRY): SessionState.INSIDE,
    (SessionState.INSIDE, ScanType.EXIT): SessionState.OUTSIDE,
}


@dataclass(frozen=True)
class Transition:
    accepted: bool
    new_state: Optional[SessionState] = None
    reason: Optional[str] = None


def derive_state(latest_granted: Optional[ScanEvent]) -> SessionState:
    """Session state implied by the user's most recent granted scan."""
    if latest_granted is None or not latest_granted.granted:
        return SessionState.OUTSIDE
    if latest_granted.scan_type == ScanType.ENTRY:
        return SessionState.INSIDE
    return SessionState.OUTSIDE


def next_state(user_id: str, scan_type: ScanType, current_state: SessionState) -> Transition:
    new_state = TRANSITIONS.get((current_state, ScanType(scan_type)))
    if new_state is None:
        return Transition(accepted=False, reason=REASON_WRONG_SCAN_TYPE)
    return Transition(accepted=True, new_state=new_state)
