"""
services/booking/state_machine.py
Table-driven booking state machine.

PENDING → ACCEPTED | CANCELLED
ACCEPTED → IN_PROGRESS | CANCELLED
IN_PROGRESS → COMPLETED | CANCELLED
COMPLETED, CANCELLED: terminal

Besides the edge check, the event log must contain every event needed to
legitimately be in the booking's current status before any further action
is allowed. Nothing here touches the database.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from shared.exceptions import BadRequestError
from shared.models.models import BookingEventType, BookingStatus

S = BookingStatus
E = BookingEventType


VALID_TRANSITIONS: dict[BookingStatus, tuple[BookingStatus, ...]] = {
    S.PENDING: (S.ACCEPTED, S.CANCELLED),
    S.ACCEPTED: (S.IN_PROGRESS, S.CANCELLED),
    S.IN_PROGRESS: (S.COMPLETED, S.CANCELLED),
    S.COMPLETED: (),
    S.CANCELLED: (),
}

# Event appended when the edge is taken. Completion appends COMPLETED as well.
TRANSITION_EVENTS: dict[tuple[BookingStatus, BookingStatus], BookingEventType] = {
    (S.PENDING, S.ACCEPTED): E.ACCEPTED,
    (S.PENDING, S.CANCELLED): E.CANCELLED,
    (S.ACCEPTED, S.IN_PROGRESS): E.CHECKED_IN,
    (S.ACCEPTED, S.CANCELLED): E.CANCELLED,
    (S.IN_PROGRESS, S.COMPLETED): E.CHECKED_OUT,
    (S.IN_PROGRESS, S.CANCELLED): E.CANCELLED,
}

REQUIRED_EVENTS: dict[BookingStatus, tuple[BookingEventType, ...]] = {
    S.PENDING: (E.CREATED,),
    S.ACCEPTED: (E.CREATED, E.ACCEPTED),
    S.IN_PROGRESS: (E.CREATED, E.ACCEPTED, E.CHECKED_IN),
    S.COMPLETED: (E.CREATED, E.ACCEPTED, E.CHECKED_IN, E.CHECKED_OUT, E.COMPLETED),
    S.CANCELLED: (E.CREATED, E.CANCELLED),
}

STATUS_DISPLAY_NAMES = {
    S.PENDING: "Pending",
    S.ACCEPTED: "Accepted",
    S.IN_PROGRESS: "In Progress",
    S.COMPLETED: "Completed",
    S.CANCELLED: "Cancelled",
}

EVENT_DISPLAY_NAMES = {
    E.CREATED: "Created",
    E.ACCEPTED: "Accepted",
    E.REJECTED: "Rejected",
    E.CHECKED_IN: "Checked In",
    E.CHECKED_OUT: "Checked Out",
    E.COMPLETED: "Completed",
    E.CANCELLED: "Cancelled",
}


class InvalidTransitionError(BadRequestError):
    pass


@dataclass(frozen=True)
class TransitionCheck:
    can_transition: bool
    reason: Optional[str] = None


def _value(status) -> str:
    return status.value if isinstance(status, (BookingStatus, BookingEventType)) else str(status)


class BookingStateMachine:
    """Single source of truth for which booking mutations are legal."""

    def validate_transition(self, from_status: BookingStatus, to_status: BookingStatus) -> bool:
        return to_status in VALID_TRANSITIONS.get(from_status, ())

    def get_required_event_type(
        self, from_status: BookingStatus, to_status: BookingStatus
    ) -> BookingEventType:
        try:
            return TRANSITION_EVENTS[(from_status, to_status)]
        except KeyError:
            raise InvalidTransitionError(
                f"Invalid transition from {_value(from_status)} to {_value(to_status)}"
            ) from None

    def missing_required_events(
        self, status: BookingStatus, event_types_seen: Iterable[BookingEventType]
    ) -> list[BookingEventType]:
        seen = set(event_types_seen)
        return [e for e in REQUIRED_EVENTS.get(status, ()) if e not in seen]

    def validate_required_events(
        self, status: BookingStatus, event_types_seen: Iterable[BookingEventType]
    ) -> bool:
        return not self.missing_required_events(status, event_types_seen)

    def can_transition_to(
        self,
        from_status: BookingStatus,
        to_status: BookingStatus,
        event_types_seen: Iterable[BookingEventType],
    ) -> TransitionCheck:
        if not self.validate_transition(from_status, to_status):
            return TransitionCheck(
                False,
                f"Cannot transition from {_value(from_status)} to {_value(to_status)}",
            )

        missing = self.missing_required_events(from_status, event_types_seen)
        if missing:
            return TransitionCheck(
                False,
                "Missing required events for current status: "
                + ", ".join(e.value for e in missing),
            )

        return TransitionCheck(True)

    # ── Derived queries ───────────────────────────────────────

    def get_next_possible_statuses(self, status: BookingStatus) -> list[BookingStatus]:
        return list(VALID_TRANSITIONS.get(status, ()))

    def is_terminal_state(self, status: BookingStatus) -> bool:
        return not VALID_TRANSITIONS.get(status, ())

    def can_be_cancelled(self, status: BookingStatus) -> bool:
        # CANCELLED stays true so a repeated cancel is a no-op, not an error
        return status != BookingStatus.COMPLETED

    def requires_check_in_out(self, status: BookingStatus) -> bool:
        return status == BookingStatus.IN_PROGRESS

    def get_status_display_name(self, status: BookingStatus) -> str:
        return STATUS_DISPLAY_NAMES.get(status, _value(status))

    def get_event_display_name(self, event_type: BookingEventType) -> str:
        return EVENT_DISPLAY_NAMES.get(event_type, _value(event_type))
