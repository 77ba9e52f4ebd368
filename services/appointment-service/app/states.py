"""
Reservation lifecycle.

A reservation is stored with a single ``state`` column instead of two free
``status`` / ``paymentStatus`` strings, so combinations such as
confirmed + failed cannot be written at all. The public pair is derived.

Stored states::

    HELD            pending   / pending
    CONFIRMED       confirmed / completed
    PAYMENT_FAILED  pending   / failed

Two more states are reachable but never stored: an expired hold (a HELD row
older than the hold TTL, see ``holds.py``) and a cancelled reservation (the
row is deleted).
"""
import enum

from .errors import InvalidTransition


class AppointmentState(str, enum.Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    PAYMENT_FAILED = "payment_failed"

    @property
    def status(self) -> str:
        return "confirmed" if self is AppointmentState.CONFIRMED else "pending"

    @property
    def payment_status(self) -> str:
        return {
            AppointmentState.HELD: "pending",
            AppointmentState.CONFIRMED: "completed",
            AppointmentState.PAYMENT_FAILED: "failed",
        }[self]

    @property
    def blocks_slots(self) -> bool:
        # failed holds release their slots; HELD blocks only while live
        return self in (AppointmentState.HELD, AppointmentState.CONFIRMED)

    @classmethod
    def from_status(cls, status: str) -> list["AppointmentState"]:
        """States matching a public ``status`` filter value."""
        status = (status or "").strip().lower()
        matches = [s for s in cls if s.status == status]
        if not matches:
            raise ValueError(status)
        return matches


class Transition(str, enum.Enum):
    CONFIRM = "confirm"
    FAIL_PAYMENT = "fail_payment"
    CANCEL_HOLD = "cancel_hold"
    REAP = "reap"
    CANCEL = "cancel"


# None target == row deleted
TRANSITIONS: dict[tuple[AppointmentState, Transition], AppointmentState | None] = {
    (AppointmentState.HELD, Transition.CONFIRM): AppointmentState.CONFIRMED,
    (AppointmentState.HELD, Transition.FAIL_PAYMENT): AppointmentState.PAYMENT_FAILED,
    (AppointmentState.HELD, Transition.CANCEL_HOLD): None,
    (AppointmentState.HELD, Transition.REAP): None,
    (AppointmentState.CONFIRMED, Transition.CANCEL): None,
}


def next_state(current: AppointmentState, transition: Transition) -> AppointmentState | None:
    key = (AppointmentState(current), Transition(transition))
    if key not in TRANSITIONS:
        raise InvalidTransition(
            f"Cannot {key[1].value} an appointment in state {key[0].value}",
            state=key[0].value,
            transition=key[1].value,
        )
    return TRANSITIONS[key]


def can_transition(current: AppointmentState, transition: Transition) -> bool:
    return (AppointmentState(current), Transition(transition)) in TRANSITIONS
