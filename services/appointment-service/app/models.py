from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from shared.database import Base

from .states import AppointmentState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_state_type = Enum(
    AppointmentState,
    name="appointment_state",
    values_callable=lambda e: [m.value for m in e],
    native_enum=False,
    length=20,
)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("confirmed_day_key", name="uq_appointments_confirmed_day_key"),
    )

    id = Column(String(36), primary_key=True)

    user_id = Column(String, nullable=False, index=True)
    user_email = Column(String, nullable=False)
    user_name = Column(String, nullable=False)

    date = Column(Date, nullable=False, index=True)
    start_time = Column(String(5), nullable=False)  # HH:MM
    duration_minutes = Column(Integer, nullable=False, default=30)
    timezone = Column(String(64), nullable=False, default="UTC")
    booked_slots = Column(JSON, nullable=False)

    state = Column(_state_type, nullable=False, index=True)

    amount = Column(String(20), nullable=False)
    currency = Column(String(3), nullable=False)
    external_order_id = Column(String, nullable=True, index=True)
    external_payer_id = Column(String, nullable=True)
    external_transaction_id = Column(String, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    meeting_link = Column(String(512), nullable=True)
    meeting_event_id = Column(String(255), nullable=True)

    category_id = Column(String, nullable=True)
    category_name = Column(String, nullable=True)
    form_answers = Column(JSON, nullable=True)

    # "<user_id>:<date>" while confirmed, NULL otherwise
    confirmed_day_key = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def status(self) -> str:
        return AppointmentState(self.state).status

    @property
    def payment_status(self) -> str:
        return AppointmentState(self.state).payment_status


class AppointmentSlot(Base):
    """
    One claim per booked slot while the reservation blocks it.

    The unique constraint is the authoritative tie-break between concurrent
    bookings: at most one live hold and one confirmed claim per slot.
    """

    __tablename__ = "appointment_slots"
    __table_args__ = (
        UniqueConstraint("date", "slot_time", "state", name="uq_appointment_slots_claim"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    appointment_id = Column(
        String(36),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    date = Column(Date, nullable=False)
    slot_time = Column(String(5), nullable=False)
    state = Column(_state_type, nullable=False)
