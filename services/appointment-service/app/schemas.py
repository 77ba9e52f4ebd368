from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .models import Appointment


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- requests ----------

class CreateOrderRequest(CamelModel):
    # optional so missing fields surface as MISSING_FIELDS, not a 422
    date: str | None = None
    time: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    timezone: str | None = None
    duration: int | None = None
    price: str | float | None = None
    slots: list[str] | None = None


class CaptureOrderRequest(CamelModel):
    order_id: str | None = None
    appointment_id: str | None = None
    category_id: str | None = None
    category_name: str | None = None
    form_answers: dict[str, Any] | None = None


class CancelOrderRequest(CamelModel):
    appointment_id: str | None = None


# ---------- responses ----------

class CreateOrderResponse(CamelModel):
    success: bool = True
    message: str = "PayPal order created successfully"
    order_id: str
    approval_url: str
    appointment_id: str
    amount: str
    currency: str


class AppointmentSummary(CamelModel):
    id: str
    date: date
    time: str
    status: str
    payment_status: str
    meeting_link: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_appointment(cls, appt: Appointment) -> "AppointmentSummary":
        return cls(
            id=appt.id,
            date=appt.date,
            time=appt.start_time,
            status=appt.status,
            payment_status=appt.payment_status,
            meeting_link=appt.meeting_link,
            created_at=appt.created_at,
        )


class CaptureOrderResponse(CamelModel):
    success: bool = True
    message: str
    appointment: AppointmentSummary


class MessageResponse(CamelModel):
    success: bool = True
    message: str


class StatusResponse(CamelModel):
    appointment_id: str
    status: str
    payment_status: str
    date: date
    time: str


class CleanupResponse(CamelModel):
    success: bool = True
    deleted_count: int


class SlotOut(CamelModel):
    time: str
    available: bool


class AvailabilityResponse(CamelModel):
    slots: list[SlotOut]
    date: str
    total_slots: int
    available_count: int


class AppointmentOut(CamelModel):
    id: str
    user_id: str
    user_email: str
    user_name: str
    date: date
    time: str
    duration: int
    timezone: str
    booked_slots: list[str]
    status: str
    payment_status: str
    amount: str
    currency: str
    meeting_link: str | None = None
    category_id: str | None = None
    category_name: str | None = None
    form_answers: dict[str, Any] | None = None
    created_at: datetime | None = None

    @classmethod
    def from_appointment(cls, appt: Appointment) -> "AppointmentOut":
        return cls(
            id=appt.id,
            user_id=appt.user_id,
            user_email=appt.user_email,
            user_name=appt.user_name,
            date=appt.date,
            time=appt.start_time,
            duration=appt.duration_minutes,
            timezone=appt.timezone,
            booked_slots=list(appt.booked_slots or []),
            status=appt.status,
            payment_status=appt.payment_status,
            amount=appt.amount,
            currency=appt.currency,
            meeting_link=appt.meeting_link,
            category_id=appt.category_id,
            category_name=appt.category_name,
            form_answers=appt.form_answers,
            created_at=appt.created_at,
        )


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class AppointmentPage(CamelModel):
    appointments: list[AppointmentOut]
    pagination: Pagination


class MeetLinkResponse(CamelModel):
    success: bool = True
    message: str = "Google Meet link generated successfully"
    appointment: AppointmentSummary
