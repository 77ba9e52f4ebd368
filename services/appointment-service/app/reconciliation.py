"""
Booking and payment reconciliation.

Capture is not idempotent at PayPal: a second capture of the same order is
rejected. Clients still retry after timeouts, and two tabs may capture at
once, so every path here converges on the same confirmed row instead of
relying on mutual exclusion:

* a row that is already confirmed is returned as-is;
* "already captured" from PayPal is treated as a successful capture;
* losing the confirm race re-reads and returns the winner's row.

Meeting links are provisioned after confirmation and never undo it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable

from . import events
from .errors import (
    InvalidTransition,
    MeetingLinkError,
    PaymentNotCompleted,
    PaymentProviderError,
    ValidationError,
)
from .holds import as_utc, today_in
from .models import Appointment, utcnow
from .paypal import OrderHandle
from .reservations import NewReservation, ReservationStore
from .slots import (
    ensure_bookable_time,
    ensure_not_past,
    parse_date,
    parse_time,
    resolve_booked_slots,
)
from .states import AppointmentState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingRequest:
    date: str
    time: str
    user_email: str
    user_name: str
    timezone: str | None = None
    duration: int | None = None
    price: str | None = None
    slots: list[str] | None = None


@dataclass(frozen=True)
class CaptureExtras:
    category_id: str | None = None
    category_name: str | None = None
    form_answers: dict | None = None


@dataclass(frozen=True)
class OpenedOrder:
    appointment: Appointment
    order: OrderHandle


def normalize_price(value, default: str) -> str:
    if value is None or value == "":
        return default
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("Price must be a decimal amount", "INVALID_PRICE")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Price must be a positive amount", "INVALID_PRICE")
    return str(amount.quantize(Decimal("0.01")))


class ReconciliationWorkflow:
    def __init__(
        self,
        store: ReservationStore,
        paypal,
        settings,
        provisioner=None,
        publisher=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.paypal = paypal
        self.settings = settings
        self.provisioner = provisioner
        self.publisher = publisher
        self.clock = clock

    def now(self) -> datetime:
        return as_utc(self.clock())

    # ---------- create-order ----------

    def _validate(self, req: BookingRequest, user_id: str, user_email: str, now: datetime) -> NewReservation:
        if not (req.date and req.time and req.user_email and req.user_name):
            raise ValidationError(
                "All fields are required: date, time, userEmail, userName", "MISSING_FIELDS"
            )

        day = parse_date(req.date)
        start = parse_time(req.time)
        ensure_bookable_time(start)
        ensure_not_past(day, today_in(self.settings.business_timezone, now))

        if req.user_email.strip().lower() != (user_email or "").strip().lower():
            raise ValidationError("Email must match authenticated user", "EMAIL_MISMATCH")

        duration, booked = resolve_booked_slots(start, req.duration, req.slots)
        return NewReservation(
            user_id=user_id,
            user_email=req.user_email.strip(),
            user_name=req.user_name.strip(),
            date=day,
            start_time=start,
            booked_slots=booked,
            duration_minutes=duration,
            timezone=req.timezone or self.settings.business_timezone,
            amount=normalize_price(req.price, self.settings.meeting_price),
            currency=self.settings.meeting_currency,
        )

    async def open_order(self, req: BookingRequest, user_id: str, user_email: str) -> OpenedOrder:
        self.paypal.ensure_configured()
        now = self.now()

        hold = self._validate(req, user_id, user_email, now)

        appt = await self.store.create(hold, now)

        base = self.settings.frontend_url.rstrip("/")
        description = (
            f"Meeting with {hold.user_name} on {hold.date.isoformat()} at {hold.start_time}"
            f" ({hold.duration_minutes} minutes)"
        )
        try:
            order = await self.paypal.create_order(
                reservation_id=appt.id,
                amount=hold.amount,
                currency=hold.currency,
                return_url=f"{base}/payment/success?appointmentId={appt.id}",
                cancel_url=f"{base}/payment/cancel?appointmentId={appt.id}",
                description=description,
            )
            await self.store.attach_order(appt.id, order.order_id)
        except Exception:
            # free the slot now instead of waiting for the sweeper
            logger.warning("Opening order for hold %s failed, releasing it", appt.id)
            await self.store.delete_if_pending(appt.id, user_id)
            raise

        appt.external_order_id = order.order_id
        return OpenedOrder(appointment=appt, order=order)

    # ---------- capture-order ----------

    async def capture_payment(
        self,
        order_id: str,
        reservation_id: str,
        user_id: str,
        extras: CaptureExtras | None = None,
    ) -> Appointment:
        if not order_id or not reservation_id:
            raise ValidationError(
                "Order ID and Appointment ID are required", "MISSING_FIELDS"
            )
        extras = extras or CaptureExtras()

        appt = await self.store.find_for_capture(reservation_id, user_id, order_id)
        if appt.state == AppointmentState.CONFIRMED:
            logger.info("Appointment %s already confirmed, returning it", appt.id)
            return appt
        if appt.state == AppointmentState.PAYMENT_FAILED:
            raise PaymentNotCompleted("FAILED")

        self.paypal.ensure_configured()
        try:
            result = await self.paypal.capture(order_id)
        except PaymentProviderError:
            # a concurrent capture may have confirmed the row before this one failed
            current = await self.store.get(appt.id)
            if current is not None and current.state == AppointmentState.CONFIRMED:
                logger.info("Capture of order %s failed but %s is already confirmed", order_id, appt.id)
                return current
            raise

        if result.already_captured:
            current = await self.store.get(appt.id)
            if current is not None and current.state == AppointmentState.CONFIRMED:
                return current
            if not result.completed:
                # the order was captured before; its state is not ours to fail
                logger.warning("Order %s already captured with status %s", order_id, result.status)
                raise PaymentNotCompleted(result.status)

        now = self.now()
        if not result.completed:
            logger.warning("Capture of order %s returned %s", order_id, result.status)
            try:
                await self.store.fail_payment(appt.id, now)
            except InvalidTransition:
                current = await self.store.get(appt.id)
                if current is not None and current.state == AppointmentState.CONFIRMED:
                    return current
                raise
            raise PaymentNotCompleted(result.status)

        try:
            confirmed = await self.store.confirm(
                appt.id,
                now,
                payer_id=result.payer_id,
                transaction_id=result.transaction_id,
                paid_at=result.captured_at,
                category_id=extras.category_id,
                category_name=extras.category_name,
                form_answers=extras.form_answers,
            )
        except InvalidTransition:
            current = await self.store.get(appt.id)
            if current is not None and current.state == AppointmentState.CONFIRMED:
                logger.info("Appointment %s confirmed by a concurrent capture", appt.id)
                return current
            raise

        logger.info(
            "Confirmed appointment %s (order %s, capture %s%s)",
            confirmed.id, order_id, result.transaction_id,
            ", already captured" if result.already_captured else "",
        )

        confirmed = await self._provision_meeting(confirmed)
        await events.publish(
            self.publisher, events.APPOINTMENT_CONFIRMED, events.appointment_payload(confirmed)
        )
        return confirmed

    async def _provision_meeting(self, appt: Appointment) -> Appointment:
        if self.provisioner is None:
            return appt
        try:
            artifact = await self.provisioner.provision(appt)
            await self.store.attach_meeting(appt.id, artifact, self.now())
        except Exception as exc:
            # the booking is paid; a link can be requested again later
            logger.warning("Meet link generation failed for %s: %s", appt.id, exc)
            return appt
        return await self.store.get(appt.id) or appt

    # ---------- meeting link ----------

    async def request_meeting_link(self, reservation_id: str, user_id: str) -> Appointment:
        appt = await self.store.get_owned(reservation_id, user_id)
        if appt.state != AppointmentState.CONFIRMED:
            raise ValidationError(
                "Appointment must be confirmed to generate Meet link", "APPOINTMENT_NOT_CONFIRMED"
            )
        if self.provisioner is None:
            raise MeetingLinkError("Meeting links are not available")

        artifact = await self.provisioner.regenerate(appt)
        await self.store.attach_meeting(appt.id, artifact, self.now(), replace=True)
        return await self.store.get(appt.id) or appt

    # ---------- cancellation ----------

    async def cancel_hold(self, reservation_id: str, user_id: str) -> None:
        if not reservation_id:
            raise ValidationError("Appointment ID is required", "MISSING_APPOINTMENT_ID")
        await self.store.delete_if_pending(reservation_id, user_id)

    async def cancel_confirmed(self, reservation_id: str, user_id: str) -> Appointment:
        appt = await self.store.cancel_confirmed(reservation_id, user_id, self.now())
        await events.publish(
            self.publisher, events.APPOINTMENT_CANCELLED, events.appointment_payload(appt)
        )
        return appt
