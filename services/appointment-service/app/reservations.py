import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import CancellationTooLate, Conflict, InvalidTransition, NotFound
from .holds import (
    appointment_start,
    as_utc,
    cancellation_allowed,
    hold_cutoff,
    hours_until,
)
from .models import Appointment, AppointmentSlot
from .slots import blocked_slots
from .states import AppointmentState, Transition, next_state

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


@dataclass(frozen=True)
class NewReservation:
    user_id: str
    user_email: str
    user_name: str
    date: date
    start_time: str
    booked_slots: list[str]
    amount: str
    currency: str
    duration_minutes: int = 30
    timezone: str = "UTC"


@dataclass(frozen=True)
class MeetingArtifact:
    link: str
    event_id: str


@dataclass
class Page:
    items: list = field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _slot_conflict(slot: str | None = None) -> Conflict:
    if slot:
        return Conflict(f"Time slot {slot} is not available", "SLOT_UNAVAILABLE", conflictingSlot=slot)
    return Conflict("Time slot was just booked by another user", "SLOT_UNAVAILABLE")


def _duplicate_day() -> Conflict:
    return Conflict(
        "You already have a confirmed appointment on this date", "DUPLICATE_DATE_BOOKING"
    )


class ReservationStore:
    """
    Persistence for reservations and their slot claims.

    Pre-checks give friendly errors; the unique constraints on
    ``appointment_slots`` and ``appointments.confirmed_day_key`` are what
    actually decide races, and their violations are reported as the same
    Conflict the pre-check would have raised. Every state change is a
    conditional write guarded by the expected current state.
    """

    def __init__(self, session_factory: async_sessionmaker, business_timezone: str = "UTC"):
        self._sessions = session_factory
        self.business_timezone = business_timezone

    # ---------- reads ----------

    async def get(self, appointment_id: str) -> Appointment | None:
        async with self._sessions() as db:
            return await db.get(Appointment, appointment_id)

    async def get_owned(self, appointment_id: str, user_id: str) -> Appointment:
        async with self._sessions() as db:
            res = await db.execute(
                select(Appointment).where(
                    Appointment.id == appointment_id,
                    Appointment.user_id == user_id,
                )
            )
            appt = res.scalar_one_or_none()
        if not appt:
            raise NotFound("Appointment not found")
        return appt

    async def find_for_capture(self, appointment_id: str, user_id: str, order_id: str) -> Appointment:
        async with self._sessions() as db:
            res = await db.execute(
                select(Appointment).where(
                    Appointment.id == appointment_id,
                    Appointment.user_id == user_id,
                    Appointment.external_order_id == order_id,
                )
            )
            appt = res.scalar_one_or_none()
        if not appt:
            raise NotFound("Appointment not found or order ID mismatch")
        return appt

    async def list_for_date(self, day: date) -> list[Appointment]:
        async with self._sessions() as db:
            res = await db.execute(select(Appointment).where(Appointment.date == day))
            return list(res.scalars().all())

    async def list_for_user(
        self,
        user_id: str,
        states: list[AppointmentState] | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> Page:
        conditions = [Appointment.user_id == user_id]
        if states:
            conditions.append(Appointment.state.in_(states))
        order = (Appointment.date.desc(), Appointment.start_time.desc())
        return await self._page(conditions, order, page, limit)

    async def list_all(
        self,
        day: date | None = None,
        states: list[AppointmentState] | None = None,
        page: int = 1,
        limit: int = 100,
    ) -> Page:
        conditions = []
        if day:
            conditions.append(Appointment.date == day)
        if states:
            conditions.append(Appointment.state.in_(states))
        order = (Appointment.date.asc(), Appointment.start_time.asc())
        return await self._page(conditions, order, page, limit)

    async def _page(self, conditions, order, page: int, limit: int) -> Page:
        async with self._sessions() as db:
            total = await db.scalar(
                select(func.count()).select_from(Appointment).where(*conditions)
            )
            res = await db.execute(
                select(Appointment)
                .where(*conditions)
                .order_by(*order)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return Page(items=list(res.scalars().all()), page=page, limit=limit, total=total or 0)

    # ---------- create ----------

    async def create(self, hold: NewReservation, now: datetime) -> Appointment:
        now = as_utc(now)
        async with self._sessions() as db:
            try:
                await self._reap_stale_holds_on(db, hold.date, now)

                res = await db.execute(
                    select(Appointment).where(
                        Appointment.date == hold.date,
                        Appointment.state.in_([AppointmentState.HELD, AppointmentState.CONFIRMED]),
                    )
                )
                rows = list(res.scalars().all())

                blocked = blocked_slots(rows, now)
                for slot in hold.booked_slots:
                    if slot in blocked:
                        raise _slot_conflict(slot)

                if any(
                    r.user_id == hold.user_id and r.state == AppointmentState.CONFIRMED
                    for r in rows
                ):
                    raise _duplicate_day()

                appt = Appointment(
                    id=str(uuid.uuid4()),
                    user_id=hold.user_id,
                    user_email=hold.user_email,
                    user_name=hold.user_name,
                    date=hold.date,
                    start_time=hold.start_time,
                    duration_minutes=hold.duration_minutes,
                    timezone=hold.timezone,
                    booked_slots=list(hold.booked_slots),
                    state=AppointmentState.HELD,
                    amount=hold.amount,
                    currency=hold.currency,
                    created_at=now,
                    updated_at=now,
                )
                db.add(appt)
                await db.flush()
                db.add_all(
                    [
                        AppointmentSlot(
                            appointment_id=appt.id,
                            date=hold.date,
                            slot_time=slot,
                            state=AppointmentState.HELD,
                        )
                        for slot in hold.booked_slots
                    ]
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise _slot_conflict()

        logger.info(
            "Created hold %s for %s on %s slots=%s",
            appt.id, hold.user_email, hold.date.isoformat(), ",".join(hold.booked_slots),
        )
        return appt

    async def _reap_stale_holds_on(self, db: AsyncSession, day: date, now: datetime) -> None:
        # expired holds on this day would otherwise still own their claims
        ids = await self._delete_where(
            db,
            Appointment.date == day,
            Appointment.state == AppointmentState.HELD,
            Appointment.created_at <= hold_cutoff(now),
        )
        if ids:
            logger.info("Reaped %d expired hold(s) on %s before booking", len(ids), day.isoformat())

    async def _delete_where(self, db: AsyncSession, *conditions) -> list[str]:
        res = await db.execute(
            delete(Appointment)
            .where(*conditions)
            .returning(Appointment.id)
            .execution_options(**_NO_SYNC)
        )
        ids = list(res.scalars().all())
        if ids:
            await db.execute(
                delete(AppointmentSlot)
                .where(AppointmentSlot.appointment_id.in_(ids))
                .execution_options(**_NO_SYNC)
            )
        return ids

    # ---------- transitions ----------

    async def attach_order(self, appointment_id: str, order_id: str) -> None:
        async with self._sessions() as db:
            res = await db.execute(
                update(Appointment)
                .where(
                    Appointment.id == appointment_id,
                    Appointment.state == AppointmentState.HELD,
                )
                .values(external_order_id=order_id)
                .execution_options(**_NO_SYNC)
            )
            if res.rowcount != 1:
                raise NotFound("Pending appointment not found")
            await db.commit()

    async def update_status(
        self,
        appointment_id: str,
        transition: Transition,
        now: datetime,
        **fields,
    ) -> Appointment | None:
        """
        Apply ``transition`` to the reservation.

        Returns the updated row, or None when the transition deletes it.
        Raises InvalidTransition when the state machine forbids the move or
        a concurrent writer changed the state first.
        """
        transition = Transition(transition)
        now = as_utc(now)
        async with self._sessions() as db:
            appt = await db.get(Appointment, appointment_id)
            if appt is None:
                raise NotFound("Appointment not found")
            current = AppointmentState(appt.state)
            target = next_state(current, transition)

            if target is None:
                ids = await self._delete_where(
                    db, Appointment.id == appointment_id, Appointment.state == current
                )
                if not ids:
                    raise InvalidTransition("Appointment changed concurrently", "STATE_CHANGED")
                await db.commit()
                return None

            values = {"state": target, "updated_at": now, **fields}
            if target is AppointmentState.CONFIRMED:
                values["confirmed_day_key"] = f"{appt.user_id}:{appt.date.isoformat()}"

            try:
                res = await db.execute(
                    update(Appointment)
                    .where(Appointment.id == appointment_id, Appointment.state == current)
                    .values(**values)
                    .execution_options(**_NO_SYNC)
                )
                if res.rowcount != 1:
                    raise InvalidTransition("Appointment changed concurrently", "STATE_CHANGED")

                claims = (
                    update(AppointmentSlot).values(state=target)
                    if target.blocks_slots
                    else delete(AppointmentSlot)
                )
                await db.execute(
                    claims.where(AppointmentSlot.appointment_id == appointment_id)
                    .execution_options(**_NO_SYNC)
                )
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                if "confirmed_day_key" in str(exc.orig):
                    raise _duplicate_day()
                raise _slot_conflict()

        return await self.get(appointment_id)

    async def confirm(
        self,
        appointment_id: str,
        now: datetime,
        payer_id: str | None,
        transaction_id: str | None,
        paid_at: datetime | None = None,
        category_id: str | None = None,
        category_name: str | None = None,
        form_answers: dict | None = None,
    ) -> Appointment:
        fields = {
            "external_payer_id": payer_id or "",
            "external_transaction_id": transaction_id or "",
            "paid_at": as_utc(paid_at or now),
        }
        if category_id:
            fields["category_id"] = str(category_id)
        if category_name:
            fields["category_name"] = category_name.upper().strip()
        if isinstance(form_answers, dict):
            fields["form_answers"] = form_answers
        return await self.update_status(appointment_id, Transition.CONFIRM, now, **fields)

    async def fail_payment(self, appointment_id: str, now: datetime) -> Appointment:
        return await self.update_status(appointment_id, Transition.FAIL_PAYMENT, now)

    # ---------- deletes ----------

    async def delete_if_pending(self, appointment_id: str, user_id: str) -> None:
        async with self._sessions() as db:
            ids = await self._delete_where(
                db,
                Appointment.id == appointment_id,
                Appointment.user_id == user_id,
                Appointment.state == AppointmentState.HELD,
            )
            if not ids:
                raise NotFound("Pending appointment not found")
            await db.commit()
        logger.info("Cancelled pending appointment %s", appointment_id)

    async def cancel_confirmed(self, appointment_id: str, user_id: str, now: datetime) -> Appointment:
        appt = await self.get_owned(appointment_id, user_id)
        next_state(appt.state, Transition.CANCEL)

        start = appointment_start(appt.date, appt.start_time, self.business_timezone)
        if not cancellation_allowed(start, now):
            raise CancellationTooLate(hours_until(start, now))

        async with self._sessions() as db:
            ids = await self._delete_where(
                db,
                Appointment.id == appointment_id,
                Appointment.user_id == user_id,
                Appointment.state == AppointmentState.CONFIRMED,
            )
            if not ids:
                raise NotFound("Appointment not found")
            await db.commit()
        logger.info(
            "Cancelled confirmed appointment %s on %s at %s",
            appointment_id, appt.date.isoformat(), appt.start_time,
        )
        return appt

    async def delete_expired_pending(self, before: datetime) -> int:
        async with self._sessions() as db:
            ids = await self._delete_where(
                db,
                Appointment.state == AppointmentState.HELD,
                Appointment.created_at < as_utc(before),
            )
            await db.commit()
        return len(ids)

    # ---------- meeting artifact ----------

    async def attach_meeting(
        self,
        appointment_id: str,
        artifact: MeetingArtifact,
        now: datetime,
        replace: bool = False,
    ) -> bool:
        """
        Store link and event id together. The first write only lands while
        no event id is set; ``replace`` overwrites both.
        """
        conditions = [
            Appointment.id == appointment_id,
            Appointment.state == AppointmentState.CONFIRMED,
        ]
        if not replace:
            conditions.append(Appointment.meeting_event_id.is_(None))

        async with self._sessions() as db:
            res = await db.execute(
                update(Appointment)
                .where(*conditions)
                .values(
                    meeting_link=artifact.link,
                    meeting_event_id=artifact.event_id,
                    updated_at=as_utc(now),
                )
                .execution_options(**_NO_SYNC)
            )
            await db.commit()
            return res.rowcount == 1
