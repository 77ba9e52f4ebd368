from fastapi import APIRouter, Depends, Query, Request

from . import events
from .errors import ValidationError
from .expiry_worker import reap
from .holds import today_in
from .rbac import role_required
from .reconciliation import BookingRequest, CaptureExtras, ReconciliationWorkflow
from .reservations import ReservationStore
from .schemas import (
    AppointmentOut,
    AppointmentPage,
    AppointmentSummary,
    AvailabilityResponse,
    CancelOrderRequest,
    CaptureOrderRequest,
    CaptureOrderResponse,
    CleanupResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    MeetLinkResponse,
    MessageResponse,
    Pagination,
    StatusResponse,
)
from .security import Principal, get_current_user, require_service_token
from .slots import compute_availability, parse_date
from .states import AppointmentState

paypal_router = APIRouter(prefix="/api/paypal", tags=["paypal"])
appointments_router = APIRouter(prefix="/api/appointments", tags=["appointments"])


def get_store(request: Request) -> ReservationStore:
    return request.app.state.store


def get_workflow(request: Request) -> ReconciliationWorkflow:
    return request.app.state.workflow


def _states_filter(status: str | None) -> list[AppointmentState] | None:
    if not status:
        return None
    try:
        return AppointmentState.from_status(status)
    except ValueError:
        raise ValidationError("Status must be pending or confirmed", "INVALID_STATUS")


def _page(result) -> AppointmentPage:
    return AppointmentPage(
        appointments=[AppointmentOut.from_appointment(a) for a in result.items],
        pagination=Pagination(
            page=result.page, limit=result.limit, total=result.total, pages=result.pages
        ),
    )


# ---------- /api/paypal ----------

@paypal_router.post("/create-order", response_model=CreateOrderResponse, status_code=201)
async def create_order(
    data: CreateOrderRequest,
    user: Principal = Depends(get_current_user),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    opened = await workflow.open_order(
        BookingRequest(
            date=data.date,
            time=data.time,
            user_email=data.user_email,
            user_name=data.user_name,
            timezone=data.timezone,
            duration=data.duration,
            price=None if data.price is None else str(data.price),
            slots=data.slots,
        ),
        user_id=user.user_id,
        user_email=user.email,
    )
    return CreateOrderResponse(
        order_id=opened.order.order_id,
        approval_url=opened.order.approval_url,
        appointment_id=opened.appointment.id,
        amount=opened.appointment.amount,
        currency=opened.appointment.currency,
    )


@paypal_router.post("/capture-order", response_model=CaptureOrderResponse)
async def capture_order(
    data: CaptureOrderRequest,
    user: Principal = Depends(get_current_user),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    appt = await workflow.capture_payment(
        data.order_id,
        data.appointment_id,
        user.user_id,
        CaptureExtras(
            category_id=data.category_id,
            category_name=data.category_name,
            form_answers=data.form_answers,
        ),
    )
    return CaptureOrderResponse(
        message="Payment captured successfully",
        appointment=AppointmentSummary.from_appointment(appt),
    )


@paypal_router.post("/cancel-order", response_model=MessageResponse)
async def cancel_order(
    data: CancelOrderRequest,
    user: Principal = Depends(get_current_user),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    await workflow.cancel_hold(data.appointment_id, user.user_id)
    return MessageResponse(message="Appointment cancelled successfully")


@paypal_router.post(
    "/cleanup-pending",
    response_model=CleanupResponse,
    dependencies=[Depends(require_service_token)],
)
async def cleanup_pending(request: Request, workflow: ReconciliationWorkflow = Depends(get_workflow)):
    deleted = await reap(workflow.store, workflow.now())
    if deleted:
        await events.publish(
            request.app.state.publisher, events.HOLD_EXPIRED, {"deleted_count": deleted}
        )
    return CleanupResponse(deleted_count=deleted)


@paypal_router.get("/status/{appointment_id}", response_model=StatusResponse)
async def payment_status(
    appointment_id: str,
    user: Principal = Depends(get_current_user),
    store: ReservationStore = Depends(get_store),
):
    appt = await store.get_owned(appointment_id, user.user_id)
    return StatusResponse(
        appointment_id=appt.id,
        status=appt.status,
        payment_status=appt.payment_status,
        date=appt.date,
        time=appt.start_time,
    )


# ---------- /api/appointments ----------

@appointments_router.get("/availability", response_model=AvailabilityResponse)
async def availability(
    request: Request,
    date: str | None = Query(default=None),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    day = parse_date(date)
    now = workflow.now()
    today = today_in(request.app.state.settings.business_timezone, now)

    snapshot = await workflow.store.list_for_date(day)
    slots = compute_availability(day, today, snapshot, now)
    return AvailabilityResponse(
        slots=slots,
        date=day.isoformat(),
        total_slots=len(slots),
        available_count=sum(1 for s in slots if s["available"]),
    )


@appointments_router.get("/my-appointments", response_model=AppointmentPage)
async def my_appointments(
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    user: Principal = Depends(get_current_user),
    store: ReservationStore = Depends(get_store),
):
    result = await store.list_for_user(user.user_id, _states_filter(status), page, limit)
    return _page(result)


@appointments_router.get("/admin/all", response_model=AppointmentPage)
async def all_appointments(
    date: str | None = Query(default=None),
    status: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    _: Principal = Depends(role_required("admin")),
    store: ReservationStore = Depends(get_store),
):
    day = parse_date(date) if date else None
    result = await store.list_all(day, _states_filter(status), page, limit)
    return _page(result)


@appointments_router.delete("/{appointment_id}", response_model=MessageResponse)
async def cancel_appointment(
    appointment_id: str,
    user: Principal = Depends(get_current_user),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    appt = await workflow.store.get_owned(appointment_id, user.user_id)
    if appt.state == AppointmentState.HELD:
        await workflow.cancel_hold(appointment_id, user.user_id)
    else:
        await workflow.cancel_confirmed(appointment_id, user.user_id)
    return MessageResponse(message="Appointment cancelled successfully")


@appointments_router.post("/{appointment_id}/request-meet-link", response_model=MeetLinkResponse)
async def request_meet_link(
    appointment_id: str,
    user: Principal = Depends(get_current_user),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    appt = await workflow.request_meeting_link(appointment_id, user.user_id)
    return MeetLinkResponse(appointment=AppointmentSummary.from_appointment(appt))
