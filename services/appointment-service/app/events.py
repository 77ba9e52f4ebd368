from shared.events import build_event, to_json

from .models import Appointment

SOURCE = "appointment-service"

APPOINTMENT_CONFIRMED = "appointment.confirmed"
APPOINTMENT_CANCELLED = "appointment.cancelled"
HOLD_EXPIRED = "appointment.hold_expired"


def appointment_payload(appt: Appointment) -> dict:
    return {
        "appointment_id": appt.id,
        "user_id": appt.user_id,
        "user_email": appt.user_email,
        "user_name": appt.user_name,
        "date": appt.date.isoformat(),
        "time": appt.start_time,
        "duration_minutes": appt.duration_minutes,
        "timezone": appt.timezone,
        "booked_slots": list(appt.booked_slots or []),
        "amount": appt.amount,
        "currency": appt.currency,
        "meeting_link": appt.meeting_link,
        "category_name": appt.category_name,
    }


async def publish(publisher, event_type: str, data: dict) -> None:
    if publisher is None:
        return
    await publisher.publish(event_type, to_json(build_event(event_type, data, source=SOURCE)))
