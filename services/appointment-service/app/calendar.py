"""
Google Meet provisioning through the Calendar v3 API.

The Google client is blocking, so every call runs in a worker thread under
a timeout. A single attempt is made; the caller decides whether a failure
matters.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Callable

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import Settings
from .errors import ConfigError, MeetingLinkError
from .holds import appointment_start
from .models import Appointment
from .reservations import MeetingArtifact

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


def _meet_link(event: dict) -> str | None:
    if event.get("hangoutLink"):
        return event["hangoutLink"]
    conf = event.get("conferenceData") or {}
    for ep in conf.get("entryPoints") or []:
        if ep.get("entryPointType") == "video" and ep.get("uri"):
            return ep["uri"]
    return None


class GoogleMeetProvisioner:
    def __init__(
        self,
        settings: Settings,
        breaker: CircuitBreaker | None = None,
        service_factory: Callable | None = None,
    ):
        self.settings = settings
        self.breaker = breaker
        self._service_factory = service_factory or self._build_service
        self._service = None

    def _build_service(self):
        if not self.settings.google_configured:
            raise ConfigError(
                "Google Calendar is not configured", "MEET_PROVIDER_NOT_CONFIGURED"
            )
        creds = service_account.Credentials.from_service_account_file(
            self.settings.google_service_account_key_path, scopes=SCOPES
        )
        if self.settings.google_workspace_user_email:
            # domain-wide delegation, required for Meet on Workspace calendars
            creds = creds.with_subject(self.settings.google_workspace_user_email)
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    def _events(self):
        if self._service is None:
            self._service = self._service_factory()
        return self._service.events()

    def _event_body(self, appt: Appointment, request_id: str) -> dict:
        start = appointment_start(appt.date, appt.start_time, self.settings.business_timezone)
        end = start + timedelta(minutes=appt.duration_minutes or 30)
        return {
            "summary": f"Meeting with {appt.user_name}",
            "description": (
                f"Scheduled meeting with {appt.user_name} ({appt.user_email})\n"
                f"Duration: {appt.duration_minutes} minutes"
            ),
            "start": {"dateTime": start.isoformat(), "timeZone": appt.timezone or "UTC"},
            "end": {"dateTime": end.isoformat(), "timeZone": appt.timezone or "UTC"},
            "conferenceData": {
                "createRequest": {
                    "requestId": request_id,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }

    async def _call(self, fn: Callable[[], dict]) -> dict:
        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as exc:
                raise MeetingLinkError(
                    "Meeting link provider temporarily unavailable", "MEET_PROVIDER_UNAVAILABLE"
                ) from exc

        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn), timeout=self.settings.google_timeout_seconds
            )
        except ConfigError:
            raise
        except asyncio.TimeoutError as exc:
            if self.breaker:
                await self.breaker.record_failure()
            raise MeetingLinkError("Google Calendar request timed out") from exc
        except Exception:
            if self.breaker:
                await self.breaker.record_failure()
            raise

        if self.breaker:
            await self.breaker.record_success()
        return result

    def _artifact(self, event: dict) -> MeetingArtifact:
        link = _meet_link(event)
        if not link or not event.get("id"):
            raise MeetingLinkError(
                "Google Meet link not generated. Ensure Meet is enabled on the calendar"
            )
        return MeetingArtifact(link=link, event_id=event["id"])

    async def _insert(self, appt: Appointment, request_id: str) -> MeetingArtifact:
        body = self._event_body(appt, request_id)

        def insert():
            return (
                self._events()
                .insert(
                    calendarId=self.settings.google_calendar_id,
                    body=body,
                    conferenceDataVersion=1,
                )
                .execute()
            )

        try:
            event = await self._call(insert)
        except HttpError as exc:
            raise MeetingLinkError(f"Google Calendar rejected the event: {exc.reason}") from exc
        artifact = self._artifact(event)
        logger.info("Created Meet event %s for appointment %s", artifact.event_id, appt.id)
        return artifact

    async def provision(self, appt: Appointment) -> MeetingArtifact:
        # stable request id: a repeated provision asks for the same conference
        return await self._insert(appt, f"meet-{appt.id}")

    async def regenerate(self, appt: Appointment) -> MeetingArtifact:
        request_id = f"meet-{appt.id}-{uuid.uuid4().hex[:8]}"
        if not appt.meeting_event_id:
            return await self._insert(appt, request_id)

        body = {
            "conferenceData": {
                "createRequest": {
                    "requestId": request_id,
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            }
        }

        def patch():
            return (
                self._events()
                .patch(
                    calendarId=self.settings.google_calendar_id,
                    eventId=appt.meeting_event_id,
                    body=body,
                    conferenceDataVersion=1,
                )
                .execute()
            )

        try:
            event = await self._call(patch)
        except HttpError as exc:
            if exc.resp is not None and exc.resp.status in (404, 410):
                logger.info(
                    "Meet event %s is gone, creating a new one for %s",
                    appt.meeting_event_id, appt.id,
                )
                return await self._insert(appt, request_id)
            raise MeetingLinkError(f"Google Calendar rejected the update: {exc.reason}") from exc
        return self._artifact(event)
