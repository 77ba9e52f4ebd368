import time
from datetime import date

import httplib2
import pytest
from googleapiclient.errors import HttpError

from app.breaker import CircuitBreaker
from app.calendar import GoogleMeetProvisioner
from app.errors import ConfigError, MeetingLinkError
from app.models import Appointment
from conftest import FakeRedis


class FakeRequest:
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay

    def execute(self):
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class FakeEvents:
    def __init__(self, insert_result=None, patch_result=None, patch_error=None, delay=0.0):
        self.insert_result = insert_result
        self.patch_result = patch_result
        self.patch_error = patch_error
        self.delay = delay
        self.inserted = []
        self.patched = []

    def insert(self, calendarId, body, conferenceDataVersion):
        self.inserted.append({"calendarId": calendarId, "body": body})
        return FakeRequest(self.insert_result, delay=self.delay)

    def patch(self, calendarId, eventId, body, conferenceDataVersion):
        self.patched.append({"eventId": eventId, "body": body})
        return FakeRequest(self.patch_result, error=self.patch_error)


class FakeService:
    def __init__(self, events):
        self._events = events

    def events(self):
        return self._events


def appointment(**overrides) -> Appointment:
    values = dict(
        id="appt-1",
        user_id="user-1",
        user_email="alice@example.com",
        user_name="Alice",
        date=date(2024, 6, 10),
        start_time="10:00",
        duration_minutes=60,
        timezone="Europe/Berlin",
        booked_slots=["10:00", "10:30"],
    )
    values.update(overrides)
    return Appointment(**values)


def provisioner_for(events, settings, breaker=None):
    return GoogleMeetProvisioner(settings, breaker=breaker, service_factory=lambda: FakeService(events))


def http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b'{"error": {"message": "gone"}}')


@pytest.mark.asyncio
async def test_provision_creates_event_with_meet_request(settings):
    events = FakeEvents(insert_result={"id": "evt-1", "hangoutLink": "https://meet.google.com/abc-defg-hij"})
    provisioner = provisioner_for(events, settings)

    artifact = await provisioner.provision(appointment())

    assert artifact.link == "https://meet.google.com/abc-defg-hij"
    assert artifact.event_id == "evt-1"
    body = events.inserted[0]["body"]
    assert body["conferenceData"]["createRequest"]["requestId"] == "meet-appt-1"
    assert body["start"]["dateTime"] == "2024-06-10T10:00:00+00:00"
    assert body["end"]["dateTime"] == "2024-06-10T11:00:00+00:00"
    assert body["start"]["timeZone"] == "Europe/Berlin"


@pytest.mark.asyncio
async def test_provision_reads_video_entry_point(settings):
    events = FakeEvents(
        insert_result={
            "id": "evt-1",
            "conferenceData": {
                "entryPoints": [
                    {"entryPointType": "phone", "uri": "tel:+1-555"},
                    {"entryPointType": "video", "uri": "https://meet.google.com/xyz"},
                ]
            },
        }
    )
    artifact = await provisioner_for(events, settings).provision(appointment())
    assert artifact.link == "https://meet.google.com/xyz"


@pytest.mark.asyncio
async def test_event_without_meet_link_is_an_error(settings):
    events = FakeEvents(insert_result={"id": "evt-1", "htmlLink": "https://calendar.google.com/x"})
    with pytest.raises(MeetingLinkError):
        await provisioner_for(events, settings).provision(appointment())


@pytest.mark.asyncio
async def test_slow_google_call_times_out(settings):
    fast = settings.model_copy(update={"google_timeout_seconds": 0.05})
    events = FakeEvents(insert_result={"id": "evt-1", "hangoutLink": "https://meet.google.com/a"}, delay=0.3)

    with pytest.raises(MeetingLinkError) as exc:
        await provisioner_for(events, fast).provision(appointment())
    assert "timed out" in exc.value.message


@pytest.mark.asyncio
async def test_regenerate_patches_existing_event(settings):
    events = FakeEvents(patch_result={"id": "evt-1", "hangoutLink": "https://meet.google.com/new"})

    artifact = await provisioner_for(events, settings).regenerate(appointment(meeting_event_id="evt-1"))

    assert artifact.link == "https://meet.google.com/new"
    assert events.patched[0]["eventId"] == "evt-1"
    request_id = events.patched[0]["body"]["conferenceData"]["createRequest"]["requestId"]
    assert request_id.startswith("meet-appt-1-")
    assert events.inserted == []


@pytest.mark.asyncio
async def test_regenerate_recreates_deleted_event(settings):
    events = FakeEvents(
        insert_result={"id": "evt-2", "hangoutLink": "https://meet.google.com/fresh"},
        patch_error=http_error(404),
    )

    artifact = await provisioner_for(events, settings).regenerate(appointment(meeting_event_id="evt-1"))

    assert artifact.event_id == "evt-2"
    assert len(events.inserted) == 1


@pytest.mark.asyncio
async def test_regenerate_surfaces_other_google_errors(settings):
    events = FakeEvents(patch_error=http_error(403))
    with pytest.raises(MeetingLinkError):
        await provisioner_for(events, settings).regenerate(appointment(meeting_event_id="evt-1"))


@pytest.mark.asyncio
async def test_open_breaker_fails_fast(settings):
    breaker = CircuitBreaker(FakeRedis(), "google-calendar", failure_threshold=1)
    await breaker.open()
    events = FakeEvents(insert_result={"id": "evt-1", "hangoutLink": "https://meet.google.com/a"})

    with pytest.raises(MeetingLinkError) as exc:
        await provisioner_for(events, settings, breaker=breaker).provision(appointment())
    assert exc.value.code == "MEET_PROVIDER_UNAVAILABLE"
    assert events.inserted == []


@pytest.mark.asyncio
async def test_unconfigured_provisioner(settings):
    provisioner = GoogleMeetProvisioner(settings)
    with pytest.raises(ConfigError) as exc:
        await provisioner.provision(appointment())
    assert exc.value.code == "MEET_PROVIDER_NOT_CONFIGURED"
