import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from jose import jwt
from sqlalchemy import event

from app.config import Settings
from app.errors import MeetingLinkError, PaymentProviderError
from app.paypal import CaptureResult, OrderHandle
from app.reservations import MeetingArtifact, NewReservation, ReservationStore
from shared.database import Base, get_engine, get_session

JWT_SECRET = "test-secret"
NOW = datetime(2024, 6, 10, 8, 0, tzinfo=timezone.utc)
TODAY = date(2024, 6, 10)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakePayPal:
    def __init__(self, capture_status: str = "COMPLETED"):
        self.capture_status = capture_status
        self.captured: set[str] = set()
        self.created: list[dict] = []
        self.capture_calls = 0
        self.fail_create = False

    def ensure_configured(self):
        return None

    async def create_order(self, reservation_id, amount, currency, return_url, cancel_url, description):
        if self.fail_create:
            raise PaymentProviderError("PayPal API error (500)", "PAYPAL_API_ERROR", http_status=500)
        order_id = f"ORD-{reservation_id[:8]}"
        self.created.append(
            {"reservation_id": reservation_id, "order_id": order_id, "amount": amount, "currency": currency}
        )
        return OrderHandle(order_id=order_id, approval_url=f"https://paypal.test/checkout/{order_id}")

    async def capture(self, order_id):
        self.capture_calls += 1
        # yield so concurrent captures interleave
        await asyncio.sleep(0)
        if self.capture_status != "COMPLETED":
            return CaptureResult(status=self.capture_status)
        already = order_id in self.captured
        self.captured.add(order_id)
        return CaptureResult(
            status="COMPLETED",
            payer_id="PAYER-1",
            transaction_id=f"CAP-{order_id}",
            captured_at=NOW,
            already_captured=already,
        )


class FakeProvisioner:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.provisioned: list[str] = []
        self.regenerated: list[str] = []

    async def provision(self, appt):
        if self.fail:
            raise MeetingLinkError("Google Calendar request timed out")
        self.provisioned.append(appt.id)
        return MeetingArtifact(link=f"https://meet.google.com/{appt.id[:8]}", event_id=f"evt-{appt.id}")

    async def regenerate(self, appt):
        if self.fail:
            raise MeetingLinkError("Google Calendar request timed out")
        self.regenerated.append(appt.id)
        n = len(self.regenerated)
        return MeetingArtifact(link=f"https://meet.google.com/new-{n}", event_id=f"evt-{appt.id}-{n}")


class FakePublisher:
    enabled = True

    def __init__(self):
        self.published: list[tuple[str, str]] = []

    async def connect(self):
        return None

    async def publish(self, routing_key, message_body):
        self.published.append((routing_key, message_body))

    async def close(self):
        return None

    def keys(self) -> list[str]:
        return [k for k, _ in self.published]


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, key, value):
        self.ops.append(("set", key, value))

    def delete(self, key):
        self.ops.append(("delete", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    async def execute(self):
        for op, key, *args in self.ops:
            if op == "set":
                await self.redis.set(key, *args)
            elif op == "delete":
                await self.redis.delete(key)
        self.ops = []


class FakeRedis:
    """Just enough of redis.asyncio for the breaker and rate limiter."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = str(value)

    async def delete(self, key):
        self.data.pop(key, None)

    async def incr(self, key):
        self.data[key] = str(int(self.data.get(key, 0)) + 1)
        return int(self.data[key])

    async def expire(self, key, seconds):
        return True

    def pipeline(self):
        return FakePipeline(self)


def make_hold(**overrides) -> NewReservation:
    values = {
        "user_id": "user-1",
        "user_email": "alice@example.com",
        "user_name": "Alice",
        "date": TODAY,
        "start_time": "10:00",
        "booked_slots": ["10:00"],
        "amount": "150.00",
        "currency": "USD",
        "duration_minutes": 30,
        "timezone": "UTC",
    }
    values.update(overrides)
    return NewReservation(**values)


def make_token(user_id="user-1", email="alice@example.com", roles=("user",)) -> str:
    return jwt.encode(
        {"sub": user_id, "email": email, "roles": list(roles)}, JWT_SECRET, algorithm="HS256"
    )


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url="",
        rabbit_url=None,
        jwt_secret=JWT_SECRET,
        service_token="svc-token",
        paypal_client_id="client-id",
        paypal_client_secret="client-secret",
        paypal_environment="sandbox",
        business_timezone="UTC",
        rate_limit_per_minute=0,
        log_level="WARNING",
    )


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'appointments.db'}")

    # let SQLAlchemy drive transactions and take the write lock up front,
    # so concurrent sessions serialize the way row locks would
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session(engine)


@pytest.fixture
def store(session_factory):
    return ReservationStore(session_factory, business_timezone="UTC")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def paypal():
    return FakePayPal()


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def publisher():
    return FakePublisher()
