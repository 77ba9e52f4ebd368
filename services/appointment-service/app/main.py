import asyncio
import logging

from fastapi import FastAPI
from shared.database import get_engine, get_session
from shared.rabbitmq import RabbitPublisher

from .breaker import CircuitBreaker
from .calendar import GoogleMeetProvisioner
from .config import Settings, get_settings
from .errors import register_error_handlers
from .expiry_worker import expiry_loop
from .middleware import RateLimitMiddleware, RequestLoggingMiddleware
from .models import utcnow
from .paypal import PayPalClient
from .reconciliation import ReconciliationWorkflow
from .redis_client import create_redis
from .reservations import ReservationStore
from .routes import appointments_router, paypal_router

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    settings: Settings | None = None,
    *,
    session_factory=None,
    paypal=None,
    provisioner=None,
    publisher=None,
    redis_client=None,
    clock=utcnow,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    engine = None
    if session_factory is None:
        engine = get_engine(settings.database_url, echo=settings.database_echo)
        session_factory = get_session(engine)

    owns_redis = redis_client is None
    if owns_redis:
        redis_client = create_redis(settings)
    if publisher is None:
        publisher = RabbitPublisher(settings.rabbit_url, service_name=settings.service_name)
    if paypal is None:
        paypal = PayPalClient(settings)
    if provisioner is None and settings.google_configured:
        breaker = CircuitBreaker(redis_client, "google-calendar") if redis_client else None
        provisioner = GoogleMeetProvisioner(settings, breaker=breaker)

    store = ReservationStore(session_factory, business_timezone=settings.business_timezone)
    workflow = ReconciliationWorkflow(
        store,
        paypal,
        settings,
        provisioner=provisioner,
        publisher=publisher,
        clock=clock,
    )

    app = FastAPI(title="Appointment Service")
    app.state.settings = settings
    app.state.redis = redis_client
    app.state.publisher = publisher
    app.state.store = store
    app.state.workflow = workflow

    # the last middleware added runs first, so logging also sees 429s
    app.add_middleware(RateLimitMiddleware, max_per_minute=settings.rate_limit_per_minute)
    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app)

    app.include_router(paypal_router)
    app.include_router(appointments_router)

    stop_event = asyncio.Event()
    tasks: dict[str, asyncio.Task] = {}

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": settings.service_name,
            "events_enabled": publisher.enabled,
            "paypal_configured": settings.paypal_configured,
            "meet_links_enabled": provisioner is not None,
        }

    @app.on_event("startup")
    async def startup():
        # never crash the service if RabbitMQ is temporarily unavailable
        try:
            await publisher.connect()
        except Exception as e:
            logger.warning("RabbitMQ connect failed at startup; continuing without events: %s", e)

        if run_sweeper:
            stop_event.clear()
            tasks["sweeper"] = asyncio.create_task(
                expiry_loop(
                    stop_event,
                    store,
                    publisher,
                    interval_seconds=settings.sweeper_interval_seconds,
                    clock=clock,
                )
            )

    @app.on_event("shutdown")
    async def shutdown():
        stop_event.set()
        sweeper = tasks.pop("sweeper", None)
        if sweeper:
            await sweeper
        await publisher.close()
        if isinstance(paypal, PayPalClient):
            await paypal.aclose()
        if owns_redis and redis_client is not None:
            await redis_client.aclose()
        if engine is not None:
            await engine.dispose()

    return app


app = create_app()
