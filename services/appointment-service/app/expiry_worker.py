import asyncio
import logging
from datetime import datetime
from typing import Callable

from . import events
from .holds import hold_cutoff
from .models import utcnow
from .reservations import ReservationStore

logger = logging.getLogger(__name__)


async def reap(store: ReservationStore, now: datetime) -> int:
    """Delete unpaid holds older than the hold TTL. Safe to repeat."""
    return await store.delete_expired_pending(hold_cutoff(now))


async def expiry_loop(
    stop_event: asyncio.Event,
    store: ReservationStore,
    publisher=None,
    interval_seconds: float = 60.0,
    clock: Callable[[], datetime] = utcnow,
):
    while not stop_event.is_set():
        try:
            deleted = await reap(store, clock())
            if deleted:
                logger.info("Reaped %d expired pending appointment(s)", deleted)
                await events.publish(publisher, events.HOLD_EXPIRED, {"deleted_count": deleted})
        except Exception:
            logger.exception("Expired hold sweep failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
