import logging
from datetime import datetime, timezone

import aio_pika

EXCHANGE_NAME = "domain_events"

logger = logging.getLogger(__name__)


class RabbitPublisher:
    """
    Topic-exchange publisher for domain events.

    Disabled when no broker URL is configured. Publishing is best effort:
    broker failures are logged and never reach the caller, so a broker
    outage cannot fail a request that already committed.
    """

    def __init__(self, rabbit_url: str | None, service_name: str):
        self.rabbit_url = rabbit_url
        self.service_name = service_name
        self.enabled = bool(rabbit_url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    @property
    def connected(self) -> bool:
        return bool(self._connection and not self._connection.is_closed and self._exchange)

    def _reset(self) -> None:
        self._connection = None
        self._exchange = None

    async def connect(self) -> None:
        if not self.enabled or self.connected:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.rabbit_url)
            channel = await self._connection.channel()
            self._exchange = await channel.declare_exchange(
                EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
            )
        except Exception:
            self._reset()
            raise

    async def publish(self, routing_key: str, message_body: str) -> None:
        if not self.enabled:
            return

        try:
            await self.connect()
            await self._exchange.publish(
                aio_pika.Message(
                    body=message_body.encode("utf-8"),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    app_id=self.service_name,
                    timestamp=datetime.now(timezone.utc),
                ),
                routing_key=routing_key,
            )
        except Exception as e:
            logger.warning("[%s] publish of %s failed: %s", self.service_name, routing_key, e)

    async def close(self) -> None:
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._reset()
