import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

import aio_pika
from aio_pika.exceptions import AMQPConnectionError

from app.core.config import settings
from app.schemas.assignment import Assignment

logger = logging.getLogger("assignments.publisher")

DEFAULT_CHANNELS = ("email", "push")


class NotificationDispatcher(ABC):
    @abstractmethod
    async def notify(self, recipient_ids: Sequence[str], payload: dict) -> None:
        """Fire-and-forget delivery of one event to each recipient."""
        raise NotImplementedError


def assignment_event(event: str, assignment: Assignment, occurred_at: datetime, **extra: Any) -> dict:
    payload = {
        "event": event,
        "assignmentId": assignment.assignmentId,
        "title": assignment.title,
        "description": assignment.description,
        "dueDate": assignment.dueDate,
        "closeDate": assignment.closeDate,
        "status": assignment.status,
        "assignmentUrl": settings.assignment_url(assignment.assignmentId),
        "occurredAt": occurred_at,
    }
    payload.update(extra)
    return payload


class AssignmentPublisher(NotificationDispatcher):
    """
    Publishes notification events on a RabbitMQ topic exchange.
    One message per (recipient, channel); the email and push workers consume
    `notifications.email.#` and `notifications.push.#`.
    """

    def __init__(
        self,
        rabbitmq_url: str,
        exchange: str,
        heartbeat: int = 30,
        channels: Sequence[str] = DEFAULT_CHANNELS,
    ):
        self.rabbitmq_url = rabbitmq_url
        self.exchange_name = exchange
        self.heartbeat = heartbeat
        self.channels = tuple(channels)
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._exchange: Optional[aio_pika.abc.AbstractExchange] = None

    def _url(self) -> str:
        if "heartbeat=" in self.rabbitmq_url:
            return self.rabbitmq_url
        sep = "&" if "?" in self.rabbitmq_url else "?"
        return f"{self.rabbitmq_url}{sep}heartbeat={self.heartbeat}"

    async def connect(self, max_retries: int = 10, delay: float = 5) -> None:
        for attempt in range(1, max_retries + 1):
            try:
                self._connection = await aio_pika.connect_robust(self._url())
                channel = await self._connection.channel()
                self._exchange = await channel.declare_exchange(
                    self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
                )
                logger.info("Connesso a RabbitMQ, exchange=%s", self.exchange_name)
                return
            except (AMQPConnectionError, OSError) as e:
                logger.warning("RabbitMQ non raggiungibile (tentativo %d/%d): %s", attempt, max_retries, e)
                await asyncio.sleep(delay)
        raise ConnectionError(f"Could not connect to RabbitMQ after {max_retries} attempts")

    async def notify(self, recipient_ids: Sequence[str], payload: dict) -> None:
        if self._exchange is None:
            raise RuntimeError("Publisher non connesso")
        event = payload.get("event", "assignment")
        for rid in recipient_ids:
            for channel in self.channels:
                body = json.dumps({**payload, "recipientId": rid, "channel": channel}, default=str)
                await self._exchange.publish(
                    aio_pika.Message(
                        body=body.encode("utf-8"),
                        content_type="application/json",
                        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                    ),
                    routing_key=f"notifications.{channel}.{event}",
                )
        logger.debug("Evento %s pubblicato per %d destinatari", event, len(recipient_ids))

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._exchange = None
