"""RabbitMQ transport (pika blocking connection).

Work queues are durable and bound to the configured direct exchange under
their own name. Replies go through the default exchange to the caller's
temporary `reply_to` queue.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import pika
from pika.adapters.blocking_connection import BlockingChannel

logger = logging.getLogger(__name__)

FrameCallback = Callable[[dict[str, Any], str | None], None]


class RabbitMQTransport:
    def __init__(self, url: str, exchange: str = "amq.direct") -> None:
        self._parameters = pika.URLParameters(url)
        self._exchange = exchange
        self._connection: pika.BlockingConnection | None = None
        self._channel: BlockingChannel | None = None
        self._declared: set[str] = set()

    def connect(self) -> None:
        self._connection = pika.BlockingConnection(self._parameters)
        self._channel = self._connection.channel()
        if self._exchange and not self._exchange.startswith("amq."):
            self._channel.exchange_declare(
                exchange=self._exchange, exchange_type="direct", durable=True
            )
        logger.info("Connected to RabbitMQ", extra={"exchange": self._exchange})

    @property
    def channel(self) -> BlockingChannel:
        if self._channel is None or self._channel.is_closed:
            self.connect()
        assert self._channel is not None
        return self._channel

    def _declare(self, queue: str) -> None:
        if queue in self._declared:
            return
        self.channel.queue_declare(queue=queue, durable=True)
        if self._exchange:
            self.channel.queue_bind(queue=queue, exchange=self._exchange, routing_key=queue)
        self._declared.add(queue)

    def publish(
        self, queue: str, frame: Mapping[str, Any], *, reply_to: str | None = None
    ) -> None:
        body = json.dumps(frame, ensure_ascii=False, default=str)
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
            reply_to=reply_to,
        )

        if queue.startswith("amq.gen-"):
            # Server-named reply queue: only reachable via the default exchange.
            self.channel.basic_publish(
                exchange="", routing_key=queue, body=body, properties=properties
            )
        else:
            self._declare(queue)
            self.channel.basic_publish(
                exchange=self._exchange, routing_key=queue, body=body, properties=properties
            )
        logger.debug("Frame published", extra={"queue": queue})

    def consume(self, queue: str, handler: FrameCallback) -> None:
        """Feed frames from `queue` to `handler` one at a time (blocking)."""

        self._declare(queue)
        channel = self.channel
        channel.basic_qos(prefetch_count=1)

        def on_message(
            ch: BlockingChannel,
            method: Any,
            properties: pika.BasicProperties,
            body: bytes,
        ) -> None:
            try:
                frame = json.loads(body)
            except ValueError:
                logger.error("Dropping undecodable frame", extra={"queue": queue})
                ch.basic_ack(delivery_tag=method.delivery_tag)
                return

            try:
                handler(frame, properties.reply_to)
            except Exception:
                logger.exception("Frame handling failed", extra={"queue": queue})
                ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
                return
            ch.basic_ack(delivery_tag=method.delivery_tag)

        channel.basic_consume(queue=queue, on_message_callback=on_message)
        logger.info("Consuming", extra={"queue": queue})
        channel.start_consuming()

    def rpc(self, queue: str, frame: Mapping[str, Any], timeout: float = 30.0) -> dict[str, Any]:
        """Publish `frame` and wait for the single reply."""

        result = self.channel.queue_declare(queue="", exclusive=True, auto_delete=True)
        reply_queue = result.method.queue
        response: dict[str, Any] = {}

        def on_reply(ch: BlockingChannel, method: Any, _props: Any, body: bytes) -> None:
            response.update(json.loads(body))
            ch.basic_ack(delivery_tag=method.delivery_tag)

        tag = self.channel.basic_consume(queue=reply_queue, on_message_callback=on_reply)
        self.publish(queue, frame, reply_to=reply_queue)

        deadline = time.monotonic() + timeout
        assert self._connection is not None
        while not response and time.monotonic() < deadline:
            self._connection.process_data_events(time_limit=1)
        self.channel.basic_cancel(tag)

        if not response:
            raise TimeoutError(f"no reply on {reply_queue} within {timeout}s")
        return response

    def close(self) -> None:
        if self._connection is not None and self._connection.is_open:
            self._connection.close()
