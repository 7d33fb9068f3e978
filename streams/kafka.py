from __future__ import annotations

from typing import Any, AsyncIterator, Dict, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from core.config import Settings
from core.logging import get_logger
from streams.base import BootstrapError, InboundRecord, OutboundRecord, PublishError, StreamSink, StreamSource

logger = get_logger(__name__)

# broker-side delivery budget; the stage applies its own shorter publish timeout
DELIVERY_TIMEOUT_MS = 5000


def kafka_client_options(settings: Settings) -> Dict[str, Any]:
    """Translate the recognised connection settings into aiokafka keyword arguments."""
    options: Dict[str, Any] = {
        "bootstrap_servers": settings.kafka_bootstrap,
        "security_protocol": settings.kafka_security_protocol,
    }
    if settings.uses_sasl:
        options["sasl_mechanism"] = settings.kafka_sasl_mechanism
        options["sasl_plain_username"] = settings.kafka_sasl_username
        options["sasl_plain_password"] = settings.kafka_sasl_password.get_secret_value()
    if settings.uses_tls:
        options["ssl_context"] = create_ssl_context(cafile=settings.kafka_ssl_ca_location)
    return options


class KafkaSource(StreamSource):
    """Consumer with manual commits so offsets only move once a record is handled."""

    def __init__(self, topic: str, group_id: str, client_options: Dict[str, Any], offset_reset: str = "earliest") -> None:
        self.topic = topic
        self.group_id = group_id
        self._options = dict(client_options)
        self._offset_reset = offset_reset
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def start(self) -> None:
        # aiokafka clients bind to the running loop, so they are built here
        consumer = AIOKafkaConsumer(
            self.topic,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset=self._offset_reset,
            **self._options,
        )
        try:
            await consumer.start()
        except KafkaError as exc:
            await consumer.stop()
            raise BootstrapError(f"consumer for {self.topic} could not reach {self._options['bootstrap_servers']}: {exc}") from exc
        self._consumer = consumer
        logger.info("Kafka consumer started", extra={"topic": self.topic, "group_id": self.group_id})

    async def records(self) -> AsyncIterator[InboundRecord]:
        if self._consumer is None:
            raise RuntimeError("Consumer not started")
        while True:
            msg = await self._consumer.getone()
            yield InboundRecord(
                topic=msg.topic,
                partition=msg.partition,
                offset=msg.offset,
                key=msg.key,
                value=msg.value,
            )

    async def ack(self, record: InboundRecord) -> None:
        assert self._consumer
        tp = TopicPartition(record.topic, record.partition)
        await self._consumer.commit({tp: record.offset + 1})

    async def redeliver(self, record: InboundRecord) -> None:
        assert self._consumer
        # rewind so the next fetch hands back the same record
        self._consumer.seek(TopicPartition(record.topic, record.partition), record.offset)

    async def close(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            logger.info("Kafka consumer stopped", extra={"topic": self.topic})
            self._consumer = None


class KafkaSink(StreamSink):
    def __init__(self, client_options: Dict[str, Any]) -> None:
        self._options = dict(client_options)
        self._producer: Optional[AIOKafkaProducer] = None

    async def start(self) -> None:
        producer = AIOKafkaProducer(
            acks="all",
            enable_idempotence=True,
            request_timeout_ms=DELIVERY_TIMEOUT_MS,
            **self._options,
        )
        try:
            await producer.start()
        except KafkaError as exc:
            await producer.stop()
            raise BootstrapError(f"producer could not reach {self._options['bootstrap_servers']}: {exc}") from exc
        self._producer = producer
        logger.info("Kafka producer started")

    async def publish(self, record: OutboundRecord) -> None:
        if self._producer is None:
            raise PublishError("Producer not started")
        try:
            await self._producer.send_and_wait(record.topic, value=record.value, key=record.key.encode("utf-8"))
        except KafkaError as exc:
            raise PublishError(f"publish to {record.topic} failed: {exc}") from exc

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            logger.info("Kafka producer stopped")
            self._producer = None
