"""Produce-then-acknowledge loop shared by every stage.

A record is acknowledged only after its derived output is confirmed by the
broker. When a publish fails or times out the record is left unacknowledged
and handed back to the source for redelivery, which is the only retry
mechanism. Unreadable input is never retried.
"""

from __future__ import annotations

import abc
import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import Callable, Optional, Union

from core.logging import get_logger
from streams.base import InboundRecord, OutboundRecord, PublishError, StreamSink, StreamSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class Acknowledge:
    reason: str = ""


@dataclass(frozen=True)
class Forward:
    record: OutboundRecord
    on_delivered: Optional[Callable[[], None]] = None
    on_failed: Optional[Callable[[], None]] = None


@dataclass(frozen=True)
class Quarantine:
    record: OutboundRecord


Action = Union[Acknowledge, Forward, Quarantine]


class Stage(abc.ABC):
    name: str
    input_topic: str

    @abc.abstractmethod
    def handle(self, record: InboundRecord) -> Action:  # pragma: no cover - interface
        ...


async def _publish(sink: StreamSink, record: OutboundRecord, timeout_sec: float) -> None:
    await asyncio.wait_for(sink.publish(record), timeout=timeout_sec)


async def handle_record(
    stage: Stage,
    record: InboundRecord,
    source: StreamSource,
    sink: StreamSink,
    publish_timeout_sec: float,
) -> bool:
    """Handle one inbound record; return whether it was acknowledged."""
    action = stage.handle(record)
    position = {"stage": stage.name, "topic": record.topic, "partition": record.partition, "offset": record.offset}

    if isinstance(action, Acknowledge):
        await source.ack(record)
        logger.debug("Record consumed without output", extra={**position, "reason": action.reason})
        return True

    if isinstance(action, Quarantine):
        try:
            await _publish(sink, action.record, publish_timeout_sec)
            logger.warning("Unreadable record sent to dead letter", extra={**position, "dead_letter": action.record.topic})
        except (PublishError, asyncio.TimeoutError) as exc:
            logger.error("Dead-letter publish failed, dropping unreadable record", extra=position, exc_info=exc)
        await source.ack(record)
        return True

    try:
        await _publish(sink, action.record, publish_timeout_sec)
    except (PublishError, asyncio.TimeoutError) as exc:
        logger.warning("Publish failed, record left for redelivery", extra={**position, "error": repr(exc)})
        if action.on_failed is not None:
            action.on_failed()
        await source.redeliver(record)
        return False

    if action.on_delivered is not None:
        action.on_delivered()
    await source.ack(record)
    logger.info("Record forwarded", extra={**position, "to": action.record.topic, "key": action.record.key})
    return True


async def run_stage(
    stage: Stage,
    source: StreamSource,
    sink: StreamSink,
    publish_timeout_sec: float,
    max_records: Optional[int] = None,
) -> int:
    """Pull records sequentially until cancelled, or until ``max_records`` were handled."""
    handled = 0
    async with aclosing(source.records()) as records:
        async for record in records:
            await handle_record(stage, record, source, sink, publish_timeout_sec)
            handled += 1
            if max_records is not None and handled >= max_records:
                break
    return handled
