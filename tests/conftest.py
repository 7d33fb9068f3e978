import asyncio
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, List, Optional
from uuid import uuid4

import pytest

from core.models import Tick, encode
from streams.base import InboundRecord, OutboundRecord, PublishError, StreamSink, StreamSource


class FakeSource(StreamSource):
    """Single-partition log that hands back redelivered records first."""

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.acked: List[InboundRecord] = []
        self.redelivered: List[InboundRecord] = []
        self._pending: Deque[InboundRecord] = deque()
        self._next_offset = 0

    def push(self, value: Optional[bytes], key: Optional[str] = None) -> InboundRecord:
        record = InboundRecord(
            topic=self.topic,
            partition=0,
            offset=self._next_offset,
            key=key.encode() if key is not None else None,
            value=value,
        )
        self._next_offset += 1
        self._pending.append(record)
        return record

    async def start(self) -> None:
        pass

    async def records(self):
        while self._pending:
            yield self._pending.popleft()

    async def ack(self, record: InboundRecord) -> None:
        self.acked.append(record)

    async def redeliver(self, record: InboundRecord) -> None:
        self.redelivered.append(record)
        self._pending.appendleft(record)

    async def close(self) -> None:
        pass


class FakeSink(StreamSink):
    def __init__(self) -> None:
        self.published: List[OutboundRecord] = []
        self.attempts = 0
        self.fail_next = 0
        self.hang_next = 0
        self.fail_topics: set = set()

    async def start(self) -> None:
        pass

    async def publish(self, record: OutboundRecord) -> None:
        self.attempts += 1
        if self.hang_next:
            self.hang_next -= 1
            await asyncio.sleep(3600)
        if self.fail_next:
            self.fail_next -= 1
            raise PublishError("broker unavailable")
        if record.topic in self.fail_topics:
            raise PublishError(f"{record.topic} unavailable")
        self.published.append(record)

    def on(self, topic: str) -> List[OutboundRecord]:
        return [r for r in self.published if r.topic == topic]

    async def close(self) -> None:
        pass


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def ticks_source() -> FakeSource:
    return FakeSource("ticks")


@pytest.fixture
def signals_source() -> FakeSource:
    return FakeSource("signals")


@pytest.fixture
def make_tick():
    base = datetime(2024, 5, 1, 14, 30, tzinfo=timezone.utc)

    def _make(symbol: str = "AAPL", price: float = 100.0, seconds: int = 0, volume: int = 10) -> Tick:
        return Tick(
            event_id=uuid4(),
            symbol=symbol,
            price=price,
            volume=volume,
            timestamp=base + timedelta(seconds=seconds),
            source="test",
        )

    return _make


@pytest.fixture
def tick_bytes(make_tick):
    def _bytes(*args, **kwargs) -> bytes:
        return encode(make_tick(*args, **kwargs))

    return _bytes


@pytest.fixture
def make_source():
    return FakeSource
