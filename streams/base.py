from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import AsyncIterator, Optional


class BootstrapError(RuntimeError):
    """The broker could not be reached while starting a client."""


class PublishError(RuntimeError):
    """A publish was not confirmed by the broker."""


@dataclass(frozen=True)
class InboundRecord:
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: Optional[bytes]

    @property
    def key_text(self) -> Optional[str]:
        if self.key is None:
            return None
        try:
            return self.key.decode("utf-8")
        except UnicodeDecodeError:
            return None


@dataclass(frozen=True)
class OutboundRecord:
    topic: str
    key: str
    value: bytes


class StreamSource(abc.ABC):
    topic: str

    @abc.abstractmethod
    async def start(self) -> None:  # pragma: no cover - interface
        ...

    @abc.abstractmethod
    def records(self) -> AsyncIterator[InboundRecord]:  # pragma: no cover - interface
        ...

    @abc.abstractmethod
    async def ack(self, record: InboundRecord) -> None:  # pragma: no cover - interface
        ...

    @abc.abstractmethod
    async def redeliver(self, record: InboundRecord) -> None:  # pragma: no cover - interface
        ...

    @abc.abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface
        ...


class StreamSink(abc.ABC):
    @abc.abstractmethod
    async def start(self) -> None:  # pragma: no cover - interface
        ...

    @abc.abstractmethod
    async def publish(self, record: OutboundRecord) -> None:  # pragma: no cover - interface
        """Return once the broker confirmed the record, raise PublishError otherwise."""

    @abc.abstractmethod
    async def close(self) -> None:  # pragma: no cover - interface
        ...
