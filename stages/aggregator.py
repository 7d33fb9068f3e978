from __future__ import annotations

import math
from typing import Dict, Optional

from core.logging import get_logger
from core.models import Signal, Tick, UnreadablePayload, decode_tick, encode
from stages.base import Acknowledge, Action, Forward, Stage
from streams.base import InboundRecord, OutboundRecord

logger = get_logger(__name__)

SOURCE_TAG = "aggregator"


class PriceState:
    """Last forwarded price per symbol, owned by a single stage loop."""

    def __init__(self) -> None:
        self._last_price: Dict[str, float] = {}

    def get(self, symbol: str) -> Optional[float]:
        return self._last_price.get(symbol)

    def update(self, symbol: str, price: float) -> None:
        self._last_price[symbol] = price

    def restore(self, symbol: str, price: Optional[float]) -> None:
        if price is None:
            self._last_price.pop(symbol, None)
        else:
            self._last_price[symbol] = price

    def __len__(self) -> int:
        return len(self._last_price)


def percent_change(price: float, previous_price: float) -> Optional[float]:
    """Return None when the change is not a finite number (zero baseline or overflow)."""
    if previous_price == 0:
        return None
    change = (price - previous_price) / previous_price * 100.0
    return change if math.isfinite(change) else None


def process(tick: Tick, state: PriceState) -> Signal:
    previous = state.get(tick.symbol)
    change = None if previous is None else percent_change(tick.price, previous)
    if change is None and previous is not None:
        # no usable baseline: the tick starts a fresh one, like a first observation
        logger.info("Percent change undefined, restarting baseline", extra={"symbol": tick.symbol, "previous_price": previous})
        previous = None
    signal = Signal(
        event_id=tick.event_id,
        symbol=tick.symbol,
        price=tick.price,
        previous_price=previous,
        percent_change=change,
        timestamp=tick.timestamp,
        source=SOURCE_TAG,
    )
    state.update(tick.symbol, tick.price)
    return signal


class AggregatorStage(Stage):
    name = "aggregator"

    def __init__(self, input_topic: str, output_topic: str, state: Optional[PriceState] = None) -> None:
        self.input_topic = input_topic
        self.output_topic = output_topic
        self.state = state if state is not None else PriceState()

    def handle(self, record: InboundRecord) -> Action:
        try:
            tick = decode_tick(record.value)
        except UnreadablePayload as exc:
            # nothing can be recovered from it and there is no dead letter for ticks
            logger.warning("Skipping unreadable tick", extra={"reason": exc.reason, "offset": record.offset})
            return Acknowledge(reason="unreadable")

        previous = self.state.get(tick.symbol)
        signal = process(tick, self.state)
        logger.debug("Signal computed", extra={"symbol": signal.symbol, "pct_change": signal.percent_change})
        return Forward(
            record=OutboundRecord(topic=self.output_topic, key=signal.symbol, value=encode(signal)),
            on_failed=lambda: self.state.restore(tick.symbol, previous),
        )
