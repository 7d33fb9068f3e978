from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Union
from uuid import uuid4

from core.logging import get_logger
from core.models import (
    EMPTY_PAYLOAD,
    Alert,
    DeadLetter,
    RawPayload,
    Signal,
    UnreadablePayload,
    decode_signal,
    encode,
)
from stages.base import Acknowledge, Action, Forward, Quarantine, Stage
from streams.base import InboundRecord, OutboundRecord

logger = get_logger(__name__)

SOURCE_TAG = "alert-service"
DEFAULT_THRESHOLD_PCT = 0.20
DEFAULT_COOLDOWN_SEC = 10.0


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ThrottleState:
    """Time of the last delivered alert per symbol.

    Checking and recording are separate so an alert whose publish fails does
    not start a cool-down.
    """

    def __init__(self) -> None:
        self.last_alert_at: Dict[str, datetime] = {}

    def should_alert(self, symbol: str, cooldown_sec: float, now: datetime) -> bool:
        last = self.last_alert_at.get(symbol)
        if last is not None and (now - last) < timedelta(seconds=cooldown_sec):
            return False
        return True

    def record(self, symbol: str, now: datetime) -> None:
        self.last_alert_at[symbol] = now


@dataclass(frozen=True)
class NoAlert:
    reason: str


@dataclass(frozen=True)
class AlertRaised:
    alert: Alert


@dataclass(frozen=True)
class Unreadable:
    payload: Optional[str]
    reason: str = ""


Outcome = Union[NoAlert, AlertRaised, Unreadable]


def describe_rule(threshold_pct: float) -> str:
    return f"abs(percent_change) >= {threshold_pct:g}%"


def evaluate(
    signal: Union[Signal, RawPayload],
    throttle: ThrottleState,
    threshold_pct: float = DEFAULT_THRESHOLD_PCT,
    cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
    now: Optional[datetime] = None,
) -> Outcome:
    """Decide what a signal, or the raw payload it arrived as, turns into.

    ``now`` is processing time; the signal's own timestamp never affects the
    cool-down. The throttle is only read here.
    """
    if not isinstance(signal, Signal):
        try:
            signal = decode_signal(signal)
        except UnreadablePayload as exc:
            return Unreadable(payload=exc.payload, reason=exc.reason)

    if signal.percent_change is None:
        return NoAlert(reason="first observation")
    if abs(signal.percent_change) < threshold_pct:
        return NoAlert(reason="below threshold")

    now = now or _utcnow()
    if not throttle.should_alert(signal.symbol, cooldown_sec, now):
        return NoAlert(reason="throttled")

    return AlertRaised(
        alert=Alert(
            alert_id=uuid4(),
            event_id=signal.event_id,
            symbol=signal.symbol,
            rule=describe_rule(threshold_pct),
            percent_change=signal.percent_change,
            price=signal.price,
            timestamp=signal.timestamp,
            source=SOURCE_TAG,
        )
    )


class AlertingStage(Stage):
    name = "alerting"

    def __init__(
        self,
        input_topic: str,
        output_topic: str,
        deadletter_topic: str,
        threshold_pct: float = DEFAULT_THRESHOLD_PCT,
        cooldown_sec: float = DEFAULT_COOLDOWN_SEC,
        throttle: Optional[ThrottleState] = None,
    ) -> None:
        self.input_topic = input_topic
        self.output_topic = output_topic
        self.deadletter_topic = deadletter_topic
        self.threshold_pct = threshold_pct
        self.cooldown_sec = cooldown_sec
        self.throttle = throttle if throttle is not None else ThrottleState()

    def handle(self, record: InboundRecord) -> Action:
        now = _utcnow()
        outcome = evaluate(record.value, self.throttle, self.threshold_pct, self.cooldown_sec, now=now)

        if isinstance(outcome, Unreadable):
            logger.warning("Unreadable signal", extra={"reason": outcome.reason, "offset": record.offset})
            dead_letter = DeadLetter(
                from_stream=record.topic,
                payload=outcome.payload or EMPTY_PAYLOAD,
                captured_at=now,
            )
            return Quarantine(
                record=OutboundRecord(
                    topic=self.deadletter_topic,
                    key=record.key_text or "dlq",
                    value=encode(dead_letter),
                )
            )

        if isinstance(outcome, NoAlert):
            return Acknowledge(reason=outcome.reason)

        alert = outcome.alert
        logger.info(
            "Alert raised for %s pct_change=%.4f%% price=%s",
            alert.symbol,
            alert.percent_change,
            alert.price,
            extra={"alert_id": str(alert.alert_id), "event_id": str(alert.event_id)},
        )
        return Forward(
            record=OutboundRecord(topic=self.output_topic, key=alert.symbol, value=encode(alert)),
            on_delivered=lambda: self.throttle.record(alert.symbol, now),
        )
