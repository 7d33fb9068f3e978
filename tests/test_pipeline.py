import asyncio

import pytest

from core.models import decode_alert, decode_signal
from stages.aggregator import AggregatorStage
from stages.alerting import AlertingStage
from stages.base import Acknowledge, Forward, Quarantine, Stage, handle_record, run_stage
from streams.base import OutboundRecord


class _ScriptedStage(Stage):
    name = "scripted"
    input_topic = "in"

    def __init__(self, action) -> None:
        self.action = action

    def handle(self, record):
        return self.action


def test_acknowledge_without_publishing(sink, make_source):
    source = make_source("in")
    record = source.push(b"x")
    acked = asyncio.run(handle_record(_ScriptedStage(Acknowledge("noop")), record, source, sink, 1.0))
    assert acked is True
    assert source.acked == [record]
    assert sink.attempts == 0


def test_forward_publishes_before_ack(sink, make_source):
    source = make_source("in")
    record = source.push(b"x")
    order = []
    out = OutboundRecord(topic="out", key="K", value=b"y")
    action = Forward(record=out, on_delivered=lambda: order.append((len(sink.published), len(source.acked))))

    asyncio.run(handle_record(_ScriptedStage(action), record, source, sink, 1.0))

    # delivery confirmed before the input was acknowledged
    assert order == [(1, 0)]
    assert source.acked == [record]


def test_failed_forward_is_not_acknowledged(sink, make_source):
    source = make_source("in")
    record = source.push(b"x")
    failed = []
    action = Forward(record=OutboundRecord("out", "K", b"y"), on_failed=lambda: failed.append(True))
    sink.fail_next = 1

    acked = asyncio.run(handle_record(_ScriptedStage(action), record, source, sink, 1.0))

    assert acked is False
    assert source.acked == []
    assert source.redelivered == [record]
    assert failed == [True]


def test_quarantine_acks_even_when_dead_letter_fails(sink, make_source):
    source = make_source("in")
    record = source.push(b"x")
    sink.fail_next = 1
    acked = asyncio.run(handle_record(_ScriptedStage(Quarantine(OutboundRecord("dlq", "K", b"y"))), record, source, sink, 1.0))
    assert acked is True
    assert source.redelivered == []


def test_max_records_stops_the_loop(sink, ticks_source, tick_bytes):
    for i in range(5):
        ticks_source.push(tick_bytes("AAPL", 100.0 + i, seconds=i))
    handled = asyncio.run(run_stage(AggregatorStage("ticks", "signals"), ticks_source, sink, 1.0, max_records=2))
    assert handled == 2
    assert len(sink.published) == 2


def test_ticks_to_alerts_end_to_end(ticks_source, signals_source, sink, tick_bytes):
    for seconds, price in enumerate([100.0, 101.0, 150.0]):
        ticks_source.push(tick_bytes("A", price, seconds=seconds), key="A")

    asyncio.run(run_stage(AggregatorStage("ticks", "signals"), ticks_source, sink, 1.0))
    signal_records = sink.on("signals")
    signals = [decode_signal(r.value) for r in signal_records]
    assert signals[0].percent_change is None
    assert signals[1].percent_change == pytest.approx(1.0)
    assert signals[2].percent_change == pytest.approx(48.5148, abs=1e-3)

    for r in signal_records:
        signals_source.push(r.value, key=r.key)
    alerting = AlertingStage("signals", "alerts", "alerts-deadletter", threshold_pct=20, cooldown_sec=10)
    asyncio.run(run_stage(alerting, signals_source, sink, 1.0))

    alerts = [decode_alert(r.value) for r in sink.on("alerts")]
    assert len(alerts) == 1
    assert alerts[0].symbol == "A"
    assert alerts[0].event_id == signals[2].event_id
    assert alerts[0].percent_change == pytest.approx(48.51, abs=0.01)
    assert alerts[0].rule == "abs(percent_change) >= 20%"
    assert sink.on("alerts-deadletter") == []
