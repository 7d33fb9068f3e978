from __future__ import annotations

import asyncio
from typing import Optional

from core.config import Settings
from core.logging import get_logger
from stages.aggregator import AggregatorStage
from stages.alerting import AlertingStage
from stages.base import Stage, run_stage
from streams.kafka import KafkaSink, KafkaSource, kafka_client_options

logger = get_logger(__name__)

DEFAULT_GROUP_IDS = {
    AggregatorStage.name: "aggregator.v1",
    AlertingStage.name: "alert.v1",
}


def build_stage(
    stage_name: str,
    settings: Settings,
    threshold_pct: Optional[float] = None,
    cooldown_sec: Optional[float] = None,
) -> Stage:
    if stage_name == AggregatorStage.name:
        return AggregatorStage(input_topic=settings.ticks_topic, output_topic=settings.signals_topic)
    if stage_name == AlertingStage.name:
        return AlertingStage(
            input_topic=settings.signals_topic,
            output_topic=settings.alerts_topic,
            deadletter_topic=settings.deadletter_topic,
            threshold_pct=settings.alert_threshold_pct if threshold_pct is None else threshold_pct,
            cooldown_sec=settings.alert_throttle_secs if cooldown_sec is None else cooldown_sec,
        )
    raise ValueError(f"Unknown stage {stage_name}")


async def run_stage_service(
    settings: Settings,
    stage_name: str,
    group_id: Optional[str] = None,
    threshold_pct: Optional[float] = None,
    cooldown_sec: Optional[float] = None,
    max_records: Optional[int] = None,
) -> int:
    stage = build_stage(stage_name, settings, threshold_pct=threshold_pct, cooldown_sec=cooldown_sec)
    group = group_id or settings.kafka_group_id or DEFAULT_GROUP_IDS[stage_name]
    options = kafka_client_options(settings)

    source = KafkaSource(stage.input_topic, group_id=group, client_options=options, offset_reset=settings.kafka_offset_reset)
    sink = KafkaSink(options)

    # a stage never runs half-initialised: BootstrapError propagates to the caller
    await sink.start()
    try:
        await source.start()
    except BaseException:
        await sink.close()
        raise

    logger.info(
        "%s up (kafka: %s) consuming %s group=%s",
        stage.name,
        settings.kafka_bootstrap,
        stage.input_topic,
        group,
    )

    try:
        return await run_stage(stage, source, sink, settings.publish_timeout_sec, max_records=max_records)
    except asyncio.CancelledError:  # pragma: no cover - runner loop
        raise
    finally:
        await source.close()
        await sink.close()


async def check_connection(settings: Settings) -> None:
    sink = KafkaSink(kafka_client_options(settings))
    await sink.start()
    await sink.close()
    logger.info("Kafka connection OK", extra={"bootstrap": settings.kafka_bootstrap})
