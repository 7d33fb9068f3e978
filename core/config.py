"""Pipeline settings loaded from environment variables using Pydantic v2."""

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SECURITY_PROTOCOLS = {"PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"}
SASL_MECHANISMS = {"PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"}


class Settings(BaseSettings):
    """Configuration values shared by every stage.

    Broker connection details live here once so the aggregator and the
    alerting stage build their clients from the same recognised options.
    """

    kafka_bootstrap: str = Field(default="localhost:9092", validation_alias="KAFKA_BOOTSTRAP")
    kafka_group_id: Optional[str] = Field(default=None, validation_alias="KAFKA_GROUP_ID")
    kafka_offset_reset: str = Field(default="earliest", validation_alias="KAFKA_OFFSET_RESET")
    kafka_security_protocol: str = Field(default="PLAINTEXT", validation_alias="KAFKA_SECURITY_PROTOCOL")
    kafka_sasl_mechanism: Optional[str] = Field(default=None, validation_alias="KAFKA_SASL_MECHANISM")
    kafka_sasl_username: Optional[str] = Field(default=None, validation_alias="KAFKA_SASL_USERNAME")
    kafka_sasl_password: SecretStr = Field(default=SecretStr(""), validation_alias="KAFKA_SASL_PASSWORD")
    kafka_ssl_ca_location: Optional[str] = Field(default=None, validation_alias="KAFKA_SSL_CA_LOCATION")

    ticks_topic: str = Field(default="ticks", validation_alias="TICKS_TOPIC")
    signals_topic: str = Field(default="signals", validation_alias="SIGNALS_TOPIC")
    alerts_topic: str = Field(default="alerts", validation_alias="ALERTS_TOPIC")
    deadletter_topic: str = Field(default="alerts-deadletter", validation_alias="DEADLETTER_TOPIC")

    alert_threshold_pct: float = Field(default=0.20, validation_alias="ALERT_THRESHOLD_PCT")
    alert_throttle_secs: float = Field(default=10.0, validation_alias="ALERT_THROTTLE_SECS")
    publish_timeout_sec: float = Field(default=2.0, validation_alias="PUBLISH_TIMEOUT_SEC")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("kafka_offset_reset")
    @classmethod
    def validate_offset_reset(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"earliest", "latest"}:
            raise ValueError("KAFKA_OFFSET_RESET must be 'earliest' or 'latest'")
        return value

    @field_validator("kafka_security_protocol")
    @classmethod
    def validate_security_protocol(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in SECURITY_PROTOCOLS:
            raise ValueError(f"KAFKA_SECURITY_PROTOCOL must be one of {sorted(SECURITY_PROTOCOLS)}")
        return value

    @field_validator("kafka_sasl_mechanism")
    @classmethod
    def validate_sasl_mechanism(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        value = value.strip().upper()
        if value not in SASL_MECHANISMS:
            raise ValueError(f"KAFKA_SASL_MECHANISM must be one of {sorted(SASL_MECHANISMS)}")
        return value

    @field_validator("alert_threshold_pct", "alert_throttle_secs")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("alert threshold and throttle must be >= 0")
        return value

    @field_validator("publish_timeout_sec")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("PUBLISH_TIMEOUT_SEC must be > 0")
        return value

    @model_validator(mode="after")
    def validate_sasl(self) -> "Settings":
        if self.kafka_security_protocol.startswith("SASL_") and self.kafka_sasl_mechanism is None:
            raise ValueError("KAFKA_SASL_MECHANISM is required for SASL security protocols")
        return self

    @property
    def uses_sasl(self) -> bool:
        return self.kafka_security_protocol.startswith("SASL_")

    @property
    def uses_tls(self) -> bool:
        return self.kafka_security_protocol in {"SSL", "SASL_SSL"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
