"""Message shapes carried on the pipeline's streams.

Every message travels as a UTF-8 JSON object. Field names on the wire follow
the producers and readers already attached to the streams (``ts``,
``prev_price``, ``pct_change``); decoding accepts either spelling.
"""

from __future__ import annotations

from typing import Optional, Type, TypeVar, Union
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, model_validator

EMPTY_PAYLOAD = "<empty>"

RawPayload = Union[bytes, str, None]


class UnreadablePayload(ValueError):
    """Raised when a payload cannot be turned into a message, whatever the cause."""

    def __init__(self, payload: Optional[str], reason: str) -> None:
        super().__init__(reason)
        self.payload = payload
        self.reason = reason


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Tick(_Message):
    event_id: UUID
    symbol: str = Field(min_length=1)
    price: float = Field(allow_inf_nan=False)
    volume: int
    timestamp: AwareDatetime = Field(alias="ts")
    source: str


class Signal(_Message):
    event_id: UUID
    symbol: str = Field(min_length=1)
    price: float = Field(allow_inf_nan=False)
    previous_price: Optional[float] = Field(default=None, alias="prev_price", allow_inf_nan=False)
    percent_change: Optional[float] = Field(default=None, alias="pct_change", allow_inf_nan=False)
    timestamp: AwareDatetime = Field(alias="ts")
    source: str

    @model_validator(mode="after")
    def check_change_matches_previous(self) -> "Signal":
        if (self.previous_price is None) != (self.percent_change is None):
            raise ValueError("percent_change must be present exactly when previous_price is")
        return self


class Alert(_Message):
    alert_id: UUID
    event_id: UUID
    symbol: str = Field(min_length=1)
    rule: str
    percent_change: float = Field(alias="pct_change", allow_inf_nan=False)
    price: float = Field(allow_inf_nan=False)
    timestamp: AwareDatetime = Field(alias="ts")
    source: str


class DeadLetter(_Message):
    from_stream: str
    payload: str
    captured_at: AwareDatetime


Message = Union[Tick, Signal, Alert, DeadLetter]
M = TypeVar("M", Tick, Signal, Alert, DeadLetter)


def encode(message: Message) -> bytes:
    return message.model_dump_json(by_alias=True).encode("utf-8")


def _as_text(raw: RawPayload) -> str:
    if raw is None:
        raise UnreadablePayload(None, "empty payload")
    if isinstance(raw, (bytes, bytearray)):
        try:
            text = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            # undecodable bytes are not kept as text
            raise UnreadablePayload(None, "payload is not valid UTF-8") from exc
    else:
        text = raw
    if not text.strip():
        raise UnreadablePayload(text or None, "empty payload")
    return text


def _decode(model: Type[M], raw: RawPayload) -> M:
    text = _as_text(raw)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        first = exc.errors()[0]["msg"] if exc.error_count() else "invalid"
        raise UnreadablePayload(text, f"not a valid {model.__name__.lower()}: {first}") from exc


def decode_tick(raw: RawPayload) -> Tick:
    return _decode(Tick, raw)


def decode_signal(raw: RawPayload) -> Signal:
    return _decode(Signal, raw)


def decode_alert(raw: RawPayload) -> Alert:
    return _decode(Alert, raw)


def decode_dead_letter(raw: RawPayload) -> DeadLetter:
    return _decode(DeadLetter, raw)
