import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidValueError

Number = Union[int, float]

COUNTER_KEY = "counter"
HISTORY_KEY = "counter_history"
SPECIAL_KEY = "special_animation"


def utcnow():
    return datetime.now(timezone.utc)


def isoformat_now():
    return utcnow().isoformat()


def coerce_number(value):
    """Return `value` if it is a usable tally number, raise otherwise.

    Booleans, strings, NaN and infinities are rejected; strings are not parsed
    so a payload like {"count": "5"} is treated as malformed.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidValueError(f"expected a number, got {type(value).__name__}")
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise InvalidValueError("value must be a finite number")
    return value


def extract_number(record, field="value"):
    """Pull a numeric field out of a store record, or None when unusable."""
    if not isinstance(record, dict):
        return None
    try:
        return coerce_number(record.get(field))
    except InvalidValueError:
        return None


class Origin(str, Enum):
    """Where a change to the in-process counter came from."""

    LOCAL = "local"  # UI / admin action in this process, gets republished
    REMOTE = "remote"  # arrived from the store or relay, never republished


class WritePolicy(str, Enum):
    """How the store settles two writes to the same key."""

    ARRIVAL = "arrival"
    TIMESTAMP = "timestamp"


class HistoryType(str, Enum):
    SET = "set"
    ADD = "add"
    SPECIAL = "special"
    RESET = "reset"


class _WireModel(BaseModel):
    # attributes are snake_case, the store and HTTP payloads use camelCase
    model_config = ConfigDict(populate_by_name=True)

    def to_record(self):
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CounterState(_WireModel):
    value: Number = 0
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    message: Optional[str] = None
    amount: Optional[Number] = None
    special_animation: Optional[bool] = Field(default=None, alias="specialAnimation")

    @classmethod
    def from_record(cls, record):
        if not record:
            return cls()
        return cls.model_validate(record)


class HistoryEntry(_WireModel):
    """One admin action, as kept in the counter_history log."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    value: Number
    previous_value: Optional[Number] = Field(default=None, alias="previousValue")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")
    type: HistoryType
    added_amount: Optional[Number] = Field(default=None, alias="addedAmount")
    message: Optional[str] = None

    @property
    def can_rollback(self):
        return self.type != HistoryType.RESET and self.previous_value is not None


class SpecialAnimationEvent(_WireModel):
    active: bool = False
    message: Optional[str] = None
    amount: Optional[Number] = None
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")

    @classmethod
    def from_record(cls, record):
        if not isinstance(record, dict):
            return cls()
        try:
            return cls.model_validate(record)
        except ValueError:
            return cls()


class CounterUpdate(BaseModel):
    """A change delivered to holder watchers."""

    value: Number
    previous: Optional[Number] = None
    origin: Origin


# --- request payloads ---


class SetValueRequest(BaseModel):
    value: Number

    @field_validator("value", mode="before")
    @classmethod
    def _strict_value(cls, v):
        return coerce_number(v)


class AddRequest(BaseModel):
    amount: Number

    @field_validator("amount", mode="before")
    @classmethod
    def _strict_amount(cls, v):
        return coerce_number(v)


class SpecialRequest(AddRequest):
    message: str = Field(min_length=1, max_length=500)


class DisplayMode(str, Enum):
    COUNTER = "counter"
    SPECIAL = "special"


class DisplayView(BaseModel):
    """What a display should currently show."""

    mode: DisplayMode = DisplayMode.COUNTER
    value: Number = 0
    message: Optional[str] = None
    amount: Optional[Number] = None
    connected: bool = False
