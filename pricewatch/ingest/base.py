"""Raw provider record and the typed payloads it carries."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from pricewatch.normalize.processor import canonical_timestamp, normalize_price


@dataclass
class RawProviderRecord:
    """Provider feed entry as received, before normalization."""

    flight_identifier: str
    provider: str
    route: str
    schedule: Optional[dict]
    pricing: Optional[dict]
    captured_at: Optional[datetime] = None
    duplicate_group_id: Optional[int] = None


class ScheduleInfo(BaseModel):
    """Flight schedule payload.

    Providers name the same fields differently; the aliases cover the known
    spellings. Timestamps that parse are rewritten as ISO-8601, others are
    kept verbatim so anomaly detection can flag them.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    departure_time: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("departure_time", "departure")
    )
    arrival_time: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("arrival_time", "arrival")
    )
    airline: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("airline", "carrier")
    )
    flight_number: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("flight_number", "number")
    )
    stops: int = Field(default=0, ge=0, validation_alias=AliasChoices("stops", "stop_count"))

    @field_validator("departure_time", "arrival_time", mode="before")
    @classmethod
    def _canonical_time(cls, value):
        if value is None:
            return None
        return canonical_timestamp(str(value))

    @field_validator("flight_number", mode="before")
    @classmethod
    def _flight_number_text(cls, value):
        return None if value is None else str(value).strip().upper()


class PricingInfo(BaseModel):
    """Pricing payload. A price (or amount) is required."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    price: Decimal = Field(validation_alias=AliasChoices("price", "amount"))
    currency: Optional[str] = None
    booking_class: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("booking_class", "cabin_class")
    )

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value):
        return normalize_price(value)
