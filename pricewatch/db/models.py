"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pricewatch.db.encryption import EncryptedString

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class WatchStatus:
    """Watch lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    ALL = (ACTIVE, PAUSED, TRIGGERED, EXPIRED, CANCELLED)
    TERMINAL = (EXPIRED, CANCELLED)
    # States the check sweep picks up
    MONITORED = (ACTIVE, TRIGGERED)


class ValidationStatus:
    """Validation states for provider records and observations."""

    PENDING = "pending"
    VALID = "valid"
    SUSPICIOUS = "suspicious"
    INVALID = "invalid"

    ALL = (PENDING, VALID, SUSPICIOUS, INVALID)


class NotificationMethod:
    """Delivery channels a watch can be configured with."""

    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"

    ALL = (EMAIL, PUSH, SMS)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Watch(Base):
    """A user's price watch (flight filter, flight alert or price alert)."""

    __tablename__ = "watches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Criteria
    route: Mapped[str] = mapped_column(String(128), nullable=False)  # Normalized, e.g. "LAX-FLR"
    travel_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)  # Departure / event date
    booking_class: Mapped[str] = mapped_column(String(32), default="economy", nullable=False)
    target_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    min_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    max_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Alert preferences
    notification_methods: Mapped[list] = mapped_column(
        JSONType, default=lambda: ["email"], nullable=False
    )  # Any combination of email, push, sms
    monitor_frequency: Mapped[Optional[str]] = mapped_column(
        String(16), nullable=True
    )  # real-time, hourly, daily, weekly

    # State
    status: Mapped[str] = mapped_column(String(16), default=WatchStatus.ACTIVE, nullable=False)
    quality_score: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_triggered_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    # Relationships (eager: async sessions cannot lazy-load)
    triggers: Mapped[list["TriggerEvent"]] = relationship(
        "TriggerEvent",
        back_populates="watch",
        cascade="all, delete-orphan",
        order_by="TriggerEvent.id",
        lazy="selectin",
    )
    notifications: Mapped[list["NotificationRecord"]] = relationship(
        "NotificationRecord",
        back_populates="watch",
        cascade="all, delete-orphan",
        order_by="NotificationRecord.id",
        lazy="selectin",
    )
    booking_actions: Mapped[list["BookingAction"]] = relationship(
        "BookingAction",
        back_populates="watch",
        cascade="all, delete-orphan",
        order_by="BookingAction.id",
        lazy="selectin",
    )
    auto_buy: Mapped[Optional["AutoBuySetting"]] = relationship(
        "AutoBuySetting",
        back_populates="watch",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'paused', 'triggered', 'expired', 'cancelled')",
            name="ck_watch_status",
        ),
        CheckConstraint(
            "quality_score >= 0.1 AND quality_score <= 1.0", name="ck_watch_quality_score"
        ),
        CheckConstraint("target_price > 0", name="ck_watch_target_price"),
        Index("ix_watches_status_next_check", "status", "next_check_at"),
    )

    @property
    def failed_notification_count(self) -> int:
        return sum(1 for n in self.notifications if not n.success)


class TriggerEvent(Base):
    """Append-only record of a watch matching its target."""

    __tablename__ = "watch_triggers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    watch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watches.id"), nullable=False, index=True
    )
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    drop_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    drop_percentage: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)

    watch: Mapped["Watch"] = relationship("Watch", back_populates="triggers")


class NotificationRecord(Base):
    """Outcome of one notification dispatch for a watch."""

    __tablename__ = "watch_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    watch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watches.id"), nullable=False, index=True
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    method: Mapped[str] = mapped_column(String(16), nullable=False)
    # price_drop, auto_buy_success, auto_buy_failed, auto_buy_exhausted,
    # delivery_failure, digest
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    watch: Mapped["Watch"] = relationship("Watch", back_populates="notifications")


class BookingAction(Base):
    """Outcome of one auto-buy purchase attempt."""

    __tablename__ = "watch_booking_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    watch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watches.id"), nullable=False, index=True
    )
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confirmation: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    watch: Mapped["Watch"] = relationship("Watch", back_populates="booking_actions")


class AutoBuySetting(Base):
    """Automated purchase configuration for a watch."""

    __tablename__ = "auto_buy_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    watch_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("watches.id"), nullable=False, unique=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    payment_method_type: Mapped[str] = mapped_column(
        String(16), default="credit_card", nullable=False
    )  # credit_card, paypal
    payment_reference: Mapped[Optional[str]] = mapped_column(
        EncryptedString(512), nullable=True
    )
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    attempts_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    watch: Mapped["Watch"] = relationship("Watch", back_populates="auto_buy")

    __table_args__ = (
        CheckConstraint("max_attempts >= 1 AND max_attempts <= 5", name="ck_auto_buy_max_attempts"),
        CheckConstraint(
            "attempts_count >= 0 AND attempts_count <= max_attempts",
            name="ck_auto_buy_attempts_count",
        ),
    )

    @property
    def payment_configured(self) -> bool:
        return bool(self.payment_reference)

    @property
    def max_attempts_reached(self) -> bool:
        return self.attempts_count >= self.max_attempts

    @property
    def can_attempt(self) -> bool:
        return self.enabled and self.payment_configured and not self.max_attempts_reached


class PriceObservation(Base):
    """Canonical price data point for a route, date and provider."""

    __tablename__ = "price_observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    route: Mapped[str] = mapped_column(String(128), nullable=False)
    travel_date: Mapped[date] = mapped_column(Date, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    booking_class: Mapped[str] = mapped_column(String(32), default="economy", nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    validation_status: Mapped[str] = mapped_column(
        String(16), default=ValidationStatus.VALID, nullable=False
    )
    quality_score: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    source_record_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "route", "travel_date", "provider", "booking_class",
            name="uq_observation_route_date_provider_class",
        ),
        CheckConstraint("price > 0", name="ck_observation_price"),
        CheckConstraint(
            "quality_score >= 0.1 AND quality_score <= 1.0",
            name="ck_observation_quality_score",
        ),
        Index("ix_price_observations_route_captured", "route", "captured_at"),
    )


class ProviderRecord(Base):
    """Raw provider feed entry, kept until merged and purged."""

    __tablename__ = "provider_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    flight_identifier: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    route: Mapped[str] = mapped_column(String(128), nullable=False)
    schedule: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    pricing: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    captured_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    validation_status: Mapped[str] = mapped_column(
        String(16), default=ValidationStatus.PENDING, nullable=False
    )
    # Records sharing a group describe the same flight; canonical_id is set on
    # the non-canonical members once the group is merged.
    group_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True, index=True)
    duplicate_group_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    canonical_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("provider", "flight_identifier", name="uq_provider_flight_identifier"),
        Index("ix_provider_records_captured_at", "captured_at"),
    )
