from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)

from marketplace_shared.database import Base, UTCDateTime

from .states import BookingPaymentStatus, BookingStatus, PaymentStatus


def _utcnow():
    return datetime.now(timezone.utc)


def _enum_column(enum_cls, name: str):
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
        length=16,
    )


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)
    reservation_id = Column(String, unique=True, nullable=True)

    service_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)
    service_name = Column(String, nullable=True)

    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    # copied from the service when reserved; later catalog edits must not move it
    duration_minutes = Column(Integer, nullable=False)

    status = Column(_enum_column(BookingStatus, "booking_status"), nullable=False, index=True)
    payment_status = Column(_enum_column(BookingPaymentStatus, "booking_payment_status"), nullable=False)

    total_price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    location = Column(String, nullable=False)
    address = Column(String, nullable=True)

    confirmed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_bookings_interval"),
        Index("ix_bookings_provider_window", "provider_id", "start_at", "end_at"),
        Index("ix_bookings_service_window", "service_id", "start_at", "end_at"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.booking_id} provider={self.provider_id} {self.start_at}..{self.end_at} {self.status}>"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), unique=True, nullable=False)

    customer_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum_column(PaymentStatus, "payment_status"), nullable=False, index=True)
    payment_method = Column(String, nullable=False, default="stripe")
    external_payment_reference = Column(String, unique=True, nullable=False)

    paid_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)

