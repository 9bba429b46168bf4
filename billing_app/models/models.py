import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from core.date_helper import utc_now
from core.get_db import Base
from models.enums import (
    AgreementEventType,
    AgreementStatus,
    PaymentRecordStatus,
    PaymentSource,
)


class Agreement(Base):
    __tablename__ = "agreements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(
        String(40), unique=True, nullable=False, index=True
    )

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    period_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    status: Mapped[AgreementStatus] = mapped_column(
        Enum(AgreementStatus, native_enum=False),
        nullable=False,
        default=AgreementStatus.ACTIVE,
        index=True,
    )
    last_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # billing day the daily sweep last queued reminders for
    last_sweep_reminded_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    total_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    remaining_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    invoice_number: Mapped[Optional[str]] = mapped_column(
        String(40), unique=True, nullable=True, index=True
    )
    invoice_assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    records: Mapped[List["PaymentRecord"]] = relationship(
        "PaymentRecord",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="PaymentRecord.period_key",
    )
    payments: Mapped[List["AppliedPayment"]] = relationship(
        "AppliedPayment",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="AppliedPayment.id",
    )
    events: Mapped[List["AgreementEvent"]] = relationship(
        "AgreementEvent",
        back_populates="agreement",
        cascade="all, delete-orphan",
        order_by="AgreementEvent.id",
    )

    @validates("customer_phone")
    def validate_phone(self, key, value):
        if value is not None and not re.match(r"^\+?[0-9]{7,15}$", value):
            raise ValueError("Invalid phone number format.")
        return value

    @validates("period_amount")
    def validate_amount(self, key, value):
        if value is not None and value <= 0:
            raise ValueError("Period amount must be positive.")
        return value


class PaymentRecord(Base):
    __tablename__ = "payment_records"
    __table_args__ = (
        UniqueConstraint("agreement_id", "period_key", name="uq_record_period"),
        UniqueConstraint(
            "agreement_id", "external_reference", name="uq_record_reference"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agreement: Mapped["Agreement"] = relationship("Agreement", back_populates="records")

    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    paid_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[PaymentRecordStatus] = mapped_column(
        Enum(PaymentRecordStatus, native_enum=False),
        nullable=False,
        default=PaymentRecordStatus.PENDING,
        index=True,
    )
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    invoice_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class AppliedPayment(Base):
    __tablename__ = "applied_payments"
    __table_args__ = (
        UniqueConstraint(
            "agreement_id", "external_reference", name="uq_applied_reference"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agreement: Mapped["Agreement"] = relationship(
        "Agreement", back_populates="payments"
    )

    external_reference: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_date: Mapped[date] = mapped_column(Date, nullable=False)
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    source: Mapped[PaymentSource] = mapped_column(
        Enum(PaymentSource, native_enum=False), nullable=False
    )
    # period_key -> amount as a string
    allocations: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class AgreementEvent(Base):
    __tablename__ = "agreement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agreement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("agreements.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agreement: Mapped["Agreement"] = relationship("Agreement", back_populates="events")

    event: Mapped[AgreementEventType] = mapped_column(
        Enum(AgreementEventType, native_enum=False), nullable=False
    )
    old_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
