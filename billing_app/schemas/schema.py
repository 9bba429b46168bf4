from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

import phonenumbers
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from models.enums import AgreementStatus, PaymentRecordStatus

MINOR_UNITS = Decimal("100")


class CreateAgreementSchema(BaseModel):
    customer_name: str = Field(..., min_length=2, max_length=255)
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = None
    period_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    total_amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=12, decimal_places=2
    )
    start_date: date
    end_date: Optional[date] = None
    notes: Optional[str] = None

    @field_validator("customer_name", mode="before")
    @classmethod
    def strip_name(cls, value: str):
        return value.strip() if isinstance(value, str) else value

    @field_validator("customer_email", mode="before")
    @classmethod
    def normalize_email(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
        return value or None

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, value: Optional[str]):
        if value is None:
            return value
        try:
            parsed = phonenumbers.parse(value, None)
        except phonenumbers.NumberParseException:
            raise ValueError("Invalid phone number format. Use e.g. +2348012345678")
        if not phonenumbers.is_valid_number(parsed):
            raise ValueError("Invalid phone number. Use full international format.")
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


class ManualPaymentSchema(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    method: Optional[str] = Field(default=None, max_length=40)
    paid_date: Optional[date] = None
    target_period_key: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    external_reference: Optional[str] = Field(default=None, min_length=1, max_length=120)


class PaymentRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    period_key: str
    amount: Decimal
    amount_paid: Decimal
    due_date: date
    paid_date: Optional[date] = None
    status: PaymentRecordStatus
    method: Optional[str] = None
    external_reference: Optional[str] = None
    invoice_number: Optional[str] = None


class AgreementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    reference: str
    customer_name: str
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    period_amount: Decimal
    total_amount: Optional[Decimal] = None
    start_date: date
    end_date: Optional[date] = None
    status: AgreementStatus
    total_paid: Decimal
    remaining_amount: Decimal
    invoice_number: Optional[str] = None
    last_reminder_sent_at: Optional[datetime] = None
    last_sweep_reminded_on: Optional[date] = None
    records: List[PaymentRecordOut] = []


class LedgerStateOut(BaseModel):
    agreement: AgreementOut
    credit: Decimal = Decimal("0")
    outstanding_balance: Decimal = Decimal("0")
    duplicate: bool = False
    settled_periods: List[str] = []
    invoice_number: Optional[str] = None


class GatewayChargeMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    agreement_id: str


class GatewayChargeData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reference: str = Field(..., min_length=1)
    # minor units (kobo), as the gateway reports them
    amount: int = Field(..., gt=0)
    paid_at: Optional[datetime] = None
    channel: Optional[str] = None
    metadata: GatewayChargeMetadata

    @property
    def major_amount(self) -> Decimal:
        return Decimal(self.amount) / MINOR_UNITS


class GatewayEventSchema(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    data: GatewayChargeData


class ReconcileAck(BaseModel):
    status: str
    reference: Optional[str] = None
    agreement_id: Optional[uuid.UUID] = None
    duplicate: bool = False
    settled_periods: List[str] = []
    total_paid: Optional[Decimal] = None
    remaining_amount: Optional[Decimal] = None


class ReminderAck(BaseModel):
    agreement_id: uuid.UUID
    sent: bool
    outstanding_count: int
    outstanding_amount: Decimal
    last_reminder_sent_at: Optional[datetime] = None
    message: str


class SweepFailure(BaseModel):
    agreement_id: uuid.UUID
    error: str


class SweepResult(BaseModel):
    as_of: date
    processed: int = 0
    generated: int = 0
    overdue_transitioned: int = 0
    reminders_sent: int = 0
    notification_failures: int = 0
    completed: int = 0
    skipped: int = 0
    failures: List[SweepFailure] = []


@dataclass
class InvoiceLine:
    period_key: str
    due_date: date
    amount: Decimal
    amount_paid: Decimal
    status: str


@dataclass
class InvoiceData:
    invoice_number: str
    agreement_reference: str
    customer_name: str
    customer_email: Optional[str]
    issued_on: date
    currency: str
    total_paid: Decimal
    remaining_amount: Decimal
    lines: List[InvoiceLine] = field(default_factory=list)
