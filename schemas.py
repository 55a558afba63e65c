import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    AccountStatus,
    AccountType,
    BillStatus,
    TransactionStatus,
    TransactionType,
)

MAX_MINOR_UNITS = 2**63 - 1

MinorUnits = Annotated[int, Field(ge=0, le=MAX_MINOR_UNITS)]
SignedMinorUnits = Annotated[int, Field(ge=-MAX_MINOR_UNITS, le=MAX_MINOR_UNITS)]
DayOfMonth = Annotated[int, Field(ge=1, le=31)]


def _normalize_currency(value: str) -> str:
    code = value.strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError("Currency must be a three-letter ISO code")
    return code


class AccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    currency: str
    initial_balance: SignedMinorUnits = 0
    opened_on: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    credit_limit: Optional[int] = Field(default=None, gt=0, le=MAX_MINOR_UNITS)
    bill_generation_day: Optional[DayOfMonth] = None
    payment_due_day: Optional[DayOfMonth] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return _normalize_currency(value)


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    status: Optional[AccountStatus] = None
    initial_balance: Optional[SignedMinorUnits] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    credit_limit: Optional[int] = Field(default=None, gt=0, le=MAX_MINOR_UNITS)
    bill_generation_day: Optional[DayOfMonth] = None
    payment_due_day: Optional[DayOfMonth] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    status: AccountStatus
    currency: str
    initial_balance: int
    current_balance: int
    credit_limit: Optional[int]
    bill_generation_day: Optional[int]
    payment_due_day: Optional[int]
    credit_usage_percentage: Decimal
    available_credit: Optional[int]


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class PayeeIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class _TransactionFields(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: MinorUnits
    date: dt.date
    status: TransactionStatus = TransactionStatus.completed
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class DepositIn(_TransactionFields):
    type: Literal["deposit"] = "deposit"
    account_id: int


class WithdrawalIn(_TransactionFields):
    type: Literal["withdrawal"] = "withdrawal"
    account_id: int


class TransferIn(_TransactionFields):
    type: Literal["transfer"] = "transfer"
    from_account_id: int
    to_account_id: int
    # Credited amount in the destination currency; required across currencies.
    to_amount: Optional[MinorUnits] = None


TransactionIn = Annotated[
    Union[DepositIn, WithdrawalIn, TransferIn], Field(discriminator="type")
]


class TransactionEdit(BaseModel):
    """Partial edit; only fields present in the request are changed."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    amount: Optional[MinorUnits] = None
    to_amount: Optional[MinorUnits] = None
    account_id: Optional[int] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    date: Optional[dt.date] = None
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    status: TransactionStatus
    amount: int
    to_amount: Optional[int]
    account_id: Optional[int]
    from_account_id: Optional[int]
    to_account_id: Optional[int]
    date: date
    category_id: Optional[int]
    payee_id: Optional[int]
    notes: Optional[str]


class BillPaymentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: MinorUnits
    paid_on: date
    note: Optional[str] = Field(default=None, max_length=500)
    # When set, the payment also posts a transfer from this account to the card.
    from_account_id: Optional[int] = None
    # Debited amount in the funding account's currency; required across currencies.
    from_amount: Optional[MinorUnits] = None


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    cycle_start: date
    cycle_end: date
    due_date: date
    statement_balance: int
    minimum_payment: int
    paid_amount: int
    amount_due: int
    outstanding: int
    credit_amount: int
    status: BillStatus
    transaction_count: int


class ConversionStatus(BaseModel):
    success: bool = True
    failed_currencies: list[str] = Field(default_factory=list)
    approximate: bool = False


class AccountSummaryLine(BaseModel):
    account_id: int
    name: str
    type: AccountType
    currency: str
    balance: int
    converted_balance: int
    rate: Decimal
    converted: bool


class SummaryOut(BaseModel):
    display_currency: str
    window_start: date
    window_end: date
    total_balance: int
    total_income: int
    total_expense: int
    accounts: list[AccountSummaryLine]
    recent_transactions: list[TransactionOut]
    conversion_status: ConversionStatus


class RecalculateOut(BaseModel):
    updated_count: int
    drifted_account_ids: list[int] = Field(default_factory=list)


class BillsSummaryOut(BaseModel):
    display_currency: str
    total_outstanding: int
    total_overdue: int
    upcoming_due: int
    total_bills: int
    paid_bills: int
    unpaid_bills: int
    overdue_bills: int
    next_due_date: Optional[date]


class CreditCardOverview(BaseModel):
    account_id: int
    name: str
    currency: str
    credit_limit: int
    current_balance: int
    available_credit: int
    credit_usage_percentage: Decimal
    next_bill_generation_date: date
    next_payment_due_date: date


class MonthlyFlow(BaseModel):
    year: int
    month: int
    income: int
    expense: int


class CategoryTotal(BaseModel):
    category_id: Optional[int]
    name: str
    amount: int


class IncomeExpenseReport(BaseModel):
    display_currency: str
    months: list[MonthlyFlow]
    conversion_status: ConversionStatus


class CategoryReport(BaseModel):
    display_currency: str
    categories: list[CategoryTotal]
    conversion_status: ConversionStatus


class GenerationResult(BaseModel):
    bill: BillOut
    created: bool
