from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"
    investment = "investment"
    loan = "loan"
    other = "other"


class AccountStatus(str, Enum):
    active = "active"
    inactive = "inactive"
    closed = "closed"


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    reversed = "reversed"


class BillStatus(str, Enum):
    open = "open"
    partially_paid = "partially_paid"
    paid = "paid"
    overdue = "overdue"
    overpaid = "overpaid"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Payee(Base, TimestampMixin):
    __tablename__ = "payees"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_payee_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        SAEnum(AccountStatus), nullable=False, default=AccountStatus.active
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    initial_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    credit_limit: Mapped[Optional[int]] = mapped_column(BigInteger)
    bill_generation_day: Mapped[Optional[int]] = mapped_column(Integer)
    payment_due_day: Mapped[Optional[int]] = mapped_column(Integer)
    credit_usage_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("0.00")
    )
    opened_on: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    bills: Mapped[list["CreditCardBill"]] = relationship(
        "CreditCardBill", back_populates="account"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_accounts_user_type", "user_id", "type"),
        UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        CheckConstraint(
            "credit_limit IS NULL OR credit_limit > 0",
            name="ck_accounts_credit_limit_positive",
        ),
        CheckConstraint(
            "bill_generation_day IS NULL OR bill_generation_day BETWEEN 1 AND 31",
            name="ck_accounts_bill_generation_day",
        ),
        CheckConstraint(
            "payment_due_day IS NULL OR payment_due_day BETWEEN 1 AND 31",
            name="ck_accounts_payment_due_day",
        ),
        CheckConstraint(
            "bill_generation_day IS NULL OR payment_due_day IS NULL"
            " OR bill_generation_day <> payment_due_day",
            name="ck_accounts_billing_days_differ",
        ),
    )

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card

    @property
    def available_credit(self) -> Optional[int]:
        if self.credit_limit is None:
            return None
        return self.credit_limit + min(self.current_balance, 0)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.completed
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_amount: Mapped[Optional[int]] = mapped_column(BigInteger)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    payee_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payees.id"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_id]
    )
    from_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[from_account_id]
    )
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    payee: Mapped[Optional["Payee"]] = relationship("Payee")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_from_account", "from_account_id"),
        Index("ix_transactions_to_account", "to_account_id"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        CheckConstraint(
            "to_amount IS NULL OR to_amount >= 0",
            name="ck_transactions_to_amount_non_negative",
        ),
        CheckConstraint(
            "(type = 'transfer' AND account_id IS NULL"
            " AND from_account_id IS NOT NULL AND to_account_id IS NOT NULL"
            " AND from_account_id <> to_account_id)"
            " OR (type <> 'transfer' AND account_id IS NOT NULL"
            " AND from_account_id IS NULL AND to_account_id IS NULL)",
            name="ck_transactions_account_shape",
        ),
    )

    @property
    def account_ids(self) -> list[int]:
        ids = [self.account_id, self.from_account_id, self.to_account_id]
        return [i for i in ids if i is not None]


class CreditCardBill(Base, TimestampMixin):
    __tablename__ = "credit_card_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    cycle_start: Mapped[date] = mapped_column(Date, nullable=False)
    cycle_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    minimum_payment: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[BillStatus] = mapped_column(
        SAEnum(BillStatus), nullable=False, default=BillStatus.open
    )
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="bills")
    payments: Mapped[list["BillPayment"]] = relationship(
        "BillPayment", back_populates="bill", order_by="BillPayment.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint(
            "account_id", "cycle_start", "cycle_end", name="uq_bill_account_cycle"
        ),
        Index("ix_bills_user_due", "user_id", "due_date"),
        CheckConstraint("paid_amount >= 0", name="ck_bills_paid_non_negative"),
        CheckConstraint("minimum_payment >= 0", name="ck_bills_minimum_non_negative"),
        CheckConstraint("cycle_start < cycle_end", name="ck_bills_cycle_order"),
        CheckConstraint("due_date >= cycle_end", name="ck_bills_due_after_cycle"),
    )

    @property
    def amount_due(self) -> int:
        # Negative statement balance is money owed on the card.
        return max(0, -self.statement_balance)

    @property
    def outstanding(self) -> int:
        return max(0, self.amount_due - self.paid_amount)

    @property
    def credit_amount(self) -> int:
        return max(0, self.paid_amount - self.amount_due)


class BillPayment(Base):
    __tablename__ = "bill_payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    bill_id: Mapped[int] = mapped_column(
        ForeignKey("credit_card_bills.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_on: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    bill: Mapped["CreditCardBill"] = relationship(
        "CreditCardBill", back_populates="payments"
    )
    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_bill_payments_amount_non_negative"),
    )
