from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    ConversionFailure,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from fx_rates import StaticRateSource
from models import (
    Account,
    AccountType,
    BillPayment,
    BillStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    BillPaymentIn,
    DepositIn,
    TransactionEdit,
    WithdrawalIn,
)
from scheduler import run_billing
from services import (
    AccountService,
    BillingService,
    TransactionService,
    minimum_payment,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_card(session, name: str = "Card", currency: str = "INR", user_id: int = 1):
    return AccountService(session, user_id).create(
        AccountIn(
            name=name,
            type=AccountType.credit_card,
            currency=currency,
            credit_limit=100_000,
            bill_generation_day=5,
            payment_due_day=25,
        )
    )


def spend(session, card_id: int, amount: int, day: date, user_id: int = 1):
    return TransactionService(session, user_id).create(
        WithdrawalIn(account_id=card_id, amount=amount, date=day)
    )


def card_with_january_cycle(session):
    card = make_card(session)
    spend(session, card.id, 30_000, date(2025, 1, 10))
    TransactionService(session).create(
        DepositIn(account_id=card.id, amount=5_000, date=date(2025, 1, 20))
    )
    spend(session, card.id, 10_000, date(2025, 2, 2))
    spend(session, card.id, 999, date(2025, 2, 6))  # next cycle
    spend(session, card.id, 1_111, date(2025, 1, 4))  # previous cycle
    return card


TODAY = date(2025, 2, 10)


def test_generated_bill_covers_the_last_complete_cycle() -> None:
    session = make_session()
    card = card_with_january_cycle(session)

    result = BillingService(session).generate_bill(card.id, today=TODAY)

    bill = result.bill
    assert result.created is True
    assert (bill.cycle_start, bill.cycle_end) == (date(2025, 1, 5), date(2025, 2, 5))
    assert bill.due_date == date(2025, 2, 25)
    assert bill.statement_balance == -35_000
    assert bill.amount_due == 35_000
    assert bill.transaction_count == 3
    assert bill.minimum_payment == 2_500
    assert bill.status == BillStatus.open


def test_generation_is_idempotent_per_cycle() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)

    first = billing.generate_bill(card.id, today=TODAY)
    second = billing.generate_bill(card.id, today=date(2025, 3, 4))

    assert second.created is False
    assert second.bill.id == first.bill.id
    assert len(billing.list_bills(account_id=card.id)) == 1


def test_losing_the_insert_race_returns_the_existing_bill() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)
    first = billing.generate_bill(card.id, today=TODAY)

    lookup = billing._last_bill
    calls = []

    def stale_lookup(account_id):
        calls.append(account_id)
        return None if len(calls) == 1 else lookup(account_id)

    billing._last_bill = stale_lookup
    second = billing.generate_bill(card.id, today=TODAY)

    assert len(calls) == 2
    assert second.created is False
    assert second.bill.id == first.bill.id


def test_bill_with_nothing_owed_is_created_paid() -> None:
    session = make_session()
    card = make_card(session)

    result = BillingService(session).generate_bill(card.id, today=TODAY)

    assert result.bill.statement_balance == 0
    assert result.bill.amount_due == 0
    assert result.bill.status == BillStatus.paid


def test_only_credit_cards_are_billed() -> None:
    session = make_session()
    checking = AccountService(session).create(
        AccountIn(name="Checking", type=AccountType.checking, currency="INR")
    )
    billing = BillingService(session)

    with pytest.raises(ValidationError):
        billing.generate_bill(checking.id, today=TODAY)
    with pytest.raises(NotFoundError):
        billing.generate_bill(999, today=TODAY)


def test_payments_move_bill_through_partial_paid_and_overpaid() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)
    bill = billing.generate_bill(card.id, today=TODAY).bill
    balance_before = card.current_balance

    bill = billing.record_payment(
        bill.id, BillPaymentIn(amount=10_000, paid_on=date(2025, 2, 12))
    )
    assert bill.status == BillStatus.partially_paid
    assert bill.outstanding == 25_000

    bill = billing.record_payment(
        bill.id, BillPaymentIn(amount=25_000, paid_on=date(2025, 2, 20))
    )
    assert bill.status == BillStatus.paid
    assert bill.outstanding == 0

    bill = billing.record_payment(
        bill.id, BillPaymentIn(amount=500, paid_on=date(2025, 2, 21))
    )
    assert bill.status == BillStatus.overpaid
    assert bill.credit_amount == 500
    assert bill.paid_amount == 35_500

    payments = session.scalars(
        select(BillPayment).where(BillPayment.bill_id == bill.id)
    ).all()
    assert [p.amount for p in payments] == [10_000, 25_000, 500]
    assert all(p.transaction_id is None for p in payments)
    # Without a funding account the card balance is untouched.
    assert session.get(Account, card.id).current_balance == balance_before


def test_payment_from_funding_account_posts_a_transfer() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    checking = AccountService(session).create(
        AccountIn(
            name="Checking",
            type=AccountType.checking,
            currency="INR",
            initial_balance=100_000,
        )
    )
    billing = BillingService(session)
    bill = billing.generate_bill(card.id, today=TODAY).bill
    card_balance = session.get(Account, card.id).current_balance

    bill = billing.record_payment(
        bill.id,
        BillPaymentIn(
            amount=35_000, paid_on=date(2025, 2, 20), from_account_id=checking.id
        ),
    )

    assert bill.status == BillStatus.paid
    assert session.get(Account, checking.id).current_balance == 65_000
    assert session.get(Account, card.id).current_balance == card_balance + 35_000
    payment = session.scalars(select(BillPayment)).one()
    txn = session.get(Transaction, payment.transaction_id)
    assert txn.type == TransactionType.transfer
    assert (txn.from_account_id, txn.to_account_id) == (checking.id, card.id)


def test_failed_funding_transfer_leaves_bill_unpaid() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)
    bill = billing.generate_bill(card.id, today=TODAY).bill

    with pytest.raises(ReferentialIntegrityError):
        billing.record_payment(
            bill.id,
            BillPaymentIn(amount=1_000, paid_on=date(2025, 2, 20), from_account_id=999),
        )

    bill = billing.get_bill(bill.id)
    assert bill.paid_amount == 0
    assert bill.status == BillStatus.open
    assert session.scalars(select(BillPayment)).all() == []


def test_open_bills_past_due_become_overdue() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)
    bill = billing.generate_bill(card.id, today=TODAY).bill

    assert billing.mark_overdue(today=date(2025, 2, 25)) == 0
    assert billing.mark_overdue(today=date(2025, 2, 26)) == 1
    assert billing.get_bill(bill.id).status == BillStatus.overdue

    bill = billing.record_payment(
        bill.id, BillPaymentIn(amount=1_000, paid_on=date(2025, 2, 27))
    )
    assert bill.status == BillStatus.partially_paid
    bill = billing.record_payment(
        bill.id, BillPaymentIn(amount=34_000, paid_on=date(2025, 2, 28))
    )
    assert bill.status == BillStatus.paid


def test_bills_summary_converts_each_card_currency() -> None:
    session = make_session()
    inr_card = card_with_january_cycle(session)
    usd_card = make_card(session, "Travel card", currency="USD")
    spend(session, usd_card.id, 100, date(2025, 1, 15))
    source = StaticRateSource({"USD-INR": "83"})
    billing = BillingService(session, rate_source=source)
    billing.generate_bill(inr_card.id, today=TODAY)
    billing.generate_bill(usd_card.id, today=TODAY)

    summary = billing.bills_summary("INR", today=date(2025, 2, 20))

    assert summary.total_outstanding == 35_000 + 8_300
    assert summary.upcoming_due == 35_000 + 8_300
    assert summary.unpaid_bills == 2
    assert summary.overdue_bills == 0
    assert summary.next_due_date == date(2025, 2, 25)


def test_bills_summary_refuses_to_guess_a_rate() -> None:
    session = make_session()
    usd_card = make_card(session, "Travel card", currency="USD")
    spend(session, usd_card.id, 100, date(2025, 1, 15))
    billing = BillingService(session, rate_source=StaticRateSource({}))
    billing.generate_bill(usd_card.id, today=TODAY)

    with pytest.raises(ConversionFailure) as excinfo:
        billing.bills_summary("INR", today=TODAY)
    assert excinfo.value.from_currency == "USD"


def test_credit_card_overview_reports_usage_and_dates() -> None:
    session = make_session()
    card = make_card(session)
    spend(session, card.id, 25_000, date(2025, 1, 15))

    [overview] = BillingService(session).credit_card_overviews(today=TODAY)

    assert overview.account_id == card.id
    assert overview.available_credit == 75_000
    assert overview.credit_usage_percentage == Decimal("25.00")
    assert overview.next_bill_generation_date == date(2025, 3, 5)
    assert overview.next_payment_due_date == date(2025, 2, 25)


def test_scheduler_run_bills_every_owner_once() -> None:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        for user_id in (1, 2):
            card = make_card(session, f"Card {user_id}", user_id=user_id)
            spend(session, card.id, 1_000, date(2025, 1, 15), user_id=user_id)

    assert run_billing(factory, today=TODAY) == (2, 0)
    assert run_billing(factory, today=TODAY) == (0, 0)
    assert run_billing(factory, today=date(2025, 3, 1)) == (0, 2)


def test_cycles_that_have_not_ended_cannot_be_billed(monkeypatch) -> None:
    monkeypatch.setattr("services.local_today", lambda: TODAY)
    session = make_session()
    card = card_with_january_cycle(session)
    billing = BillingService(session)

    with pytest.raises(ValidationError):
        billing.generate_bill(card.id, today=date(2099, 6, 6))
    assert billing.list_bills(account_id=card.id) == []

    bill = billing.generate_bill(card.id).bill
    assert bill.cycle_end == date(2025, 2, 5)


def test_changed_generation_day_never_bills_a_transaction_twice() -> None:
    session = make_session()
    card = make_card(session)
    spend(session, card.id, 1_000, date(2025, 1, 1))
    billing = BillingService(session)
    first = billing.generate_bill(card.id, today=date(2025, 1, 6)).bill
    assert (first.cycle_start, first.cycle_end) == (date(2024, 12, 5), date(2025, 1, 5))
    assert first.statement_balance == -1_000

    accounts = AccountService(session)
    accounts.update(card.id, AccountUpdate(bill_generation_day=3))
    earlier = billing.generate_bill(card.id, today=date(2025, 1, 4))
    assert earlier.created is False
    assert earlier.bill.id == first.id

    accounts.update(card.id, AccountUpdate(bill_generation_day=10))
    spend(session, card.id, 200, date(2025, 1, 7))
    second = billing.generate_bill(card.id, today=date(2025, 1, 12))

    assert second.created is True
    assert (second.bill.cycle_start, second.bill.cycle_end) == (
        date(2025, 1, 5),
        date(2025, 1, 10),
    )
    assert second.bill.statement_balance == -200
    assert second.bill.transaction_count == 1


def test_transfer_funding_a_bill_payment_is_protected() -> None:
    session = make_session()
    card = card_with_january_cycle(session)
    checking = AccountService(session).create(
        AccountIn(
            name="Checking",
            type=AccountType.checking,
            currency="INR",
            initial_balance=100_000,
        )
    )
    billing = BillingService(session)
    bill = billing.generate_bill(card.id, today=TODAY).bill
    billing.record_payment(
        bill.id,
        BillPaymentIn(
            amount=35_000, paid_on=date(2025, 2, 20), from_account_id=checking.id
        ),
    )
    txn_id = session.scalars(select(BillPayment)).one().transaction_id
    card_balance = session.get(Account, card.id).current_balance
    txns = TransactionService(session)

    with pytest.raises(ValidationError):
        txns.delete(txn_id)
    with pytest.raises(ValidationError):
        txns.update(txn_id, TransactionEdit(amount=1_000))
    with pytest.raises(ValidationError):
        txns.set_status(txn_id, TransactionStatus.reversed)
    txns.update(txn_id, TransactionEdit(notes="card payment"))

    assert billing.get_bill(bill.id).status == BillStatus.paid
    assert billing.get_bill(bill.id).paid_amount == 35_000
    assert session.get(Account, checking.id).current_balance == 65_000
    assert session.get(Account, card.id).current_balance == card_balance
    assert txns.get(txn_id).notes == "card payment"


def test_minimum_payment() -> None:
    assert minimum_payment(0) == 0
    assert minimum_payment(1_000) == 1_000
    assert minimum_payment(35_000) == 2_500
    assert minimum_payment(100_000) == 5_000
    assert minimum_payment(100_010) == 5_001
