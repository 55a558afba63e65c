from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, Optional, TypeVar, Union

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from errors import (
    ConcurrencyConflict,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ReferentialIntegrityError,
    ValidationError,
)
from fx_rates import Conversion, FxRateService, RateSource, rate_source_from_settings
from models import (
    Account,
    AccountStatus,
    AccountType,
    BillPayment,
    BillStatus,
    Category,
    CreditCardBill,
    Payee,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from periods import (
    Period,
    billing_cycle,
    latest_generation_date,
    local_today,
    next_occurrence_after,
    trailing_window,
)
from schemas import (
    MAX_MINOR_UNITS,
    AccountIn,
    AccountSummaryLine,
    AccountUpdate,
    BillPaymentIn,
    BillsSummaryOut,
    CategoryIn,
    CategoryReport,
    CategoryTotal,
    ConversionStatus,
    CreditCardOverview,
    DepositIn,
    IncomeExpenseReport,
    MonthlyFlow,
    PayeeIn,
    RecalculateOut,
    SummaryOut,
    TransactionEdit,
    TransactionOut,
    TransferIn,
    WithdrawalIn,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionRequest = Union[DepositIn, WithdrawalIn, TransferIn]

_LOCK_CONFLICT_MARKERS = (
    "database is locked",
    "deadlock",
    "could not serialize",
    "could not obtain lock",
    "lock wait timeout",
)

_STATUS_TRANSITIONS = {
    TransactionStatus.pending: {
        TransactionStatus.pending,
        TransactionStatus.completed,
        TransactionStatus.reversed,
    },
    TransactionStatus.completed: {
        TransactionStatus.completed,
        TransactionStatus.reversed,
    },
    TransactionStatus.reversed: {TransactionStatus.reversed},
}

MAX_WINDOW_DAYS = 36_500

UNPAID_BILL_STATUSES = (
    BillStatus.open,
    BillStatus.partially_paid,
    BillStatus.overdue,
)


def get_current_user_id() -> int:
    return 1


def supports_row_locks(session: Session) -> bool:
    # SQLite has no SELECT ... FOR UPDATE; version counters catch races there.
    return session.get_bind().dialect.name != "sqlite"


def _is_lock_conflict(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _LOCK_CONFLICT_MARKERS)
    return False


def credit_usage_percentage(balance: int, credit_limit: Optional[int]) -> Decimal:
    if not credit_limit or credit_limit <= 0 or balance >= 0:
        return Decimal("0.00")
    usage = Decimal(-balance) * 100 / Decimal(credit_limit)
    return min(usage, Decimal(100)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class UnitOfWork:
    """Base for services whose writes must land all together or not at all.

    ``_atomic`` runs ``work`` and commits. Any failure rolls the whole unit
    back. Lost races (stale version counters, lock timeouts, deadlocks) re-run
    ``work`` from scratch up to ``lock_retries`` more times.
    """

    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        lock_retries: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        if lock_retries is None:
            lock_retries = get_settings().lock_retries
        self.lock_retries = lock_retries

    def _atomic(self, operation: str, work: Callable[[], T]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = work()
                self.session.commit()
                return result
            except LedgerError:
                self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                if not _is_lock_conflict(exc):
                    logger.error(
                        f"uow_failed: op={operation} user_id={self.user_id}"
                        f" error={exc.__class__.__name__}"
                    )
                    raise PersistenceError(f"{operation} could not be saved") from exc
                if attempt > self.lock_retries:
                    logger.warning(
                        f"uow_conflict: op={operation} user_id={self.user_id}"
                        f" attempts={attempt}"
                    )
                    raise ConcurrencyConflict(operation, attempt) from exc
                logger.info(f"uow_retry: op={operation} attempt={attempt}")
            except BaseException:
                self.session.rollback()
                raise


@dataclass(frozen=True)
class TransactionSnapshot:
    """Balance-relevant fields of a transaction at one point in time."""

    type: TransactionType
    status: TransactionStatus
    amount: int
    to_amount: Optional[int] = None
    account_id: Optional[int] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    deleted: bool = False

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            type=txn.type,
            status=txn.status,
            amount=txn.amount,
            to_amount=txn.to_amount,
            account_id=txn.account_id,
            from_account_id=txn.from_account_id,
            to_account_id=txn.to_account_id,
            deleted=txn.deleted_at is not None,
        )

    @classmethod
    def from_request(cls, data: TransactionRequest) -> "TransactionSnapshot":
        txn_type = TransactionType(data.type)
        if isinstance(data, TransferIn):
            return cls(
                type=txn_type,
                status=data.status,
                amount=data.amount,
                to_amount=data.to_amount,
                from_account_id=data.from_account_id,
                to_account_id=data.to_account_id,
            )
        return cls(
            type=txn_type,
            status=data.status,
            amount=data.amount,
            account_id=data.account_id,
        )

    @property
    def account_ids(self) -> set[int]:
        ids = {self.account_id, self.from_account_id, self.to_account_id}
        ids.discard(None)
        return ids

    @property
    def is_effective(self) -> bool:
        return self.status == TransactionStatus.completed and not self.deleted

    @property
    def credited_amount(self) -> int:
        return self.amount if self.to_amount is None else self.to_amount


def effects_of(snapshot: TransactionSnapshot) -> dict[int, int]:
    if not snapshot.is_effective:
        return {}
    if snapshot.type == TransactionType.deposit:
        return {snapshot.account_id: snapshot.amount}
    if snapshot.type == TransactionType.withdrawal:
        return {snapshot.account_id: -snapshot.amount}
    return {
        snapshot.from_account_id: -snapshot.amount,
        snapshot.to_account_id: snapshot.credited_amount,
    }


def _negated(deltas: dict[int, int]) -> dict[int, int]:
    return {account_id: -delta for account_id, delta in deltas.items()}


def _net_effect_column(account_id: int):
    credited = func.coalesce(Transaction.to_amount, Transaction.amount)
    return case(
        (
            and_(
                Transaction.type == TransactionType.deposit,
                Transaction.account_id == account_id,
            ),
            Transaction.amount,
        ),
        (
            and_(
                Transaction.type == TransactionType.withdrawal,
                Transaction.account_id == account_id,
            ),
            -Transaction.amount,
        ),
        (
            and_(
                Transaction.type == TransactionType.transfer,
                Transaction.to_account_id == account_id,
            ),
            credited,
        ),
        (
            and_(
                Transaction.type == TransactionType.transfer,
                Transaction.from_account_id == account_id,
            ),
            -Transaction.amount,
        ),
        else_=0,
    )


class BalanceEngine:
    """Keeps ``Account.current_balance`` in step with the transactions.

    Every method runs inside the caller's unit of work and never commits.
    Accounts are always locked in ascending id order.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.row_locks = supports_row_locks(session)

    def lock_accounts(self, account_ids: Iterable[int]) -> dict[int, Account]:
        locked: dict[int, Account] = {}
        for account_id in sorted(set(account_ids)):
            stmt = (
                select(Account)
                .where(Account.id == account_id)
                .execution_options(populate_existing=True)
            )
            if self.row_locks:
                stmt = stmt.with_for_update()
            account = self.session.scalar(stmt)
            if account is None:
                raise ReferentialIntegrityError(f"Account {account_id} not found")
            locked[account_id] = account
        return locked

    def shift_balances(
        self, accounts: dict[int, Account], deltas: dict[int, int]
    ) -> None:
        for account_id in sorted(deltas):
            delta = deltas[account_id]
            if delta == 0:
                continue
            account = accounts[account_id]
            balance = account.current_balance + delta
            if abs(balance) > MAX_MINOR_UNITS:
                raise ValidationError(f"Balance of account {account_id} would overflow")
            account.current_balance = balance
            if account.is_credit_card:
                account.credit_usage_percentage = credit_usage_percentage(
                    balance, account.credit_limit
                )
            logger.debug(
                f"balance_shift: account_id={account_id} delta={delta} balance={balance}"
            )

    def apply_transaction(self, snapshot: TransactionSnapshot) -> None:
        accounts = self.lock_accounts(snapshot.account_ids)
        self.shift_balances(accounts, effects_of(snapshot))
        self.session.flush()

    def revert_transaction(self, snapshot: TransactionSnapshot) -> None:
        accounts = self.lock_accounts(snapshot.account_ids)
        self.shift_balances(accounts, _negated(effects_of(snapshot)))
        self.session.flush()

    def edit_transaction(
        self, old: TransactionSnapshot, new: TransactionSnapshot
    ) -> None:
        accounts = self.lock_accounts(old.account_ids | new.account_ids)
        self.shift_balances(accounts, _negated(effects_of(old)))
        self.shift_balances(accounts, effects_of(new))
        self.session.flush()

    def net_effect(
        self,
        account_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> tuple[int, int]:
        """Sum and count of completed, live transactions touching the account.

        ``end`` is exclusive.
        """
        stmt = select(
            func.coalesce(func.sum(_net_effect_column(account_id)), 0),
            func.count(Transaction.id),
        ).where(
            Transaction.status == TransactionStatus.completed,
            Transaction.deleted_at.is_(None),
            or_(
                Transaction.account_id == account_id,
                Transaction.from_account_id == account_id,
                Transaction.to_account_id == account_id,
            ),
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date < end)
        total, count = self.session.execute(stmt).one()
        return int(total or 0), int(count or 0)

    def _recalculate(self, account_id: int) -> tuple[int, bool]:
        account = self.lock_accounts([account_id])[account_id]
        total, _ = self.net_effect(account_id)
        expected = account.initial_balance + total
        drifted = expected != account.current_balance
        if drifted:
            logger.warning(
                f"balance_drift: account_id={account_id}"
                f" stored={account.current_balance} expected={expected}"
            )
            account.current_balance = expected
        if account.is_credit_card:
            account.credit_usage_percentage = credit_usage_percentage(
                expected, account.credit_limit
            )
        self.session.flush()
        return expected, drifted

    def recalculate_account_balance(self, account_id: int) -> int:
        balance, _ = self._recalculate(account_id)
        return balance


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    payee_id: Optional[int] = None
    query: Optional[str] = None


_SNAPSHOT_FIELDS = (
    "type",
    "status",
    "amount",
    "to_amount",
    "account_id",
    "from_account_id",
    "to_account_id",
)


def _merge_edit(old: TransactionSnapshot, data: TransactionEdit) -> TransactionSnapshot:
    provided = {
        name: getattr(data, name)
        for name in _SNAPSHOT_FIELDS
        if name in data.model_fields_set
    }
    merged = old
    new_type = provided.get("type", old.type)
    if new_type is not None and new_type != old.type:
        # Fields belonging to the old shape are dropped unless re-sent.
        if new_type == TransactionType.transfer:
            merged = replace(merged, account_id=None)
        else:
            merged = replace(
                merged, from_account_id=None, to_account_id=None, to_amount=None
            )
    return replace(merged, **provided)


def _check_shape(snapshot: TransactionSnapshot) -> None:
    if snapshot.type is None:
        raise ValidationError("Transaction type is required")
    if snapshot.status is None:
        raise ValidationError("Transaction status is required")
    if snapshot.amount is None or snapshot.amount < 0:
        raise ValidationError("Amount must be a non-negative integer")
    if snapshot.amount > MAX_MINOR_UNITS:
        raise ValidationError("Amount is too large")
    if snapshot.type == TransactionType.transfer:
        if snapshot.account_id is not None:
            raise ValidationError("Transfers use from_account_id and to_account_id")
        if snapshot.from_account_id is None or snapshot.to_account_id is None:
            raise ValidationError("Transfers need both a source and a destination")
        if snapshot.from_account_id == snapshot.to_account_id:
            raise ValidationError("Cannot transfer to the same account")
        if snapshot.to_amount is not None and snapshot.to_amount < 0:
            raise ValidationError("to_amount must be a non-negative integer")
        return
    if snapshot.account_id is None:
        raise ValidationError(f"A {snapshot.type.value} needs an account_id")
    if snapshot.from_account_id is not None or snapshot.to_account_id is not None:
        raise ValidationError(f"A {snapshot.type.value} uses account_id only")
    if snapshot.to_amount is not None:
        raise ValidationError("to_amount applies to transfers only")


class TransactionService(UnitOfWork):
    def _load_for_update(
        self, transaction_id: int, *, include_deleted: bool = False
    ) -> Transaction:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        if supports_row_locks(self.session):
            stmt = stmt.with_for_update()
        txn = self.session.scalar(stmt)
        if not txn or (txn.deleted_at is not None and not include_deleted):
            raise NotFoundError("Transaction not found")
        return txn

    def _guard_bill_payment(self, txn: Transaction, action: str) -> None:
        payment_id = self.session.scalar(
            select(BillPayment.id).where(BillPayment.transaction_id == txn.id)
        )
        if payment_id is not None:
            raise ValidationError(
                f"Transaction {txn.id} funds bill payment {payment_id};"
                f" it cannot be {action}"
            )

    def _owned_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ReferentialIntegrityError(f"Account {account_id} not found")
        return account

    def _check_references(
        self,
        snapshot: TransactionSnapshot,
        category_id: Optional[int],
        payee_id: Optional[int],
        previous: Optional[TransactionSnapshot] = None,
    ) -> TransactionSnapshot:
        """Validate referenced rows; returns the snapshot with to_amount normalised."""
        already_linked = previous.account_ids if previous else set()
        accounts = {i: self._owned_account(i) for i in snapshot.account_ids}
        for account_id, account in accounts.items():
            if (
                account.status == AccountStatus.closed
                and account_id not in already_linked
            ):
                raise ValidationError(f"Account {account_id} is closed")

        if snapshot.type == TransactionType.transfer:
            source = accounts[snapshot.from_account_id]
            target = accounts[snapshot.to_account_id]
            if source.currency != target.currency:
                if snapshot.to_amount is None:
                    raise ValidationError(
                        f"Transfer from {source.currency} to {target.currency}"
                        " needs to_amount in the destination currency"
                    )
            elif snapshot.to_amount is not None:
                if snapshot.to_amount != snapshot.amount:
                    raise ValidationError(
                        "to_amount must equal amount for same-currency transfers"
                    )
                snapshot = replace(snapshot, to_amount=None)

        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise ReferentialIntegrityError("Category not found")
        if payee_id is not None:
            payee = self.session.get(Payee, payee_id)
            if not payee or payee.user_id != self.user_id:
                raise ReferentialIntegrityError("Payee not found")
        return snapshot

    def _write(self, txn: Transaction, snapshot: TransactionSnapshot) -> None:
        txn.type = snapshot.type
        txn.status = snapshot.status
        txn.amount = snapshot.amount
        txn.to_amount = snapshot.to_amount
        txn.account_id = snapshot.account_id
        txn.from_account_id = snapshot.from_account_id
        txn.to_account_id = snapshot.to_account_id

    def insert(self, data: TransactionRequest) -> Transaction:
        """Add and apply a transaction inside the caller's unit of work."""
        snapshot = TransactionSnapshot.from_request(data)
        _check_shape(snapshot)
        snapshot = self._check_references(snapshot, data.category_id, data.payee_id)
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            category_id=data.category_id,
            payee_id=data.payee_id,
            notes=data.notes,
        )
        self._write(txn, snapshot)
        self.session.add(txn)
        self.session.flush()
        BalanceEngine(self.session).apply_transaction(snapshot)
        return txn

    def create(self, data: TransactionRequest) -> Transaction:
        txn = self._atomic("transaction_create", lambda: self.insert(data))
        logger.info(
            f"transaction_create: txn_id={txn.id} user_id={self.user_id}"
            f" type={txn.type.value} status={txn.status.value} amount={txn.amount}"
        )
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        period: Optional[Period] = None,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.status:
            stmt = stmt.where(Transaction.status == filters.status)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.from_account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.payee_id:
            stmt = stmt.where(Transaction.payee_id == filters.payee_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                func.lower(func.coalesce(Transaction.notes, "")).like(like)
            )
        return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 10) -> list[Transaction]:
        return self.list(limit=limit)

    def update(self, transaction_id: int, data: TransactionEdit) -> Transaction:
        fields = data.model_fields_set

        def work() -> Transaction:
            txn = self._load_for_update(transaction_id)
            old = TransactionSnapshot.of(txn)
            new = _merge_edit(old, data)
            if new != old:
                self._guard_bill_payment(txn, "changed")
            _check_shape(new)
            if new.status not in _STATUS_TRANSITIONS[old.status]:
                raise ValidationError(
                    f"Cannot move a {old.status.value} transaction"
                    f" to {new.status.value}"
                )
            category_id = data.category_id if "category_id" in fields else txn.category_id
            payee_id = data.payee_id if "payee_id" in fields else txn.payee_id
            new = self._check_references(new, category_id, payee_id, previous=old)

            BalanceEngine(self.session).edit_transaction(old, new)
            self._write(txn, new)
            txn.category_id = category_id
            txn.payee_id = payee_id
            if "date" in fields:
                if data.date is None:
                    raise ValidationError("Transaction date is required")
                txn.date = data.date
            if "notes" in fields:
                txn.notes = data.notes
            self.session.flush()
            return txn

        txn = self._atomic("transaction_update", work)
        logger.info(
            f"transaction_update: txn_id={txn.id} user_id={self.user_id}"
            f" fields={','.join(sorted(fields))}"
        )
        return txn

    def set_status(self, transaction_id: int, status: TransactionStatus) -> Transaction:
        return self.update(transaction_id, TransactionEdit(status=status))

    def delete(self, transaction_id: int) -> None:
        def work() -> None:
            txn = self._load_for_update(transaction_id)
            self._guard_bill_payment(txn, "deleted")
            old = TransactionSnapshot.of(txn)
            txn.deleted_at = utcnow()
            BalanceEngine(self.session).revert_transaction(old)
            self.session.flush()

        self._atomic("transaction_delete", work)
        logger.info(f"transaction_delete: txn_id={transaction_id} user_id={self.user_id}")

    def restore(self, transaction_id: int) -> Transaction:
        def work() -> Transaction:
            txn = self._load_for_update(transaction_id, include_deleted=True)
            if txn.deleted_at is None:
                return txn
            txn.deleted_at = None
            restored = TransactionSnapshot.of(txn)
            for account_id in restored.account_ids:
                self._owned_account(account_id)
            BalanceEngine(self.session).apply_transaction(restored)
            self.session.flush()
            return txn

        txn = self._atomic("transaction_restore", work)
        logger.info(f"transaction_restore: txn_id={transaction_id} user_id={self.user_id}")
        return txn

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id, Transaction.deleted_at.isnot(None)
            )
            .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


def _check_credit_card_fields(
    account_type: AccountType,
    credit_limit: Optional[int],
    bill_generation_day: Optional[int],
    payment_due_day: Optional[int],
) -> None:
    if account_type != AccountType.credit_card:
        if (
            credit_limit is not None
            or bill_generation_day is not None
            or payment_due_day is not None
        ):
            raise ValidationError("Only credit card accounts have billing settings")
        return
    if credit_limit is None or credit_limit <= 0:
        raise ValidationError("Credit cards need a positive credit limit")
    if bill_generation_day is None or payment_due_day is None:
        raise ValidationError("Credit cards need a bill generation day and a due day")
    for day in (bill_generation_day, payment_due_day):
        if not 1 <= day <= 31:
            raise ValidationError("Billing days must be between 1 and 31")
    if bill_generation_day == payment_due_day:
        raise ValidationError("Bill generation day and payment due day must differ")


def _is_duplicate_name(exc: IntegrityError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc)
    return "uq_account_user_name" in message or "accounts.name" in message


class AccountService(UnitOfWork):
    def list_all(self, include_closed: bool = True) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
        )
        if not include_closed:
            stmt = stmt.where(Account.status != AccountStatus.closed)
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        return account

    def _ensure_name_free(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Account.id).where(
            Account.user_id == self.user_id,
            func.lower(Account.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Account.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError("Account with this name already exists")

    def _atomic_named(self, operation: str, work: Callable[[], Account]) -> Account:
        try:
            return self._atomic(operation, work)
        except PersistenceError as exc:
            cause = exc.__cause__
            if isinstance(cause, IntegrityError) and _is_duplicate_name(cause):
                raise ValidationError("Account with this name already exists") from exc
            raise

    def create(self, data: AccountIn) -> Account:
        _check_credit_card_fields(
            data.type, data.credit_limit, data.bill_generation_day, data.payment_due_day
        )
        self._ensure_name_free(data.name)

        def work() -> Account:
            account = Account(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                currency=data.currency,
                initial_balance=data.initial_balance,
                current_balance=data.initial_balance,
                credit_limit=data.credit_limit,
                bill_generation_day=data.bill_generation_day,
                payment_due_day=data.payment_due_day,
                credit_usage_percentage=credit_usage_percentage(
                    data.initial_balance, data.credit_limit
                ),
                opened_on=data.opened_on,
                notes=data.notes,
            )
            self.session.add(account)
            self.session.flush()
            return account

        account = self._atomic_named("account_create", work)
        logger.info(
            f"account_create: account_id={account.id} user_id={self.user_id}"
            f" type={account.type.value} currency={account.currency}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        fields = data.model_fields_set
        current = self.get(account_id)
        merged = {
            name: getattr(data, name) if name in fields else getattr(current, name)
            for name in ("credit_limit", "bill_generation_day", "payment_due_day")
        }
        _check_credit_card_fields(current.type, **merged)
        for required in ("name", "status", "initial_balance"):
            if required in fields and getattr(data, required) is None:
                raise ValidationError(f"{required} cannot be cleared")
        if "name" in fields:
            self._ensure_name_free(data.name, exclude_id=account_id)

        def work() -> Account:
            engine = BalanceEngine(self.session)
            account = engine.lock_accounts([account_id])[account_id]
            if "initial_balance" in fields:
                delta = data.initial_balance - account.initial_balance
                account.initial_balance = data.initial_balance
                engine.shift_balances({account_id: account}, {account_id: delta})
            if "name" in fields:
                account.name = data.name.strip()
            if "status" in fields:
                account.status = data.status
            if "notes" in fields:
                account.notes = data.notes
            for name, value in merged.items():
                setattr(account, name, value)
            if account.is_credit_card:
                account.credit_usage_percentage = credit_usage_percentage(
                    account.current_balance, account.credit_limit
                )
            self.session.flush()
            return account

        account = self._atomic_named("account_update", work)
        logger.info(
            f"account_update: account_id={account_id} user_id={self.user_id}"
            f" fields={','.join(sorted(fields))}"
        )
        return account

    def close(self, account_id: int) -> Account:
        return self.update(account_id, AccountUpdate(status=AccountStatus.closed))

    def delete(self, account_id: int) -> None:
        self.get(account_id)

        def work() -> None:
            referenced = self.session.scalar(
                select(func.count(Transaction.id)).where(
                    or_(
                        Transaction.account_id == account_id,
                        Transaction.from_account_id == account_id,
                        Transaction.to_account_id == account_id,
                    )
                )
            )
            billed = self.session.scalar(
                select(func.count(CreditCardBill.id)).where(
                    CreditCardBill.account_id == account_id
                )
            )
            if referenced or billed:
                raise ReferentialIntegrityError(
                    "Account has transactions or bills; close it instead"
                )
            account = BalanceEngine(self.session).lock_accounts([account_id])[account_id]
            self.session.delete(account)
            self.session.flush()

        self._atomic("account_delete", work)
        logger.info(f"account_delete: account_id={account_id} user_id={self.user_id}")

    def recalculate_all(self) -> RecalculateOut:
        def work() -> RecalculateOut:
            account_ids = self.session.scalars(
                select(Account.id)
                .where(Account.user_id == self.user_id)
                .order_by(Account.id)
            ).all()
            engine = BalanceEngine(self.session)
            drifted: list[int] = []
            for account_id in account_ids:
                _, changed = engine._recalculate(account_id)
                if changed:
                    drifted.append(account_id)
            return RecalculateOut(
                updated_count=len(account_ids), drifted_account_ids=drifted
            )

        result = self._atomic("recalculate_balances", work)
        logger.info(
            f"recalculate_balances: user_id={self.user_id}"
            f" accounts={result.updated_count} drifted={len(result.drifted_account_ids)}"
        )
        return result


class _NamedLookupService:
    model: type = Category
    label = "Category"

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, include_archived: bool = False) -> list:
        model = self.model
        stmt = (
            select(model)
            .where(model.user_id == self.user_id)
            .order_by(model.name)
        )
        if not include_archived:
            stmt = stmt.where(model.archived_at.is_(None))
        return list(self.session.scalars(stmt).all())

    def _get(self, item_id: int):
        item = self.session.get(self.model, item_id)
        if not item or item.user_id != self.user_id:
            raise NotFoundError(f"{self.label} not found")
        return item

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        model = self.model
        stmt = select(model.id).where(
            model.user_id == self.user_id,
            func.lower(model.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(model.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError(f"{self.label} with this name already exists")

    def _create(self, name: str):
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError(f"{self.label} name is required")
        self._ensure_unique(clean_name)
        item = self.model(user_id=self.user_id, name=clean_name)
        self.session.add(item)
        self.session.commit()
        self.session.refresh(item)
        return item

    def rename(self, item_id: int, name: str):
        item = self._get(item_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError(f"{self.label} name is required")
        self._ensure_unique(clean_name, exclude_id=item.id)
        item.name = clean_name
        self.session.commit()
        return item

    def archive(self, item_id: int) -> None:
        item = self._get(item_id)
        item.archived_at = utcnow()
        self.session.commit()

    def restore(self, item_id: int) -> None:
        item = self._get(item_id)
        item.archived_at = None
        self.session.commit()


class CategoryService(_NamedLookupService):
    model = Category
    label = "Category"

    def create(self, data: CategoryIn) -> Category:
        return self._create(data.name)


class PayeeService(_NamedLookupService):
    model = Payee
    label = "Payee"

    def create(self, data: PayeeIn) -> Payee:
        return self._create(data.name)


@dataclass(frozen=True)
class BillGeneration:
    bill: CreditCardBill
    created: bool


MINIMUM_PAYMENT_RATE = Decimal("0.05")
MINIMUM_PAYMENT_FLOOR = 2_500


def minimum_payment(amount_due: int) -> int:
    """5% of the amount owed, at least the floor, never more than is owed."""
    if amount_due <= 0:
        return 0
    share = (Decimal(amount_due) * MINIMUM_PAYMENT_RATE).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return min(amount_due, max(int(share), MINIMUM_PAYMENT_FLOOR))


def bill_status_after_payment(bill: CreditCardBill) -> BillStatus:
    due = bill.amount_due
    if bill.paid_amount > due:
        return BillStatus.overpaid
    if bill.paid_amount == due:
        return BillStatus.paid
    if bill.paid_amount > 0:
        return BillStatus.partially_paid
    return bill.status


class BillingService(UnitOfWork):
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rate_source: Optional[RateSource] = None,
        lock_retries: Optional[int] = None,
    ) -> None:
        super().__init__(session, user_id, lock_retries)
        self.rate_source = rate_source

    def _card(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError("Account not found")
        if not account.is_credit_card:
            raise ValidationError("Bills exist for credit card accounts only")
        if account.bill_generation_day is None or account.payment_due_day is None:
            raise ValidationError("Credit card has no billing schedule")
        return account

    def _last_bill(self, account_id: int) -> Optional[CreditCardBill]:
        return self.session.scalar(
            select(CreditCardBill)
            .where(CreditCardBill.account_id == account_id)
            .order_by(CreditCardBill.cycle_end.desc())
            .limit(1)
        )

    def generate_bill(
        self, account_id: int, today: Optional[date] = None
    ) -> BillGeneration:
        """Bill the most recent complete cycle, or return the bill that covers it.

        A cycle never reaches back past the end of the card's latest bill, so a
        changed generation day cannot put a transaction on two statements.
        """
        today = today or local_today()
        if today > local_today():
            raise ValidationError("Bills can only be generated for completed cycles")
        card = self._card(account_id)
        cycle = billing_cycle(card.bill_generation_day, card.payment_due_day, today)

        def covering_bill() -> Optional[CreditCardBill]:
            last = self._last_bill(account_id)
            if last is not None and last.cycle_end >= cycle.end:
                return last
            return None

        def work() -> BillGeneration:
            last = self._last_bill(account_id)
            start = cycle.start
            if last is not None:
                if last.cycle_end >= cycle.end:
                    return BillGeneration(last, False)
                start = max(start, last.cycle_end)
            statement, count = BalanceEngine(self.session).net_effect(
                account_id, start, cycle.end
            )
            bill = CreditCardBill(
                user_id=self.user_id,
                account_id=account_id,
                cycle_start=start,
                cycle_end=cycle.end,
                due_date=cycle.due_date,
                statement_balance=statement,
                minimum_payment=minimum_payment(max(0, -statement)),
                paid_amount=0,
                transaction_count=count,
                status=BillStatus.open if statement < 0 else BillStatus.paid,
            )
            self.session.add(bill)
            self.session.flush()
            return BillGeneration(bill, True)

        try:
            result = self._atomic("bill_generate", work)
        except PersistenceError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            # Lost the insert race on the cycle key; the winner's bill stands.
            existing = covering_bill()
            if existing is None:
                raise
            return BillGeneration(existing, False)

        if result.created:
            logger.info(
                f"bill_generate: bill_id={result.bill.id} account_id={account_id}"
                f" cycle={result.bill.cycle_start}..{cycle.end} due={cycle.due_date}"
                f" statement={result.bill.statement_balance}"
            )
        return result

    def auto_generate(self, today: Optional[date] = None) -> list[BillGeneration]:
        card_ids = self.session.scalars(
            select(Account.id)
            .where(
                Account.user_id == self.user_id,
                Account.type == AccountType.credit_card,
                Account.status == AccountStatus.active,
                Account.bill_generation_day.isnot(None),
                Account.payment_due_day.isnot(None),
            )
            .order_by(Account.id)
        ).all()
        return [self.generate_bill(card_id, today) for card_id in card_ids]

    def get_bill(self, bill_id: int) -> CreditCardBill:
        bill = self.session.get(CreditCardBill, bill_id)
        if not bill or bill.user_id != self.user_id:
            raise NotFoundError("Bill not found")
        return bill

    def list_bills(
        self, account_id: Optional[int] = None, status: Optional[BillStatus] = None
    ) -> list[CreditCardBill]:
        stmt = (
            select(CreditCardBill)
            .where(CreditCardBill.user_id == self.user_id)
            .order_by(CreditCardBill.due_date.desc(), CreditCardBill.id.desc())
        )
        if account_id is not None:
            stmt = stmt.where(CreditCardBill.account_id == account_id)
        if status is not None:
            stmt = stmt.where(CreditCardBill.status == status)
        return list(self.session.scalars(stmt).all())

    def _lock_bill(self, bill_id: int) -> CreditCardBill:
        stmt = (
            select(CreditCardBill)
            .where(CreditCardBill.id == bill_id, CreditCardBill.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if supports_row_locks(self.session):
            stmt = stmt.with_for_update()
        bill = self.session.scalar(stmt)
        if not bill:
            raise NotFoundError("Bill not found")
        return bill

    def record_payment(self, bill_id: int, data: BillPaymentIn) -> CreditCardBill:
        if data.amount < 0:
            raise ValidationError("Payment amount must not be negative")
        if data.from_amount is not None and data.from_account_id is None:
            raise ValidationError("from_amount needs a from_account_id")

        def work() -> CreditCardBill:
            bill = self._lock_bill(bill_id)
            transaction_id = None
            if data.from_account_id is not None:
                debited, credited = data.amount, None
                if data.from_amount is not None:
                    debited, credited = data.from_amount, data.amount
                transfer = TransferIn(
                    amount=debited,
                    to_amount=credited,
                    date=data.paid_on,
                    from_account_id=data.from_account_id,
                    to_account_id=bill.account_id,
                    notes=data.note or f"Payment for bill {bill.id}",
                )
                txn = TransactionService(
                    self.session, self.user_id, self.lock_retries
                ).insert(transfer)
                transaction_id = txn.id
            self.session.add(
                BillPayment(
                    user_id=self.user_id,
                    bill_id=bill.id,
                    amount=data.amount,
                    paid_on=data.paid_on,
                    note=data.note,
                    transaction_id=transaction_id,
                )
            )
            bill.paid_amount = bill.paid_amount + data.amount
            bill.status = bill_status_after_payment(bill)
            self.session.flush()
            return bill

        bill = self._atomic("bill_payment", work)
        logger.info(
            f"bill_payment: bill_id={bill.id} amount={data.amount}"
            f" paid={bill.paid_amount} status={bill.status.value}"
        )
        return bill

    def mark_overdue(self, today: Optional[date] = None) -> int:
        today = today or local_today()

        def work() -> int:
            stmt = (
                select(CreditCardBill)
                .where(
                    CreditCardBill.user_id == self.user_id,
                    CreditCardBill.status == BillStatus.open,
                    CreditCardBill.due_date < today,
                )
                .execution_options(populate_existing=True)
            )
            bills = self.session.scalars(stmt).all()
            for bill in bills:
                bill.status = BillStatus.overdue
            self.session.flush()
            return len(bills)

        count = self._atomic("bill_mark_overdue", work)
        if count:
            logger.info(f"bill_overdue: user_id={self.user_id} count={count}")
        return count

    def bills_summary(
        self, display_currency: Optional[str] = None, today: Optional[date] = None
    ) -> BillsSummaryOut:
        today = today or local_today()
        display = (display_currency or get_settings().display_currency).upper()
        rows = self.session.execute(
            select(CreditCardBill, Account.currency)
            .join(Account, CreditCardBill.account_id == Account.id)
            .where(CreditCardBill.user_id == self.user_id)
        ).all()

        fx = FxRateService(source=self.rate_source or rate_source_from_settings())
        horizon = today + timedelta(days=7)
        total_outstanding = total_overdue = upcoming_due = 0
        paid_bills = unpaid_bills = overdue_bills = 0
        next_due: Optional[date] = None
        for bill, currency in rows:
            if bill.status not in UNPAID_BILL_STATUSES:
                paid_bills += 1
                continue
            unpaid_bills += 1
            outstanding = fx.convert_strict(bill.outstanding, currency, display)
            total_outstanding += outstanding
            if bill.status == BillStatus.overdue or bill.due_date < today:
                overdue_bills += 1
                total_overdue += outstanding
                continue
            if bill.due_date <= horizon:
                upcoming_due += outstanding
            if next_due is None or bill.due_date < next_due:
                next_due = bill.due_date

        return BillsSummaryOut(
            display_currency=display,
            total_outstanding=total_outstanding,
            total_overdue=total_overdue,
            upcoming_due=upcoming_due,
            total_bills=len(rows),
            paid_bills=paid_bills,
            unpaid_bills=unpaid_bills,
            overdue_bills=overdue_bills,
            next_due_date=next_due,
        )

    def credit_card_overviews(
        self, today: Optional[date] = None
    ) -> list[CreditCardOverview]:
        today = today or local_today()
        cards = self.session.scalars(
            select(Account)
            .where(
                Account.user_id == self.user_id,
                Account.type == AccountType.credit_card,
                Account.status != AccountStatus.closed,
            )
            .order_by(Account.id)
        ).all()
        overviews = []
        for card in cards:
            if (
                card.credit_limit is None
                or card.bill_generation_day is None
                or card.payment_due_day is None
            ):
                continue
            last_generated = latest_generation_date(card.bill_generation_day, today)
            overviews.append(
                CreditCardOverview(
                    account_id=card.id,
                    name=card.name,
                    currency=card.currency,
                    credit_limit=card.credit_limit,
                    current_balance=card.current_balance,
                    available_credit=card.available_credit,
                    credit_usage_percentage=card.credit_usage_percentage,
                    next_bill_generation_date=next_occurrence_after(
                        card.bill_generation_day, last_generated
                    ),
                    next_payment_due_date=next_occurrence_after(
                        card.payment_due_day, today - timedelta(days=1)
                    ),
                )
            )
        return overviews


class _ConversionTracker:
    def __init__(self, fx: FxRateService, target: str) -> None:
        self.fx = fx
        self.target = target
        self.failed: set[str] = set()

    def convert(self, amount: int, currency: str) -> Conversion:
        result = self.fx.convert(amount, currency, self.target)
        if not result.ok:
            self.failed.add(currency.upper())
        return result

    def status(self) -> ConversionStatus:
        return ConversionStatus(
            success=not self.failed,
            failed_currencies=sorted(self.failed),
            approximate=bool(self.failed),
        )


class _ConvertingReader:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        rate_source: Optional[RateSource] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.rate_source = rate_source

    def _tracker(self, display: str) -> _ConversionTracker:
        # One cache per call keeps every figure in a response on the same rates.
        fx = FxRateService(source=self.rate_source or rate_source_from_settings())
        return _ConversionTracker(fx, display)


class SummaryService(_ConvertingReader):
    def get_summary(
        self,
        display_currency: Optional[str] = None,
        window_days: Optional[int] = None,
        today: Optional[date] = None,
    ) -> SummaryOut:
        settings = get_settings()
        display = (display_currency or settings.display_currency).upper()
        if window_days is None:
            window_days = settings.summary_window_days
        if not 0 <= window_days <= MAX_WINDOW_DAYS:
            raise ValidationError(
                f"window_days must be between 0 and {MAX_WINDOW_DAYS}"
            )
        window = trailing_window(today or local_today(), window_days)

        # All reads happen before any rate lookup.
        accounts = self.session.scalars(
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
        ).all()
        flows = self.session.execute(
            select(Account.currency, Transaction.type, func.sum(Transaction.amount))
            .join(Account, Transaction.account_id == Account.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.status == TransactionStatus.completed,
                Transaction.type.in_(
                    [TransactionType.deposit, TransactionType.withdrawal]
                ),
                Transaction.date.between(window.start, window.end),
            )
            .group_by(Account.currency, Transaction.type)
        ).all()
        recent = TransactionService(self.session, self.user_id, lock_retries=0).recent(10)

        tracker = self._tracker(display)
        lines = []
        total_balance = 0
        for account in accounts:
            converted = tracker.convert(account.current_balance, account.currency)
            total_balance += converted.amount
            lines.append(
                AccountSummaryLine(
                    account_id=account.id,
                    name=account.name,
                    type=account.type,
                    currency=account.currency,
                    balance=account.current_balance,
                    converted_balance=converted.amount,
                    rate=converted.rate,
                    converted=converted.ok,
                )
            )

        total_income = total_expense = 0
        for currency, txn_type, amount in flows:
            converted = tracker.convert(int(amount or 0), currency)
            if txn_type == TransactionType.deposit:
                total_income += converted.amount
            else:
                total_expense += converted.amount

        status = tracker.status()
        if not status.success:
            logger.warning(
                f"summary_approximate: user_id={self.user_id} display={display}"
                f" failed={','.join(status.failed_currencies)}"
            )
        return SummaryOut(
            display_currency=display,
            window_start=window.start,
            window_end=window.end,
            total_balance=total_balance,
            total_income=total_income,
            total_expense=total_expense,
            accounts=lines,
            recent_transactions=[TransactionOut.model_validate(t) for t in recent],
            conversion_status=status,
        )


class ReportService(_ConvertingReader):
    def _flow_rows(self, period: Period, types: list[TransactionType]):
        return self.session.execute(
            select(
                Transaction.date,
                Transaction.type,
                Transaction.category_id,
                Transaction.amount,
                Account.currency,
            )
            .join(Account, Transaction.account_id == Account.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.status == TransactionStatus.completed,
                Transaction.type.in_(types),
                Transaction.date.between(period.start, period.end),
            )
        ).all()

    def income_vs_expenses(
        self, period: Period, display_currency: Optional[str] = None
    ) -> IncomeExpenseReport:
        display = (display_currency or get_settings().display_currency).upper()
        rows = self._flow_rows(
            period, [TransactionType.deposit, TransactionType.withdrawal]
        )
        sums: dict[tuple[int, int, str, TransactionType], int] = defaultdict(int)
        for row in rows:
            sums[(row.date.year, row.date.month, row.currency, row.type)] += row.amount

        tracker = self._tracker(display)
        months: dict[tuple[int, int], MonthlyFlow] = {}
        for (year, month, currency, txn_type), amount in sorted(
            sums.items(), key=lambda item: (item[0][0], item[0][1], item[0][2])
        ):
            flow = months.setdefault(
                (year, month), MonthlyFlow(year=year, month=month, income=0, expense=0)
            )
            converted = tracker.convert(amount, currency).amount
            if txn_type == TransactionType.deposit:
                flow.income += converted
            else:
                flow.expense += converted
        return IncomeExpenseReport(
            display_currency=display,
            months=[months[key] for key in sorted(months)],
            conversion_status=tracker.status(),
        )

    def expenses_by_category(
        self, period: Period, display_currency: Optional[str] = None
    ) -> CategoryReport:
        display = (display_currency or get_settings().display_currency).upper()
        rows = self._flow_rows(period, [TransactionType.withdrawal])
        sums: dict[tuple[Optional[int], str], int] = defaultdict(int)
        for row in rows:
            sums[(row.category_id, row.currency)] += row.amount
        names = dict(
            self.session.execute(
                select(Category.id, Category.name).where(
                    Category.user_id == self.user_id
                )
            ).all()
        )

        tracker = self._tracker(display)
        totals: dict[Optional[int], int] = defaultdict(int)
        for (category_id, currency), amount in sums.items():
            totals[category_id] += tracker.convert(amount, currency).amount
        categories = [
            CategoryTotal(
                category_id=category_id,
                name=names.get(category_id, "Uncategorized"),
                amount=amount,
            )
            for category_id, amount in totals.items()
        ]
        categories.sort(key=lambda c: (-c.amount, c.name))
        return CategoryReport(
            display_currency=display,
            categories=categories,
            conversion_status=tracker.status(),
        )
