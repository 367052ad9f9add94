from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Iterator, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import balances
from config import get_settings
from database import ledger_write_lock
from errors import (
    AccountNotFound,
    BlankField,
    CategoryNotFound,
    CategoryTypeMismatch,
    InvalidAmount,
    LedgerError,
    LinkedOperationMissing,
    OperationNotFound,
    SameAccountTransfer,
    TransactionError,
    ValidationError,
)
from metrics import AccountStatistics, compute_statistics
from models import (
    Account,
    Category,
    CategoryType,
    Operation,
    OperationType,
    TransferLeg,
    new_id,
    utcnow,
)
from periods import Period, trailing_window
from schemas import (
    AccountIn,
    AccountUpdateIn,
    CategoryIn,
    OperationIn,
    OperationUpdateIn,
    TransferIn,
)


logger = logging.getLogger(__name__)

_LOCKED_ACCOUNTS_KEY = "ledger_locked_accounts"
_PENDING_DELTAS_KEY = "ledger_pending_deltas"

DEFAULT_TRANSFER_CATEGORY_ID = "category_transfer"

DEFAULT_CATEGORIES: list[tuple[str, str, CategoryType, str, str]] = [
    ("category_food", "Food", CategoryType.expense, "restaurant", "#F44336"),
    ("category_transport", "Transport", CategoryType.expense, "directions_car", "#2196F3"),
    ("category_shopping", "Shopping", CategoryType.expense, "shopping_cart", "#9C27B0"),
    ("category_entertainment", "Entertainment", CategoryType.expense, "movie", "#FF9800"),
    ("category_healthcare", "Healthcare", CategoryType.expense, "local_hospital", "#4CAF50"),
    ("category_bills", "Bills", CategoryType.expense, "receipt", "#607D8B"),
    ("category_education", "Education", CategoryType.expense, "school", "#795548"),
    ("category_salary", "Salary", CategoryType.revenue, "work", "#4CAF50"),
    ("category_freelance", "Freelance", CategoryType.revenue, "computer", "#2196F3"),
    ("category_investment", "Investment", CategoryType.revenue, "trending_up", "#FFC107"),
    ("category_gift", "Gift", CategoryType.revenue, "card_giftcard", "#E91E63"),
    (DEFAULT_TRANSFER_CATEGORY_ID, "Transfer", CategoryType.both, "swap_horiz", "#9E9E9E"),
]


@contextmanager
def atomic(session: Session, action: str) -> Iterator[None]:
    """Run one ledger mutation as a single transaction.

    The write lock is held until commit or rollback. Any failure, including
    an interrupt raised mid-mutation, rolls back every row touched so far.
    Store failures surface as ``TransactionError``.
    """
    with ledger_write_lock:
        try:
            yield
            write_balance_deltas(session)
            session.commit()
        except LedgerError as exc:
            session.rollback()
            logger.warning(f"ledger_rollback: action={action} reason={exc}")
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(f"ledger_rollback: action={action} store_failure")
            raise TransactionError(f"Could not commit {action}") from exc
        except BaseException:
            session.rollback()
            logger.warning(f"ledger_rollback: action={action} interrupted")
            raise
        finally:
            session.info.pop(_LOCKED_ACCOUNTS_KEY, None)
            session.info.pop(_PENDING_DELTAS_KEY, None)


def lock_accounts(session: Session, account_ids: Iterable[str]) -> dict[str, Account]:
    """Load and row-lock accounts for the running mutation.

    Accounts already locked earlier in the same transaction are reused
    without another round trip.
    """
    locked: dict[str, Account] = session.info.setdefault(_LOCKED_ACCOUNTS_KEY, {})
    result: dict[str, Account] = {}
    for account_id in sorted(set(account_ids)):
        account = locked.get(account_id)
        if account is None:
            account = session.scalar(
                select(Account)
                .where(Account.id == account_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if account is None:
                raise AccountNotFound(account_id)
            locked[account_id] = account
        result[account_id] = account
    return result


def pending_deltas(session: Session) -> dict[str, int]:
    return session.info.setdefault(_PENDING_DELTAS_KEY, {})


def write_balance_deltas(session: Session) -> None:
    """Write accumulated balance changes as relative updates.

    ``balance_cents = balance_cents + delta`` keeps concurrent writers from
    other processes from overwriting each other. Affected accounts have
    their balance expired so the next read sees the stored value.
    """
    deltas = session.info.pop(_PENDING_DELTAS_KEY, {})
    locked: dict[str, Account] = session.info.get(_LOCKED_ACCOUNTS_KEY, {})
    for account_id, delta in sorted(deltas.items()):
        if not delta:
            continue
        session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta)
            .execution_options(synchronize_session=False)
        )
        account = locked.get(account_id)
        if account is not None:
            session.expire(account, ["balance_cents", "updated_at"])
        logger.info(f"balance_shifted: account={account_id} delta_cents={delta}")


def find_linked_operation(
    session: Session, linked_operation_id: Optional[str], excluding_account_id: str
) -> Operation:
    if not linked_operation_id:
        raise LinkedOperationMissing(linked_operation_id)
    candidates = session.scalars(
        select(Operation)
        .where(
            Operation.linked_operation_id == linked_operation_id,
            Operation.account_id != excluding_account_id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    ).all()
    if not candidates:
        raise LinkedOperationMissing(linked_operation_id)
    if len(candidates) > 1:
        raise LinkedOperationMissing(linked_operation_id, "is ambiguous")
    return candidates[0]


def _load_operation(session: Session, operation_id: str) -> Operation:
    op = session.scalar(
        select(Operation)
        .where(Operation.id == operation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if op is None:
        raise OperationNotFound(operation_id)
    return op


def _require_positive(amount_cents: int) -> None:
    if amount_cents <= 0:
        raise InvalidAmount(amount_cents)


def _check_category(
    session: Session,
    category_id: Optional[str],
    operation_type: Optional[OperationType],
) -> None:
    if category_id is None:
        return
    category = session.get(Category, category_id)
    if category is None:
        raise CategoryNotFound(category_id)
    if operation_type is not None and not category.accepts(operation_type):
        raise CategoryTypeMismatch("Category type mismatch")


def _remove_single(session: Session, op: Operation) -> None:
    lock_accounts(session, [op.account_id])
    balances.reverse(pending_deltas(session), op)
    session.delete(op)


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        stmt = select(Account).order_by(func.lower(Account.name), Account.created_at)
        return self.session.scalars(stmt).all()

    def get(self, account_id: str) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise AccountNotFound(account_id)
        return account

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise BlankField("Account name")
        with atomic(self.session, "create_account"):
            account = Account(
                id=new_id(),
                name=name,
                balance_cents=data.opening_balance_cents,
                opening_balance_cents=data.opening_balance_cents,
                color=data.color,
                is_debt=data.is_debt,
            )
            self.session.add(account)
        logger.info(
            f"account_created: id={account.id} "
            f"opening_balance_cents={account.opening_balance_cents}"
        )
        return account

    def update(self, account_id: str, data: AccountUpdateIn) -> Account:
        name = data.name.strip()
        if not name:
            raise BlankField("Account name")
        with atomic(self.session, "update_account"):
            account = lock_accounts(self.session, [account_id])[account_id]
            account.name = name
            account.color = data.color
            account.is_debt = data.is_debt
        return account

    def delete(self, account_id: str) -> int:
        """Delete an account and every operation touching it.

        Transfer legs on other accounts go with their pair, and their
        balances are reversed. Returns the number of operation rows removed.
        """
        removed = 0
        with atomic(self.session, "delete_account"):
            account = lock_accounts(self.session, [account_id])[account_id]
            rows = self.session.scalars(
                select(Operation)
                .where(
                    or_(
                        Operation.account_id == account_id,
                        Operation.to_account_id == account_id,
                    )
                )
                .order_by(Operation.created_at, Operation.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).all()
            involved = {row.account_id for row in rows}
            involved.update(row.to_account_id for row in rows if row.to_account_id)
            lock_accounts(self.session, involved)

            transfers = TransferService(self.session)
            handled: set[str] = set()
            for op in rows:
                if op.is_transfer:
                    if op.linked_operation_id in handled:
                        continue
                    handled.add(op.linked_operation_id)
                    transfers._delete_pair(op)
                    removed += 2
                else:
                    _remove_single(self.session, op)
                    removed += 1
            write_balance_deltas(self.session)
            self.session.flush()
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id} operations_removed={removed}")
        return removed


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(
        self, operation_type: Optional[OperationType] = None
    ) -> list[Category]:
        stmt = select(Category).order_by(func.lower(Category.name), Category.id)
        if operation_type is not None and operation_type != OperationType.transfer:
            stmt = stmt.where(
                Category.type.in_(
                    [CategoryType(operation_type.value), CategoryType.both]
                )
            )
        elif operation_type == OperationType.transfer:
            stmt = stmt.where(Category.type == CategoryType.both)
        return self.session.scalars(stmt).all()

    def get(self, category_id: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise CategoryNotFound(category_id)
        return category

    def create(self, data: CategoryIn, category_id: Optional[str] = None) -> Category:
        name = data.name.strip()
        if not name:
            raise BlankField("Category name")
        with atomic(self.session, "create_category"):
            category = Category(
                id=category_id or new_id(),
                name=name,
                type=data.type,
                color=data.color,
                icon_name=data.icon_name,
            )
            self.session.add(category)
        return category

    def update(self, category_id: str, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise BlankField("Category name")
        with atomic(self.session, "update_category"):
            category = self.get(category_id)
            category.name = name
            category.type = data.type
            category.color = data.color
            category.icon_name = data.icon_name
        return category

    def delete(self, category_id: str) -> None:
        # operations keep their category_id; it simply dangles afterwards
        with atomic(self.session, "delete_category"):
            category = self.get(category_id)
            self.session.delete(category)
        logger.info(f"category_deleted: id={category_id}")

    def ensure_defaults(self) -> int:
        with atomic(self.session, "seed_categories"):
            existing = self.session.execute(select(func.count(Category.id))).scalar_one()
            if existing:
                return 0
            for category_id, name, category_type, icon, color in DEFAULT_CATEGORIES:
                self.session.add(
                    Category(
                        id=category_id,
                        name=name,
                        type=category_type,
                        icon_name=icon,
                        color=color,
                    )
                )
        logger.info(f"categories_seeded: count={len(DEFAULT_CATEGORIES)}")
        return len(DEFAULT_CATEGORIES)


class OperationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, operation_id: str) -> Operation:
        op = self.session.get(Operation, operation_id)
        if not op:
            raise OperationNotFound(operation_id)
        return op

    def list_by_account(
        self, account_id: str, period: Optional[Period] = None
    ) -> list[Operation]:
        stmt = (
            select(Operation)
            .where(Operation.account_id == account_id)
            .order_by(
                Operation.date.desc(), Operation.created_at.desc(), Operation.id.desc()
            )
        )
        if period is not None:
            stmt = stmt.where(Operation.date >= period.start)
            if period.end is not None:
                stmt = stmt.where(Operation.date <= period.end)
        return self.session.scalars(stmt).all()

    def recent(self, account_id: str, limit: int = 5) -> list[Operation]:
        return self.list_by_account(account_id)[:limit]

    def list_all(self) -> list[Operation]:
        stmt = select(Operation).order_by(
            Operation.created_at.desc(), Operation.id.desc()
        )
        return self.session.scalars(stmt).all()

    def create(self, data: OperationIn) -> Operation:
        if data.type == OperationType.transfer:
            raise ValidationError("Transfers must be created with the transfer command")
        _require_positive(data.amount_cents)
        with atomic(self.session, "create_operation"):
            _check_category(self.session, data.category_id, data.type)
            lock_accounts(self.session, [data.account_id])
            op = Operation(
                id=new_id(),
                account_id=data.account_id,
                type=data.type,
                amount_cents=data.amount_cents,
                category_id=data.category_id,
                date=data.date,
                note=data.note.strip(),
                created_at=utcnow(),
            )
            self.session.add(op)
            balances.apply(pending_deltas(self.session), op)
        logger.info(
            f"operation_created: id={op.id} account={op.account_id} "
            f"type={op.type.value} amount_cents={op.amount_cents}"
        )
        return op

    def update(self, operation_id: str, data: OperationUpdateIn) -> Operation:
        """Reverse the stored effect, write the new values, apply the new effect.

        Transfers are updated on both legs; the returned row is the one
        addressed by ``operation_id``.
        """
        _require_positive(data.amount_cents)
        with atomic(self.session, "update_operation"):
            op = _load_operation(self.session, operation_id)
            if op.is_transfer:
                TransferService(self.session)._update_pair(op, data)
            else:
                if data.to_account_id is not None:
                    raise ValidationError("Only transfers have a destination account")
                if data.category_id != op.category_id:
                    _check_category(self.session, data.category_id, op.type)
                lock_accounts(self.session, [op.account_id])
                balances.reverse(pending_deltas(self.session), op)
                op.amount_cents = data.amount_cents
                op.category_id = data.category_id
                op.date = data.date
                op.note = data.note.strip()
                balances.apply(pending_deltas(self.session), op)
        logger.info(
            f"operation_updated: id={op.id} type={op.type.value} "
            f"amount_cents={op.amount_cents}"
        )
        return op

    def delete(self, operation_id: str) -> None:
        with atomic(self.session, "delete_operation"):
            op = _load_operation(self.session, operation_id)
            if op.is_transfer:
                TransferService(self.session)._delete_pair(op)
            else:
                _remove_single(self.session, op)
        logger.info(f"operation_deleted: id={operation_id}")


class TransferService:
    """Keeps the two legs of a transfer in lockstep."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_pair(self, operation_id: str) -> tuple[Operation, Operation]:
        op = OperationService(self.session).get(operation_id)
        if not op.is_transfer:
            raise ValidationError("Operation is not a transfer")
        return _by_leg(op, self._sibling_of(op))

    def create(self, data: TransferIn) -> tuple[Operation, Operation]:
        _require_positive(data.amount_cents)
        if data.from_account_id == data.to_account_id:
            raise SameAccountTransfer(data.from_account_id)
        with atomic(self.session, "create_transfer"):
            _check_category(self.session, data.category_id, None)
            lock_accounts(self.session, [data.from_account_id, data.to_account_id])
            token = new_id()
            created_at = utcnow()
            shared = dict(
                type=OperationType.transfer,
                amount_cents=data.amount_cents,
                category_id=data.category_id or DEFAULT_TRANSFER_CATEGORY_ID,
                date=data.date,
                note=data.note.strip(),
                created_at=created_at,
                linked_operation_id=token,
            )
            outgoing = Operation(
                id=new_id(),
                account_id=data.from_account_id,
                to_account_id=data.to_account_id,
                leg=TransferLeg.outgoing,
                **shared,
            )
            incoming = Operation(
                id=new_id(),
                account_id=data.to_account_id,
                to_account_id=data.from_account_id,
                leg=TransferLeg.incoming,
                **shared,
            )
            self.session.add_all([outgoing, incoming])
            balances.apply(pending_deltas(self.session), outgoing)
            balances.apply(pending_deltas(self.session), incoming)
        logger.info(
            f"transfer_created: link={token} from={data.from_account_id} "
            f"to={data.to_account_id} amount_cents={data.amount_cents}"
        )
        return outgoing, incoming

    def update(
        self, operation_id: str, data: OperationUpdateIn
    ) -> tuple[Operation, Operation]:
        _require_positive(data.amount_cents)
        with atomic(self.session, "update_transfer"):
            op = _load_operation(self.session, operation_id)
            if not op.is_transfer:
                raise ValidationError("Operation is not a transfer")
            op, sibling = self._update_pair(op, data)
        logger.info(
            f"transfer_updated: link={op.linked_operation_id} "
            f"amount_cents={op.amount_cents}"
        )
        return _by_leg(op, sibling)

    def delete(self, operation_id: str) -> None:
        with atomic(self.session, "delete_transfer"):
            op = _load_operation(self.session, operation_id)
            if not op.is_transfer:
                raise ValidationError("Operation is not a transfer")
            token = op.linked_operation_id
            self._delete_pair(op)
        logger.info(f"transfer_deleted: link={token}")

    def _sibling_of(self, op: Operation) -> Operation:
        sibling = find_linked_operation(
            self.session, op.linked_operation_id, op.account_id
        )
        if (
            not sibling.is_transfer
            or sibling.to_account_id != op.account_id
            or op.leg is None
            or sibling.leg != op.leg.opposite
        ):
            raise LinkedOperationMissing(
                op.linked_operation_id, "does not mirror its pair"
            )
        return sibling

    def _update_pair(
        self, op: Operation, data: OperationUpdateIn
    ) -> tuple[Operation, Operation]:
        sibling = self._sibling_of(op)
        counterparty = data.to_account_id or sibling.account_id
        if counterparty == op.account_id:
            raise SameAccountTransfer(counterparty)
        if data.category_id is not None and data.category_id != op.category_id:
            _check_category(self.session, data.category_id, None)
        category_id = data.category_id or op.category_id

        lock_accounts(self.session, [op.account_id, sibling.account_id, counterparty])
        balances.reverse(pending_deltas(self.session), op)
        balances.reverse(pending_deltas(self.session), sibling)
        for row in (op, sibling):
            row.amount_cents = data.amount_cents
            row.category_id = category_id
            row.date = data.date
            row.note = data.note.strip()
        if counterparty != sibling.account_id:
            logger.info(
                f"transfer_counterparty_changed: link={op.linked_operation_id} "
                f"old={sibling.account_id} new={counterparty}"
            )
            op.to_account_id = counterparty
            sibling.account_id = counterparty
        balances.apply(pending_deltas(self.session), op)
        balances.apply(pending_deltas(self.session), sibling)
        return op, sibling

    def _delete_pair(self, op: Operation) -> None:
        sibling = self._sibling_of(op)
        lock_accounts(self.session, [op.account_id, sibling.account_id])
        balances.reverse(pending_deltas(self.session), op)
        balances.reverse(pending_deltas(self.session), sibling)
        self.session.delete(op)
        self.session.delete(sibling)


def _by_leg(op: Operation, sibling: Operation) -> tuple[Operation, Operation]:
    if op.leg == TransferLeg.outgoing:
        return op, sibling
    return sibling, op


class StatisticsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def for_account(
        self,
        account_id: str,
        window_days: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> AccountStatistics:
        AccountService(self.session).get(account_id)
        if window_days is None:
            window_days = get_settings().stats_window_days
        window = trailing_window(window_days, today=today)
        operations = self.session.scalars(
            select(Operation).where(
                Operation.account_id == account_id,
                Operation.date >= window.start,
            )
        ).all()
        return compute_statistics(operations, window)


@dataclass
class BalanceDrift:
    account_id: str
    stored_cents: int
    expected_cents: int


@dataclass
class AuditReport:
    drifts: list[BalanceDrift] = field(default_factory=list)
    broken_transfers: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.drifts and not self.broken_transfers


def _legs_mirror(a: Operation, b: Operation) -> bool:
    return (
        a.account_id == b.to_account_id
        and b.account_id == a.to_account_id
        and a.amount_cents == b.amount_cents
        and a.date == b.date
        and a.note == b.note
        and {a.leg, b.leg} == {TransferLeg.outgoing, TransferLeg.incoming}
    )


class LedgerAuditService:
    """Recomputes balances from the journal and checks transfer pairing.

    Read-only: findings are reported, never repaired.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def expected_balance(self, account_id: str) -> int:
        account = AccountService(self.session).get(account_id)
        operations = self.session.scalars(
            select(Operation).where(Operation.account_id == account_id)
        ).all()
        return balances.expected_balance(account, operations)

    def check(self) -> AuditReport:
        report = AuditReport()
        by_account: dict[str, list[Operation]] = defaultdict(list)
        by_link: dict[str, list[Operation]] = defaultdict(list)
        for op in self.session.scalars(select(Operation)).all():
            by_account[op.account_id].append(op)
            if op.is_transfer:
                by_link[op.linked_operation_id].append(op)

        for account in self.session.scalars(select(Account).order_by(Account.id)):
            expected = balances.expected_balance(account, by_account[account.id])
            if expected != account.balance_cents:
                report.drifts.append(
                    BalanceDrift(account.id, account.balance_cents, expected)
                )
                logger.warning(
                    f"ledger_audit: balance_drift account={account.id} "
                    f"stored_cents={account.balance_cents} expected_cents={expected}"
                )

        for token, legs in sorted(by_link.items()):
            if len(legs) != 2 or not _legs_mirror(legs[0], legs[1]):
                report.broken_transfers.append(token)
                logger.warning(
                    f"ledger_audit: broken_transfer link={token} legs={len(legs)}"
                )
        return report
