from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    AccountNotFound,
    CategoryNotFound,
    CategoryTypeMismatch,
    InvalidAmount,
    OperationNotFound,
    ValidationError,
)
from models import Category, CategoryType, Operation, OperationType
from periods import Period
from schemas import AccountIn, OperationIn, OperationUpdateIn, TransferIn
from services import (
    AccountService,
    LedgerAuditService,
    OperationService,
    TransferService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed_categories(session):
    session.add_all(
        [
            Category(id="salary", name="Salary", type=CategoryType.revenue),
            Category(id="food", name="Food", type=CategoryType.expense),
            Category(id="misc", name="Misc", type=CategoryType.both),
        ]
    )
    session.commit()


def test_create_update_delete_keeps_balance_in_step() -> None:
    session = make_session()
    seed_categories(session)
    account = AccountService(session).create(AccountIn(name="Checking"))
    ops = OperationService(session)

    salary = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.revenue,
            amount_cents=10_000,
            category_id="salary",
            date=date(2025, 3, 1),
        )
    )
    assert account.balance_cents == 10_000

    ops.update(
        salary.id,
        OperationUpdateIn(
            amount_cents=15_000, category_id="salary", date=date(2025, 3, 1)
        ),
    )
    assert account.balance_cents == 15_000

    groceries = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.expense,
            amount_cents=2_000,
            category_id="food",
            date=date(2025, 3, 2),
        )
    )
    assert account.balance_cents == 13_000

    ops.delete(salary.id)
    assert account.balance_cents == -2_000

    ops.delete(groceries.id)
    assert account.balance_cents == 0
    assert session.query(Operation).count() == 0
    assert LedgerAuditService(session).check().ok


def test_create_then_delete_restores_previous_balance() -> None:
    session = make_session()
    seed_categories(session)
    account = AccountService(session).create(
        AccountIn(name="Wallet", opening_balance_cents=5_000)
    )
    ops = OperationService(session)

    op = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.expense,
            amount_cents=1_250,
            category_id="food",
            date=date(2025, 4, 4),
        )
    )
    assert account.balance_cents == 3_750
    ops.delete(op.id)

    assert account.balance_cents == 5_000


def test_update_with_same_values_changes_nothing() -> None:
    session = make_session()
    seed_categories(session)
    account = AccountService(session).create(AccountIn(name="Checking"))
    ops = OperationService(session)
    op = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.expense,
            amount_cents=700,
            category_id="food",
            date=date(2025, 4, 4),
            note="Lunch",
        )
    )
    before = account.balance_cents

    ops.update(
        op.id,
        OperationUpdateIn(
            amount_cents=700, category_id="food", date=date(2025, 4, 4), note="Lunch"
        ),
    )

    assert account.balance_cents == before
    assert ops.get(op.id).amount_cents == 700


@pytest.mark.parametrize("amount", [0, -100])
def test_non_positive_amount_is_rejected(amount: int) -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Checking"))

    with pytest.raises(InvalidAmount):
        OperationService(session).create(
            OperationIn(
                account_id=account.id,
                type=OperationType.expense,
                amount_cents=amount,
                date=date(2025, 4, 4),
            )
        )

    assert session.query(Operation).count() == 0
    assert account.balance_cents == 0


def test_category_must_exist_and_match_type() -> None:
    session = make_session()
    seed_categories(session)
    account = AccountService(session).create(AccountIn(name="Checking"))
    ops = OperationService(session)

    with pytest.raises(CategoryNotFound):
        ops.create(
            OperationIn(
                account_id=account.id,
                type=OperationType.expense,
                amount_cents=100,
                category_id="missing",
                date=date(2025, 4, 4),
            )
        )
    with pytest.raises(CategoryTypeMismatch):
        ops.create(
            OperationIn(
                account_id=account.id,
                type=OperationType.expense,
                amount_cents=100,
                category_id="salary",
                date=date(2025, 4, 4),
            )
        )

    op = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.expense,
            amount_cents=100,
            category_id="misc",
            date=date(2025, 4, 4),
        )
    )
    assert op.category_id == "misc"
    assert account.balance_cents == -100


def test_unchanged_dangling_category_survives_update() -> None:
    session = make_session()
    seed_categories(session)
    account = AccountService(session).create(AccountIn(name="Checking"))
    ops = OperationService(session)
    op = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.expense,
            amount_cents=300,
            category_id="food",
            date=date(2025, 4, 4),
        )
    )
    session.delete(session.get(Category, "food"))
    session.commit()

    updated = ops.update(
        op.id,
        OperationUpdateIn(amount_cents=400, category_id="food", date=date(2025, 4, 5)),
    )

    assert updated.category_id == "food"
    assert account.balance_cents == -400


def test_unknown_account_and_operation() -> None:
    session = make_session()
    ops = OperationService(session)

    with pytest.raises(AccountNotFound):
        ops.create(
            OperationIn(
                account_id="nope",
                type=OperationType.revenue,
                amount_cents=100,
                date=date(2025, 4, 4),
            )
        )
    with pytest.raises(OperationNotFound):
        ops.delete("nope")
    with pytest.raises(OperationNotFound):
        ops.update(
            "nope", OperationUpdateIn(amount_cents=1, date=date(2025, 4, 4))
        )


def test_transfer_type_cannot_be_created_as_single_row() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Checking"))

    with pytest.raises(ValidationError):
        OperationService(session).create(
            OperationIn(
                account_id=account.id,
                type=OperationType.transfer,
                amount_cents=100,
                date=date(2025, 4, 4),
            )
        )


def test_listing_is_newest_first_and_filterable() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="Checking"))
    ops = OperationService(session)
    for day in (3, 1, 2, 7, 5, 6):
        ops.create(
            OperationIn(
                account_id=account.id,
                type=OperationType.revenue,
                amount_cents=day * 100,
                date=date(2025, 5, day),
            )
        )

    listed = ops.list_by_account(account.id)
    assert [op.date.day for op in listed] == [7, 6, 5, 3, 2, 1]

    assert [op.date.day for op in ops.recent(account.id)] == [7, 6, 5, 3, 2]

    window = Period("custom", date(2025, 5, 2), date(2025, 5, 5))
    assert [op.date.day for op in ops.list_by_account(account.id, window)] == [5, 3, 2]


def test_revenue_edit_scenario() -> None:
    session = make_session()
    account = AccountService(session).create(
        AccountIn(name="A", opening_balance_cents=100)
    )
    ops = OperationService(session)

    op = ops.create(
        OperationIn(
            account_id=account.id,
            type=OperationType.revenue,
            amount_cents=50,
            date=date(2025, 3, 1),
        )
    )
    assert account.balance_cents == 150
    ops.update(op.id, OperationUpdateIn(amount_cents=30, date=date(2025, 3, 1)))
    assert account.balance_cents == 130
    ops.delete(op.id)
    assert account.balance_cents == 100


def test_omitted_category_clears_simple_ops_but_not_transfers() -> None:
    session = make_session()
    seed_categories(session)
    accounts = AccountService(session)
    a = accounts.create(AccountIn(name="Checking"))
    b = accounts.create(AccountIn(name="Savings"))
    ops = OperationService(session)
    expense = ops.create(
        OperationIn(
            account_id=a.id,
            type=OperationType.expense,
            amount_cents=100,
            category_id="food",
            date=date(2025, 4, 4),
        )
    )
    outgoing, incoming = TransferService(session).create(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            amount_cents=100,
            category_id="misc",
            date=date(2025, 4, 4),
        )
    )

    ops.update(expense.id, OperationUpdateIn(amount_cents=100, date=date(2025, 4, 4)))
    ops.update(outgoing.id, OperationUpdateIn(amount_cents=100, date=date(2025, 4, 4)))

    assert expense.category_id is None
    assert outgoing.category_id == incoming.category_id == "misc"
