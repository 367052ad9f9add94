import threading
from datetime import date

from sqlalchemy import update

import services
from database import Base, create_ledger_engine, make_session_factory
from models import Account, Operation, OperationType
from schemas import AccountIn, OperationIn, OperationUpdateIn, TransferIn
from services import (
    AccountService,
    LedgerAuditService,
    OperationService,
    TransferService,
)


def make_factory(tmp_path):
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return make_session_factory(engine)


def test_concurrent_mutations_do_not_lose_updates(tmp_path) -> None:
    factory = make_factory(tmp_path)
    with factory() as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="Checking", opening_balance_cents=100_000))
        b = accounts.create(AccountIn(name="Savings", opening_balance_cents=100_000))

    workers = 4
    rounds = 10
    errors = []

    def spend() -> None:
        try:
            with factory() as session:
                ops = OperationService(session)
                for _ in range(rounds):
                    ops.create(
                        OperationIn(
                            account_id=a.id,
                            type=OperationType.expense,
                            amount_cents=100,
                            date=date(2025, 10, 1),
                        )
                    )
        except Exception as exc:
            errors.append(exc)

    def move() -> None:
        try:
            with factory() as session:
                transfers = TransferService(session)
                for _ in range(rounds):
                    transfers.create(
                        TransferIn(
                            from_account_id=a.id,
                            to_account_id=b.id,
                            amount_cents=50,
                            date=date(2025, 10, 1),
                        )
                    )
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=spend) for _ in range(workers)]
    threads += [threading.Thread(target=move) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with factory() as session:
        checking = AccountService(session).get(a.id)
        savings = AccountService(session).get(b.id)
        assert checking.balance_cents == 100_000 - workers * rounds * (100 + 50)
        assert savings.balance_cents == 100_000 + workers * rounds * 50
        assert session.query(Operation).count() == workers * rounds * 3
        assert LedgerAuditService(session).check().ok


def test_concurrent_edits_and_deletes_reconcile_exactly(tmp_path) -> None:
    factory = make_factory(tmp_path)
    workers = 4
    rounds = 5
    day = date(2025, 10, 1)
    with factory() as session:
        accounts = AccountService(session)
        a = accounts.create(AccountIn(name="Checking", opening_balance_cents=100_000))
        b = accounts.create(AccountIn(name="Savings"))
        c = accounts.create(AccountIn(name="Cash"))
        ops = OperationService(session)
        transfers = TransferService(session)
        owned = []
        for _ in range(workers):
            expenses = [
                ops.create(
                    OperationIn(
                        account_id=a.id,
                        type=OperationType.expense,
                        amount_cents=100,
                        date=day,
                    )
                ).id
                for _ in range(rounds)
            ]
            outgoing = [
                transfers.create(
                    TransferIn(
                        from_account_id=a.id,
                        to_account_id=b.id,
                        amount_cents=50,
                        date=day,
                    )
                )[0].id
                for _ in range(rounds)
            ]
            owned.append((expenses, outgoing))

    errors = []

    def edit(expenses, outgoing) -> None:
        try:
            with factory() as session:
                ops = OperationService(session)
                for i, op_id in enumerate(expenses):
                    ops.update(op_id, OperationUpdateIn(amount_cents=200, date=day))
                    if i % 2 == 0:
                        ops.delete(op_id)
                for j, op_id in enumerate(outgoing):
                    ops.update(
                        op_id,
                        OperationUpdateIn(
                            amount_cents=80,
                            date=day,
                            to_account_id=c.id if j % 2 else None,
                        ),
                    )
                    if j % 3 == 0:
                        ops.delete(op_id)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=edit, args=pair) for pair in owned]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with factory() as session:
        accounts = AccountService(session)
        # per worker: two expenses of 200 and three transfers of 80 survive,
        # one of which was moved to Cash
        assert accounts.get(a.id).balance_cents == 100_000 - workers * (2 * 200 + 3 * 80)
        assert accounts.get(b.id).balance_cents == workers * 2 * 80
        assert accounts.get(c.id).balance_cents == workers * 80
        assert session.query(Operation).count() == workers * (2 + 3 * 2)
        assert LedgerAuditService(session).check().ok


def test_balance_writes_are_relative_to_the_stored_value(tmp_path, monkeypatch) -> None:
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = create_ledger_engine(url)
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    with factory() as session:
        account = AccountService(session).create(
            AccountIn(name="Checking", opening_balance_cents=1_000)
        )

    # a second engine stands in for another worker process writing meanwhile
    other = create_ledger_engine(url)
    real_apply = services.balances.apply

    def apply_with_outside_write(deltas, op):
        real_apply(deltas, op)
        with other.begin() as conn:
            conn.execute(
                update(Account)
                .where(Account.id == account.id)
                .values(balance_cents=Account.balance_cents - 250)
            )

    monkeypatch.setattr(services.balances, "apply", apply_with_outside_write)
    with factory() as session:
        OperationService(session).create(
            OperationIn(
                account_id=account.id,
                type=OperationType.revenue,
                amount_cents=100,
                date=date(2025, 10, 1),
            )
        )
    monkeypatch.undo()

    with factory() as session:
        assert AccountService(session).get(account.id).balance_cents == 850
