from datetime import date

from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Operation, OperationType
from schemas import AccountIn, OperationIn, TransferIn
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


def populate(session):
    accounts = AccountService(session)
    a = accounts.create(AccountIn(name="Checking", opening_balance_cents=5_000))
    b = accounts.create(AccountIn(name="Savings"))
    OperationService(session).create(
        OperationIn(
            account_id=a.id,
            type=OperationType.revenue,
            amount_cents=1_500,
            date=date(2025, 9, 1),
        )
    )
    TransferService(session).create(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            amount_cents=700,
            date=date(2025, 9, 2),
        )
    )
    return a, b


def test_clean_ledger_passes_audit() -> None:
    session = make_session()
    a, b = populate(session)
    audit = LedgerAuditService(session)

    report = audit.check()

    assert report.ok
    assert audit.expected_balance(a.id) == 5_800
    assert audit.expected_balance(b.id) == 700


def test_audit_reports_drift_without_repairing_it() -> None:
    session = make_session()
    a, _ = populate(session)
    session.execute(
        update(Account).where(Account.id == a.id).values(balance_cents=1)
    )
    session.commit()

    report = LedgerAuditService(session).check()

    assert not report.ok
    assert [(d.account_id, d.stored_cents, d.expected_cents) for d in report.drifts] == [
        (a.id, 1, 5_800)
    ]
    session.expire_all()
    assert session.get(Account, a.id).balance_cents == 1


def test_audit_reports_mismatched_transfer_legs() -> None:
    session = make_session()
    populate(session)
    legs = session.query(Operation).filter(Operation.type == OperationType.transfer).all()
    legs[0].amount_cents = 999
    session.commit()

    report = LedgerAuditService(session).check()

    assert report.broken_transfers == [legs[0].linked_operation_id]
