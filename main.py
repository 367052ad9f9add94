import asyncio
import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response, StreamingResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import (
    LedgerError,
    LinkedOperationMissing,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from live import ChangeFeed, LedgerQueries, LiveQuery
from models import OperationType
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    AccountStatisticsOut,
    AccountUpdateIn,
    AuditReportOut,
    BalanceDriftOut,
    CategoryIn,
    CategoryOut,
    OperationIn,
    OperationOut,
    OperationUpdateIn,
    TransferIn,
)
from services import (
    AccountService,
    CategoryService,
    LedgerAuditService,
    OperationService,
    StatisticsService,
    TransferService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Accounts Ledger")

change_feed = ChangeFeed(SessionLocal)
queries = LedgerQueries(change_feed)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().seed_categories:
        db = SessionLocal()
        try:
            CategoryService(db).ensure_defaults()
        finally:
            db.close()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, LinkedOperationMissing):
        logger.error(f"linked_operation_missing: link={exc.linked_operation_id}")
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransactionError):
        return HTTPException(
            status_code=503, detail="Could not save changes, please retry"
        )
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(db: Session = Depends(get_db)):
    return AccountService(db).list_all()


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).create(data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.get("/api/accounts/{account_id}", response_model=AccountOut)
def get_account(account_id: str, db: Session = Depends(get_db)):
    try:
        return AccountService(db).get(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.put("/api/accounts/{account_id}", response_model=AccountOut)
def update_account(account_id: str, data: AccountUpdateIn, db: Session = Depends(get_db)):
    try:
        return AccountService(db).update(account_id, data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/accounts/{account_id}")
def delete_account(account_id: str, db: Session = Depends(get_db)):
    try:
        removed = AccountService(db).delete(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return {"operations_removed": removed}


@app.get("/api/accounts/{account_id}/operations", response_model=list[OperationOut])
def account_operations(
    account_id: str,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        period = resolve_period(start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        AccountService(db).get(account_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return OperationService(db).list_by_account(account_id, period)


@app.get("/api/accounts/{account_id}/statistics", response_model=AccountStatisticsOut)
def account_statistics(
    account_id: str,
    window_days: Optional[int] = Query(default=None, ge=0, le=3660),
    db: Session = Depends(get_db),
):
    try:
        stats = StatisticsService(db).for_account(account_id, window_days)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return AccountStatisticsOut.from_statistics(account_id, stats)


@app.get("/api/categories", response_model=list[CategoryOut])
def list_categories(
    operation_type: Optional[OperationType] = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
):
    return CategoryService(db).list_all(operation_type)


@app.post("/api/categories", response_model=CategoryOut, status_code=201)
def create_category(data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).create(data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.put("/api/categories/{category_id}", response_model=CategoryOut)
def update_category(category_id: str, data: CategoryIn, db: Session = Depends(get_db)):
    try:
        return CategoryService(db).update(category_id, data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, db: Session = Depends(get_db)):
    try:
        CategoryService(db).delete(category_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/operations", response_model=OperationOut, status_code=201)
def create_operation(data: OperationIn, db: Session = Depends(get_db)):
    try:
        return OperationService(db).create(data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.post("/api/transfers", response_model=list[OperationOut], status_code=201)
def create_transfer(data: TransferIn, db: Session = Depends(get_db)):
    try:
        outgoing, incoming = TransferService(db).create(data)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return [outgoing, incoming]


@app.get("/api/operations/{operation_id}", response_model=OperationOut)
def get_operation(operation_id: str, db: Session = Depends(get_db)):
    try:
        return OperationService(db).get(operation_id)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.put("/api/operations/{operation_id}", response_model=OperationOut)
def update_operation(
    operation_id: str, data: OperationUpdateIn, db: Session = Depends(get_db)
):
    try:
        return OperationService(db).update(operation_id, data)
    except LedgerError as exc:
        raise http_error(exc) from exc


@app.delete("/api/operations/{operation_id}")
def delete_operation(operation_id: str, db: Session = Depends(get_db)):
    try:
        OperationService(db).delete(operation_id)
    except LedgerError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.get("/api/audit", response_model=AuditReportOut)
def audit(db: Session = Depends(get_db)):
    report = LedgerAuditService(db).check()
    return AuditReportOut(
        ok=report.ok,
        drifts=[
            BalanceDriftOut(
                account_id=d.account_id,
                stored_cents=d.stored_cents,
                expected_cents=d.expected_cents,
            )
            for d in report.drifts
        ],
        broken_transfers=report.broken_transfers,
    )


async def _event_stream(request: Request, live: LiveQuery) -> StreamingResponse:
    loop = asyncio.get_running_loop()
    pending: asyncio.Queue = asyncio.Queue()

    def push(value) -> None:
        loop.call_soon_threadsafe(pending.put_nowait, value)

    # the initial load runs the SQLAlchemy loader, keep it off the event loop
    unsubscribe = await run_in_threadpool(live.subscribe, push)

    async def events():
        try:
            while not await request.is_disconnected():
                try:
                    value = await asyncio.wait_for(pending.get(), timeout=15)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                payload = json.dumps([item.model_dump(mode="json") for item in value])
                yield f"data: {payload}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(events(), media_type="text/event-stream")


@app.get("/api/stream/accounts")
async def stream_accounts(request: Request):
    return await _event_stream(request, queries.accounts())


@app.get("/api/stream/accounts/{account_id}/operations")
async def stream_account_operations(account_id: str, request: Request):
    return await _event_stream(request, queries.operations_by_account(account_id))
