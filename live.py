"""Live read projections over the ledger store.

Projections refresh only after a session commits, so subscribers never see
the inside of a transaction, and a rolled-back one never notifies anybody.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Generic, Iterable, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.orm import Session, sessionmaker

from errors import LedgerError
from schemas import AccountOut, AccountStatisticsOut, OperationOut
from services import AccountService, OperationService, StatisticsService


logger = logging.getLogger(__name__)

T = TypeVar("T")

_CHANGED_KEY = "ledger_changed_tables"
_UNSET = object()


class ChangeFeed:
    """Tracks which tables each session flushed and announces them on commit."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._listeners: dict[int, tuple[frozenset[str], Callable[[], None]]] = {}
        self._next_key = 0
        event.listen(session_factory, "after_flush", self._collect)
        event.listen(session_factory, "after_commit", self._publish)
        event.listen(session_factory, "after_rollback", self._discard)

    def register(
        self, tables: Iterable[str], callback: Callable[[], None]
    ) -> Callable[[], None]:
        with self._lock:
            key = self._next_key
            self._next_key += 1
            self._listeners[key] = (frozenset(tables), callback)

        def unregister() -> None:
            with self._lock:
                self._listeners.pop(key, None)

        return unregister

    def _collect(self, session: Session, _flush_context) -> None:
        changed: set[str] = session.info.setdefault(_CHANGED_KEY, set())
        for obj in list(session.new) + list(session.dirty) + list(session.deleted):
            table = getattr(obj, "__tablename__", None)
            if table:
                changed.add(table)

    def _discard(self, session: Session) -> None:
        session.info.pop(_CHANGED_KEY, None)

    def _publish(self, session: Session) -> None:
        changed = session.info.pop(_CHANGED_KEY, None)
        if not changed:
            return
        with self._lock:
            targets = [
                callback
                for tables, callback in self._listeners.values()
                if tables & changed
            ]
        for callback in targets:
            # the commit is already durable; a failing subscriber must not undo it
            try:
                callback()
            except Exception:
                logger.exception(f"live_refresh_failed: tables={sorted(changed)}")


class LiveQuery(Generic[T]):
    def __init__(
        self,
        feed: ChangeFeed,
        tables: Iterable[str],
        loader: Callable[[Session], T],
        name: str,
    ) -> None:
        self.feed = feed
        self.tables = frozenset(tables)
        self.loader = loader
        self.name = name
        self._lock = threading.Lock()
        self._value: object = _UNSET
        self._subscribers: dict[int, Callable[[T], None]] = {}
        self._next_key = 0
        self._unregister: Optional[Callable[[], None]] = None

    def current(self) -> T:
        # without a feed registration nothing keeps the cached value fresh
        if self._value is _UNSET or self._unregister is None:
            return self.refresh()
        return self._value  # type: ignore[return-value]

    def refresh(self) -> T:
        with self.feed.session_factory() as session:
            value = self.loader(session)
        with self._lock:
            self._value = value
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            callback(value)
        return value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Deliver the current value now and again after every relevant commit.

        Returns a callable that cancels the subscription.
        """
        with self._lock:
            registering = self._unregister is None
            if registering:
                self._unregister = self.feed.register(self.tables, self._on_change)
        if registering or self._value is _UNSET:
            self.refresh()
        with self._lock:
            key = self._next_key
            self._next_key += 1
            self._subscribers[key] = callback
            value = self._value
        callback(value)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(key, None)
                if not self._subscribers and self._unregister is not None:
                    self._unregister()
                    self._unregister = None
                    self._value = _UNSET

        return unsubscribe

    def _on_change(self) -> None:
        try:
            self.refresh()
        except LedgerError as exc:
            logger.warning(f"live_query_unavailable: query={self.name} reason={exc}")


class LedgerQueries:
    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed

    def accounts(self) -> LiveQuery[list[AccountOut]]:
        def load(session: Session) -> list[AccountOut]:
            return [
                AccountOut.model_validate(a) for a in AccountService(session).list_all()
            ]

        return LiveQuery(self.feed, ["accounts"], load, "accounts")

    def operations_by_account(self, account_id: str) -> LiveQuery[list[OperationOut]]:
        def load(session: Session) -> list[OperationOut]:
            return [
                OperationOut.model_validate(op)
                for op in OperationService(session).list_by_account(account_id)
            ]

        return LiveQuery(
            self.feed, ["operations"], load, f"operations_by_account:{account_id}"
        )

    def statistics(
        self, account_id: str, window_days: Optional[int] = None
    ) -> LiveQuery[AccountStatisticsOut]:
        def load(session: Session) -> AccountStatisticsOut:
            stats = StatisticsService(session).for_account(account_id, window_days)
            return AccountStatisticsOut.from_statistics(account_id, stats)

        return LiveQuery(
            self.feed,
            ["operations", "accounts"],
            load,
            f"statistics:{account_id}",
        )
