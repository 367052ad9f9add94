from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from models import Operation, OperationType
from periods import Period


@dataclass(frozen=True)
class AccountStatistics:
    window: Period
    total_revenue_cents: int = 0
    total_expense_cents: int = 0
    net_change_cents: int = 0
    transaction_count: int = 0
    average_transaction_cents: int = 0


def compute_statistics(
    operations: Iterable[Operation], window: Period
) -> AccountStatistics:
    revenue = 0
    expense = 0
    count = 0
    for op in operations:
        if not window.contains(op.date):
            continue
        count += 1
        if op.type == OperationType.revenue:
            revenue += op.amount_cents
        elif op.type == OperationType.expense:
            expense += op.amount_cents

    average = 0
    if count:
        # transfer legs count towards the divisor but not the volume
        average = int(
            (Decimal(revenue + expense) / Decimal(count)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
    return AccountStatistics(
        window=window,
        total_revenue_cents=revenue,
        total_expense_cents=expense,
        net_change_cents=revenue - expense,
        transaction_count=count,
        average_transaction_cents=average,
    )
