"""Signed balance effects of journal rows.

Every stored row describes its own account only: revenue adds, expense
subtracts, and a transfer leg adds or subtracts depending on which side it
is. The counterparty of a transfer is moved by the sibling row, never by
this one, so summing ``effect`` over all rows touching an account counts
each transfer exactly once.

``apply`` and ``reverse`` accumulate per-account deltas; they never touch
a stored balance themselves.
"""

from typing import MutableMapping

from models import Account, Operation, OperationType, TransferLeg


def effect(operation: Operation, account_id: str) -> int:
    if operation.account_id != account_id:
        return 0
    amount = abs(operation.amount_cents)
    if operation.type == OperationType.revenue:
        return amount
    if operation.type == OperationType.expense:
        return -amount
    if operation.leg == TransferLeg.incoming:
        return amount
    if operation.leg == TransferLeg.outgoing:
        return -amount
    raise ValueError(f"Transfer operation {operation.id} has no leg")


def reverse(deltas: MutableMapping[str, int], operation: Operation) -> None:
    account_id = operation.account_id
    deltas[account_id] = deltas.get(account_id, 0) - effect(operation, account_id)


def apply(deltas: MutableMapping[str, int], operation: Operation) -> None:
    account_id = operation.account_id
    deltas[account_id] = deltas.get(account_id, 0) + effect(operation, account_id)


def expected_balance(account: Account, operations: list[Operation]) -> int:
    return account.opening_balance_cents + sum(
        effect(op, account.id) for op in operations
    )
