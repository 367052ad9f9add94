from typing import Optional


class LedgerError(Exception):
    pass


class ValidationError(LedgerError, ValueError):
    """Rejected command; raised before anything is written."""


class InvalidAmount(ValidationError):
    def __init__(self, amount_cents: int) -> None:
        super().__init__(f"Amount must be positive, got {amount_cents}")
        self.amount_cents = amount_cents


class SameAccountTransfer(ValidationError):
    def __init__(self, account_id: str) -> None:
        super().__init__("Cannot transfer to the same account")
        self.account_id = account_id


class BlankField(ValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"{field} is required")
        self.field = field


class CategoryTypeMismatch(ValidationError):
    pass


class NotFoundError(LedgerError, LookupError):
    pass


class AccountNotFound(NotFoundError):
    def __init__(self, account_id: str) -> None:
        super().__init__("Account not found")
        self.account_id = account_id


class OperationNotFound(NotFoundError):
    def __init__(self, operation_id: str) -> None:
        super().__init__("Operation not found")
        self.operation_id = operation_id


class CategoryNotFound(NotFoundError):
    def __init__(self, category_id: str) -> None:
        super().__init__("Category not found")
        self.category_id = category_id


class LinkedOperationMissing(NotFoundError):
    """The sibling leg of a transfer is absent or ambiguous.

    Only reachable after earlier data corruption; callers should surface it
    rather than repair it.
    """

    def __init__(
        self, linked_operation_id: Optional[str], detail: str = "not found"
    ) -> None:
        super().__init__(f"Linked transfer operation {detail}")
        self.linked_operation_id = linked_operation_id


class TransactionError(LedgerError, RuntimeError):
    pass
