from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import CategoryType, OperationType, TransferLeg


class AccountIn(BaseModel):
    name: str = Field(..., max_length=100)
    opening_balance_cents: int = 0
    color: Optional[str] = Field(default=None, max_length=9)
    is_debt: bool = False


class AccountUpdateIn(BaseModel):
    name: str = Field(..., max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    is_debt: bool = False


class CategoryIn(BaseModel):
    name: str = Field(..., max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=9)
    icon_name: str = Field(default="", max_length=50)


class OperationIn(BaseModel):
    account_id: str
    type: OperationType
    amount_cents: int
    category_id: Optional[str] = None
    date: date
    note: str = Field(default="", max_length=500)


class TransferIn(BaseModel):
    from_account_id: str
    to_account_id: str
    amount_cents: int
    category_id: Optional[str] = None
    date: date
    note: str = Field(default="", max_length=500)


class OperationUpdateIn(BaseModel):
    amount_cents: int
    # None clears the category of a revenue or expense operation but keeps
    # the current category of a transfer
    category_id: Optional[str] = None
    date: date
    note: str = Field(default="", max_length=500)
    # transfers only: new counterparty of the edited leg
    to_account_id: Optional[str] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    balance_cents: int
    opening_balance_cents: int
    color: Optional[str]
    is_debt: bool
    created_at: datetime


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    color: Optional[str]
    icon_name: str
    type: CategoryType


class OperationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: str
    type: OperationType
    amount_cents: int
    category_id: Optional[str]
    date: date
    note: str
    created_at: datetime
    linked_operation_id: Optional[str]
    to_account_id: Optional[str]
    leg: Optional[TransferLeg]


class AccountStatisticsOut(BaseModel):
    account_id: str
    window_start: date
    total_revenue_cents: int
    total_expense_cents: int
    net_change_cents: int
    transaction_count: int
    average_transaction_cents: int

    @classmethod
    def from_statistics(cls, account_id: str, stats) -> "AccountStatisticsOut":
        return cls(
            account_id=account_id,
            window_start=stats.window.start,
            total_revenue_cents=stats.total_revenue_cents,
            total_expense_cents=stats.total_expense_cents,
            net_change_cents=stats.net_change_cents,
            transaction_count=stats.transaction_count,
            average_transaction_cents=stats.average_transaction_cents,
        )


class BalanceDriftOut(BaseModel):
    account_id: str
    stored_cents: int
    expected_cents: int


class AuditReportOut(BaseModel):
    ok: bool
    drifts: list[BalanceDriftOut] = Field(default_factory=list)
    broken_transfers: list[str] = Field(default_factory=list)
