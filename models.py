import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OperationType(str, Enum):
    revenue = "revenue"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    revenue = "revenue"
    expense = "expense"
    both = "both"


class TransferLeg(str, Enum):
    outgoing = "outgoing"
    incoming = "incoming"

    @property
    def opposite(self) -> "TransferLeg":
        if self is TransferLeg.outgoing:
            return TransferLeg.incoming
        return TransferLeg.outgoing


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_debt: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon_name: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)

    def accepts(self, operation_type: OperationType) -> bool:
        if self.type == CategoryType.both:
            return True
        return self.type.value == operation_type.value


class Operation(Base, TimestampMixin):
    __tablename__ = "operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    type: Mapped[OperationType] = mapped_column(SAEnum(OperationType), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # No FK: a deleted category leaves a dangling reference behind.
    category_id: Mapped[Optional[str]] = mapped_column(String(64))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    linked_operation_id: Mapped[Optional[str]] = mapped_column(String(36))
    to_account_id: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"))
    leg: Mapped[Optional[TransferLeg]] = mapped_column(SAEnum(TransferLeg))

    @property
    def is_transfer(self) -> bool:
        return self.type == OperationType.transfer

    __table_args__ = (
        Index("ix_operations_account_date", "account_id", "date", "created_at"),
        Index("ix_operations_linked", "linked_operation_id"),
        Index("ix_operations_to_account", "to_account_id"),
        CheckConstraint("amount_cents >= 0", name="ck_operations_amount_positive"),
        CheckConstraint(
            "(type = 'transfer') = (linked_operation_id IS NOT NULL)",
            name="ck_operations_transfer_link",
        ),
    )
