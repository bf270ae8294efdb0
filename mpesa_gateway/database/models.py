"""SQLAlchemy database models for the M-PESA gateway."""
import enum
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONPayload = JSON().with_variant(JSONB(), "postgresql")


class TransactionStatus(str, enum.Enum):
    """Lifecycle states of an STK push transaction."""

    INITIATED = "Initiated"
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"


OPEN_STATUSES = frozenset({TransactionStatus.INITIATED, TransactionStatus.PENDING})

STK_PUSH = "STK_PUSH"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    Transaction records table.

    One row per STK push. The merchant request id is generated by us before
    the outbound call and is the only key a callback is matched on; the
    checkout request id is assigned by M-PESA and kept for diagnostics.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default=STK_PUSH)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    account_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.INITIATED.value, index=True
    )

    # Request fields
    merchant_request_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    checkout_request_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)

    # Callback fields
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    callback_transaction_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    callback_phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Audit snapshots
    request_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    response_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    callback_payload: Mapped[Dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('Initiated', 'Pending', 'Success', 'Failed')",
            name="valid_status",
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the record without the raw payload snapshots."""
        return {
            "id": str(self.id),
            "type": self.type,
            "amount": self.amount,
            "phone_number": self.phone_number,
            "account_reference": self.account_reference,
            "status": self.status,
            "merchant_request_id": self.merchant_request_id,
            "checkout_request_id": self.checkout_request_id,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, merchant_request_id={self.merchant_request_id}, "
            f"amount={self.amount}, status={self.status})>"
        )
