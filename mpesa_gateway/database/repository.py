"""
Transaction store.

Durable persistence for STK push transactions. Every method runs in its own
session and commits before returning, so the orchestrator and the callback
path never share state other than the database row itself.

Status changes go through ``update_by_id`` with ``expected_statuses``: a
single ``UPDATE ... WHERE id = :id AND status IN (...)``. Whether the write
happened is decided by the database, not by a prior read.
"""
import uuid
from typing import Any, Collection, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_gateway.database.models import Transaction, TransactionStatus

logger = structlog.get_logger(__name__)


class PersistenceError(Exception):
    """Raised when the transaction store cannot be read or written."""

    pass


def _coerce_status(value: Any) -> Any:
    return value.value if isinstance(value, TransactionStatus) else value


class TransactionStore:
    """Async SQLAlchemy backed store for Transaction records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize transaction store.

        Args:
            session_factory: Factory producing one session per operation
        """
        self.session_factory = session_factory

    async def create(self, **fields: Any) -> Transaction:
        """
        Insert a new transaction and commit it.

        Args:
            **fields: Column values for the new row

        Returns:
            Transaction: The committed record

        Raises:
            PersistenceError: On constraint violation or database failure
        """
        fields = {key: _coerce_status(value) for key, value in fields.items()}
        try:
            async with self.session_factory() as session:
                transaction = Transaction(**fields)
                session.add(transaction)
                await session.commit()
                await session.refresh(transaction)
                return transaction
        except IntegrityError as e:
            logger.error(
                "transaction_create_conflict",
                merchant_request_id=fields.get("merchant_request_id"),
                error=str(e.orig),
            )
            raise PersistenceError(f"Transaction violates a database constraint: {e.orig}")
        except (SQLAlchemyError, OSError) as e:
            logger.error("transaction_create_failed", error=str(e))
            raise PersistenceError(f"Failed to create transaction: {str(e)}")

    async def find_by_correlation_id(self, merchant_request_id: str) -> Optional[Transaction]:
        """Look up a transaction by the merchant request id we generated."""
        try:
            async with self.session_factory() as session:
                stmt = select(Transaction).where(
                    Transaction.merchant_request_id == merchant_request_id
                )
                result = await session.execute(stmt)
                return result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "transaction_lookup_failed",
                merchant_request_id=merchant_request_id,
                error=str(e),
            )
            raise PersistenceError(f"Failed to look up transaction: {str(e)}")

    async def get_by_id(self, transaction_id: str | uuid.UUID) -> Optional[Transaction]:
        """Look up a transaction by primary key."""
        try:
            transaction_uuid = uuid.UUID(str(transaction_id))
        except ValueError:
            return None

        try:
            async with self.session_factory() as session:
                return await session.get(Transaction, transaction_uuid)
        except (SQLAlchemyError, OSError) as e:
            logger.error("transaction_get_failed", transaction_id=str(transaction_id), error=str(e))
            raise PersistenceError(f"Failed to load transaction: {str(e)}")

    async def update_by_id(
        self,
        transaction_id: uuid.UUID,
        values: Dict[str, Any],
        expected_statuses: Optional[Collection[TransactionStatus]] = None,
    ) -> Optional[Transaction]:
        """
        Apply ``values`` to one transaction, optionally guarded by its status.

        Args:
            transaction_id: Primary key of the row
            values: Column values to set
            expected_statuses: When given, the update only applies if the
                current status is one of these

        Returns:
            Optional[Transaction]: The updated record, or None when the
            status guard did not match (row left untouched)

        Raises:
            PersistenceError: If the row does not exist or the write fails
        """
        values = {key: _coerce_status(value) for key, value in values.items()}
        stmt = update(Transaction).where(Transaction.id == transaction_id).values(**values)
        if expected_statuses is not None:
            stmt = stmt.where(
                Transaction.status.in_([_coerce_status(s) for s in expected_statuses])
            )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                if result.rowcount == 1:
                    transaction = await session.get(Transaction, transaction_id)
                    await session.commit()
                    return transaction

                await session.rollback()
                exists = await session.get(Transaction, transaction_id)
                if exists is None:
                    raise PersistenceError(f"Transaction {transaction_id} not found")

                logger.info(
                    "transaction_update_guard_rejected",
                    transaction_id=str(transaction_id),
                    current_status=exists.status,
                    expected_statuses=[_coerce_status(s) for s in expected_statuses or ()],
                )
                return None
        except IntegrityError as e:
            logger.error(
                "transaction_update_conflict", transaction_id=str(transaction_id), error=str(e.orig)
            )
            raise PersistenceError(f"Transaction update violates a constraint: {e.orig}")
        except (SQLAlchemyError, OSError) as e:
            logger.error("transaction_update_failed", transaction_id=str(transaction_id), error=str(e))
            raise PersistenceError(f"Failed to update transaction: {str(e)}")
