"""
STK callback reconciliation.

Implements:
- Parsing of the ``Body.stkCallback`` envelope M-PESA posts back
- Correlation by MerchantRequestID against the stored transaction
- Exactly-once terminal update through a status-guarded write
- Replay and conflict detection without ever downgrading a record
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from mpesa_gateway.database.models import (
    OPEN_STATUSES,
    Transaction,
    TransactionStatus,
)
from mpesa_gateway.database.repository import PersistenceError, TransactionStore
from mpesa_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    """What happened to a callback."""

    APPLIED = "applied"
    ALREADY_RECONCILED = "already_reconciled"
    CONFLICT = "conflict"
    UNKNOWN_CORRELATION = "unknown_correlation"
    MALFORMED = "malformed"
    STORE_UNAVAILABLE = "store_unavailable"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ReconciliationResult:
    """Outcome of reconciling one callback."""

    outcome: ReconciliationOutcome
    merchant_request_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    detail: Optional[str] = None

    @property
    def acknowledged(self) -> bool:
        """Whether M-PESA should be told the callback was received."""
        return self.outcome != ReconciliationOutcome.MALFORMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "merchant_request_id": self.merchant_request_id,
            "transaction_id": self.transaction_id,
            "status": self.status,
            "detail": self.detail,
        }


@dataclass
class StkCallback:
    """Fields extracted from ``Body.stkCallback``."""

    merchant_request_id: str
    checkout_request_id: Optional[str]
    result_code: Any
    result_desc: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        """Only an integer 0 or the string "0" is success."""
        code = self.result_code
        if isinstance(code, bool):
            return False
        if isinstance(code, int):
            return code == 0
        if isinstance(code, str):
            return code.strip() == "0"
        return False


def _metadata_items(callback: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten ``CallbackMetadata.Item`` into a name -> value dict."""
    container = callback.get("CallbackMetadata")
    items: List[Any] = container.get("Item", []) if isinstance(container, dict) else []
    if not isinstance(items, list):
        return {}
    return {
        item["Name"]: item.get("Value")
        for item in items
        if isinstance(item, dict) and isinstance(item.get("Name"), str)
    }


def parse_stk_callback(payload: Any) -> Optional[StkCallback]:
    """
    Extract the STK callback from a raw payload.

    Returns:
        Optional[StkCallback]: None when the envelope or correlation id is missing
    """
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        return None

    merchant_request_id = callback.get("MerchantRequestID")
    if not merchant_request_id:
        return None

    return StkCallback(
        merchant_request_id=str(merchant_request_id),
        checkout_request_id=callback.get("CheckoutRequestID"),
        result_code=callback.get("ResultCode"),
        result_desc=callback.get("ResultDesc"),
        metadata=_metadata_items(callback),
    )


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class CallbackReconciler:
    """
    Applies STK callbacks to stored transactions.

    ``reconcile()`` never raises: every failure is reported as a
    ``ReconciliationResult`` so the HTTP layer can always answer M-PESA.
    """

    def __init__(self, store: TransactionStore):
        self.store = store

    async def reconcile(self, payload: Any) -> ReconciliationResult:
        """
        Reconcile one raw callback payload.

        Args:
            payload: Decoded JSON body posted by M-PESA

        Returns:
            ReconciliationResult: What was done with the callback
        """
        started = time.perf_counter()
        try:
            result = await self._reconcile(payload)
        except Exception as e:
            logger.error(
                "callback_processing_error",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            result = ReconciliationResult(
                outcome=ReconciliationOutcome.INTERNAL_ERROR,
                detail=f"{type(e).__name__}: {str(e)}",
            )
        metrics.record_callback(result.outcome.value, time.perf_counter() - started)
        return result

    async def _reconcile(self, payload: Any) -> ReconciliationResult:
        callback = parse_stk_callback(payload)
        if callback is None:
            logger.warning("callback_malformed")
            return ReconciliationResult(
                outcome=ReconciliationOutcome.MALFORMED,
                detail="Missing Body.stkCallback or MerchantRequestID",
            )

        log = logger.bind(merchant_request_id=callback.merchant_request_id)
        log.info(
            "callback_received",
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
        )

        try:
            transaction = await self.store.find_by_correlation_id(callback.merchant_request_id)
            if transaction is None:
                log.warning("callback_unknown_correlation")
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.UNKNOWN_CORRELATION,
                    merchant_request_id=callback.merchant_request_id,
                )

            return await self._apply(callback, transaction, payload)
        except PersistenceError as e:
            log.error("callback_store_unavailable", error=str(e))
            return ReconciliationResult(
                outcome=ReconciliationOutcome.STORE_UNAVAILABLE,
                merchant_request_id=callback.merchant_request_id,
                detail=str(e),
            )

    async def _apply(
        self,
        callback: StkCallback,
        transaction: Transaction,
        payload: Dict[str, Any],
    ) -> ReconciliationResult:
        if callback.is_success:
            target = TransactionStatus.SUCCESS
            receipt = _optional_str(callback.metadata.get("MpesaReceiptNumber"))
            values: Dict[str, Any] = {
                "status": target,
                "mpesa_receipt_number": receipt,
                "failure_reason": None,
                "callback_transaction_date": _optional_str(
                    callback.metadata.get("TransactionDate")
                ),
                "callback_phone_number": _optional_str(callback.metadata.get("PhoneNumber")),
            }
        else:
            target = TransactionStatus.FAILED
            receipt = None
            values = {
                "status": target,
                "failure_reason": _optional_str(callback.result_desc)
                or f"ResultCode {callback.result_code}",
            }
        values["callback_payload"] = payload

        updated = await self.store.update_by_id(
            transaction.id, values, expected_statuses=OPEN_STATUSES
        )
        if updated is not None:
            logger.info(
                "callback_applied",
                merchant_request_id=callback.merchant_request_id,
                transaction_id=str(transaction.id),
                status=target.value,
                mpesa_receipt_number=receipt,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.APPLIED,
                merchant_request_id=callback.merchant_request_id,
                transaction_id=str(transaction.id),
                status=target.value,
            )

        # Guard rejected: the record is already terminal
        current = await self.store.get_by_id(transaction.id)
        current_status = current.status if current is not None else None

        if current is not None and self._is_replay(current, target, receipt):
            logger.info(
                "callback_already_reconciled",
                merchant_request_id=callback.merchant_request_id,
                transaction_id=str(transaction.id),
                status=current_status,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_RECONCILED,
                merchant_request_id=callback.merchant_request_id,
                transaction_id=str(transaction.id),
                status=current_status,
            )

        logger.error(
            "callback_conflict",
            merchant_request_id=callback.merchant_request_id,
            transaction_id=str(transaction.id),
            stored_status=current_status,
            stored_receipt=current.mpesa_receipt_number if current is not None else None,
            callback_status=target.value,
            callback_receipt=receipt,
        )
        return ReconciliationResult(
            outcome=ReconciliationOutcome.CONFLICT,
            merchant_request_id=callback.merchant_request_id,
            transaction_id=str(transaction.id),
            status=current_status,
            detail=f"Stored status {current_status} conflicts with callback status {target.value}",
        )

    @staticmethod
    def _is_replay(
        current: Transaction, target: TransactionStatus, receipt: Optional[str]
    ) -> bool:
        if current.status != target.value:
            return False
        if target is TransactionStatus.SUCCESS:
            return receipt is None or current.mpesa_receipt_number in (None, receipt)
        return True
