"""
STK push request orchestrator.

Orchestrates the outbound half of a payment:
1. Validate input
2. Obtain a bearer token
3. Normalize the payer phone number
4. Allocate the correlation id (MerchantRequestID)
5. Persist the Initiated record and commit
6. Call M-PESA
7. Record the acknowledgement (Pending) or the failure (Failed)

The inbound half (the asynchronous callback) is handled by
``CallbackReconciler``; the two only meet through the stored record.
"""
import time
import uuid
from typing import Any, Dict, Optional

import structlog

from mpesa_gateway.config import Settings, get_settings
from mpesa_gateway.core.exceptions import PaymentError, PaymentValidationError
from mpesa_gateway.core.helpers import generate_password, get_timestamp, normalize_phone_number
from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.models import STK_PUSH, Transaction, TransactionStatus
from mpesa_gateway.database.repository import PersistenceError, TransactionStore
from mpesa_gateway.integrations.mpesa_auth import AuthError
from mpesa_gateway.integrations.mpesa_client import GatewayError, MpesaClient
from mpesa_gateway.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

__all__ = ["PaymentError", "PaymentValidationError", "PaymentRequestOrchestrator"]


class PaymentRequestOrchestrator:
    """
    Submits STK push requests.

    Every accepted call leaves exactly one Transaction row behind, and by the
    time ``submit()`` returns or raises ``GatewayError`` that row is no longer
    Initiated.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        mpesa_client: MpesaClient,
        store: TransactionStore,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            token_cache: Shared bearer token cache
            mpesa_client: STK push client
            store: Transaction store
            settings: Optional settings (uses cached settings if not provided)
        """
        self.token_cache = token_cache
        self.mpesa_client = mpesa_client
        self.store = store
        self.settings = settings or get_settings()

    @staticmethod
    def _validate_request(
        amount: Any,
        phone_number: Any,
        account_reference: Any,
        description: Any,
    ) -> None:
        """
        Validate payment request parameters.

        Raises:
            PaymentValidationError: If validation fails
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise PaymentValidationError("Amount must be a whole number")

        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

        for name, value in (
            ("Phone number", phone_number),
            ("Account reference", account_reference),
            ("Transaction description", description),
        ):
            if not isinstance(value, str) or not value.strip():
                raise PaymentValidationError(f"{name} is required")

    def _build_payload(
        self,
        merchant_request_id: str,
        amount: int,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> Dict[str, Any]:
        """Build the STK push request body."""
        timestamp = get_timestamp()
        short_code = self.settings.mpesa_shortcode
        return {
            "MerchantRequestID": merchant_request_id,
            "BusinessShortCode": short_code,
            "Password": generate_password(short_code, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": str(amount),
            "PartyA": phone_number,
            "PartyB": short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.settings.mpesa_stk_callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
            "ReferenceData": [{"Key": "ThirdPartyReference", "Value": account_reference}],
        }

    @staticmethod
    def _audit_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Copy of the outbound payload safe to store."""
        return {key: ("***" if key == "Password" else value) for key, value in payload.items()}

    async def submit(
        self,
        amount: int,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> Dict[str, Any]:
        """
        Submit an STK push and record its synchronous outcome.

        Args:
            amount: Amount in whole currency units
            phone_number: Payer phone number in any accepted shape
            account_reference: Merchant reference shown to the payer
            description: Transaction description

        Returns:
            Dict[str, Any]: M-PESA's acknowledgement body

        Raises:
            PaymentValidationError: If input validation fails (nothing persisted)
            AuthError: If no token could be obtained (nothing persisted)
            GatewayError: If the STK push failed (record marked Failed)
            PersistenceError: If the transaction store is unavailable
        """
        started = time.perf_counter()

        # Step 1: Validate input
        self._validate_request(amount, phone_number, account_reference, description)

        # Step 2: Obtain token
        try:
            token = await self.token_cache.get_token()
        except AuthError:
            metrics.record_stk_push("auth_error", amount, time.perf_counter() - started)
            raise

        # Step 3: Normalize phone number
        normalized_phone = normalize_phone_number(phone_number, self.settings.mpesa_country_code)

        # Step 4: Correlation id
        merchant_request_id = str(uuid.uuid4())
        log = logger.bind(merchant_request_id=merchant_request_id)

        log.info(
            "stk_push_initiated",
            amount=amount,
            account_reference=account_reference,
        )

        payload = self._build_payload(
            merchant_request_id, amount, normalized_phone, account_reference, description
        )

        # Step 5: Persist the Initiated record before calling out
        try:
            transaction = await self.store.create(
                type=STK_PUSH,
                amount=amount,
                phone_number=normalized_phone,
                account_reference=account_reference,
                status=TransactionStatus.INITIATED,
                merchant_request_id=merchant_request_id,
                request_payload=self._audit_payload(payload),
            )
        except PersistenceError:
            metrics.record_stk_push("persistence_error", amount, time.perf_counter() - started)
            raise

        log = log.bind(transaction_id=str(transaction.id))
        log.info("transaction_initiated")

        # Step 6: Call M-PESA
        try:
            ack = await self.mpesa_client.send_stk_push(payload, token)
        except GatewayError as e:
            await self._record_failure(transaction, e)
            metrics.record_stk_push("failed", amount, time.perf_counter() - started)
            raise

        # Step 7: Record the acknowledgement
        await self._record_ack(transaction, ack)
        metrics.record_stk_push("pending", amount, time.perf_counter() - started)

        log.info(
            "stk_push_pending",
            checkout_request_id=ack.get("CheckoutRequestID"),
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        return ack

    async def _record_ack(self, transaction: Transaction, ack: Dict[str, Any]) -> None:
        """Move Initiated -> Pending unless a callback got there first."""
        checkout_request_id = ack.get("CheckoutRequestID")
        updated = await self.store.update_by_id(
            transaction.id,
            {
                "status": TransactionStatus.PENDING,
                "checkout_request_id": checkout_request_id,
                "response_payload": ack,
            },
            expected_statuses={TransactionStatus.INITIATED},
        )
        if updated is not None:
            return

        # The callback already made the record terminal; keep its outcome
        logger.info(
            "stk_push_ack_after_callback",
            merchant_request_id=transaction.merchant_request_id,
            transaction_id=str(transaction.id),
        )
        await self.store.update_by_id(
            transaction.id,
            {"checkout_request_id": checkout_request_id, "response_payload": ack},
        )

    async def _record_failure(self, transaction: Transaction, error: GatewayError) -> None:
        """Move Initiated -> Failed with the most specific reason available."""
        updated = await self.store.update_by_id(
            transaction.id,
            {
                "status": TransactionStatus.FAILED,
                "failure_reason": error.failure_reason,
                "response_payload": error.detail,
            },
            expected_statuses={TransactionStatus.INITIATED},
        )

        logger.error(
            "stk_push_failed",
            merchant_request_id=transaction.merchant_request_id,
            transaction_id=str(transaction.id),
            status_code=error.status_code,
            failure_reason=error.failure_reason,
            recorded=updated is not None,
        )
