"""
API routes for the M-PESA gateway.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mpesa_gateway.core.exceptions import PaymentValidationError
from mpesa_gateway.core.orchestrator import PaymentRequestOrchestrator
from mpesa_gateway.core.reconciler import CallbackReconciler
from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.repository import PersistenceError, TransactionStore
from mpesa_gateway.integrations.mpesa_auth import AuthError
from mpesa_gateway.integrations.mpesa_client import GatewayError
from mpesa_gateway.monitoring.health import HealthCheck

from .dependencies import (
    get_health_check,
    get_orchestrator,
    get_reconciler,
    get_store,
    get_token_cache,
    verify_callback_ip,
    verify_internal_api_key,
)
from .schemas import (
    CallbackAckResponse,
    HealthCheckResponse,
    StkPushRequest,
    StkPushResponse,
    TokenStatusResponse,
    TransactionStatusResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(
    prefix="/internal/v1/payments",
    tags=["payments"],
    dependencies=[Depends(verify_internal_api_key)],
)
callback_router = APIRouter(prefix="/mpesa/callback", tags=["callbacks"])
admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(verify_internal_api_key)],
)
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "/request",
    response_model=StkPushResponse,
    summary="Initiate an STK push",
    description="Send a payment prompt to the payer's phone",
)
async def request_payment(
    request: StkPushRequest,
    orchestrator: PaymentRequestOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """
    Initiate an STK push.

    The final outcome arrives later on the callback endpoint.
    """
    try:
        ack = await orchestrator.submit(
            amount=request.amount,
            phone_number=request.phone_number,
            account_reference=request.account_reference,
            description=request.transaction_desc,
        )
        return {
            "status": "success",
            "message": "STK Push initiated successfully. Waiting for callback.",
            "data": ack,
        }

    except PaymentValidationError as e:
        logger.warning("api_stk_push_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except AuthError as e:
        logger.error("api_stk_push_auth_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not authenticate with M-PESA",
        )

    except GatewayError as e:
        logger.error("api_stk_push_gateway_error", error=str(e), status_code=e.status_code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"STK push failed: {e.failure_reason}",
        )

    except PersistenceError as e:
        logger.error("api_stk_push_persistence_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Transaction could not be recorded",
        )


@payment_router.get(
    "/{transaction_id}",
    response_model=TransactionStatusResponse,
    summary="Get transaction status",
    description="Look up one transaction by its ID",
)
async def get_transaction(
    transaction_id: str,
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    """Get transaction status by ID."""
    try:
        transaction = await store.get_by_id(transaction_id)
    except PersistenceError as e:
        logger.error("api_get_transaction_error", error=str(e), transaction_id=transaction_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve transaction",
        )

    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")

    return {"status": "success", "data": transaction.to_dict()}


@callback_router.post(
    "/stk",
    response_model=CallbackAckResponse,
    summary="STK push callback",
    description="Receives the asynchronous STK push result from M-PESA",
    dependencies=[Depends(verify_callback_ip)],
)
async def stk_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Any:
    """
    Handle an STK push callback.

    Answers 200 for every well-formed callback, including unknown and
    conflicting ones, so M-PESA stops redelivering; malformed bodies get 400.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    result = await reconciler.reconcile(payload)

    if not result.acknowledged:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": "Invalid payload", "outcome": result.outcome.value},
        )

    return {"message": "Callback received", "outcome": result.outcome.value}


@admin_router.get(
    "/token/status",
    response_model=TokenStatusResponse,
    summary="Token status",
    description="Report whether an M-PESA token is cached and when it expires",
)
async def token_status(token_cache: TokenCache = Depends(get_token_cache)) -> Dict[str, Any]:
    """Token cache diagnostics."""
    return {"status": "success", "data": token_cache.status()}


@admin_router.post(
    "/token/refresh",
    response_model=TokenStatusResponse,
    summary="Refresh token",
    description="Discard the cached M-PESA token and fetch a new one",
)
async def refresh_token(token_cache: TokenCache = Depends(get_token_cache)) -> Dict[str, Any]:
    """Force a token refresh."""
    try:
        await token_cache.force_refresh()
    except AuthError as e:
        logger.error("api_token_refresh_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to refresh token",
        )

    logger.info("api_token_refreshed")
    return {
        "status": "success",
        "message": "Token refreshed successfully",
        "data": token_cache.status(),
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
