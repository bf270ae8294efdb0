"""
Request dependencies: endpoint protection and access to app-scoped services.
"""
import secrets
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status

from mpesa_gateway.config import Settings, get_settings
from mpesa_gateway.core.orchestrator import PaymentRequestOrchestrator
from mpesa_gateway.core.reconciler import CallbackReconciler
from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.repository import TransactionStore
from mpesa_gateway.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


def get_app_settings(request: Request) -> Settings:
    """Settings the app was built with (falls back to the cached settings)."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_orchestrator(request: Request) -> PaymentRequestOrchestrator:
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> CallbackReconciler:
    return request.app.state.reconciler


def get_token_cache(request: Request) -> TokenCache:
    return request.app.state.token_cache


def get_store(request: Request) -> TransactionStore:
    return request.app.state.store


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


async def verify_internal_api_key(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Require the internal API key header.

    Raises:
        HTTPException: 401 when the header is missing, 403 when it is wrong
    """
    api_key: Optional[str] = request.headers.get(settings.api_key_header)

    if not api_key:
        logger.warning("internal_api_key_missing", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, no API key provided",
        )

    # An unset key blocks every internal request
    if not settings.internal_api_key or not secrets.compare_digest(
        api_key, settings.internal_api_key
    ):
        logger.warning("internal_api_key_invalid", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden, invalid API key")


def get_client_ip(request: Request) -> Optional[str]:
    """Caller IP, preferring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    else:
        ip = request.client.host if request.client else None

    if ip and ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    return ip


async def verify_callback_ip(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """
    Only accept callbacks from M-PESA's published addresses.

    Disabled in development and when enforcement is switched off.

    Raises:
        HTTPException: 403 for any other source address
    """
    if settings.is_development or not settings.enforce_callback_ip_whitelist:
        return

    client_ip = get_client_ip(request)
    if client_ip not in settings.get_callback_allowed_ips():
        logger.warning("callback_ip_blocked", client_ip=client_ip)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden: Unauthorized IP address",
        )
