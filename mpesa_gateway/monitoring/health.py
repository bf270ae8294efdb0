"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Token cache state (reported, never fetched)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Readiness depends on the database only: a missing token is fetched on
    the next payment request, so it does not make the service unready.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        token_cache: Optional[TokenCache] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Optional session factory (uses the global one if not provided)
            token_cache: Optional token cache whose status is reported
        """
        self.session_factory = session_factory
        self.token_cache = token_cache

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_token_cache(self) -> Dict[str, Any]:
        """Report token cache state."""
        if self.token_cache is None:
            return {"status": "unknown", "service": "mpesa_token"}
        return {"status": "healthy", "service": "mpesa_token", **self.token_cache.status()}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        checks["mpesa_token"] = self.check_token_cache()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up, dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: verifies the database is reachable."""
        return await self.check_all()
