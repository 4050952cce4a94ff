"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (webhook queue)
- Finix circuit breaker state
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text

from config import get_settings
from database.connection import get_session_factory
from integrations.webhook_queue import WebhookQueue

if TYPE_CHECKING:
    from integrations.finix_client import FinixClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Finix circuit breaker check
    - Overall system health status
    """

    def __init__(
        self,
        queue: Optional[WebhookQueue] = None,
        finix_client: Optional["FinixClient"] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            queue: Optional webhook queue (its Redis connection is pinged)
            finix_client: Optional Finix client whose circuit breaker is reported
        """
        self.settings = get_settings()
        self.queue = queue
        self.finix_client = finix_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
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

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.queue is None:
            self.queue = WebhookQueue()
        try:
            await self.queue.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

    async def check_finix(self) -> Dict[str, Any]:
        """
        Report the Finix circuit breaker.

        An open breaker means recent calls failed transiently; the check
        fails so the instance is taken out of rotation until it recovers.

        Raises:
            HealthCheckError: If the circuit breaker is open
        """
        state = self.finix_client.circuit_breaker.state if self.finix_client else "closed"
        if state == "open":
            raise HealthCheckError("Finix circuit breaker is open")
        return {
            "status": "healthy",
            "service": "finix",
            "circuit_breaker": state,
            "base_url": self.settings.finix_base_url,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("finix", self.check_finix),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
