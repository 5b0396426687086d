"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Work queue depth (reported, never fails readiness)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the shared store and the work queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        work_queue: Optional[Any] = None,
    ) -> None:
        self.session_factory = session_factory
        self.work_queue = work_queue

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_queue(self) -> Dict[str, Any]:
        """Report work queue depth by status."""
        if self.work_queue is None:
            return {"status": "healthy", "service": "work_queue", "message": "Not configured"}

        try:
            counts = await self.work_queue.status_counts()
        except Exception as e:
            logger.error("queue_health_check_failed", error=str(e))
            raise HealthCheckError(f"Work queue health check failed: {str(e)}") from e

        return {"status": "healthy", "service": "work_queue", "counts": counts}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("work_queue", self.check_queue)):
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
        """Liveness probe. Does not check external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: the store must be reachable."""
        return await self.check_all()
