"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity through the store pool
- Chat session state
"""
from typing import Any, Dict, Optional, Protocol

import structlog

from kyver_invoices.core.exceptions import StoreUnavailableError
from kyver_invoices.database import Store

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class ChatSessionState(Protocol):
    """What the health check needs to know about the chat session."""

    @property
    def is_running(self) -> bool: ...


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Chat session check (reported as disabled when no session is configured)
    - Overall system health status
    """

    def __init__(self, store: Store, chat_session: Optional[ChatSessionState] = None) -> None:
        """Initialize health check service."""
        self.store = store
        self.chat_session = chat_session

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await self.store.ping()
        except StoreUnavailableError as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_chat(self) -> Dict[str, Any]:
        """
        Check the chat session.

        Returns:
            Dict[str, Any]: Chat health status

        Raises:
            HealthCheckError: If the session is configured but not running
        """
        if self.chat_session is None:
            return {
                "status": "disabled",
                "service": "chat",
                "message": "Chat session not configured",
            }

        if not self.chat_session.is_running:
            logger.error("chat_health_check_failed")
            raise HealthCheckError("Chat session is not running")

        return {
            "status": "healthy",
            "service": "chat",
            "message": "Chat session connected",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("chat", self.check_chat)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
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
        """Readiness probe endpoint; verifies all dependencies are available."""
        return await self.check_all()
