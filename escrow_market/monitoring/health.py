"""
Readiness and liveness checks.

The ledger check also reports the open reconciliation backlog. Redis is
checked only when the sweeper lock is configured.
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_market.config import Settings, get_settings
from escrow_market.core.reconciliation import ReconciliationLedger
from escrow_market.database.connection import get_session_factory
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """A dependency check failed."""


class HealthCheck:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        ledger: Optional[ReconciliationLedger] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.ledger = ledger or ReconciliationLedger()

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Round-trip the ledger database and count open reconciliation events.

        Raises:
            HealthCheckError: If the database cannot be queried
        """
        factory = self.session_factory or get_session_factory()
        try:
            async with factory() as db:
                await db.execute(text("SELECT 1"))
                backlog = await self.ledger.count_open(db)
        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger unreachable: {e}") from e

        metrics.set_open_reconciliation_events(backlog)
        return {
            "status": "healthy",
            "service": "ledger",
            "open_reconciliation_events": backlog,
        }

    async def check_sweeper_lock(self) -> Dict[str, Any]:
        """
        Ping the Redis instance that holds the sweeper lock.

        Raises:
            HealthCheckError: If Redis does not answer
        """
        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.error("sweeper_lock_health_check_failed", error=str(e))
            raise HealthCheckError(f"Sweeper lock store unreachable: {e}") from e
        finally:
            await client.aclose()
        return {"status": "healthy", "service": "redis"}

    async def check_all(self) -> Dict[str, Any]:
        """Run every configured check and fold them into one status."""
        dependencies = {"ledger": self.check_ledger}
        if self.settings.redis_url:
            dependencies["redis"] = self.check_sweeper_lock

        checks: Dict[str, Any] = {}
        for name, check in dependencies.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}

        healthy = all(c["status"] == "healthy" for c in checks.values())
        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; touches no dependency."""
        return {"status": "alive", "message": "Escrow market is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
