"""
Expiry sweeper background worker.

Settles orders whose verification or dispute window has passed. Candidates
are selected in one short transaction and each order is settled in its own
session, so a failing settlement never blocks the rest of the sweep.
"""
import asyncio
import signal
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError
from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_market.config import Settings, get_settings
from escrow_market.core.order_lifecycle import SETTLEABLE_STATES, OrderLifecycleEngine
from escrow_market.database.connection import get_session_factory
from escrow_market.database.models import Dispute, Order, utcnow
from escrow_market.monitoring.logging import setup_logging
from escrow_market.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SWEEPER_LOCK_NAME = "escrow:expiry_sweeper"


@dataclass
class SweepSummary:
    selected: int = 0
    settled: int = 0
    skipped: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ExpirySweeper:
    """
    Periodic settlement of expired orders.

    Talks to request handlers only through the ledger database. The optional
    Redis lock keeps two processes from sweeping at once; ``settle`` re-checks
    everything under a row lock, so correctness does not depend on it.
    """

    def __init__(
        self,
        lifecycle: OrderLifecycleEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the sweeper.

        Args:
            lifecycle: Engine whose ``settle`` completes each order
            session_factory: Session factory (defaults to the ledger's)
            redis_client: Optional Redis client for the cross-process lock
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.lifecycle = lifecycle
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client
        self._redis_initialized = False

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Create the Redis client on first use when a URL is configured."""
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    async def _select_candidates(self, now: datetime) -> List[Any]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Order.id)
                .where(
                    Order.status.in_(SETTLEABLE_STATES),
                    Order.expires_at.is_not(None),
                    Order.expires_at <= now,
                    ~exists().where(Dispute.order_id == Order.id),
                )
                .order_by(Order.expires_at.asc())
            )
            return list(result.scalars().all())

    async def run_once(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Run one sweep.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            SweepSummary: Counts of selected, settled, skipped and failed orders
        """
        start = time.time()
        now = now or utcnow()
        summary = SweepSummary()

        order_ids = await self._select_candidates(now)
        summary.selected = len(order_ids)

        for order_id in order_ids:
            try:
                async with self.session_factory() as db:
                    settled = await self.lifecycle.settle(db, order_id, now=now)
            except Exception as e:
                summary.errors += 1
                logger.error(
                    "sweeper_settlement_failed",
                    order_id=str(order_id),
                    error=str(e),
                    exc_info=True,
                )
                continue

            if settled:
                summary.settled += 1
            else:
                summary.skipped += 1

        duration = time.time() - start
        metrics.record_sweep(summary.settled, summary.errors, duration)
        logger.info("sweep_completed", duration_seconds=round(duration, 3), **summary.to_dict())
        return summary

    async def tick(self) -> Optional[SweepSummary]:
        """
        Run one sweep under the Redis lock when one is configured.

        Returns None when another process holds the lock.
        """
        redis_client = await self._ensure_redis()
        if redis_client is None:
            return await self.run_once()

        lock = redis_client.lock(
            SWEEPER_LOCK_NAME,
            timeout=self.settings.sweeper_lock_timeout,
            blocking=False,
        )
        if not await lock.acquire():
            logger.info("sweep_skipped_lock_held")
            return None
        try:
            return await self.run_once()
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("sweeper_lock_expired_before_release")

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        """
        Sweep every ``sweep_interval_seconds`` until ``stop`` is set.

        A failed sweep is logged and the loop continues.
        """
        stop = stop or asyncio.Event()
        interval = self.settings.sweep_interval_seconds
        logger.info("expiry_sweeper_started", interval_seconds=interval)

        while not stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("sweep_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("expiry_sweeper_stopped")

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()


async def start_expiry_sweeper(interval: Optional[float] = None) -> None:
    """
    Start the sweeper as a standalone worker process.

    Args:
        interval: Seconds between sweeps (defaults to settings)
    """
    from escrow_market.api.dependencies import build_lifecycle

    setup_logging()
    settings = get_settings()
    if interval is not None:
        settings = settings.model_copy(update={"sweep_interval_seconds": interval})

    sweeper = ExpirySweeper(build_lifecycle(), settings=settings)
    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiry_sweeper_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await sweeper.run_forever(stop)
    finally:
        await sweeper.close()


def main() -> None:
    """Command-line entry point for the standalone sweeper."""
    import argparse

    parser = argparse.ArgumentParser(description="Escrow expiry sweeper")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single sweep and exit"
    )
    args = parser.parse_args()

    if args.once:
        from escrow_market.api.dependencies import build_lifecycle

        setup_logging()
        asyncio.run(ExpirySweeper(build_lifecycle()).run_once())
    else:
        asyncio.run(start_expiry_sweeper(interval=args.interval))


if __name__ == "__main__":
    main()
