"""
Checkout Expiry Worker
======================

Runs every ``EXPIRY_SWEEP_INTERVAL_SECONDS`` (default 60 s).

A checkout session the rider abandons is normally closed by the
processor's ``checkout.session.expired`` webhook.  When that webhook is
lost the payment would stay ``pending`` forever and keep the trip's
uniqueness slot, so this worker moves every ``created`` / ``pending``
payment whose ``expires_at`` has passed to ``expired``.

Concurrency safety
------------------
* **Redis lease** ensures only one API process sweeps per interval.
* The sweep is a single conditional ``UPDATE``; a payment settled in the
  meantime no longer matches its ``WHERE`` clause.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from rideflex.config import settings
from rideflex.domain.payments import PaymentLedger
from rideflex.infrastructure.database import async_session_factory
from rideflex.infrastructure.locks import LockUnavailable, RedisLease
from rideflex.infrastructure.redis_client import get_redis
from rideflex.infrastructure.repositories import (
    PaymentRepository,
    RiderRepository,
    TripRepository,
)

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_expiry_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Expiry worker started (interval=%ds)", settings.expiry_sweep_interval_seconds
    )


async def stop_expiry_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Expiry worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_expiry_sweep()
        except Exception:
            logger.exception("Unhandled error in expiry sweep")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.expiry_sweep_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_expiry_sweep(now: datetime | None = None) -> int:
    """Expire stale checkouts once.  Returns the number of payments expired."""
    lease = RedisLease(
        await get_redis(),
        "checkout_expiry",
        ttl_seconds=max(settings.expiry_sweep_interval_seconds, 1),
    )
    try:
        async with lease:
            async with async_session_factory() as session:
                ledger = PaymentLedger(
                    payments=PaymentRepository(session),
                    trips=TripRepository(session),
                    riders=RiderRepository(session),
                    processor=None,
                )
                expired = await ledger.expire_stale_checkouts(
                    now or datetime.now(timezone.utc)
                )
                await session.commit()
                return expired
    except LockUnavailable:
        logger.debug("Expiry lease held by another process; skipping sweep")
        return 0
