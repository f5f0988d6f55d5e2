from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable

import aiojobs

from pixsettle.config import settings
from pixsettle.payment.registry import PendingTransactionRegistry
from pixsettle.services.withdrawal import WithdrawalWindowScheduler
from pixsettle.utils.correlation import correlation_scope

logger = logging.getLogger(__name__)

# Expired expectations are kept this long for the admin pending/expired views
EXPIRED_RETENTION = timedelta(hours=24)


async def job_expire_pending(registry: PendingTransactionRegistry) -> None:
    expired = await registry.expire_older_than()
    purged = await registry.purge_terminal(EXPIRED_RETENTION)
    if expired or purged:
        logger.info("job_expire_pending done", extra={"extra": {"expired": len(expired), "purged": purged}})


async def job_withdrawal_tick(withdrawals: WithdrawalWindowScheduler) -> None:
    result = await withdrawals.tick()
    if result["opened"] or result["closed"]:
        logger.info("job_withdrawal_tick done", extra={"extra": result})


async def periodic(name: str, job: Callable[[], Awaitable[None]], interval: float) -> None:
    while True:
        with correlation_scope(f"job-{name}"):
            try:
                await job()
            except Exception as e:
                logger.exception("periodic job error: %s", e, extra={"extra": {"job": name}})
        await asyncio.sleep(interval)


async def run_scheduler(registry: PendingTransactionRegistry, withdrawals: WithdrawalWindowScheduler) -> None:
    sched = aiojobs.Scheduler()

    await sched.spawn(periodic("expire_pending", lambda: job_expire_pending(registry), settings.pix_sweep_interval_seconds))
    await sched.spawn(periodic("withdrawal_tick", lambda: job_withdrawal_tick(withdrawals), settings.withdrawal_tick_seconds))

    logger.info("scheduler started")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await sched.close()
