from __future__ import annotations

from datetime import timedelta

import pytest

from pixsettle.payment.registry import ExpectationStatus, PendingTransactionRegistry
from pixsettle.services import scheduler
from pixsettle.utils.time import utc_now


@pytest.mark.asyncio
async def test_job_expire_pending_sweeps_and_purges(registry: PendingTransactionRegistry) -> None:
    stale = await registry.register(1, "ana@example.com", 300, now=utc_now() - timedelta(minutes=31))
    ancient = await registry.register(1, "ana@example.com", 400, now=utc_now() - timedelta(hours=30))
    fresh = await registry.register(2, "bruno@example.com", 500)

    await scheduler.job_expire_pending(registry)

    assert registry.get(stale.id).status is ExpectationStatus.EXPIRED
    assert registry.get(ancient.id) is None
    assert registry.get(fresh.id).status is ExpectationStatus.PENDING


@pytest.mark.asyncio
async def test_job_withdrawal_tick_delegates() -> None:
    calls = []

    class FakeWithdrawals:
        async def tick(self):
            calls.append("tick")
            return {"opened": 0, "closed": 0}

    await scheduler.job_withdrawal_tick(FakeWithdrawals())  # type: ignore[arg-type]
    assert calls == ["tick"]
