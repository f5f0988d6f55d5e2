from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest

from pixsettle.payment.ledger import Ledger, UserLocks
from pixsettle.payment.registry import PendingTransactionRegistry
from pixsettle.payment.settlement import SettlementEngine
from pixsettle.storage.base import UserAccount
from pixsettle.storage.memory import MemoryStorage


class AlertRecorder:
    """Stands in for the Telegram admin-log alerter."""

    def __init__(self) -> None:
        self.messages: List[str] = []

    async def __call__(self, text: str) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture
def alerts() -> AlertRecorder:
    return AlertRecorder()


@pytest.fixture
def storage() -> MemoryStorage:
    s = MemoryStorage()
    s.add_user(UserAccount(id=1, email="ana@example.com", plan="pro", tokens=100, tokens_from_plan=100))
    s.add_user(UserAccount(id=2, email="bruno@example.com"))
    return s


@pytest.fixture
def locks() -> UserLocks:
    return UserLocks()


@pytest.fixture
def registry() -> PendingTransactionRegistry:
    return PendingTransactionRegistry(
        match_window=timedelta(minutes=15),
        expiry_window=timedelta(minutes=30),
        clock_skew=timedelta(minutes=1),
        tokens_per_brl=720,
    )


@pytest.fixture
def engine(registry: PendingTransactionRegistry, storage: MemoryStorage, locks: UserLocks, alerts: AlertRecorder) -> SettlementEngine:
    return SettlementEngine(registry, storage, Ledger(storage, locks), namespace="orbitrum", alerter=alerts)
