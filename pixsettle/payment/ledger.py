from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from pixsettle.errors import InsufficientBalance, UserNotFound
from pixsettle.storage.base import Storage, UserAccount

logger = logging.getLogger(__name__)


class UserLocks:
    """One asyncio.Lock per user id; cross-user operations never contend."""

    def __init__(self) -> None:
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        async with self._locks[user_id]:
            yield


def _balance(fields: Dict[str, int], user: UserAccount) -> int:
    merged = {
        "tokens_from_plan": user.tokens_from_plan,
        "tokens_purchased": user.tokens_purchased,
        "tokens_earned": user.tokens_earned,
        "tokens_spent": user.tokens_spent,
    }
    merged.update({k: v for k, v in fields.items() if k in merged})
    return merged["tokens_from_plan"] + merged["tokens_purchased"] + merged["tokens_earned"] - merged["tokens_spent"]


class Ledger:
    """Serialized wallet mutations.

    Every mutation reads the user and writes all changed counters plus the
    aggregate ``tokens`` balance in a single ``update_user`` call while
    holding the user's lock.
    """

    def __init__(self, storage: Storage, locks: UserLocks | None = None) -> None:
        self.storage = storage
        self.locks = locks or UserLocks()

    async def _load(self, user_id: int) -> UserAccount:
        user = await self.storage.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    async def _write(self, user: UserAccount, fields: Dict[str, int]) -> UserAccount:
        fields = dict(fields)
        fields["tokens"] = _balance(fields, user)
        return await self.storage.update_user(user.id, fields)

    async def credit_purchase(self, user_id: int, tokens: int) -> UserAccount:
        if tokens < 0:
            raise ValueError("credit must be non-negative")
        async with self.locks.hold(user_id):
            user = await self._load(user_id)
            updated = await self._write(user, {"tokens_purchased": user.tokens_purchased + tokens})
        logger.info(
            "ledger purchase credited",
            extra={"extra": {"user_id": user_id, "tokens": tokens, "balance": updated.tokens}},
        )
        return updated

    async def debit_spend(self, user_id: int, tokens: int) -> UserAccount:
        if tokens <= 0:
            raise ValueError("debit must be positive")
        async with self.locks.hold(user_id):
            user = await self._load(user_id)
            if tokens > user.total_balance:
                raise InsufficientBalance(tokens, user.total_balance)
            updated = await self._write(user, {"tokens_spent": user.tokens_spent + tokens})
        logger.info("ledger spend debited", extra={"extra": {"user_id": user_id, "tokens": tokens, "balance": updated.tokens}})
        return updated
