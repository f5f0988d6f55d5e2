"""Monthly withdrawal window.

The window is derived from the wall clock: it opens at 00:00 (business
timezone) on the configured day of every month and closes at 00:00 the next
day. A periodic ``tick`` applies the transitions. Opening snapshots each
user's entitlement into ``available_to_withdraw`` tagged with the window key;
a user whose snapshot already carries the current key is skipped, which makes
repeated ticks and restarts mid-window harmless.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from pixsettle.config import settings
from pixsettle.errors import BelowMinimum, InsufficientEntitlement, UserNotFound, WindowClosed
from pixsettle.payment.ledger import UserLocks
from pixsettle.services.audit import log_audit
from pixsettle.services.notifications import notify_log, notify_user
from pixsettle.storage.base import PayoutRecord, Storage, UserAccount
from pixsettle.utils.money import brl
from pixsettle.utils.time import business_tz, ensure_aware, utc_now

logger = logging.getLogger(__name__)

Alerter = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class WithdrawalWindow:
    key: str
    opens_at: datetime
    closes_at: datetime
    forced: bool = False

    def is_open(self, now: datetime) -> bool:
        return self.opens_at <= now < self.closes_at


@dataclass(frozen=True)
class WindowStatus:
    is_open: bool
    window: Optional[WithdrawalWindow]
    next_opens_at: datetime
    time_remaining: Optional[timedelta]


def _add_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


class WithdrawalWindowScheduler:
    def __init__(
        self,
        storage: Storage,
        *,
        locks: Optional[UserLocks] = None,
        day: Optional[int] = None,
        tz: Optional[str] = None,
        rate: Optional[str] = None,
        min_credit: Optional[int] = None,
        credit_units_per_brl: Optional[int] = None,
        default_plan: Optional[str] = None,
        alerter: Optional[Alerter] = None,
    ) -> None:
        self.storage = storage
        self.locks = locks or UserLocks()
        self.day = day if day is not None else settings.withdrawal_day
        if not 1 <= self.day <= 28:
            raise ValueError("withdrawal day must be between 1 and 28")
        self.tz: ZoneInfo = business_tz(tz or settings.business_tz)
        self.rate = Decimal(rate or settings.withdrawal_rate)
        self.min_credit = min_credit if min_credit is not None else settings.withdrawal_min_credit
        self.credit_units_per_brl = credit_units_per_brl or settings.credit_units_per_brl
        self.default_plan = default_plan or settings.default_plan
        self.alerter = alerter or notify_log
        self._override: Optional[WithdrawalWindow] = None

    # ---- window arithmetic -----------------------------------------------------

    def _local(self, now: Optional[datetime]) -> datetime:
        return ensure_aware(now or utc_now()).astimezone(self.tz)

    def window_for_month(self, year: int, month: int) -> WithdrawalWindow:
        day = date(year, month, self.day)
        return WithdrawalWindow(
            key=f"{year:04d}-{month:02d}",
            opens_at=datetime.combine(day, time(0), tzinfo=self.tz),
            closes_at=datetime.combine(day + timedelta(days=1), time(0), tzinfo=self.tz),
        )

    def current_window(self, now: Optional[datetime] = None) -> Optional[WithdrawalWindow]:
        local = self._local(now)
        if self._override is not None and self._override.is_open(local):
            return self._override
        window = self.window_for_month(local.year, local.month)
        return window if window.is_open(local) else None

    def next_window(self, now: Optional[datetime] = None) -> datetime:
        """Opening time of the next regular window strictly after ``now``."""
        local = self._local(now)
        window = self.window_for_month(local.year, local.month)
        if local < window.opens_at:
            return window.opens_at
        return self.window_for_month(*_add_month(local.year, local.month)).opens_at

    def status(self, now: Optional[datetime] = None) -> WindowStatus:
        local = self._local(now)
        window = self.current_window(local)
        return WindowStatus(
            is_open=window is not None,
            window=window,
            next_opens_at=self.next_window(local),
            time_remaining=(window.closes_at - local) if window else None,
        )

    # ---- entitlement -----------------------------------------------------------

    def entitlement(self, user: UserAccount) -> int:
        if user.plan == self.default_plan or user.accumulated_credit <= 0:
            return 0
        return int((Decimal(user.accumulated_credit) * self.rate).to_integral_value(rounding=ROUND_FLOOR))

    def to_minor(self, credit: int) -> int:
        return credit * 100 // self.credit_units_per_brl

    async def _snapshot(self, user: UserAccount, window: WithdrawalWindow) -> UserAccount:
        # caller holds the user's lock
        amount = self.entitlement(user)
        return await self.storage.update_user(
            user.id, {"available_to_withdraw": amount, "withdrawal_window_key": window.key}
        )

    # ---- transitions -----------------------------------------------------------

    async def open_window(self, window: WithdrawalWindow) -> int:
        """Snapshot entitlements for ``window``; returns how many users were snapshotted now."""
        snapshotted = 0
        eligible = 0
        for candidate in await self.storage.list_users():
            if candidate.withdrawal_window_key == window.key:
                continue
            async with self.locks.hold(candidate.id):
                user = await self.storage.get_user(candidate.id)
                if user is None or user.withdrawal_window_key == window.key:
                    continue
                updated = await self._snapshot(user, window)
            snapshotted += 1
            if updated.available_to_withdraw > 0:
                eligible += 1
                await notify_user(
                    self.storage,
                    user.id,
                    "Janela de saque aberta",
                    f"Voce pode sacar ate {brl(self.to_minor(updated.available_to_withdraw))}"
                    f" ate {window.closes_at:%d/%m %H:%M}.",
                    kind="withdrawal_open",
                    urgent=True,
                )
        if snapshotted:
            logger.info(
                "withdrawal window opened",
                extra={"extra": {"window": window.key, "snapshotted": snapshotted, "eligible": eligible}},
            )
            await log_audit(
                self.storage,
                actor="system",
                action="withdrawal_window_opened",
                target_type="withdrawal_window",
                target_id=window.key,
                meta={"snapshotted": snapshotted, "eligible": eligible, "forced": window.forced},
            )
            await self.alerter(f"Janela de saque {window.key} aberta: {eligible} usuarios elegiveis.")
        return snapshotted

    async def close_expired(self, now: Optional[datetime] = None) -> int:
        """Zero every unclaimed entitlement that does not belong to the open window."""
        current = self.current_window(now)
        current_key = current.key if current else None
        zeroed = 0
        for candidate in await self.storage.list_users():
            if candidate.available_to_withdraw <= 0 or candidate.withdrawal_window_key == current_key:
                continue
            async with self.locks.hold(candidate.id):
                user = await self.storage.get_user(candidate.id)
                if user is None or user.available_to_withdraw <= 0 or user.withdrawal_window_key == current_key:
                    continue
                lost = user.available_to_withdraw
                await self.storage.update_user(user.id, {"available_to_withdraw": 0})
            zeroed += 1
            await notify_user(
                self.storage,
                user.id,
                "Janela de saque encerrada",
                f"O saldo de {brl(self.to_minor(lost))} nao sacado expirou e volta ao pool.",
                kind="withdrawal_expired",
            )
        if zeroed:
            logger.info("withdrawal entitlements expired", extra={"extra": {"users": zeroed}})
            await log_audit(
                self.storage,
                actor="system",
                action="withdrawal_window_closed",
                target_type="withdrawal_window",
                target_id=current_key,
                meta={"zeroed": zeroed},
            )
            await self.alerter(f"Janela de saque encerrada: {zeroed} saldos nao sacados zerados.")
        return zeroed

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        window = self.current_window(now)
        opened = await self.open_window(window) if window else 0
        closed = await self.close_expired(now)
        return {"opened": opened, "closed": closed}

    async def force_open(self, actor: str, *, now: Optional[datetime] = None, duration: timedelta = timedelta(hours=24)) -> WithdrawalWindow:
        """Emergency override: open an ad-hoc window starting now."""
        local = self._local(now)
        current = self.current_window(local)
        if current is not None:
            raise ValueError(f"withdrawal window {current.key} is already open")
        window = WithdrawalWindow(
            key=f"{local:%Y-%m}-override-{local:%d%H%M}",
            opens_at=local,
            closes_at=local + duration,
            forced=True,
        )
        self._override = window
        logger.warning("withdrawal window forced open", extra={"extra": {"window": window.key, "actor": actor}})
        await log_audit(
            self.storage,
            actor="admin",
            action="withdrawal_window_forced",
            target_type="withdrawal_window",
            target_id=window.key,
            meta={"by": actor, "closes_at": window.closes_at.isoformat()},
        )
        await self.open_window(window)
        return window

    # ---- payouts ---------------------------------------------------------------

    async def request_payout(
        self,
        user_id: int,
        amount: int,
        *,
        pix_key: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PayoutRecord:
        window = self.current_window(now)
        if window is None:
            raise WindowClosed(self.next_window(now))
        if amount < self.min_credit:
            raise BelowMinimum(self.min_credit)

        async with self.locks.hold(user_id):
            user = await self.storage.get_user(user_id)
            if user is None:
                raise UserNotFound(user_id)
            if user.withdrawal_window_key != window.key:
                # the tick has not reached this user yet
                user = await self._snapshot(user, window)
            available = min(user.available_to_withdraw, user.accumulated_credit)
            if amount > available:
                raise InsufficientEntitlement(amount - available, available)
            before = {
                "accumulated_credit": user.accumulated_credit,
                "available_to_withdraw": user.available_to_withdraw,
                "withdrawn_credit": user.withdrawn_credit,
            }
            await self.storage.update_user(
                user_id,
                {
                    "accumulated_credit": user.accumulated_credit - amount,
                    "available_to_withdraw": user.available_to_withdraw - amount,
                    "withdrawn_credit": user.withdrawn_credit + amount,
                },
            )
            try:
                payout = await self.storage.create_payout(
                    PayoutRecord(
                        user_id=user_id,
                        amount=amount,
                        amount_minor=self.to_minor(amount),
                        pix_key=pix_key,
                        window_key=window.key,
                    )
                )
            except Exception as e:
                # still under the user lock, so nothing else has touched these counters
                await self.storage.update_user(user_id, before)
                logger.exception(
                    "payout record failed; credit restored",
                    extra={"extra": {"user_id": user_id, "amount": amount, "window": window.key}},
                )
                await log_audit(
                    self.storage,
                    actor="system",
                    action="withdrawal_failed",
                    target_type="user",
                    target_id=user_id,
                    meta={"amount": amount, "window": window.key, "error": str(e)},
                )
                raise
        logger.info(
            "payout requested",
            extra={"extra": {"user_id": user_id, "amount": amount, "window": window.key, "pix_key": pix_key}},
        )
        await log_audit(
            self.storage,
            actor="user",
            action="withdrawal_requested",
            target_type="user",
            target_id=user_id,
            meta={"amount": amount, "amount_minor": payout.amount_minor, "window": window.key, "payout_id": payout.id},
        )
        await notify_user(
            self.storage,
            user_id,
            "Saque solicitado",
            f"Seu saque de {brl(payout.amount_minor)} foi registrado e sera pago via PIX.",
            kind="withdrawal_requested",
        )
        return payout
