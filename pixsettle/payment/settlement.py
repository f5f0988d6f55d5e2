"""Settlement of inbound PIX notifications.

A notification is resolved to exactly one payment expectation by trying the
payer-identification strategies in order (explicit reference, description
token, amount within the matching window). The first strategy that claims an
expectation wins; the engine then credits the payer's ledger and only after
that write succeeds marks the expectation settled. A strategy that rules out
guessing (a reference naming an unknown payer) raises ``NoMatchFound`` and
stops the chain. Notifications nobody can be matched to are queued for manual
crediting, never guessed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import uuid
import weakref
from contextlib import nullcontext
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from pixsettle.config import settings
from pixsettle.errors import AlreadySettled, NoMatchFound
from pixsettle.payment.inbound import InboundNotification
from pixsettle.payment.ledger import Ledger
from pixsettle.payment.registry import ExpectationStatus, PaymentExpectation, PendingTransactionRegistry
from pixsettle.services.audit import log_audit
from pixsettle.services.notifications import notify_log, notify_user
from pixsettle.storage.base import Storage, UnreconciledPayment, UserAccount
from pixsettle.utils.money import brl, from_minor
from pixsettle.utils.time import to_utc_timestamp_ms, utc_now

logger = logging.getLogger(__name__)

Alerter = Callable[[str], Awaitable[bool]]


class Strategy(str, enum.Enum):
    REFERENCE = "reference"
    DESCRIPTION = "description"
    AMOUNT_WINDOW = "amount_window"


class SettlementStatus(str, enum.Enum):
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    UNRECONCILED = "unreconciled"
    FAILED = "failed"


@dataclass(frozen=True)
class Resolution:
    payer_id: int
    expectation: PaymentExpectation
    strategy: Strategy
    adopted: bool = False


@dataclass
class SettlementOutcome:
    status: SettlementStatus
    notification: InboundNotification
    expectation: Optional[PaymentExpectation] = None
    strategy: Optional[Strategy] = None
    tokens_credited: int = 0
    balance: Optional[int] = None
    unreconciled_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SettlementStatus.SETTLED, SettlementStatus.ALREADY_SETTLED)

    @property
    def payer_id(self) -> Optional[int]:
        return self.expectation.payer_id if self.expectation else None


def build_reference(user_id: int, *, namespace: Optional[str] = None, now: Optional[datetime] = None) -> str:
    ns = namespace or settings.pix_reference_namespace
    return f"{ns}_user_{user_id}_{to_utc_timestamp_ms(now or utc_now())}"


class SettlementEngine:
    def __init__(
        self,
        registry: PendingTransactionRegistry,
        storage: Storage,
        ledger: Optional[Ledger] = None,
        *,
        namespace: Optional[str] = None,
        alerter: Optional[Alerter] = None,
    ) -> None:
        self.registry = registry
        self.storage = storage
        self.ledger = ledger or Ledger(storage)
        self.namespace = namespace or settings.pix_reference_namespace
        self.alerter = alerter or notify_log
        ns = re.escape(self.namespace)
        self._reference_re = re.compile(rf"^{ns}_user_(\d+)_\d+", re.IGNORECASE)
        self._description_re = re.compile(rf"\b{ns}_(?:user_)?(\d+)_", re.IGNORECASE)
        self._strategies: List[Callable[[InboundNotification, str], Awaitable[Optional[Resolution]]]] = [
            self._by_reference,
            self._by_description,
            self._by_amount_window,
        ]
        # Serializes concurrent deliveries of the same notification
        self._source_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._item_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ---- public API ------------------------------------------------------------

    async def process(self, notification: InboundNotification) -> SettlementOutcome:
        """Settle ``notification``; a caller timeout never interrupts a settlement in progress."""
        return await asyncio.shield(self._serialized(notification))

    async def _serialized(self, notification: InboundNotification) -> SettlementOutcome:
        key = notification.dedupe_key
        # deliveries naming the same reference queue up even when they arrive through different rails
        lock_key = f"ref:{notification.external_reference}" if notification.external_reference else key
        lock: Optional[asyncio.Lock] = None
        if lock_key:
            lock = self._source_locks.get(lock_key)
            if lock is None:
                lock = asyncio.Lock()
                self._source_locks[lock_key] = lock
        async with lock if lock is not None else nullcontext():
            return await self._process(notification, key)

    async def settle_manual(self, notification: InboundNotification, *, user_id: Optional[int], actor: str) -> SettlementOutcome:
        """Admin-entered payment; with ``user_id`` the payer is taken as known."""
        if user_id is not None:
            notification = replace(notification, external_reference=build_reference(user_id, namespace=self.namespace))
        logger.info(
            "manual settlement requested",
            extra={"extra": {"actor": actor, "user_id": user_id, "amount_minor": notification.amount_minor}},
        )
        return await self.process(notification)

    async def resolve_unreconciled(self, item_id: int, user_id: int, *, actor: str) -> SettlementOutcome:
        """Credit a queued unreconciled payment to ``user_id`` and close the queue item.

        Resolutions of the same item run one at a time and re-read the item
        under the lock, so a second concurrent resolve finds it closed.
        """
        return await asyncio.shield(self._resolve_item(item_id, user_id, actor))

    async def _resolve_item(self, item_id: int, user_id: int, actor: str) -> SettlementOutcome:
        lock = self._item_locks.get(item_id)
        if lock is None:
            lock = asyncio.Lock()
            self._item_locks[item_id] = lock
        async with lock:
            return await self._resolve_item_locked(item_id, user_id, actor)

    async def _resolve_item_locked(self, item_id: int, user_id: int, actor: str) -> SettlementOutcome:
        item = await self.storage.get_unreconciled(item_id)
        if item is None:
            raise LookupError(f"unreconciled payment {item_id} not found")
        if item.resolved:
            raise ValueError(f"unreconciled payment {item_id} already resolved by {item.resolved_by}")
        notification = InboundNotification(
            amount=from_minor(item.amount_minor),
            source=item.source,
            external_reference=build_reference(user_id, namespace=self.namespace),
            description=item.description,
            source_transaction_id=item.source_transaction_id,
            reported_at=item.reported_at,
        )
        outcome = await self.process(notification)
        if outcome.ok:
            await self.storage.resolve_unreconciled(item_id, actor)
            await log_audit(
                self.storage,
                actor="admin",
                action="pix_unreconciled_resolved",
                target_type="unreconciled_payment",
                target_id=item_id,
                meta={"by": actor, "user_id": user_id, "status": outcome.status.value},
            )
        return outcome

    def pending(self) -> List[PaymentExpectation]:
        return self.registry.pending()

    async def unreconciled(self) -> List[UnreconciledPayment]:
        return await self.storage.list_unreconciled()

    # ---- resolution ------------------------------------------------------------

    async def _process(self, notification: InboundNotification, key: Optional[str]) -> SettlementOutcome:
        if key:
            prior = self.registry.find_by_source(key)
            if prior is not None:
                return await self._already_settled(notification, prior)

        try:
            resolution = await self._resolve(notification, key or uuid.uuid4().hex)
        except AlreadySettled as e:
            return await self._already_settled(notification, self.registry.get(e.expectation_id))
        except NoMatchFound as e:
            return await self._queue_unreconciled(notification, key, e.reason)
        return await self._credit(notification, resolution, key)

    async def _resolve(self, notification: InboundNotification, claimant: str) -> Resolution:
        for strategy in self._strategies:
            resolution = await strategy(notification, claimant)
            if resolution is not None:
                return resolution
        raise NoMatchFound("no strategy identified the payer")

    def _parse_reference(self, reference: Optional[str]) -> Optional[int]:
        if not reference:
            return None
        m = self._reference_re.match(reference.strip())
        return int(m.group(1)) if m else None

    async def _by_reference(self, notification: InboundNotification, claimant: str) -> Optional[Resolution]:
        user_id = self._parse_reference(notification.external_reference)
        if user_id is None:
            return None
        exp = self.registry.find_by_reference(notification.external_reference or "")
        if exp is not None and exp.payer_id == user_id:
            if exp.status is ExpectationStatus.SETTLED:
                raise AlreadySettled(exp.id)
            if exp.status is ExpectationStatus.PENDING and exp.amount_minor == notification.amount_minor:
                claimed = await self.registry.claim(exp.id, claimant)
                if claimed is not None:
                    return Resolution(user_id, claimed, Strategy.REFERENCE)
        resolution = await self._claim_for_known_payer(user_id, notification, claimant, Strategy.REFERENCE)
        if resolution is None:
            # the reference is authoritative; another payer's expectation must not absorb it
            raise NoMatchFound(f"referenced payer {user_id} could not be credited")
        return resolution

    async def _by_description(self, notification: InboundNotification, claimant: str) -> Optional[Resolution]:
        if not notification.description:
            return None
        m = self._description_re.search(notification.description)
        if not m:
            return None
        return await self._claim_for_known_payer(int(m.group(1)), notification, claimant, Strategy.DESCRIPTION)

    async def _by_amount_window(self, notification: InboundNotification, claimant: str) -> Optional[Resolution]:
        exp = await self.registry.claim_by_amount(notification.amount, notification.as_of, claimant)
        if exp is None:
            return None
        return Resolution(exp.payer_id, exp, Strategy.AMOUNT_WINDOW)

    async def _claim_for_known_payer(
        self, user_id: int, notification: InboundNotification, claimant: str, strategy: Strategy
    ) -> Optional[Resolution]:
        exp = await self.registry.claim_for_payer(user_id, notification.amount, claimant)
        if exp is not None:
            return Resolution(user_id, exp, strategy)
        user: Optional[UserAccount] = await self.storage.get_user(user_id)
        if user is None:
            logger.warning(
                "referenced payer does not exist",
                extra={"extra": {"user_id": user_id, "strategy": strategy.value}},
            )
            return None
        # Known payer without a live expectation (expired, or registered before a restart)
        adopted = await self.registry.register(
            user_id,
            user.email,
            notification.amount_minor,
            reference=notification.external_reference or "",
        )
        claimed = await self.registry.claim(adopted.id, claimant)
        if claimed is None:
            return None
        return Resolution(user_id, claimed, strategy, adopted=True)

    # ---- outcomes --------------------------------------------------------------

    async def _credit(self, notification: InboundNotification, resolution: Resolution, key: Optional[str]) -> SettlementOutcome:
        exp = resolution.expectation
        meta = {
            **notification.audit_meta(),
            "strategy": resolution.strategy.value,
            "expectation_id": exp.id,
            "tokens": exp.tokens_owed,
            "adopted": resolution.adopted,
        }
        try:
            updated = await self.ledger.credit_purchase(exp.payer_id, exp.tokens_owed)
        except Exception as e:
            await self.registry.release(exp.id)
            logger.exception(
                "pix credit failed; expectation left pending",
                extra={"extra": {"expectation_id": exp.id, "payer_id": exp.payer_id}},
            )
            await log_audit(
                self.storage,
                actor="system",
                action="pix_settlement_failed",
                target_type="user",
                target_id=exp.payer_id,
                meta={**meta, "error": str(e)},
            )
            return SettlementOutcome(
                SettlementStatus.FAILED, notification, expectation=exp, strategy=resolution.strategy, error=str(e)
            )

        settled = await self.registry.mark_settled(exp.id, dedupe_key=key)
        logger.info(
            "pix settled",
            extra={"extra": {"expectation_id": exp.id, "payer_id": exp.payer_id, "tokens": exp.tokens_owed, "strategy": resolution.strategy.value}},
        )
        await log_audit(
            self.storage,
            actor="system",
            action="pix_settled",
            target_type="user",
            target_id=exp.payer_id,
            meta={**meta, "balance": updated.tokens},
        )
        await notify_user(
            self.storage,
            exp.payer_id,
            "Tokens creditados",
            f"Pagamento PIX de {brl(exp.amount_minor)} confirmado: {exp.tokens_owed:,} tokens adicionados.",
            kind="tokens_credited",
        )
        return SettlementOutcome(
            SettlementStatus.SETTLED,
            notification,
            expectation=settled,
            strategy=resolution.strategy,
            tokens_credited=exp.tokens_owed,
            balance=updated.tokens,
        )

    async def _already_settled(self, notification: InboundNotification, exp: Optional[PaymentExpectation]) -> SettlementOutcome:
        logger.info(
            "duplicate pix notification ignored",
            extra={"extra": {"expectation_id": exp.id if exp else None, "source_transaction_id": notification.source_transaction_id}},
        )
        await log_audit(
            self.storage,
            actor="system",
            action="pix_duplicate",
            target_type="user",
            target_id=exp.payer_id if exp else None,
            meta={**notification.audit_meta(), "expectation_id": exp.id if exp else None},
        )
        return SettlementOutcome(SettlementStatus.ALREADY_SETTLED, notification, expectation=exp)

    async def _queue_unreconciled(self, notification: InboundNotification, key: Optional[str], reason: str) -> SettlementOutcome:
        existing = None
        if key:
            for item in await self.storage.list_unreconciled():
                if item.dedupe_key == key:
                    existing = item
                    break
        try:
            item = existing or await self.storage.add_unreconciled(
                UnreconciledPayment(
                    amount_minor=notification.amount_minor,
                    source=notification.source,
                    dedupe_key=key,
                    source_transaction_id=notification.source_transaction_id,
                    external_reference=notification.external_reference,
                    description=notification.description,
                    reported_at=notification.reported_at,
                    reason=reason,
                )
            )
        except Exception as e:
            logger.exception(
                "failed to queue unreconciled pix payment",
                extra={"extra": notification.audit_meta()},
            )
            return SettlementOutcome(SettlementStatus.FAILED, notification, error=str(e))

        logger.warning(
            "pix payment not reconciled",
            extra={"extra": {**notification.audit_meta(), "unreconciled_id": item.id, "reason": reason}},
        )
        if existing is None:
            await log_audit(
                self.storage,
                actor="system",
                action="pix_unreconciled",
                target_type="unreconciled_payment",
                target_id=item.id,
                meta={**notification.audit_meta(), "reason": reason},
            )
            await self.alerter(
                f"PIX nao conciliado #{item.id}: {brl(notification.amount_minor)}"
                f" ref={notification.external_reference or '-'} tx={notification.source_transaction_id or '-'}."
                f" Use /pix_resolve {item.id} <user_id>."
            )
        return SettlementOutcome(SettlementStatus.UNRECONCILED, notification, unreconciled_id=item.id)
