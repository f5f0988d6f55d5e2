from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from pixsettle.config import settings
from pixsettle.errors import AlreadySettled, InvalidAmount
from pixsettle.utils.money import CENT, from_minor
from pixsettle.utils.time import ensure_aware, utc_now

logger = logging.getLogger(__name__)

# Reported amounts are compared in reais; anything closer than one centavo matches.
AMOUNT_EPSILON = CENT


class ExpectationStatus(str, enum.Enum):
    PENDING = "pending"
    SETTLED = "settled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class PaymentExpectation:
    id: str
    payer_id: int
    payer_contact: str
    amount_minor: int
    tokens_owed: int
    created_at: datetime
    status: ExpectationStatus = ExpectationStatus.PENDING
    reference: str = ""
    settled_at: Optional[datetime] = None
    settled_by: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ExpectationStatus.PENDING


def tokens_for_amount(amount_minor: int, tokens_per_brl: Optional[int] = None) -> int:
    rate = tokens_per_brl if tokens_per_brl is not None else settings.tokens_per_brl
    return (amount_minor * rate) // 100


class PendingTransactionRegistry:
    """Process-wide store of payment expectations.

    Lookups that precede a credit go through ``claim_*``: the expectation is
    marked as in-flight under the registry lock so that two notifications
    can never settle the same expectation, and the sweep leaves claimed
    expectations alone. ``release`` hands it back when the credit fails.
    """

    def __init__(
        self,
        *,
        match_window: Optional[timedelta] = None,
        expiry_window: Optional[timedelta] = None,
        clock_skew: Optional[timedelta] = None,
        settled_retention: Optional[timedelta] = None,
        tokens_per_brl: Optional[int] = None,
    ) -> None:
        self.match_window = match_window or timedelta(minutes=settings.pix_match_window_minutes)
        self.expiry_window = expiry_window or timedelta(minutes=settings.pix_expiry_minutes)
        if self.expiry_window <= self.match_window:
            raise ValueError("expiry window must be longer than the matching window")
        # how far a reported payment may precede its expectation and still match
        self.clock_skew = clock_skew if clock_skew is not None else timedelta(seconds=settings.pix_clock_skew_seconds)
        self.settled_retention = settled_retention or timedelta(hours=settings.pix_settled_retention_hours)
        self.tokens_per_brl = tokens_per_brl if tokens_per_brl is not None else settings.tokens_per_brl
        self._items: Dict[str, PaymentExpectation] = {}
        self._claims: Dict[str, str] = {}
        # dedupe key of the settling notification -> expectation id
        self._settled_sources: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # ---- creation / lookup ---------------------------------------------------

    async def register(
        self,
        payer_id: int,
        payer_contact: str,
        amount_minor: int,
        *,
        reference: str = "",
        now: Optional[datetime] = None,
    ) -> PaymentExpectation:
        if amount_minor <= 0:
            raise InvalidAmount(amount_minor)
        exp = PaymentExpectation(
            id=uuid.uuid4().hex,
            payer_id=payer_id,
            payer_contact=payer_contact,
            amount_minor=amount_minor,
            tokens_owed=tokens_for_amount(amount_minor, self.tokens_per_brl),
            created_at=ensure_aware(now or utc_now()),
            reference=reference,
        )
        async with self._lock:
            self._items[exp.id] = exp
        logger.info(
            "pix expectation registered",
            extra={"extra": {"expectation_id": exp.id, "payer_id": payer_id, "amount_minor": amount_minor, "tokens": exp.tokens_owed}},
        )
        return exp

    def get(self, expectation_id: str) -> Optional[PaymentExpectation]:
        return self._items.get(expectation_id)

    def find_by_source(self, dedupe_key: str) -> Optional[PaymentExpectation]:
        exp_id = self._settled_sources.get(dedupe_key)
        return self._items.get(exp_id) if exp_id else None

    def find_by_reference(self, reference: str) -> Optional[PaymentExpectation]:
        """Most recent expectation registered under ``reference``, in any state."""
        if not reference:
            return None
        found = [e for e in self._items.values() if e.reference == reference]
        return max(found, key=lambda e: e.created_at) if found else None

    def pending(self) -> List[PaymentExpectation]:
        return sorted(
            (e for e in self._items.values() if e.status is ExpectationStatus.PENDING),
            key=lambda e: e.created_at,
        )

    def _amount_matches(self, exp: PaymentExpectation, amount: Decimal) -> bool:
        return abs(from_minor(exp.amount_minor) - amount) < AMOUNT_EPSILON

    def _matchable(self, as_of: datetime) -> List[PaymentExpectation]:
        return [
            e
            for e in self.pending()
            if e.id not in self._claims and -self.clock_skew <= (as_of - e.created_at) <= self.match_window
        ]

    def find_by_amount(self, amount: Decimal, as_of: Optional[datetime] = None) -> Optional[PaymentExpectation]:
        """Oldest pending expectation for ``amount`` created within the matching window before ``as_of``.

        A payment reported earlier than its expectation matches only within ``clock_skew``.
        """
        as_of = ensure_aware(as_of or utc_now())
        for exp in self._matchable(as_of):
            if self._amount_matches(exp, amount):
                return exp
        return None

    # ---- claim-before-act ----------------------------------------------------

    async def claim_by_amount(self, amount: Decimal, as_of: Optional[datetime], claimant: str) -> Optional[PaymentExpectation]:
        async with self._lock:
            exp = self.find_by_amount(amount, as_of)
            if exp is not None:
                self._claims[exp.id] = claimant
            return exp

    async def claim_for_payer(self, payer_id: int, amount: Decimal, claimant: str) -> Optional[PaymentExpectation]:
        """Oldest pending expectation of ``payer_id`` for ``amount``, regardless of age.

        Used when the payer is known from an explicit reference, which is
        authoritative and bypasses the matching window.
        """
        async with self._lock:
            for exp in self.pending():
                if exp.payer_id == payer_id and exp.id not in self._claims and self._amount_matches(exp, amount):
                    self._claims[exp.id] = claimant
                    return exp
            return None

    async def claim(self, expectation_id: str, claimant: str) -> Optional[PaymentExpectation]:
        async with self._lock:
            exp = self._items.get(expectation_id)
            if exp is None or exp.id in self._claims:
                return None
            if exp.status is ExpectationStatus.SETTLED:
                raise AlreadySettled(exp.id)
            if exp.status is not ExpectationStatus.PENDING:
                return None
            self._claims[exp.id] = claimant
            return exp

    async def release(self, expectation_id: str) -> None:
        async with self._lock:
            self._claims.pop(expectation_id, None)

    async def mark_settled(self, expectation_id: str, *, dedupe_key: Optional[str] = None, now: Optional[datetime] = None) -> PaymentExpectation:
        async with self._lock:
            exp = self._items[expectation_id]
            if exp.status is ExpectationStatus.SETTLED:
                raise AlreadySettled(exp.id)
            # A claimed expectation is never swept, so Pending is the only other state here.
            settled = replace(
                exp,
                status=ExpectationStatus.SETTLED,
                settled_at=ensure_aware(now or utc_now()),
                settled_by=dedupe_key,
            )
            self._items[exp.id] = settled
            self._claims.pop(exp.id, None)
            if dedupe_key:
                self._settled_sources[dedupe_key] = exp.id
            return settled

    # ---- expiry --------------------------------------------------------------

    async def expire_older_than(self, max_age: Optional[timedelta] = None, *, now: Optional[datetime] = None) -> List[PaymentExpectation]:
        """Transition unclaimed Pending expectations older than ``max_age`` to Expired."""
        max_age = max_age or self.expiry_window
        now = ensure_aware(now or utc_now())
        expired: List[PaymentExpectation] = []
        async with self._lock:
            for exp in list(self._items.values()):
                if exp.status is not ExpectationStatus.PENDING or exp.id in self._claims:
                    continue
                if now - exp.created_at > max_age:
                    done = replace(exp, status=ExpectationStatus.EXPIRED)
                    self._items[exp.id] = done
                    expired.append(done)
        for exp in expired:
            logger.info(
                "pix expectation expired",
                extra={"extra": {"expectation_id": exp.id, "payer_id": exp.payer_id, "amount_minor": exp.amount_minor}},
            )
        return expired

    async def purge_terminal(self, expired_older_than: timedelta, *, now: Optional[datetime] = None) -> int:
        """Drop terminal expectations that are past their retention.

        Expired ones go once their creation is older than ``expired_older_than``.
        Settled ones are kept for ``settled_retention`` after settlement so late
        redeliveries stay idempotent, then dropped with their source keys.
        """
        now = ensure_aware(now or utc_now())
        async with self._lock:
            stale = [
                e.id
                for e in self._items.values()
                if (e.status is ExpectationStatus.EXPIRED and now - e.created_at > expired_older_than)
                or (
                    e.status is ExpectationStatus.SETTLED
                    and now - (e.settled_at or e.created_at) > self.settled_retention
                )
            ]
            for exp_id in stale:
                del self._items[exp_id]
            gone = set(stale)
            for key in [k for k, v in self._settled_sources.items() if v in gone]:
                del self._settled_sources[key]
        return len(stale)
