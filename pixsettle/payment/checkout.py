"""Purchase flow: register the expectation, then ask providers for a payable code."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from pixsettle.config import settings
from pixsettle.errors import InvalidAmount, PaymentError, UserNotFound
from pixsettle.payment.providers.base import ChargeRequest, PixProvider, ProviderResult
from pixsettle.payment.registry import PaymentExpectation, PendingTransactionRegistry
from pixsettle.payment.settlement import build_reference
from pixsettle.services.audit import log_audit
from pixsettle.storage.base import Storage
from pixsettle.utils.money import brl

logger = logging.getLogger(__name__)


class NoProviderAvailable(PaymentError):
    def __init__(self, attempts: Sequence[str]) -> None:
        super().__init__("no payment provider could create a charge: " + "; ".join(attempts))
        self.attempts = list(attempts)


class CheckoutService:
    def __init__(
        self,
        storage: Storage,
        registry: PendingTransactionRegistry,
        providers: Sequence[PixProvider],
        *,
        namespace: Optional[str] = None,
        max_amount_minor: Optional[int] = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.providers: List[PixProvider] = list(providers)
        self.namespace = namespace or settings.pix_reference_namespace
        self.max_amount_minor = max_amount_minor if max_amount_minor is not None else settings.pix_max_amount_minor

    async def create_pix_charge(self, user_id: int, amount_minor: int) -> tuple[PaymentExpectation, ProviderResult]:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidAmount(amount_minor)
        if amount_minor > self.max_amount_minor:
            raise InvalidAmount(amount_minor, f"amount exceeds maximum of {self.max_amount_minor}")
        user = await self.storage.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)

        reference = build_reference(user_id, namespace=self.namespace)
        request = ChargeRequest(
            user_id=user_id,
            payer_email=user.email or f"user{user_id}@{self.namespace}.com",
            amount_minor=amount_minor,
            reference=reference,
            description=f"{self.namespace}_user_{user_id}_tokens {brl(amount_minor)}",
        )

        attempts: List[str] = []
        result: Optional[ProviderResult] = None
        for provider in self.providers:
            if not provider.available:
                attempts.append(f"{provider.name}: not configured")
                continue
            try:
                result = await provider.create_charge(request)
                break
            except Exception as e:
                logger.warning(
                    "pix provider failed; trying next",
                    extra={"extra": {"provider": provider.name, "user_id": user_id, "err": str(e)}},
                )
                attempts.append(f"{provider.name}: {e}")
        if result is None:
            raise NoProviderAvailable(attempts)

        expectation = await self.registry.register(user_id, request.payer_email, amount_minor, reference=reference)
        result.expires_at = expectation.created_at + self.registry.expiry_window
        await log_audit(
            self.storage,
            actor="user",
            action="pix_charge_created",
            target_type="user",
            target_id=user_id,
            meta={
                "expectation_id": expectation.id,
                "amount_minor": amount_minor,
                "tokens": expectation.tokens_owed,
                "provider": result.provider,
                "payment_id": result.payment_id,
                "reference": reference,
            },
        )
        return expectation, result
