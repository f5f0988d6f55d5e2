"""Background verification of Mercado Pago callbacks.

A Mercado Pago callback only names a payment id. Looking the payment up is a
network call that may be slow or not yet consistent, so the webhook hands the
id to ``PaymentVerifier.submit`` and answers immediately; the lookup and the
settlement run as an aiojobs job with bounded retries.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

import aiojobs
import httpx

from pixsettle.config import settings
from pixsettle.errors import MalformedNotification
from pixsettle.payment.inbound import parse_notification
from pixsettle.payment.providers.mercado_pago import MercadoPagoClient, is_accredited
from pixsettle.payment.settlement import SettlementEngine, SettlementOutcome, SettlementStatus
from pixsettle.services.notifications import notify_log
from pixsettle.utils.correlation import correlation_scope, get_correlation_id

logger = logging.getLogger(__name__)

# Payment states that may still become approved
IN_FLIGHT_STATUSES = {"pending", "in_process", "authorized"}


class PaymentVerifier:
    def __init__(
        self,
        engine: SettlementEngine,
        client: Optional[MercadoPagoClient] = None,
        *,
        max_attempts: Optional[int] = None,
        retry_seconds: Optional[float] = None,
    ) -> None:
        self.engine = engine
        self.client = client or MercadoPagoClient()
        self.max_attempts = max_attempts or settings.verify_max_attempts
        self.retry_seconds = retry_seconds if retry_seconds is not None else settings.verify_retry_seconds
        self._scheduler: Optional[aiojobs.Scheduler] = None
        self._inflight: Set[str] = set()

    @property
    def in_flight(self) -> Set[str]:
        return set(self._inflight)

    async def start(self) -> None:
        if self._scheduler is None:
            self._scheduler = aiojobs.Scheduler()

    async def close(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.close()
            self._scheduler = None

    async def submit(self, payment_id: str) -> bool:
        """Queue a verification; False when one for the same payment is already running."""
        if payment_id in self._inflight:
            logger.info("verification already queued", extra={"extra": {"payment_id": payment_id}})
            return False
        await self.start()
        assert self._scheduler is not None
        self._inflight.add(payment_id)
        await self._scheduler.spawn(self._run(payment_id, get_correlation_id()))
        return True

    async def _run(self, payment_id: str, correlation_id: str) -> None:
        with correlation_scope(correlation_id):
            try:
                await self.verify(payment_id)
            except Exception:
                logger.exception("payment verification crashed", extra={"extra": {"payment_id": payment_id}})
            finally:
                self._inflight.discard(payment_id)

    async def verify(self, payment_id: str) -> Optional[SettlementOutcome]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                payment = await self.client.get_payment(payment_id)
            except (httpx.HTTPStatusError, httpx.TransportError) as e:
                logger.warning(
                    "payment lookup failed",
                    extra={"extra": {"payment_id": payment_id, "attempt": attempt, "err": str(e)}},
                )
            else:
                status = payment.get("status")
                if is_accredited(payment):
                    try:
                        notification = parse_notification(payment, source="mercadopago")
                    except MalformedNotification as e:
                        logger.warning("approved payment is malformed", extra={"extra": {"payment_id": payment_id, "err": str(e)}})
                        return None
                    outcome = await self.engine.process(notification)
                    if outcome.status is not SettlementStatus.FAILED:
                        return outcome
                elif status not in IN_FLIGHT_STATUSES:
                    logger.info(
                        "payment not approved; nothing to settle",
                        extra={"extra": {"payment_id": payment_id, "status": status, "status_detail": payment.get("status_detail")}},
                    )
                    return None
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_seconds)

        logger.error("payment verification gave up", extra={"extra": {"payment_id": payment_id, "attempts": self.max_attempts}})
        await notify_log(f"Verificacao do pagamento Mercado Pago {payment_id} falhou apos {self.max_attempts} tentativas.")
        return None
