"""Process-wide service graph, built once at start and passed by reference."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from pixsettle.config import settings
from pixsettle.payment.brcode import PayloadBuilder
from pixsettle.payment.checkout import CheckoutService
from pixsettle.payment.ledger import Ledger, UserLocks
from pixsettle.payment.providers.base import PixProvider
from pixsettle.payment.providers.mercado_pago import MercadoPagoClient, MercadoPagoPixProvider
from pixsettle.payment.providers.static_pix import StaticPixProvider
from pixsettle.payment.registry import PendingTransactionRegistry
from pixsettle.payment.settlement import SettlementEngine
from pixsettle.payment.verification import PaymentVerifier
from pixsettle.services.withdrawal import WithdrawalWindowScheduler
from pixsettle.storage.base import Storage
from pixsettle.storage.memory import MemoryStorage
from pixsettle.storage.sql import SqlStorage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: Storage
    registry: PendingTransactionRegistry
    ledger: Ledger
    engine: SettlementEngine
    withdrawals: WithdrawalWindowScheduler
    checkout: CheckoutService
    verifier: PaymentVerifier
    mercado_pago: MercadoPagoClient

    async def aclose(self) -> None:
        await self.verifier.close()
        await self.mercado_pago.aclose()


def build_services(storage: Optional[Storage] = None, *, mercado_pago: Optional[MercadoPagoClient] = None) -> Services:
    if storage is None:
        if settings.db_url:
            storage = SqlStorage()
        else:
            logger.warning("DB_URL not set; using in-memory storage")
            storage = MemoryStorage()

    locks = UserLocks()
    registry = PendingTransactionRegistry()
    ledger = Ledger(storage, locks)
    engine = SettlementEngine(registry, storage, ledger)
    mp = mercado_pago or MercadoPagoClient()

    providers: list[PixProvider] = [MercadoPagoPixProvider(mp)]
    if settings.pix_key:
        providers.append(StaticPixProvider(PayloadBuilder()))
    else:
        logger.warning("PIX_KEY not set; static BR code fallback disabled")

    return Services(
        storage=storage,
        registry=registry,
        ledger=ledger,
        engine=engine,
        withdrawals=WithdrawalWindowScheduler(storage, locks=locks),
        checkout=CheckoutService(storage, registry, providers),
        verifier=PaymentVerifier(engine, mp),
        mercado_pago=mp,
    )
