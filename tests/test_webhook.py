from __future__ import annotations

from datetime import datetime
from typing import List
from zoneinfo import ZoneInfo

import httpx
import pytest
import pytest_asyncio

from pixsettle.container import Services
from pixsettle.payment.brcode import MerchantIdentity, PayloadBuilder, parse_payload
from pixsettle.payment.checkout import CheckoutService
from pixsettle.payment.ledger import Ledger
from pixsettle.payment.providers.mercado_pago import MercadoPagoClient
from pixsettle.payment.providers.static_pix import StaticPixProvider
from pixsettle.payment.registry import PendingTransactionRegistry
from pixsettle.payment.settlement import SettlementEngine
from pixsettle.services.withdrawal import WithdrawalWindowScheduler
from pixsettle.storage.memory import MemoryStorage
from pixsettle.web.webhook import create_app


class RecordingVerifier:
    def __init__(self) -> None:
        self.submitted: List[str] = []

    async def submit(self, payment_id: str) -> bool:
        if payment_id in self.submitted:
            return False
        self.submitted.append(payment_id)
        return True

    async def close(self) -> None:
        return None


def _closed_day() -> int:
    # any day but today keeps the scheduled window shut during the test
    today = datetime.now(ZoneInfo("America/Sao_Paulo")).day
    return 5 if today != 5 else 6


@pytest.fixture
def services(storage: MemoryStorage, registry: PendingTransactionRegistry, engine: SettlementEngine, locks, alerts) -> Services:
    static = StaticPixProvider(PayloadBuilder(MerchantIdentity("pagamentos@orbitrum.com.br", "Orbitrum", "Recife"), max_amount_minor=500000))
    withdrawals = WithdrawalWindowScheduler(
        storage, locks=locks, day=_closed_day(), tz="America/Sao_Paulo", rate="0.087", min_credit=10000, alerter=alerts
    )
    return Services(
        storage=storage,
        registry=registry,
        ledger=engine.ledger,
        engine=engine,
        withdrawals=withdrawals,
        checkout=CheckoutService(storage, registry, [static], namespace="orbitrum", max_amount_minor=500000),
        verifier=RecordingVerifier(),  # type: ignore[arg-type]
        mercado_pago=MercadoPagoClient(access_token="", base_url="https://mp.test"),
    )


@pytest_asyncio.fixture
async def client(services: Services):
    app = create_app(services)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await services.mercado_pago.aclose()


@pytest.mark.asyncio
async def test_health_echoes_correlation_id(client: httpx.AsyncClient) -> None:
    r = await client.get("/health", headers={"X-Correlation-ID": "req-123"})
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "pending": 0}
    assert r.headers["X-Correlation-ID"] == "req-123"


@pytest.mark.asyncio
async def test_direct_webhook_settles_once(client: httpx.AsyncClient, registry: PendingTransactionRegistry, storage: MemoryStorage) -> None:
    await registry.register(1, "ana@example.com", 300)
    body = {"amount": "3.00", "sourceTransactionId": "bank-1", "reportedAt": datetime.now(ZoneInfo("UTC")).isoformat()}
    r = await client.post("/api/payment/webhook/direct", json=body)
    assert r.status_code == 200
    assert r.json() == {"received": True, "status": "settled", "user_id": 1, "tokens": 2160}

    again = await client.post("/api/payment/webhook/direct", json=body)
    assert again.status_code == 200
    assert again.json()["status"] == "already_settled"
    assert storage.users[1].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_direct_webhook_ignores_malformed_body(client: httpx.AsyncClient, storage: MemoryStorage) -> None:
    r = await client.post("/api/payment/webhook/direct", json={"amount": "abc"})
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"
    r = await client.post("/api/payment/webhook/direct", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.json()["status"] == "ignored"
    assert [a.action for a in storage.audit].count("pix_notification_rejected") == 2


@pytest.mark.asyncio
async def test_direct_webhook_reports_unreconciled(client: httpx.AsyncClient, storage: MemoryStorage) -> None:
    r = await client.post("/api/payment/webhook/direct", json={"amount": 12.34, "sourceTransactionId": "bank-2"})
    assert r.status_code == 200
    payload = r.json()
    assert payload["status"] == "unreconciled"
    assert payload["unreconciled_id"] in storage.unreconciled


@pytest.mark.asyncio
async def test_mercado_pago_callback_is_queued(client: httpx.AsyncClient, services: Services) -> None:
    r = await client.post("/api/payment/webhook/mercadopago", json={"type": "payment", "data": {"id": "777"}})
    assert r.json()["status"] == "queued"
    r = await client.post("/api/payment/webhook/mercadopago?type=payment&data.id=777")
    assert r.json()["status"] == "already_queued"
    r = await client.post("/api/payment/webhook/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})
    assert r.json()["status"] == "ignored"
    assert services.verifier.submitted == ["777"]


@pytest.mark.asyncio
async def test_create_pix_charge(client: httpx.AsyncClient, registry: PendingTransactionRegistry) -> None:
    r = await client.post("/api/payment/pix", json={"user_id": 1, "amount_minor": 300})
    assert r.status_code == 200
    data = r.json()
    assert data["provider"] == "static_pix"
    assert data["tokens"] == 2160
    assert data["expires_at"]
    assert parse_payload(data["pix_code"]).amount_minor == 300
    assert registry.get(data["expectation_id"]) is not None


@pytest.mark.asyncio
async def test_create_pix_charge_errors(client: httpx.AsyncClient) -> None:
    assert (await client.post("/api/payment/pix", json={"user_id": 1, "amount_minor": 0})).status_code == 422
    assert (await client.post("/api/payment/pix", json={"user_id": 1, "amount_minor": 600000})).status_code == 422
    assert (await client.post("/api/payment/pix", json={"user_id": 404, "amount_minor": 300})).status_code == 404


@pytest.mark.asyncio
async def test_withdrawal_closed_outside_window(client: httpx.AsyncClient) -> None:
    st = (await client.get("/api/wallet/withdrawal-window")).json()
    assert st["is_open"] is False
    assert st["next_opens_at"]
    r = await client.post("/api/wallet/withdraw", json={"user_id": 1, "amount": 15000})
    assert r.status_code == 409
    assert r.json()["detail"]["next_window"] == st["next_opens_at"]


@pytest.mark.asyncio
async def test_withdrawal_in_forced_window(client: httpx.AsyncClient, services: Services, storage: MemoryStorage) -> None:
    await storage.update_user(1, {"accumulated_credit": 200000})
    await services.withdrawals.force_open("tg:10")
    assert (await client.get("/api/wallet/withdrawal-window")).json()["is_open"] is True

    below = await client.post("/api/wallet/withdraw", json={"user_id": 1, "amount": 5000})
    assert below.status_code == 400
    assert below.json()["detail"] == {"error": "below_minimum", "minimum": 10000}

    over = await client.post("/api/wallet/withdraw", json={"user_id": 1, "amount": 20000})
    assert over.status_code == 400
    assert over.json()["detail"]["shortfall"] == 2600

    ok = await client.post("/api/wallet/withdraw", json={"user_id": 1, "amount": 15000, "pix_key": "ana@example.com"})
    assert ok.status_code == 200
    assert ok.json()["amount_minor"] == 1500
    assert storage.users[1].available_to_withdraw == 2400

    assert (await client.post("/api/wallet/withdraw", json={"user_id": 404, "amount": 15000})).status_code == 404
