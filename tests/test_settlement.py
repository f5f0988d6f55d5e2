from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from pixsettle.payment.inbound import InboundNotification
from pixsettle.payment.ledger import Ledger
from pixsettle.payment.registry import ExpectationStatus, PendingTransactionRegistry
from pixsettle.payment.settlement import SettlementEngine, SettlementStatus, Strategy, build_reference
from pixsettle.storage.base import UserAccount
from pixsettle.storage.memory import MemoryStorage
from pixsettle.utils.time import utc_now


def _actions(storage: MemoryStorage) -> list[str]:
    return [r.action for r in storage.audit]


def _note(amount: str, **kwargs) -> InboundNotification:
    kwargs.setdefault("reported_at", utc_now())
    return InboundNotification(amount=Decimal(amount), **kwargs)


class FailingLedger(Ledger):
    async def credit_purchase(self, user_id: int, tokens: int):
        raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_purchase_settles_once_even_if_delivered_twice(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    exp = await registry.register(1, "ana@example.com", 300, now=utc_now() - timedelta(minutes=10))
    assert exp.tokens_owed == 2160
    note = _note("3.00", source_transaction_id="tx-1")

    first = await engine.process(note)
    assert first.status is SettlementStatus.SETTLED
    assert first.strategy is Strategy.AMOUNT_WINDOW
    assert first.tokens_credited == 2160
    user = storage.users[1]
    assert user.tokens_purchased == 2160
    assert user.tokens == 100 + 2160

    second = await engine.process(note)
    assert second.status is SettlementStatus.ALREADY_SETTLED
    assert second.ok
    assert storage.users[1].tokens_purchased == 2160
    assert registry.get(exp.id).status is ExpectationStatus.SETTLED
    assert _actions(storage).count("pix_settled") == 1
    assert "pix_duplicate" in _actions(storage)
    assert [n.kind for n in storage.notifications] == ["tokens_credited"]


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_credit_once(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    await registry.register(1, "ana@example.com", 300)
    note = _note("3.00", source_transaction_id="tx-2")
    outcomes = await asyncio.gather(engine.process(note), engine.process(note), engine.process(note))
    statuses = sorted(o.status.value for o in outcomes)
    assert statuses == ["already_settled", "already_settled", "settled"]
    assert storage.users[1].tokens_purchased == 2160
    assert storage.unreconciled == {}


@pytest.mark.asyncio
async def test_two_expectations_same_user_both_credited(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    await registry.register(1, "ana@example.com", 300)
    await registry.register(1, "ana@example.com", 600)
    await asyncio.gather(
        engine.process(_note("3.00", source_transaction_id="a")),
        engine.process(_note("6.00", source_transaction_id="b")),
    )
    assert storage.users[1].tokens_purchased == 2160 + 4320
    assert storage.users[1].tokens == 100 + 2160 + 4320


@pytest.mark.asyncio
async def test_structured_reference_is_authoritative(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    # A pending expectation of another user for the same amount must not be taken
    other = await registry.register(1, "ana@example.com", 500)
    note = _note("5.00", external_reference="orbitrum_user_2_1700000000000", source_transaction_id="mp-9")
    outcome = await engine.process(note)
    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.strategy is Strategy.REFERENCE
    assert outcome.payer_id == 2
    assert storage.users[2].tokens_purchased == 3600
    assert registry.get(other.id).status is ExpectationStatus.PENDING


@pytest.mark.asyncio
async def test_reference_settles_registered_expectation(
    engine: SettlementEngine, registry: PendingTransactionRegistry
) -> None:
    ref = build_reference(1, namespace="orbitrum")
    exp = await registry.register(1, "ana@example.com", 300, reference=ref, now=utc_now() - timedelta(hours=2))
    outcome = await engine.process(_note("3.00", external_reference=ref))
    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.expectation.id == exp.id


@pytest.mark.asyncio
async def test_reference_redelivery_without_ids_is_idempotent(
    engine: SettlementEngine, storage: MemoryStorage
) -> None:
    note = InboundNotification(amount=Decimal("3.00"), external_reference="orbitrum_user_2_1700000000000")
    assert note.dedupe_key is None
    assert (await engine.process(note)).status is SettlementStatus.SETTLED
    assert (await engine.process(note)).status is SettlementStatus.ALREADY_SETTLED
    assert storage.users[2].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_concurrent_reference_deliveries_without_ids(engine: SettlementEngine, storage: MemoryStorage) -> None:
    note = InboundNotification(amount=Decimal("3.00"), external_reference="orbitrum_user_2_1700000000001")
    outcomes = await asyncio.gather(engine.process(note), engine.process(note))
    assert sorted(o.status.value for o in outcomes) == ["already_settled", "settled"]
    assert storage.users[2].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_same_reference_through_two_rails_credits_once(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    ref = build_reference(1, namespace="orbitrum")
    await registry.register(1, "ana@example.com", 300, reference=ref)
    via_provider = InboundNotification(amount=Decimal("3.00"), source="mercadopago", external_reference=ref, source_transaction_id="9001")
    via_bank = InboundNotification(amount=Decimal("3.00"), source="direct", external_reference=ref, source_transaction_id="E123")
    outcomes = await asyncio.gather(engine.process(via_provider), engine.process(via_bank))
    assert sorted(o.status.value for o in outcomes) == ["already_settled", "settled"]
    assert storage.users[1].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_description_token_identifies_payer(engine: SettlementEngine, storage: MemoryStorage) -> None:
    outcome = await engine.process(_note("3.00", description="Pix recebido orbitrum_2_tokens", source_transaction_id="d1"))
    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.strategy is Strategy.DESCRIPTION
    assert storage.users[2].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_unknown_referenced_user_is_queued_not_guessed(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage, alerts
) -> None:
    exp = await registry.register(1, "ana@example.com", 300)
    outcome = await engine.process(_note("3.00", external_reference="orbitrum_user_999_1700000000000", source_transaction_id="x"))
    assert outcome.status is SettlementStatus.UNRECONCILED
    assert "999" in storage.unreconciled[outcome.unreconciled_id].reason
    assert registry.get(exp.id).status is ExpectationStatus.PENDING
    assert storage.users[1].tokens_purchased == 0
    assert len(alerts.messages) == 1


@pytest.mark.asyncio
async def test_payment_reported_before_purchase_is_unreconciled(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage
) -> None:
    t0 = utc_now()
    exp = await registry.register(2, "bruno@example.com", 300, now=t0)
    outcome = await engine.process(_note("3.00", reported_at=t0 - timedelta(days=2), source_transaction_id="old-tx"))
    assert outcome.status is SettlementStatus.UNRECONCILED
    assert storage.users[2].tokens_purchased == 0
    assert registry.get(exp.id).status is ExpectationStatus.PENDING



@pytest.mark.asyncio
async def test_unmatched_payment_is_queued_not_dropped(
    engine: SettlementEngine, registry: PendingTransactionRegistry, storage: MemoryStorage, alerts
) -> None:
    await registry.register(1, "ana@example.com", 300)
    before = {uid: (u.tokens, u.tokens_purchased) for uid, u in storage.users.items()}
    note = _note("7.77", external_reference="pedido-xyz", source_transaction_id="tx-u")

    outcome = await engine.process(note)
    assert outcome.status is SettlementStatus.UNRECONCILED
    assert outcome.unreconciled_id is not None
    item = storage.unreconciled[outcome.unreconciled_id]
    assert item.amount_minor == 777
    assert item.external_reference == "pedido-xyz"
    assert {uid: (u.tokens, u.tokens_purchased) for uid, u in storage.users.items()} == before
    assert len(alerts.messages) == 1
    assert "pix_unreconciled" in _actions(storage)

    # redelivery does not queue a second item or alert again
    again = await engine.process(note)
    assert again.unreconciled_id == outcome.unreconciled_id
    assert len(storage.unreconciled) == 1
    assert len(alerts.messages) == 1


@pytest.mark.asyncio
async def test_payment_outside_matching_window_is_unreconciled(
    engine: SettlementEngine, registry: PendingTransactionRegistry
) -> None:
    t0 = utc_now() - timedelta(minutes=20)
    await registry.register(1, "ana@example.com", 300, now=t0)
    outcome = await engine.process(_note("3.00", reported_at=t0 + timedelta(minutes=15, seconds=1)))
    assert outcome.status is SettlementStatus.UNRECONCILED


@pytest.mark.asyncio
async def test_credit_failure_keeps_expectation_pending(
    registry: PendingTransactionRegistry, storage: MemoryStorage, alerts
) -> None:
    exp = await registry.register(1, "ana@example.com", 300)
    note = _note("3.00", source_transaction_id="tx-f")

    failing = SettlementEngine(registry, storage, FailingLedger(storage), namespace="orbitrum", alerter=alerts)
    outcome = await failing.process(note)
    assert outcome.status is SettlementStatus.FAILED
    assert "database unavailable" in outcome.error
    assert registry.get(exp.id).status is ExpectationStatus.PENDING
    assert registry.pending() == [exp]
    assert storage.users[1].tokens_purchased == 0
    assert "pix_settlement_failed" in _actions(storage)

    # the redelivery completes it
    working = SettlementEngine(registry, storage, Ledger(storage), namespace="orbitrum", alerter=alerts)
    retried = await working.process(note)
    assert retried.status is SettlementStatus.SETTLED
    assert storage.users[1].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_every_attempt_is_audited_with_strategy(engine: SettlementEngine, registry, storage: MemoryStorage) -> None:
    await registry.register(1, "ana@example.com", 300)
    await engine.process(_note("3.00", source_transaction_id="tx-a"))
    record = next(r for r in storage.audit if r.action == "pix_settled")
    assert record.target_id == "1"
    assert record.meta["strategy"] == "amount_window"
    assert record.meta["tokens"] == 2160
    assert record.meta["source_transaction_id"] == "tx-a"


@pytest.mark.asyncio
async def test_resolve_unreconciled_credits_chosen_user(engine: SettlementEngine, storage: MemoryStorage) -> None:
    queued = await engine.process(_note("4.00", source_transaction_id="tx-r"))
    item_id = queued.unreconciled_id

    outcome = await engine.resolve_unreconciled(item_id, 2, actor="tg:10")
    assert outcome.status is SettlementStatus.SETTLED
    assert storage.users[2].tokens_purchased == 2880
    assert storage.unreconciled[item_id].resolved is True
    assert storage.unreconciled[item_id].resolved_by == "tg:10"
    assert await engine.unreconciled() == []

    with pytest.raises(ValueError):
        await engine.resolve_unreconciled(item_id, 2, actor="tg:10")
    with pytest.raises(LookupError):
        await engine.resolve_unreconciled(12345, 2, actor="tg:10")
    # the original rail redelivering is recognised
    redelivered = await engine.process(_note("4.00", source_transaction_id="tx-r"))
    assert redelivered.status is SettlementStatus.ALREADY_SETTLED


@pytest.mark.asyncio
async def test_manual_settlement_with_user(engine: SettlementEngine, storage: MemoryStorage) -> None:
    note = InboundNotification(amount=Decimal("3.00"), source="admin")
    outcome = await engine.settle_manual(note, user_id=2, actor="tg:10")
    assert outcome.status is SettlementStatus.SETTLED
    assert outcome.strategy is Strategy.REFERENCE
    assert storage.users[2].tokens_purchased == 2160


@pytest.mark.asyncio
async def test_manual_settlement_by_amount(engine: SettlementEngine, registry, storage: MemoryStorage) -> None:
    await registry.register(1, "ana@example.com", 900)
    outcome = await engine.settle_manual(InboundNotification(amount=Decimal("9.00"), source="admin"), user_id=None, actor="tg:10")
    assert outcome.status is SettlementStatus.SETTLED
    assert storage.users[1].tokens_purchased == 6480


class SlowStorage(MemoryStorage):
    async def update_user(self, user_id, fields):
        await asyncio.sleep(0.01)
        return await super().update_user(user_id, fields)


@pytest.mark.asyncio
async def test_concurrent_resolves_of_one_item_credit_once(registry: PendingTransactionRegistry, alerts) -> None:
    slow = SlowStorage()
    slow.add_user(UserAccount(id=2, email="bruno@example.com"))
    engine = SettlementEngine(registry, slow, Ledger(slow), namespace="orbitrum", alerter=alerts)
    queued = await engine.process(_note("3.00", source_transaction_id="tx-twice"))
    assert queued.status is SettlementStatus.UNRECONCILED

    results = await asyncio.gather(
        engine.resolve_unreconciled(queued.unreconciled_id, 2, actor="tg:10"),
        engine.resolve_unreconciled(queued.unreconciled_id, 2, actor="tg:11"),
        return_exceptions=True,
    )
    settled = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, ValueError)]
    assert [o.status for o in settled] == [SettlementStatus.SETTLED]
    assert len(refused) == 1
    assert slow.users[2].tokens_purchased == 2160
    assert slow.unreconciled[queued.unreconciled_id].resolved_by == "tg:10"
