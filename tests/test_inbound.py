from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pixsettle.errors import MalformedNotification
from pixsettle.payment.inbound import InboundNotification, parse_notification


def test_parse_camel_case_payload() -> None:
    note = parse_notification(
        {
            "amount": "3.00",
            "externalReference": "orbitrum_user_7_1700000000000",
            "description": "tokens",
            "sourceTransactionId": "abc",
            "reportedAt": "2026-10-03T12:00:00Z",
        }
    )
    assert note.amount == Decimal("3.00")
    assert note.amount_minor == 300
    assert note.external_reference == "orbitrum_user_7_1700000000000"
    assert note.reported_at == datetime(2026, 10, 3, 12, 0, tzinfo=timezone.utc)
    assert note.as_of == note.reported_at
    assert note.dedupe_key == "direct:abc"


def test_parse_mercado_pago_payment() -> None:
    payment = {
        "id": 123456789,
        "status": "approved",
        "transaction_amount": 6,
        "external_reference": "orbitrum_user_3_1700000000000",
        "date_approved": "2026-10-03T09:00:00.000-03:00",
    }
    note = parse_notification(payment, source="mercadopago")
    assert note.amount_minor == 600
    assert note.source_transaction_id == "123456789"
    assert note.dedupe_key == "mercadopago:123456789"
    assert note.reported_at == datetime(2026, 10, 3, 12, 0, tzinfo=timezone.utc)


def test_amount_only_uses_arrival_time() -> None:
    arrived = datetime(2026, 1, 1, tzinfo=timezone.utc)
    note = parse_notification({"amount": "R$ 1.234,56"}, received_at=arrived)
    assert note.amount_minor == 123456
    assert note.as_of == arrived
    assert note.dedupe_key is None


def test_epoch_millis_timestamp() -> None:
    note = parse_notification({"amount": 3, "reportedAt": 1700000000000})
    assert note.reported_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_fingerprint_dedupe_key_is_stable() -> None:
    at = datetime(2026, 10, 3, 12, 0, tzinfo=timezone.utc)
    a = InboundNotification(amount=Decimal("3.00"), reported_at=at)
    b = InboundNotification(amount=Decimal("3.0"), reported_at=at)
    c = InboundNotification(amount=Decimal("3.00"), reported_at=at, description="other")
    assert a.dedupe_key.startswith("fp:")
    assert a.dedupe_key == b.dedupe_key
    assert a.dedupe_key != c.dedupe_key


@pytest.mark.parametrize(
    "payload",
    [None, [], "3.00", {}, {"amount": "abc"}, {"amount": -3}, {"amount": 0}, {"amount": "0.001"}, {"amount": True}],
)
def test_malformed_payloads_rejected(payload) -> None:
    with pytest.raises(MalformedNotification):
        parse_notification(payload)


def test_unparseable_timestamp_is_dropped() -> None:
    note = parse_notification({"amount": "3", "reportedAt": "yesterday"})
    assert note.reported_at is None
