"""Normalisation of untrusted inbound payment notifications."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from pixsettle.errors import MalformedNotification
from pixsettle.utils.money import to_decimal, to_minor
from pixsettle.utils.time import parse_timestamp, utc_now

MAX_TEXT_LEN = 500


@dataclass(frozen=True)
class InboundNotification:
    amount: Decimal
    source: str = "direct"  # direct|mercadopago|admin
    external_reference: Optional[str] = None
    description: Optional[str] = None
    source_transaction_id: Optional[str] = None
    reported_at: Optional[datetime] = None
    received_at: datetime = field(default_factory=utc_now)

    @property
    def amount_minor(self) -> int:
        return to_minor(self.amount)

    @property
    def as_of(self) -> datetime:
        """Reported payment time, or arrival time when the payer's rail did not say."""
        return self.reported_at or self.received_at

    @property
    def dedupe_key(self) -> Optional[str]:
        """Identity used to recognise redeliveries of the same notification.

        Prefers the rail's own transaction id. Without one, a fingerprint is
        only safe when the payload carries its own timestamp; otherwise two
        customers paying the same amount would collapse into one.
        """
        if self.source_transaction_id:
            return f"{self.source}:{self.source_transaction_id}"
        if self.reported_at is None:
            return None
        raw = "|".join(
            [
                self.source,
                str(self.amount_minor),
                self.reported_at.isoformat(),
                self.external_reference or "",
                self.description or "",
            ]
        )
        return "fp:" + hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def audit_meta(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "amount_minor": self.amount_minor,
            "external_reference": self.external_reference,
            "source_transaction_id": self.source_transaction_id,
            "reported_at": self.reported_at.isoformat() if self.reported_at else None,
        }


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text[:MAX_TEXT_LEN] or None


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] not in (None, ""):
            return data[key]
    return None


def parse_notification(data: Any, *, source: str = "direct", received_at: Optional[datetime] = None) -> InboundNotification:
    """Build an InboundNotification from a loosely-typed payload.

    Accepts camelCase and snake_case keys. Only ``amount`` is required and it
    must be a positive, finite number of reais.
    """
    if not isinstance(data, Mapping):
        raise MalformedNotification("notification body must be an object")
    amount = to_decimal(_first(data, "amount", "transaction_amount", "value"))
    if amount is None:
        raise MalformedNotification("notification has no parseable amount")
    if to_minor(amount) <= 0:
        raise MalformedNotification(f"notification amount must be at least one centavo, got {amount}")

    reported_raw = _first(data, "reportedAt", "reported_at", "date_approved", "date_created")
    return InboundNotification(
        amount=amount,
        source=source,
        external_reference=_text(_first(data, "externalReference", "external_reference")),
        description=_text(_first(data, "description")),
        source_transaction_id=_text(_first(data, "sourceTransactionId", "source_transaction_id", "id")),
        reported_at=parse_timestamp(reported_raw),
        received_at=received_at or utc_now(),
    )
