from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class ChargeRequest:
    user_id: int
    payer_email: str
    amount_minor: int
    reference: str
    description: str


@dataclass
class ProviderResult:
    """What the buyer needs to pay: a copy-and-paste BR code and its QR image."""

    provider: str
    reference: str
    amount_minor: int
    payload: str
    qr_png_base64: Optional[str] = None
    payment_id: Optional[str] = None
    ticket_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PixProvider(abc.ABC):
    name: str = "provider"

    @property
    def available(self) -> bool:
        return True

    @abc.abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ProviderResult: ...
