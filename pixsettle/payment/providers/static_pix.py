from __future__ import annotations

import base64
from typing import Optional

from pixsettle.payment.brcode import PayloadBuilder
from pixsettle.payment.providers.base import ChargeRequest, PixProvider, ProviderResult


class StaticPixProvider(PixProvider):
    """BR code addressed straight to the merchant PIX key; settled by amount and time."""

    name = "static_pix"

    def __init__(self, builder: Optional[PayloadBuilder] = None) -> None:
        self.builder = builder or PayloadBuilder()

    async def create_charge(self, request: ChargeRequest) -> ProviderResult:
        code = self.builder.build(request.amount_minor, request.reference)
        return ProviderResult(
            provider=self.name,
            reference=request.reference,
            amount_minor=request.amount_minor,
            payload=code.payload,
            qr_png_base64=base64.b64encode(code.qr_png()).decode("ascii"),
        )
