from __future__ import annotations

import base64

from pixsettle.payment.brcode import MerchantIdentity, PayloadBuilder
from pixsettle.utils.qr import generate_qr_png, png_data_url


def _is_png(data: bytes) -> bool:
    return isinstance(data, (bytes, bytearray)) and data.startswith(b"\x89PNG\r\n\x1a\n")


def test_qr_generate_brcode_payload() -> None:
    builder = PayloadBuilder(MerchantIdentity("11999998888", "Orbitrum", "Recife"), max_amount_minor=500000)
    payload = builder.build(123456, "orbitrum_user_42_1700000000000").payload
    data = generate_qr_png(payload, size=320, border=2)
    assert _is_png(data)
    assert len(data) > 100


def test_qr_long_payload_and_data_url() -> None:
    data = generate_qr_png("0002" + "A" * 400 + "6304ABCD")
    assert _is_png(data)
    url = png_data_url(data)
    assert url.startswith("data:image/png;base64,")
    assert base64.b64decode(url.split(",", 1)[1]) == data
