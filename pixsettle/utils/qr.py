from __future__ import annotations

import base64
from io import BytesIO

import qrcode
from qrcode.constants import ERROR_CORRECT_L


def generate_qr_png(data: str, *, size: int = 256, border: int = 1) -> bytes:
    """Render a BR Code payload as a PNG QR code.

    - Low error correction keeps the module count small for long payloads.
    - Resizes output to exactly `size` x `size` pixels (nearest).
    """
    if not isinstance(data, str) or not data:
        raise ValueError("data must be a non-empty string")

    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_L, box_size=10, border=max(0, int(border)))
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").get_image()

    if img.size != (size, size):
        from PIL import Image

        img = img.resize((size, size), Image.Resampling.NEAREST)

    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def png_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


__all__ = ["generate_qr_png", "png_data_url"]
