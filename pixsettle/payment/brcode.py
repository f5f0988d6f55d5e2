"""Static PIX payload (BR Code) builder and parser.

The payload is a sequence of ``<tag:2><length:2><value>`` fields terminated by
field ``63`` holding a CRC16/CCITT-FALSE checksum computed over everything
before it, including the ``6304`` tag/length prefix of the checksum field.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pixsettle.config import settings
from pixsettle.errors import InvalidAmount, PayloadError
from pixsettle.utils.money import from_minor, to_minor
from pixsettle.utils.qr import generate_qr_png

GUI_PIX = "BR.GOV.BCB.PIX"
CURRENCY_BRL = "986"
COUNTRY_BR = "BR"
MCC_UNSPECIFIED = "0000"

MAX_NAME_LEN = 25
MAX_CITY_LEN = 15
MAX_REFERENCE_LEN = 25
MAX_AMOUNT_FIELD_LEN = 13
EMPTY_REFERENCE = "***"

_REFERENCE_STRIP_RE = re.compile(r"[^A-Za-z0-9]")


def crc16_ccitt(data: str) -> str:
    """CRC-16/CCITT-FALSE (poly 0x1021, init 0xFFFF, MSB-first, no final XOR) as 4 uppercase hex digits."""
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def _tlv(tag: str, value: str) -> str:
    if len(value) > 99:
        raise PayloadError(f"field {tag} too long ({len(value)} chars)")
    return f"{tag}{len(value):02d}{value}"


def _ascii_upper(text: str, limit: int) -> str:
    norm = unicodedata.normalize("NFKD", text or "")
    ascii_text = norm.encode("ascii", "ignore").decode("ascii")
    return " ".join(ascii_text.upper().split())[:limit]


def normalize_reference(reference: str) -> str:
    """Keep alphanumerics only and truncate to the last 25 characters.

    The reference is advisory for reconciliation, so overlong values are
    shortened deterministically instead of rejected.
    """
    cleaned = _REFERENCE_STRIP_RE.sub("", reference or "")
    if not cleaned:
        return EMPTY_REFERENCE
    return cleaned[-MAX_REFERENCE_LEN:]


@dataclass(frozen=True)
class MerchantIdentity:
    pix_key: str
    name: str
    city: str

    @classmethod
    def from_settings(cls) -> "MerchantIdentity":
        return cls(pix_key=settings.pix_key, name=settings.pix_merchant_name, city=settings.pix_merchant_city)


@dataclass(frozen=True)
class BrCode:
    payload: str
    amount_minor: int
    reference: str

    @property
    def checksum(self) -> str:
        return self.payload[-4:]

    def qr_png(self, *, size: int = 256) -> bytes:
        return generate_qr_png(self.payload, size=size)


@dataclass
class ParsedBrCode:
    fields: Dict[str, str]
    pix_key: str
    merchant_name: str
    merchant_city: str
    amount_minor: Optional[int]
    reference: str
    extra: Dict[str, Dict[str, str]] = field(default_factory=dict)


class PayloadBuilder:
    def __init__(self, merchant: Optional[MerchantIdentity] = None, *, max_amount_minor: Optional[int] = None) -> None:
        self.merchant = merchant or MerchantIdentity.from_settings()
        if not self.merchant.pix_key:
            raise PayloadError("merchant PIX key is not configured")
        self.max_amount_minor = max_amount_minor if max_amount_minor is not None else settings.pix_max_amount_minor

    def _validate_amount(self, amount_minor: int) -> None:
        if not isinstance(amount_minor, int) or isinstance(amount_minor, bool):
            raise InvalidAmount(amount_minor, "amount must be an integer number of centavos")
        if amount_minor <= 0:
            raise InvalidAmount(amount_minor)
        if amount_minor > self.max_amount_minor:
            raise InvalidAmount(amount_minor, f"amount exceeds maximum of {self.max_amount_minor}")

    def build(self, amount_minor: int, reference: str) -> BrCode:
        self._validate_amount(amount_minor)
        amount_text = f"{from_minor(amount_minor):.2f}"
        if len(amount_text) > MAX_AMOUNT_FIELD_LEN:
            raise InvalidAmount(amount_minor, "amount does not fit the payload field")
        ref = normalize_reference(reference)

        account = _tlv("00", GUI_PIX) + _tlv("01", self.merchant.pix_key)
        parts: List[Tuple[str, str]] = [
            ("00", "01"),  # payload format indicator
            ("01", "12"),  # point of initiation: single use
            ("26", account),
            ("52", MCC_UNSPECIFIED),
            ("53", CURRENCY_BRL),
            ("54", amount_text),
            ("58", COUNTRY_BR),
            ("59", _ascii_upper(self.merchant.name, MAX_NAME_LEN) or "N"),
            ("60", _ascii_upper(self.merchant.city, MAX_CITY_LEN) or "N"),
            ("62", _tlv("05", ref)),
        ]
        body = "".join(_tlv(tag, value) for tag, value in parts) + "6304"
        payload = body + crc16_ccitt(body)
        return BrCode(payload=payload, amount_minor=amount_minor, reference=ref)


def _split_tlv(data: str) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(data):
        if pos + 4 > len(data):
            raise PayloadError(f"truncated field header at offset {pos}")
        tag = data[pos:pos + 2]
        length_txt = data[pos + 2:pos + 4]
        if not length_txt.isdigit():
            raise PayloadError(f"bad length {length_txt!r} for field {tag}")
        size = int(length_txt)
        value = data[pos + 4:pos + 4 + size]
        if len(value) != size:
            raise PayloadError(f"field {tag} shorter than declared length {size}")
        out.append((tag, value))
        pos += 4 + size
    return out


def parse_payload(payload: str) -> ParsedBrCode:
    """Parse a BR Code payload and verify its checksum."""
    if not isinstance(payload, str) or len(payload) < 8 or payload[-8:-4] != "6304":
        raise PayloadError("payload has no checksum field")
    expected = crc16_ccitt(payload[:-4])
    if payload[-4:].upper() != expected:
        raise PayloadError(f"checksum mismatch: got {payload[-4:]}, expected {expected}")

    fields = dict(_split_tlv(payload))
    extra: Dict[str, Dict[str, str]] = {}
    for tag in ("26", "62"):
        if tag in fields:
            extra[tag] = dict(_split_tlv(fields[tag]))

    amount_minor: Optional[int] = None
    if "54" in fields:
        amount_minor = to_minor(Decimal(fields["54"]))
    return ParsedBrCode(
        fields=fields,
        pix_key=extra.get("26", {}).get("01", ""),
        merchant_name=fields.get("59", ""),
        merchant_city=fields.get("60", ""),
        amount_minor=amount_minor,
        reference=extra.get("62", {}).get("05", ""),
        extra=extra,
    )
