from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from pixsettle.config import settings
from pixsettle.payment.providers.base import ChargeRequest, PixProvider, ProviderResult
from pixsettle.utils.money import from_minor

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class MercadoPagoClient:
    """Thin async client for the Mercado Pago payments API."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
    ) -> None:
        self.access_token = access_token if access_token is not None else settings.mercado_pago_access_token
        self.base_url = (base_url or settings.mercado_pago_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base  # seconds

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "accept": "application/json",
        }
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key
        return headers

    def _delay(self, attempt: int) -> float:
        return self._backoff_base * (2 ** (attempt - 1)) + random.uniform(0, 0.25)

    async def _request(self, method: str, path: str, *, idempotency_key: Optional[str] = None, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                resp = await self._client.request(method, url, headers=self._headers(idempotency_key), **kwargs)
                if resp.status_code in RETRYABLE_STATUSES and attempt < self._max_attempts:
                    delay = self._delay(attempt)
                    logger.warning(
                        "Retryable status %s on %s %s, attempt %d/%d, sleeping %.2fs",
                        resp.status_code, method, url, attempt, self._max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError:
                logger.exception("Mercado Pago error on %s %s", method, url)
                raise
            except httpx.TransportError as e:
                last_exc = e
                if attempt < self._max_attempts:
                    delay = self._delay(attempt)
                    logger.warning(
                        "Network error on %s %s: %s, attempt %d/%d, sleeping %.2fs",
                        method, url, e, attempt, self._max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.exception("HTTP transport error on %s %s after %d attempts", method, url, attempt)
                raise
        if last_exc is not None:
            raise last_exc
        raise RuntimeError(f"Request failed without exception: {method} {url}")

    async def create_pix_payment(
        self,
        *,
        amount_minor: int,
        external_reference: str,
        description: str,
        payer_email: str,
        notification_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "transaction_amount": float(from_minor(amount_minor)),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": payer_email},
            "external_reference": external_reference,
        }
        if notification_url:
            payload["notification_url"] = notification_url
        resp = await self._request("POST", "/v1/payments", json=payload, idempotency_key=external_reference)
        data = resp.json()
        logger.info(
            "mercado pago pix created",
            extra={"extra": {"payment_id": data.get("id"), "external_reference": external_reference, "status": data.get("status")}},
        )
        return data

    async def get_payment(self, payment_id: str) -> Dict[str, Any]:
        resp = await self._request("GET", f"/v1/payments/{payment_id}")
        return resp.json()

    async def aclose(self) -> None:
        await self._client.aclose()


def is_accredited(payment: Dict[str, Any]) -> bool:
    return payment.get("status") == "approved" and payment.get("status_detail") == "accredited"


def transaction_data(payment: Dict[str, Any]) -> Dict[str, Any]:
    poi = payment.get("point_of_interaction") or {}
    return poi.get("transaction_data") or {}


class MercadoPagoPixProvider(PixProvider):
    name = "mercadopago"

    def __init__(self, client: Optional[MercadoPagoClient] = None, *, notification_url: Optional[str] = None) -> None:
        self.client = client or MercadoPagoClient()
        base = notification_url if notification_url is not None else settings.webhook_url
        self.notification_url = f"{base.rstrip('/')}/mercadopago" if base else None

    @property
    def available(self) -> bool:
        return self.client.configured

    async def create_charge(self, request: ChargeRequest) -> ProviderResult:
        data = await self.client.create_pix_payment(
            amount_minor=request.amount_minor,
            external_reference=request.reference,
            description=request.description,
            payer_email=request.payer_email,
            notification_url=self.notification_url,
        )
        tx = transaction_data(data)
        if not tx.get("qr_code"):
            raise ValueError("Mercado Pago response carries no PIX code")
        return ProviderResult(
            provider=self.name,
            reference=request.reference,
            amount_minor=request.amount_minor,
            payload=tx["qr_code"],
            qr_png_base64=tx.get("qr_code_base64"),
            payment_id=str(data["id"]) if data.get("id") is not None else None,
            ticket_url=tx.get("ticket_url"),
            raw={"status": data.get("status")},
        )
