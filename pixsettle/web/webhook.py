"""HTTP surface: payment callbacks, PIX checkout and withdrawal endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pixsettle.config import settings
from pixsettle.container import Services
from pixsettle.errors import (
    BelowMinimum,
    InsufficientEntitlement,
    InvalidAmount,
    MalformedNotification,
    UserNotFound,
    WindowClosed,
)
from pixsettle.payment.checkout import NoProviderAvailable
from pixsettle.payment.inbound import parse_notification
from pixsettle.payment.settlement import SettlementStatus
from pixsettle.services.audit import log_audit
from pixsettle.utils.correlation import correlation_scope

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class PixChargeRequest(BaseModel):
    user_id: int
    amount_minor: int = Field(gt=0)


class PayoutRequest(BaseModel):
    user_id: int
    amount: int = Field(gt=0)
    pix_key: Optional[str] = None


async def _read_json(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="pixsettle", version="1.0.0")
    app.state.services = services

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as cid:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = cid
            return response

    @app.get("/health", tags=["System"])
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "pending": len(services.registry.pending())}

    @app.post("/api/payment/webhook/direct", tags=["Payments"])
    async def direct_webhook(request: Request) -> JSONResponse:
        data = await _read_json(request)
        try:
            notification = parse_notification(data, source="direct")
        except MalformedNotification as e:
            logger.warning("malformed pix notification ignored", extra={"extra": {"err": str(e)}})
            await log_audit(
                services.storage,
                actor="webhook",
                action="pix_notification_rejected",
                target_type="notification",
                meta={"err": str(e)},
            )
            return JSONResponse({"received": True, "status": "ignored"})

        try:
            outcome = await asyncio.wait_for(services.engine.process(notification), settings.settlement_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("pix settlement timed out", extra={"extra": notification.audit_meta()})
            return JSONResponse({"received": True, "status": "timeout"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

        body: Dict[str, Any] = {"received": True, "status": outcome.status.value}
        if outcome.payer_id is not None:
            body["user_id"] = outcome.payer_id
        if outcome.tokens_credited:
            body["tokens"] = outcome.tokens_credited
        if outcome.unreconciled_id is not None:
            body["unreconciled_id"] = outcome.unreconciled_id
        code = status.HTTP_500_INTERNAL_SERVER_ERROR if outcome.status is SettlementStatus.FAILED else status.HTTP_200_OK
        return JSONResponse(body, status_code=code)

    @app.post("/api/payment/webhook/mercadopago", tags=["Payments"])
    async def mercadopago_webhook(request: Request) -> Dict[str, Any]:
        data = await _read_json(request)
        # Mercado Pago also sends the id as query params (?type=payment&data.id=...)
        params = request.query_params
        kind = (data or {}).get("type") if isinstance(data, dict) else None
        kind = kind or params.get("type") or params.get("topic")
        payment_id = None
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            payment_id = data["data"].get("id")
        payment_id = payment_id or params.get("data.id") or params.get("id")

        if kind != "payment" or not payment_id:
            logger.info("mercado pago callback ignored", extra={"extra": {"type": kind, "payment_id": payment_id}})
            return {"received": True, "status": "ignored"}
        queued = await services.verifier.submit(str(payment_id))
        return {"received": True, "status": "queued" if queued else "already_queued"}

    @app.post("/api/payment/pix", tags=["Payments"])
    async def create_pix(req: PixChargeRequest) -> Dict[str, Any]:
        try:
            expectation, result = await services.checkout.create_pix_charge(req.user_id, req.amount_minor)
        except InvalidAmount as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        except UserNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        except NoProviderAvailable as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        return {
            "expectation_id": expectation.id,
            "status": "pending",
            "provider": result.provider,
            "reference": result.reference,
            "amount_minor": expectation.amount_minor,
            "tokens": expectation.tokens_owed,
            "pix_code": result.payload,
            "qr_code_base64": result.qr_png_base64,
            "payment_id": result.payment_id,
            "expires_at": result.expires_at.isoformat() if result.expires_at else None,
        }

    @app.get("/api/wallet/withdrawal-window", tags=["Wallet"])
    async def withdrawal_window() -> Dict[str, Any]:
        st = services.withdrawals.status()
        return {
            "is_open": st.is_open,
            "window": st.window.key if st.window else None,
            "opens_at": st.window.opens_at.isoformat() if st.window else None,
            "closes_at": st.window.closes_at.isoformat() if st.window else None,
            "next_opens_at": st.next_opens_at.isoformat(),
            "seconds_remaining": int(st.time_remaining.total_seconds()) if st.time_remaining else None,
        }

    @app.post("/api/wallet/withdraw", tags=["Wallet"])
    async def withdraw(req: PayoutRequest) -> Dict[str, Any]:
        try:
            payout = await services.withdrawals.request_payout(req.user_id, req.amount, pix_key=req.pix_key)
        except WindowClosed as e:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"error": "window_closed", "next_window": e.next_window.isoformat()},
            )
        except InsufficientEntitlement as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "insufficient_entitlement", "shortfall": e.shortfall, "available": e.available},
            )
        except BelowMinimum as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "below_minimum", "minimum": e.minimum},
            )
        except UserNotFound as e:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
        return {
            "payout_id": payout.id,
            "amount": payout.amount,
            "amount_minor": payout.amount_minor,
            "window": payout.window_key,
            "status": payout.status,
        }

    return app
