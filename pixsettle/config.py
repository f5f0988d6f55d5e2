from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List


def _parse_csv_ints(raw: str) -> List[int]:
    ids: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            pass
    return ids


@dataclass
class Settings:
    app_env: str = os.getenv("APP_ENV", "production")
    business_tz: str = os.getenv("BUSINESS_TZ", "America/Sao_Paulo")

    # Static PIX merchant identity
    pix_key: str = os.getenv("PIX_KEY", "")
    pix_merchant_name: str = os.getenv("PIX_MERCHANT_NAME", "")
    pix_merchant_city: str = os.getenv("PIX_MERCHANT_CITY", "")
    pix_max_amount_minor: int = int(os.getenv("PIX_MAX_AMOUNT_MINOR", "500000"))
    pix_reference_namespace: str = os.getenv("PIX_REFERENCE_NAMESPACE", "orbitrum")

    tokens_per_brl: int = int(os.getenv("TOKENS_PER_BRL", "720"))
    pix_match_window_minutes: int = int(os.getenv("PIX_MATCH_WINDOW_MINUTES", "15"))
    pix_expiry_minutes: int = int(os.getenv("PIX_EXPIRY_MINUTES", "30"))
    pix_sweep_interval_seconds: int = int(os.getenv("PIX_SWEEP_INTERVAL_SECONDS", "300"))
    pix_clock_skew_seconds: int = int(os.getenv("PIX_CLOCK_SKEW_SECONDS", "60"))
    pix_settled_retention_hours: int = int(os.getenv("PIX_SETTLED_RETENTION_HOURS", "72"))

    withdrawal_day: int = int(os.getenv("WITHDRAWAL_DAY", "3"))
    withdrawal_rate: str = os.getenv("WITHDRAWAL_RATE", "0.087")
    withdrawal_min_credit: int = int(os.getenv("WITHDRAWAL_MIN_CREDIT", "10000"))
    credit_units_per_brl: int = int(os.getenv("CREDIT_UNITS_PER_BRL", "1000"))
    default_plan: str = os.getenv("DEFAULT_PLAN", "free")
    withdrawal_tick_seconds: int = int(os.getenv("WITHDRAWAL_TICK_SECONDS", "60"))

    mercado_pago_access_token: str = os.getenv("MERCADO_PAGO_ACCESS_TOKEN", "")
    mercado_pago_base_url: str = os.getenv("MERCADO_PAGO_BASE_URL", "https://api.mercadopago.com")
    webhook_url: str = os.getenv("WEBHOOK_URL", "")

    settlement_timeout_seconds: float = float(os.getenv("SETTLEMENT_TIMEOUT_SECONDS", "10"))
    verify_max_attempts: int = int(os.getenv("VERIFY_MAX_ATTEMPTS", "5"))
    verify_retry_seconds: float = float(os.getenv("VERIFY_RETRY_SECONDS", "30"))

    db_url: str = os.getenv("DB_URL", "")

    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_admin_ids: List[int] = field(default_factory=lambda: _parse_csv_ints(os.getenv("TELEGRAM_ADMIN_IDS", "")))
    log_chat_id: str = os.getenv("LOG_CHAT_ID", "")

    http_host: str = os.getenv("HTTP_HOST", "0.0.0.0")
    http_port: int = int(os.getenv("HTTP_PORT", "8080"))


settings = Settings()
