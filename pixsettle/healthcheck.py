import asyncio
import os
import sys
from typing import List

import httpx
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from pixsettle.config import settings

# Container healthcheck: DB connectivity (SELECT 1), the service's own /health
# endpoint and, when an access token is configured, Mercado Pago reachability.
#
# HEALTHCHECK_SKIP_MERCADOPAGO=1 skips the Mercado Pago probe (sandbox outages).

PROBE_TIMEOUT = httpx.Timeout(12.0, connect=6.0)


def _flag(name: str) -> bool:
    return os.getenv(name, "0").strip().lower() in {"1", "true", "yes", "on"}


async def _check_db() -> bool:
    if not settings.db_url:
        print("DB_URL not set", file=sys.stderr)
        return False
    engine = create_async_engine(settings.db_url, pool_pre_ping=True)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        print(f"db error: {e}", file=sys.stderr)
        return False
    finally:
        await engine.dispose()


async def _get_ok(client: httpx.AsyncClient, url: str, **kwargs) -> bool:
    try:
        resp = await client.get(url, **kwargs)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"probe {url} failed: {e}", file=sys.stderr)
        return False
    return True


async def run_checks() -> List[str]:
    """Names of the failing checks; empty when healthy."""
    failed: List[str] = []
    if not await _check_db():
        failed.append("db")

    host = "127.0.0.1" if settings.http_host in {"0.0.0.0", ""} else settings.http_host
    async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
        if not await _get_ok(client, f"http://{host}:{settings.http_port}/health"):
            failed.append("http")
        token = settings.mercado_pago_access_token
        if token and not _flag("HEALTHCHECK_SKIP_MERCADOPAGO"):
            ok = await _get_ok(
                client,
                f"{settings.mercado_pago_base_url.rstrip('/')}/v1/payment_methods",
                headers={"Authorization": f"Bearer {token}", "accept": "application/json"},
            )
            if not ok:
                failed.append("mercadopago")
    return failed


def main() -> int:
    failed = asyncio.run(run_checks())
    if failed:
        print("not ready: " + ", ".join(failed), file=sys.stderr)
        return 1
    print("ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
