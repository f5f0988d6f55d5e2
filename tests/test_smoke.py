from __future__ import annotations

import types


def test_healthcheck_import() -> None:
    import pixsettle.healthcheck as hc
    assert isinstance(hc, types.ModuleType)


def test_env_example_keys_present() -> None:
    # Ensure critical env keys exist in example template for documentation correctness
    example = open('.env.example', 'r', encoding='utf-8').read()
    for key in [
        'TELEGRAM_BOT_TOKEN',
        'DB_URL',
        'PIX_KEY',
        'MERCADO_PAGO_ACCESS_TOKEN',
        'PIX_MATCH_WINDOW_MINUTES',
        'WITHDRAWAL_DAY',
    ]:
        assert key in example


def test_healthcheck_reports_failures(monkeypatch, capsys) -> None:
    import pixsettle.healthcheck as hc

    async def fake_checks():
        return ["db", "http"]

    monkeypatch.setattr(hc, "run_checks", fake_checks)
    assert hc.main() == 1
    assert "not ready: db, http" in capsys.readouterr().err


def test_healthcheck_db_url_missing(monkeypatch) -> None:
    import asyncio

    import pixsettle.healthcheck as hc

    monkeypatch.setattr(hc.settings, "db_url", "")
    assert asyncio.run(hc._check_db()) is False
