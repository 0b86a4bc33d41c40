from decimal import Decimal

import pytest

from rodeotix.config import Settings


def test_database_url_is_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_from_env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/rodeo")
    monkeypatch.setenv("PAYMENT_PROVIDER", "Moneris")
    monkeypatch.setenv("TAX_RATE", "0.05")
    monkeypatch.setenv("APP_URL", "https://rodeo.example/")
    monkeypatch.setenv("MONERIS_ALLOW_UNSIGNED", "yes")
    monkeypatch.setenv("DB_GATE_LIMIT", "4")
    monkeypatch.setenv("DB_POOL_SIZE", "20")
    monkeypatch.setenv("STAFF_TOKEN", "")

    s = Settings.from_env()
    assert s.payment_provider == "moneris"
    assert s.tax_rate == Decimal("0.05")
    assert s.app_url == "https://rodeo.example"
    assert s.moneris_allow_unsigned is True
    assert s.db_gate_limit == 4
    assert s.db_pool_size == 20
    assert s.db_max_overflow == 10
    assert s.staff_token is None
    assert s.bar_credit_price == Decimal("7.00")
    assert s.dedup_backend == "sql"
