import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DATABASE_URL", "POSTGRES_DSN", "LEDGER_BACKEND", "FORBID_MEMORY_DB", "EARLY_ADOPTER_LIMIT"):
        monkeypatch.delenv(name, raising=False)


def test_business_defaults():
    cfg = Settings(_env_file=None)

    assert cfg.GUEST_FREE_PAGES == 2
    assert cfg.DEFAULT_SIGNUP_PAGES == 2
    assert cfg.EARLY_ADOPTER_PAGES == 50
    assert cfg.EARLY_ADOPTER_LIMIT == 30
    assert cfg.LEDGER_BACKEND == "postgres"
    assert cfg.temp_device_prefixes == ("google_", "email_")


def test_postgres_dsn_alias(monkeypatch):
    monkeypatch.setenv("POSTGRES_DSN", "postgres://app:pw@db/ledger")

    cfg = Settings(_env_file=None)

    assert cfg.DATABASE_URL == "postgres://app:pw@db/ledger"
    assert "pw" not in cfg.critical_variables()["DATABASE_URL"]


def test_backend_is_normalised_and_validated():
    assert Settings(_env_file=None, LEDGER_BACKEND=" Memory ").LEDGER_BACKEND == "memory"
    with pytest.raises(ValidationError):
        Settings(_env_file=None, LEDGER_BACKEND="redis")


def test_pool_bounds_are_checked():
    with pytest.raises(RuntimeError):
        Settings(_env_file=None, PG_POOL_MIN=5, PG_POOL_MAX=2)


def test_forbidden_memory_backend_fails_fast():
    with pytest.raises(RuntimeError):
        Settings(_env_file=None, LEDGER_BACKEND="memory", FORBID_MEMORY_DB=True)


def test_summary_masks_database_url():
    cfg = Settings(_env_file=None, DATABASE_URL="postgresql://app:hunter2@db/ledger")

    summary = cfg.configuration_summary()

    assert "hunter2" not in summary["DATABASE_URL"]
    assert summary["EARLY_ADOPTER_LIMIT"] == 30
