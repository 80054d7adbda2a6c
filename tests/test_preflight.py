import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import preflight  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_URL", "POSTGRES_DSN", "LEDGER_BACKEND", "FORBID_MEMORY_DB"):
        monkeypatch.delenv(name, raising=False)


def test_memory_mode_skips_postgres(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")

    def fail(*args, **kwargs):
        raise AssertionError("postgres must not be contacted")

    monkeypatch.setattr(preflight, "_check_postgres", fail)

    assert preflight.main() == 0


def test_missing_database_url_fails(caplog):
    assert preflight.main() == 1
    assert any("DATABASE_URL required" in record.getMessage() for record in caplog.records)


def test_forbidden_memory_backend_fails(monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "memory")
    monkeypatch.setenv("FORBID_MEMORY_DB", "1")

    assert preflight.main() == 1


def test_invalid_dsn_is_reported_without_connecting(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "mysql://app:pw@db/ledger")

    with pytest.raises(preflight.CheckError) as excinfo:
        preflight._check_postgres("mysql://app:pw@db/ledger")

    assert "DSN invalid" in str(excinfo.value)
