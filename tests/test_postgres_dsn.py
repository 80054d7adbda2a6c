import sys
from pathlib import Path

import pytest
from psycopg.conninfo import conninfo_to_dict

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.db.postgres import ensure_conninfo, mask_dsn, normalize_dsn  # noqa: E402


def test_normalize_strips_driver_and_adds_sslmode():
    dsn = normalize_dsn("postgresql+psycopg://app:pw@db.example.com:5432/ledger")

    assert dsn == "postgres://app:pw@db.example.com:5432/ledger?sslmode=require"


def test_normalize_keeps_explicit_sslmode():
    dsn = normalize_dsn("postgres://app:pw@localhost/ledger?sslmode=disable")

    assert dsn.endswith("sslmode=disable")


def test_normalize_fills_blank_sslmode():
    dsn = normalize_dsn("postgres://app:pw@localhost/ledger?sslmode=", sslmode="prefer")

    assert dsn.endswith("sslmode=prefer")


@pytest.mark.parametrize(
    "raw",
    ["", "mysql://app:pw@localhost/ledger", "postgres://app:pw@/ledger", "postgres://app:pw@localhost"],
)
def test_normalize_rejects_invalid(raw):
    with pytest.raises(ValueError) as excinfo:
        normalize_dsn(raw)
    assert "DSN invalid" in str(excinfo.value)


def test_mask_hides_password():
    masked = mask_dsn("postgresql://app:hunter2@db:5432/ledger")

    assert "hunter2" not in masked
    assert masked.startswith("postgres://app:")
    assert masked.endswith("@db:5432/ledger")
    assert mask_dsn("") == ""


def test_conninfo_carries_timeouts_and_name():
    conninfo = ensure_conninfo(
        "postgres://app:pw@db:5432/ledger",
        application_name="credit-ledger",
        statement_timeout_ms=5000,
    )
    params = conninfo_to_dict(conninfo)

    assert params["application_name"] == "credit-ledger"
    assert params["options"] == "-c statement_timeout=5000"
    assert params["sslmode"] == "require"
    assert params["keepalives"] == "1"
