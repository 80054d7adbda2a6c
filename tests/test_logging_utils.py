import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import logging_utils  # noqa: E402
from logging_utils import JsonFormatter, log_extra, mask_owner  # noqa: E402


def _record(msg, *args, meta=None):
    record = logging.LogRecord("ledger", logging.INFO, __file__, 10, msg, args, None)
    if meta is not None:
        record.meta = meta
    return record


def test_log_extra_drops_none_fields():
    assert log_extra(op="use", owner="user_1", reason=None) == {"meta": {"op": "use", "owner": "user_1"}}


def test_mask_owner_shortens_long_ids():
    assert mask_owner("user_1") == "user_1"
    assert mask_owner("device-0123456789abcdef") == "device-01234..."
    assert mask_owner(None) == ""


def test_json_formatter_emits_meta():
    payload = json.loads(JsonFormatter().format(_record("ledger.%s", "use", meta={"amount": 3})))

    assert payload["msg"] == "ledger.use"
    assert payload["level"] == "INFO"
    assert payload["meta"]["amount"] == 3
    assert payload["meta"]["logger"] == "ledger"


def test_json_formatter_redacts_dsn_password():
    record = _record("connect failed", meta={"dsn": "postgresql://app:hunter2@db:5432/ledger"})

    output = JsonFormatter().format(record)

    assert "hunter2" not in output
    assert "app:***@db" in output


def test_secret_env_values_are_redacted(monkeypatch):
    monkeypatch.setenv("LEDGER_API_TOKEN", "tok-very-secret")
    logging_utils.refresh_secret_cache()
    try:
        output = JsonFormatter().format(_record("token tok-very-secret leaked"))
    finally:
        monkeypatch.delenv("LEDGER_API_TOKEN")
        logging_utils.refresh_secret_cache()

    assert "tok-very-secret" not in output
    assert "***" in output
