import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import Settings  # noqa: E402
from credits import CreditService  # noqa: E402
from ledger import LedgerStorage  # noqa: E402
from scripts.ledger_admin import build_parser, run  # noqa: E402


def _service() -> CreditService:
    cfg = Settings(FORBID_MEMORY_DB=False)
    return CreditService(LedgerStorage(None, backend="memory", settings=cfg), cfg)


def _admin(service, *argv):
    return run(build_parser().parse_args(list(argv)), service)


def _action(kind, owner, key, *extra):
    return (
        kind,
        owner,
        "--admin",
        "ops",
        "--key",
        key,
        "--reason",
        "COMPENSATION",
        "--reference",
        "T-1",
        *extra,
    )


def test_balance_for_unknown_owner(capsys):
    assert _admin(_service(), "balance", "user_1") == 1
    assert "no account" in capsys.readouterr().out


def test_grant_then_balance(capsys):
    service = _service()

    assert _admin(service, *_action("grant", "user_1", "g-1", "--pages", "7")) == 0
    capsys.readouterr()
    assert _admin(service, "balance", "user_1") == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["pages_remaining"] == 7


def test_rejected_reverse_exit_code(capsys):
    service = _service()

    assert _admin(service, *_action("reverse", "user_2", "r-1", "--pages", "3")) == 1
    assert json.loads(capsys.readouterr().out)["status"] == "rejected"


def test_invalid_status_is_reported(capsys):
    assert _admin(_service(), *_action("status", "user_3", "s-1", "--set", "frozen")) == 2
    assert "invalid request" in capsys.readouterr().out
