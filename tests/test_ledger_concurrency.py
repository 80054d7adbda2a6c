import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import Settings  # noqa: E402
from ledger import LedgerPolicy, LedgerStorage  # noqa: E402


def _ledger(**policy) -> LedgerStorage:
    return LedgerStorage(
        None,
        backend="memory",
        policy=LedgerPolicy(**policy),
        settings=Settings(FORBID_MEMORY_DB=False),
    )


def _run_concurrently(count, fn):
    barrier = threading.Barrier(count)

    def worker(index):
        barrier.wait()
        return fn(index)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


def test_concurrent_use_never_overdraws():
    ledger = _ledger()
    ledger.create_or_set("user_1", 7)

    results = _run_concurrently(20, lambda _: ledger.use_pages("user_1", 1).applied)

    assert results.count(True) == 7
    assert results.count(False) == 13
    account = ledger.get_account("user_1")
    assert account.pages_remaining == 0
    assert account.total_pages_used == 7


def test_concurrent_grants_apply_once():
    ledger = _ledger()

    results = _run_concurrently(10, lambda _: ledger.grant("user_2", "2", False))

    assert sum(1 for r in results if r.granted) == 1
    assert sum(1 for r in results if r.already_had) == 9
    assert ledger.get_account("user_2").pages_remaining == 2


def test_concurrent_transfers_apply_once():
    ledger = _ledger()
    ledger.initialize_account("device-x")
    ledger.add_pages("device-x", 10)

    results = _run_concurrently(8, lambda _: ledger.transfer_guest_to_user("device-x", "3"))

    assert sum(1 for r in results if r.transferred) == 1
    assert ledger.get_account("user_3").pages_remaining == 10
    assert ledger.get_account("device-x").pages_remaining == 0


def test_concurrent_early_adopter_grants_respect_cap():
    ledger = _ledger(early_adopter_limit=30)

    results = _run_concurrently(
        45, lambda index: ledger.grant(f"user_ea{index}", f"ea{index}", True)
    )

    assert all(r.granted for r in results)
    assert sum(1 for r in results if r.early_adopter) == 30
    assert ledger.count_early_adopters() == 30


def test_concurrent_first_use_autovivifies_once():
    ledger = _ledger()

    results = _run_concurrently(5, lambda _: ledger.use_pages("device-new", 1).applied)

    assert results.count(True) == 2
    assert ledger.get_account("device-new").pages_remaining == 0
