"""Page-credit service facade used by request handlers and background workers."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Sequence

import metrics as ledger_metrics
from core.constants import TX_PURCHASE, TX_REFUND
from core.settings import Settings
from ledger import Account, GrantResult, LedgerEntry, LedgerStorage, TransferResult
from logging_utils import log_extra, mask_owner
from owner import resolve_owner_id, temp_device_ids, user_owner_id

log = logging.getLogger("credits")


@dataclass
class SyncResult:
    """Outcome of the on-login account sync."""

    owner_id: str
    pages_remaining: int
    is_early_adopter: bool
    grant: GrantResult
    transfers: List[TransferResult] = field(default_factory=list)

    @property
    def pages_transferred(self) -> int:
        return sum(item.amount for item in self.transfers if item.transferred)


class CreditService:
    """Grant, debit, top-up, reversal and migration of page credits.

    Business refusals come back as plain values (``False``, ``GrantResult``
    with ``already_had``); database failures propagate unchanged.
    """

    def __init__(
        self,
        storage: LedgerStorage,
        settings: Optional[Settings] = None,
        *,
        record_metrics: bool = True,
    ) -> None:
        self.storage = storage
        self.settings = settings or Settings()
        self._record_metrics = record_metrics

    # ------------------------------------------------------------------
    #   Instrumentation
    # ------------------------------------------------------------------
    @contextmanager
    def _observe(self, op: str) -> Iterator[dict]:
        state = {"outcome": "ok"}
        started = time.monotonic()
        try:
            yield state
        except Exception:
            state["outcome"] = "error"
            raise
        finally:
            self._emit(op, state["outcome"], time.monotonic() - started)

    def _emit(self, op: str, outcome: str, duration: float) -> None:
        if not self._record_metrics:
            return
        try:
            ledger_metrics.record_operation(op, outcome, duration)
        except Exception as exc:  # noqa: BLE001 - metrics never affect a ledger result
            log.warning("credits.metrics.failed", extra=log_extra(op=op, error=str(exc)))

    def _pages(self, direction: str, pages: int) -> None:
        if not self._record_metrics:
            return
        try:
            ledger_metrics.record_pages(direction, pages)
        except Exception as exc:  # noqa: BLE001 - metrics never affect a ledger result
            log.warning("credits.metrics.failed", extra=log_extra(direction=direction, error=str(exc)))

    # ------------------------------------------------------------------
    #   Account store
    # ------------------------------------------------------------------
    def initialize_account(self, owner_id: str) -> Account:
        with self._observe("initialize_account"):
            return self.storage.initialize_account(owner_id)

    def get_account(self, owner_id: str) -> Optional[Account]:
        return self.storage.get_account(owner_id)

    def get_account_for(self, device_id: Optional[str], user_id: Optional[str] = None) -> Account:
        """Return the caller's account, creating a guest account on first sight."""

        owner_id = resolve_owner_id(device_id, user_id)
        account = self.storage.get_account(owner_id)
        if account is not None:
            return account
        return self.initialize_account(owner_id)

    def create_or_set(self, owner_id: str, pages_remaining: int) -> Account:
        with self._observe("create_or_set"):
            return self.storage.create_or_set(owner_id, pages_remaining)

    def set_status(self, owner_id: str, status: str) -> Account:
        with self._observe("set_status"):
            return self.storage.set_status(owner_id, status)

    def count_early_adopters(self) -> int:
        return self.storage.count_early_adopters()

    # ------------------------------------------------------------------
    #   Grants
    # ------------------------------------------------------------------
    def grant(self, owner_id: str, user_id: str, is_early_adopter: bool) -> GrantResult:
        with self._observe("grant") as state:
            result = self.storage.grant(owner_id, user_id, is_early_adopter)
            state["outcome"] = "applied" if result.granted else "already_had"
        self._pages("in", result.pages)
        return result

    def grant_signup_bonus(self, user_id: str) -> GrantResult:
        """Grant the one-time signup bonus, promoting to early adopter while the cap allows."""

        eligible = self.storage.count_early_adopters() < self.storage.policy.early_adopter_limit
        return self.grant(user_owner_id(user_id), str(user_id), eligible)

    # ------------------------------------------------------------------
    #   Debits and top-ups
    # ------------------------------------------------------------------
    def use(self, owner_id: str, count: int = 1, *, idempotency_key: Optional[str] = None) -> bool:
        with self._observe("use") as state:
            result = self.storage.use_pages(owner_id, count, idempotency_key=idempotency_key)
            state["outcome"] = "applied" if result.applied else result.reason
        if result.applied:
            self._pages("out", int(count))
        return result.applied or result.duplicate

    def use_for(
        self,
        device_id: Optional[str],
        user_id: Optional[str] = None,
        count: int = 1,
        *,
        idempotency_key: Optional[str] = None,
    ) -> bool:
        return self.use(resolve_owner_id(device_id, user_id), count, idempotency_key=idempotency_key)

    def add(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_PURCHASE,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Account:
        with self._observe("add") as state:
            result, account = self.storage.add_pages(
                owner_id,
                pages,
                transaction_type=transaction_type,
                idempotency_key=idempotency_key,
                reference=reference,
            )
            state["outcome"] = "applied" if result.applied else result.reason
        if result.applied:
            self._pages("in", int(pages))
        return account

    def deduct(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_REFUND,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> bool:
        with self._observe("deduct") as state:
            result = self.storage.deduct_pages(
                owner_id,
                pages,
                transaction_type=transaction_type,
                idempotency_key=idempotency_key,
                reference=reference,
            )
            state["outcome"] = "applied" if result.applied else result.reason
        if result.applied:
            self._pages("out", int(pages))
        return result.applied or result.duplicate

    # ------------------------------------------------------------------
    #   Migration
    # ------------------------------------------------------------------
    def transfer_guest_to_user(self, device_id: str, user_id: str) -> TransferResult:
        with self._observe("transfer") as state:
            result = self.storage.transfer_guest_to_user(device_id, user_id)
            if result.transferred:
                state["outcome"] = "applied"
            else:
                state["outcome"] = "already_done" if result.already_done else "nothing_to_transfer"
        return result

    def sync_account(
        self,
        device_id: Optional[str],
        user_id: str,
        temp_devices: Optional[Sequence[str]] = None,
    ) -> SyncResult:
        """Run the on-login flow: signup bonus, then migrate every known guest device."""

        owner_id = user_owner_id(user_id)
        grant = self.grant_signup_bonus(user_id)

        devices: List[str] = []
        if device_id and device_id != owner_id:
            devices.append(device_id)
        extra = (
            temp_devices
            if temp_devices is not None
            else temp_device_ids(user_id, self.settings.temp_device_prefixes)
        )
        for candidate in extra:
            if candidate and candidate not in devices and candidate != owner_id:
                devices.append(candidate)

        transfers = [self.transfer_guest_to_user(device, user_id) for device in devices]
        account = self.storage.get_account(owner_id) or self.initialize_account(owner_id)
        log.info(
            "credits.sync.done",
            extra=log_extra(
                owner=mask_owner(owner_id),
                devices=len(devices),
                granted=grant.granted,
                pages=account.pages_remaining,
            ),
        )
        return SyncResult(
            owner_id=owner_id,
            pages_remaining=account.pages_remaining,
            is_early_adopter=account.is_early_adopter,
            grant=grant,
            transfers=transfers,
        )

    # ------------------------------------------------------------------
    #   Audit
    # ------------------------------------------------------------------
    def history(self, owner_id: str, limit: int = 50) -> List[LedgerEntry]:
        return self.storage.history(owner_id, limit)

    def get_entry(self, transaction_id: str) -> Optional[LedgerEntry]:
        return self.storage.get_entry(transaction_id)

    def ping(self) -> bool:
        return bool(self.storage.ping())


def build_service(settings: Optional[Settings] = None, **kwargs: Any) -> CreditService:
    """Create a :class:`CreditService` over the backend named in settings."""

    cfg = settings or Settings()
    return CreditService(LedgerStorage.from_settings(cfg), cfg, **kwargs)


__all__ = ["CreditService", "SyncResult", "build_service"]
