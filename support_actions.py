"""Administrator support actions recorded in their own idempotency ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

import metrics as ledger_metrics
from core.constants import (
    ACCOUNT_STATUSES,
    ACTION_APPLIED,
    ACTION_FAILED,
    ACTION_GRANT_PAGES,
    ACTION_PENDING,
    ACTION_REJECTED,
    ACTION_REVERSE_PAGES,
    ACTION_STATUS_CHANGE,
    REASON_CODES,
    TX_ADMIN_GRANT,
    TX_ADMIN_REVERSE,
)
from credits import CreditService
from ledger import Account, SupportActionRecord
from logging_utils import log_extra, mask_owner

log = logging.getLogger("support_actions")


class IdempotencyConflict(RuntimeError):
    """Raised when an idempotency key is reused while its first action is unresolved."""

    def __init__(self, idempotency_key: str, status: str):
        super().__init__(f"support action {idempotency_key} already recorded with status {status}")
        self.idempotency_key = idempotency_key
        self.status = status


class _SupportRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    admin_identifier: str = Field(..., min_length=1, max_length=200)
    target_owner_id: str = Field(..., min_length=1, max_length=200)
    idempotency_key: str = Field(..., min_length=1, max_length=200)
    reason_code: str
    reference_id: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("reason_code", mode="before")
    def _known_reason(cls, value: object) -> str:
        text = str(value or "").strip().upper()
        if text not in REASON_CODES:
            raise ValueError(f"reason_code must be one of {list(REASON_CODES)}")
        return text


class GrantPagesRequest(_SupportRequest):
    amount_pages: int = Field(..., ge=1)


class ReversePagesRequest(_SupportRequest):
    amount_pages: int = Field(..., ge=1)


class StatusChangeRequest(_SupportRequest):
    new_status: str

    @field_validator("new_status", mode="before")
    def _known_status(cls, value: object) -> str:
        text = str(value or "").strip().lower()
        if text not in ACCOUNT_STATUSES:
            raise ValueError(f"status must be one of {sorted(ACCOUNT_STATUSES)}")
        return text


@dataclass
class SupportActionResult:
    status: str
    record: SupportActionRecord
    idempotent: bool = False

    @property
    def applied(self) -> bool:
        return self.status == ACTION_APPLIED


class SupportActionService:
    """Wraps ``add``/``deduct``/``set_status`` with audit snapshots and idempotency keys."""

    def __init__(self, credits: CreditService):
        self.credits = credits
        self.storage = credits.storage
        self.max_pages = int(credits.settings.MAX_PAGES_PER_ACTION)

    def grant_pages(self, request: GrantPagesRequest) -> SupportActionResult:
        self._check_amount(request.amount_pages)

        def apply(_: Account) -> bool:
            self.credits.add(
                request.target_owner_id,
                request.amount_pages,
                transaction_type=TX_ADMIN_GRANT,
                idempotency_key=request.idempotency_key,
                reference=request.reference_id,
            )
            return True

        return self._run(request, ACTION_GRANT_PAGES, request.amount_pages, apply)

    def reverse_pages(self, request: ReversePagesRequest) -> SupportActionResult:
        self._check_amount(request.amount_pages)

        def apply(before: Account) -> bool:
            if before.pages_remaining < request.amount_pages:
                return False
            return self.credits.deduct(
                request.target_owner_id,
                request.amount_pages,
                transaction_type=TX_ADMIN_REVERSE,
                idempotency_key=request.idempotency_key,
                reference=request.reference_id,
            )

        return self._run(request, ACTION_REVERSE_PAGES, request.amount_pages, apply)

    def change_status(self, request: StatusChangeRequest) -> SupportActionResult:
        def apply(_: Account) -> bool:
            self.credits.set_status(request.target_owner_id, request.new_status)
            return True

        return self._run(request, ACTION_STATUS_CHANGE, None, apply)

    def get(self, idempotency_key: str) -> Optional[SupportActionRecord]:
        return self.storage.get_support_action(idempotency_key)

    # ------------------------------------------------------------------
    #   Internals
    # ------------------------------------------------------------------
    def _check_amount(self, amount: int) -> None:
        if amount > self.max_pages:
            raise ValueError(f"amount_pages must not exceed {self.max_pages}")

    def _existing(self, idempotency_key: str) -> Optional[SupportActionResult]:
        record = self.storage.get_support_action(idempotency_key)
        if record is None:
            return None
        if record.status in (ACTION_APPLIED, ACTION_REJECTED):
            return SupportActionResult(record.status, record, idempotent=True)
        raise IdempotencyConflict(idempotency_key, record.status)

    def _run(
        self,
        request: _SupportRequest,
        action_type: str,
        amount: Optional[int],
        apply: Callable[[Account], bool],
    ) -> SupportActionResult:
        key = request.idempotency_key
        existing = self._existing(key)
        if existing is not None:
            return existing

        before = self.storage.get_account(request.target_owner_id) or Account(
            owner_id=request.target_owner_id
        )
        record = SupportActionRecord(
            idempotency_key=key,
            admin_identifier=request.admin_identifier,
            target_owner_id=request.target_owner_id,
            action_type=action_type,
            reason_code=request.reason_code,
            status=ACTION_PENDING,
            amount_pages=amount,
            reference_id=request.reference_id,
            notes=request.notes,
            before_snapshot=before.snapshot(),
        )
        if not self.storage.insert_support_action(record):
            existing = self._existing(key)
            if existing is not None:
                return existing
            raise IdempotencyConflict(key, "unknown")

        try:
            applied = apply(before)
        except Exception as exc:
            self.storage.finalize_support_action(key, ACTION_FAILED, error=str(exc)[:500])
            self._report(record, ACTION_FAILED)
            raise

        after = self.storage.get_account(request.target_owner_id)
        status = ACTION_APPLIED if applied else ACTION_REJECTED
        error = None if applied else "insufficient balance"
        self.storage.finalize_support_action(
            key,
            status,
            after_snapshot=after.snapshot() if after else None,
            error=error,
        )
        self._report(record, status)
        final = self.storage.get_support_action(key) or record
        return SupportActionResult(status, final)

    def _report(self, record: SupportActionRecord, status: str) -> None:
        log.info(
            "support_action.%s",
            status,
            extra=log_extra(
                key=record.idempotency_key,
                action=record.action_type,
                admin=record.admin_identifier,
                owner=mask_owner(record.target_owner_id),
                amount=record.amount_pages,
                reason_code=record.reason_code,
            ),
        )
        try:
            ledger_metrics.record_support_action(record.action_type, status)
        except Exception as exc:  # noqa: BLE001 - metrics never affect a support action
            log.warning("support_action.metrics.failed", extra=log_extra(error=str(exc)))


__all__ = [
    "GrantPagesRequest",
    "IdempotencyConflict",
    "ReversePagesRequest",
    "StatusChangeRequest",
    "SupportActionResult",
    "SupportActionService",
]
