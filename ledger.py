# -*- coding: utf-8 -*-
"""Persistent page-credit ledger: accounts, append-only entries and support actions."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

import psycopg
from psycopg_pool import ConnectionPool

from core.constants import (
    ACCOUNT_STATUSES,
    EARLY_ADOPTER_LOCK_KEY,
    GRANT_TYPES,
    REVERSAL_TYPES,
    STATUS_ACTIVE,
    TOP_UP_TYPES,
    TX_ADMIN_GRANT,
    TX_ADMIN_REVERSE,
    TX_EARLY_ADOPTER,
    TX_GUEST_TRANSFER,
    TX_PURCHASE,
    TX_REFUND,
    TX_REGISTRATION_BONUS,
    TX_USE,
)
from core.db.postgres import create_connection_pool, mask_dsn, normalize_dsn
from core.db.retry import with_db_retries
from core.settings import Settings
from logging_utils import log_extra, mask_owner
from owner import is_user_owner, user_id_from_owner, user_owner_id

log = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerUnavailable(RuntimeError):
    """Raised when no ledger backend can be configured or started."""


# ----------------------------------------------------------------------
#   Domain records
# ----------------------------------------------------------------------
@dataclass
class Account:
    owner_id: str
    user_id: Optional[str] = None
    pages_remaining: int = 0
    total_pages_used: int = 0
    free_allocation: int = 0
    is_early_adopter: bool = False
    status: str = STATUS_ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "pages_remaining": self.pages_remaining,
            "total_pages_used": self.total_pages_used,
            "status": self.status,
            "is_early_adopter": self.is_early_adopter,
        }


@dataclass(frozen=True)
class BonusGrantMeta:
    kind: ClassVar[str] = "grant"
    early_adopter_requested: bool = False
    early_adopter: bool = False


@dataclass(frozen=True)
class GuestTransferMeta:
    kind: ClassVar[str] = "guest_transfer"
    guest_device_id: str = ""
    original_guest_pages: int = 0
    free_guest_pages: int = 0
    transferred_amount: int = 0
    nothing_to_transfer: bool = False


@dataclass(frozen=True)
class UsageMeta:
    kind: ClassVar[str] = "use"
    count: int = 0
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class TopUpMeta:
    kind: ClassVar[str] = "top_up"
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class ReversalMeta:
    kind: ClassVar[str] = "reversal"
    reference: Optional[str] = None
    idempotency_key: Optional[str] = None


EntryMeta = Union[BonusGrantMeta, GuestTransferMeta, UsageMeta, TopUpMeta, ReversalMeta]

_META_BY_TYPE: Dict[str, type] = {
    TX_REGISTRATION_BONUS: BonusGrantMeta,
    TX_EARLY_ADOPTER: BonusGrantMeta,
    TX_GUEST_TRANSFER: GuestTransferMeta,
    TX_USE: UsageMeta,
    TX_PURCHASE: TopUpMeta,
    TX_ADMIN_GRANT: TopUpMeta,
    TX_REFUND: ReversalMeta,
    TX_ADMIN_REVERSE: ReversalMeta,
}


def encode_entry_meta(meta: EntryMeta) -> Dict[str, Any]:
    return asdict(meta)


def decode_entry_meta(transaction_type: str, raw: Any) -> EntryMeta:
    """Rebuild the metadata variant for ``transaction_type`` from stored JSON."""

    meta_cls = _META_BY_TYPE.get(transaction_type)
    if meta_cls is None:
        raise ValueError(f"unknown transaction type: {transaction_type}")
    if isinstance(raw, (str, bytes)):
        raw = json.loads(raw or "{}")
    data = dict(raw or {})
    known = {item.name for item in fields(meta_cls)}
    return meta_cls(**{key: value for key, value in data.items() if key in known})


@dataclass
class LedgerEntry:
    transaction_id: str
    owner_id: str
    transaction_type: str
    pages_amount: int
    pages_before: int
    pages_after: int
    metadata: EntryMeta
    user_id: Optional[str] = None
    source_owner_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class GrantResult:
    granted: bool
    pages: int
    already_had: bool
    early_adopter: bool = False


@dataclass
class TransferResult:
    transferred: bool
    amount: int
    already_done: bool = False


@dataclass
class LedgerOpResult:
    """Result of a balance operation."""

    applied: bool
    balance: int
    op_id: str
    reason: str
    old_balance: int
    duplicate: bool = False


@dataclass
class SupportActionRecord:
    idempotency_key: str
    admin_identifier: str
    target_owner_id: str
    action_type: str
    reason_code: str
    status: str
    amount_pages: Optional[int] = None
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    before_snapshot: Dict[str, Any] = field(default_factory=dict)
    after_snapshot: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerPolicy:
    """Business constants the ledger applies when creating and granting balances."""

    guest_free_pages: int = 2
    default_signup_pages: int = 2
    early_adopter_pages: int = 50
    early_adopter_limit: int = 30

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerPolicy":
        return cls(
            guest_free_pages=int(settings.GUEST_FREE_PAGES),
            default_signup_pages=int(settings.DEFAULT_SIGNUP_PAGES),
            early_adopter_pages=int(settings.EARLY_ADOPTER_PAGES),
            early_adopter_limit=int(settings.EARLY_ADOPTER_LIMIT),
        )


def grant_transaction_id(user_id: str) -> str:
    return f"grant:{user_id}"


def transfer_transaction_id(device_id: str, user_id: str) -> str:
    return f"transfer:{user_id}:{device_id}"


def keyed_transaction_id(transaction_type: str, owner_id: str, idempotency_key: Optional[str]) -> str:
    if idempotency_key:
        return f"{transaction_type}:{owner_id}:{idempotency_key}"
    return f"{transaction_type}:{uuid.uuid4().hex}"


def _positive(value: int, name: str) -> int:
    amount = int(value)
    if amount <= 0:
        raise ValueError(f"{name} must be positive, got {amount}")
    return amount


def _check_status(status: str) -> str:
    if status not in ACCOUNT_STATUSES:
        raise ValueError(f"unknown account status: {status}")
    return status


def _check_type(transaction_type: str, allowed: frozenset) -> str:
    if transaction_type not in allowed:
        raise ValueError(
            f"transaction type {transaction_type!r} not allowed here, expected one of {sorted(allowed)}"
        )
    return transaction_type


class _LedgerHelpers:
    """Utility helpers shared by ledger backends."""

    policy: LedgerPolicy

    def _free_allocation(self, owner_id: str) -> int:
        """Guest baseline snapshotted on a new row; user accounts hold none."""

        if is_user_owner(owner_id):
            return 0
        return int(self.policy.guest_free_pages)

    @staticmethod
    def _json_meta(meta: EntryMeta) -> str:
        return json.dumps(encode_entry_meta(meta), ensure_ascii=False, sort_keys=True)

    @staticmethod
    def _log_operation(
        op_type: str,
        owner_id: str,
        op_id: str,
        amount: int,
        old_balance: int,
        new_balance: int,
        **fields_: Any,
    ) -> None:
        log.info(
            "ledger.%s.applied",
            op_type,
            extra=log_extra(
                owner=mask_owner(owner_id),
                op_id=op_id,
                amount=amount,
                old=old_balance,
                new=new_balance,
                **fields_,
            ),
        )

    @staticmethod
    def _log_refusal(op_type: str, owner_id: str, reason: str, **fields_: Any) -> None:
        log.info(
            "ledger.%s.refused",
            op_type,
            extra=log_extra(owner=mask_owner(owner_id), reason=reason, **fields_),
        )


# ----------------------------------------------------------------------
#   SQL
# ----------------------------------------------------------------------
_ACCOUNT_COLUMNS = (
    "owner_id, user_id, pages_remaining, total_pages_used, free_allocation, "
    "is_early_adopter, status, created_at, updated_at"
)
_ENTRY_COLUMNS = (
    "transaction_id, owner_id, source_owner_id, user_id, transaction_type, "
    "pages_amount, pages_before, pages_after, metadata, created_at"
)
_SUPPORT_COLUMNS = (
    "idempotency_key, admin_identifier, target_owner_id, action_type, reason_code, status, "
    "amount_pages, reference_id, notes, before_snapshot, after_snapshot, error, created_at, updated_at"
)

_GRANT_TYPES_SQL = ", ".join(f"'{name}'" for name in sorted(GRANT_TYPES))

DDL_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS page_credits (
        owner_id TEXT PRIMARY KEY,
        user_id TEXT,
        pages_remaining INTEGER NOT NULL DEFAULT 0 CHECK (pages_remaining >= 0),
        total_pages_used INTEGER NOT NULL DEFAULT 0 CHECK (total_pages_used >= 0),
        free_allocation INTEGER NOT NULL DEFAULT 0 CHECK (free_allocation >= 0),
        is_early_adopter BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'on_hold', 'suspended')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_page_credits_user_id ON page_credits(user_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_page_credits_early_adopter
        ON page_credits(is_early_adopter) WHERE is_early_adopter
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_transactions (
        id BIGSERIAL PRIMARY KEY,
        transaction_id TEXT NOT NULL UNIQUE,
        owner_id TEXT NOT NULL,
        source_owner_id TEXT,
        user_id TEXT,
        transaction_type TEXT NOT NULL,
        pages_amount INTEGER NOT NULL,
        pages_before INTEGER NOT NULL,
        pages_after INTEGER NOT NULL,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"""
    CREATE UNIQUE INDEX IF NOT EXISTS uq_credit_transactions_grant_user
        ON credit_transactions(user_id)
        WHERE transaction_type IN ({_GRANT_TYPES_SQL})
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_credit_transactions_guest_transfer
        ON credit_transactions(source_owner_id, user_id)
        WHERE transaction_type = 'guest_transfer'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_credit_transactions_owner_created
        ON credit_transactions(owner_id, created_at DESC)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_credit_transactions_source_owner
        ON credit_transactions(source_owner_id) WHERE source_owner_id IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS support_actions (
        id BIGSERIAL PRIMARY KEY,
        idempotency_key TEXT NOT NULL UNIQUE,
        admin_identifier TEXT NOT NULL,
        target_owner_id TEXT NOT NULL,
        action_type TEXT NOT NULL
            CHECK (action_type IN ('grant_pages', 'reverse_pages', 'status_change')),
        reason_code TEXT NOT NULL,
        status TEXT NOT NULL
            CHECK (status IN ('pending', 'applied', 'rejected', 'failed')),
        amount_pages INTEGER,
        reference_id TEXT,
        notes TEXT,
        before_snapshot JSONB NOT NULL DEFAULT '{}'::jsonb,
        after_snapshot JSONB,
        error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_support_actions_target
        ON support_actions(target_owner_id, created_at DESC)
    """,
)

SQL_PING = "SELECT 1"
SQL_ADVISORY_LOCK = "SELECT pg_advisory_xact_lock(hashtext(%s))"
SQL_SELECT_ACCOUNT = f"SELECT {_ACCOUNT_COLUMNS} FROM page_credits WHERE owner_id = %s"
SQL_LOCK_ACCOUNT = SQL_SELECT_ACCOUNT + " FOR UPDATE"
SQL_INSERT_ACCOUNT = (
    "INSERT INTO page_credits (owner_id, user_id, pages_remaining, free_allocation) "
    "VALUES (%s, %s, %s, %s) ON CONFLICT (owner_id) DO NOTHING"
)
SQL_UPDATE_ACCOUNT = (
    "UPDATE page_credits SET pages_remaining = %s, total_pages_used = %s, user_id = %s, "
    "is_early_adopter = %s, status = %s, updated_at = now() "
    f"WHERE owner_id = %s RETURNING {_ACCOUNT_COLUMNS}"
)
SQL_COUNT_EARLY_ADOPTERS = "SELECT COUNT(*) FROM page_credits WHERE is_early_adopter"
SQL_GRANT_EXISTS = (
    "SELECT transaction_id FROM credit_transactions WHERE user_id = %s "
    f"AND transaction_type IN ({_GRANT_TYPES_SQL}) LIMIT 1"
)
SQL_TRANSFER_EXISTS = (
    "SELECT transaction_id FROM credit_transactions WHERE source_owner_id = %s "
    "AND user_id = %s AND transaction_type = 'guest_transfer' LIMIT 1"
)
SQL_ENTRY_EXISTS = "SELECT 1 FROM credit_transactions WHERE transaction_id = %s"
SQL_INSERT_ENTRY = (
    "INSERT INTO credit_transactions (transaction_id, owner_id, source_owner_id, user_id, "
    "transaction_type, pages_amount, pages_before, pages_after, metadata) "
    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb) RETURNING created_at"
)
SQL_SELECT_ENTRY = f"SELECT {_ENTRY_COLUMNS} FROM credit_transactions WHERE transaction_id = %s"
SQL_HISTORY = (
    f"SELECT {_ENTRY_COLUMNS} FROM credit_transactions "
    "WHERE owner_id = %s OR source_owner_id = %s ORDER BY created_at DESC, id DESC LIMIT %s"
)
SQL_SELECT_SUPPORT_ACTION = (
    f"SELECT {_SUPPORT_COLUMNS} FROM support_actions WHERE idempotency_key = %s"
)
SQL_INSERT_SUPPORT_ACTION = (
    "INSERT INTO support_actions (idempotency_key, admin_identifier, target_owner_id, "
    "action_type, reason_code, status, amount_pages, reference_id, notes, before_snapshot, "
    "after_snapshot, error) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s) "
    "ON CONFLICT (idempotency_key) DO NOTHING RETURNING id"
)
SQL_FINALIZE_SUPPORT_ACTION = (
    "UPDATE support_actions SET status = %s, after_snapshot = %s::jsonb, error = %s, "
    "updated_at = now() WHERE idempotency_key = %s"
)


def _account_from_row(row: Sequence[Any]) -> Account:
    return Account(
        owner_id=row[0],
        user_id=row[1],
        pages_remaining=int(row[2]),
        total_pages_used=int(row[3]),
        free_allocation=int(row[4]),
        is_early_adopter=bool(row[5]),
        status=row[6],
        created_at=row[7],
        updated_at=row[8],
    )


def _entry_from_row(row: Sequence[Any]) -> LedgerEntry:
    return LedgerEntry(
        transaction_id=row[0],
        owner_id=row[1],
        source_owner_id=row[2],
        user_id=row[3],
        transaction_type=row[4],
        pages_amount=int(row[5]),
        pages_before=int(row[6]),
        pages_after=int(row[7]),
        metadata=decode_entry_meta(row[4], row[8]),
        created_at=row[9],
    )


def _json_or_none(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _support_from_row(row: Sequence[Any]) -> SupportActionRecord:
    return SupportActionRecord(
        idempotency_key=row[0],
        admin_identifier=row[1],
        target_owner_id=row[2],
        action_type=row[3],
        reason_code=row[4],
        status=row[5],
        amount_pages=None if row[6] is None else int(row[6]),
        reference_id=row[7],
        notes=row[8],
        before_snapshot=dict(_load_json(row[9]) or {}),
        after_snapshot=_load_json(row[10]),
        error=row[11],
        created_at=row[12],
        updated_at=row[13],
    )


class _PostgresLedgerStorage(_LedgerHelpers):
    """Ledger-backed page credit storage with row and advisory locking."""

    def __init__(
        self,
        dsn: str,
        *,
        policy: Optional[LedgerPolicy] = None,
        settings: Optional[Settings] = None,
    ):
        if not dsn:
            raise LedgerUnavailable("DATABASE_URL is required for ledger storage")
        self._settings = settings or Settings()
        self._dsn = normalize_dsn(dsn, sslmode=self._settings.PG_SSLMODE)
        self.policy = policy or LedgerPolicy.from_settings(self._settings)
        self.log = log
        self._pool: Optional[ConnectionPool] = None
        self._pool_lock = threading.RLock()

    # ------------------------------------------------------------------
    #   Lifecycle helpers
    # ------------------------------------------------------------------
    def start(self) -> None:
        cfg = self._settings
        with self._pool_lock:
            if self._pool is not None:
                return
            self._pool = create_connection_pool(
                self._dsn,
                application_name=cfg.PG_APPLICATION_NAME,
                min_size=cfg.PG_POOL_MIN,
                max_size=cfg.PG_POOL_MAX,
                max_idle=float(cfg.PG_POOL_MAX_IDLE),
                timeout=cfg.PG_POOL_TIMEOUT,
                statement_timeout_ms=cfg.PG_STATEMENT_TIMEOUT_MS,
                sslmode=cfg.PG_SSLMODE,
            )
        self.log.info(
            "ledger.pool.started",
            extra=log_extra(
                dsn=mask_dsn(self._dsn),
                min_size=cfg.PG_POOL_MIN,
                max_size=cfg.PG_POOL_MAX,
            ),
        )
        self._prepare()

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if not pool:
            return
        try:
            pool.close(timeout=5)
        except Exception as exc:  # pragma: no cover - shutdown path
            self.log.warning("ledger.pool.close_failed", extra=log_extra(error=str(exc)))
        else:
            self.log.info("ledger.pool.closed")

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _ensure_pool(self) -> ConnectionPool:
        if self._pool is None:
            self.start()
        if self._pool is None:
            raise LedgerUnavailable("Postgres connection pool is not available")
        return self._pool

    def _with_connection(
        self,
        fn: Callable[[psycopg.Connection], T],
        *,
        op: str,
        **ctx: Any,
    ) -> T:
        def attempt() -> T:
            pool = self._ensure_pool()
            with pool.connection() as conn:
                return fn(conn)

        return with_db_retries(
            attempt,
            attempts=self._settings.DB_RETRY_ATTEMPTS,
            backoff=self._settings.DB_RETRY_BACKOFF,
            logger=self.log,
            context={"op": op, **ctx},
        )

    def _prepare(self) -> None:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    for statement in DDL_STATEMENTS:
                        cur.execute(statement)

        self._with_connection(operation, op="prepare")
        self.log.info("ledger.schema.ready")

    def _ensure_account(self, cur: Any, owner_id: str, pages: int) -> None:
        cur.execute(
            SQL_INSERT_ACCOUNT,
            (owner_id, user_id_from_owner(owner_id), int(pages), self._free_allocation(owner_id)),
        )

    @staticmethod
    def _lock_account(cur: Any, owner_id: str) -> Optional[Account]:
        cur.execute(SQL_LOCK_ACCOUNT, (owner_id,))
        row = cur.fetchone()
        return _account_from_row(row) if row else None

    def _lock_or_create(self, cur: Any, owner_id: str, pages: int) -> Account:
        self._ensure_account(cur, owner_id, pages)
        account = self._lock_account(cur, owner_id)
        if account is None:
            raise LedgerUnavailable(f"account row {mask_owner(owner_id)} vanished inside its transaction")
        return account

    @staticmethod
    def _write_account(cur: Any, account: Account) -> Account:
        cur.execute(
            SQL_UPDATE_ACCOUNT,
            (
                account.pages_remaining,
                account.total_pages_used,
                account.user_id,
                account.is_early_adopter,
                account.status,
                account.owner_id,
            ),
        )
        row = cur.fetchone()
        return _account_from_row(row) if row else account

    def _insert_entry(self, cur: Any, entry: LedgerEntry) -> None:
        cur.execute(
            SQL_INSERT_ENTRY,
            (
                entry.transaction_id,
                entry.owner_id,
                entry.source_owner_id,
                entry.user_id,
                entry.transaction_type,
                entry.pages_amount,
                entry.pages_before,
                entry.pages_after,
                self._json_meta(entry.metadata),
            ),
        )
        cur.fetchone()

    @staticmethod
    def _entry_exists(cur: Any, transaction_id: str) -> bool:
        cur.execute(SQL_ENTRY_EXISTS, (transaction_id,))
        return cur.fetchone() is not None

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_PING)
                    cur.fetchone()

        try:
            self._with_connection(operation, op="ping")
            return True
        except Exception:
            log.exception("ledger.ping.failed")
            return False

    def get_account(self, owner_id: str) -> Optional[Account]:
        def operation(conn: psycopg.Connection) -> Optional[Account]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_SELECT_ACCOUNT, (owner_id,))
                    row = cur.fetchone()
                    return _account_from_row(row) if row else None

        return self._with_connection(operation, op="get_account", owner=mask_owner(owner_id))

    def initialize_account(self, owner_id: str) -> Account:
        guest_pages = self.policy.guest_free_pages

        def operation(conn: psycopg.Connection) -> Account:
            with conn.transaction():
                with conn.cursor() as cur:
                    self._ensure_account(cur, owner_id, guest_pages)
                    cur.execute(SQL_SELECT_ACCOUNT, (owner_id,))
                    return _account_from_row(cur.fetchone())

        return self._with_connection(
            operation, op="initialize_account", owner=mask_owner(owner_id)
        )

    def create_or_set(self, owner_id: str, pages_remaining: int) -> Account:
        pages = int(pages_remaining)
        if pages < 0:
            raise ValueError("pages_remaining must not be negative")

        def operation(conn: psycopg.Connection) -> Account:
            with conn.transaction():
                with conn.cursor() as cur:
                    account = self._lock_or_create(cur, owner_id, pages)
                    return self._write_account(cur, replace(account, pages_remaining=pages))

        return self._with_connection(operation, op="create_or_set", owner=mask_owner(owner_id))

    def set_status(self, owner_id: str, status: str) -> Account:
        _check_status(status)
        guest_pages = self.policy.guest_free_pages

        def operation(conn: psycopg.Connection) -> Account:
            with conn.transaction():
                with conn.cursor() as cur:
                    account = self._lock_or_create(cur, owner_id, guest_pages)
                    return self._write_account(cur, replace(account, status=status))

        result = self._with_connection(
            operation, op="set_status", owner=mask_owner(owner_id), status=status
        )
        self.log.info(
            "ledger.status.changed",
            extra=log_extra(owner=mask_owner(owner_id), status=status),
        )
        return result

    def count_early_adopters(self) -> int:
        def operation(conn: psycopg.Connection) -> int:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_COUNT_EARLY_ADOPTERS)
                    row = cur.fetchone()
                    return int(row[0]) if row else 0

        return self._with_connection(operation, op="count_early_adopters")

    def grant(self, owner_id: str, user_id: str, is_early_adopter: bool) -> GrantResult:
        user_id = str(user_id)
        policy = self.policy
        op_id = grant_transaction_id(user_id)

        def operation(conn: psycopg.Connection) -> Tuple[GrantResult, int, int]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_ADVISORY_LOCK, (user_id,))
                    cur.execute(SQL_GRANT_EXISTS, (user_id,))
                    if cur.fetchone():
                        return GrantResult(False, 0, True), 0, 0

                    early = False
                    if is_early_adopter:
                        cur.execute(SQL_ADVISORY_LOCK, (EARLY_ADOPTER_LOCK_KEY,))
                        cur.execute(SQL_COUNT_EARLY_ADOPTERS)
                        row = cur.fetchone()
                        early = (int(row[0]) if row else 0) < policy.early_adopter_limit
                    pages = policy.early_adopter_pages if early else policy.default_signup_pages
                    tx_type = TX_EARLY_ADOPTER if early else TX_REGISTRATION_BONUS

                    account = self._lock_or_create(cur, owner_id, 0)
                    updated = self._write_account(
                        cur,
                        replace(
                            account,
                            pages_remaining=account.pages_remaining + pages,
                            user_id=account.user_id or str(user_id),
                            is_early_adopter=account.is_early_adopter or early,
                        ),
                    )
                    self._insert_entry(
                        cur,
                        LedgerEntry(
                            transaction_id=op_id,
                            owner_id=owner_id,
                            user_id=str(user_id),
                            transaction_type=tx_type,
                            pages_amount=pages,
                            pages_before=account.pages_remaining,
                            pages_after=updated.pages_remaining,
                            metadata=BonusGrantMeta(
                                early_adopter_requested=bool(is_early_adopter),
                                early_adopter=early,
                            ),
                        ),
                    )
                    return (
                        GrantResult(True, pages, False, early),
                        account.pages_remaining,
                        updated.pages_remaining,
                    )

        result, old_balance, new_balance = self._with_connection(
            operation, op="grant", owner=mask_owner(owner_id), op_id=op_id
        )
        if result.granted:
            self._log_operation(
                "grant", owner_id, op_id, result.pages, old_balance, new_balance,
                early_adopter=result.early_adopter,
            )
        else:
            self._log_refusal("grant", owner_id, "already_granted", op_id=op_id)
        return result

    def use_pages(
        self, owner_id: str, count: int = 1, *, idempotency_key: Optional[str] = None
    ) -> LedgerOpResult:
        count = _positive(count, "count")
        guest_pages = self.policy.guest_free_pages
        op_id = keyed_transaction_id(TX_USE, owner_id, idempotency_key)

        def operation(conn: psycopg.Connection) -> LedgerOpResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    account = self._lock_or_create(cur, owner_id, guest_pages)
                    balance = account.pages_remaining
                    if idempotency_key and self._entry_exists(cur, op_id):
                        return LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True)
                    if account.status != STATUS_ACTIVE:
                        return LedgerOpResult(False, balance, op_id, account.status, balance)
                    if balance < count:
                        return LedgerOpResult(False, balance, op_id, "insufficient", balance)
                    updated = self._write_account(
                        cur,
                        replace(
                            account,
                            pages_remaining=balance - count,
                            total_pages_used=account.total_pages_used + count,
                        ),
                    )
                    self._insert_entry(
                        cur,
                        LedgerEntry(
                            transaction_id=op_id,
                            owner_id=owner_id,
                            user_id=account.user_id,
                            transaction_type=TX_USE,
                            pages_amount=-count,
                            pages_before=balance,
                            pages_after=updated.pages_remaining,
                            metadata=UsageMeta(count=count, idempotency_key=idempotency_key),
                        ),
                    )
                    return LedgerOpResult(True, updated.pages_remaining, op_id, TX_USE, balance)

        result = self._with_connection(
            operation, op="use", owner=mask_owner(owner_id), count=count
        )
        self._report(TX_USE, owner_id, -count, result)
        return result

    def add_pages(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_PURCHASE,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Tuple[LedgerOpResult, Account]:
        pages = _positive(pages, "pages")
        _check_type(transaction_type, TOP_UP_TYPES)
        op_id = keyed_transaction_id(transaction_type, owner_id, idempotency_key)

        def operation(conn: psycopg.Connection) -> Tuple[LedgerOpResult, Account]:
            with conn.transaction():
                with conn.cursor() as cur:
                    account = self._lock_or_create(cur, owner_id, 0)
                    balance = account.pages_remaining
                    if idempotency_key and self._entry_exists(cur, op_id):
                        return (
                            LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True),
                            account,
                        )
                    updated = self._write_account(
                        cur, replace(account, pages_remaining=balance + pages)
                    )
                    self._insert_entry(
                        cur,
                        LedgerEntry(
                            transaction_id=op_id,
                            owner_id=owner_id,
                            user_id=account.user_id,
                            transaction_type=transaction_type,
                            pages_amount=pages,
                            pages_before=balance,
                            pages_after=updated.pages_remaining,
                            metadata=TopUpMeta(reference=reference, idempotency_key=idempotency_key),
                        ),
                    )
                    return (
                        LedgerOpResult(True, updated.pages_remaining, op_id, transaction_type, balance),
                        updated,
                    )

        result, account = self._with_connection(
            operation, op="add", owner=mask_owner(owner_id), pages=pages
        )
        self._report(transaction_type, owner_id, pages, result)
        return result, account

    def deduct_pages(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_REFUND,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> LedgerOpResult:
        pages = _positive(pages, "pages")
        _check_type(transaction_type, REVERSAL_TYPES)
        op_id = keyed_transaction_id(transaction_type, owner_id, idempotency_key)

        def operation(conn: psycopg.Connection) -> LedgerOpResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    account = self._lock_account(cur, owner_id)
                    if account is None:
                        return LedgerOpResult(False, 0, op_id, "missing", 0)
                    balance = account.pages_remaining
                    if idempotency_key and self._entry_exists(cur, op_id):
                        return LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True)
                    if balance < pages:
                        return LedgerOpResult(False, balance, op_id, "insufficient", balance)
                    updated = self._write_account(
                        cur, replace(account, pages_remaining=balance - pages)
                    )
                    self._insert_entry(
                        cur,
                        LedgerEntry(
                            transaction_id=op_id,
                            owner_id=owner_id,
                            user_id=account.user_id,
                            transaction_type=transaction_type,
                            pages_amount=-pages,
                            pages_before=balance,
                            pages_after=updated.pages_remaining,
                            metadata=ReversalMeta(reference=reference, idempotency_key=idempotency_key),
                        ),
                    )
                    return LedgerOpResult(True, updated.pages_remaining, op_id, transaction_type, balance)

        result = self._with_connection(
            operation, op="deduct", owner=mask_owner(owner_id), pages=pages
        )
        self._report(transaction_type, owner_id, -pages, result)
        return result

    def transfer_guest_to_user(self, device_id: str, user_id: str) -> TransferResult:
        user_id = str(user_id)
        if is_user_owner(device_id):
            raise ValueError("guest transfers must originate from a device id, not a user owner")
        user_owner = user_owner_id(user_id)
        op_id = transfer_transaction_id(device_id, user_id)
        default_free = self.policy.guest_free_pages

        def operation(conn: psycopg.Connection) -> TransferResult:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_ADVISORY_LOCK, (str(user_id),))
                    cur.execute(SQL_TRANSFER_EXISTS, (device_id, str(user_id)))
                    if cur.fetchone():
                        return TransferResult(False, 0, already_done=True)

                    guest = self._lock_account(cur, device_id)
                    guest_pages = guest.pages_remaining if guest else 0
                    free_pages = guest.free_allocation if guest else default_free
                    excess = max(0, guest_pages - free_pages)

                    if guest is None or excess <= 0:
                        if guest is not None:
                            self._write_account(
                                cur,
                                replace(guest, pages_remaining=0, user_id=guest.user_id or str(user_id)),
                            )
                        cur.execute(SQL_SELECT_ACCOUNT, (user_owner,))
                        row = cur.fetchone()
                        user_balance = int(row[2]) if row else 0
                        self._insert_entry(
                            cur,
                            LedgerEntry(
                                transaction_id=op_id,
                                owner_id=user_owner,
                                source_owner_id=device_id,
                                user_id=str(user_id),
                                transaction_type=TX_GUEST_TRANSFER,
                                pages_amount=0,
                                pages_before=user_balance,
                                pages_after=user_balance,
                                metadata=GuestTransferMeta(
                                    guest_device_id=device_id,
                                    original_guest_pages=guest_pages,
                                    free_guest_pages=free_pages,
                                    nothing_to_transfer=True,
                                ),
                            ),
                        )
                        return TransferResult(False, 0)

                    target = self._lock_or_create(cur, user_owner, 0)
                    updated = self._write_account(
                        cur,
                        replace(
                            target,
                            pages_remaining=target.pages_remaining + excess,
                            user_id=target.user_id or str(user_id),
                        ),
                    )
                    self._write_account(
                        cur,
                        replace(guest, pages_remaining=0, user_id=guest.user_id or str(user_id)),
                    )
                    self._insert_entry(
                        cur,
                        LedgerEntry(
                            transaction_id=op_id,
                            owner_id=user_owner,
                            source_owner_id=device_id,
                            user_id=str(user_id),
                            transaction_type=TX_GUEST_TRANSFER,
                            pages_amount=excess,
                            pages_before=target.pages_remaining,
                            pages_after=updated.pages_remaining,
                            metadata=GuestTransferMeta(
                                guest_device_id=device_id,
                                original_guest_pages=guest_pages,
                                free_guest_pages=free_pages,
                                transferred_amount=excess,
                            ),
                        ),
                    )
                    return TransferResult(True, excess)

        result = self._with_connection(
            operation,
            op="transfer_guest_to_user",
            device=mask_owner(device_id),
            owner=mask_owner(user_owner),
        )
        if result.transferred:
            self._log_operation(
                "transfer", user_owner, op_id, result.amount, 0, 0, device=mask_owner(device_id)
            )
        else:
            self._log_refusal(
                "transfer",
                user_owner,
                "already_done" if result.already_done else "nothing_to_transfer",
                device=mask_owner(device_id),
            )
        return result

    def get_entry(self, transaction_id: str) -> Optional[LedgerEntry]:
        def operation(conn: psycopg.Connection) -> Optional[LedgerEntry]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_SELECT_ENTRY, (transaction_id,))
                    row = cur.fetchone()
                    return _entry_from_row(row) if row else None

        return self._with_connection(operation, op="get_entry", op_id=transaction_id)

    def history(self, owner_id: str, limit: int = 50) -> List[LedgerEntry]:
        def operation(conn: psycopg.Connection) -> List[LedgerEntry]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_HISTORY, (owner_id, owner_id, max(int(limit), 1)))
                    return [_entry_from_row(row) for row in cur.fetchall()]

        return self._with_connection(operation, op="history", owner=mask_owner(owner_id))

    # ------------------------------------------------------------------
    #   Support actions
    # ------------------------------------------------------------------
    def get_support_action(self, idempotency_key: str) -> Optional[SupportActionRecord]:
        def operation(conn: psycopg.Connection) -> Optional[SupportActionRecord]:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SQL_SELECT_SUPPORT_ACTION, (idempotency_key,))
                    row = cur.fetchone()
                    return _support_from_row(row) if row else None

        return self._with_connection(operation, op="get_support_action", key=idempotency_key)

    def insert_support_action(self, record: SupportActionRecord) -> bool:
        def operation(conn: psycopg.Connection) -> bool:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        SQL_INSERT_SUPPORT_ACTION,
                        (
                            record.idempotency_key,
                            record.admin_identifier,
                            record.target_owner_id,
                            record.action_type,
                            record.reason_code,
                            record.status,
                            record.amount_pages,
                            record.reference_id,
                            record.notes,
                            _json_or_none(record.before_snapshot) or "{}",
                            _json_or_none(record.after_snapshot),
                            record.error,
                        ),
                    )
                    return cur.fetchone() is not None

        return self._with_connection(
            operation, op="insert_support_action", key=record.idempotency_key
        )

    def finalize_support_action(
        self,
        idempotency_key: str,
        status: str,
        *,
        after_snapshot: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        def operation(conn: psycopg.Connection) -> None:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        SQL_FINALIZE_SUPPORT_ACTION,
                        (status, _json_or_none(after_snapshot), error, idempotency_key),
                    )

        self._with_connection(
            operation, op="finalize_support_action", key=idempotency_key, status=status
        )

    def _report(self, op: str, owner_id: str, amount: int, result: LedgerOpResult) -> None:
        if result.applied:
            self._log_operation(op, owner_id, result.op_id, amount, result.old_balance, result.balance)
        else:
            self._log_refusal(op, owner_id, result.reason, op_id=result.op_id)


class _MemoryLedgerStorage(_LedgerHelpers):
    """In-memory ledger implementation for tests and single-process development."""

    def __init__(self, *, policy: Optional[LedgerPolicy] = None) -> None:
        self.policy = policy or LedgerPolicy()
        self._lock = threading.RLock()
        self._accounts: Dict[str, Account] = {}
        self._entries: Dict[str, LedgerEntry] = {}
        self._entry_order: List[str] = []
        self._support: Dict[str, SupportActionRecord] = {}

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _ensure_account(self, owner_id: str, pages: int) -> Account:
        account = self._accounts.get(owner_id)
        if account is None:
            now = self._now()
            account = Account(
                owner_id=owner_id,
                user_id=user_id_from_owner(owner_id),
                pages_remaining=int(pages),
                free_allocation=self._free_allocation(owner_id),
                created_at=now,
                updated_at=now,
            )
            self._accounts[owner_id] = account
        return account

    def _store(self, account: Account, **changes: Any) -> Account:
        updated = replace(account, updated_at=self._now(), **changes)
        if updated.pages_remaining < 0:
            raise ValueError("pages_remaining must not be negative")
        self._accounts[updated.owner_id] = updated
        return updated

    def _append(self, entry: LedgerEntry) -> None:
        if entry.transaction_id in self._entries:
            raise ValueError(f"duplicate ledger entry {entry.transaction_id}")
        stored = replace(entry, created_at=self._now())
        self._entries[stored.transaction_id] = stored
        self._entry_order.append(stored.transaction_id)

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def ping(self) -> bool:
        return True

    def start(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def stop(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def get_account(self, owner_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(owner_id)
            return replace(account) if account else None

    def initialize_account(self, owner_id: str) -> Account:
        guest_pages = self.policy.guest_free_pages
        with self._lock:
            return replace(self._ensure_account(owner_id, guest_pages))

    def create_or_set(self, owner_id: str, pages_remaining: int) -> Account:
        pages = int(pages_remaining)
        if pages < 0:
            raise ValueError("pages_remaining must not be negative")
        with self._lock:
            account = self._ensure_account(owner_id, pages)
            return replace(self._store(account, pages_remaining=pages))

    def set_status(self, owner_id: str, status: str) -> Account:
        _check_status(status)
        guest_pages = self.policy.guest_free_pages
        with self._lock:
            account = self._ensure_account(owner_id, guest_pages)
            updated = self._store(account, status=status)
        log.info(
            "ledger.status.changed",
            extra=log_extra(owner=mask_owner(owner_id), status=status),
        )
        return replace(updated)

    def count_early_adopters(self) -> int:
        with self._lock:
            return sum(1 for account in self._accounts.values() if account.is_early_adopter)

    def grant(self, owner_id: str, user_id: str, is_early_adopter: bool) -> GrantResult:
        user_id = str(user_id)
        policy = self.policy
        op_id = grant_transaction_id(user_id)
        with self._lock:
            for entry in self._entries.values():
                if entry.user_id == str(user_id) and entry.transaction_type in GRANT_TYPES:
                    self._log_refusal("grant", owner_id, "already_granted", op_id=op_id)
                    return GrantResult(False, 0, True)

            early = bool(is_early_adopter) and self.count_early_adopters() < policy.early_adopter_limit
            pages = policy.early_adopter_pages if early else policy.default_signup_pages
            account = self._ensure_account(owner_id, 0)
            old_balance = account.pages_remaining
            updated = self._store(
                account,
                pages_remaining=old_balance + pages,
                user_id=account.user_id or str(user_id),
                is_early_adopter=account.is_early_adopter or early,
            )
            self._append(
                LedgerEntry(
                    transaction_id=op_id,
                    owner_id=owner_id,
                    user_id=str(user_id),
                    transaction_type=TX_EARLY_ADOPTER if early else TX_REGISTRATION_BONUS,
                    pages_amount=pages,
                    pages_before=old_balance,
                    pages_after=updated.pages_remaining,
                    metadata=BonusGrantMeta(
                        early_adopter_requested=bool(is_early_adopter), early_adopter=early
                    ),
                )
            )
        self._log_operation(
            "grant", owner_id, op_id, pages, old_balance, updated.pages_remaining,
            early_adopter=early,
        )
        return GrantResult(True, pages, False, early)

    def use_pages(
        self, owner_id: str, count: int = 1, *, idempotency_key: Optional[str] = None
    ) -> LedgerOpResult:
        count = _positive(count, "count")
        guest_pages = self.policy.guest_free_pages
        op_id = keyed_transaction_id(TX_USE, owner_id, idempotency_key)
        with self._lock:
            account = self._ensure_account(owner_id, guest_pages)
            balance = account.pages_remaining
            if idempotency_key and op_id in self._entries:
                result = LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True)
            elif account.status != STATUS_ACTIVE:
                result = LedgerOpResult(False, balance, op_id, account.status, balance)
            elif balance < count:
                result = LedgerOpResult(False, balance, op_id, "insufficient", balance)
            else:
                updated = self._store(
                    account,
                    pages_remaining=balance - count,
                    total_pages_used=account.total_pages_used + count,
                )
                self._append(
                    LedgerEntry(
                        transaction_id=op_id,
                        owner_id=owner_id,
                        user_id=account.user_id,
                        transaction_type=TX_USE,
                        pages_amount=-count,
                        pages_before=balance,
                        pages_after=updated.pages_remaining,
                        metadata=UsageMeta(count=count, idempotency_key=idempotency_key),
                    )
                )
                result = LedgerOpResult(True, updated.pages_remaining, op_id, TX_USE, balance)
        self._report(TX_USE, owner_id, -count, result)
        return result

    def add_pages(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_PURCHASE,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Tuple[LedgerOpResult, Account]:
        pages = _positive(pages, "pages")
        _check_type(transaction_type, TOP_UP_TYPES)
        op_id = keyed_transaction_id(transaction_type, owner_id, idempotency_key)
        with self._lock:
            account = self._ensure_account(owner_id, 0)
            balance = account.pages_remaining
            if idempotency_key and op_id in self._entries:
                result = LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True)
                updated = account
            else:
                updated = self._store(account, pages_remaining=balance + pages)
                self._append(
                    LedgerEntry(
                        transaction_id=op_id,
                        owner_id=owner_id,
                        user_id=account.user_id,
                        transaction_type=transaction_type,
                        pages_amount=pages,
                        pages_before=balance,
                        pages_after=updated.pages_remaining,
                        metadata=TopUpMeta(reference=reference, idempotency_key=idempotency_key),
                    )
                )
                result = LedgerOpResult(True, updated.pages_remaining, op_id, transaction_type, balance)
            snapshot = replace(updated)
        self._report(transaction_type, owner_id, pages, result)
        return result, snapshot

    def deduct_pages(
        self,
        owner_id: str,
        pages: int,
        *,
        transaction_type: str = TX_REFUND,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> LedgerOpResult:
        pages = _positive(pages, "pages")
        _check_type(transaction_type, REVERSAL_TYPES)
        op_id = keyed_transaction_id(transaction_type, owner_id, idempotency_key)
        with self._lock:
            account = self._accounts.get(owner_id)
            balance = account.pages_remaining if account else 0
            if account is None:
                result = LedgerOpResult(False, 0, op_id, "missing", 0)
            elif idempotency_key and op_id in self._entries:
                result = LedgerOpResult(False, balance, op_id, "duplicate", balance, duplicate=True)
            elif balance < pages:
                result = LedgerOpResult(False, balance, op_id, "insufficient", balance)
            else:
                updated = self._store(account, pages_remaining=balance - pages)
                self._append(
                    LedgerEntry(
                        transaction_id=op_id,
                        owner_id=owner_id,
                        user_id=account.user_id,
                        transaction_type=transaction_type,
                        pages_amount=-pages,
                        pages_before=balance,
                        pages_after=updated.pages_remaining,
                        metadata=ReversalMeta(reference=reference, idempotency_key=idempotency_key),
                    )
                )
                result = LedgerOpResult(True, updated.pages_remaining, op_id, transaction_type, balance)
        self._report(transaction_type, owner_id, -pages, result)
        return result

    def transfer_guest_to_user(self, device_id: str, user_id: str) -> TransferResult:
        user_id = str(user_id)
        if is_user_owner(device_id):
            raise ValueError("guest transfers must originate from a device id, not a user owner")
        user_owner = user_owner_id(user_id)
        op_id = transfer_transaction_id(device_id, user_id)
        with self._lock:
            if any(
                entry.transaction_type == TX_GUEST_TRANSFER
                and entry.source_owner_id == device_id
                and entry.user_id == str(user_id)
                for entry in self._entries.values()
            ):
                self._log_refusal(
                    "transfer", user_owner, "already_done", device=mask_owner(device_id)
                )
                return TransferResult(False, 0, already_done=True)

            guest = self._accounts.get(device_id)
            guest_pages = guest.pages_remaining if guest else 0
            free_pages = guest.free_allocation if guest else self.policy.guest_free_pages
            excess = max(0, guest_pages - free_pages)

            if guest is None or excess <= 0:
                if guest is not None:
                    self._store(guest, pages_remaining=0, user_id=guest.user_id or str(user_id))
                target = self._accounts.get(user_owner)
                user_balance = target.pages_remaining if target else 0
                self._append(
                    LedgerEntry(
                        transaction_id=op_id,
                        owner_id=user_owner,
                        source_owner_id=device_id,
                        user_id=str(user_id),
                        transaction_type=TX_GUEST_TRANSFER,
                        pages_amount=0,
                        pages_before=user_balance,
                        pages_after=user_balance,
                        metadata=GuestTransferMeta(
                            guest_device_id=device_id,
                            original_guest_pages=guest_pages,
                            free_guest_pages=free_pages,
                            nothing_to_transfer=True,
                        ),
                    )
                )
                self._log_refusal(
                    "transfer", user_owner, "nothing_to_transfer", device=mask_owner(device_id)
                )
                return TransferResult(False, 0)

            target = self._ensure_account(user_owner, 0)
            updated = self._store(
                target,
                pages_remaining=target.pages_remaining + excess,
                user_id=target.user_id or str(user_id),
            )
            self._store(guest, pages_remaining=0, user_id=guest.user_id or str(user_id))
            self._append(
                LedgerEntry(
                    transaction_id=op_id,
                    owner_id=user_owner,
                    source_owner_id=device_id,
                    user_id=str(user_id),
                    transaction_type=TX_GUEST_TRANSFER,
                    pages_amount=excess,
                    pages_before=target.pages_remaining,
                    pages_after=updated.pages_remaining,
                    metadata=GuestTransferMeta(
                        guest_device_id=device_id,
                        original_guest_pages=guest_pages,
                        free_guest_pages=free_pages,
                        transferred_amount=excess,
                    ),
                )
            )
        self._log_operation(
            "transfer", user_owner, op_id, excess, target.pages_remaining, updated.pages_remaining,
            device=mask_owner(device_id),
        )
        return TransferResult(True, excess)

    def get_entry(self, transaction_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            entry = self._entries.get(transaction_id)
            return replace(entry) if entry else None

    def history(self, owner_id: str, limit: int = 50) -> List[LedgerEntry]:
        with self._lock:
            matches = [
                replace(self._entries[tx_id])
                for tx_id in reversed(self._entry_order)
                if owner_id in (self._entries[tx_id].owner_id, self._entries[tx_id].source_owner_id)
            ]
        return matches[: max(int(limit), 1)]

    # ------------------------------------------------------------------
    #   Support actions
    # ------------------------------------------------------------------
    def get_support_action(self, idempotency_key: str) -> Optional[SupportActionRecord]:
        with self._lock:
            record = self._support.get(idempotency_key)
            return replace(record) if record else None

    def insert_support_action(self, record: SupportActionRecord) -> bool:
        with self._lock:
            if record.idempotency_key in self._support:
                return False
            now = self._now()
            self._support[record.idempotency_key] = replace(record, created_at=now, updated_at=now)
            return True

    def finalize_support_action(
        self,
        idempotency_key: str,
        status: str,
        *,
        after_snapshot: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self._support.get(idempotency_key)
            if record is None:
                raise KeyError(idempotency_key)
            self._support[idempotency_key] = replace(
                record,
                status=status,
                after_snapshot=after_snapshot,
                error=error,
                updated_at=self._now(),
            )

    def _report(self, op: str, owner_id: str, amount: int, result: LedgerOpResult) -> None:
        if result.applied:
            self._log_operation(op, owner_id, result.op_id, amount, result.old_balance, result.balance)
        else:
            self._log_refusal(op, owner_id, result.reason, op_id=result.op_id)


class LedgerStorage:
    """Facade that selects the appropriate ledger backend."""

    def __init__(
        self,
        dsn: Optional[str],
        *,
        backend: str = "postgres",
        policy: Optional[LedgerPolicy] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        backend = (backend or "postgres").lower()
        self.backend = backend
        settings = settings or Settings()
        policy = policy or LedgerPolicy.from_settings(settings)

        if backend == "memory":
            if settings.FORBID_MEMORY_DB:
                raise LedgerUnavailable("Memory ledger backend is disabled by configuration")
            self._impl: Any = _MemoryLedgerStorage(policy=policy)
            self._started = True
        elif backend == "postgres":
            if not dsn:
                raise LedgerUnavailable(
                    "DATABASE_URL (or POSTGRES_DSN) must be set for persistent ledger storage"
                )
            self._impl = _PostgresLedgerStorage(dsn, policy=policy, settings=settings)
            self._started = False
        else:
            raise LedgerUnavailable(f"unknown ledger backend: {backend}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerStorage":
        return cls(settings.DATABASE_URL, backend=settings.LEDGER_BACKEND, settings=settings)

    def start(self) -> None:
        if hasattr(self._impl, "start"):
            self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            self._impl.stop()
        finally:
            self._started = False

    @property
    def policy(self) -> LedgerPolicy:
        return self._impl.policy

    def __getattr__(self, name: str) -> Any:
        if name.startswith("__") or name in {"_impl", "_started"}:
            raise AttributeError(name)
        if not getattr(self, "_started", False):
            self.start()
        return getattr(self._impl, name)


__all__ = [
    "Account",
    "BonusGrantMeta",
    "EntryMeta",
    "GrantResult",
    "GuestTransferMeta",
    "LedgerEntry",
    "LedgerOpResult",
    "LedgerPolicy",
    "LedgerStorage",
    "LedgerUnavailable",
    "ReversalMeta",
    "SupportActionRecord",
    "TopUpMeta",
    "TransferResult",
    "UsageMeta",
    "decode_entry_meta",
    "encode_entry_meta",
]
