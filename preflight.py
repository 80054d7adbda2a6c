#!/usr/bin/env python3
"""Environment and connectivity preflight checks for the credit ledger."""

from __future__ import annotations

import logging
import os
from typing import Optional

import psycopg
from dotenv import load_dotenv

from core.db.postgres import ensure_conninfo, mask_dsn

LOG = logging.getLogger("preflight")

DB_ENV_KEYS = ["DATABASE_URL", "POSTGRES_DSN"]
LEDGER_BACKEND_KEY = "LEDGER_BACKEND"
REQUIRED_TABLES = ("page_credits", "credit_transactions", "support_actions")


def _load_env() -> None:
    """Load .env file if present."""

    load_dotenv(override=False)


class CheckError(RuntimeError):
    """Custom error with friendly output."""


def _resolve_db_url() -> Optional[str]:
    for key in DB_ENV_KEYS:
        value = os.getenv(key)
        if value and value.strip():
            return value.strip()
    backend = (os.getenv(LEDGER_BACKEND_KEY) or "postgres").strip().lower()
    if backend != "memory":
        raise CheckError("DATABASE_URL required (set LEDGER_BACKEND=memory to skip Postgres)")
    return None


def _load_settings():
    from core.settings import reload_settings

    try:
        return reload_settings()
    except RuntimeError as exc:
        raise CheckError(str(exc)) from exc


def _check_postgres(dsn: str, *, sslmode: str = "require") -> str:
    try:
        conninfo = ensure_conninfo(dsn, application_name="credit-ledger-preflight", sslmode=sslmode)
    except ValueError as exc:
        raise CheckError(str(exc)) from exc
    try:
        with psycopg.connect(conninfo, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
                cur.execute(
                    "SELECT table_name FROM information_schema.tables "
                    "WHERE table_schema = current_schema() AND table_name = ANY(%s)",
                    (list(REQUIRED_TABLES),),
                )
                present = {row[0] for row in cur.fetchall()}
    except psycopg.Error as exc:
        raise CheckError(f"Postgres connection failed ({mask_dsn(dsn)}): {exc}") from exc
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        return "connected, schema pending: " + ",".join(missing)
    return "connected"


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    _load_env()

    try:
        db_url = _resolve_db_url()
        cfg = _load_settings()

        db_status = "skipped (memory mode)"
        if db_url:
            db_status = _check_postgres(db_url, sslmode=cfg.PG_SSLMODE)

    except CheckError as exc:
        LOG.error("%s", exc)
        return 1

    LOG.info(
        "Preflight succeeded: backend=%s db=%s guest_free_pages=%s early_adopter_limit=%s",
        cfg.LEDGER_BACKEND,
        db_status,
        cfg.GUEST_FREE_PAGES,
        cfg.EARLY_ADOPTER_LIMIT,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
