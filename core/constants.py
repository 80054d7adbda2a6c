"""Shared string constants for owners, ledger entries and support actions."""

USER_OWNER_PREFIX = "user_"

TX_REGISTRATION_BONUS = "registration_bonus"
TX_EARLY_ADOPTER = "early_adopter"
TX_PURCHASE = "purchase"
TX_ADMIN_GRANT = "admin_grant"
TX_GUEST_TRANSFER = "guest_transfer"
TX_USE = "use"
TX_REFUND = "refund"
TX_ADMIN_REVERSE = "admin_reverse"

GRANT_TYPES = frozenset({TX_REGISTRATION_BONUS, TX_EARLY_ADOPTER})
TOP_UP_TYPES = frozenset({TX_PURCHASE, TX_ADMIN_GRANT})
REVERSAL_TYPES = frozenset({TX_REFUND, TX_ADMIN_REVERSE})

STATUS_ACTIVE = "active"
STATUS_ON_HOLD = "on_hold"
STATUS_SUSPENDED = "suspended"
ACCOUNT_STATUSES = frozenset({STATUS_ACTIVE, STATUS_ON_HOLD, STATUS_SUSPENDED})

ACTION_GRANT_PAGES = "grant_pages"
ACTION_REVERSE_PAGES = "reverse_pages"
ACTION_STATUS_CHANGE = "status_change"

ACTION_PENDING = "pending"
ACTION_APPLIED = "applied"
ACTION_REJECTED = "rejected"
ACTION_FAILED = "failed"

REASON_CODES = ("COMPENSATION", "PROMO", "BUG", "FRAUD_REVIEW", "OTHER")

EARLY_ADOPTER_LOCK_KEY = "credit_ledger:early_adopter_cap"

__all__ = [
    "USER_OWNER_PREFIX",
    "TX_REGISTRATION_BONUS",
    "TX_EARLY_ADOPTER",
    "TX_PURCHASE",
    "TX_ADMIN_GRANT",
    "TX_GUEST_TRANSFER",
    "TX_USE",
    "TX_REFUND",
    "TX_ADMIN_REVERSE",
    "GRANT_TYPES",
    "TOP_UP_TYPES",
    "REVERSAL_TYPES",
    "STATUS_ACTIVE",
    "STATUS_ON_HOLD",
    "STATUS_SUSPENDED",
    "ACCOUNT_STATUSES",
    "ACTION_GRANT_PAGES",
    "ACTION_REVERSE_PAGES",
    "ACTION_STATUS_CHANGE",
    "ACTION_PENDING",
    "ACTION_APPLIED",
    "ACTION_REJECTED",
    "ACTION_FAILED",
    "REASON_CODES",
    "EARLY_ADOPTER_LOCK_KEY",
]
