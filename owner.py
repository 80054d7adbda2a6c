"""Canonical owner identifiers for guest devices and authenticated users."""

from __future__ import annotations

from typing import Iterable, List, Optional

from core.constants import USER_OWNER_PREFIX


def _clean(value: object, name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValueError(f"{name} must be a non-empty identifier")
    return text


def user_owner_id(user_id: object) -> str:
    return f"{USER_OWNER_PREFIX}{_clean(user_id, 'user_id')}"


def resolve_owner_id(device_id: Optional[str], user_id: Optional[object] = None) -> str:
    """Return the owner key a balance is stored under.

    Authenticated callers always resolve to ``user_<userId>`` regardless of the
    device they use; anonymous callers resolve to the raw device id.
    """

    if user_id is not None and str(user_id).strip():
        return user_owner_id(user_id)
    return _clean(device_id, "device_id")


def is_user_owner(owner_id: str) -> bool:
    return bool(owner_id) and owner_id.startswith(USER_OWNER_PREFIX)


def user_id_from_owner(owner_id: str) -> Optional[str]:
    if not is_user_owner(owner_id):
        return None
    return owner_id[len(USER_OWNER_PREFIX) :] or None


def temp_device_ids(user_id: object, prefixes: Iterable[str]) -> List[str]:
    """Placeholder device ids that signup flows create before a real device is known."""

    uid = _clean(user_id, "user_id")
    return [f"{prefix}{uid}" for prefix in prefixes if prefix]


__all__ = [
    "is_user_owner",
    "resolve_owner_id",
    "temp_device_ids",
    "user_id_from_owner",
    "user_owner_id",
]
