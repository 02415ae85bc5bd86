"""Document conversion shared between the memory and postgres stores.

A user is persisted as one document with its app registrations embedded, so
both backends load and save the same shape.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from appauth.storage.models import AppRegistration, RefreshToken, User

_USER_DATETIME_FIELDS = (
    "global_locked_until",
    "email_verification_expires_at",
    "password_reset_expires_at",
    "created_at",
    "updated_at",
)
_REGISTRATION_DATETIME_FIELDS = (
    "locked_until",
    "last_login_at",
    "password_changed_at",
    "activated_at",
    "deactivated_at",
)
_TOKEN_DATETIME_FIELDS = ("expires_at", "created_at")


def serialize_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def registration_to_document(registration: AppRegistration) -> Dict[str, Any]:
    doc = asdict(registration)
    for key in _REGISTRATION_DATETIME_FIELDS:
        doc[key] = serialize_datetime(doc[key])
    doc["roles"] = list(registration.roles)
    return doc


def registration_from_document(doc: Dict[str, Any]) -> AppRegistration:
    data = dict(doc)
    for key in _REGISTRATION_DATETIME_FIELDS:
        data[key] = deserialize_datetime(data.get(key))
    if data.get("activated_at") is None:
        data.pop("activated_at", None)
    known = AppRegistration.__dataclass_fields__.keys()
    return AppRegistration(**{k: v for k, v in data.items() if k in known})


def user_to_document(user: User) -> Dict[str, Any]:
    doc = {
        key: value
        for key, value in asdict(user).items()
        if key not in ("app_registrations",)
    }
    for key in _USER_DATETIME_FIELDS:
        doc[key] = serialize_datetime(doc[key])
    doc["provider_ids"] = dict(user.provider_ids)
    doc["app_registrations"] = [
        registration_to_document(reg) for reg in user.app_registrations
    ]
    return doc


def user_from_document(doc: Dict[str, Any]) -> User:
    data = dict(doc)
    for key in _USER_DATETIME_FIELDS:
        data[key] = deserialize_datetime(data.get(key))
    for key in ("created_at", "updated_at"):
        if data.get(key) is None:
            data.pop(key, None)
    registrations = [
        registration_from_document(reg) for reg in data.pop("app_registrations", None) or []
    ]
    known = User.__dataclass_fields__.keys()
    user = User(**{k: v for k, v in data.items() if k in known})
    user.provider_ids = dict(user.provider_ids or {})
    user.app_registrations = registrations
    return user


def refresh_token_to_document(token: RefreshToken) -> Dict[str, Any]:
    doc = asdict(token)
    for key in _TOKEN_DATETIME_FIELDS:
        doc[key] = serialize_datetime(doc[key])
    return doc


def refresh_token_from_document(doc: Dict[str, Any]) -> RefreshToken:
    data = dict(doc)
    for key in _TOKEN_DATETIME_FIELDS:
        data[key] = deserialize_datetime(data.get(key))
    known = RefreshToken.__dataclass_fields__.keys()
    return RefreshToken(**{k: v for k, v in data.items() if k in known})
