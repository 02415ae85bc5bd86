from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from appauth.logging import get_logger
from appauth.storage.common import (
    refresh_token_from_document,
    refresh_token_to_document,
    user_from_document,
    user_to_document,
)
from appauth.storage.errors import ConstraintViolation, StoreUnavailable
from appauth.storage.models import RefreshToken, User, normalize_email, utcnow

_TOKEN_FIELDS = {
    "email_verification": "email_verification_token_hash",
    "password_reset": "password_reset_token_hash",
}


class MemoryStore:
    """In-process document store persisted to a JSON file under ``fs_root``.

    Users are kept as documents and materialised into fresh dataclasses on
    every read, so callers never share mutable state with the store.
    """

    def __init__(self, fs_root: str = "/tmp/appauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Dict[str, Any]] = {}
        self.refresh_tokens: Dict[str, Dict[str, Any]] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # users -----------------------------------------------------------------
    def _check_unique(self, doc: Dict[str, Any]) -> None:
        email = doc["email"]
        for other_id, other in self.users.items():
            if other_id == doc["id"]:
                continue
            if other["email"] == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            for provider, provider_id in (doc.get("provider_ids") or {}).items():
                if (other.get("provider_ids") or {}).get(provider) == provider_id:
                    raise ConstraintViolation(
                        "provider identity already linked",
                        {"field": "provider_ids", "provider": provider},
                    )

    def create_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        doc = user_to_document(user)
        with self._data_lock:
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self._check_unique(doc)
            self._commit(users={**self.users, user.id: doc})
        return user_from_document(doc)

    def save_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        user.updated_at = utcnow()
        doc = user_to_document(user)
        with self._data_lock:
            self._check_unique(doc)
            self._commit(users={**self.users, user.id: doc})
        return user_from_document(doc)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            doc = self.users.get(user_id)
            return user_from_document(doc) if doc else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            for doc in self.users.values():
                if doc["email"] == normalized:
                    return user_from_document(doc)
        return None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            for doc in self.users.values():
                if (doc.get("provider_ids") or {}).get(provider) == provider_id:
                    return user_from_document(doc)
        return None

    def get_user_by_token_hash(self, kind: str, token_hash: str) -> Optional[User]:
        field_name = _TOKEN_FIELDS[kind]
        with self._data_lock:
            for doc in self.users.values():
                if doc.get(field_name) == token_hash:
                    return user_from_document(doc)
        return None

    def list_users(
        self, app_identifier: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[User]:
        with self._data_lock:
            docs = sorted(self.users.values(), key=lambda d: d.get("created_at") or "")
            if app_identifier:
                docs = [
                    d
                    for d in docs
                    if any(
                        reg.get("app_identifier") == app_identifier
                        for reg in d.get("app_registrations") or []
                    )
                ]
            return [user_from_document(d) for d in docs[offset : offset + limit]]

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            users = {key: doc for key, doc in self.users.items() if key != user_id}
            refresh_tokens = {
                key: doc
                for key, doc in self.refresh_tokens.items()
                if doc["user_id"] != user_id
            }
            self._commit(users=users, refresh_tokens=refresh_tokens)
        return True

    # refresh tokens --------------------------------------------------------
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        doc = refresh_token_to_document(token)
        with self._data_lock:
            self._commit(refresh_tokens={**self.refresh_tokens, token.token_hash: doc})
        return refresh_token_from_document(doc)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            doc = self.refresh_tokens.get(token_hash)
            return refresh_token_from_document(doc) if doc else None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._data_lock:
            doc = self.refresh_tokens.get(token_hash)
            if not doc or doc.get("is_revoked"):
                return False
            self._commit(
                refresh_tokens={
                    **self.refresh_tokens,
                    token_hash: {**doc, "is_revoked": True},
                }
            )
        return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        revoked = 0
        with self._data_lock:
            refresh_tokens = {}
            for key, doc in self.refresh_tokens.items():
                if doc["user_id"] == user_id and not doc.get("is_revoked"):
                    doc = {**doc, "is_revoked": True}
                    revoked += 1
                refresh_tokens[key] = doc
            if revoked:
                self._commit(refresh_tokens=refresh_tokens)
        return revoked

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            refresh_tokens = {
                key: doc
                for key, doc in self.refresh_tokens.items()
                if refresh_token_from_document(doc).expires_at > now
            }
            removed = len(self.refresh_tokens) - len(refresh_tokens)
            if removed:
                self._commit(refresh_tokens=refresh_tokens)
        return removed

    # persistence -----------------------------------------------------------
    def _commit(
        self,
        *,
        users: Optional[Dict[str, Dict[str, Any]]] = None,
        refresh_tokens: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        """Write the next state to disk, then make it current.

        A failed write leaves both the file and the in-process maps unchanged.
        """
        users = self.users if users is None else users
        refresh_tokens = self.refresh_tokens if refresh_tokens is None else refresh_tokens
        self._persist_state(users, refresh_tokens)
        self.users = users
        self.refresh_tokens = refresh_tokens

    def _persist_state(
        self,
        users: Dict[str, Dict[str, Any]],
        refresh_tokens: Dict[str, Dict[str, Any]],
    ) -> None:
        state = {
            "users": list(users.values()),
            "refresh_tokens": list(refresh_tokens.values()),
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable(
                "failed to persist store state", detail={"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {doc["id"]: doc for doc in data.get("users", [])}
        self.refresh_tokens = {
            doc["token_hash"]: doc for doc in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
