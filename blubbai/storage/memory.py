from __future__ import annotations

import base64
import hashlib
import json
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from blubbai.logging import get_logger
from blubbai.storage.errors import ConstraintViolation
from blubbai.storage.models import (
    Account,
    PhoneNumber,
    RefreshToken,
    Role,
    SecretMethod,
    utcnow,
)

DEFAULT_ROLE = Role(rid=1, name="user", description="Regular chat user")


def generate_totp_secret() -> str:
    """Random 160-bit secret, base32 encoded (32 characters, no padding)."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii")


class MemoryStore:
    """Thread-safe in-memory credential store.

    Accounts own their phone number and refresh-token records by id; deleting
    an account removes both. When ``fs_root`` is given the state is written to
    ``<fs_root>/state/credential_store.json`` after every mutation and loaded
    back on construction, with TOTP secrets encrypted at rest.
    """

    def __init__(
        self, fs_root: str | None = None, *, secret_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.phones: Dict[str, PhoneNumber] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.roles: Dict[int, Role] = {DEFAULT_ROLE.rid: DEFAULT_ROLE}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher: Optional[Fernet] = None
        if self.fs_root is not None:
            if not secret_key:
                raise ValueError("secret_key is required when persisting to disk")
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._cipher = Fernet(self._derive_cipher_key(secret_key))
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    # -- accounts -------------------------------------------------------------

    def find_by_username(self, name: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.username == name), None
            )
            return self._copy(account)

    def find_by_uid(self, uid: str) -> Optional[Account]:
        with self._data_lock:
            return self._copy(self.accounts.get(str(uid)))

    def find_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == email), None
            )
            return self._copy(account)

    def save(self, account: Account) -> Account:
        """Create or update an account.

        On create the store assigns ``uid``, ``totp_secret`` and timestamps and
        resets ``secret_method``/``mail_verified``. On update, changes to
        ``uid``, ``created_at`` and ``totp_secret`` are ignored.
        Saving with a ``uid`` the store does not hold (for instance a copy of a
        deleted account) raises ConstraintViolation on ``uid``.
        """
        with self._data_lock:
            now = utcnow()
            existing = self.accounts.get(account.uid) if account.uid else None
            if account.uid and existing is None:
                raise ConstraintViolation("account not found", {"field": "uid"})
            self._check_unique(account, exclude_uid=existing.uid if existing else None)
            if existing is None:
                stored = replace(
                    account,
                    uid=str(uuid.uuid4()),
                    totp_secret=generate_totp_secret(),
                    secret_method=SecretMethod.NONE,
                    mail_verified=False,
                    created_at=now,
                    updated_at=now,
                    role_id=account.role_id or DEFAULT_ROLE.rid,
                    refresh_ids=[],
                )
                self.logger.info("account_created", uid=stored.uid)
            else:
                stored = replace(
                    account,
                    uid=existing.uid,
                    totp_secret=existing.totp_secret,
                    created_at=existing.created_at,
                    updated_at=max(now, existing.created_at),
                    refresh_ids=list(existing.refresh_ids),
                )
            self._link_phone(stored, previous=existing)
            self.accounts[stored.uid] = stored
            self._persist_state()
            return self._copy(stored)

    def delete(self, account: Account) -> bool:
        with self._data_lock:
            stored = self.accounts.pop(str(account.uid), None)
            if stored is None:
                return False
            if stored.phone_id:
                self.phones.pop(stored.phone_id, None)
            for token_id in stored.refresh_ids:
                self.refresh_tokens.pop(token_id, None)
            self._persist_state()
            self.logger.info("account_deleted", uid=stored.uid)
            return True

    def _check_unique(self, account: Account, *, exclude_uid: Optional[str]) -> None:
        for other in self.accounts.values():
            if other.uid == exclude_uid:
                continue
            if other.username == account.username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if other.email == account.email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def _link_phone(self, account: Account, *, previous: Optional[Account]) -> None:
        phone = self.phones.get(account.phone_id) if account.phone_id else None
        if account.phone_id and phone is None:
            raise ConstraintViolation("phone number not found", {"field": "phone_id"})
        if phone and phone.account_uid and phone.account_uid != account.uid:
            raise ConstraintViolation(
                "phone number owned by another account", {"field": "phone_id"}
            )
        if previous and previous.phone_id and previous.phone_id != account.phone_id:
            self.phones.pop(previous.phone_id, None)
        if phone:
            phone.account_uid = account.uid

    # -- phone numbers --------------------------------------------------------

    def save_phone(self, phone: PhoneNumber) -> PhoneNumber:
        with self._data_lock:
            stored = replace(phone, id=phone.id or str(uuid.uuid4()))
            current = self.phones.get(stored.id)
            if current and current.account_uid and stored.account_uid is None:
                stored.account_uid = current.account_uid
            self.phones[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def find_phone(self, phone_id: str) -> Optional[PhoneNumber]:
        with self._data_lock:
            phone = self.phones.get(phone_id)
            return replace(phone) if phone else None

    # -- refresh tokens -------------------------------------------------------

    def save_refresh(self, record: RefreshToken) -> RefreshToken:
        """Store ``record`` and drop the owner's expired or revoked records.

        Expiry is judged against ``record.issued_at``.
        """
        with self._data_lock:
            account = self.accounts.get(record.account_uid)
            if account is None:
                raise ConstraintViolation(
                    "account not found for refresh token",
                    {"field": "account_uid"},
                )
            self._prune_refresh(account, record.issued_at)
            stored = replace(record, id=record.id or str(uuid.uuid4()))
            self.refresh_tokens[stored.id] = stored
            if stored.id not in account.refresh_ids:
                account.refresh_ids.append(stored.id)
            self._persist_state()
            return replace(stored)

    def _prune_refresh(self, account: Account, now: datetime) -> None:
        kept: List[str] = []
        for token_id in account.refresh_ids:
            record = self.refresh_tokens.get(token_id)
            if record is None:
                continue
            if record.is_active(now):
                kept.append(token_id)
            else:
                del self.refresh_tokens[token_id]
        if len(kept) != len(account.refresh_ids):
            self.logger.debug(
                "refresh_tokens_pruned",
                uid=account.uid,
                removed=len(account.refresh_ids) - len(kept),
            )
        account.refresh_ids = kept

    def find_refresh(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = next(
                (r for r in self.refresh_tokens.values() if r.token == token), None
            )
            return replace(record) if record else None

    def refresh_tokens_for(self, uid: str) -> List[RefreshToken]:
        with self._data_lock:
            account = self.accounts.get(uid)
            if account is None:
                return []
            return [
                replace(self.refresh_tokens[token_id])
                for token_id in account.refresh_ids
                if token_id in self.refresh_tokens
            ]

    def get_role(self, rid: int) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(rid)

    @staticmethod
    def _copy(account: Optional[Account]) -> Optional[Account]:
        if account is None:
            return None
        return replace(account, refresh_ids=list(account.refresh_ids))

    # -- persistence ----------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret or self._cipher is None:
            return secret
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret or self._cipher is None:
            return secret
        try:
            return self._cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("totp_secret_decrypt_failed")
            raise RuntimeError("persisted TOTP secret cannot be decrypted") from exc

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> Dict[str, Any]:
        return {
            "uid": account.uid,
            "username": account.username,
            "email": account.email,
            "password_hash": account.password_hash,
            "totp_secret": self._encrypt_secret(account.totp_secret),
            "secret_method": account.secret_method.value,
            "mail_verified": account.mail_verified,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "phone_id": account.phone_id,
            "role_id": account.role_id,
            "refresh_ids": list(account.refresh_ids),
        }

    def _deserialize_account(self, data: Dict[str, Any]) -> Account:
        return Account(
            uid=data["uid"],
            username=data["username"],
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            totp_secret=self._decrypt_secret(data.get("totp_secret")),
            secret_method=SecretMethod(data.get("secret_method") or "NONE"),
            mail_verified=bool(data.get("mail_verified", False)),
            created_at=self._deserialize_datetime(data.get("created_at")),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
            phone_id=data.get("phone_id"),
            role_id=data.get("role_id"),
            refresh_ids=list(data.get("refresh_ids", [])),
        )

    def _serialize_refresh(self, record: RefreshToken) -> Dict[str, Any]:
        return {
            "id": record.id,
            "account_uid": record.account_uid,
            "token": record.token,
            "issued_at": self._serialize_datetime(record.issued_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
        }

    def _deserialize_refresh(self, data: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            account_uid=data["account_uid"],
            token=data["token"],
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "phones": [
                {
                    "id": p.id,
                    "country": p.country,
                    "number": p.number,
                    "account_uid": p.account_uid,
                }
                for p in self.phones.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["uid"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.phones = {
            p["id"]: PhoneNumber(
                id=p["id"],
                country=p["country"],
                number=p["number"],
                account_uid=p.get("account_uid"),
            )
            for p in data.get("phones", [])
        }
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh(r) for r in data.get("refresh_tokens", [])
        }
        self.logger.info(
            "credential_store_loaded",
            accounts=len(self.accounts),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True
