from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional

import phonenumbers


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecretMethod(str, Enum):
    """Second-factor delivery channel chosen by an account."""

    AUTHENTICATOR = "AUTHENTICATOR"
    EMAIL = "EMAIL"
    SMS = "SMS"
    NONE = "NONE"

    @property
    def claim_value(self) -> Optional[str]:
        """Value carried in the ``secretMethod`` token claim (null when unset)."""
        return None if self is SecretMethod.NONE else self.value

    @classmethod
    def from_claim(cls, value: Optional[str]) -> "SecretMethod":
        if not value:
            return cls.NONE
        return cls(value)


def country_calling_code(country: str) -> Optional[int]:
    """Return the ITU calling code for an ISO-3166 alpha-2 region, if known."""
    code = phonenumbers.country_code_for_region((country or "").upper())
    return code or None


@dataclass
class Role:
    rid: int
    name: str
    description: Optional[str] = None


@dataclass
class PhoneNumber:
    country: str
    number: str
    id: Optional[str] = None
    account_uid: Optional[str] = None

    @property
    def full_number(self) -> Optional[str]:
        code = country_calling_code(self.country)
        if code is None:
            return None
        return f"+{code}{self.number}"


@dataclass
class Account:
    username: str
    email: str
    password_hash: str = ""
    uid: Optional[str] = None
    totp_secret: Optional[str] = None
    secret_method: SecretMethod = SecretMethod.NONE
    mail_verified: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    phone_id: Optional[str] = None
    role_id: Optional[int] = None
    refresh_ids: List[str] = field(default_factory=list)


@dataclass
class RefreshToken:
    account_uid: str
    token: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    id: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_uid: str,
        token: str,
        issued_at: datetime,
        ttl: timedelta,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            account_uid=account_uid,
            token=token,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or utcnow()) < self.expires_at
