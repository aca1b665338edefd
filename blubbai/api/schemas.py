from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blubbai.service.auth import AccountDraft
from blubbai.storage.models import Account, PhoneNumber, Role, SecretMethod

# Upper bound for free-text credential fields
MAX_FIELD_LENGTH = 1024


class ErrorBody(BaseModel):
    error_code: int
    message: str


class PhoneNumberIn(BaseModel):
    country: str = Field(..., min_length=2, max_length=2)
    number: str = Field(..., min_length=1, max_length=32)

    @field_validator("number")
    @classmethod
    def _strip_separators(cls, value: str) -> str:
        return "".join(ch for ch in value if ch not in " -()/")

    def to_model(self) -> PhoneNumber:
        return PhoneNumber(country=self.country.upper(), number=self.number)


class AccountIn(BaseModel):
    """Account as submitted on registration and profile update."""

    username: str = Field("", max_length=MAX_FIELD_LENGTH)
    email: str = Field(..., max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(None, max_length=MAX_FIELD_LENGTH)
    phone: Optional[PhoneNumberIn] = None
    secret_method: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def to_draft(self) -> AccountDraft:
        method = None
        if self.secret_method:
            try:
                method = SecretMethod(self.secret_method.upper())
            except ValueError:
                method = None
        return AccountDraft(
            username=self.username,
            email=self.email,
            password=self.password,
            phone=self.phone.to_model() if self.phone else None,
            secret_method=method,
        )


class LoginRequest(BaseModel):
    username: str = Field(..., max_length=MAX_FIELD_LENGTH)
    password: str = Field(..., max_length=MAX_FIELD_LENGTH)


class TokenBody(BaseModel):
    token: str = Field(..., max_length=8192)


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


class PhoneNumberOut(BaseModel):
    country: str
    number: str
    full_number: Optional[str] = None

    @classmethod
    def from_model(cls, phone: PhoneNumber) -> "PhoneNumberOut":
        return cls(country=phone.country, number=phone.number, full_number=phone.full_number)


class RoleOut(BaseModel):
    rid: int
    name: str
    description: Optional[str] = None


class AccountResponse(BaseModel):
    """Public view of an account; the password hash and TOTP secret stay server-side."""

    uid: str
    username: str
    email: str
    secret_method: Optional[str] = None
    mail_verified: bool = False
    phone_number: Optional[PhoneNumberOut] = None
    role: Optional[RoleOut] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(
        cls,
        account: Account,
        phone: Optional[PhoneNumber] = None,
        role: Optional[Role] = None,
    ) -> "AccountResponse":
        return cls(
            uid=str(account.uid),
            username=account.username,
            email=account.email,
            secret_method=account.secret_method.claim_value,
            mail_verified=account.mail_verified,
            phone_number=PhoneNumberOut.from_model(phone) if phone else None,
            role=RoleOut(rid=role.rid, name=role.name, description=role.description)
            if role
            else None,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )
