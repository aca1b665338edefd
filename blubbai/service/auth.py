from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from typing import List, Optional, Protocol
from urllib.parse import quote

from blubbai.config import Settings
from blubbai.logging import get_logger
from blubbai.service.dispatch import TwoFactorDispatcher
from blubbai.service.email import EmailService
from blubbai.service.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    ValidationError,
)
from blubbai.service.passwords import PasswordService
from blubbai.service.token_codec import TokenType
from blubbai.service.tokens import TokenService
from blubbai.service.totp import TotpEngine
from blubbai.service.validation import (
    ContactValidator,
    is_plausible_phone,
    is_valid_username,
    normalize_email,
)
from blubbai.storage.errors import ConstraintViolation
from blubbai.storage.models import Account, PhoneNumber, RefreshToken, Role, SecretMethod

logger = get_logger(__name__)

VERIFY_MAIL_PATH = "/api/v1/auth/noa/2fa/verifyMail"


class CredentialStore(Protocol):
    def find_by_username(self, name: str) -> Optional[Account]: ...

    def find_by_uid(self, uid: str) -> Optional[Account]: ...

    def find_by_email(self, email: str) -> Optional[Account]: ...

    def save(self, account: Account) -> Account: ...

    def delete(self, account: Account) -> bool: ...

    def save_phone(self, phone: PhoneNumber) -> PhoneNumber: ...

    def find_phone(self, phone_id: str) -> Optional[PhoneNumber]: ...

    def save_refresh(self, record: RefreshToken) -> RefreshToken: ...

    def find_refresh(self, token: str) -> Optional[RefreshToken]: ...

    def get_role(self, rid: int) -> Optional[Role]: ...


@dataclass
class Principal:
    """Identity bound to a request by the authentication filter."""

    username: str
    authorities: List[str] = field(default_factory=list)


@dataclass
class AccountDraft:
    """Account data as submitted by a client, password in plaintext."""

    username: str
    email: str
    password: Optional[str] = None
    phone: Optional[PhoneNumber] = None
    secret_method: Optional[SecretMethod] = None


class AuthService:
    """Registration, credential checks, 2FA orchestration and profile changes."""

    def __init__(
        self,
        store: CredentialStore,
        passwords: PasswordService,
        totp: TotpEngine,
        dispatcher: TwoFactorDispatcher,
        validator: ContactValidator,
        email: EmailService,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.totp = totp
        self.dispatcher = dispatcher
        self.validator = validator
        self.email = email
        self.tokens = tokens
        self.settings = settings

    # -- registration ---------------------------------------------------------

    async def register(self, draft: AccountDraft) -> Account:
        """Create an account; ordering of the checks is part of the contract.

        Username format, username conflict, email and phone are checked in
        that order. A phone saved before a later failure is left behind.
        """
        if not is_valid_username(draft.username):
            raise ValidationError.of(ErrorCode.BAD_USERNAME)
        if self.store.find_by_username(draft.username) is not None:
            raise ConflictError.of(ErrorCode.USERNAME_CONFLICT)
        if not draft.password:
            raise ValidationError("password is required")

        email = await self._checked_email(draft.email)
        if self.store.find_by_email(email) is not None:
            raise ConflictError("E-mail already registered.", error_code=ErrorCode.BAD_EMAIL)

        phone_id = None
        if draft.phone is not None:
            await self._check_phone(draft.phone)
            phone_id = self.store.save_phone(
                PhoneNumber(country=draft.phone.country.upper(), number=draft.phone.number)
            ).id

        password_hash = await asyncio.to_thread(self.passwords.hash, draft.password)
        account = self._persist(
            Account(
                username=draft.username,
                email=email,
                password_hash=password_hash,
                phone_id=phone_id,
            )
        )
        logger.info("account_registered", uid=account.uid)
        await self._send_verification_mail(account)
        return account

    async def _send_verification_mail(self, account: Account) -> None:
        token = self.tokens.make_mail_verification(account)
        base = self.settings.app_base_url.rstrip("/")
        link = f"{base}{VERIFY_MAIL_PATH}?uuid={quote(token, safe='')}"
        sent = await asyncio.to_thread(
            self.email.send_email_verification, account.email, account.username, link
        )
        if not sent:
            logger.warning("verification_mail_failed", uid=account.uid)

    async def _checked_email(self, raw: str) -> str:
        email = normalize_email(raw)
        if email is None or not await self.validator.validate_email(email):
            raise ValidationError.of(ErrorCode.BAD_EMAIL)
        return email

    async def _check_phone(self, phone: PhoneNumber) -> None:
        if not is_plausible_phone(phone) or not await self.validator.validate_phone(phone):
            raise ValidationError.of(ErrorCode.BAD_PHONE)

    def _persist(self, account: Account) -> Account:
        try:
            return self.store.save(account)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError(
                    "E-mail already registered.", error_code=ErrorCode.BAD_EMAIL
                ) from exc
            if exc.field == "username":
                raise ConflictError.of(ErrorCode.USERNAME_CONFLICT) from exc
            if exc.field == "uid":
                raise NotFoundError.of(ErrorCode.USER_NOT_FOUND) from exc
            raise

    # -- credentials ----------------------------------------------------------

    def validate_password(self, username: str, plaintext: str) -> bool:
        account = self.store.find_by_username(username)
        if account is None:
            self.passwords.burn(plaintext)
            return False
        return self.passwords.verify(plaintext, account.password_hash)

    def login(self, username: str, plaintext: str) -> Account:
        account = self.store.find_by_username(username)
        if account is None:
            self.passwords.burn(plaintext)
            logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError.of(ErrorCode.USER_NOT_FOUND)
        if not self.passwords.verify(plaintext, account.password_hash):
            logger.info("login_failed", reason="invalid_password", uid=account.uid)
            raise AuthenticationError.of(ErrorCode.INVALID_PASSWORD)
        logger.info("login_succeeded", uid=account.uid)
        return account

    def account_for(self, principal: Principal) -> Account:
        account = self.store.find_by_username(principal.username)
        if account is None:
            raise NotFoundError.of(ErrorCode.USER_NOT_FOUND)
        return account

    # -- second factor --------------------------------------------------------

    def verify_2fa_code(self, account: Account, code: Optional[str]) -> bool:
        if not account.totp_secret:
            return False
        return self.totp.verify(account.totp_secret, code)

    async def send_2fa_code(self, account: Account, method: SecretMethod) -> None:
        if method in (SecretMethod.AUTHENTICATOR, SecretMethod.NONE):
            return
        await self.dispatcher.deliver(account, method)

    def set_secret_method(self, account: Account, method: SecretMethod) -> Account:
        """Record the 2FA method.

        The first enrollment stores ``method`` as is. Once a method is set,
        only AUTHENTICATOR is kept; anything else clears it to NONE.
        """
        if account.secret_method is SecretMethod.NONE:
            chosen = method
        else:
            chosen = self.apply_secret_method_update(method)
        if chosen is account.secret_method:
            return account
        updated = self._persist(replace(account, secret_method=chosen))
        logger.info("secret_method_set", uid=updated.uid, method=chosen.value)
        return updated

    @staticmethod
    def apply_secret_method_update(incoming: Optional[SecretMethod]) -> SecretMethod:
        if incoming is SecretMethod.AUTHENTICATOR:
            return SecretMethod.AUTHENTICATOR
        return SecretMethod.NONE

    def qr_uri(self, account: Account) -> str:
        platform = self.settings.platform_name
        uri = self.totp.provisioning_uri(
            account.totp_secret, f"{account.username}@{platform}"
        )
        return f"{uri}&issuer={quote(platform)}"

    async def begin_two_factor(
        self, account: Account, requested: Optional[SecretMethod]
    ) -> Optional[str]:
        """Start a 2FA round; returns the provisioning URI on first app enrollment."""
        method = requested or account.secret_method
        if method is SecretMethod.NONE:
            raise ValidationError.of(ErrorCode.METHOD_NOT_SET)

        if method is SecretMethod.AUTHENTICATOR:
            if account.secret_method is not SecretMethod.NONE:
                return None
            enrolled = self.set_secret_method(account, method)
            return self.qr_uri(enrolled)

        if account.secret_method is SecretMethod.NONE:
            account = self.set_secret_method(account, method)
        await self.send_2fa_code(account, method)
        return None

    def complete_two_factor(self, account: Account, code: Optional[str]) -> Account:
        if account.secret_method is SecretMethod.NONE:
            raise AuthenticationError.of(ErrorCode.METHOD_NOT_SET)
        if not self.verify_2fa_code(account, code):
            logger.info("two_factor_rejected", uid=account.uid)
            raise AuthenticationError.of(ErrorCode.INVALID_2FA)
        logger.info("two_factor_completed", uid=account.uid)
        return account

    # -- mail verification ----------------------------------------------------

    def verify_mail(self, value: Optional[str]) -> Account:
        """Mark an address verified from a mail token or a raw account uid."""
        value = (value or "").strip()
        if not value:
            raise ValidationError.of(ErrorCode.BAD_USERNAME)

        claims = self.tokens.codec.claims(value)
        if claims is not None:
            if claims.get("tokenType") != TokenType.MAIL_VERIFICATION.value:
                raise ValidationError.of(ErrorCode.BAD_USERNAME)
            account = None
            if claims.get("uid"):
                account = self.store.find_by_uid(claims["uid"])
            if account is None:
                account = self.store.find_by_username(claims["sub"])
        else:
            try:
                uid = str(uuid.UUID(value))
            except ValueError:
                raise ValidationError.of(ErrorCode.BAD_USERNAME) from None
            account = self.store.find_by_uid(uid)

        if account is None:
            raise NotFoundError.of(ErrorCode.USER_NOT_FOUND)
        if account.mail_verified:
            return account
        verified = self._persist(replace(account, mail_verified=True))
        logger.info("mail_verified", uid=verified.uid)
        return verified

    # -- profile --------------------------------------------------------------

    async def update_account(
        self, account: Account, changes: AccountDraft, old_password: Optional[str]
    ) -> Account:
        """Apply profile changes; nothing is written unless every check passes."""
        if not old_password or not await asyncio.to_thread(
            self.passwords.verify, old_password, account.password_hash
        ):
            raise AuthenticationError.of(ErrorCode.INVALID_PASSWORD)

        email = await self._checked_email(changes.email)
        if changes.phone is not None:
            await self._check_phone(changes.phone)

        password_hash = account.password_hash
        if changes.password:
            password_hash = await asyncio.to_thread(self.passwords.hash, changes.password)

        if self.store.find_by_uid(account.uid) is None:
            raise NotFoundError.of(ErrorCode.USER_NOT_FOUND)
        holder = self.store.find_by_email(email)
        if holder is not None and holder.uid != account.uid:
            raise ConflictError("E-mail already registered.", error_code=ErrorCode.BAD_EMAIL)

        phone_id = account.phone_id
        if changes.phone is not None:
            phone_id = self.store.save_phone(
                PhoneNumber(
                    id=account.phone_id,
                    country=changes.phone.country.upper(),
                    number=changes.phone.number,
                    account_uid=account.uid,
                )
            ).id

        updated = self._persist(
            replace(
                account,
                email=email,
                phone_id=phone_id,
                password_hash=password_hash,
                secret_method=self.apply_secret_method_update(changes.secret_method),
            )
        )
        logger.info("account_updated", uid=updated.uid)
        return updated

    def delete_account(self, principal: Principal) -> None:
        account = self.account_for(principal)
        if not self.store.delete(account):
            raise NotFoundError.of(ErrorCode.USER_NOT_FOUND)
        logger.info("account_removed", uid=account.uid)

    def phone_of(self, account: Account) -> Optional[PhoneNumber]:
        return self.store.find_phone(account.phone_id) if account.phone_id else None

    def role_of(self, account: Account) -> Optional[Role]:
        return self.store.get_role(account.role_id) if account.role_id else None
