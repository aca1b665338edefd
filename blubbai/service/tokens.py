from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from blubbai.logging import get_logger
from blubbai.service.token_codec import (
    ACCESS_TTL_SECONDS,
    MAIL_VERIFICATION_TTL_SECONDS,
    REFRESH_TTL_SECONDS,
    Claims,
    TokenCodec,
    TokenType,
)
from blubbai.storage.models import Account, RefreshToken, SecretMethod

logger = get_logger(__name__)


class RefreshStore(Protocol):
    def save_refresh(self, record: RefreshToken) -> RefreshToken: ...

    def find_refresh(self, token: str) -> Optional[RefreshToken]: ...


class TokenService:
    """Builds access, refresh and mail-verification tokens and renews access."""

    def __init__(self, codec: TokenCodec, store: RefreshStore) -> None:
        self.codec = codec
        self.store = store

    def _base_claims(self, subject: str, kind: TokenType, ttl: int) -> Claims:
        issued = self.codec.now()
        return {
            "sub": subject,
            "iat": issued,
            "exp": issued + ttl,
            "tokenType": kind.value,
        }

    def make_access(self, account: Account, two_factor_completed: bool) -> str:
        claims = self._base_claims(account.username, TokenType.ACCESS, ACCESS_TTL_SECONDS)
        claims.update(
            {
                "uid": str(account.uid),
                "secretMethod": account.secret_method.claim_value,
                "2fa_completed": bool(two_factor_completed),
                "mail_verified": bool(account.mail_verified),
            }
        )
        return self.codec.encode(claims)

    def make_refresh(self, account: Account) -> RefreshToken:
        claims = self._base_claims(account.username, TokenType.REFRESH, REFRESH_TTL_SECONDS)
        issued_at = datetime.fromtimestamp(claims["iat"], tz=timezone.utc)
        record = RefreshToken.new(
            account_uid=str(account.uid),
            token=self.codec.encode(claims),
            issued_at=issued_at,
            ttl=timedelta(seconds=REFRESH_TTL_SECONDS),
        )
        return self.store.save_refresh(record)

    def make_mail_verification(self, account: Account) -> str:
        claims = self._base_claims(
            account.username, TokenType.MAIL_VERIFICATION, MAIL_VERIFICATION_TTL_SECONDS
        )
        claims.update({"uid": str(account.uid), "mail_verified": True})
        return self.codec.encode(claims)

    def renew(self, refresh_token: str, access_token: str) -> Optional[str]:
        """Mint a fresh access token from an (possibly expired) one.

        The refresh token must verify, be unexpired, belong to the same
        subject and have a persisted, unrevoked record owned by the access
        token's account. Any failure returns None.
        """
        access = self.codec.claims(access_token, allow_expired=True)
        if not access or access.get("tokenType") != TokenType.ACCESS.value:
            logger.info("token_renew_rejected", reason="access_token_invalid")
            return None
        refresh = self.codec.claims(refresh_token)
        if not refresh or refresh.get("tokenType") != TokenType.REFRESH.value:
            logger.info("token_renew_rejected", reason="refresh_token_invalid")
            return None
        if refresh["sub"] != access["sub"]:
            logger.warning("token_renew_rejected", reason="subject_mismatch")
            return None

        record = self.store.find_refresh(refresh_token)
        now = datetime.fromtimestamp(self.codec.now(), tz=timezone.utc)
        if record is None or not record.is_active(now):
            logger.info("token_renew_rejected", reason="refresh_record_inactive")
            return None
        if record.account_uid != access["uid"]:
            logger.warning("token_renew_rejected", reason="owner_mismatch")
            return None

        try:
            method = SecretMethod.from_claim(access.get("secretMethod"))
        except ValueError:
            logger.info("token_renew_rejected", reason="secret_method_invalid")
            return None
        account = Account(
            username=access["sub"],
            email="",
            uid=access["uid"],
            secret_method=method,
            mail_verified=bool(access.get("mail_verified")),
        )
        logger.info("access_token_renewed", uid=account.uid)
        return self.make_access(account, True)
