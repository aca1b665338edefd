from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional

from blubbai.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS512"

ACCESS_TTL_SECONDS = 10 * 60
REFRESH_TTL_SECONDS = 14 * 24 * 60 * 60
MAIL_VERIFICATION_TTL_SECONDS = 12 * 60 * 60
TEST_TOKEN_TTL_SECONDS = 365 * 24 * 60 * 60

Claims = Dict[str, Any]


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MAIL_VERIFICATION = "mail_verification"


# Claims every token must carry, plus the per-kind extras
_COMMON_CLAIMS = ("sub", "iat", "exp", "tokenType")
_KIND_CLAIMS = {
    TokenType.ACCESS: ("uid", "secretMethod", "2fa_completed", "mail_verified"),
    TokenType.REFRESH: (),
    TokenType.MAIL_VERIFICATION: ("uid", "mail_verified"),
}


class TokenError(Exception):
    """Base class for token decoding failures."""


class InvalidSignature(TokenError):
    """The MAC does not match the header and body."""


class MalformedToken(TokenError):
    """The token is not a well-formed signed token with the required claims."""


class TokenCodec:
    """Encode and decode HS512-signed compact tokens.

    The codec only knows about signatures, the claim set and expiration. It
    never touches storage. ``now`` returns epoch seconds and can be replaced
    to test expiry without sleeping.
    """

    def __init__(
        self,
        secret: str,
        *,
        dev_mode: bool = False,
        now: Callable[[], float] = time.time,
    ) -> None:
        self._key = secret.encode("utf-8")
        self.dev_mode = dev_mode
        self._now = now

    def now(self) -> int:
        return int(self._now())

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha512)
        return self._encode_segment(digest.digest())

    def encode(self, claims: Claims) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Claims:
        """Verify the signature and claim set and return the claims.

        Expiration is not checked here; see :meth:`is_valid` and
        :meth:`claims`.

        Raises:
            MalformedToken: structure, encoding, algorithm or claims are wrong
            InvalidSignature: the MAC does not verify
        """
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError as exc:
            raise MalformedToken("header is not valid base64 JSON") from exc
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            raise MalformedToken("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("utf-8"), sig_b64.encode("utf-8")):
            raise InvalidSignature("token signature mismatch")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            raise MalformedToken("payload is not valid base64 JSON") from exc
        if not isinstance(claims, dict):
            raise MalformedToken("payload must be a JSON object")
        self._check_claims(claims)
        return claims

    @staticmethod
    def _check_claims(claims: Claims) -> None:
        missing = [name for name in _COMMON_CLAIMS if name not in claims]
        if missing:
            raise MalformedToken(f"missing claims: {', '.join(missing)}")
        try:
            kind = TokenType(claims["tokenType"])
        except ValueError as exc:
            raise MalformedToken("unknown token type") from exc
        missing = [name for name in _KIND_CLAIMS[kind] if name not in claims]
        if missing:
            raise MalformedToken(f"missing claims: {', '.join(missing)}")
        for name in ("iat", "exp"):
            if isinstance(claims[name], bool) or not isinstance(claims[name], (int, float)):
                raise MalformedToken(f"claim {name} must be numeric")

    def is_expired(self, claims: Claims) -> bool:
        return not self.now() < claims["exp"]

    def is_valid(self, token: str) -> bool:
        try:
            claims = self.decode(token)
        except TokenError:
            return False
        return not self.is_expired(claims)

    def claims(self, token: str, *, allow_expired: bool = False) -> Optional[Claims]:
        """Return verified claims, or None when the token cannot be trusted.

        With ``allow_expired`` an expired but correctly signed token still
        yields its claims.
        """
        try:
            claims = self.decode(token)
        except TokenError as exc:
            logger.debug("token_decode_failed", reason=str(exc))
            return None
        if not allow_expired and self.is_expired(claims):
            return None
        return claims

    def get_claim(self, token: str, name: str, *, allow_expired: bool = False) -> Any:
        claims = self.claims(token, allow_expired=allow_expired)
        if claims is None:
            return None
        return claims.get(name)

    def make_test_token(self, subject: str = "tester") -> str:
        """Long-lived, fully verified access token for local tooling only."""
        if not self.dev_mode:
            raise PermissionError("test tokens are only available in dev mode")
        issued = self.now()
        logger.warning("test_token_issued", sub=subject)
        return self.encode(
            {
                "sub": subject,
                "iat": issued,
                "exp": issued + TEST_TOKEN_TTL_SECONDS,
                "tokenType": TokenType.ACCESS.value,
                "uid": str(uuid.UUID(int=0)),
                "secretMethod": "AUTHENTICATOR",
                "2fa_completed": True,
                "mail_verified": True,
            }
        )
