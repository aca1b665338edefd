from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Callable, Optional
from urllib.parse import quote

from blubbai.logging import get_logger

logger = get_logger(__name__)


class TotpEngine:
    """RFC 6238 time-based one-time codes (HMAC-SHA1, 6 digits, 30 s step).

    ``verify`` accepts codes from the previous, current and next step.
    """

    def __init__(
        self,
        *,
        step: int = 30,
        digits: int = 6,
        window: int = 1,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.step = step
        self.digits = digits
        self.window = window
        self._now = now

    @staticmethod
    def _secret_bytes(secret: str) -> bytes:
        normalized = secret.replace(" ", "").upper()
        padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("TOTP secret is not valid base32") from exc

    def generate(self, secret: str, timestamp: float) -> str:
        key = self._secret_bytes(secret)
        counter = int(timestamp // self.step).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (
            int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF
        ) % (10**self.digits)
        return str(code_int).zfill(self.digits)

    def current(self, secret: str) -> str:
        return self.generate(secret, self._now())

    def verify(self, secret: str, code: Optional[str]) -> bool:
        if not code or not isinstance(code, str):
            return False
        code = code.strip()
        if len(code) != self.digits or not code.isdigit():
            return False
        now = self._now()
        try:
            candidates = [
                self.generate(secret, now + offset * self.step)
                for offset in range(-self.window, self.window + 1)
            ]
        except ValueError:
            logger.warning("totp_secret_invalid")
            return False
        matched = False
        for candidate in candidates:
            # Check every step so timing does not reveal which one matched
            matched |= hmac.compare_digest(candidate.encode(), code.encode())
        return matched

    @staticmethod
    def provisioning_uri(secret: str, label: str, issuer: Optional[str] = None) -> str:
        uri = f"otpauth://totp/{quote(label, safe='@')}?secret={secret}"
        if issuer:
            uri += f"&issuer={quote(issuer)}"
        return uri
