from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional, Protocol

import httpx

from blubbai.logging import get_logger
from blubbai.service.errors import ServerError
from blubbai.storage.models import PhoneNumber

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,32}$")
_NATIONAL_NUMBER = re.compile(r"^[0-9]{4,15}$")


def normalize_email(value: str) -> Optional[str]:
    """Return the normalized address, or None when it is not syntactically valid."""
    if not isinstance(value, str):
        return None
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        return None
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return None
    if not _EMAIL_LOCAL_PART.match(local):
        return None
    labels = domain.split(".")
    if len(labels) < 2:
        return None
    if any(len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels):
        return None
    return normalized


def is_valid_username(value: str) -> bool:
    return bool(isinstance(value, str) and _USERNAME_PATTERN.match(value))


def is_plausible_phone(phone: PhoneNumber) -> bool:
    """Local shape check run before the external phone validation."""
    return bool(_NATIONAL_NUMBER.match(phone.number or "")) and phone.full_number is not None


class ContactValidator(Protocol):
    async def validate_email(self, email: str) -> bool: ...

    async def validate_phone(self, phone: PhoneNumber) -> bool: ...


class ExternalValidator:
    """Email and phone checks against the abstractapi validation services.

    A non-200 reply or a negative verdict means the data is invalid. Timeouts
    and transport failures raise :class:`ServerError` because they say
    nothing about the user's data. Without an API key the check is skipped.
    """

    def __init__(
        self,
        *,
        mail_api_key: Optional[str],
        phone_api_key: Optional[str],
        mail_url: str,
        phone_url: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.mail_api_key = mail_api_key
        self.phone_api_key = phone_api_key
        self.mail_url = mail_url
        self.phone_url = phone_url
        self.timeout = timeout
        self._transport = transport

    async def _get_json(self, service: str, url: str, params: dict) -> Optional[Any]:
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            ) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as exc:
            logger.error("validation_timeout", service=service, timeout=self.timeout)
            raise ServerError(f"{service} validation timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "validation_transport_error",
                service=service,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError(f"{service} validation unavailable") from exc

        if response.status_code != 200:
            logger.warning(
                "validation_rejected", service=service, status_code=response.status_code
            )
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("validation_response_unreadable", service=service)
            return None

    async def validate_email(self, email: str) -> bool:
        if not self.mail_api_key:
            logger.warning("validation_skipped", service="email")
            return True
        payload = await self._get_json(
            "email",
            self.mail_url,
            {"api_key": self.mail_api_key, "email": email, "auto_correct": "false"},
        )
        if not isinstance(payload, dict):
            return False
        valid_format = payload.get("is_valid_format") or {}
        return payload.get("deliverability") == "DELIVERABLE" and bool(
            isinstance(valid_format, dict) and valid_format.get("value")
        )

    async def validate_phone(self, phone: PhoneNumber) -> bool:
        if not self.phone_api_key:
            logger.warning("validation_skipped", service="phone")
            return True
        payload = await self._get_json(
            "phone",
            self.phone_url,
            {
                "api_key": self.phone_api_key,
                "phone": phone.number,
                "country": phone.country,
            },
        )
        if not isinstance(payload, dict):
            return False
        return payload.get("valid") is True
