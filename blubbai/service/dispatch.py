from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from blubbai.logging import get_logger
from blubbai.service.email import EmailService
from blubbai.service.errors import ErrorCode, ServerError, ValidationError
from blubbai.service.sms import SmsService
from blubbai.service.totp import TotpEngine
from blubbai.storage.models import Account, PhoneNumber, SecretMethod

logger = get_logger(__name__)


class PhoneLookup(Protocol):
    def find_phone(self, phone_id: str) -> Optional[PhoneNumber]: ...


class TwoFactorDispatcher:
    """Delivers the current TOTP code over email or SMS.

    Authenticator codes are generated on the user's device and are never
    dispatched.
    """

    def __init__(
        self,
        *,
        totp: TotpEngine,
        email: EmailService,
        sms: SmsService,
        phones: PhoneLookup,
    ) -> None:
        self.totp = totp
        self.email = email
        self.sms = sms
        self.phones = phones

    async def deliver(self, account: Account, method: SecretMethod) -> None:
        if method not in (SecretMethod.EMAIL, SecretMethod.SMS):
            raise ValueError(f"{method.value} codes are not dispatched")
        code = self.totp.current(account.totp_secret)

        if method is SecretMethod.EMAIL:
            # smtplib blocks; keep it off the event loop
            delivered = await asyncio.to_thread(
                self.email.send_two_factor_code, account.email, code
            )
        else:
            phone = self.phones.find_phone(account.phone_id) if account.phone_id else None
            full_number = phone.full_number if phone else None
            if not full_number:
                raise ValidationError.of(ErrorCode.BAD_PHONE)
            delivered = await self.sms.send_two_factor_code(full_number, code)

        if not delivered:
            logger.error("two_factor_delivery_failed", uid=account.uid, method=method.value)
            raise ServerError("could not deliver the 2FA code")
        logger.info("two_factor_code_dispatched", uid=account.uid, method=method.value)
