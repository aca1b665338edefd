from __future__ import annotations

import time
from typing import Callable, Optional

from blubbai.config import Settings, get_settings
from blubbai.logging import get_logger
from blubbai.service.auth import AuthService, CredentialStore
from blubbai.service.dispatch import TwoFactorDispatcher
from blubbai.service.email import EmailService
from blubbai.service.passwords import PasswordService
from blubbai.service.sms import SmsService
from blubbai.service.token_codec import TokenCodec
from blubbai.service.tokens import TokenService
from blubbai.service.totp import TotpEngine
from blubbai.service.validation import ContactValidator, ExternalValidator
from blubbai.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Wires settings, store and services together for one application.

    Every collaborator can be passed in; anything omitted is built from the
    settings. The app keeps the instance on ``app.state.runtime``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        validator: Optional[ContactValidator] = None,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
        passwords: Optional[PasswordService] = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        timeout = self.settings.external_timeout_seconds

        self.store = store or MemoryStore(
            fs_root=self.settings.shared_fs_root,
            secret_key=self.settings.jwt_secret,
        )
        self.codec = TokenCodec(
            self.settings.jwt_secret, dev_mode=self.settings.dev_mode, now=now
        )
        self.totp = TotpEngine(now=now)
        self.passwords = passwords or PasswordService()
        self.validator = validator or ExternalValidator(
            mail_api_key=self.settings.mail_validation_api_key,
            phone_api_key=self.settings.phone_validation_api_key,
            mail_url=self.settings.mail_validation_url,
            phone_url=self.settings.phone_validation_url,
            timeout=timeout,
        )
        self.email = email or EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.mail_from,
            platform_name=self.settings.platform_name,
            timeout=timeout,
        )
        self.sms = sms or SmsService(
            account_sid=self.settings.sms_account_sid,
            auth_token=self.settings.sms_auth_token,
            from_number=self.settings.sms_from_number,
            api_base_url=self.settings.sms_api_base_url,
            platform_name=self.settings.platform_name,
            timeout=timeout,
        )
        self.dispatcher = TwoFactorDispatcher(
            totp=self.totp, email=self.email, sms=self.sms, phones=self.store
        )
        self.tokens = TokenService(self.codec, self.store)
        self.auth = AuthService(
            self.store,
            self.passwords,
            self.totp,
            self.dispatcher,
            self.validator,
            self.email,
            self.tokens,
            self.settings,
        )

        logger.info(
            "runtime_initialized",
            store=type(self.store).__name__,
            persistent=bool(self.settings.shared_fs_root),
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            dev_mode=self.settings.dev_mode,
        )
