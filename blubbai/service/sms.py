from __future__ import annotations

from typing import Optional

import httpx

from blubbai.logging import get_logger

logger = get_logger(__name__)


class SmsService:
    """Outbound SMS sink backed by the Twilio Messages REST API.

    Falls back to logging when account credentials are missing (dev mode).
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base_url: str = "https://api.twilio.com/2010-04-01",
        platform_name: str = "BlubbAI",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base_url = api_base_url.rstrip("/")
        self.platform_name = platform_name
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @staticmethod
    def _redact_number(number: str) -> str:
        return f"{number[:3]}***{number[-2:]}" if len(number) > 5 else "***"

    async def send_two_factor_code(self, to_number: str, code: str) -> bool:
        body = f"Your {self.platform_name} login code: {code}"
        if not self.is_configured:
            logger.info("sms_dev_mode", recipient=self._redact_number(to_number))
            return True

        url = f"{self.api_base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_send_rejected",
                recipient=self._redact_number(to_number),
                status_code=e.response.status_code,
            )
            return False
        except httpx.TimeoutException:
            logger.error(
                "sms_timeout",
                recipient=self._redact_number(to_number),
                timeout=self.timeout,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_transport_error",
                recipient=self._redact_number(to_number),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("sms_sent", recipient=self._redact_number(to_number))
        return True
