"""SMS provider adapters used to send receipt links to customers.

Several providers are configured side by side; `sms_default_provider` picks
the one receipts go through.
"""

import re

import httpx
from pydantic import BaseModel
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from fiscalpush.common.config import settings
from fiscalpush.common.logging import logger


class SmsResult(BaseModel):
    status: bool
    message: str
    provider: str = ""


def normalize_phone(phone: str) -> str:
    """Digits only, with the 255 country code added to local numbers."""

    digits = re.sub(r"[^0-9]", "", phone or "")
    if len(digits) == 9 and not digits.startswith("0"):
        return "255" + digits
    if len(digits) == 10 and digits.startswith("0"):
        return "255" + digits[1:]
    return digits


def _masked(phone: str) -> str:
    return phone[:5] + "****"


class SmsGateway:
    name = ""

    def send_sms(self, phone: str, message: str) -> SmsResult:
        raise NotImplementedError


class MobishastraGateway(SmsGateway):
    """HTTP GET gateway answering with plain text; `Error...` bodies are failures."""

    name = "mobishastra"

    def __init__(self, config=settings, transport: httpx.BaseTransport | None = None) -> None:
        self.url = config.mobishastra_url
        self.user = config.mobishastra_user
        self.password = config.mobishastra_password
        self.sender_id = config.mobishastra_sender_id
        self.transport = transport

    def send_sms(self, phone: str, message: str) -> SmsResult:
        if not (self.user and self.password and self.sender_id):
            return SmsResult(status=False, message="Incomplete SMS gateway configuration", provider=self.name)
        phone = normalize_phone(phone)
        if len(phone) < 7:
            return SmsResult(status=False, message="Invalid phone number", provider=self.name)
        params = {
            "user": self.user,
            "pwd": self.password,
            "senderid": self.sender_id,
            "mobileno": phone,
            "msgtext": message,
            "priority": "High",
            "CountryCode": "ALL",
        }
        try:
            with httpx.Client(timeout=30.0, transport=self.transport) as client:
                resp = client.get(self.url, params=params, headers={"Accept": "text/plain"})
        except httpx.HTTPError as exc:
            logger.error("sms send failed provider=%s phone=%s error=%s", self.name, _masked(phone), exc)
            return SmsResult(status=False, message="Failed to send SMS. Please try again later.", provider=self.name)
        body = resp.text.strip()
        if not resp.is_success or not body or body.startswith("Error"):
            logger.error(
                "sms gateway rejected provider=%s phone=%s status=%s body=%s",
                self.name,
                _masked(phone),
                resp.status_code,
                body,
            )
            return SmsResult(status=False, message="Failed to send SMS. Please try again later.", provider=self.name)
        logger.info("sms sent provider=%s phone=%s", self.name, _masked(phone))
        return SmsResult(status=True, message="SMS sent successfully", provider=self.name)


class TwilioGateway(SmsGateway):
    name = "twilio"

    def __init__(self, config=settings, client: TwilioClient | None = None) -> None:
        self.from_number = config.twilio_from_number
        self._client = client
        self._account_sid = config.twilio_account_sid
        self._auth_token = config.twilio_auth_token

    def _get_client(self) -> TwilioClient | None:
        if self._client is None and self._account_sid and self._auth_token:
            self._client = TwilioClient(self._account_sid, self._auth_token)
        return self._client

    def send_sms(self, phone: str, message: str) -> SmsResult:
        client = self._get_client()
        if client is None or not self.from_number:
            return SmsResult(status=False, message="Incomplete SMS gateway configuration", provider=self.name)
        phone = normalize_phone(phone)
        if len(phone) < 7:
            return SmsResult(status=False, message="Invalid phone number", provider=self.name)
        try:
            sent = client.messages.create(to=f"+{phone}", from_=self.from_number, body=message)
        except TwilioException as exc:
            logger.error("sms send failed provider=%s phone=%s error=%s", self.name, _masked(phone), exc)
            return SmsResult(status=False, message="Failed to send SMS. Please try again later.", provider=self.name)
        logger.info("sms sent provider=%s phone=%s sid=%s", self.name, _masked(phone), sent.sid)
        return SmsResult(status=True, message="SMS sent successfully", provider=self.name)


SMS_PROVIDERS = {
    MobishastraGateway.name: MobishastraGateway,
    TwilioGateway.name: TwilioGateway,
}


def build_sms_gateway(config=settings) -> SmsGateway | None:
    """Adapter for the configured default provider, or `None` when unset."""

    provider = (config.sms_default_provider or "").lower()
    if not provider:
        return None
    gateway_cls = SMS_PROVIDERS.get(provider)
    if gateway_cls is None:
        logger.warning("unknown sms provider configured provider=%s", provider)
        return None
    return gateway_cls(config)
