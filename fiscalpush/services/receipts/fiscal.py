"""Fiscal authority (VFD) HTTP client and request builder."""

import os
import ssl
from datetime import datetime, timezone
from typing import Any

import httpx
from pydantic import BaseModel

from fiscalpush.common.config import settings
from fiscalpush.common.logging import logger
from fiscalpush.services.receipts.subjects import resolve_receipt_type, subject_reference


SANDBOX_BASE_URL = "https://vfd-sandbox.mojatax.com"
SANDBOX_API_KEY = "sandbox_test_key_123456"
SANDBOX_TIN = "123456789"
CURRENCY = "TZS"
STANDARD_TAX_CODE = "S"
STANDARD_TAX_RATE = 18.0
HEALTH_TIMEOUT_SECONDS = 10.0

PAYMENT_METHODS = {
    "cash": "CASH",
    "card": "CARD",
    "bank_transfer": "BANK",
}


def map_payment_method(method: str | None) -> str:
    return PAYMENT_METHODS.get((method or "").lower(), "OTHER")


def minor_to_major(amount: int) -> float:
    return round(amount / 100, 2)


class FiscalResponse(BaseModel):
    """Outcome of one call to the fiscal authority."""

    ok: bool
    status_code: int | None = None
    body: Any = None
    text: str = ""
    sandbox: bool = False
    error_kind: str | None = None
    error: str | None = None

    @property
    def retryable(self) -> bool:
        if self.error_kind == "transport":
            return True
        return self.status_code is not None and (self.status_code >= 500 or self.status_code == 429)


def build_receipt_request(receipt, tin: str, issued_at: datetime | None = None) -> dict:
    """Fiscal authority request body for a pending receipt row."""

    issued_at = issued_at or datetime.now(timezone.utc)
    amount = minor_to_major(receipt.amount)
    return {
        "tin": tin,
        "receiptNumber": receipt.receipt_number,
        "amount": amount,
        "paymentMethod": map_payment_method(receipt.payment_method),
        "customerDetails": {
            "name": receipt.customer_name,
            "phone": receipt.customer_phone,
            "email": receipt.customer_email,
        },
        "items": [
            {
                "description": resolve_receipt_type(receipt.receipt_type).line_description,
                "quantity": 1,
                "unitPrice": amount,
                "totalPrice": amount,
                "taxCode": STANDARD_TAX_CODE,
                "taxRate": STANDARD_TAX_RATE,
            }
        ],
        "dateTime": issued_at.strftime("%Y-%m-%d %H:%M:%S"),
        "currency": CURRENCY,
        "reference": subject_reference(receipt.model_type, receipt.model_id),
    }


class FiscalAuthorityClient:
    """Talks to the VFD API; in sandbox without an endpoint it answers locally."""

    def __init__(self, config=settings, transport: httpx.BaseTransport | None = None) -> None:
        self.sandbox = config.vfd_sandbox
        self.base_url = (config.vfd_base_url or (SANDBOX_BASE_URL if self.sandbox else "")).rstrip("/")
        self.api_key = config.vfd_api_key or (SANDBOX_API_KEY if self.sandbox else "")
        self.tin = config.vfd_tin or (SANDBOX_TIN if self.sandbox else "")
        self.cert_path = config.vfd_cert_path
        self.timeout = config.vfd_timeout_seconds
        self.synthetic = self.sandbox and not config.vfd_base_url
        self.transport = transport

    def configuration_error(self) -> str | None:
        if self.synthetic:
            return None
        if not self.base_url or not self.api_key:
            return "Fiscal authority endpoint or API key not configured"
        if not self.tin:
            return "Fiscal authority TIN not configured"
        if not self.sandbox and self.cert_path and not os.path.exists(self.cert_path):
            return f"Fiscal authority certificate not found at {self.cert_path}"
        return None

    def _client(self, timeout: float) -> httpx.Client:
        verify: ssl.SSLContext | bool = True
        if not self.sandbox and self.cert_path:
            verify = ssl.create_default_context(cafile=self.cert_path)
        return httpx.Client(timeout=timeout, verify=verify, transport=self.transport)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def submit_receipt(self, body: dict) -> FiscalResponse:
        """POST one receipt; transport failures come back as a response, not an exception."""

        if self.synthetic:
            number = body["receiptNumber"]
            payload = {
                "success": True,
                "sandbox": True,
                "message": "Sandbox receipt generated",
                "receiptNumber": number,
                "receiptUrl": f"{SANDBOX_BASE_URL}/receipts/{number}",
            }
            logger.info("vfd sandbox receipt receipt_number=%s", number)
            return FiscalResponse(ok=True, status_code=200, body=payload, sandbox=True)

        try:
            with self._client(self.timeout) as client:
                resp = client.post(f"{self.base_url}/api/receipts", json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.warning("vfd request failed receipt_number=%s error=%s", body.get("receiptNumber"), exc)
            return FiscalResponse(ok=False, error_kind="transport", error=str(exc) or exc.__class__.__name__)

        try:
            parsed = resp.json()
        except ValueError:
            parsed = None
        ok = resp.is_success
        error = None
        if not ok:
            message = parsed.get("message") if isinstance(parsed, dict) else None
            error = message or resp.text or f"HTTP {resp.status_code}"
        return FiscalResponse(
            ok=ok,
            status_code=resp.status_code,
            body=parsed,
            text=resp.text,
            sandbox=self.sandbox,
            error_kind=None if ok else "provider",
            error=error,
        )

    def test_connection(self) -> dict:
        if self.synthetic:
            return {"success": True, "message": "Sandbox mode: Connection test skipped", "sandbox": True}
        problem = self.configuration_error()
        if problem:
            return {"success": False, "message": problem}
        try:
            with self._client(HEALTH_TIMEOUT_SECONDS) as client:
                resp = client.get(f"{self.base_url}/api/health", headers=self._headers())
        except httpx.HTTPError as exc:
            return {"success": False, "message": f"Connection failed: {exc}"}
        if resp.is_success:
            return {"success": True, "message": "Connection successful", "status": resp.status_code}
        return {"success": False, "message": "Connection failed", "status": resp.status_code, "body": resp.text}
