import hashlib
import hmac
import json
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from vaultpay.config import (
    DEFAULT_CURRENCY,
    PAYSTACK_BASE_URL,
    PAYSTACK_PUBLIC_KEY,
    PAYSTACK_RETRY_ATTEMPTS,
    PAYSTACK_SECRET_KEY,
    PAYSTACK_TIMEOUT,
    PAYSTACK_WEBHOOK_SECRET,
)
from vaultpay.errors import GatewayError

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ["card", "bank_transfer", "ussd", "qr"]

# Fields of a transaction payload that Paystack reports in minor units
_MINOR_UNIT_FIELDS = ("amount", "fees", "requested_amount")


def to_minor_units(amount: Union[Decimal, int, float, str]) -> int:
    """Convert a major-unit amount (naira) to the gateway's minor units (kobo)."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount: Optional[Union[int, str]]) -> Optional[Decimal]:
    if amount is None:
        return None
    return (Decimal(str(amount)) / 100).quantize(Decimal("0.01"))


class PaystackService:
    """Thin client for the Paystack REST API.

    Every call unwraps Paystack's ``{status, message, data}`` envelope and
    raises :class:`GatewayError` with the gateway's message when the call
    fails. Amounts are major units on this side of the client.
    """

    def __init__(
        self,
        secret_key: str = PAYSTACK_SECRET_KEY,
        public_key: str = PAYSTACK_PUBLIC_KEY,
        base_url: str = PAYSTACK_BASE_URL,
        webhook_secret: str = PAYSTACK_WEBHOOK_SECRET,
        timeout: float = PAYSTACK_TIMEOUT,
        retry_attempts: int = PAYSTACK_RETRY_ATTEMPTS,
        session: requests.Session = None,
    ):
        self.public_key = public_key
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret or secret_key
        self.timeout = timeout
        self.retry_attempts = retry_attempts

        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            }
        )
        # Only reads are replayed; a POST may already have moved money
        retry = Retry(
            total=retry_attempts,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        self.session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session.mount("http://", HTTPAdapter(max_retries=retry))

    def _request(self, method: str, path: str, action: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Paystack {method} {path} failed: {str(e)}")
            raise GatewayError(f"Failed to {action}: {str(e)}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        message = body.get("message") or response.reason or "Unknown error"
        if not response.ok:
            logger.warning(f"Paystack {method} {path} returned {response.status_code}: {message}")
            raise GatewayError(f"Failed to {action}: {message}", upstream_status=response.status_code)
        if not body.get("status"):
            logger.warning(f"Paystack {method} {path} rejected: {message}")
            raise GatewayError(f"Failed to {action}: {message}", upstream_status=response.status_code)
        return body

    @staticmethod
    def _transaction(data: Dict[str, Any]) -> Dict[str, Any]:
        converted = dict(data)
        for field in _MINOR_UNIT_FIELDS:
            if converted.get(field) is not None:
                converted[field] = to_major_units(converted[field])
        return converted

    def initialize_transaction(
        self,
        email: str,
        amount,
        reference: str,
        currency: str = None,
        callback_url: str = None,
        metadata: Dict[str, Any] = None,
        channels: List[str] = None,
    ) -> Dict[str, str]:
        """Open a hosted checkout and return its authorization url."""
        body = self._request(
            "POST",
            "/transaction/initialize",
            "initialize Paystack transaction",
            json={
                "email": email,
                "amount": to_minor_units(amount),
                "reference": reference,
                "currency": currency or DEFAULT_CURRENCY,
                "callback_url": callback_url,
                "metadata": metadata,
                "channels": channels or DEFAULT_CHANNELS,
            },
        )
        data = body["data"]
        return {
            "authorization_url": data["authorization_url"],
            "access_code": data["access_code"],
            "reference": data["reference"],
        }

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        body = self._request(
            "GET", f"/transaction/verify/{reference}", "verify Paystack transaction"
        )
        return self._transaction(body["data"])

    def get_transaction(self, transaction_id) -> Dict[str, Any]:
        body = self._request(
            "GET", f"/transaction/{transaction_id}", "fetch transaction details"
        )
        return self._transaction(body["data"])

    def list_transactions(self, per_page: int = 50, page: int = 1, **filters) -> Dict[str, Any]:
        params = {"perPage": per_page, "page": page}
        params.update({k: v for k, v in filters.items() if v is not None})
        body = self._request("GET", "/transaction", "list transactions", params=params)
        return {
            "data": [self._transaction(item) for item in body.get("data", [])],
            "meta": body.get("meta", {}),
        }

    def refund_transaction(self, reference: str, amount=None) -> Dict[str, Any]:
        """Refund a transaction in full, or partially when ``amount`` is given."""
        payload = {"transaction": reference}
        if amount is not None:
            payload["amount"] = to_minor_units(amount)
        body = self._request("POST", "/refund", "process refund", json=payload)
        return self._transaction(body.get("data") or {})

    def charge_authorization(
        self,
        authorization_code: str,
        email: str,
        amount,
        reference: str,
        metadata: Dict[str, Any] = None,
    ) -> Dict[str, Any]:
        body = self._request(
            "POST",
            "/transaction/charge_authorization",
            "charge authorization",
            json={
                "authorization_code": authorization_code,
                "email": email,
                "amount": to_minor_units(amount),
                "reference": reference,
                "metadata": metadata,
            },
        )
        return self._transaction(body["data"])

    def resolve_account(self, account_number: str, bank_code: str) -> Dict[str, Any]:
        body = self._request(
            "GET",
            "/bank/resolve",
            "validate account",
            params={"account_number": account_number, "bank_code": bank_code},
        )
        return body["data"]

    def list_banks(self) -> List[Dict[str, Any]]:
        body = self._request("GET", "/bank", "fetch banks")
        return body["data"]

    def create_customer(
        self,
        email: str,
        first_name: str = None,
        last_name: str = None,
        phone: str = None,
        metadata: Dict[str, Any] = None,
    ) -> Dict[str, Any]:
        body = self._request(
            "POST",
            "/customer",
            "create customer",
            json={
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "phone": phone,
                "metadata": metadata,
            },
        )
        return body["data"]

    def get_customer(self, customer_code) -> Dict[str, Any]:
        body = self._request("GET", f"/customer/{customer_code}", "fetch customer")
        return body["data"]

    def submit_otp(self, reference: str, otp: str) -> Dict[str, Any]:
        body = self._request(
            "POST",
            "/charge/submit_otp",
            "verify OTP",
            json={"reference": reference, "otp": otp},
        )
        return self._transaction(body["data"])

    def verify_webhook_signature(self, payload: Union[bytes, str, dict], signature: str) -> bool:
        """Check the ``x-paystack-signature`` header against the raw body.

        Paystack signs the exact request body with HMAC-SHA512. Pass the raw
        bytes whenever possible: re-serialising a parsed body may not
        reproduce the signed bytes.
        """
        if not signature:
            return False
        if isinstance(payload, dict):
            payload = json.dumps(payload, separators=(",", ":"))
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        expected = hmac.new(
            self.webhook_secret.encode("utf-8"), payload, hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def get_paystack_service() -> PaystackService:
    return _paystack_service


_paystack_service = PaystackService()
