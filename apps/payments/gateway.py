"""
InTouch Pay mobile money gateway.

Request signing, transaction id generation and the HTTP client. Responses
are parsed into small value objects at this boundary so the rest of the
payments app never touches raw gateway JSON.
"""
import datetime
import hashlib
import json
import logging
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union

import requests
from django.conf import settings
from django.utils import timezone

from .exceptions import TransientGatewayError, InvalidGatewayResponse

logger = logging.getLogger(__name__)

SUCCESS_RESPONSE_CODE = "01"
SUCCESS_STATUS = "Successfully"
PENDING_RESPONSE_CODE = "1000"
PENDING_STATUS = "Pending"

TXN_OFFSET_MIN = 1_000_000_000_000
TXN_OFFSET_MAX = 9_999_999_999_999


def generate_transaction_id() -> str:
    """
    Epoch millis plus a random 13-digit offset. Not guaranteed unique;
    the gateway rejects duplicates and that surfaces as an initiation failure.
    """
    millis = int(time.time() * 1000)
    return str(int(millis + random.uniform(TXN_OFFSET_MIN, TXN_OFFSET_MAX)))


def format_timestamp(moment=None) -> str:
    """YYYYMMDDhhmmss in UTC."""
    moment = moment or timezone.now()
    if timezone.is_aware(moment):
        moment = moment.astimezone(datetime.timezone.utc)
    return moment.strftime("%Y%m%d%H%M%S")


def sign_request(username: str, account_no: str, secret: str, timestamp: str) -> str:
    """SHA-256 hex of username + accountno + partner password + timestamp."""
    raw = f"{username}{account_no}{secret}{timestamp}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def format_amount(amount) -> str:
    amount = Decimal(str(amount))
    if amount == amount.to_integral_value():
        return str(int(amount))
    return str(amount.quantize(Decimal("0.01")))


# --- Parsed responses ---

@dataclass(frozen=True)
class Accepted:
    transaction_id: str
    raw: dict
    message: str = ""


@dataclass(frozen=True)
class Rejected:
    reason: str
    raw: dict


@dataclass(frozen=True)
class Malformed:
    raw: object


GatewayResponse = Union[Accepted, Rejected, Malformed]


@dataclass(frozen=True)
class GatewayStatus:
    """
    Terminal-or-pending result reported by the gateway, either pushed to the
    callback URL or pulled from the status endpoint.
    """
    responsecode: str = ""
    status: str = ""
    statusdesc: str = ""
    transactionid: str = ""
    referenceno: str = ""
    requesttransactionid: str = ""
    raw: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, payload) -> "GatewayStatus":
        """
        Accepts the plain body or the `jsonpayload` wrapper some gateway
        versions send, where the wrapper may itself be a JSON string.
        """
        if hasattr(payload, "dict"):
            payload = payload.dict()
        if not isinstance(payload, dict):
            raise InvalidGatewayResponse(raw=payload)

        body = payload.get("jsonpayload", payload)
        if isinstance(body, str):
            try:
                body = json.loads(body)
            except ValueError:
                raise InvalidGatewayResponse("jsonpayload is not valid JSON", raw=payload)
        if not isinstance(body, dict):
            raise InvalidGatewayResponse(raw=payload)

        def text(key):
            value = body.get(key)
            return "" if value is None else str(value)

        return cls(
            responsecode=text("responsecode"),
            status=text("status"),
            statusdesc=text("statusdesc") or text("message"),
            transactionid=text("transactionid"),
            referenceno=text("referenceno"),
            requesttransactionid=text("requesttransactionid"),
            raw=body,
        )

    @property
    def is_success(self) -> bool:
        return self.responsecode == SUCCESS_RESPONSE_CODE or self.status == SUCCESS_STATUS

    @property
    def is_pending(self) -> bool:
        return not self.is_success and (
            self.status == PENDING_STATUS or self.responsecode == PENDING_RESPONSE_CODE
        )


class IntouchPayClient:
    """
    Thin client over the InTouch Pay HTTP API. Every call is bounded by `timeout`.
    """

    def __init__(self, username, account_no, password, api_url, status_url,
                 callback_base_url, timeout=30, session: Optional[requests.Session] = None):
        self.username = username
        self.account_no = account_no
        self.password = password
        self.api_url = api_url
        self.status_url = status_url
        self.callback_base_url = callback_base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls):
        return cls(
            username=settings.INTOUCH_PAY_USERNAME,
            account_no=settings.INTOUCH_PAY_ACCOUNT_NO,
            password=settings.INTOUCH_PAY_PASSWORD,
            api_url=settings.INTOUCH_PAY_API_URL,
            status_url=settings.INTOUCH_PAY_STATUS_URL,
            callback_base_url=settings.PAYMENT_CALLBACK_BASE_URL,
            timeout=settings.INTOUCH_PAY_TIMEOUT,
        )

    def callback_url(self, transaction_id: str) -> str:
        return f"{self.callback_base_url}/api/v1/payments/callback/{transaction_id}/"

    def _credentials(self, timestamp: str) -> dict:
        return {
            "username": self.username,
            "timestamp": timestamp,
            "password": sign_request(self.username, self.account_no, self.password, timestamp),
        }

    def build_payment_request(self, amount, phone: str, transaction_id: str, timestamp: str) -> dict:
        return {
            **self._credentials(timestamp),
            "amount": format_amount(amount),
            "mobilephone": phone,
            "mobilephoneno": phone,
            "requesttransactionid": transaction_id,
            "accountno": self.account_no,
            "callbackurl": self.callback_url(transaction_id),
        }

    def _post(self, url: str, payload: dict):
        """
        Returns the decoded JSON body, or the raw text when it is not JSON.
        Transport failures and non-2xx raise TransientGatewayError.
        """
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Gateway request to %s failed: %s", url, e)
            raise TransientGatewayError(f"Payment gateway unreachable: {e.__class__.__name__}")

        if not response.ok:
            logger.warning("Gateway returned HTTP %s", response.status_code, extra={"payload": response.text[:500]})
            raise TransientGatewayError(
                f"Payment gateway returned HTTP {response.status_code}", raw=response.text
            )

        try:
            return response.json()
        except ValueError:
            return response.text

    def request_payment(self, amount, phone: str, transaction_id: str, timestamp: Optional[str] = None) -> GatewayResponse:
        timestamp = timestamp or format_timestamp()
        payload = self.build_payment_request(amount, phone, transaction_id, timestamp)

        logger.info(
            "Requesting payment of %s from %s", payload["amount"], phone,
            extra={"transaction_id": transaction_id, "payload": payload},
        )
        body = self._post(self.api_url, payload)
        return parse_payment_response(transaction_id, body)

    def query_status(self, transaction_id: str) -> GatewayStatus:
        timestamp = format_timestamp()
        payload = {
            **self._credentials(timestamp),
            "requesttransactionid": transaction_id,
            "accountno": self.account_no,
        }
        body = self._post(self.status_url, payload)
        if not isinstance(body, dict):
            raise InvalidGatewayResponse(raw=body)
        return GatewayStatus.from_payload(body)


def parse_payment_response(transaction_id: str, body) -> GatewayResponse:
    if not isinstance(body, dict):
        return Malformed(raw=body)

    if body.get("success") is True and body.get("status") == PENDING_STATUS:
        return Accepted(transaction_id=transaction_id, raw=body, message=str(body.get("message") or ""))

    reason = body.get("message") or body.get("statusdesc") or body.get("status") or "Unknown error"
    return Rejected(reason=str(reason), raw=body)
