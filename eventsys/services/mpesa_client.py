"""M-Pesa (Safaricom Daraja) gateway client.

Responsible for:
- OAuth client-credentials token acquisition, cached process-wide
- STK push initiation (Lipa na M-Pesa Online)
- STK push status queries
- Phone number normalization and request signing

One MpesaClient instance lives in eventsys.extensions and is configured in
create_app() via init_app(). It knows nothing about events, users or the
database; callers persist whatever it returns.
"""

import base64
import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import requests

from eventsys.errors import (
    GatewayAuthError,
    GatewayNetworkError,
    GatewayRejected,
    ValidationError,
)

logger = logging.getLogger(__name__)

OAUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja answers a status query for an in-flight push with this error code.
STILL_PROCESSING_CODE = "500.001.1001"

# Refresh the token this many seconds before the provider says it expires.
TOKEN_EXPIRY_MARGIN = 60

CANONICAL_PHONE_RE = re.compile(r"^254\d{9}$")


def normalize_phone(phone):
    """Map any common Kenyan MSISDN spelling to 254XXXXXXXXX.

    "0712345678", "+254712345678", "254712345678" and "0712 345 678"
    all become "254712345678".

    Raises ValidationError if the result isn't a 12-digit 254 number.
    """
    cleaned = re.sub(r"\D", "", phone or "")
    # "+254" is already "254" once non-digits are gone
    cleaned = re.sub(r"^(0|254)", "", cleaned, count=1)
    normalized = f"254{cleaned}"
    if not CANONICAL_PHONE_RE.match(normalized):
        raise ValidationError("A valid M-Pesa phone number is required.")
    return normalized


def round_amount(amount):
    """Daraja only accepts whole shillings; always round up."""
    value = Decimal(str(amount))
    if value <= 0:
        raise ValidationError("Payment amount must be positive.")
    return int(math.ceil(value))


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float  # time.monotonic() deadline

    @property
    def is_expired(self):
        return time.monotonic() >= self.expires_at


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: str
    customer_message: str = ""


@dataclass(frozen=True)
class StkQueryResult:
    checkout_request_id: str
    result_code: str | None  # None while the payer hasn't answered yet
    result_desc: str

    @property
    def is_pending(self):
        return self.result_code is None


class MpesaClient:
    """Process-wide Daraja client with a lazily refreshed OAuth token."""

    def __init__(self, app=None):
        self.base_url = None
        self.consumer_key = None
        self.consumer_secret = None
        self.shortcode = None
        self.passkey = None
        self.transaction_type = "CustomerPayBillOnline"
        self.callback_url = None
        self.timeout = 10
        self.tz = ZoneInfo("Africa/Nairobi")

        self._http = requests.Session()
        self._token = None
        self._token_lock = threading.Lock()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        config = app.config
        self.base_url = config["MPESA_BASE_URL"].rstrip("/")
        self.consumer_key = config.get("MPESA_CONSUMER_KEY")
        self.consumer_secret = config.get("MPESA_CONSUMER_SECRET")
        self.shortcode = config.get("MPESA_SHORTCODE")
        self.passkey = config.get("MPESA_PASSKEY")
        self.transaction_type = config.get("MPESA_TRANSACTION_TYPE", self.transaction_type)
        self.timeout = config.get("MPESA_TIMEOUT", self.timeout)
        self.tz = ZoneInfo(config.get("MPESA_TIMEZONE", "Africa/Nairobi"))

        callback_url = config.get("MPESA_CALLBACK_URL")
        token = config.get("MPESA_CALLBACK_TOKEN")
        if callback_url and token:
            sep = "&" if "?" in callback_url else "?"
            callback_url = f"{callback_url}{sep}token={token}"
        self.callback_url = callback_url

        # New credentials invalidate whatever was cached for the old ones
        self.invalidate_token()
        app.extensions["mpesa"] = self

    # ──────────────────────────────────────────────
    # Signing helpers
    # ──────────────────────────────────────────────

    def generate_timestamp(self, now=None):
        """Return the provider timestamp, YYYYMMDDHHMMSS in East Africa Time."""
        now = now or datetime.now(self.tz)
        return now.strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp):
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    # ──────────────────────────────────────────────
    # OAuth
    # ──────────────────────────────────────────────

    def get_access_token(self):
        """Return a valid bearer token, fetching one if needed.

        Concurrent callers that find the cache empty queue on the lock; the
        first one fetches, the rest re-check and reuse its token.
        """
        token = self._token
        if token and not token.is_expired:
            return token.value

        with self._token_lock:
            token = self._token
            if token and not token.is_expired:
                return token.value
            self._token = self._fetch_token()
            return self._token.value

    def invalidate_token(self):
        with self._token_lock:
            self._token = None

    def _fetch_token(self):
        if not self.consumer_key or not self.consumer_secret:
            raise GatewayAuthError("M-Pesa consumer key/secret not configured")

        try:
            resp = self._http.get(
                f"{self.base_url}{OAUTH_PATH}",
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GatewayNetworkError(f"OAuth request failed: {e}") from e

        if resp.status_code >= 500:
            raise GatewayNetworkError(f"OAuth endpoint returned {resp.status_code}")
        if resp.status_code != 200:
            logger.error(f"M-Pesa OAuth refused ({resp.status_code}): {resp.text[:200]}")
            raise GatewayAuthError(f"OAuth endpoint returned {resp.status_code}")

        try:
            data = resp.json()
            value = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            raise GatewayAuthError("OAuth response did not contain an access token") from e

        # Daraja sends expires_in as a string, e.g. "3599"
        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError) as e:
            raise GatewayAuthError(
                f"OAuth response had an unreadable expires_in: {data.get('expires_in')!r}"
            ) from e
        lifetime = max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        logger.info(f"Obtained M-Pesa access token (valid {lifetime}s)")
        return AccessToken(value=value, expires_at=time.monotonic() + lifetime)

    # ──────────────────────────────────────────────
    # STK push
    # ──────────────────────────────────────────────

    def initiate_payment(self, phone, amount, reference, description="Event Payment"):
        """Send an STK push prompt to the payer's phone.

        Returns StkPushResult on ResponseCode "0".
        Raises ValidationError, GatewayAuthError, GatewayNetworkError or
        GatewayRejected.
        """
        msisdn = normalize_phone(phone)
        timestamp = self.generate_timestamp()

        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": round_amount(amount),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }
        logger.info(
            f"Initiating STK push: phone={msisdn} amount={body['Amount']} ref={reference}"
        )

        data = self._post(STK_PUSH_PATH, body)

        code = str(data.get("ResponseCode", ""))
        if code != "0":
            raise GatewayRejected(
                code or "unknown",
                data.get("ResponseDescription") or "STK push failed",
            )

        if not data.get("CheckoutRequestID"):
            raise GatewayRejected(code, "STK push accepted without a CheckoutRequestID")

        return StkPushResult(
            checkout_request_id=str(data["CheckoutRequestID"]),
            merchant_request_id=data.get("MerchantRequestID", ""),
            customer_message=data.get("CustomerMessage", ""),
        )

    def query_status(self, checkout_request_id):
        """Ask the provider how an STK push ended.

        A push the payer hasn't answered yet comes back as a pending result
        rather than an error.
        """
        timestamp = self.generate_timestamp()
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            data = self._post(STK_QUERY_PATH, body)
        except GatewayRejected as e:
            if e.code == STILL_PROCESSING_CODE:
                return StkQueryResult(checkout_request_id, None, e.description)
            raise

        result_code = data.get("ResultCode")
        if result_code is None or result_code == "":
            return StkQueryResult(
                checkout_request_id, None, data.get("ResponseDescription", "")
            )
        return StkQueryResult(
            checkout_request_id, str(result_code), data.get("ResultDesc", "")
        )

    # ──────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────

    def _post(self, path, body):
        token = self.get_access_token()
        try:
            resp = self._http.post(
                f"{self.base_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GatewayNetworkError(f"{path} request failed: {e}") from e

        if resp.status_code == 401:
            # Token revoked or expired early; the next call fetches a new one
            self.invalidate_token()
            raise GatewayAuthError(f"{path} rejected the access token")

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = None

        if resp.status_code != 200:
            if data and data.get("errorCode"):
                raise GatewayRejected(data["errorCode"], data.get("errorMessage", ""))
            if resp.status_code >= 500:
                raise GatewayNetworkError(f"{path} returned {resp.status_code}")
            raise GatewayRejected(str(resp.status_code), resp.text[:200])

        if data is None:
            raise GatewayNetworkError(f"{path} returned a body that is not a JSON object")
        return data
