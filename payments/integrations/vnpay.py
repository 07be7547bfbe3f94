"""VNPay gateway adapter.

Everything above ``VNPayClient`` is pure: no ORM and no network, so the
signing rules can be tested in isolation. The client talks to the merchant
web API for refunds and status queries.
"""

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote_plus
from zoneinfo import ZoneInfo

import requests
from requests import RequestException
from django.conf import settings
from django.utils import timezone
from django.utils.crypto import get_random_string

from orders.exceptions import GatewayUnavailable, SignatureInvalid

logger = logging.getLogger(__name__)

GATEWAY_TZ = ZoneInfo("Asia/Ho_Chi_Minh")
DATE_FORMAT = "%Y%m%d%H%M%S"
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")
REQUIRED_CALLBACK_FIELDS = ("vnp_TxnRef", "vnp_Amount", "vnp_ResponseCode")
SUCCESS_CODE = "00"
_DIGITS = re.compile(r"^\d+$")

RESPONSE_MESSAGES = {
    "00": "Transaction successful",
    "07": "Amount deducted, transaction flagged as suspicious",
    "09": "Card or account not registered for internet banking",
    "10": "Card or account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Wrong one-time password",
    "24": "Customer cancelled the transaction",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "Issuing bank under maintenance",
    "79": "Wrong payment password too many times",
    "99": "Other error",
}


def describe_response(code: str) -> str:
    return RESPONSE_MESSAGES.get(code, f"Gateway response {code}")


def gateway_time(value: datetime) -> str:
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value.astimezone(GATEWAY_TZ).strftime(DATE_FORMAT)


def to_minor_units(amount) -> str:
    return str(int((Decimal(str(amount)) * 100).to_integral_value()))


def canonical_query(params: Mapping[str, Any]) -> str:
    """Sorted ``k=v`` pairs joined with ``&``; used for both signing and verifying."""
    pairs = []
    for key in sorted(params):
        if key in HASH_FIELDS:
            continue
        value = params[key]
        if value is None or value == "":
            continue
        pairs.append(f"{key}={quote_plus(str(value))}")
    return "&".join(pairs)


def sign(params: Mapping[str, Any], secret: str) -> str:
    return _hmac512(secret, canonical_query(params))


def _hmac512(secret: str, data: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha512).hexdigest()


def build_redirect_url(*, pay_url, tmn_code, secret, amount, currency, txn_ref, order_info,
                       return_url, client_ip, created_at, expires_at, locale="vn",
                       version="2.1.0", order_type="other", command="pay") -> str:
    if not secret or not tmn_code:
        raise GatewayUnavailable("VNPay merchant credentials are not configured")
    params = {
        "vnp_Version": version,
        "vnp_Command": command,
        "vnp_TmnCode": tmn_code,
        "vnp_Amount": to_minor_units(amount),
        "vnp_CurrCode": currency,
        "vnp_TxnRef": txn_ref,
        "vnp_OrderInfo": order_info,
        "vnp_OrderType": order_type,
        "vnp_Locale": locale,
        "vnp_ReturnUrl": return_url,
        "vnp_IpAddr": client_ip,
        "vnp_CreateDate": gateway_time(created_at),
        "vnp_ExpireDate": gateway_time(expires_at),
    }
    query = canonical_query(params)
    return f"{pay_url}?{query}&vnp_SecureHash={_hmac512(secret, query)}"


@dataclass(frozen=True)
class CallbackResult:
    txn_ref: str
    amount: Decimal
    response_code: str
    transaction_status: str = ""
    transaction_no: str = ""
    bank_code: str = ""
    pay_date: str = ""
    raw: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.response_code == SUCCESS_CODE and self.transaction_status in (SUCCESS_CODE, "")


def verify_callback(params: Mapping[str, Any], secret: str) -> CallbackResult:
    """Check the signature of a return/IPN callback and parse it.

    Raises SignatureInvalid on anything that does not check out.
    """
    data = {k: str(v) for k, v in params.items() if k.startswith("vnp_")}
    received = data.get("vnp_SecureHash", "").strip().lower()
    if not received:
        raise SignatureInvalid("Missing vnp_SecureHash")
    missing = [k for k in REQUIRED_CALLBACK_FIELDS if not data.get(k)]
    if missing:
        raise SignatureInvalid(f"Missing callback fields: {', '.join(missing)}")
    if not _DIGITS.match(data["vnp_Amount"]):
        raise SignatureInvalid("Malformed vnp_Amount")
    if not secret:
        raise SignatureInvalid("Gateway secret is not configured")

    expected = sign(data, secret)
    if not hmac.compare_digest(expected, received):
        raise SignatureInvalid("Signature mismatch")

    return CallbackResult(
        txn_ref=data["vnp_TxnRef"],
        amount=(Decimal(data["vnp_Amount"]) / 100).quantize(Decimal("0.01")),
        response_code=data["vnp_ResponseCode"],
        transaction_status=data.get("vnp_TransactionStatus", ""),
        transaction_no=data.get("vnp_TransactionNo", ""),
        bank_code=data.get("vnp_BankCode", ""),
        pay_date=data.get("vnp_PayDate", ""),
        raw={k: v for k, v in data.items() if k not in HASH_FIELDS},
    )


class VNPayClient:
    """Merchant web API: refund and transaction query."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else settings.VNPAY

    @property
    def timeout(self) -> float:
        return float(self.config.get("HTTP_TIMEOUT", 10))

    def _base(self, command: str, client_ip: str) -> Dict[str, str]:
        return {
            "vnp_RequestId": get_random_string(16),
            "vnp_Version": self.config.get("VERSION", "2.1.0"),
            "vnp_Command": command,
            "vnp_TmnCode": self.config.get("TMN_CODE", ""),
            "vnp_CreateDate": gateway_time(timezone.now()),
            "vnp_IpAddr": client_ip,
        }

    def _post(self, payload: Dict[str, str], hash_fields) -> Dict[str, Any]:
        secret = self.config.get("HASH_SECRET", "")
        if not secret or not payload.get("vnp_TmnCode"):
            raise GatewayUnavailable("VNPay merchant credentials are not configured")
        payload["vnp_SecureHash"] = _hmac512(secret, "|".join(str(payload.get(k, "")) for k in hash_fields))

        url = self.config.get("API_URL", "")
        try:
            resp = requests.post(url, json=payload, timeout=self.timeout)
        except RequestException as e:
            raise GatewayUnavailable(f"Gateway request failed: {e}")
        if resp.status_code != 200:
            raise GatewayUnavailable(f"Gateway returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            raise GatewayUnavailable("Gateway returned a non-JSON body")
        if not isinstance(data, dict):
            raise GatewayUnavailable("Gateway returned an unexpected body")

        code = str(data.get("vnp_ResponseCode", ""))
        if code != SUCCESS_CODE:
            raise GatewayUnavailable(
                f"Gateway rejected {payload['vnp_Command']}: {code} {data.get('vnp_Message', '')}".strip(),
                response=data,
            )
        return data

    def refund(self, payment, amount, reason: str, requested_by: str, client_ip: str) -> Dict[str, Any]:
        payload = self._base("refund", client_ip)
        payload.update({
            # 02 full refund, 03 partial
            "vnp_TransactionType": "02" if Decimal(amount) == payment.amount else "03",
            "vnp_TxnRef": payment.txn_ref,
            "vnp_Amount": to_minor_units(amount),
            "vnp_OrderInfo": (reason or f"Refund {payment.payment_code}")[:255],
            "vnp_TransactionNo": payment.gateway_transaction_no,
            "vnp_TransactionDate": gateway_time(payment.created_at),
            "vnp_CreateBy": requested_by,
        })
        logger.info("VNPay refund request txn_ref=%s amount=%s", payment.txn_ref, amount)
        return self._post(payload, (
            "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TransactionType",
            "vnp_TxnRef", "vnp_Amount", "vnp_TransactionNo", "vnp_TransactionDate", "vnp_CreateBy",
            "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
        ))

    def query(self, payment, client_ip: str) -> Dict[str, Any]:
        payload = self._base("querydr", client_ip)
        payload.update({
            "vnp_TxnRef": payment.txn_ref,
            "vnp_OrderInfo": f"Query {payment.payment_code}",
            "vnp_TransactionDate": gateway_time(payment.created_at),
        })
        return self._post(payload, (
            "vnp_RequestId", "vnp_Version", "vnp_Command", "vnp_TmnCode", "vnp_TxnRef",
            "vnp_TransactionDate", "vnp_CreateDate", "vnp_IpAddr", "vnp_OrderInfo",
        ))
