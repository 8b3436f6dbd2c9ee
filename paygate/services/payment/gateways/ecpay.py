"""
ECPay Payment Provider Implementation
Implements BasePaymentProvider for ECPay (綠界) All-In-One checkout

Protocol notes:
- Checkout is a signed form POST to /Cashier/AioCheckOut/V5
- Every message carries CheckMacValue (SHA256 over the sorted, URL-encoded
  parameter set wrapped in HashKey/HashIV)
- The ReturnURL callback is a form POST that must be answered with "1|OK"
"""
import os
import re
import hmac
import hashlib
import logging
import httpx
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, Callable
from urllib.parse import quote_plus, urlencode, parse_qsl
from dotenv import load_dotenv

from paygate.models.payment.payment import Payment, PaymentStatus
from paygate.models.payment.transaction import TransactionType
from paygate.services.payment.gateways.base import (
    BasePaymentProvider,
    ProviderPaymentRequest,
    ProviderPaymentResult,
    PaymentUpdate,
    RefundResult,
)

load_dotenv()

logger = logging.getLogger(__name__)

TAIWAN_TZ = timezone(timedelta(hours=8))


def generate_check_mac_value(params: Dict[str, Any], hash_key: str, hash_iv: str) -> str:
    """
    Compute ECPay CheckMacValue (EncryptType=1, SHA256).

    1. Drop CheckMacValue, sort by key (case-insensitive)
    2. HashKey={key}&k1=v1&...&HashIV={iv}
    3. URL-encode (spaces as +, keep -_.!*()), lowercase
    4. SHA256, uppercase hex
    """
    fields = {k: v for k, v in params.items() if k != "CheckMacValue"}
    ordered = sorted(fields.items(), key=lambda item: item[0].lower())
    query = "&".join(f"{key}={value}" for key, value in ordered)
    raw = f"HashKey={hash_key}&{query}&HashIV={hash_iv}"
    encoded = quote_plus(raw, safe="-_.!*()").lower()
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest().upper()


class ECPayProvider(BasePaymentProvider):
    """
    ECPay Payment Provider

    Features:
    - AIO checkout with signed redirect / auto-submit form
    - Callback CheckMacValue verification (constant-time)
    - Credit card refunds via DoAction
    """

    provider_id = "ecpay"
    provider_name = "ECPay"

    success_ack = "1|OK"
    failure_ack = "0|Error"

    # API Endpoints
    PRODUCTION_URL = "https://payment.ecpay.com.tw"
    STAGING_URL = "https://payment-stage.ecpay.com.tw"
    CHECKOUT_PATH = "/Cashier/AioCheckOut/V5"
    REFUND_PATH = "/CreditDetail/DoAction"

    MIN_AMOUNT = 1
    MAX_AMOUNT = 99999999
    TEXT_LIMIT = 200

    ENVIRONMENTS = ("development", "production")

    PAYMENT_METHODS = {
        "ALL": "Any method",
        "Credit": "Credit card",
        "ATM": "ATM transfer",
        "CVS": "Convenience store code",
        "BARCODE": "Convenience store barcode",
        "WebATM": "Web ATM",
        "ApplePay": "Apple Pay",
        "GooglePay": "Google Pay",
    }

    PAYMENT_TYPE_NAMES = {
        "Credit_CreditCard": "Credit card",
        "ATM_LAND": "ATM transfer",
        "CVS_CVS": "Convenience store code",
        "BARCODE_BARCODE": "Convenience store barcode",
        "WebATM_TAISHIN": "Web ATM",
        "ApplePay": "Apple Pay",
        "GooglePay": "Google Pay",
    }

    # RtnCode values meaning "payment code issued, waiting for the customer"
    AWAITING_PAYMENT_CODES = ("2", "10100073")

    def __init__(
        self,
        production_url: Optional[str] = None,
        staging_url: Optional[str] = None,
        timeout: float = 15.0,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.production_url = (production_url or os.getenv("ECPAY_PRODUCTION_URL") or self.PRODUCTION_URL).rstrip("/")
        self.staging_url = (staging_url or os.getenv("ECPAY_STAGING_URL") or self.STAGING_URL).rstrip("/")
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(TAIWAN_TZ))

    def _base_url(self, environment: str) -> str:
        return self.production_url if environment == "production" else self.staging_url

    def get_checkout_url(self, environment: str) -> str:
        return f"{self._base_url(environment)}{self.CHECKOUT_PATH}"

    async def validate_credentials(self, credentials: Dict[str, Any]) -> bool:
        """Validate ECPay credential format"""
        try:
            for key in ("merchant_id", "hash_key", "hash_iv", "environment"):
                if not credentials.get(key):
                    return False

            # Merchant ID is numeric, hash key / IV are alphanumeric
            if not re.fullmatch(r"\d+", str(credentials["merchant_id"])):
                return False
            if not re.fullmatch(r"[A-Za-z0-9]+", str(credentials["hash_key"])):
                return False
            if not re.fullmatch(r"[A-Za-z0-9]+", str(credentials["hash_iv"])):
                return False

            return credentials["environment"] in self.ENVIRONMENTS
        except (AttributeError, TypeError):
            return False

    def _total_amount(self, amount: float) -> int:
        """ECPay only takes whole TWD amounts as integers"""
        if float(amount) != int(amount):
            raise ValueError(f"ECPay amount must be a whole number, got {amount}")
        total = int(amount)
        if total < self.MIN_AMOUNT or total > self.MAX_AMOUNT:
            raise ValueError(f"ECPay amount must be between {self.MIN_AMOUNT} and {self.MAX_AMOUNT}")
        return total

    async def create_payment(
        self,
        request: ProviderPaymentRequest,
        credentials: Dict[str, Any]
    ) -> ProviderPaymentResult:
        """
        Build a signed AIO checkout request.
        Nothing is sent to ECPay here; the client posts the form.
        """
        if request.currency != "TWD":
            raise ValueError(f"ECPay only supports TWD, got {request.currency}")

        payment_method = request.payment_method or "ALL"
        if payment_method not in self.PAYMENT_METHODS:
            raise ValueError(f"Unsupported ECPay payment method: {payment_method}")

        description = request.description[:self.TEXT_LIMIT]

        params = {
            "MerchantID": str(credentials["merchant_id"]),
            "MerchantTradeNo": request.merchant_trade_no,
            "MerchantTradeDate": self._clock().strftime("%Y/%m/%d %H:%M:%S"),
            "PaymentType": "aio",
            "TotalAmount": str(self._total_amount(request.amount)),
            "TradeDesc": description,
            "ItemName": description,
            "ReturnURL": request.callback_url,
            "ChoosePayment": payment_method,
            "EncryptType": "1",
            "CustomField1": request.payment_id,
        }

        if request.return_url:
            params["ClientBackURL"] = request.return_url

        params["CheckMacValue"] = generate_check_mac_value(
            params, credentials["hash_key"], credentials["hash_iv"]
        )

        action = self.get_checkout_url(credentials["environment"])

        return ProviderPaymentResult(
            status=PaymentStatus.PENDING,
            redirect_url=f"{action}?{urlencode(params)}",
            provider_data={
                "form": {
                    "action": action,
                    "method": "POST",
                    "params": params,
                }
            }
        )

    def get_merchant_trade_no(self, callback_data: Dict[str, Any]) -> Optional[str]:
        if not isinstance(callback_data, dict):
            return None
        value = callback_data.get("MerchantTradeNo")
        return str(value) if value else None

    async def validate_callback(
        self,
        callback_data: Dict[str, Any],
        credentials: Dict[str, Any]
    ) -> bool:
        """
        Verify ECPay callback CheckMacValue.
        Every received field except CheckMacValue is part of the hash.
        """
        try:
            if not isinstance(callback_data, dict):
                return False

            received = callback_data.get("CheckMacValue")
            if not received or not callback_data.get("MerchantTradeNo"):
                return False
            if callback_data.get("RtnCode") in (None, ""):
                return False
            if str(callback_data.get("MerchantID", "")) != str(credentials.get("merchant_id")):
                return False

            fields = {
                key: "" if value is None else str(value)
                for key, value in callback_data.items()
                if key != "CheckMacValue"
            }
            expected = generate_check_mac_value(fields, credentials["hash_key"], credentials["hash_iv"])

            return hmac.compare_digest(expected.encode("utf-8"), str(received).encode("utf-8"))
        except (AttributeError, KeyError, TypeError, ValueError):
            return False

    async def process_callback(
        self,
        callback_data: Dict[str, Any],
        payment: Payment
    ) -> PaymentUpdate:
        """Map ECPay RtnCode onto the internal payment status"""
        rtn_code = str(callback_data.get("RtnCode", "")).strip()

        if rtn_code == "1":
            status = PaymentStatus.COMPLETED
            transaction_type = TransactionType.CHARGE
        elif rtn_code in self.AWAITING_PAYMENT_CODES:
            status = PaymentStatus.PROCESSING
            transaction_type = None
        elif rtn_code == "0":
            status = PaymentStatus.CANCELLED
            transaction_type = TransactionType.CHARGE
        else:
            status = PaymentStatus.FAILED
            transaction_type = TransactionType.CHARGE

        amount = None
        trade_amt = callback_data.get("TradeAmt")
        if trade_amt not in (None, ""):
            amount = float(trade_amt)

        provider_response = dict(callback_data)
        payment_type = callback_data.get("PaymentType")
        if payment_type:
            provider_response["PaymentTypeName"] = self.PAYMENT_TYPE_NAMES.get(payment_type, payment_type)

        return PaymentUpdate(
            payment_id=payment.id,
            status=status,
            provider_transaction_id=callback_data.get("TradeNo") or None,
            transaction_type=transaction_type,
            amount=amount,
            provider_response=provider_response
        )

    async def refund_payment(
        self,
        payment: Payment,
        amount: float,
        refund_id: str,
        credentials: Dict[str, Any]
    ) -> RefundResult:
        """Refund a credit card payment via ECPay DoAction (Action=R)"""
        params = {
            "MerchantID": str(credentials["merchant_id"]),
            "MerchantTradeNo": payment.merchant_trade_no,
            "TradeNo": payment.provider_transaction_id or "",
            "Action": "R",
            "TotalAmount": str(self._total_amount(amount)),
        }
        params["CheckMacValue"] = generate_check_mac_value(
            params, credentials["hash_key"], credentials["hash_iv"]
        )

        api_url = f"{self._base_url(credentials['environment'])}{self.REFUND_PATH}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(api_url, data=params)
        except httpx.HTTPError as e:
            logger.warning("[WARN] ECPay refund request failed for %s: %s", payment.merchant_trade_no, e)
            return RefundResult(
                success=False,
                refund_id=refund_id,
                amount=amount,
                error_message=str(e)
            )

        response_data = dict(parse_qsl(response.text))

        if response.status_code == 200 and response_data.get("RtnCode") == "1":
            return RefundResult(
                success=True,
                refund_id=refund_id,
                amount=amount,
                provider_refund_id=response_data.get("TradeNo") or None,
                raw_response=response_data
            )

        return RefundResult(
            success=False,
            refund_id=refund_id,
            amount=amount,
            error_message=response_data.get("RtnMsg") or f"HTTP {response.status_code}",
            raw_response=response_data
        )
