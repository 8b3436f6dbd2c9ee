"""
Test providers and helpers shared by the test modules
"""
import asyncio
from typing import Any, Dict, Optional

from paygate.models.payment.payment import Payment, PaymentStatus, PaymentRequest
from paygate.models.payment.provider_config import CreateProviderRequest
from paygate.models.payment.transaction import TransactionType
from paygate.services.payment.gateways.base import (
    BasePaymentProvider,
    PaymentUpdate,
    ProviderPaymentRequest,
    ProviderPaymentResult,
    RefundResult,
)
from paygate.services.payment.gateways.ecpay import generate_check_mac_value

ORGANIZER_ID = "org_1"
OTHER_ORGANIZER_ID = "org_2"

ECPAY_CREDENTIALS = {
    "merchant_id": "3002607",
    "hash_key": "pwFHCqoQZGmho4w6",
    "hash_iv": "EkRm7iFT261dpevs",
    "environment": "development",
}

FAKE_CREDENTIALS = {"api_key": "fake_key", "secret": "fake_secret"}

STATUS_TO_TYPE = {
    "completed": TransactionType.CHARGE,
    "failed": TransactionType.CHARGE,
    "cancelled": TransactionType.CHARGE,
    "processing": None,
}


class FakeProvider(BasePaymentProvider):
    """Provider whose callbacks carry their status verbatim"""

    provider_id = "fake"
    provider_name = "Fake Pay"
    success_ack = "OK"
    failure_ack = "FAIL"

    def __init__(self):
        self.create_delay = 0.0
        self.create_error: Optional[Exception] = None
        self.refund_success = True
        self.refund_calls = []
        self.created = []

    async def validate_credentials(self, credentials):
        return bool(credentials.get("api_key")) and bool(credentials.get("secret"))

    async def create_payment(self, request: ProviderPaymentRequest, credentials):
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        self.created.append(request)
        return ProviderPaymentResult(
            redirect_url=f"https://fake.test/pay/{request.merchant_trade_no}",
            client_secret="secret_123",
            provider_data={"callback_url": request.callback_url}
        )

    async def validate_callback(self, callback_data, credentials):
        return callback_data.get("signature") == credentials["secret"]

    async def process_callback(self, callback_data, payment: Payment):
        status = PaymentStatus(callback_data["status"])
        amount = callback_data.get("amount")
        return PaymentUpdate(
            payment_id=payment.id,
            status=status,
            provider_transaction_id=callback_data.get("txn_id"),
            transaction_type=STATUS_TO_TYPE[status.value],
            amount=float(amount) if amount is not None else None,
            provider_response=dict(callback_data)
        )

    def get_merchant_trade_no(self, callback_data):
        return callback_data.get("trade_no")

    async def refund_payment(self, payment, amount, refund_id, credentials):
        self.refund_calls.append((payment.id, amount, refund_id))
        if not self.refund_success:
            return RefundResult(success=False, refund_id=refund_id, amount=amount, error_message="declined")
        return RefundResult(
            success=True,
            refund_id=refund_id,
            amount=amount,
            provider_refund_id=f"fake_refund_{len(self.refund_calls)}",
            raw_response={"ok": True}
        )


def fake_callback(payment, status="completed", txn_id="txn_1", amount=None, signature="fake_secret") -> Dict[str, Any]:
    return {
        "trade_no": payment.merchant_trade_no,
        "status": status,
        "txn_id": txn_id,
        "amount": payment.final_amount if amount is None else amount,
        "signature": signature,
    }


def signed_ecpay_callback(merchant_trade_no: str, rtn_code: str = "1", trade_amt: str = "1000", **extra) -> Dict[str, str]:
    """ECPay ReturnURL payload signed with the sandbox credentials"""
    data = {
        "MerchantID": ECPAY_CREDENTIALS["merchant_id"],
        "MerchantTradeNo": merchant_trade_no,
        "RtnCode": rtn_code,
        "RtnMsg": "Succeeded" if rtn_code == "1" else "Failed",
        "TradeNo": "2310191234567890",
        "TradeAmt": trade_amt,
        "PaymentDate": "2026/10/19 12:00:00",
        "PaymentType": "Credit_CreditCard",
        "PaymentTypeChargeFee": "25",
        "TradeDate": "2026/10/19 11:58:00",
        "SimulatePaid": "0",
    }
    data.update(extra)
    data["CheckMacValue"] = generate_check_mac_value(
        data, ECPAY_CREDENTIALS["hash_key"], ECPAY_CREDENTIALS["hash_iv"]
    )
    return data


def payment_request(organizer_id=ORGANIZER_ID, amount=1000.0, discount=0.0, **overrides) -> PaymentRequest:
    data = {
        "organizer_id": organizer_id,
        "resource_type": "registration",
        "resource_id": "reg_1",
        "amount": amount,
        "discount_amount": discount,
        "currency": "TWD",
        "description": "Conference ticket",
    }
    data.update(overrides)
    return PaymentRequest(**data)


async def onboard(provider_service, provider_id="fake", organizer_id=ORGANIZER_ID, **overrides):
    credentials = FAKE_CREDENTIALS if provider_id == "fake" else ECPAY_CREDENTIALS
    data = {
        "provider_id": provider_id,
        "provider_name": provider_id.title(),
        "credentials": credentials,
    }
    data.update(overrides)
    return await provider_service.create_provider(organizer_id, CreateProviderRequest(**data))
