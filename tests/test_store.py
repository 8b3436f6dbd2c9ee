# tests/test_store.py
# MongoDB store: duplicate-key translation, compare-and-swap query shape, default provider index

from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import DuplicateKeyError, OperationFailure

from paygate.database import Database
from paygate.models.payment.payment import Payment, PaymentStatus
from paygate.models.payment.provider_config import PaymentProviderConfig
from paygate.models.payment.transaction import TransactionType, TransactionStatus
from paygate.services.payment.errors import (
    DuplicateMerchantTradeNoError,
    DuplicateTransactionError,
    ProviderConfigError,
)
from paygate.services.payment.ledger import TransactionLedger
from paygate.services.payment.store import DEFAULT_PROVIDER_INDEX, MotorPaymentStore


def payment_doc(**overrides):
    doc = {
        "_id": "mongo-id",
        "id": "pay_1",
        "organizer_id": "org_1",
        "resource_type": "registration",
        "resource_id": "reg_1",
        "provider_id": "ecpay",
        "merchant_trade_no": "PAY1",
        "amount": 1000.0,
        "final_amount": 1000.0,
        "status": "pending",
        "version": 3,
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def mongo():
    """Mock motor database with a session that supports transactions"""
    session = MagicMock()
    session.__aenter__.return_value = session

    db = MagicMock()
    db.client.start_session = AsyncMock(return_value=session)
    for name in ("payment_providers", "payments", "payment_transactions"):
        collection = getattr(db, name)
        collection.insert_one = AsyncMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.find_one_and_update = AsyncMock(return_value=None)
        collection.count_documents = AsyncMock(return_value=0)
        collection.update_many = AsyncMock()
        collection.create_index = AsyncMock()
    return db


class TestMotorPaymentStore:
    """Translation of Mongo errors and unit of work"""

    @pytest.mark.asyncio
    async def test_duplicate_merchant_trade_no(self, mongo):
        mongo.payments.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        store = MotorPaymentStore(mongo)
        with pytest.raises(DuplicateMerchantTradeNoError):
            await store.insert_payment(Payment(**{k: v for k, v in payment_doc().items() if k != "_id"}))

    @pytest.mark.asyncio
    async def test_duplicate_provider(self, mongo):
        mongo.payment_providers.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        store = MotorPaymentStore(mongo)
        config = PaymentProviderConfig(
            id="PRV_1", organizer_id="org_1", provider_id="ecpay", provider_name="ECPay", credentials="blob"
        )
        with pytest.raises(ProviderConfigError):
            await store.insert_provider(config)

    @pytest.mark.asyncio
    async def test_get_payment_strips_mongo_id(self, mongo):
        mongo.payments.find_one.return_value = payment_doc()
        payment = await MotorPaymentStore(mongo).get_payment("pay_1")
        assert payment.id == "pay_1"
        assert payment.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_version_mismatch_writes_nothing(self, mongo):
        """A lost compare-and-swap returns None and skips the ledger"""
        store = MotorPaymentStore(mongo)
        entry = TransactionLedger.build_entry("pay_1", TransactionType.CHARGE, TransactionStatus.COMPLETED, 1000, "t1")

        result = await store.apply_payment_update("pay_1", 3, {"status": PaymentStatus.COMPLETED}, entry)

        assert result is None
        mongo.payment_transactions.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_filters_on_version(self, mongo):
        mongo.payments.find_one_and_update.return_value = payment_doc(status="completed", version=4)
        store = MotorPaymentStore(mongo)
        entry = TransactionLedger.build_entry("pay_1", TransactionType.CHARGE, TransactionStatus.COMPLETED, 1000, "t1")

        result = await store.apply_payment_update("pay_1", 3, {"status": PaymentStatus.COMPLETED}, entry)

        assert result.version == 4
        query, update = mongo.payments.find_one_and_update.call_args.args
        assert query == {"id": "pay_1", "version": 3}
        assert update["$inc"] == {"version": 1}
        assert update["$set"]["status"] == PaymentStatus.COMPLETED
        inserted = mongo.payment_transactions.insert_one.call_args.args[0]
        assert inserted["provider_transaction_id"] == "t1"

    @pytest.mark.asyncio
    async def test_duplicate_ledger_entry_aborts(self, mongo):
        """Duplicate ledger key surfaces as DuplicateTransactionError"""
        mongo.payments.find_one_and_update.return_value = payment_doc(version=4)
        mongo.payment_transactions.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        store = MotorPaymentStore(mongo)
        entry = TransactionLedger.build_entry("pay_1", TransactionType.CHARGE, TransactionStatus.COMPLETED, 1000, "t1")

        with pytest.raises(DuplicateTransactionError):
            await store.apply_payment_update("pay_1", 3, {"status": PaymentStatus.COMPLETED}, entry)

    @pytest.mark.asyncio
    async def test_write_conflict_is_a_lost_race(self, mongo):
        """A transient write conflict reports the same as a failed version check"""
        mongo.payments.find_one_and_update.side_effect = OperationFailure(
            "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
        )
        store = MotorPaymentStore(mongo)
        entry = TransactionLedger.build_entry("pay_1", TransactionType.CHARGE, TransactionStatus.COMPLETED, 1000, "t1")

        result = await store.apply_payment_update("pay_1", 3, {"status": PaymentStatus.COMPLETED}, entry)

        assert result is None
        mongo.payment_transactions.insert_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_operation_failures_propagate(self, mongo):
        mongo.payments.find_one_and_update.side_effect = OperationFailure("not authorized", code=13)
        store = MotorPaymentStore(mongo)

        with pytest.raises(OperationFailure):
            await store.apply_payment_update("pay_1", 3, {"status": PaymentStatus.COMPLETED})


class TestDefaultProvider:
    """One default provider per organizer"""

    @pytest.mark.asyncio
    async def test_clear_and_set_share_a_session(self, mongo):
        mongo.payment_providers.find_one_and_update.return_value = {
            "_id": "mongo-id", "id": "PRV_2", "organizer_id": "org_1", "provider_id": "ecpay",
            "provider_name": "ECPay", "credentials": "blob", "is_default": True,
        }
        store = MotorPaymentStore(mongo)

        config = await store.set_default_provider("org_1", "PRV_2")

        assert config.is_default is True
        clear_query, _ = mongo.payment_providers.update_many.call_args.args
        assert clear_query == {"organizer_id": "org_1", "is_default": True, "id": {"$ne": "PRV_2"}}
        session = mongo.client.start_session.return_value
        assert mongo.payment_providers.update_many.call_args.kwargs["session"] is session
        assert mongo.payment_providers.find_one_and_update.call_args.kwargs["session"] is session

    @pytest.mark.asyncio
    async def test_concurrent_default_rejected(self, mongo):
        """The partial unique index refusing a second default surfaces as ProviderConfigError"""
        mongo.payment_providers.find_one_and_update.side_effect = DuplicateKeyError(
            f"E11000 duplicate key error index: {DEFAULT_PROVIDER_INDEX}"
        )
        store = MotorPaymentStore(mongo)

        with pytest.raises(ProviderConfigError):
            await store.set_default_provider("org_1", "PRV_2")

    @pytest.mark.asyncio
    async def test_default_write_conflict_rejected(self, mongo):
        mongo.payment_providers.update_many.side_effect = OperationFailure(
            "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
        )
        store = MotorPaymentStore(mongo)

        with pytest.raises(ProviderConfigError):
            await store.set_default_provider("org_1", "PRV_2")

    @pytest.mark.asyncio
    async def test_partial_unique_index_created(self, mongo, monkeypatch):
        monkeypatch.setattr(Database, "get_db", classmethod(lambda cls: mongo))

        await Database.create_indexes()

        calls = mongo.payment_providers.create_index.call_args_list
        default_index = [c for c in calls if c.kwargs.get("name") == DEFAULT_PROVIDER_INDEX]
        assert len(default_index) == 1
        assert default_index[0].args[0] == [("organizer_id", 1)]
        assert default_index[0].kwargs["unique"] is True
        assert default_index[0].kwargs["partialFilterExpression"] == {"is_default": True}
