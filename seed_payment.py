"""
Payment Provider Seeder
Onboards the public ECPay staging merchant for an organizer
Run: python seed_payment.py <organizer_id>
"""
import sys
import asyncio
from dotenv import load_dotenv

from paygate.database import Database
from paygate.models.payment.provider_config import CreateProviderRequest, UpdateProviderRequest
from paygate.services.payment.credentials import CredentialStore
from paygate.services.payment.gateways.factory import default_registry
from paygate.services.payment.provider_service import PaymentProviderService
from paygate.services.payment.store import MotorPaymentStore

load_dotenv()

# ECPay's published sandbox merchant (staging only)
ECPAY_SANDBOX_CREDENTIALS = {
    "merchant_id": "3002607",
    "hash_key": "pwFHCqoQZGmho4w6",
    "hash_iv": "EkRm7iFT261dpevs",
    "environment": "development",
}


async def seed_ecpay_sandbox(provider_service: PaymentProviderService, organizer_id: str):
    """Create (or refresh) the sandbox ECPay provider for an organizer"""
    existing = await provider_service.store.find_provider(organizer_id, "ecpay", active_only=False)

    if existing:
        config = await provider_service.update_provider(
            organizer_id,
            "ecpay",
            UpdateProviderRequest(credentials=ECPAY_SANDBOX_CREDENTIALS, is_active=True, is_default=True)
        )
        print(f"[OK] Refreshed ECPay sandbox provider {config.id}")
        return config

    config = await provider_service.create_provider(
        organizer_id,
        CreateProviderRequest(
            provider_id="ecpay",
            provider_name="ECPay (sandbox)",
            credentials=ECPAY_SANDBOX_CREDENTIALS,
            is_default=True
        )
    )
    print(f"[OK] Seeded ECPay sandbox provider {config.id}")
    return config


async def main(organizer_id: str):
    """Main seeder function"""
    print("=" * 50)
    print("Payment Provider Seeder")
    print("=" * 50)

    try:
        print("\n[1/2] Connecting and creating indexes...")
        await Database.connect_db()

        print("\n[2/2] Seeding ECPay sandbox provider...")
        provider_service = PaymentProviderService(
            MotorPaymentStore(Database.get_db()),
            default_registry(),
            CredentialStore()
        )
        await seed_ecpay_sandbox(provider_service, organizer_id)

        print("\n" + "=" * 50)
        print(f"[SUCCESS] Organizer {organizer_id} can take sandbox payments")
        print("=" * 50)

    except Exception as e:
        print(f"\n[ERROR] Seeding failed: {str(e)}")
        raise
    finally:
        await Database.close_db()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python seed_payment.py <organizer_id>")
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
