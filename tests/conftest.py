import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from utils.errors import GatewayError
from utils.indexes import ensure_indexes
from utils.party_lock import PartyLocks
from utils.settlement_service import SettlementService


class FakeGateway:
    """Stands in for RazorpayGateway; records calls instead of hitting the network."""

    def __init__(self, refunds_enabled=True, payouts_enabled=True):
        self.refunds_enabled = refunds_enabled
        self.payouts_enabled = payouts_enabled
        self.fail_with: GatewayError | None = None
        self.payout_status = "processing"
        self.remote_status = "processed"
        self.refund_calls = []
        self.payout_calls = []

    def refund(self, payment_reference, amount, notes=None):
        self.refund_calls.append((payment_reference, amount))
        if self.fail_with:
            raise self.fail_with
        return f"rfnd_{len(self.refund_calls)}"

    def payout(self, contact, account, amount):
        self.payout_calls.append((contact, account, amount))
        if self.fail_with:
            raise self.fail_with
        return {
            "provider": "razorpayx",
            "provider_contact_id": "cont_1",
            "provider_fund_account_id": "fa_1",
            "provider_payout_id": f"pout_{len(self.payout_calls)}",
            "provider_payout_status": self.payout_status,
        }

    def fetch_payout_status(self, external_payout_id):
        return {
            "provider": "razorpayx",
            "provider_payout_id": external_payout_id,
            "provider_payout_status": self.remote_status,
        }


@pytest_asyncio.fixture
async def db():
    database = AsyncMongoMockClient()["settlement_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(db, gateway):
    return SettlementService(db, gateway=gateway, locks=PartyLocks(ttl_seconds=60, wait_seconds=2))
