import logging

from config.env import (
    GATEWAY_TIMEOUT_SECONDS,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAYX_ACCOUNT_NUMBER,
    RAZORPAYX_KEY_ID,
    RAZORPAYX_KEY_SECRET,
)
from utils.errors import GatewayError
from utils.payouts import (
    RAZORPAY_API_BASE,
    amount_to_paise,
    basic_auth_header,
    execute_payout,
    fetch_payout_status,
    post_json,
)

logger = logging.getLogger(__name__)


class RazorpayGateway:
    """
    Payment-gateway client: Razorpay for refunds, RazorpayX for payouts.

    Calls are blocking; the settlement service runs them with
    asyncio.to_thread. Missing credentials are not an error here, callers
    check `refunds_enabled` / `payouts_enabled` and take the manual path.
    """

    def __init__(
        self,
        key_id: str | None = RAZORPAY_KEY_ID,
        key_secret: str | None = RAZORPAY_KEY_SECRET,
        payout_key_id: str | None = RAZORPAYX_KEY_ID,
        payout_key_secret: str | None = RAZORPAYX_KEY_SECRET,
        payout_account_number: str | None = RAZORPAYX_ACCOUNT_NUMBER,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.payout_key_id = payout_key_id
        self.payout_key_secret = payout_key_secret
        self.payout_account_number = payout_account_number
        self.timeout = timeout

    @property
    def refunds_enabled(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @property
    def payouts_enabled(self) -> bool:
        return bool(self.payout_key_id and self.payout_key_secret and self.payout_account_number)

    def refund(self, payment_reference: str, amount: float, notes: dict | None = None) -> str:
        if not self.refunds_enabled:
            raise GatewayError("Razorpay keys are not configured")

        result = post_json(
            f"{RAZORPAY_API_BASE}/payments/{payment_reference}/refund",
            {"amount": amount_to_paise(amount), "notes": notes or {}},
            basic_auth_header(self.key_id, self.key_secret),
            self.timeout,
        )
        refund_id = result.get("id")
        if not refund_id:
            raise GatewayError("Razorpay refund response has no refund id")

        logger.info("RAZORPAY_REFUND_CREATED payment=%s refund=%s", payment_reference, refund_id)
        return refund_id

    def payout(self, contact: dict, account: dict, amount: float) -> dict:
        if not self.payouts_enabled:
            raise GatewayError("RazorpayX payout config missing")

        return execute_payout(
            contact=contact,
            account=account,
            amount=amount,
            source_account_number=self.payout_account_number,
            auth_header=basic_auth_header(self.payout_key_id, self.payout_key_secret),
            timeout=self.timeout,
        )

    def fetch_payout_status(self, external_payout_id: str) -> dict:
        if not self.payouts_enabled:
            raise GatewayError("RazorpayX payout config missing")

        return fetch_payout_status(
            provider_payout_id=external_payout_id,
            auth_header=basic_auth_header(self.payout_key_id, self.payout_key_secret),
            timeout=self.timeout,
        )
