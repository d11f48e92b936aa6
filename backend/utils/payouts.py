import base64
import http.client
import json
import logging
from urllib import request, error

from utils.errors import GatewayError

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_CURRENCY = "INR"

logger = logging.getLogger(__name__)

# RazorpayX payout states that will never turn into money moved
PAYOUT_FAILED_STATES = {"failed", "reversed", "rejected", "cancelled"}
PAYOUT_SUCCESS_STATES = {"processed"}


def basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def amount_to_paise(amount_inr: float) -> int:
    return int(round(float(amount_inr) * 100))


def _provider_message(raw: str) -> str:
    try:
        body = json.loads(raw)
    except ValueError:
        return raw or "Unknown provider error"
    return (body.get("error") or {}).get("description") or raw


def _send(req: request.Request, timeout: float) -> dict:
    """
    Any failure, including a timeout, raises GatewayError. A timeout or a
    dropped connection is an unknown outcome: the provider may or may not
    have acted on it.
    """
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise GatewayError(_provider_message(details), provider_status=e.code)
    except error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise GatewayError("Payment provider timed out", timed_out=True)
        raise GatewayError(f"Payment provider unreachable: {e.reason}")
    except TimeoutError:
        raise GatewayError("Payment provider timed out", timed_out=True)
    except (http.client.HTTPException, OSError) as e:
        logger.warning("GATEWAY_CONNECTION_DROPPED url=%s error=%r", req.full_url, e)
        raise GatewayError("Payment provider connection dropped", timed_out=True)
    except ValueError:
        raise GatewayError("Payment provider returned an invalid response")


def post_json(url: str, payload: dict, auth_header: str, timeout: float) -> dict:
    req = request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": auth_header,
        },
        method="POST",
    )
    return _send(req, timeout)


def get_json(url: str, auth_header: str, timeout: float) -> dict:
    req = request.Request(
        url=url,
        headers={"Authorization": auth_header},
        method="GET",
    )
    return _send(req, timeout)


def execute_payout(
    *,
    contact: dict,
    account: dict,
    amount: float,
    source_account_number: str,
    auth_header: str,
    timeout: float,
) -> dict:
    """
    Executes a bank/UPI payout via RazorpayX: contact -> fund account -> payout.
    Returns provider metadata used for reconciliation.

    `contact`: name, type (vendor | employee), reference_id.
    `account`: method (bank_transfer | upi) plus account_number/ifsc_code or upi_id.
    """
    amount_paise = amount_to_paise(amount)
    if amount_paise <= 0:
        raise GatewayError("Invalid payout amount")

    contact_payload = {
        "name": contact.get("name") or "Partner",
        "type": contact.get("type", "vendor"),
        "reference_id": contact.get("reference_id"),
        "notes": contact.get("notes") or {},
    }
    provider_contact = post_json(f"{RAZORPAY_API_BASE}/contacts", contact_payload, auth_header, timeout)
    contact_id = provider_contact.get("id")
    if not contact_id:
        raise GatewayError("Payout provider contact creation failed")

    if account.get("method") == "upi":
        fund_account_payload = {
            "contact_id": contact_id,
            "account_type": "vpa",
            "vpa": {"address": account.get("upi_id")},
        }
        mode = "UPI"
    else:
        fund_account_payload = {
            "contact_id": contact_id,
            "account_type": "bank_account",
            "bank_account": {
                "name": account.get("account_holder_name") or contact_payload["name"],
                "ifsc": account.get("ifsc_code"),
                "account_number": account.get("account_number"),
            },
        }
        mode = "IMPS"

    fund_account = post_json(f"{RAZORPAY_API_BASE}/fund_accounts", fund_account_payload, auth_header, timeout)
    fund_account_id = fund_account.get("id")
    if not fund_account_id:
        raise GatewayError("Payout provider fund account creation failed")

    payout_payload = {
        "account_number": source_account_number,
        "fund_account_id": fund_account_id,
        "amount": amount_paise,
        "currency": RAZORPAY_CURRENCY,
        "mode": mode,
        "purpose": "payout",
        "queue_if_low_balance": True,
        "reference_id": contact.get("reference_id"),
        "narration": account.get("narration") or "Marketplace payout",
    }
    payout = post_json(f"{RAZORPAY_API_BASE}/payouts", payout_payload, auth_header, timeout)
    payout_id = payout.get("id")
    if not payout_id:
        raise GatewayError("Payout creation failed at provider")

    logger.info("RAZORPAYX_PAYOUT_CREATED payout=%s status=%s", payout_id, payout.get("status"))

    return {
        "provider": "razorpayx",
        "provider_contact_id": contact_id,
        "provider_fund_account_id": fund_account_id,
        "provider_payout_id": payout_id,
        "provider_payout_status": payout.get("status"),
    }


def fetch_payout_status(*, provider_payout_id: str, auth_header: str, timeout: float) -> dict:
    payout = get_json(f"{RAZORPAY_API_BASE}/payouts/{provider_payout_id}", auth_header, timeout)
    return {
        "provider": "razorpayx",
        "provider_payout_id": payout.get("id"),
        "provider_payout_status": payout.get("status"),
    }
