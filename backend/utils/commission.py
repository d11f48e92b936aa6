import math

from config.constants import MAX_COMMISSION_PERCENT
from config.env import DEFAULT_COMMISSION_PERCENT
from utils.errors import OutOfRange

PLATFORM_SETTINGS_ID = "commission"


def validate_rate(rate) -> float:
    try:
        value = float(rate)
    except (TypeError, ValueError):
        raise OutOfRange("Valid commission rate (0-100) required")
    if not math.isfinite(value) or value < 0 or value > MAX_COMMISSION_PERCENT:
        raise OutOfRange("Valid commission rate (0-100) required")
    return value


async def get_default_rate(db) -> float:
    """Platform default commission, in percent."""
    settings = await db.platform_settings.find_one({"_id": PLATFORM_SETTINGS_ID})
    if settings and settings.get("default_rate") is not None:
        return float(settings["default_rate"])
    return DEFAULT_COMMISSION_PERCENT


def effective_rate(vendor: dict | None, default_rate: float) -> float:
    """
    Exactly one rate applies per vendor: its override when
    `custom_commission` is set, otherwise the platform default.
    """
    if vendor and vendor.get("custom_commission") and vendor.get("commission_rate") is not None:
        return float(vendor["commission_rate"])
    return default_rate


async def load_vendor_rates(db) -> tuple[dict[str, float], float]:
    """
    Effective commission for every vendor with an override, plus the
    platform default. Returned as fractions ready for the money formulas.
    """
    default_rate = await get_default_rate(db)

    rates = {}
    cursor = db.vendors.find(
        {"custom_commission": True},
        {"commission_rate": 1, "custom_commission": 1},
    )
    async for vendor in cursor:
        rates[str(vendor["_id"])] = effective_rate(vendor, default_rate) / 100

    return rates, default_rate / 100
