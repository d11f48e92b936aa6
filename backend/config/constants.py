# backend/config/constants.py

from config.env import DEFAULT_COMMISSION_PERCENT, GST_PERCENT

# -----------------------------
# COMMISSION / TAX
# -----------------------------

DEFAULT_COMMISSION_RATE = DEFAULT_COMMISSION_PERCENT / 100   # 0.15
GST_RATE = GST_PERCENT / 100                                 # 0.18 on commission only
MAX_COMMISSION_PERCENT = 100
COMMISSION_HISTORY_DISPLAY_LIMIT = 10

# -----------------------------
# DELIVERY FEES (INR)
# -----------------------------

BASE_DELIVERY_FEE = 10               # both sides start from the same base
CUSTOMER_PER_KM_RATE = 4.5           # what the customer is charged per km
PARTNER_PER_KM_RATE = 6.5            # what the delivery partner earns per km

# -----------------------------
# ORDER STATES
# -----------------------------

ORDER_STATUSES = {
    "pending": "Pending",
    "preparing": "Preparing",
    "sentfordelivery": "SentForDelivery",
    "outfordelivery": "OutForDelivery",
    "delivered": "Delivered",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "notresponded": "NotResponded",
    "declined": "Declined",
    "expired": "Expired",
}

SETTLEABLE_STATUSES = {"Delivered", "Completed"}
REFUNDABLE_CANCELLED_STATUSES = {"Cancelled", "NotResponded", "Declined", "Expired"}

PAYMENT_MODE_ONLINE = "Online"
PAYMENT_MODE_COD = "COD"
COD_PAYMENT_MODES = {"cod", "cash"}

REFUND_STATUS_NONE = "none"
REFUND_STATUS_REFUNDED = "REFUNDED"
# legacy values written by older admin tooling
REFUNDED_STATUS_ALIASES = {"REFUNDED", "COMPLETED", "SUCCESS"}

# -----------------------------
# LEDGERS
# -----------------------------

LEDGER_COD_SETTLEMENT = "cod_settlement"
LEDGER_PAYOUT = "payout"
LEDGER_REFUND = "refund"

LEDGER_COLLECTIONS = {
    LEDGER_COD_SETTLEMENT: "cod_settlements",
    LEDGER_PAYOUT: "payouts",
    LEDGER_REFUND: "refunds",
}

PARTY_VENDOR = "vendor"
PARTY_DELIVERY = "delivery"
PARTY_CUSTOMER = "customer"

PARTY_COLLECTIONS = {
    PARTY_VENDOR: "vendors",
    PARTY_DELIVERY: "delivery_persons",
}

PAYOUT_METHODS = {
    "bank_transfer": "Bank Transfer",
    "upi": "UPI",
    "cash": "Cash",
}

# -----------------------------
# REPORTING
# -----------------------------

DAILY_TREND_DAYS = 30
MONTHLY_TREND_MONTHS = 12
TOP_PERFORMERS_LIMIT = 5
RECENT_LEDGER_LIMIT = 100
