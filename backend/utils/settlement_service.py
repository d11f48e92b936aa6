"""
Settlement orchestrator: the only code path that moves money.

Every operation validates against a pending amount recomputed inside the
party's critical section, appends to the ledger, then rebuilds the party's
cached balance from the ledger. Gateway calls happen inside the same section
so a second request cannot validate against a balance the first is about to
change.
"""
import asyncio
import logging
import math
import secrets
import string
import time

from config.constants import (
    COMMISSION_HISTORY_DISPLAY_LIMIT,
    LEDGER_COD_SETTLEMENT,
    LEDGER_COLLECTIONS,
    LEDGER_PAYOUT,
    LEDGER_REFUND,
    PARTY_COLLECTIONS,
    PARTY_CUSTOMER,
    PARTY_DELIVERY,
    PARTY_VENDOR,
    PAYMENT_MODE_COD,
    PAYOUT_METHODS,
)
from models.commission import CommissionChange
from models.ledger import LedgerEntry, LedgerStatus
from utils.audit import log_audit
from utils.commission import PLATFORM_SETTINGS_ID, effective_rate, get_default_rate, validate_rate
from utils.crypto import encrypt_sensitive_value, mask_account_number
from utils.dates import utcnow
from utils.errors import (
    AlreadyRefunded,
    GatewayError,
    InvalidPaymentDetails,
    LimitExceeded,
    NotFound,
    OrderNotFound,
    RequestInProgress,
    ValidationError,
)
from utils.idempotency import (
    IN_PROGRESS,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.ledger_store import LedgerStore
from utils.money import round_money
from utils.order_store import OrderStore
from utils.party_lock import PartyLocks
from utils.payouts import PAYOUT_FAILED_STATES, PAYOUT_SUCCESS_STATES
from utils.razorpay import RazorpayGateway
from utils.reconciler import BalanceReconciler

logger = logging.getLogger(__name__)

REFUND_TYPES = {"full", "partial"}

MODE_MANUAL = "manual"
MODE_GATEWAY = "gateway"
MODE_COD = "cod"

_RECEIPT_ALPHABET = string.ascii_uppercase + string.digits


def _base36(value: int) -> str:
    digits = string.digits + string.ascii_uppercase
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def new_receipt_id() -> str:
    """Human-readable COD receipt reference, e.g. COD-LZ3K1Q8A-7XQ2."""
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(4))
    return f"COD-{stamp}-{suffix}"


def _positive_amount(amount) -> float:
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValidationError("Valid amount required")
    if not math.isfinite(value) or value <= 0:
        raise ValidationError("Valid amount required")
    return round_money(value)


def _party_name(party_type: str, party: dict) -> str:
    if party_type == PARTY_VENDOR:
        return party.get("shop_name") or party.get("name") or ""
    return party.get("full_name") or party.get("name") or ""


def _payout_outcome(provider_status: str | None) -> LedgerStatus:
    status = (provider_status or "").lower()
    if status in PAYOUT_SUCCESS_STATES:
        return LedgerStatus.COMPLETED
    if status in PAYOUT_FAILED_STATES:
        return LedgerStatus.FAILED
    return LedgerStatus.PENDING


class SettlementService:
    def __init__(self, db, gateway=None, locks: PartyLocks | None = None):
        self.db = db
        self.gateway = gateway or RazorpayGateway()
        self.locks = locks or PartyLocks()
        self.orders = OrderStore(db)
        self.ledgers = LedgerStore(db)
        self.reconciler = BalanceReconciler(db, self.orders, self.ledgers)

    # ==============================
    # Idempotency
    # ==============================

    async def _run_once(self, scope: str, request_id: str | None, work):
        if not request_id:
            return await work()

        existing = await reserve_idempotency_key(db=self.db, key=request_id, scope=scope)
        if existing is IN_PROGRESS:
            raise RequestInProgress("Request already in progress", request_id=request_id)
        if existing is not None:
            logger.info("IDEMPOTENT_REPLAY scope=%s request=%s", scope, request_id)
            return existing

        try:
            result = await work()
        except Exception as e:
            await fail_idempotency_key(db=self.db, key=request_id, scope=scope, error=str(e))
            raise

        await complete_idempotency_key(db=self.db, key=request_id, scope=scope, response=result)
        return result

    # ==============================
    # COD settlement
    # ==============================

    async def record_cod_settlement(
        self,
        partner_id: str,
        amount,
        method: str = "Cash",
        order_ids: list[str] | None = None,
        notes: str | None = None,
        request_id: str | None = None,
        actor_id: str | None = None,
    ) -> dict:
        async def work():
            return await self._record_cod_settlement(
                partner_id, amount, method, order_ids, notes, request_id, actor_id,
            )
        return await self._run_once(LEDGER_COD_SETTLEMENT, request_id, work)

    async def _record_cod_settlement(self, partner_id, amount, method, order_ids, notes, request_id, actor_id) -> dict:
        amount = _positive_amount(amount)
        partner = await self.reconciler.get_party(PARTY_DELIVERY, partner_id)
        order_ids = list(dict.fromkeys(order_ids or []))

        async with self.locks.hold(self.db, "cod", partner_id):
            pending = await self.reconciler.pending_cod(partner_id)
            if amount > pending.pending:
                raise LimitExceeded(
                    f"Amount exceeds pending COD ({pending.pending})",
                    requested=amount,
                    pending=pending.pending,
                )

            if order_ids:
                unsettled = {
                    o.order_id
                    for o in await self.orders.scan(
                        delivery_person_id=partner_id,
                        payment_mode=PAYMENT_MODE_COD,
                        settleable_only=True,
                    )
                    if not o.cod_settled
                }
                unknown = [oid for oid in order_ids if oid not in unsettled]
                if unknown:
                    raise ValidationError(
                        "Orders are not unsettled COD deliveries of this partner",
                        order_ids=unknown,
                    )

            now = utcnow()
            entry = LedgerEntry(
                ledger_type=LEDGER_COD_SETTLEMENT,
                party_type=PARTY_DELIVERY,
                party_id=partner_id,
                party_name=_party_name(PARTY_DELIVERY, partner),
                amount=amount,
                method=method or "Cash",
                status=LedgerStatus.COMPLETED,
                is_manual=True,
                notes=notes,
                request_id=request_id,
                created_by=actor_id,
                created_at=now,
                processed_at=now,
                order_ids=order_ids,
                receipt_id=new_receipt_id(),
            )
            await self.ledgers.append(entry)

            try:
                flagged = await self.orders.flag_cod_settled(order_ids, entry.id, entry.receipt_id)
            except Exception:
                logger.exception("COD_ORDER_FLAG_FAILED settlement=%s partner=%s", entry.id, partner_id)
                await self.orders.clear_cod_settlement(entry.id)
                await self.ledgers.append_reversal(
                    LEDGER_COD_SETTLEMENT,
                    entry.id,
                    "Order flags could not be written",
                    created_by=actor_id,
                )
                raise

            await self.reconciler.refresh_balance(PARTY_DELIVERY, partner_id)

        logger.info(
            "COD_SETTLEMENT_RECORDED partner=%s amount=%s receipt=%s orders=%s",
            partner_id, amount, entry.receipt_id, flagged,
        )
        await log_audit(
            self.db,
            actor_id,
            "COD_SETTLEMENT_RECORDED",
            metadata={
                "ledger_id": entry.id,
                "delivery_person_id": partner_id,
                "amount": amount,
                "receipt_id": entry.receipt_id,
                "order_ids": order_ids,
                "request_id": request_id,
            },
        )

        return {"ledger_id": entry.id, "receipt_id": entry.receipt_id, "orders_settled": flagged}

    # ==============================
    # Payouts
    # ==============================

    async def record_payout(
        self,
        party_type: str,
        party_id: str,
        amount,
        method: str,
        bank_details: dict | None = None,
        upi_id: str | None = None,
        notes: str | None = None,
        request_id: str | None = None,
        actor_id: str | None = None,
    ) -> dict:
        async def work():
            return await self._record_payout(
                party_type, party_id, amount, method, bank_details, upi_id, notes, request_id, actor_id,
            )
        return await self._run_once(LEDGER_PAYOUT, request_id, work)

    async def _record_payout(
        self, party_type, party_id, amount, method, bank_details, upi_id, notes, request_id, actor_id,
    ) -> dict:
        if party_type not in PARTY_COLLECTIONS:
            raise ValidationError(f"Unknown party type: {party_type}")
        if method not in PAYOUT_METHODS:
            raise ValidationError(f"Payout method must be one of {sorted(PAYOUT_METHODS)}")

        bank_details = bank_details or {}
        account_number = str(bank_details.get("account_number") or "").strip()
        ifsc_code = str(bank_details.get("ifsc_code") or "").strip().upper()
        upi_id = (upi_id or "").strip()

        if method == "bank_transfer" and not (account_number and ifsc_code):
            raise InvalidPaymentDetails("Bank transfer requires account number and IFSC code")
        if method == "upi" and not upi_id:
            raise InvalidPaymentDetails("UPI payout requires a UPI id")

        amount = _positive_amount(amount)
        party = await self.reconciler.get_party(party_type, party_id)
        name = _party_name(party_type, party)

        async with self.locks.hold(self.db, "payout", f"{party_type}:{party_id}"):
            pending = await self.reconciler.pending_payout(
                party_type, party_id, vendor=party if party_type == PARTY_VENDOR else None,
            )
            if amount > pending.available:
                raise LimitExceeded(
                    f"Amount exceeds pending payout ({pending.available})",
                    requested=amount,
                    pending=pending.available,
                )

            now = utcnow()
            entry = LedgerEntry(
                ledger_type=LEDGER_PAYOUT,
                party_type=party_type,
                party_id=party_id,
                party_name=name,
                amount=amount,
                method=method,
                status=LedgerStatus.PENDING,
                notes=notes,
                request_id=request_id,
                created_by=actor_id,
                created_at=now,
            )
            if method == "bank_transfer":
                entry.account_masked = mask_account_number(account_number)
                entry.account_encrypted = encrypt_sensitive_value(account_number)
                entry.ifsc_code = ifsc_code
            elif method == "upi":
                entry.upi_id = upi_id

            if method == "cash" or not self.gateway.payouts_enabled:
                entry.status = LedgerStatus.COMPLETED
                entry.is_manual = True
                if method != "cash":
                    entry.method = MODE_MANUAL
                entry.processed_at = now
                await self.ledgers.append(entry)
                await self.reconciler.refresh_balance(party_type, party_id)
                mode = MODE_MANUAL
            else:
                contact = {
                    "name": name,
                    "type": "vendor" if party_type == PARTY_VENDOR else "employee",
                    "reference_id": entry.id,
                }
                account = {
                    "method": method,
                    "account_number": account_number,
                    "ifsc_code": ifsc_code,
                    "account_holder_name": bank_details.get("account_holder_name") or name,
                    "upi_id": upi_id,
                }
                try:
                    meta = await asyncio.to_thread(self.gateway.payout, contact, account, amount)
                except GatewayError as e:
                    entry.status = LedgerStatus.FAILED
                    entry.error_message = e.message
                    entry.processed_at = utcnow()
                    await self.ledgers.append(entry)
                    logger.error(
                        "PAYOUT_GATEWAY_ERROR party_type=%s party=%s amount=%s error=%s",
                        party_type, party_id, amount, e.message,
                    )
                    await log_audit(
                        self.db,
                        actor_id,
                        "PAYOUT_FAILED",
                        metadata={"ledger_id": entry.id, "party_id": party_id, "error": e.message},
                    )
                    raise GatewayError(e.message, ledger_id=entry.id, timed_out=e.timed_out)

                entry.external_reference_id = meta["provider_payout_id"]
                entry.status = _payout_outcome(meta.get("provider_payout_status"))
                if entry.status != LedgerStatus.PENDING:
                    entry.processed_at = utcnow()
                await self.ledgers.append(entry)
                await self.reconciler.refresh_balance(party_type, party_id)
                mode = MODE_GATEWAY

        logger.info(
            "PAYOUT_RECORDED party_type=%s party=%s amount=%s mode=%s status=%s",
            party_type, party_id, amount, mode, entry.status.value,
        )
        await log_audit(
            self.db,
            actor_id,
            "PAYOUT_RECORDED",
            metadata={
                "ledger_id": entry.id,
                "party_type": party_type,
                "party_id": party_id,
                "amount": amount,
                "method": method,
                "mode": mode,
                "external_payout_id": entry.external_reference_id,
                "request_id": request_id,
            },
        )

        return {
            "ledger_id": entry.id,
            "external_payout_id": entry.external_reference_id,
            "mode": mode,
            "status": entry.status.value,
        }

    async def reconcile_payout(self, ledger_id: str, actor_id: str | None = None) -> dict:
        """Ask the gateway what happened to a pending payout and resolve the entry."""
        entry = await self.ledgers.get(LEDGER_PAYOUT, ledger_id)
        if entry is None:
            raise NotFound(f"Payout {ledger_id} not found")
        if entry.status != LedgerStatus.PENDING:
            return {"ledger_id": ledger_id, "status": entry.status.value, "external_status": None}
        if not entry.external_reference_id:
            raise ValidationError("Payout has no gateway reference to reconcile")

        meta = await asyncio.to_thread(self.gateway.fetch_payout_status, entry.external_reference_id)
        external_status = meta.get("provider_payout_status")
        outcome = _payout_outcome(external_status)
        if outcome == LedgerStatus.PENDING:
            return {"ledger_id": ledger_id, "status": outcome.value, "external_status": external_status}

        async with self.locks.hold(self.db, "payout", f"{entry.party_type}:{entry.party_id}"):
            resolved = await self.ledgers.resolve_pending(
                LEDGER_PAYOUT,
                ledger_id,
                outcome,
                external_status=external_status,
                error_message=None if outcome == LedgerStatus.COMPLETED else f"Gateway reported {external_status}",
            )
            if resolved:
                await self.reconciler.refresh_balance(entry.party_type, entry.party_id)

        if resolved:
            logger.info("PAYOUT_RECONCILED ledger=%s status=%s external=%s", ledger_id, outcome.value, external_status)
            await log_audit(
                self.db,
                actor_id,
                "PAYOUT_RECONCILED",
                metadata={"ledger_id": ledger_id, "status": outcome.value, "external_status": external_status},
            )
        else:
            current = await self.ledgers.get(LEDGER_PAYOUT, ledger_id)
            outcome = current.status

        return {"ledger_id": ledger_id, "status": outcome.value, "external_status": external_status}

    # ==============================
    # Refunds
    # ==============================

    async def process_refund(
        self,
        order_id: str,
        amount,
        reason: str,
        refund_type: str = "full",
        complaint_id: str | None = None,
        request_id: str | None = None,
        actor_id: str | None = None,
    ) -> dict:
        async def work():
            return await self._process_refund(
                order_id, amount, reason, refund_type, complaint_id, request_id, actor_id,
            )
        return await self._run_once(LEDGER_REFUND, request_id, work)

    async def _process_refund(self, order_id, amount, reason, refund_type, complaint_id, request_id, actor_id) -> dict:
        if refund_type not in REFUND_TYPES:
            raise ValidationError(f"Refund type must be one of {sorted(REFUND_TYPES)}")
        amount = _positive_amount(amount)

        async with self.locks.hold(self.db, "refund", order_id):
            order = await self.orders.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")

            remaining = await self.reconciler.refundable(order)
            # legacy orders were flagged REFUNDED without a ledger entry
            if remaining.pending <= 0 or (order.is_refunded and not remaining.settled):
                raise AlreadyRefunded(f"Order {order_id} is already refunded")
            if amount > remaining.pending:
                raise LimitExceeded(
                    f"Amount exceeds refundable remainder ({remaining.pending})",
                    requested=amount,
                    pending=remaining.pending,
                )

            now = utcnow()
            entry = LedgerEntry(
                ledger_type=LEDGER_REFUND,
                party_type=PARTY_CUSTOMER,
                party_id=order.customer_id or "unknown",
                party_name=order.customer_name or "",
                amount=amount,
                method="cod" if order.is_cod else "razorpay",
                status=LedgerStatus.COMPLETED,
                notes=reason,
                request_id=request_id,
                created_by=actor_id,
                created_at=now,
                processed_at=now,
                order_id=order_id,
                original_amount=order.total,
                reason=reason,
                refund_type=refund_type,
                complaint_id=complaint_id,
                payment_reference=order.payment_reference,
            )

            if order.is_cod or not order.payment_reference:
                entry.is_manual = True
                mode = MODE_COD if order.is_cod else MODE_MANUAL
                if not order.is_cod:
                    entry.method = MODE_MANUAL
            elif not self.gateway.refunds_enabled:
                entry.is_manual = True
                entry.method = MODE_MANUAL
                mode = MODE_MANUAL
            else:
                mode = MODE_GATEWAY
                try:
                    entry.external_reference_id = await asyncio.to_thread(
                        self.gateway.refund,
                        order.payment_reference,
                        amount,
                        {"order_id": order_id, "reason": reason},
                    )
                except GatewayError as e:
                    entry.status = LedgerStatus.FAILED
                    entry.error_message = e.message
                    await self.ledgers.append(entry)
                    logger.error("REFUND_GATEWAY_ERROR order=%s amount=%s error=%s", order_id, amount, e.message)
                    await log_audit(
                        self.db,
                        actor_id,
                        "REFUND_FAILED",
                        metadata={"ledger_id": entry.id, "order_id": order_id, "error": e.message},
                    )
                    raise GatewayError(e.message, ledger_id=entry.id, timed_out=e.timed_out)

            await self.ledgers.append(entry)
            refunded_total = await self.ledgers.sum_completed(LEDGER_REFUND, order_id=order_id)
            await self.orders.mark_refunded(
                order_id,
                refunded_total=refunded_total,
                refund_id=entry.external_reference_id or entry.id,
            )

        logger.info("REFUND_PROCESSED order=%s amount=%s mode=%s", order_id, amount, mode)
        await log_audit(
            self.db,
            actor_id,
            "REFUND_PROCESSED",
            metadata={
                "ledger_id": entry.id,
                "order_id": order_id,
                "amount": amount,
                "refund_type": refund_type,
                "mode": mode,
                "external_refund_id": entry.external_reference_id,
                "complaint_id": complaint_id,
                "request_id": request_id,
            },
        )

        return {
            "ledger_id": entry.id,
            "external_refund_id": entry.external_reference_id,
            "mode": mode,
            "status": entry.status.value,
        }

    # ==============================
    # Commission policy
    # ==============================

    async def set_commission_rate(self, vendor_id: str, new_rate, reason: str, actor_id: str | None = None) -> str:
        rate = validate_rate(new_rate)

        async with self.locks.hold(self.db, "commission", vendor_id):
            vendor = await self.reconciler.get_party(PARTY_VENDOR, vendor_id)
            previous = effective_rate(vendor, await get_default_rate(self.db))

            change = CommissionChange(
                vendor_id=vendor_id,
                previous_rate=previous,
                new_rate=rate,
                reason=reason or "",
                changed_at=utcnow(),
                changed_by=actor_id,
            )
            result = await self.db.commission_history.insert_one(change.model_dump())

            await self.db.vendors.update_one(
                {"_id": vendor_id},
                {
                    "$set": {
                        "commission_rate": rate,
                        "custom_commission": True,
                        "updated_at": change.changed_at,
                    },
                    "$push": {
                        "commission_history": {
                            "$each": [change.model_dump(exclude={"vendor_id"})],
                            "$slice": -COMMISSION_HISTORY_DISPLAY_LIMIT,
                        },
                    },
                },
            )
            await self.reconciler.refresh_balance(PARTY_VENDOR, vendor_id)

        logger.info("COMMISSION_RATE_CHANGED vendor=%s from=%s to=%s", vendor_id, previous, rate)
        await log_audit(
            self.db,
            actor_id,
            "COMMISSION_RATE_CHANGED",
            metadata={"vendor_id": vendor_id, "previous_rate": previous, "new_rate": rate, "reason": reason},
        )
        return str(result.inserted_id)

    async def set_default_commission_rate(self, rate, actor_id: str | None = None) -> float:
        rate = validate_rate(rate)
        previous = await get_default_rate(self.db)

        await self.db.platform_settings.update_one(
            {"_id": PLATFORM_SETTINGS_ID},
            {"$set": {"default_rate": rate, "updated_at": utcnow(), "updated_by": actor_id}},
            upsert=True,
        )

        logger.info("DEFAULT_COMMISSION_CHANGED from=%s to=%s", previous, rate)
        await log_audit(
            self.db,
            actor_id,
            "DEFAULT_COMMISSION_CHANGED",
            metadata={"previous_rate": previous, "new_rate": rate},
        )
        return rate

    # ==============================
    # Corrections
    # ==============================

    async def reverse_entry(self, ledger_type: str, entry_id: str, reason: str, actor_id: str | None = None) -> str:
        if ledger_type not in LEDGER_COLLECTIONS:
            raise ValidationError(f"Unknown ledger type: {ledger_type}")
        if not (reason or "").strip():
            raise ValidationError("Reversal reason required")

        entry = await self.ledgers.get(ledger_type, entry_id)
        if entry is None:
            raise NotFound(f"Ledger entry {entry_id} not found")

        if ledger_type == LEDGER_COD_SETTLEMENT:
            scope, key = "cod", entry.party_id
        elif ledger_type == LEDGER_PAYOUT:
            scope, key = "payout", f"{entry.party_type}:{entry.party_id}"
        else:
            scope, key = "refund", entry.order_id

        async with self.locks.hold(self.db, scope, key):
            reversal = await self.ledgers.append_reversal(ledger_type, entry_id, reason, created_by=actor_id)

            if ledger_type == LEDGER_COD_SETTLEMENT:
                await self.orders.clear_cod_settlement(entry_id)
            elif ledger_type == LEDGER_REFUND and entry.order_id:
                refunded_total = await self.ledgers.sum_completed(LEDGER_REFUND, order_id=entry.order_id)
                await self.orders.mark_refunded(
                    entry.order_id,
                    refunded_total=refunded_total,
                    refund_id=entry.external_reference_id if refunded_total > 0 else None,
                )

            if entry.party_type in PARTY_COLLECTIONS:
                await self.reconciler.refresh_balance(entry.party_type, entry.party_id)

        logger.info("LEDGER_REVERSED type=%s entry=%s reversal=%s", ledger_type, entry_id, reversal.id)
        await log_audit(
            self.db,
            actor_id,
            "LEDGER_ENTRY_REVERSED",
            metadata={
                "ledger_type": ledger_type,
                "entry_id": entry_id,
                "reversal_id": reversal.id,
                "amount": reversal.amount,
                "reason": reason,
            },
        )
        return reversal.id
