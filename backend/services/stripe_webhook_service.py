"""Stripe Webhook Service - commission accrual from paid invoices.

Key Principles:
1. Signature verification: events must be signed when a secret is configured
2. Event idempotency: stripe_events.event_id is unique, processed events are skipped
3. Commission idempotency: the ledger key (invoice + partner) rejects replays
   even when Stripe redelivers under a new event id
4. Commissions accrue only when money is collected (invoice.paid)
5. Retryable store failures are reported so Stripe redelivers

Events Handled:
- invoice.paid
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe
from pymongo.errors import DuplicateKeyError, PyMongoError

from models import AuditAction, AuditResource
from models.commissions import ProcessErrorCode
from services.commission_service import CommissionService
from services.conversion_tracking import ConversionTrackingService
from services.errors import CommissionError, TransientStoreFailure, is_transient, store_call
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
_stripe_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
stripe.api_key = _stripe_key


# Webhook secret: support test vs live. If STRIPE_WEBHOOK_SECRET is set, use it; else choose by key prefix.
def _get_webhook_secret() -> str:
    explicit = (os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip()
    if explicit:
        return explicit
    key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()
    if key.startswith("sk_live_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_LIVE") or "").strip()
    if key.startswith("sk_test_"):
        return (os.getenv("STRIPE_WEBHOOK_SECRET_TEST") or "").strip()
    return ""


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _from_unix(seconds: Optional[int]) -> Optional[datetime]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc)


def _invoice_subscription_id(invoice: Dict) -> Optional[str]:
    subscription = _id_of(invoice.get("subscription"))
    if subscription:
        return subscription
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return _id_of(details.get("subscription"))


def _first_line(invoice: Dict) -> Dict:
    lines = (invoice.get("lines") or {}).get("data") or []
    return lines[0] if lines else {}


def _invoice_period(invoice: Dict) -> Tuple[datetime, datetime]:
    """Billing period [start, end) the invoice pays for.

    Subscription invoices carry the served period on the line item; the
    invoice-level period is used when no line period exists.
    """
    period = _first_line(invoice).get("period") or {}
    start = _from_unix(period.get("start")) or _from_unix(invoice.get("period_start"))
    end = _from_unix(period.get("end")) or _from_unix(invoice.get("period_end"))
    if start is None or end is None:
        now = datetime.now(timezone.utc)
        start, end = start or now, end or now
    return start, end


def _invoice_price_id(invoice: Dict) -> Optional[str]:
    line = _first_line(invoice)
    price = line.get("price") or ((line.get("pricing") or {}).get("price_details") or {}).get("price")
    return _id_of(price)


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Extract safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "customer_id": _id_of(obj.get("customer")),
        "invoice_id": obj.get("id") if str(event.get("type", "")).startswith("invoice.") else None,
    }


class RetryableWebhookError(Exception):
    """Processing failed in a way a redelivery can fix."""


class StripeWebhookService:
    def __init__(self, db, commission_service: CommissionService = None, tracking: ConversionTrackingService = None):
        self.db = db
        self.commissions = commission_service or CommissionService(db)
        self.tracking = tracking or ConversionTrackingService(db, self.commissions.statistics)

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    def _construct_event(self, payload: bytes, signature: str) -> Dict:
        webhook_secret = _get_webhook_secret()
        if webhook_secret:
            # Raises SignatureVerificationError on a bad signature
            stripe.Webhook.construct_event(payload, signature, webhook_secret)
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET (or _TEST/_LIVE) not set - skipping signature verification")
        return json.loads(payload)

    async def process_webhook(self, payload: bytes, signature: str) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Returns:
            (success, message, details)

        Raises:
            RetryableWebhookError when the event should be redelivered.
        """
        try:
            event = self._construct_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("Webhook signature verification failed: %s", e)
            return False, "Invalid signature", {"error": str(e)}
        except ValueError as e:
            logger.error(f"Webhook parse error: {e}")
            return False, "Invalid payload", {"error": str(e)}

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s customer_id=%s invoice_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("customer_id"), ctx.get("invoice_id"),
        )

        try:
            async with store_call("stripe event lookup"):
                existing = await self.db.stripe_events.find_one({"event_id": event_id}, {"_id": 0})
                if existing and existing.get("status") == "PROCESSED":
                    logger.info(f"Event {event_id} already processed - skipping")
                    return True, "Already processed", {"event_id": event_id}

                event_record = {
                    "event_id": event_id,
                    "type": event_type,
                    "created": datetime.now(timezone.utc),
                    "processed_at": None,
                    "status": "PROCESSING",
                    "error": None,
                }
                if existing:
                    await self.db.stripe_events.update_one({"event_id": event_id}, {"$set": event_record})
                else:
                    try:
                        await self.db.stripe_events.insert_one(event_record)
                    except DuplicateKeyError:
                        logger.info(f"Event {event_id} duplicate insert (race) - skipping")
                        return True, "Already processed", {"event_id": event_id}
        except TransientStoreFailure as e:
            raise RetryableWebhookError(str(e)) from e

        try:
            result = await self._handle_event(event)
        except (RetryableWebhookError, TransientStoreFailure) as e:
            await self._mark_event(event_id, "FAILED", error=str(e))
            logger.error("WEBHOOK_PROCESSING_RETRYABLE event_id=%s event_type=%s error=%s", event_id, event_type, e)
            raise RetryableWebhookError(str(e)) from e
        except (CommissionError, PyMongoError, ValueError, KeyError) as e:
            await self._mark_event(event_id, "FAILED", error=str(e))
            logger.error("WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error=%s", event_id, event_type, e)
            await create_audit_log(
                self.db,
                action=AuditAction.STRIPE_EVENT_FAILED,
                resource_type=AuditResource.STRIPE_EVENT,
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
            )
            # Acknowledge so Stripe stops retrying a payload that cannot succeed
            return True, "Event logged with error", {"error": str(e), "event_id": event_id}

        await self._mark_event(event_id, "PROCESSED")
        if result.get("ledger_written"):
            await create_audit_log(
                self.db,
                action=AuditAction.STRIPE_EVENT_PROCESSED,
                partner_id=result.get("partner_id"),
                resource_type=AuditResource.STRIPE_EVENT,
                resource_id=event_id,
                metadata={
                    "event_type": event_type,
                    "invoice_id": result.get("invoice_id"),
                    "ledger_entry_id": result.get("ledger_entry_id"),
                    "replayed": result.get("replayed"),
                },
            )
        logger.info("WEBHOOK_PROCESSED_OK event_id=%s event_type=%s", event_id, event_type)
        return True, "Processed", result

    async def _mark_event(self, event_id: str, status: str, error: str = None) -> None:
        try:
            await self.db.stripe_events.update_one(
                {"event_id": event_id},
                {"$set": {"status": status, "processed_at": datetime.now(timezone.utc), "error": error}},
            )
        except PyMongoError as e:
            if not is_transient(e):
                raise
            logger.warning(f"Could not mark stripe event {event_id} as {status}: {e}")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "invoice.paid": self._handle_invoice_paid,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data, event)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_invoice_paid(self, invoice: Dict, event: Dict) -> Dict:
        """Accrue the referring partner's commission for a collected invoice."""
        invoice_id = invoice.get("id")
        customer_id = _id_of(invoice.get("customer"))
        subscription_id = _invoice_subscription_id(invoice)
        amount_paid = int(invoice.get("amount_paid") or 0)
        currency = (invoice.get("currency") or "usd").upper()
        customer_uid = (invoice.get("metadata") or {}).get("customer_uid")

        if not customer_id:
            logger.warning(f"No customer on invoice {invoice_id}, skipping commission accrual")
            return {"handled": True, "skipped": "no_customer"}

        if amount_paid <= 0:
            logger.warning(f"Invoice {invoice_id} amount paid is {amount_paid}, skipping commission accrual")
            return {"handled": True, "skipped": "zero_amount"}

        referral = await self.tracking.find_referral_for_invoice(customer_id, subscription_id, customer_uid)
        if not referral:
            logger.info(f"No referral found for invoice {invoice_id} (customer={customer_id}), skipping commission accrual")
            return {"handled": True, "skipped": "no_referral"}

        partner_id = referral.get("partner_id")
        if not partner_id:
            logger.warning(f"Referral {referral.get('conversion_id')} has no partner, skipping commission accrual")
            return {"handled": True, "skipped": "no_partner"}

        await self._advance_tracking(referral, customer_id, subscription_id, amount_paid, currency, invoice)

        period_start, period_end = _invoice_period(invoice)
        result = await self.commissions.process_commission(
            partner_id=partner_id,
            referral_id=referral["conversion_id"],
            gross_amount=amount_paid,
            currency=currency,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            stripe_metadata={
                "customer_id": customer_id,
                "price_id": _invoice_price_id(invoice),
                "invoice_status": invoice.get("status"),
            },
        )

        if result.retryable:
            raise RetryableWebhookError(f"Commission processing for invoice {invoice_id} failed: {result.error_code}")
        if result.error_code == ProcessErrorCode.STORE_ERROR.value:
            raise CommissionError(f"Commission ledger write for invoice {invoice_id} was rejected by the store")

        return {
            "handled": True,
            "partner_id": partner_id,
            "invoice_id": invoice_id,
            **result.model_dump(),
        }

    async def _advance_tracking(
        self,
        referral: Dict,
        customer_id: str,
        subscription_id: Optional[str],
        amount_paid: int,
        currency: str,
        invoice: Dict,
    ) -> None:
        customer_uid = referral.get("customer_uid")
        if referral.get("status") == "signup":
            if await self.tracking.mark_conversion(customer_uid, customer_id, amount_paid, currency):
                referral["status"] = "converted"
        if subscription_id and referral.get("status") == "converted":
            plan_id = _invoice_price_id(invoice)
            await self.tracking.mark_subscription(customer_uid, subscription_id, plan_id)
