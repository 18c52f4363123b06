"""
Billing API

Stripe subscription billing:
- Checkout sessions for monthly/yearly plans
- Customer portal sessions
- Subscription reconciliation between Stripe and Firestore
- Cancel at period end / reactivate
- Webhook processing for the subscription lifecycle
"""

from __future__ import annotations
import calendar
import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from app.api.auth import Caller, require_auth
from app.core.callable import CallableRequest, CallableResponse, CallableRoute
from app.core.config import config
from app.core.errors import (
    AlreadyExistsError,
    CallableError,
    FailedPreconditionError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
)
from app.database import SERVER_TIMESTAMP, db

logger = logging.getLogger("functions.billing")

router = APIRouter(
    prefix="/callable",
    tags=["Billing"],
    route_class=CallableRoute,
    default_response_class=CallableResponse,
)

webhook_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# =============================================================================
# STRIPE CONFIGURATION
# =============================================================================

def stripe_setting(key: str) -> Optional[str]:
    """STRIPE_<KEY> env var, then stripe.<env>.<key>, then stripe.<key>."""
    return config.resolve("stripe", key, f"STRIPE_{key.upper()}")


def get_stripe():
    """Get the Stripe module with its API key set, or None when unconfigured."""
    api_key = stripe_setting("secret_key")
    if not api_key:
        logger.warning(f"Stripe secret key is not configured (environment: {config.env.value})")
        return None
    stripe.api_key = api_key
    return stripe


def require_stripe():
    """Ensure Stripe is available."""
    client = get_stripe()
    if not client:
        raise FailedPreconditionError("Stripe billing is not configured")
    return client


def price_id_for(plan: Optional[str]) -> Optional[str]:
    key = "yearly_price_id" if plan == "yearly" else "monthly_price_id"
    return stripe_setting(key)


def client_domain() -> str:
    domain = config.resolve("client", "domain")
    if domain:
        return domain
    return "https://anki-pai.com" if config.is_production else "https://dev.anki-pai.com"


def plan_type(plan: Optional[str]) -> str:
    return "premium_yearly" if plan == "yearly" else "premium_monthly"


def to_timestamp(seconds: Optional[int]) -> Optional[datetime]:
    if not seconds:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def first_item(subscription) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def period_bounds(subscription):
    """
    Current billing period. Newer API versions only report it on the
    subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        item = first_item(subscription)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return to_timestamp(start), to_timestamp(end)


def customer_id_for(uid: str) -> Optional[str]:
    customer = db.get_stripe_customer(uid)
    return customer.get("customer_id") if customer else None


def run_billing(name: str, func, *args):
    """Run a billing step; Stripe and storage failures become internal errors."""
    try:
        return func(*args)
    except CallableError:
        raise
    except Exception as e:
        logger.error(f"{name} failed: {e}")
        raise InternalError(str(e)) from e


# =============================================================================
# CHECKOUT & PORTAL
# =============================================================================

def _create_checkout(caller: Caller, price_id: Optional[str], plan: Optional[str], platform: str):
    client = require_stripe()

    customer_id = customer_id_for(caller.uid)
    if not customer_id:
        customer = client.Customer.create(
            email=caller.email,
            metadata={"firebaseUID": caller.uid},
        )
        customer_id = customer.id
        db.set_stripe_customer(caller.uid, customer_id, caller.email)
        logger.info(f"Created Stripe customer {customer_id} for {caller.uid}")

    active = client.Subscription.list(customer=customer_id, status="active")
    if active.data:
        raise AlreadyExistsError("An active subscription already exists")

    target_price = price_id or price_id_for(plan)
    if not target_price:
        raise FailedPreconditionError(f"No price id is configured for plan: {plan}")

    domain = client_domain()
    session = client.checkout.Session.create(
        payment_method_types=["card"],
        automatic_tax={"enabled": True},
        mode="subscription",
        customer=customer_id,
        line_items=[{"price": target_price, "quantity": 1}],
        customer_update={"address": "auto", "shipping": "auto"},
        success_url=f"{domain}/payment_success?session_id={{CHECKOUT_SESSION_ID}}&platform={platform}",
        cancel_url=f"{domain}/payment_cancel?platform={platform}",
        subscription_data={
            "metadata": {
                "firebaseUID": caller.uid,
                "plan": plan or "monthly",
            },
        },
    )

    logger.info(f"Checkout session {session.id} created for {caller.uid}")
    return {"sessionId": session.id, "url": session.url}


@router.post("/createStripeCheckout")
async def create_stripe_checkout(
    envelope: Optional[CallableRequest] = None,
    caller: Caller = Depends(require_auth),
):
    """Create a subscription checkout session."""
    envelope = envelope or CallableRequest()
    return run_billing(
        "createStripeCheckout",
        _create_checkout,
        caller,
        envelope.get("priceId"),
        envelope.get("plan"),
        envelope.get("platform") or "web",
    )


def _create_portal(caller: Caller):
    client = require_stripe()
    customer_id = customer_id_for(caller.uid)
    if not customer_id:
        raise NotFoundError("No subscription information found")

    session = client.billing_portal.Session.create(
        customer=customer_id,
        return_url=client_domain(),
    )
    return {"url": session.url}


@router.post("/createStripePortal")
async def create_stripe_portal(caller: Caller = Depends(require_auth)):
    return run_billing("createStripePortal", _create_portal, caller)


# =============================================================================
# RECONCILIATION
# =============================================================================

def _get_subscription(caller: Caller):
    client = require_stripe()
    uid = caller.uid

    customer_id = customer_id_for(uid)
    if not customer_id:
        logger.info(f"No Stripe customer for {uid}")
        return {"active": False, "plan": "free", "message": "No Stripe customer exists"}

    subscriptions = client.Subscription.list(customer=customer_id, status="active", limit=1)

    if not subscriptions.data:
        record = db.get_subscription(uid)
        record_type = (record or {}).get("type") or "free"
        if "premium" in record_type:
            logger.info(f"Premium record for {uid} exists only in Firestore: {record_type}")
            return {
                "active": True,
                "plan": record.get("plan") or ("yearly" if "yearly" in record_type else "monthly"),
                "subscription": record,
                "source": "firestore_only",
            }
        return {"active": False, "plan": "free", "message": "No active Stripe subscription"}

    subscription = subscriptions.data[0]
    price = first_item(subscription).get("price") or {}
    price_id = price.get("id") or ""
    product = client.Product.retrieve(price.get("product"))
    metadata = subscription.get("metadata") or {}
    plan = metadata.get("plan") or ("yearly" if "yearly" in price_id else "monthly")

    record = db.get_subscription(uid)
    if not record or not record.get("type") or record.get("type") == "free":
        start, end = period_bounds(subscription)
        logger.info(f"Repairing subscription record for {uid} as {plan_type(plan)}")
        db.set_subscription(uid, {
            "subscription_id": subscription["id"],
            "customer_id": customer_id,
            "plan": plan,
            "type": plan_type(plan),
            "status": subscription["status"],
            "price_id": price_id,
            "current_period_start": start,
            "current_period_end": end,
            "updated_at": SERVER_TIMESTAMP,
        }, merge=True)
        record = db.get_subscription(uid)

    return {
        "active": True,
        "plan": plan,
        "stripe_subscription": {
            "id": subscription["id"],
            "status": subscription["status"],
            "current_period_end": subscription.get("current_period_end"),
            "plan_name": product.get("name") if product else None,
        },
        "subscription": record,
    }


@router.post("/getStripeSubscription")
async def get_stripe_subscription(caller: Caller = Depends(require_auth)):
    """Report the caller's plan, repairing the Firestore record from Stripe."""
    return run_billing("getStripeSubscription", _get_subscription, caller)


# =============================================================================
# CANCEL & REACTIVATE
# =============================================================================

def _cancel_subscription(caller: Caller):
    client = require_stripe()
    uid = caller.uid

    customer_id = customer_id_for(uid)
    if not customer_id:
        return {"success": False, "error": "No Stripe customer exists"}

    subscriptions = client.Subscription.list(customer=customer_id, status="active", limit=1)
    if not subscriptions.data:
        db.set_subscription(uid, {
            "status": "canceled",
            "type": "free",
            "updated_at": SERVER_TIMESTAMP,
        }, merge=True)
        return {
            "success": True,
            "message": "No active subscription found; the plan was set to free",
        }

    subscription = subscriptions.data[0]
    canceled = client.Subscription.modify(subscription["id"], cancel_at_period_end=True)
    logger.info(f"Subscription {subscription['id']} cancels at period end")

    db.set_subscription(uid, {
        "status": "canceling",
        "cancel_at": to_timestamp(canceled.get("cancel_at")),
        "updated_at": SERVER_TIMESTAMP,
    }, merge=True)

    return {
        "success": True,
        "message": "Subscription canceled; premium features stay available until the period ends",
        "subscription": {
            "id": canceled["id"],
            "status": canceled["status"],
            "cancel_at": canceled.get("cancel_at"),
            "current_period_end": canceled.get("current_period_end"),
        },
    }


@router.post("/cancelStripeSubscription")
async def cancel_stripe_subscription(caller: Caller = Depends(require_auth)):
    return run_billing("cancelStripeSubscription", _cancel_subscription, caller)


def _reactivate_subscription(caller: Caller):
    client = require_stripe()
    uid = caller.uid

    customer_id = customer_id_for(uid)
    if not customer_id:
        return {"success": False, "error": "No Stripe customer exists"}

    subscriptions = client.Subscription.list(customer=customer_id, limit=10)
    candidate = next(
        (
            sub for sub in subscriptions.data
            if (sub.get("cancel_at_period_end") and sub["status"] == "active")
            or sub["status"] == "canceled"
        ),
        None,
    )
    if candidate is None:
        return {"success": False, "error": "No subscription can be reactivated"}

    if candidate["status"] == "active":
        updated = client.Subscription.modify(candidate["id"], cancel_at_period_end=False)
        logger.info(f"Subscription {candidate['id']} reactivated")
    else:
        items = [
            {"price": item["price"]["id"]}
            for item in (candidate.get("items") or {}).get("data") or []
        ]
        updated = client.Subscription.create(customer=customer_id, items=items)
        logger.info(f"Subscription {updated['id']} created to replace {candidate['id']}")

    db.set_subscription(uid, {
        "status": "active",
        "cancel_at": None,
        "updated_at": SERVER_TIMESTAMP,
    }, merge=True)

    return {
        "success": True,
        "message": "Subscription reactivated",
        "subscription": {
            "id": updated["id"],
            "status": updated["status"],
            "current_period_end": updated.get("current_period_end"),
        },
    }


@router.post("/reactivateStripeSubscription")
async def reactivate_stripe_subscription(caller: Caller = Depends(require_auth)):
    return run_billing("reactivateStripeSubscription", _reactivate_subscription, caller)


# =============================================================================
# TEST HELPER
# =============================================================================

def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _create_test_subscription(caller: Caller, plan: Optional[str]):
    uid = caller.uid
    customer_id = customer_id_for(uid)
    if not customer_id:
        raise NotFoundError("No Stripe customer found for this user")

    plan = plan or "monthly"
    now = datetime.now(timezone.utc)
    end = add_months(now, 12 if plan == "yearly" else 1)

    db.set_subscription(uid, {
        "subscription_id": f"test_sub_{int(time.time() * 1000)}",
        "customer_id": customer_id,
        "plan": plan,
        "type": plan_type(plan),
        "status": "active",
        "price_id": price_id_for(plan),
        "current_period_start": now,
        "current_period_end": end,
        "created_at": SERVER_TIMESTAMP,
        "updated_at": SERVER_TIMESTAMP,
    })
    return {"success": True, "message": "Test subscription created"}


@router.post("/testSubscriptionCreation")
async def test_subscription_creation(
    envelope: Optional[CallableRequest] = None,
    caller: Caller = Depends(require_auth),
):
    """Write a subscription record without Stripe. Not available in production."""
    if config.is_production:
        raise PermissionDeniedError("Test subscriptions are disabled in production")
    envelope = envelope or CallableRequest()
    return run_billing("testSubscriptionCreation", _create_test_subscription, caller, envelope.get("planType"))


# =============================================================================
# WEBHOOK
# =============================================================================

def handle_subscription_created(session: Dict[str, Any]) -> None:
    """Checkout completed: store the new subscription for its customer."""
    try:
        subscription_id = session.get("subscription")
        if not subscription_id:
            logger.error("Checkout session has no subscription id")
            return

        client = require_stripe()
        subscription = client.Subscription.retrieve(subscription_id)
        customer_id = subscription["customer"]

        uid = db.find_uid_by_customer(customer_id)
        if not uid:
            logger.error(f"No user found for customer {customer_id} (subscription {subscription_id})")
            return

        plan = (subscription.get("metadata") or {}).get("plan") or "monthly"
        start, end = period_bounds(subscription)

        db.set_subscription(uid, {
            "subscription_id": subscription_id,
            "customer_id": customer_id,
            "plan": plan,
            "status": subscription["status"],
            "price_id": (first_item(subscription).get("price") or {}).get("id"),
            "type": plan_type(plan),
            "current_period_start": start,
            "current_period_end": end,
            "created_at": SERVER_TIMESTAMP,
            "updated_at": SERVER_TIMESTAMP,
        })
        logger.info(f"Subscription {subscription_id} saved for {uid} ({plan_type(plan)})")
    except Exception as e:
        logger.error(f"Failed to handle checkout completion: {e}")


def handle_subscription_updated(subscription: Dict[str, Any]) -> None:
    uid = db.find_uid_by_customer(subscription["customer"])
    if not uid:
        logger.error(f"No user found for subscription {subscription.get('id')}")
        return

    start, end = period_bounds(subscription)
    db.update_subscription(uid, {
        "status": subscription["status"],
        "current_period_start": start,
        "current_period_end": end,
        "updated_at": SERVER_TIMESTAMP,
    })
    logger.info(f"Subscription {subscription.get('id')} for {uid} is now {subscription['status']}")


def handle_subscription_deleted(subscription: Dict[str, Any]) -> None:
    logger.info(f"Subscription {subscription.get('id')} deleted for customer {subscription.get('customer')}")
    try:
        uid = db.find_uid_by_customer(subscription["customer"])
        if not uid:
            logger.error(f"No user found for subscription {subscription.get('id')}")
            return

        db.update_subscription(uid, {
            "status": subscription["status"],
            "canceled_at": to_timestamp(subscription.get("canceled_at")),
            "updated_at": SERVER_TIMESTAMP,
        })
    except Exception as e:
        logger.error(f"Failed to handle subscription deletion: {e}")


@webhook_router.post("/stripe")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhooks.

    Signature verification is skipped for unsigned requests outside
    production, and when no webhook secret is configured.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    webhook_secret = stripe_setting("webhook_secret")

    try:
        if not sig_header and not config.is_production:
            logger.info("Unsigned webhook accepted outside production")
            event = json.loads(payload)
        elif not webhook_secret:
            logger.warning("Webhook signature verification disabled - set STRIPE_WEBHOOK_SECRET")
            event = json.loads(payload)
        elif not sig_header:
            raise ValueError("missing Stripe-Signature header")
        else:
            event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)

        event_type = event["type"]
        data = event["data"]["object"]
    except (ValueError, KeyError, TypeError, stripe.SignatureVerificationError) as e:
        logger.error(f"Webhook verification failed: {e}")
        return PlainTextResponse(f"Webhook Error: {e}", status_code=400)

    logger.info(f"Received Stripe webhook: {event_type}")

    try:
        if event_type == "checkout.session.completed":
            if data.get("mode") == "subscription":
                handle_subscription_created(data)
        elif event_type == "customer.subscription.updated":
            handle_subscription_updated(data)
        elif event_type == "customer.subscription.deleted":
            handle_subscription_deleted(data)
    except Exception as e:
        logger.error(f"Webhook processing error: {e}")
        return PlainTextResponse(f"Webhook handler failed: {e}", status_code=500)

    return PlainTextResponse("OK")
