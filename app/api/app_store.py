"""
App Store Server Notifications

Receives subscription lifecycle notifications from Apple and mirrors them onto
subscriptions/{uid}. Apple retries anything but a 200, so every POST is
answered with 200 and failures are only logged.

Receipt info is read from, in order:
- data.signedTransactionInfo (v2, JWS payload segment)
- unified_receipt.latest_receipt_info[0] (v1)
- latest_receipt_info (array or object)
"""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from app.database import SERVER_TIMESTAMP, db

logger = logging.getLogger("functions.app_store")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

ACTIVE_TYPES = {"INITIAL_BUY", "DID_RENEW", "SUBSCRIBED"}
GRACE_TYPES = {"CANCEL", "DID_FAIL_TO_RENEW"}

# notification type -> status; the plan drops to free
ENDED_TYPES = {
    "EXPIRED": "expired",
    "REFUND": "refunded",
    "REVOKE": "revoked",
}


def decode_jws_payload(jws: str) -> Dict[str, Any]:
    """Payload segment of a compact JWS. The signature is not checked."""
    return jwt.decode(jws, options={"verify_signature": False})


def latest_receipt_info(notification: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    signed = (notification.get("data") or {}).get("signedTransactionInfo")
    if signed:
        try:
            return decode_jws_payload(signed)
        except jwt.PyJWTError as e:
            logger.error(f"Could not decode signedTransactionInfo: {e}")

    unified = notification.get("unified_receipt") or {}
    if unified.get("latest_receipt_info"):
        return unified["latest_receipt_info"][0]

    info = notification.get("latest_receipt_info")
    if info:
        return info[0] if isinstance(info, list) else info

    return None


def _field(info: Dict[str, Any], snake: str, camel: str) -> Any:
    """v1 receipts use snake_case, v2 transaction info camelCase."""
    value = info.get(snake)
    return value if value is not None else info.get(camel)


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return None


def resolve_user(info: Optional[Dict[str, Any]]) -> Optional[str]:
    if not info:
        logger.error("No receipt info found in notification")
        return None

    original_transaction_id = _field(info, "original_transaction_id", "originalTransactionId")
    if not original_transaction_id:
        logger.error("Receipt info has no original transaction id")
        return None

    try:
        uid = db.find_uid_by_transaction(str(original_transaction_id))
    except Exception as e:
        logger.error(f"User lookup failed for transaction {original_transaction_id}: {e}")
        return None

    if not uid:
        logger.error(f"No user found for transaction {original_transaction_id}")
    return uid


def activate(info: Dict[str, Any], uid: str) -> None:
    product_id = _field(info, "product_id", "productId") or ""
    subscription_type = "premium_yearly" if "yearly" in product_id else "premium_monthly"
    expires = _ms_to_datetime(_field(info, "expires_date_ms", "expiresDate"))

    db.set_subscription(uid, {
        "type": subscription_type,
        "startDate": _ms_to_datetime(_field(info, "purchase_date_ms", "purchaseDate")),
        "endDate": expires,
        "lastUpdated": SERVER_TIMESTAMP,
        "originalTransactionId": _field(info, "original_transaction_id", "originalTransactionId"),
        "transactionId": _field(info, "transaction_id", "transactionId"),
        "productId": product_id,
        "status": "active",
    }, merge=True)
    logger.info(f"Subscription activated for {uid}: {subscription_type}, expires {expires}")


def process_notification(notification: Dict[str, Any]) -> None:
    notification_type = notification.get("notificationType") or notification.get("notification_type")

    if notification_type == "PRICE_INCREASE":
        logger.info("Price increase notification received")
        return

    if notification_type not in ACTIVE_TYPES | GRACE_TYPES | set(ENDED_TYPES):
        logger.info(f"Unhandled notification type: {notification_type}")
        return

    info = latest_receipt_info(notification)
    uid = resolve_user(info)
    if not uid:
        return

    try:
        if notification_type in ACTIVE_TYPES:
            activate(info, uid)
        elif notification_type in GRACE_TYPES:
            db.update_subscription(uid, {
                "status": "grace_period",
                "lastUpdated": SERVER_TIMESTAMP,
            })
            logger.info(f"Subscription renewal failed for {uid}")
        else:
            status = ENDED_TYPES[notification_type]
            db.update_subscription(uid, {
                "type": "free",
                "status": status,
                "lastUpdated": SERVER_TIMESTAMP,
            })
            logger.info(f"Subscription {status} for {uid}")
    except Exception as e:
        logger.error(f"Failed to apply {notification_type} for {uid}: {e}")


@router.api_route("/app-store", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def app_store_notifications(request: Request):
    if request.method != "POST":
        logger.error(f"Invalid request method: {request.method}")
        return PlainTextResponse("Method Not Allowed", status_code=405)

    try:
        notification = await request.json()
        if not isinstance(notification, dict):
            raise ValueError("notification body is not an object")

        notification_type = notification.get("notificationType") or notification.get("notification_type")
        environment = notification.get("environment") or "PROD"
        logger.info(f"App Store notification: {notification_type} ({environment})")

        if notification_type:
            process_notification(notification)
    except Exception as e:
        logger.error(f"Error processing App Store notification: {e}")
        return PlainTextResponse("Error processing notification")

    return PlainTextResponse("OK")
