"""
Firestore Database Integration

Persistent storage for:
- Subscription records (subscriptions/{uid})
- Stripe customer mappings (stripe_customers/{uid})
- App Store purchase records (purchase_records/*)
- Per-user usage logs (users/{uid}/api_usage_{provider}/*)
"""

import os
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from google.cloud import firestore
from google.cloud.firestore_v1 import FieldFilter

logger = logging.getLogger("functions.database")

FIRESTORE_PROJECT = os.getenv("GOOGLE_CLOUD_PROJECT", os.getenv("GCLOUD_PROJECT"))

SUBSCRIPTIONS_COLLECTION = "subscriptions"
STRIPE_CUSTOMERS_COLLECTION = "stripe_customers"
PURCHASE_RECORDS_COLLECTION = "purchase_records"
USERS_COLLECTION = "users"

# Sentinel resolved by Firestore at write time
SERVER_TIMESTAMP = firestore.SERVER_TIMESTAMP


def usage_collection_name(provider: str) -> str:
    return f"api_usage_{provider}"


class FirestoreDB:
    """Firestore access for subscriptions, customers and usage."""

    def __init__(self, project_id: Optional[str] = None, client=None):
        self.project_id = project_id or FIRESTORE_PROJECT
        self._db = client

    @property
    def db(self):
        """Lazy initialization of Firestore client."""
        if self._db is None:
            try:
                self._db = firestore.Client(project=self.project_id)
                logger.info(f"Firestore initialized for project: {self.project_id}")
            except Exception as e:
                logger.error(f"Failed to initialize Firestore: {e}")
                raise
        return self._db

    def use_client(self, client) -> None:
        """Swap the underlying client (tests, alternate projects)."""
        self._db = client

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscription_ref(self, uid: str):
        return self.db.collection(SUBSCRIPTIONS_COLLECTION).document(uid)

    def get_subscription(self, uid: str) -> Optional[Dict[str, Any]]:
        doc = self.subscription_ref(uid).get()
        return doc.to_dict() if doc.exists else None

    def set_subscription(self, uid: str, data: Dict[str, Any], merge: bool = False) -> None:
        self.subscription_ref(uid).set(data, merge=merge)

    def update_subscription(self, uid: str, updates: Dict[str, Any]) -> None:
        """Patch an existing record. Raises NotFound if there is none."""
        self.subscription_ref(uid).update(updates)

    def find_uid_by_transaction(self, original_transaction_id: str) -> Optional[str]:
        """Resolve an App Store original transaction id to a user id."""
        query = (
            self.db.collection(SUBSCRIPTIONS_COLLECTION)
            .where(filter=FieldFilter("originalTransactionId", "==", original_transaction_id))
            .limit(1)
        )
        for doc in query.stream():
            return doc.id

        query = (
            self.db.collection(PURCHASE_RECORDS_COLLECTION)
            .where(filter=FieldFilter("originalTransactionId", "==", original_transaction_id))
            .limit(1)
        )
        for doc in query.stream():
            return (doc.to_dict() or {}).get("userId")

        return None

    # =========================================================================
    # STRIPE CUSTOMERS
    # =========================================================================

    def get_stripe_customer(self, uid: str) -> Optional[Dict[str, Any]]:
        doc = self.db.collection(STRIPE_CUSTOMERS_COLLECTION).document(uid).get()
        return doc.to_dict() if doc.exists else None

    def set_stripe_customer(self, uid: str, customer_id: str, email: Optional[str]) -> None:
        self.db.collection(STRIPE_CUSTOMERS_COLLECTION).document(uid).set({
            "customer_id": customer_id,
            "email": email,
        })

    def find_uid_by_customer(self, customer_id: str) -> Optional[str]:
        query = (
            self.db.collection(STRIPE_CUSTOMERS_COLLECTION)
            .where(filter=FieldFilter("customer_id", "==", customer_id))
            .limit(1)
        )
        for doc in query.stream():
            return doc.id
        return None

    # =========================================================================
    # USAGE
    # =========================================================================

    def usage_ref(self, uid: str, provider: str):
        return (
            self.db.collection(USERS_COLLECTION)
            .document(uid)
            .collection(usage_collection_name(provider))
        )

    def add_usage_record(self, uid: str, provider: str, record: Dict[str, Any]) -> None:
        self.usage_ref(uid, provider).add(record)

    def count_usage_since(self, uid: str, provider: str, since: datetime) -> int:
        query = self.usage_ref(uid, provider).where(filter=FieldFilter("timestamp", ">=", since))
        return sum(1 for _ in query.stream())


# Global database instance
db = FirestoreDB()
