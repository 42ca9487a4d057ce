"""Stripe adapter: webhook verification, subscription lookups, payload helpers."""

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from subsync.config.settings import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

OWNER_METADATA_KEY = "subsync_owner_id"

_SUBSCRIPTION_EXPAND = ["default_payment_method", "latest_invoice.payment_intent"]


class ProviderLookupError(Exception):
    """Raised when Stripe could not be reached or refused a lookup."""
    pass


@dataclass
class SubscriptionSnapshot:
    external_subscription_id: str
    status: str
    plan_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    payment_method_status: str = "valid"


def _get_stripe():
    """Return a configured stripe module (avoids module-level api_key assignment)."""
    stripe.api_key = settings.stripe_secret_key
    return stripe


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if type(obj) is dict:
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def verify_webhook(payload: bytes, sig_header: str) -> dict:
    """Verify the Stripe signature and return the event as a plain dict."""
    s = _get_stripe()
    event = s.Webhook.construct_event(
        payload, sig_header, settings.stripe_webhook_secret
    )
    return _as_dict(event)


def _timestamp_to_datetime(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _payment_method_status(subscription: dict) -> str:
    """Derive payment method health from the latest invoice's payment intent."""
    invoice = subscription.get("latest_invoice")
    if not isinstance(invoice, dict):
        return "valid"
    intent = invoice.get("payment_intent")
    if not isinstance(intent, dict):
        return "valid"
    if intent.get("status") == "requires_action":
        return "requires_action"
    if intent.get("status") in ("requires_payment_method", "payment_failed"):
        return "declined"
    return "valid"


def snapshot_from_subscription(subscription) -> SubscriptionSnapshot:
    data = _as_dict(subscription)
    items = (data.get("items") or {}).get("data") or []
    plan_id = None
    if items:
        price = items[0].get("price") or {}
        plan_id = price.get("id")

    return SubscriptionSnapshot(
        external_subscription_id=data.get("id"),
        status=data.get("status", ""),
        plan_id=plan_id,
        current_period_end=_timestamp_to_datetime(data.get("current_period_end")),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        payment_method_status=_payment_method_status(data),
    )


@retry(
    stop=stop_after_attempt(settings.provider_max_attempts),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(stripe.APIConnectionError),
    reraise=True,
)
def _retrieve_subscription(subscription_id: str, timeout: float):
    s = _get_stripe()
    client = s.StripeClient(
        settings.stripe_secret_key,
        http_client=s.HTTPXClient(timeout=timeout, allow_sync_methods=True),
    )
    return client.subscriptions.retrieve(
        subscription_id, params={"expand": _SUBSCRIPTION_EXPAND}
    )


def fetch_subscription(subscription_id: str, timeout: float | None = None) -> SubscriptionSnapshot:
    """Fetch a subscription from Stripe, bounded by ``timeout`` seconds.

    Timeouts and API errors surface as ProviderLookupError so callers can
    record them as retryable processing failures.
    """
    if timeout is None:
        timeout = settings.provider_timeout_seconds

    try:
        subscription = _retrieve_subscription(subscription_id, timeout)
    except stripe.StripeError as exc:
        logger.warning("Stripe lookup failed for subscription %s: %s", subscription_id, exc)
        raise ProviderLookupError(f"Stripe lookup failed for {subscription_id}: {exc}") from exc

    return snapshot_from_subscription(subscription)


def event_object(event: dict) -> dict:
    """Return the Stripe object carried by an event, or the payload itself."""
    if not isinstance(event, dict):
        return {}
    data = event.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return event


def extract_owner_id(event: dict) -> str | None:
    """Find our owner ID in the metadata of a Stripe event payload."""
    obj = event_object(event)

    metadata = obj.get("metadata") or {}
    if metadata.get(OWNER_METADATA_KEY):
        return metadata[OWNER_METADATA_KEY]

    # Invoices carry the owner on the expanded subscription
    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        sub_metadata = subscription.get("metadata") or {}
        if sub_metadata.get(OWNER_METADATA_KEY):
            return sub_metadata[OWNER_METADATA_KEY]

    details = obj.get("subscription_details") or {}
    detail_metadata = details.get("metadata") or {}
    if detail_metadata.get(OWNER_METADATA_KEY):
        return detail_metadata[OWNER_METADATA_KEY]

    return None


def sanitize_event(event: dict) -> dict:
    """Copy of the event with card, billing and customer details stripped."""
    sanitized = copy.deepcopy(event)
    obj = event_object(sanitized)

    payment_method = obj.get("payment_method")
    if isinstance(payment_method, dict):
        obj["payment_method"] = {
            "id": payment_method.get("id"),
            "type": payment_method.get("type"),
        }

    customer = obj.get("customer")
    if isinstance(customer, dict):
        obj["customer"] = {"id": customer.get("id")}

    for key in ("customer_details", "billing_details", "customer_email", "customer_address"):
        obj.pop(key, None)

    return sanitized
