"""Tests for the Stripe adapter: verification, lookups and payload helpers."""

from datetime import datetime
from unittest.mock import patch, MagicMock

import pytest
import stripe

from subsync.services.stripe_service import (
    ProviderLookupError,
    event_object,
    extract_owner_id,
    fetch_subscription,
    sanitize_event,
    snapshot_from_subscription,
    verify_webhook,
)


SUBSCRIPTION = {
    "id": "sub_1",
    "object": "subscription",
    "status": "active",
    "items": {"data": [{"price": {"id": "price_pro"}}]},
    "current_period_end": 1772000000,
    "cancel_at_period_end": True,
    "latest_invoice": {"id": "in_1", "payment_intent": {"status": "succeeded"}},
}


class TestVerifyWebhook:
    @patch("subsync.services.stripe_service._get_stripe")
    def test_returns_event_dict(self, mock_get_stripe):
        mock_stripe = MagicMock()
        mock_get_stripe.return_value = mock_stripe
        mock_stripe.Webhook.construct_event.return_value = {"id": "evt_1", "type": "invoice.paid"}

        event = verify_webhook(b"{}", "t=1,v1=abc")

        assert event == {"id": "evt_1", "type": "invoice.paid"}
        mock_stripe.Webhook.construct_event.assert_called_once()

    @patch("subsync.services.stripe_service._get_stripe")
    def test_bad_signature_propagates(self, mock_get_stripe):
        mock_stripe = MagicMock()
        mock_get_stripe.return_value = mock_stripe
        mock_stripe.Webhook.construct_event.side_effect = stripe.SignatureVerificationError("bad", "sig")

        with pytest.raises(stripe.SignatureVerificationError):
            verify_webhook(b"{}", "sig")


class TestSnapshot:
    def test_from_subscription(self):
        snapshot = snapshot_from_subscription(SUBSCRIPTION)

        assert snapshot.external_subscription_id == "sub_1"
        assert snapshot.status == "active"
        assert snapshot.plan_id == "price_pro"
        assert snapshot.current_period_end == datetime.utcfromtimestamp(1772000000)
        assert snapshot.cancel_at_period_end is True
        assert snapshot.payment_method_status == "valid"

    def test_payment_requires_action(self):
        sub = dict(SUBSCRIPTION, latest_invoice={"payment_intent": {"status": "requires_action"}})
        assert snapshot_from_subscription(sub).payment_method_status == "requires_action"

    def test_payment_declined(self):
        sub = dict(SUBSCRIPTION, latest_invoice={"payment_intent": {"status": "requires_payment_method"}})
        assert snapshot_from_subscription(sub).payment_method_status == "declined"

    def test_unexpanded_invoice(self):
        sub = dict(SUBSCRIPTION, latest_invoice="in_1", items={"data": []})
        snapshot = snapshot_from_subscription(sub)
        assert snapshot.payment_method_status == "valid"
        assert snapshot.plan_id is None


class TestFetchSubscription:
    @patch("subsync.services.stripe_service._retrieve_subscription")
    def test_returns_snapshot(self, mock_retrieve):
        mock_retrieve.return_value = SUBSCRIPTION

        snapshot = fetch_subscription("sub_1", timeout=2.5)

        mock_retrieve.assert_called_once_with("sub_1", 2.5)
        assert snapshot.status == "active"

    @patch("subsync.services.stripe_service._retrieve_subscription")
    def test_stripe_error_becomes_lookup_error(self, mock_retrieve):
        mock_retrieve.side_effect = stripe.APIConnectionError("Request timed out")

        with pytest.raises(ProviderLookupError, match="timed out"):
            fetch_subscription("sub_1")

    @patch("subsync.services.stripe_service._get_stripe")
    def test_connection_error_is_retried(self, mock_get_stripe):
        mock_stripe = MagicMock()
        mock_get_stripe.return_value = mock_stripe
        client = mock_stripe.StripeClient.return_value
        client.subscriptions.retrieve.side_effect = [stripe.APIConnectionError("blip"), SUBSCRIPTION]

        snapshot = fetch_subscription("sub_1", timeout=1)

        assert snapshot.external_subscription_id == "sub_1"
        assert client.subscriptions.retrieve.call_count == 2

    @patch("subsync.services.stripe_service._get_stripe")
    def test_lookup_uses_sync_httpx_transport(self, mock_get_stripe):
        mock_stripe = MagicMock()
        mock_get_stripe.return_value = mock_stripe
        mock_stripe.StripeClient.return_value.subscriptions.retrieve.return_value = SUBSCRIPTION

        fetch_subscription("sub_1", timeout=3)

        mock_stripe.HTTPXClient.assert_called_once_with(timeout=3, allow_sync_methods=True)

    def test_installed_stripe_supports_sync_httpx_transport(self):
        http_client = stripe.HTTPXClient(timeout=1, allow_sync_methods=True)
        assert http_client is not None


class TestPayloadHelpers:
    def test_event_object(self):
        assert event_object({"data": {"object": {"id": "sub_1"}}}) == {"id": "sub_1"}
        assert event_object({"id": "sub_1"}) == {"id": "sub_1"}
        assert event_object(None) == {}

    def test_owner_from_object_metadata(self):
        event = {"data": {"object": {"metadata": {"subsync_owner_id": "user_1"}}}}
        assert extract_owner_id(event) == "user_1"

    def test_owner_from_expanded_subscription(self):
        event = {"data": {"object": {"subscription": {"metadata": {"subsync_owner_id": "user_2"}}}}}
        assert extract_owner_id(event) == "user_2"

    def test_owner_from_subscription_details(self):
        event = {"data": {"object": {"subscription_details": {"metadata": {"subsync_owner_id": "user_3"}}}}}
        assert extract_owner_id(event) == "user_3"

    def test_no_owner(self):
        assert extract_owner_id({"data": {"object": {"metadata": {}}}}) is None

    def test_sanitize_strips_personal_details(self):
        event = {
            "id": "evt_1",
            "data": {"object": {
                "id": "cs_1",
                "customer": {"id": "cus_1", "email": "a@example.com", "address": {"city": "X"}},
                "payment_method": {"id": "pm_1", "type": "card", "card": {"last4": "4242"}},
                "customer_details": {"email": "a@example.com"},
                "customer_email": "a@example.com",
            }},
        }

        sanitized = sanitize_event(event)

        obj = sanitized["data"]["object"]
        assert obj["customer"] == {"id": "cus_1"}
        assert obj["payment_method"] == {"id": "pm_1", "type": "card"}
        assert "customer_details" not in obj
        assert "customer_email" not in obj
        # The original is untouched
        assert event["data"]["object"]["customer_email"] == "a@example.com"
