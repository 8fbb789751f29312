"""
Tests for processor payload normalization.

Every payload shape the processor has shipped must land on the same
canonical dataclass.
"""

import pytest

from app.models.events import (
    CheckoutSessionPayload,
    InvoicePayload,
    ProcessorEvent,
    ProcessorEventType,
    SubscriptionPayload,
)


class TestSubscriptionPayload:
    """Tests for SubscriptionPayload.from_payload."""

    def test_snake_case_fields(self):
        sub = SubscriptionPayload.from_payload(
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "cancel_at_period_end": True,
                "current_period_start": 1_704_067_200,
                "current_period_end": 1_706_745_600,
                "created": 1_704_067_200,
            }
        )

        assert sub.subscription_id == "sub_1"
        assert sub.customer_id == "cus_1"
        assert sub.status == "active"
        assert sub.cancel_at_period_end is True
        assert sub.current_period_end == 1_706_745_600
        assert sub.current_period_start == 1_704_067_200

    def test_camel_case_fields(self):
        sub = SubscriptionPayload.from_payload(
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "cancelAtPeriodEnd": True,
                "currentPeriodEnd": 1_706_745_600,
                "currentPeriodStart": 1_704_067_200,
            }
        )

        assert sub.cancel_at_period_end is True
        assert sub.current_period_end == 1_706_745_600
        assert sub.current_period_start == 1_704_067_200

    def test_period_fields_on_first_item(self):
        """Newer API versions moved the period onto subscription items."""
        sub = SubscriptionPayload.from_payload(
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "items": {
                    "object": "list",
                    "data": [
                        {
                            "current_period_start": 1_704_067_200,
                            "current_period_end": 1_706_745_600,
                            "price": {"recurring": {"interval": "year", "interval_count": 1}},
                        }
                    ],
                },
            }
        )

        assert sub.current_period_end == 1_706_745_600
        assert sub.current_period_start == 1_704_067_200
        assert sub.interval == "year"
        assert sub.interval_count == 1

    def test_top_level_period_beats_item(self):
        sub = SubscriptionPayload.from_payload(
            {
                "id": "sub_1",
                "current_period_end": 100,
                "items": {"data": [{"current_period_end": 200}]},
            }
        )
        assert sub.current_period_end == 100

    def test_expanded_customer_object(self):
        sub = SubscriptionPayload.from_payload(
            {"id": "sub_1", "customer": {"id": "cus_expanded", "object": "customer"}}
        )
        assert sub.customer_id == "cus_expanded"

    def test_missing_fields_are_none(self):
        sub = SubscriptionPayload.from_payload({})

        assert sub.subscription_id is None
        assert sub.customer_id is None
        assert sub.status is None
        assert sub.cancel_at_period_end is False
        assert sub.current_period_end is None
        assert sub.interval is None

    def test_non_numeric_period_end_ignored(self):
        sub = SubscriptionPayload.from_payload({"current_period_end": "soon", "created": True})
        assert sub.current_period_end is None
        assert sub.created is None

    def test_string_interval_count_accepted(self):
        sub = SubscriptionPayload.from_payload(
            {"items": {"data": [{"price": {"recurring": {"interval": "month", "interval_count": "3"}}}]}}
        )
        assert sub.interval_count == 3

    def test_none_payload(self):
        sub = SubscriptionPayload.from_payload(None)
        assert sub.subscription_id is None


class TestCheckoutSessionPayload:
    def test_subscription_checkout(self):
        checkout = CheckoutSessionPayload.from_payload(
            {
                "id": "cs_1",
                "mode": "subscription",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"userId": "acct-1"},
            }
        )

        assert checkout.mode == "subscription"
        assert checkout.subscription_id == "sub_1"
        assert checkout.account_id == "acct-1"
        assert checkout.purchase_account_id is None

    def test_pay_per_use_checkout(self):
        checkout = CheckoutSessionPayload.from_payload(
            {
                "id": "cs_2",
                "mode": "payment",
                "amount_total": 299,
                "metadata": {"type": "pay_per_appraisal", "user_id": "acct-2", "credits": "5"},
            }
        )

        assert checkout.session_id == "cs_2"
        assert checkout.purchase_type == "pay_per_appraisal"
        assert checkout.purchase_account_id == "acct-2"
        assert checkout.credits == 5
        assert checkout.amount_total == 299

    def test_invalid_credits_dropped(self):
        checkout = CheckoutSessionPayload.from_payload({"metadata": {"credits": "-2"}})
        assert checkout.credits is None

    def test_expanded_subscription_object(self):
        checkout = CheckoutSessionPayload.from_payload({"subscription": {"id": "sub_x"}})
        assert checkout.subscription_id == "sub_x"


class TestInvoicePayload:
    def test_top_level_subscription(self):
        invoice = InvoicePayload.from_payload(
            {
                "id": "in_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "billing_reason": "subscription_cycle",
            }
        )

        assert invoice.subscription_id == "sub_1"
        assert invoice.billing_reason == "subscription_cycle"

    def test_subscription_under_parent_details(self):
        invoice = InvoicePayload.from_payload(
            {
                "id": "in_1",
                "customer": "cus_1",
                "parent": {"subscription_details": {"subscription": "sub_nested"}},
            }
        )
        assert invoice.subscription_id == "sub_nested"

    def test_no_subscription(self):
        assert InvoicePayload.from_payload({"id": "in_1"}).subscription_id is None


class TestProcessorEvent:
    def test_checkout_event(self):
        event = ProcessorEvent.from_payload(
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_1", "mode": "subscription"}},
            }
        )

        assert event.event_type is ProcessorEventType.CHECKOUT_COMPLETED
        assert event.checkout is not None
        assert event.checkout.session_id == "cs_1"
        assert event.subscription is None

    def test_subscription_event(self):
        event = ProcessorEvent.from_payload(
            {
                "id": "evt_2",
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
            }
        )

        assert event.event_type is ProcessorEventType.SUBSCRIPTION_DELETED
        assert event.subscription is not None
        assert event.subscription.customer_id == "cus_1"

    def test_invoice_event(self):
        event = ProcessorEvent.from_payload(
            {
                "id": "evt_3",
                "type": "invoice.payment_failed",
                "data": {"object": {"id": "in_1", "customer": "cus_1"}},
            }
        )
        assert event.invoice is not None
        assert event.invoice.customer_id == "cus_1"

    def test_unrouted_event_type(self):
        event = ProcessorEvent.from_payload(
            {"id": "evt_4", "type": "customer.created", "data": {"object": {}}}
        )

        assert event.event_type is None
        assert event.raw_type == "customer.created"
        assert event.checkout is None
        assert event.subscription is None
        assert event.invoice is None

    def test_missing_type_rejected(self):
        with pytest.raises(ValueError, match="type"):
            ProcessorEvent.from_payload({"id": "evt_5", "data": {"object": {}}})

    def test_missing_id_rejected(self):
        with pytest.raises(ValueError, match="id"):
            ProcessorEvent.from_payload({"type": "invoice.payment_failed"})
