import json
import time
from unittest.mock import MagicMock

import pytest
import stripe

from racenight.errors import (
    InvalidPayload, InvalidSignature, Misconfigured, ProviderError,
)
from racenight.payments import (
    CHECKOUT_COMPLETED, LineItem, MockPay, StripePay,
)

EVENT = {
    "id": "evt_1",
    "type": CHECKOUT_COMPLETED,
    "data": {"object": {"id": "cs_live_1", "object": "checkout.session"}},
}


@pytest.fixture
def construct_event(monkeypatch):
    fake = MagicMock(return_value={"ok": True})
    monkeypatch.setattr(stripe.Webhook, "construct_event", fake)
    return fake


def test_stripe_verify_passes_raw_bytes(construct_event):
    pay = StripePay(api_key="sk_test", webhook_secret="whsec_1")
    body = json.dumps(EVENT).encode()
    event = pay.verify_webhook(body, {"stripe-signature": "t=1,v1=abc"})

    construct_event.assert_called_once_with(body, "t=1,v1=abc", "whsec_1")
    assert pay.event_kind(event) == CHECKOUT_COMPLETED
    assert pay.event_ids(event) == ("cs_live_1", "evt_1")


def test_stripe_missing_signature(construct_event):
    pay = StripePay(webhook_secret="whsec_1")
    with pytest.raises(InvalidSignature):
        pay.verify_webhook(b"{}", {})
    construct_event.assert_not_called()


def test_stripe_missing_secret(construct_event):
    pay = StripePay(webhook_secret=None)
    with pytest.raises(Misconfigured) as exc:
        pay.verify_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})
    assert exc.value.status_code == 500


def test_stripe_bad_signature(construct_event):
    construct_event.side_effect = stripe.SignatureVerificationError(
        "No signatures found", "t=1,v1=abc")
    pay = StripePay(webhook_secret="whsec_1")
    with pytest.raises(InvalidSignature):
        pay.verify_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})


def test_stripe_invalid_payload(construct_event):
    construct_event.side_effect = ValueError("bad json")
    pay = StripePay(webhook_secret="whsec_1")
    with pytest.raises(InvalidPayload):
        pay.verify_webhook(b"{", {"stripe-signature": "t=1,v1=abc"})


def _stripe_session():
    # real SDK objects: not dicts on current releases
    return stripe.checkout.Session.construct_from({
        "id": "cs_live_1",
        "amount_total": 5000,
        "amount_subtotal": 4855,
        "currency": "usd",
        "customer_details": {"email": "buyer@example.com"},
        "customer_email": None,
        "metadata": {"purchaserName": "Sam Lee", "tableName": "T1"},
        "payment_intent": {
            "id": "pi_1",
            "latest_charge": {"balance_transaction": {"fee": 175}},
        },
    }, "sk_test")


def _stripe_line_items():
    items = [
        {
            "description": "Raffle Tickets",
            "quantity": 1,
            "amount_total": 2000,
            "price": {"product": {
                "name": "Raffle Tickets",
                "description": "1 books (5 tickets)",
                "metadata": {"category": "raffle_book"},
            }},
        },
        {
            "description": "Processing Fee",
            "quantity": 1,
            "amount_total": 145,
            "price": {"product": {"name": "Processing Fee",
                                  "metadata": {}}},
        },
    ]
    page = MagicMock()
    page.auto_paging_iter.return_value = iter([
        stripe.StripeObject.construct_from(li, "sk_test") for li in items
    ])
    return page


async def test_stripe_retrieve_session(monkeypatch):
    retrieve = MagicMock(return_value=_stripe_session())
    list_items = MagicMock(return_value=_stripe_line_items())
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)
    monkeypatch.setattr(stripe.checkout.Session, "list_line_items",
                        list_items)

    pay = StripePay(api_key="sk_test", webhook_secret="whsec_1")
    session = await pay.retrieve_session("cs_live_1")

    assert retrieve.call_args.kwargs["expand"] == [
        "payment_intent.latest_charge.balance_transaction"]
    assert session.amount_total == 5000
    assert session.amount_subtotal == 4855
    assert session.customer_email == "buyer@example.com"
    assert session.payment_intent_id == "pi_1"
    assert session.provider_fee == 175
    assert session.metadata == {"purchaserName": "Sam Lee", "tableName": "T1"}
    assert type(session.metadata) is dict
    book, fee = session.line_items
    assert book.category == "raffle_book"
    assert book.detail == "1 books (5 tickets)"
    assert fee.category is None


async def test_stripe_unreachable_becomes_provider_error(monkeypatch):
    retrieve = MagicMock(side_effect=stripe.APIConnectionError("down"))
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)

    pay = StripePay(api_key="sk_test", retries=1)
    with pytest.raises(ProviderError) as exc:
        await pay.retrieve_session("cs_live_1")
    assert retrieve.call_count == 2
    assert exc.value.session_id == "cs_live_1"


async def test_stripe_slow_lookup_times_out_and_retries(monkeypatch):
    calls = []

    def slow_fetch(session_id):
        calls.append(session_id)
        time.sleep(0.3)

    pay = StripePay(api_key="sk_test", timeout=0.05, retries=1)
    monkeypatch.setattr(pay, "_fetch_session", slow_fetch)
    with pytest.raises(ProviderError) as exc:
        await pay.retrieve_session("cs_slow")
    assert calls == ["cs_slow", "cs_slow"]
    assert "after 2 attempts" in str(exc.value)


async def test_stripe_rejection_is_not_retried(monkeypatch):
    retrieve = MagicMock(
        side_effect=stripe.InvalidRequestError("No such session", "id"))
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)

    pay = StripePay(api_key="sk_test", retries=3)
    with pytest.raises(ProviderError):
        await pay.retrieve_session("cs_missing")
    assert retrieve.call_count == 1


def test_mockpay_signature_round_trip():
    pay = MockPay(secret="s3cret")
    body = json.dumps(EVENT).encode()
    event = pay.verify_webhook(body, {"x-mockpay-signature": pay.sign(body)})
    assert event["id"] == "evt_1"

    with pytest.raises(InvalidSignature):
        pay.verify_webhook(body + b" ", {"x-mockpay-signature": pay.sign(body)})


def test_mockpay_register_defaults_amounts():
    pay = MockPay(secret="s3cret")
    session = pay.register_session([
        LineItem("Cash Donation", 1, 2000),
        LineItem("Processing Fee", 1, 90),
    ])
    assert session.id.startswith("cs_mock_")
    assert session.amount_subtotal == 2000
    assert session.amount_total == 2090


async def test_mockpay_unknown_session():
    with pytest.raises(ProviderError):
        await MockPay(secret="s3cret").retrieve_session("cs_mock_nope")
