import pytest

from gomflow.core.config import GatewaySettings
from gomflow.services.errors import InvalidInputError, TransientExternalError
from gomflow.services.gateway_clients import (
    BillplzClient,
    PayMongoClient,
    build_bill_payload,
    build_payment_intent_payload,
    create_checkout,
    to_minor_units,
)

from conftest import FakeTransport

SETTINGS = GatewaySettings(
    paymongo_secret_key="sk_test_paymongo",
    billplz_api_key="billplz-api-key",
    billplz_collection_id="col_1",
    callback_base_url="https://core.gomflow.test/",
)

PH_SUBMISSION = {
    "id": "sub_ph",
    "buyer_identity": "telegram:1",
    "buyer_name": "Mika",
    "currency": "PHP",
    "total_amount": "1000.00",
    "payment_reference": "PH-1A2B3C4D",
    "metadata": {},
}

MY_SUBMISSION = {
    "id": "sub_my",
    "buyer_identity": "whatsapp:60123",
    "buyer_name": "Aina",
    "currency": "MYR",
    "total_amount": "85.50",
    "payment_reference": "MY-9F8E7D6C",
    "metadata": {"email": "aina@example.com"},
}


def test_minor_units():
    assert to_minor_units("1000.00") == 100000
    assert to_minor_units("85.5") == 8550


def test_payment_intent_payload_carries_submission_metadata():
    attributes = build_payment_intent_payload(PH_SUBMISSION)["data"]["attributes"]

    assert attributes["amount"] == 100000
    assert attributes["currency"] == "PHP"
    assert "gcash" in attributes["payment_method_allowed"]
    assert attributes["metadata"] == {"submission_id": "sub_ph", "payment_reference": "PH-1A2B3C4D"}


def test_bill_payload_uses_reference_slot():
    payload = build_bill_payload(MY_SUBMISSION, SETTINGS)

    assert payload["amount"] == 8550
    assert payload["collection_id"] == "col_1"
    assert payload["callback_url"] == "https://core.gomflow.test/webhooks/billplz"
    assert payload["reference_1_label"] == "submission_id"
    assert payload["reference_1"] == "sub_my"
    assert payload["email"] == "aina@example.com"
    assert "mobile" not in payload


def test_paymongo_checkout():
    transport = FakeTransport()
    transport.payload = {"data": {"id": "pi_123", "attributes": {"client_key": "pi_123_client"}}}
    client = PayMongoClient(SETTINGS, http_post=transport)

    checkout = client.create_payment_intent(PH_SUBMISSION)

    assert checkout == {"provider": "paymongo", "checkout_id": "pi_123", "client_key": "pi_123_client"}
    assert transport.calls[0]["url"] == "https://api.paymongo.com/v1/payment_intents"
    assert transport.calls[0]["auth"] == ("sk_test_paymongo", "")


def test_billplz_checkout_posts_form_data():
    transport = FakeTransport()
    transport.payload = {"id": "bill_1", "url": "https://www.billplz.com/bills/bill_1"}
    client = BillplzClient(SETTINGS, http_post=transport)

    checkout = client.create_bill(MY_SUBMISSION)

    assert checkout["checkout_id"] == "bill_1"
    assert transport.calls[0]["data"]["reference_1"] == "sub_my"


def test_checkout_routes_by_currency():
    paymongo_transport = FakeTransport()
    billplz_transport = FakeTransport()
    billplz_transport.payload = {"id": "bill_2"}
    paymongo = PayMongoClient(SETTINGS, http_post=paymongo_transport)
    billplz = BillplzClient(SETTINGS, http_post=billplz_transport)

    assert create_checkout(MY_SUBMISSION, paymongo, billplz)["provider"] == "billplz"
    assert paymongo_transport.calls == []


@pytest.mark.parametrize("status", [429, 502])
def test_gateway_outages_are_transient(status):
    transport = FakeTransport()
    transport.status_codes = [status]

    with pytest.raises(TransientExternalError):
        PayMongoClient(SETTINGS, http_post=transport).create_payment_intent(PH_SUBMISSION)


def test_connection_errors_are_transient():
    transport = FakeTransport()
    transport.raise_connect_errors = 1

    with pytest.raises(TransientExternalError):
        BillplzClient(SETTINGS, http_post=transport).create_bill(MY_SUBMISSION)


def test_gateway_rejection_is_invalid_input():
    transport = FakeTransport()
    transport.status_codes = [400]

    with pytest.raises(InvalidInputError):
        PayMongoClient(SETTINGS, http_post=transport).create_payment_intent(PH_SUBMISSION)


def test_unconfigured_gateway():
    client = PayMongoClient(GatewaySettings(), http_post=FakeTransport())

    with pytest.raises(InvalidInputError):
        client.create_payment_intent(PH_SUBMISSION)
