import pytest
import stripe

from coachpay.services.stripe_gateway import StripeGateway
from coachpay.utils.exceptions import GatewayError, NotFoundError, WebhookSignatureError
from tests.helpers.stripe_events import make_event


class _AttrObject:
    def __init__(self, **fields):
        self.__dict__.update(fields)


class TestObjectHelpers:
    def test_get_value_handles_dicts_and_attributes(self):
        assert StripeGateway.get_value({"id": "cs_1"}, "id") == "cs_1"
        assert StripeGateway.get_value(_AttrObject(id="sub_1"), "id") == "sub_1"
        assert StripeGateway.get_value(None, "id") is None
        assert StripeGateway.get_value(_AttrObject(), "missing") is None

    @pytest.mark.parametrize(
        "value, expected",
        [("100", 100), (" 12.6 ", 13), (7, 7), (2.4, 2), ("", None), ("abc", None), (None, None), (True, None)],
    )
    def test_coerce_to_int(self, value, expected):
        assert StripeGateway.coerce_to_int(value) == expected

    def test_get_id_accepts_expanded_objects_and_ids(self, gateway):
        assert gateway.get_id("pi_1") == "pi_1"
        assert gateway.get_id({"id": "pi_2", "status": "succeeded"}) == "pi_2"
        assert gateway.get_id(None) is None

    def test_first_price_id(self, gateway):
        subscription = {"items": {"data": [{"price": {"id": "price_pro"}}]}}

        assert gateway.first_price_id(subscription) == "price_pro"
        assert gateway.first_price_id({"items": {"data": []}}) is None


class TestRetrieval:
    def test_missing_session_is_not_found(self, gateway, monkeypatch):
        def _missing(*args, **kwargs):
            raise stripe.InvalidRequestError("No such checkout.session", "id", code="resource_missing")

        monkeypatch.setattr(stripe.checkout.Session, "retrieve", _missing)

        with pytest.raises(NotFoundError):
            gateway.retrieve_checkout_session("cs_nope")

    def test_stripe_outage_is_gateway_error(self, gateway, monkeypatch):
        def _down(*args, **kwargs):
            raise stripe.APIConnectionError("connection refused")

        monkeypatch.setattr(stripe.checkout.Session, "retrieve", _down)

        with pytest.raises(GatewayError) as exc_info:
            gateway.retrieve_checkout_session("cs_1")

        assert exc_info.value.status_code == 500

    def test_customer_lookup_failure_is_gateway_error(self, gateway, monkeypatch):
        def _down(*args, **kwargs):
            raise stripe.APIConnectionError("connection refused")

        monkeypatch.setattr(stripe.Customer, "retrieve", _down)

        with pytest.raises(GatewayError):
            gateway.retrieve_customer("cus_1")


class TestConstructEvent:
    def test_valid_signature(self, gateway):
        payload, signature = make_event("invoice.paid", {"id": "in_1"}, event_id="evt_ok")

        event = gateway.construct_event(payload, signature)

        assert event["id"] == "evt_ok"
        assert event["type"] == "invoice.paid"

    def test_missing_header(self, gateway):
        payload, _ = make_event("invoice.paid", {"id": "in_1"})

        with pytest.raises(WebhookSignatureError):
            gateway.construct_event(payload, None)

    def test_signed_with_another_secret(self, gateway):
        payload, signature = make_event("invoice.paid", {"id": "in_1"})
        foreign = StripeGateway(api_key="sk_test_123", webhook_secret="whsec_other")

        with pytest.raises(WebhookSignatureError):
            foreign.construct_event(payload, signature)
