"""Fanbases API client tests against a mocked transport"""
import json
import httpx
import pytest

from paygate.core.errors import ProcessorError, RebillingNotAllowed
from paygate.services.fanbases_client import FanbasesClient


def make_client(handler, api_key="test_api_key"):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return FanbasesClient(api_key=api_key, api_url="https://fanbases.test/public-api", timeout=5.0, http_client=http)


@pytest.mark.high
class TestCheckoutSessions:
    def test_create_checkout_session(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["api_key"] = request.headers.get("x-api-key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "success",
                "data": {"checkout_session_id": 42, "payment_link": "https://pay.fanbasis.com/42"}
            })

        result = make_client(handler).create_checkout_session(
            product_id="prod_1",
            metadata={"user_id": "user-1"},
            success_url="https://app/success",
            cancel_url="https://app/cancel",
            webhook_url="https://api/webhook",
            recurrence={"interval": "day", "interval_count": 30}
        )

        assert result.checkout_session_id == "42"
        assert result.payment_link == "https://pay.fanbasis.com/42"
        assert seen["url"] == "https://fanbases.test/public-api/checkout-sessions"
        assert seen["api_key"] == "test_api_key"
        assert seen["body"]["metadata"] == {"user_id": "user-1"}
        assert seen["body"]["recurrence"]["interval_count"] == 30

    def test_missing_link(self):
        client = make_client(lambda request: httpx.Response(200, json={"data": {"id": "cs_1"}}))
        with pytest.raises(ProcessorError):
            client.create_checkout_session("prod_1", {}, "s", "c", "w")


@pytest.mark.high
class TestCharges:
    def test_charge_customer(self):
        def handler(request: httpx.Request):
            assert request.url.path.endswith("/customers/cust_1/charge")
            assert json.loads(request.content)["payment_method_id"] == "pm_1"
            return httpx.Response(200, json={"status": "success", "data": {"charge_id": "ch_1"}})

        result = make_client(handler).charge_customer("cust_1", "pm_1", "prod_1", {"user_id": "user-1"})
        assert result.charge_id == "ch_1"

    @pytest.mark.parametrize("body", [
        {"status": "error", "message": "Manual rebilling is not allowed for this product"},
        {"status": "error", "code": "manual_rebilling_not_allowed", "message": "Refused"},
    ])
    def test_rebilling_not_allowed(self, body):
        client = make_client(lambda request: httpx.Response(422, json=body))
        with pytest.raises(RebillingNotAllowed):
            client.charge_customer("cust_1", "pm_1", "prod_1", {})

    def test_error_status_in_ok_response(self):
        client = make_client(lambda request: httpx.Response(200, json={"status": "error", "message": "Card declined"}))
        with pytest.raises(ProcessorError) as exc_info:
            client.charge_customer("cust_1", "pm_1", "prod_1", {})
        assert not isinstance(exc_info.value, RebillingNotAllowed)
        assert exc_info.value.message == "Card declined"

    def test_list_payment_methods(self):
        client = make_client(lambda request: httpx.Response(200, json={
            "data": {"payment_methods": [{"id": "pm_1"}, {"id": "pm_2"}]}
        }))
        assert [m["id"] for m in client.list_payment_methods("cust_1")] == ["pm_1", "pm_2"]

    @pytest.mark.parametrize("body", [
        {"data": {"customers": [{"id": "cust_1", "email": "other@example.com"}, {"id": "cust_2", "email": "Buyer@Example.com"}]}},
        {"data": [{"id": "cust_2", "email": "buyer@example.com"}]},
        {"customers": [{"id": "cust_2", "email": "buyer@example.com"}]},
    ])
    def test_find_customer_by_email(self, body):
        def handler(request: httpx.Request):
            assert request.url.path.endswith("/customers")
            assert request.url.params["per_page"] == "200"
            return httpx.Response(200, json=body)

        assert make_client(handler).find_customer_by_email("buyer@example.com")["id"] == "cust_2"

    def test_find_customer_no_match(self):
        client = make_client(lambda request: httpx.Response(200, json={"data": {"customers": []}}))
        assert client.find_customer_by_email("buyer@example.com") is None


@pytest.mark.medium
class TestTransportFailures:
    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ProcessorError) as exc_info:
            make_client(handler).list_payment_methods("cust_1")
        assert exc_info.value.message == "Payment provider timed out"

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProcessorError):
            make_client(handler).list_payment_methods("cust_1")

    def test_non_json_response(self):
        client = make_client(lambda request: httpx.Response(502, text="<html>Bad gateway</html>"))
        with pytest.raises(ProcessorError) as exc_info:
            client.list_payment_methods("cust_1")
        assert exc_info.value.details["http_status"] == 502

    def test_missing_api_key(self):
        client = make_client(lambda request: httpx.Response(200, json={}), api_key="")
        with pytest.raises(ProcessorError) as exc_info:
            client.list_payment_methods("cust_1")
        assert exc_info.value.status_code == 500
