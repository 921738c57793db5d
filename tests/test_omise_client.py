import base64
import json

import httpx
import pytest

from apps.dinein.app.errors import GatewayError
from apps.dinein.app.omise import OmiseClient


def _client(handler, secret_key="skey_test_123") -> OmiseClient:
    return OmiseClient(
        secret_key=secret_key,
        api_url="https://api.omise.test",
        timeout=2,
        transport=httpx.MockTransport(handler),
    )


def test_create_source_posts_minor_units_with_basic_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"object": "source", "id": "src_1", "type": "promptpay"})

    src = _client(handler).create_source(2000, "thb", "promptpay")
    assert src["id"] == "src_1"
    assert (seen["method"], seen["path"]) == ("POST", "/sources")
    assert seen["body"] == {"amount": 2000, "currency": "thb", "type": "promptpay"}
    assert seen["auth"] == "Basic " + base64.b64encode(b"skey_test_123:").decode()


def test_create_charge_sends_source_description_and_metadata():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"object": "charge", "id": "chrg_1", "status": "pending"})

    charge = _client(handler).create_charge(
        2500, "thb", "src_1", "Payment for order o1", {"order_id": "o1"}, "https://shop.test/done"
    )
    assert charge["status"] == "pending"
    assert seen["body"] == {
        "amount": 2500,
        "currency": "thb",
        "source": "src_1",
        "description": "Payment for order o1",
        "metadata": {"order_id": "o1"},
        "return_uri": "https://shop.test/done",
    }


def test_retrieve_charge_gets_by_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET"
        assert request.url.path == "/charges/chrg_9"
        return httpx.Response(200, json={"object": "charge", "id": "chrg_9", "status": "successful"})

    assert _client(handler).retrieve_charge("chrg_9")["status"] == "successful"


def test_gateway_rejection_carries_gateway_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"object": "error", "code": "invalid_charge", "message": "amount must be at least 2000"},
        )

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).create_source(1500, "thb")
    assert excinfo.value.message == "amount must be at least 2000"
    assert excinfo.value.code == "invalid_charge"
    assert excinfo.value.upstream_status == 400
    assert excinfo.value.status_code == 502


def test_non_json_error_body_is_surfaced_as_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream maintenance")

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).retrieve_charge("chrg_1")
    assert "upstream maintenance" in excinfo.value.message


def test_transport_failure_becomes_gateway_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(GatewayError) as excinfo:
        _client(handler).retrieve_charge("chrg_1")
    assert "unreachable" in excinfo.value.message


def test_missing_secret_key_fails_without_calling_out():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(GatewayError):
        _client(handler, secret_key="").create_source(2000, "thb")
    assert calls == []
