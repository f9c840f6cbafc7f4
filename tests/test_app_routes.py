"""Route-level tests for the JSON API.

Collaborator clients are patched at the app's factory seams
(_maps_client, _gateway) and geo-IP is patched in currency.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from conftest import remote_places, well_served_places
from errors import ProviderUnavailable
from models import get_session
from payment_gateway import RazorpayClient, compute_signature
from places import Coordinate

SECRET = "route-secret"
WEBHOOK_SECRET = "route-webhook-secret"

ANALYSIS_BODY = {
    "lat": 12.9716,
    "lng": 77.5946,
    "amount": 7500000,
    "propertyType": "residential",
    "tier": "paid",
    "address": "MG Road, Bengaluru",
}


@pytest.fixture()
def maps():
    m = MagicMock()
    m.nearby_places.return_value = well_served_places()
    with patch("app._maps_client", return_value=m):
        yield m


@pytest.fixture()
def gateway():
    g = RazorpayClient(key_id="rzp_test_key", key_secret=SECRET, webhook_secret=WEBHOOK_SECRET)
    g.create_order = MagicMock(return_value={"id": "order_route_1"})
    with patch("app._gateway", return_value=g):
        yield g


@pytest.fixture(autouse=True)
def _no_geoip():
    with patch("currency.country_from_geoip", return_value=None):
        yield


def _post(client, url, body, **kwargs):
    resp = client.post(url, data=json.dumps(body), content_type="application/json", **kwargs)
    return resp, resp.get_json(silent=True)


class TestAnalysisRoute:
    def test_creates_session(self, client, maps):
        resp, data = _post(client, "/api/analysis", ANALYSIS_BODY)
        assert resp.status_code == 201
        assert data["tier"] == "paid"
        assert data["blocked"] is False
        assert data["validation"]["canProceed"] is True
        assert get_session(data["sessionId"])["address"] == "MG Road, Bengaluru"

    def test_invalid_input(self, client, maps):
        resp, data = _post(client, "/api/analysis", {**ANALYSIS_BODY, "lat": 123})
        assert resp.status_code == 400
        assert data["error"] == "invalid_input"
        assert data["request_id"]
        maps.nearby_places.assert_not_called()

    def test_non_json_body(self, client, maps):
        resp = client.post("/api/analysis", data="lat=1", content_type="text/plain")
        assert resp.status_code == 400

    def test_blocked_location(self, client, maps):
        maps.nearby_places.return_value = remote_places()
        resp, data = _post(client, "/api/analysis", ANALYSIS_BODY)
        assert resp.status_code == 201
        assert data["blocked"] is True
        assert data["validation"]["canProceed"] is False

        resp, data = _post(client, f"/api/analysis/{data['sessionId']}/order", {})
        assert resp.status_code == 409
        assert data["error"] == "location_blocked"

    def test_provider_unavailable(self, client, maps):
        maps.nearby_places.side_effect = ProviderUnavailable("Places provider unreachable")
        resp, data = _post(client, "/api/analysis", ANALYSIS_BODY)
        assert resp.status_code == 503
        assert data["error"] == "provider_unavailable"

    def test_missing_maps_key(self, client, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY")
        resp, data = _post(client, "/api/analysis", ANALYSIS_BODY)
        assert resp.status_code == 503
        assert "GOOGLE_MAPS_API_KEY" in data["message"]

    def test_free_tier_needs_client_address(self, client, maps):
        resp, data = _post(
            client, "/api/analysis", {**ANALYSIS_BODY, "tier": "free"},
            environ_overrides={"REMOTE_ADDR": ""},
        )
        assert resp.status_code == 400
        assert data["error"] == "invalid_input"
        maps.nearby_places.assert_not_called()

    def test_paid_tier_without_client_address(self, client, maps):
        resp, _ = _post(
            client, "/api/analysis", ANALYSIS_BODY,
            environ_overrides={"REMOTE_ADDR": ""},
        )
        assert resp.status_code == 201


class TestPaymentFlow:
    def test_order_verify_result(self, client, maps, gateway):
        _, created = _post(client, "/api/analysis", ANALYSIS_BODY)
        sid = created["sessionId"]

        resp = client.get(f"/api/result/{sid}")
        assert resp.status_code == 402
        assert resp.get_json()["error"] == "not_paid"

        resp, order = _post(
            client, f"/api/analysis/{sid}/order", {},
            headers={"X-Timezone": "America/New_York"},
        )
        assert resp.status_code == 200
        assert order["orderId"] == "order_route_1"
        assert order["currencyCode"] == "USD"
        assert order["amount"] == 1

        sig = compute_signature(b"order_route_1|pay_77", SECRET)
        resp, data = _post(client, "/api/payment/verify", {
            "orderId": "order_route_1", "paymentId": "pay_77", "signature": sig,
        })
        assert resp.status_code == 200
        assert data == {"sessionId": sid, "status": "paid"}

        resp = client.get(f"/api/result/{sid}")
        assert resp.status_code == 200
        view = resp.get_json()
        assert "growth_prediction" in view
        assert view["status"] == "paid"

    def test_bad_signature(self, client, maps, gateway):
        _, created = _post(client, "/api/analysis", ANALYSIS_BODY)
        _post(client, f"/api/analysis/{created['sessionId']}/order", {})
        resp, data = _post(client, "/api/payment/verify", {
            "orderId": "order_route_1", "paymentId": "pay_1", "signature": "forged",
        })
        assert resp.status_code == 400
        assert data["error"] == "verification_failed"
        assert get_session(created["sessionId"])["status"] == "failed"

    def test_unknown_session_order(self, client, gateway):
        resp, data = _post(client, "/api/analysis/nope/order", {})
        assert resp.status_code == 404
        assert data["error"] == "unknown_session"


class TestWebhook:
    def _send(self, client, event, secret=WEBHOOK_SECRET):
        body = json.dumps(event).encode()
        return client.post(
            "/webhook/razorpay",
            data=body,
            content_type="application/json",
            headers={"X-Razorpay-Signature": compute_signature(body, secret)},
        )

    def test_captured_event_marks_paid(self, client, maps, gateway):
        _, created = _post(client, "/api/analysis", ANALYSIS_BODY)
        _post(client, f"/api/analysis/{created['sessionId']}/order", {})
        resp = self._send(client, {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_w", "order_id": "order_route_1"}}},
        })
        assert resp.status_code == 200
        assert get_session(created["sessionId"])["status"] == "paid"

    def test_bad_signature_rejected(self, client, gateway):
        resp = self._send(client, {"event": "payment.captured"}, secret="wrong")
        assert resp.status_code == 400

    def test_unhandled_event_acknowledged(self, client, gateway):
        assert self._send(client, {"event": "refund.created", "payload": {}}).status_code == 200


class TestSupportingRoutes:
    def test_validate(self, client, maps):
        resp, data = _post(client, "/api/validate", {"lat": 12.97, "lng": 77.59})
        assert resp.status_code == 200
        assert data["risk_level"] == "low"
        assert data["canProceed"] is True

    def test_geocode(self, client, maps):
        maps.geocode.return_value = (Coordinate(19.07, 72.87), "Mumbai, India")
        resp, data = _post(client, "/api/geocode", {"address": "Mumbai"})
        assert resp.status_code == 200
        assert data == {"lat": 19.07, "lng": 72.87, "formattedAddress": "Mumbai, India"}

    def test_geocode_requires_address(self, client, maps):
        resp, _ = _post(client, "/api/geocode", {"address": "  "})
        assert resp.status_code == 400

    def test_pricing_from_headers(self, client):
        resp = client.get("/api/pricing", headers={"Accept-Language": "en-GB,en;q=0.8"})
        data = resp.get_json()
        assert data["country"] == "GB"
        assert data["tiers"]["paid"]["currency_code"] == "GBP"

    def test_pricing_default_country(self, client):
        data = client.get("/api/pricing").get_json()
        assert data["country"] == "IN"
        assert data["tiers"]["pro"]["formatted"] == "₹199"

    def test_usage_status(self, client, maps):
        _post(client, "/api/analysis", {**ANALYSIS_BODY, "tier": "free"})
        data = client.get("/api/usage-status").get_json()
        assert data["freeUsageCount"] == 1
        assert data["dailyLimit"] == 3
        assert data["canUseFree"] is True

    def test_usage_status_without_client_address(self, client):
        data = client.get("/api/usage-status", environ_overrides={"REMOTE_ADDR": ""}).get_json()
        assert data["canUseFree"] is False

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_unknown_route_json_404(self, client):
        resp = client.get("/nope")
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "not_found"
