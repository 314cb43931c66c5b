"""
Click & Drop gateway tests against httpx.MockTransport
"""
import json

import httpx
import pytest

from conftest import run
from parceltrack.errors import CarrierUnavailable
from parceltrack.services.http_client import backoff_delay, request_with_retry
from parceltrack.services.carrier_gateway import (
    ClickDropGateway,
    FakeCarrierGateway,
    RateLimiter,
    ShipmentSnapshot,
    parse_shipment,
)

API_URL = "https://carrier.test"


def _gateway(handler, **kwargs) -> ClickDropGateway:
    return ClickDropGateway(
        api_url=API_URL,
        bearer_token="secret-token",
        max_retries=kwargs.pop("max_retries", 0),
        transport=httpx.MockTransport(handler),
        rate_limiter=RateLimiter(min_interval=0),
        **kwargs,
    )


class TestClickDropGateway:

    def test_request_shape(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[])

        run(_gateway(handler).fetch_shipments(["CD-1", "CD-2", "CD-1"]))

        request = seen[0]
        assert request.method == "GET"
        assert str(request.url) == f"{API_URL}/api/v1/orders/CD-1%3BCD-2"
        assert request.headers["Authorization"] == "Bearer secret-token"

    def test_parses_snapshots(self):
        body = [
            {"orderIdentifier": 1001, "printedOn": "2024-05-01T08:00:00Z", "trackingNumber": "RM1"},
            {"orderIdentifier": "1002", "manifestedOn": "2024-05-01T09:00:00Z", "shippedOn": None},
        ]

        def handler(request):
            return httpx.Response(200, json=body)

        snapshots = run(_gateway(handler).fetch_shipments(["1001", "1002", "1003"]))

        assert snapshots == [
            ShipmentSnapshot("1001", printed_on="2024-05-01T08:00:00Z", tracking_number="RM1"),
            ShipmentSnapshot("1002", manifested_on="2024-05-01T09:00:00Z"),
        ]

    def test_not_found_response_is_carrier_unavailable(self):
        def handler(request):
            return httpx.Response(404, text="<html>no such route</html>")

        with pytest.raises(CarrierUnavailable) as excinfo:
            run(_gateway(handler).fetch_shipments(["CD-1"]))
        assert excinfo.value.status_code == 404

    def test_redirect_is_carrier_unavailable(self):
        def handler(request):
            return httpx.Response(302, headers={"Location": "https://login.carrier.test"})

        with pytest.raises(CarrierUnavailable):
            run(_gateway(handler).fetch_shipments(["CD-1"]))

    def test_malformed_api_url_is_carrier_unavailable(self):
        def handler(request):
            raise AssertionError("carrier should not be called")

        gateway = ClickDropGateway(
            api_url="https://carrier.test:notaport",
            bearer_token="secret-token",
            max_retries=0,
            transport=httpx.MockTransport(handler),
            rate_limiter=RateLimiter(min_interval=0),
        )

        with pytest.raises(CarrierUnavailable):
            run(gateway.fetch_shipments(["CD-1"]))

    def test_server_error_is_carrier_unavailable(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(CarrierUnavailable) as excinfo:
            run(_gateway(handler).fetch_shipments(["CD-1"]))
        assert excinfo.value.status_code == 500

    def test_unauthorized_is_carrier_unavailable(self):
        def handler(request):
            return httpx.Response(401, json={"message": "Unauthorized"})

        with pytest.raises(CarrierUnavailable):
            run(_gateway(handler).fetch_shipments(["CD-1"]))

    def test_connection_error_is_carrier_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(CarrierUnavailable):
            run(_gateway(handler).fetch_shipments(["CD-1"]))

    def test_retries_gateway_errors(self, monkeypatch):
        responses = [httpx.Response(503), httpx.Response(200, json=[{"orderIdentifier": "CD-1"}])]

        async def no_sleep(attempt, delay=None):
            return None

        monkeypatch.setattr("parceltrack.services.http_client._sleep_backoff", no_sleep)

        def handler(request):
            return responses.pop(0)

        snapshots = run(_gateway(handler, max_retries=2).fetch_shipments(["CD-1"]))

        assert [s.shipment_id for s in snapshots] == ["CD-1"]
        assert responses == []

    @pytest.mark.parametrize("content", [b"not json", json.dumps({"orders": []}).encode(), b'[{"printedOn": "x"}]'])
    def test_malformed_body_is_carrier_unavailable(self, content):
        def handler(request):
            return httpx.Response(200, content=content, headers={"Content-Type": "application/json"})

        with pytest.raises(CarrierUnavailable):
            run(_gateway(handler).fetch_shipments(["CD-1"]))

    def test_empty_request_skips_the_call(self):
        def handler(request):
            raise AssertionError("carrier should not be called")

        assert run(_gateway(handler).fetch_shipments([])) == []

    def test_batch_limit(self):
        def handler(request):
            return httpx.Response(200, json=[])

        with pytest.raises(ValueError):
            run(_gateway(handler, batch_limit=2).fetch_shipments(["A", "B", "C"]))


def test_parse_shipment_requires_identifier():
    with pytest.raises(CarrierUnavailable):
        parse_shipment({"printedOn": "2024-05-01T08:00:00Z"})


def test_snapshot_serialises_with_carrier_field_names():
    snapshot = ShipmentSnapshot("CD-1", shipped_on="2024-05-01T15:00:00Z")

    assert snapshot.to_dict() == {
        "shipmentId": "CD-1",
        "printedOn": None,
        "manifestedOn": None,
        "shippedOn": "2024-05-01T15:00:00Z",
        "trackingNumber": None,
    }


class TestFakeCarrierGateway:

    def test_returns_known_subset(self):
        gateway = FakeCarrierGateway([ShipmentSnapshot("CD-1"), ShipmentSnapshot("CD-2")])
        gateway.remove("CD-2")

        snapshots = run(gateway.fetch_shipments(["CD-1", "CD-2", "CD-3"]))

        assert [s.shipment_id for s in snapshots] == ["CD-1"]
        assert gateway.calls == [["CD-1", "CD-2", "CD-3"]]

    def test_configured_failure(self):
        gateway = FakeCarrierGateway()
        gateway.configure(should_succeed=False, failure_reason="maintenance window")

        with pytest.raises(CarrierUnavailable, match="maintenance window"):
            run(gateway.fetch_shipments(["CD-1"]))


class TestRetryPolicy:

    def test_backoff_doubles_up_to_cap(self):
        assert [backoff_delay(n, base=1.0, cap=5.0) for n in range(5)] == [0.0, 1.0, 2.0, 4.0, 5.0]

    def test_rate_limited_call_honours_retry_after(self, monkeypatch):
        delays = []

        async def record_sleep(attempt, delay=None):
            delays.append(delay)

        monkeypatch.setattr("parceltrack.services.http_client._sleep_backoff", record_sleep)
        responses = [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(200, json=[]),
        ]

        resp = run(request_with_retry("GET", f"{API_URL}/x", transport=httpx.MockTransport(lambda r: responses.pop(0))))

        assert resp.status_code == 200
        assert delays == [3.0]

    def test_last_response_returned_when_retries_exhausted(self, monkeypatch):
        async def no_sleep(attempt, delay=None):
            return None

        monkeypatch.setattr("parceltrack.services.http_client._sleep_backoff", no_sleep)
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        resp = run(request_with_retry("GET", f"{API_URL}/x", max_retries=2, transport=httpx.MockTransport(handler)))

        assert resp.status_code == 502
        assert len(calls) == 3
