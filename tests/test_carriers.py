import json

import httpx
import pytest

import usage_tracker
from carriers import DHLProvider, FedExProvider, GLSProvider, carrier_limiter
from shipping import (
    PackageDetails,
    RateRequest,
    ShipmentRequest,
    ShippingAddress,
    ShippingAuthError,
    ShippingError,
    ShippingRateLimitError,
    ShippingServiceType,
    TrackingStatus,
)

CONFIG = {"api_key": "key", "api_secret": "secret", "account": "123456", "api_url": "https://carrier.test/api/"}

ADDRESS = ShippingAddress(address_line1="1 Main St", city="Austin", state="TX", postal_code="78701", country_code="US")
REQUEST = RateRequest(
    shipper_address=ADDRESS,
    recipient_address=ADDRESS,
    packages=[PackageDetails(weight=10, length=70, width=70, height=25)],
)


def carrier(cls, handler, config=CONFIG):
    provider = cls(config=config, client=httpx.Client(transport=httpx.MockTransport(handler)))
    provider.retry_delay = 0
    return provider


def test_dhl_rates_are_parsed():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"products": [
            {
                "productCode": "P",
                "totalPrice": [{"currencyType": "BILLC", "price": 42.5, "priceCurrency": "EUR"}],
                "deliveryCapabilities": {"totalTransitDays": 2, "estimatedDeliveryDateAndTime": "2024-06-03T12:00:00"},
            },
        ]})

    rates = carrier(DHLProvider, handler).get_rates(REQUEST)
    assert len(rates) == 1
    assert rates[0].service_type == ShippingServiceType.EXPRESS
    assert rates[0].total_amount == 42.5
    assert rates[0].currency == "EUR"
    assert rates[0].transit_days == 2

    assert str(seen[0].url) == "https://carrier.test/api/rates"
    assert seen[0].headers["authorization"].startswith("Basic ")
    body = json.loads(seen[0].content)
    assert body["accounts"] == [{"typeCode": "shipper", "number": "123456"}]
    assert body["isCustomsDeclarable"] is False


def test_dhl_tracking():
    def handler(request):
        return httpx.Response(200, json={"shipments": [{
            "status": {"statusCode": "transit"},
            "events": [{"timestamp": "2024-06-01T10:00:00", "statusCode": "pre-transit", "description": "Label created"}],
        }]})

    tracking = carrier(DHLProvider, handler).track_shipment("JD0001")
    assert tracking.current_status == TrackingStatus.IN_TRANSIT
    assert tracking.events[0].status == TrackingStatus.CREATED
    assert tracking.provider_name == "DHL"


def test_unauthorized_raises_auth_error():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"detail": "Invalid credentials"})

    with pytest.raises(ShippingAuthError) as info:
        carrier(DHLProvider, handler).get_rates(REQUEST)
    assert info.value.message == "Invalid credentials"
    assert info.value.status_code == 401
    assert len(calls) == 1


def test_server_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"message": "Busy"})
        return httpx.Response(200, json={"rates": [{"serviceType": "EXPRESS", "totalPrice": {"amount": 12}}]})

    rates = carrier(GLSProvider, handler).get_rates(REQUEST)
    assert len(calls) == 3
    assert rates[0].service_type == ShippingServiceType.EXPRESS
    assert rates[0].currency == "EUR"


def test_unconfigured_carrier_makes_no_calls():
    def handler(request):
        raise AssertionError("no request expected")

    provider = carrier(DHLProvider, handler, config={**CONFIG, "api_key": ""})
    with pytest.raises(ShippingAuthError):
        provider.get_rates(REQUEST)
    assert provider.test_authentication()["authenticated"] is False


def test_rate_limit(monkeypatch):
    monkeypatch.setitem(carrier_limiter.limits, "dhl", 1)
    provider = carrier(DHLProvider, lambda request: httpx.Response(200, json={"products": []}))
    assert provider.get_rates(REQUEST) == []
    with pytest.raises(ShippingRateLimitError):
        provider.get_rates(REQUEST)


def test_transport_errors_become_shipping_errors():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ShippingError) as info:
        carrier(GLSProvider, handler).track_shipment("X")
    assert info.value.status_code == 503


def test_calls_are_tracked():
    provider = carrier(DHLProvider, lambda request: httpx.Response(200, json={"products": []}))
    provider.get_rates(REQUEST)
    record = usage_tracker.get_tracker().buffer[-1]
    assert record["provider"] == "DHL"
    assert record["event_type"] == usage_tracker.RATE_QUOTE
    assert record["success"] is True


def test_fedex_refreshes_expired_token():
    tokens = iter(["first", "second"])

    def handler(request):
        if request.url.path.endswith("/oauth/token"):
            return httpx.Response(200, json={"access_token": next(tokens)})
        if request.headers["authorization"] == "Bearer first":
            return httpx.Response(401, json={"errors": [{"message": "expired"}]})
        return httpx.Response(200, json={"output": {"rateReplyDetails": [
            {"serviceType": "FEDEX_GROUND", "ratedShipmentDetails": [{"totalNetCharge": 18.25}], "commit": {"transitDays": 4}},
        ]}})

    rates = carrier(FedExProvider, handler).get_rates(REQUEST)
    assert rates[0].total_amount == 18.25
    assert rates[0].service_type == ShippingServiceType.STANDARD


def test_gls_address_suggestion():
    def handler(request):
        return httpx.Response(200, json={"valid": False, "suggestions": [{"street1": "1 Main Street", "zipCode": "78702"}]})

    result = carrier(GLSProvider, handler).validate_address(ADDRESS)
    assert result.valid is False
    assert result.suggested_address.address_line1 == "1 Main Street"
    assert result.suggested_address.postal_code == "78702"


@pytest.mark.parametrize("cls, reply", [
    (DHLProvider, {"documents": []}),
    (GLSProvider, {"labelData": "JVBERi0="}),
])
def test_shipment_reply_without_tracking_number(cls, reply):
    provider = carrier(cls, lambda request: httpx.Response(200, json=reply))
    with pytest.raises(ShippingError) as info:
        provider.create_shipment(ShipmentRequest(shipper_address=ADDRESS, recipient_address=ADDRESS, packages=REQUEST.packages))
    assert info.value.provider == provider.name
    assert info.value.status_code == 502


def test_rate_without_price_is_a_shipping_error():
    provider = carrier(GLSProvider, lambda request: httpx.Response(200, json={"rates": [{"serviceType": "PARCEL"}]}))
    with pytest.raises(ShippingError) as info:
        provider.get_rates(REQUEST)
    assert info.value.message == "GLS returned an unexpected response"


def test_non_json_reply_is_a_shipping_error():
    provider = carrier(DHLProvider, lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    with pytest.raises(ShippingError) as info:
        provider.track_shipment("JD0001")
    assert info.value.message == "DHL returned invalid JSON"


def test_fedex_token_reply_without_token():
    def handler(request):
        return httpx.Response(200, json={"token_type": "bearer"})

    assert carrier(FedExProvider, handler).test_authentication()["authenticated"] is False
