import httpx
import pytest

from attribution.services.geo.ipinfo_client import (
    GeoLookupError,
    IpInfoClient,
    payload_asn,
    extract_best_isp,
)


def _client(handler, token="test-token"):
    transport = httpx.MockTransport(handler)
    return IpInfoClient(token=token, client=httpx.AsyncClient(transport=transport))


@pytest.mark.asyncio
async def test_geolocate_parses_payload():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["token"] = request.url.params.get("token")
        return httpx.Response(
            200,
            json={
                "ip": "198.51.100.7",
                "city": "Singapore",
                "region": "Singapore",
                "country": "SG",
                "org": "AS9506 Singtel Fibre Broadband",
                "timezone": "Asia/Singapore",
            },
        )

    client = _client(handler)
    geo = await client.geolocate("198.51.100.7")
    await client.close()

    assert seen == {"path": "/198.51.100.7", "token": "test-token"}
    assert geo.city == "Singapore"
    assert geo.country == "SG"
    assert geo.isp == "AS9506 Singtel Fibre Broadband"
    assert geo.asn == "9506"
    assert geo.lookup_failed is False


def test_best_isp_prefers_company_name():
    payload = {
        "company": {"name": "Singapore Telecommunications Ltd"},
        "asn": {"asn": "AS7473", "name": "Singtel Optus"},
        "org": "AS7473 Singtel",
    }

    assert extract_best_isp(payload) == "Singapore Telecommunications Ltd"
    assert payload_asn(payload) == "7473"
    assert extract_best_isp({"carrier": {"name": "M1"}}) == "M1"
    assert extract_best_isp({}) is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(429, json={"error": "rate limited"}),
        httpx.Response(200, json={"ip": "10.0.0.1", "bogon": True}),
        httpx.Response(200, content=b"<html>"),
    ],
)
async def test_unusable_responses_raise(response):
    client = _client(lambda request: response)

    with pytest.raises(GeoLookupError):
        await client.geolocate("198.51.100.7")
    await client.close()


@pytest.mark.asyncio
async def test_status_code_is_kept():
    client = _client(lambda request: httpx.Response(503))

    with pytest.raises(GeoLookupError) as exc:
        await client.geolocate("198.51.100.7")
    await client.close()

    assert exc.value.status_code == 503


@pytest.mark.asyncio
async def test_transport_error_raises_lookup_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)

    with pytest.raises(GeoLookupError):
        await client.geolocate("198.51.100.7")
    await client.close()


@pytest.mark.asyncio
async def test_missing_token_never_calls_out():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    client = _client(handler, token=None)

    assert client.configured is False
    with pytest.raises(GeoLookupError):
        await client.geolocate("198.51.100.7")
    await client.close()
    assert calls == []
