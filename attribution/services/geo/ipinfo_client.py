"""
IPinfo geolocation client.

Single time-boxed request per IP; no retries, because every call counts
against the per-run budget and the caller treats failure as a value.
"""

from datetime import UTC, datetime
from typing import Any

import httpx

from attribution.features.attribution.domain.models import GeoInfo
from attribution.features.attribution.pipeline.geo.isp import extract_asn
from attribution.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://ipinfo.io"
DEFAULT_TIMEOUT = 3.0  # seconds


class GeoLookupError(Exception):
    """Geolocation request failed (timeout, transport error, non-2xx, bad payload)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def extract_best_isp(data: dict[str, Any]) -> str | None:
    """Most specific provider name available: company, ASN owner, org, carrier."""
    for section in ("company", "asn"):
        value = data.get(section)
        if isinstance(value, dict) and value.get("name"):
            return str(value["name"])
    if data.get("org"):
        return str(data["org"])
    carrier = data.get("carrier")
    if isinstance(carrier, dict) and carrier.get("name"):
        return str(carrier["name"])
    return None


def payload_asn(data: dict[str, Any]) -> str | None:
    """ASN from the `asn` section, else from an "AS1234 ..." org string."""
    asn = data.get("asn")
    if isinstance(asn, dict) and asn.get("asn"):
        number = extract_asn(str(asn["asn"]))
        if number:
            return number
    return extract_asn(str(data.get("org") or ""))


class IpInfoClient:
    def __init__(
        self,
        token: str | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._client = client or self._create_client(timeout_s)

    def _create_client(self, timeout_s: float) -> httpx.AsyncClient:
        timeout = httpx.Timeout(timeout_s)
        limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def close(self) -> None:
        await self._client.aclose()

    async def geolocate(self, ip: str) -> GeoInfo:
        """Look up one IP. Raises GeoLookupError on any failure."""
        if not self.token:
            raise GeoLookupError("IPINFO_TOKEN not configured")

        try:
            response = await self._client.get(
                f"{self.base_url}/{ip}", params={"token": self.token}
            )
        except httpx.HTTPError as e:
            raise GeoLookupError(f"request failed: {e.__class__.__name__}") from e

        if not response.is_success:
            raise GeoLookupError(
                f"unexpected status {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GeoLookupError("invalid JSON payload") from e
        if not isinstance(data, dict) or data.get("bogon"):
            raise GeoLookupError("no geolocation for address")

        return GeoInfo(
            ip=ip,
            city=data.get("city") or None,
            region=data.get("region") or None,
            country=data.get("country") or None,
            isp=extract_best_isp(data),
            asn=payload_asn(data),
            timezone=data.get("timezone") or None,
            looked_up_at=datetime.now(UTC).isoformat(timespec="seconds"),
        )
