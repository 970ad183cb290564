"""
Parsers that turn schema-less stored JSON into domain records.

Stored visits and conversions were written by several generations of the
collector, so every field accepts its legacy aliases here and nowhere else.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from attribution.services.record_store import MalformedRecord

from .models import ConversionRecord, GeoInfo, VisitRecord
from .signals import hash_signal, normalize_ips

# IP alias fields per class; all of them feed one deduplicated list
PRIMARY_IP_FIELDS = ("primary_ip", "custom_ipv6")
CHECKOUT_IP_FIELDS = ("conversion_ip", "custom_ipv4")
PAGEVIEW_IP_FIELDS = ("ip_address", "ip", "pageview_ip", "ip_addresses")
VISIT_IP_FIELDS = ("ip_addresses", "ip_address", "ip", "pageview_ip")


def parse_timestamp(value: Any, key: str | None = None) -> datetime:
    """Accept ISO-8601 strings, epoch seconds/milliseconds or datetimes."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, bool) or value is None or value == "":
        raise MalformedRecord(key, "missing timestamp")
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        # Anything past ~5138 AD in seconds is really milliseconds
        if number > 1e11:
            number /= 1000.0
        try:
            return datetime.fromtimestamp(number, UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise MalformedRecord(key, f"timestamp out of range: {value}") from e
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise MalformedRecord(key, f"unparsable timestamp: {value}") from e
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise MalformedRecord(key, f"unsupported timestamp type: {type(value).__name__}")


def format_timestamp(moment: datetime | None) -> str | None:
    if moment is None:
        return None
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _first(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, "", "unknown"):
            return value
    return None


def _all(data: dict[str, Any], *names: str) -> list[Any]:
    """Every populated alias, in order; for fields that may legitimately repeat."""
    return [data[name] for name in names if data.get(name) not in (None, "", "unknown")]


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _device_signature(data: dict[str, Any]) -> str | None:
    explicit = _text(_first(data, "device_signature", "dsig"))
    if explicit:
        return explicit
    canvas = _text(data.get("canvas_fingerprint"))
    return canvas[-20:] if canvas else None


def _screen_hash(data: dict[str, Any]) -> str | None:
    explicit = _text(_first(data, "screen_hash", "SVV", "screen_value"))
    return explicit or hash_signal(_text(data.get("screen_resolution")))


def _webgl_hash(data: dict[str, Any]) -> str | None:
    explicit = _text(_first(data, "webgl_hash", "gsig", "gpu_signature"))
    return explicit or hash_signal(_text(data.get("webgl_fingerprint")))


def parse_geo(data: Any, ip: str = "") -> GeoInfo | None:
    if not isinstance(data, dict):
        return None
    if data.get("lookup_failed"):
        return GeoInfo.failed(data.get("ip") or ip, _text(data.get("looked_up_at")))
    geo = GeoInfo(
        ip=data.get("ip") or ip,
        city=_text(data.get("city")),
        region=_text(data.get("region")),
        country=_text(data.get("country")),
        isp=_text(_first(data, "isp", "org")),
        asn=_text(data.get("asn")),
        timezone=_text(data.get("timezone")),
        looked_up_at=_text(data.get("looked_up_at")),
    )
    if not any((geo.city, geo.region, geo.country, geo.isp)):
        return None
    return geo


def geo_to_dict(geo: GeoInfo | None) -> dict[str, Any] | None:
    if geo is None:
        return None
    return {
        "ip": geo.ip,
        "city": geo.city,
        "region": geo.region,
        "country": geo.country,
        "isp": geo.isp,
        "asn": geo.asn,
        "timezone": geo.timezone,
        "looked_up_at": geo.looked_up_at,
        "lookup_failed": geo.lookup_failed,
    }


def parse_visit(data: Any, visit_id: str) -> VisitRecord:
    """Parse one stored page visit (raw collector record or index summary)."""
    if not isinstance(data, dict):
        raise MalformedRecord(visit_id, "visit is not an object")

    ips = normalize_ips(*_all(data, *VISIT_IP_FIELDS))
    geo = parse_geo(data.get("geo"), ips[0] if ips else "") or parse_geo(
        data, ips[0] if ips else ""
    )
    return VisitRecord(
        visit_id=str(data.get("visit_id") or visit_id),
        timestamp=parse_timestamp(data.get("timestamp"), visit_id),
        ip_addresses=ips,
        landing_page=_text(_first(data, "landing_page", "url", "page_url")) or "unknown",
        source=_text(_first(data, "source", "utm_source")) or "direct",
        medium=_text(_first(data, "medium", "utm_medium")),
        campaign=_text(_first(data, "campaign", "utm_campaign")),
        content=_text(_first(data, "content", "utm_content")),
        term=_text(_first(data, "term", "utm_term")),
        referrer_url=_text(_first(data, "referrer_url", "referrer")),
        session_id=_text(_first(data, "session_id", "SSID")),
        device_signature=_device_signature(data),
        screen_hash=_screen_hash(data),
        webgl_hash=_webgl_hash(data),
        geo=geo,
    )


def visit_to_dict(visit: VisitRecord) -> dict[str, Any]:
    """Compact summary stored inside index entries; parse_visit reads it back."""
    return {
        "visit_id": visit.visit_id,
        "timestamp": format_timestamp(visit.timestamp),
        "ip_addresses": list(visit.ip_addresses),
        "landing_page": visit.landing_page,
        "source": visit.source,
        "medium": visit.medium,
        "campaign": visit.campaign,
        "content": visit.content,
        "term": visit.term,
        "referrer_url": visit.referrer_url,
        "session_id": visit.session_id,
        "device_signature": visit.device_signature,
        "screen_hash": visit.screen_hash,
        "webgl_hash": visit.webgl_hash,
        "geo": geo_to_dict(visit.geo),
    }


def parse_visit_container(data: Any, key: str) -> list[VisitRecord]:
    """
    A visit key holds either one visit or a chunk `{"pageviews": [...]}`.
    Chunk members get positional ids so dedupe across scans stays stable.
    Malformed members raise; callers count and skip the whole key.
    """
    if isinstance(data, dict) and isinstance(data.get("pageviews"), list):
        return [parse_visit(item, f"{key}#{i}") for i, item in enumerate(data["pageviews"])]
    return [parse_visit(data, key)]


def parse_conversion(data: Any, key: str) -> ConversionRecord:
    if not isinstance(data, dict):
        raise MalformedRecord(key, "conversion is not an object")

    email = _text(_first(data, "email", "customer_email"))
    if not email:
        raise MalformedRecord(key, "conversion has no email")

    total = _first(data, "order_total", "total", "value")
    try:
        order_total = float(total) if total is not None else None
    except (TypeError, ValueError):
        order_total = None

    attribution = data.get("attribution")
    return ConversionRecord(
        key=key,
        email=email.lower(),
        timestamp=parse_timestamp(
            _first(data, "timestamp", "conversion_timestamp", "created_at"), key
        ),
        order_id=_text(_first(data, "order_id", "orderId")),
        order_total=order_total,
        primary_ips=normalize_ips(*_all(data, *PRIMARY_IP_FIELDS)),
        checkout_ips=normalize_ips(*_all(data, *CHECKOUT_IP_FIELDS)),
        pageview_ips=normalize_ips(*_all(data, *PAGEVIEW_IP_FIELDS)),
        session_id=_text(_first(data, "session_id", "SSID")),
        device_signature=_device_signature(data),
        screen_hash=_screen_hash(data),
        webgl_hash=_webgl_hash(data),
        attribution=attribution if isinstance(attribution, dict) else None,
        raw=data,
    )
