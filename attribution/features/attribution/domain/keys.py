"""
Store key derivation shared by the index writer and every reader.
"""

import re
from datetime import UTC, datetime
from urllib.parse import quote

from .signals import normalize_ip

DEFAULT_INDEX_PREFIX = "attribution_index"

SIGNAL_IP = "ip"
SIGNAL_SESSION = "session"
SIGNAL_DEVICE = "device"
SIGNAL_SCREEN = "screen"
SIGNAL_WEBGL = "webgl"
SIGNAL_LANDING = "landing"
SIGNAL_SOURCE = "source"
SIGNAL_HOUR = "hour"

LANDING_PAGE_MAX = 100
SOURCE_MAX = 50
TOKEN_MAX = 128

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")
_UNSAFE_TOKEN = re.compile(r"[^A-Za-z0-9_.-]")


def encode_ip(ip: str) -> str:
    canonical = normalize_ip(ip) or ip.strip().lower()
    return canonical.replace(":", "_")


def _encode_url_like(value: str, limit: int) -> str:
    # Same character set a browser's encodeURIComponent leaves untouched
    encoded = quote(value, safe="!~*'()")
    return _UNSAFE.sub("_", encoded)[:limit]


def encode_landing_page(url: str) -> str:
    return _encode_url_like(url, LANDING_PAGE_MAX)


def encode_source(source: str) -> str:
    return _encode_url_like(source, SOURCE_MAX)


def encode_token(token: str) -> str:
    return _UNSAFE_TOKEN.sub("_", token.strip())[:TOKEN_MAX]


def hour_bucket(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime("%Y%m%d%H")


_ENCODERS = {
    SIGNAL_IP: encode_ip,
    SIGNAL_SESSION: encode_token,
    SIGNAL_DEVICE: encode_token,
    SIGNAL_SCREEN: encode_token,
    SIGNAL_WEBGL: encode_token,
    SIGNAL_LANDING: encode_landing_page,
    SIGNAL_SOURCE: encode_source,
    SIGNAL_HOUR: encode_token,
}


def encode_signal(signal_type: str, value: str) -> str:
    try:
        encoder = _ENCODERS[signal_type]
    except KeyError:
        raise ValueError(f"Unknown signal type '{signal_type}'") from None
    return encoder(str(value))


def index_key(signal_type: str, value: str, prefix: str = DEFAULT_INDEX_PREFIX) -> str:
    """`{prefix}:{signal}:{encoded value}` - identical for writer and reader."""
    return f"{prefix}:{signal_type}:{encode_signal(signal_type, value)}"


def geo_cache_key(ip: str) -> str:
    return f"geo_cache:{encode_ip(ip)}"


def marker_key(namespace: str, email: str, timestamp: str) -> str:
    return f"{namespace}:{email.strip().lower()}:{timestamp}"
