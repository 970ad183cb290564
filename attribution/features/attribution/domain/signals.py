"""
Identity signal helpers: IP normalisation and the legacy fingerprint hash.
"""

from __future__ import annotations

import ipaddress
import re
from collections.abc import Iterable

_IP_SPLIT = re.compile(r"[\s,;]+")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"
_PLACEHOLDERS = {"", "unknown", "null", "none", "undefined", "-"}


def normalize_ip(raw: str | None) -> str | None:
    """Canonical form of one IP, or None when it is not a usable address."""
    if raw is None:
        return None
    value = str(raw).strip().strip("[]")
    if value.lower() in _PLACEHOLDERS:
        return None
    # Drop IPv6 zone ids (fe80::1%eth0)
    value = value.split("%", 1)[0]
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return address.compressed.lower()


def _flatten(values: Iterable) -> Iterable[str]:
    for value in values:
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            yield from _flatten(value)
        else:
            yield from (part for part in _IP_SPLIT.split(str(value)) if part)


def normalize_ips(*raw_values) -> list[str]:
    """
    Split, validate and dedupe IPs from any mix of comma-joined strings,
    lists or None. First-seen order is preserved.
    """
    ips: list[str] = []
    for candidate in _flatten(raw_values):
        ip = normalize_ip(candidate)
        if ip and ip not in ips:
            ips.append(ip)
    return ips


def hash_signal(value: str | None) -> str | None:
    """
    32-bit rolling hash rendered in base 36.

    Matches the hash the browser collector applies to screen resolution and
    WebGL strings, so legacy records carrying only the raw value produce the
    same screen/WebGL hash as newer records.
    """
    if not value:
        return None
    encoded = str(value).encode("utf-16-le", errors="surrogatepass")
    h = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))
