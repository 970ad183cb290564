"""
ISP name normalisation.

Providers show up under many spellings ("AS7922 Comcast Cable
Communications, LLC", "Xfinity", "comcast.net"); comparison happens on a
canonical token instead.
"""

import re

_ASN_PREFIX = re.compile(r"^\s*AS\d+\s*", re.IGNORECASE)
_ASN = re.compile(r"\bAS(\d+)\b", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_CORPORATE_SUFFIXES = (
    "communications",
    "communication",
    "telecommunications",
    "telecom",
    "corporation",
    "corp",
    "incorporated",
    "inc",
    "limited",
    "ltd",
    "llc",
    "pte",
    "plc",
    "gmbh",
    "company",
    "co",
    "holdings",
    "group",
    "services",
    "networks",
    "network",
    "broadband",
    "cable",
    "wireless",
    "mobile",
    "net",
    "com",
)

# Canonical name -> normalised spellings and sub-brands
_SYNONYMS = {
    "singtel": ("singtel", "singaporetelecommunications", "singaporetelecom"),
    "starhub": ("starhub",),
    "m1": ("m1", "m1limited", "mobileone"),
    "comcast": ("comcast", "xfinity"),
    "verizon": ("verizon", "verizonbusiness", "mcicommunications", "cellco", "cellcopartnership"),
    "att": ("att", "attservices", "attmobility", "attinternet", "sbcis", "bellsouth"),
    "tmobile": ("tmobile", "tmobileusa", "metropcs", "sprint"),
    "charter": ("charter", "spectrum", "chartercommunications", "timewarner"),
    "cox": ("cox",),
    "vodafone": ("vodafone",),
}

_CANONICAL = {alias: name for name, aliases in _SYNONYMS.items() for alias in aliases}


def extract_asn(value: str | None) -> str | None:
    if not value:
        return None
    match = _ASN.search(value)
    return match.group(1) if match else None


def normalize_isp(name: str | None) -> str | None:
    """Canonical provider token, or None for empty / unknown names."""
    if not name:
        return None
    text = _ASN_PREFIX.sub("", name.casefold())
    text = text.replace("&", "")
    words = [w for w in _NON_ALNUM.split(text) if w]
    if not words or words == ["unknown"]:
        return None

    # Synonyms may match before or after any suffix is dropped
    while True:
        joined = "".join(words)
        if joined in _CANONICAL:
            return _CANONICAL[joined]
        if len(words) > 1 and words[-1] in _CORPORATE_SUFFIXES:
            words.pop()
            continue
        break

    for word in words:
        if word in _CANONICAL:
            return _CANONICAL[word]
    return joined


def isps_agree(
    isp_a: str | None,
    isp_b: str | None,
    asn_a: str | None = None,
    asn_b: str | None = None,
) -> bool:
    """Same provider by canonical name or by autonomous system number."""
    asn_a = asn_a or extract_asn(isp_a)
    asn_b = asn_b or extract_asn(isp_b)
    if asn_a and asn_b and asn_a == asn_b:
        return True

    norm_a = normalize_isp(isp_a)
    norm_b = normalize_isp(isp_b)
    if not norm_a or not norm_b:
        return False
    return norm_a == norm_b
