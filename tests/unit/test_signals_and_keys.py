from datetime import UTC, datetime, timedelta, timezone

import pytest

from attribution.features.attribution.domain.keys import (
    LANDING_PAGE_MAX,
    encode_ip,
    encode_landing_page,
    encode_signal,
    encode_source,
    encode_token,
    geo_cache_key,
    hour_bucket,
    index_key,
    marker_key,
)
from attribution.features.attribution.domain.signals import hash_signal, normalize_ip, normalize_ips


def test_comma_joined_ipv6_and_ipv4_split_into_both_addresses():
    assert normalize_ips("2001:db8::1, 203.0.113.5") == ["2001:db8::1", "203.0.113.5"]


def test_normalize_ips_flattens_lists_and_dedupes_in_order():
    ips = normalize_ips(["1.2.3.4", "1.2.3.4;5.6.7.8"], None, "5.6.7.8 9.9.9.9")
    assert ips == ["1.2.3.4", "5.6.7.8", "9.9.9.9"]


def test_normalize_ip_canonical_forms():
    assert normalize_ip("2001:DB8:0:0:0:0:0:1") == "2001:db8::1"
    assert normalize_ip("::ffff:203.0.113.5") == "203.0.113.5"
    assert normalize_ip("[2001:db8::1]") == "2001:db8::1"
    assert normalize_ip("fe80::1%eth0") == "fe80::1"
    assert normalize_ip(" 10.0.0.1 ") == "10.0.0.1"


def test_normalize_ip_drops_placeholders_and_garbage():
    assert normalize_ip(None) is None
    assert normalize_ip("unknown") is None
    assert normalize_ip("") is None
    assert normalize_ip("not-an-ip") is None
    assert normalize_ips("unknown, null", None) == []


def test_hash_signal_matches_collector_hash():
    assert hash_signal("a") == "2p"
    assert hash_signal("ab") == "2e9"
    assert hash_signal("1920x1080") == hash_signal("1920x1080")
    assert hash_signal("") is None
    assert hash_signal(None) is None


def test_hash_signal_output_is_base36():
    value = hash_signal("ANGLE (NVIDIA GeForce RTX 3070 Direct3D11 vs_5_0 ps_5_0)")
    assert value
    assert set(value) <= set("0123456789abcdefghijklmnopqrstuvwxyz")


def test_ip_keys_replace_colons():
    assert encode_ip("2001:db8::1") == "2001_db8__1"
    assert encode_ip("203.0.113.5") == "203.0.113.5"
    assert index_key("ip", "2001:DB8::1") == "attribution_index:ip:2001_db8__1"
    assert geo_cache_key("2001:db8::1") == "geo_cache:2001_db8__1"


def test_landing_page_encoding_is_key_safe_and_bounded():
    encoded = encode_landing_page("https://shop.example.com/a b?x=1")
    assert encoded == "https_3A_2F_2Fshop_example_com_2Fa_20b_3Fx_3D1"

    long_url = "https://shop.example.com/" + "p" * 300
    assert len(encode_landing_page(long_url)) == LANDING_PAGE_MAX


def test_source_and_token_encoding():
    assert encode_source("Google Ads") == "Google_20Ads"
    assert encode_token("abc/def:1") == "abc_def_1"
    assert encode_token("sess-1.a_b") == "sess-1.a_b"


def test_writer_and_reader_keys_agree_for_every_signal():
    for signal_type, raw in (
        ("session", "sess 1"),
        ("landing", "https://shop.example.com/"),
        ("source", "facebook"),
        ("hour", "2025031012"),
    ):
        assert index_key(signal_type, raw) == f"attribution_index:{signal_type}:" + encode_signal(
            signal_type, raw
        )
    assert index_key("device", "abc", prefix="idx") == "idx:device:abc"


def test_unknown_signal_type_rejected():
    with pytest.raises(ValueError):
        encode_signal("email", "buyer@example.com")


def test_hour_bucket_uses_utc():
    local = datetime(2025, 3, 10, 7, 30, tzinfo=timezone(timedelta(hours=8)))
    assert hour_bucket(local) == "2025030923"
    assert hour_bucket(datetime(2025, 3, 10, 12, 59, tzinfo=UTC)) == "2025031012"


def test_marker_key_lowercases_email():
    key = marker_key("alreadydeep", " Buyer@Example.com ", "2025-03-10T12:00:00.000Z")
    assert key == "alreadydeep:buyer@example.com:2025-03-10T12:00:00.000Z"
