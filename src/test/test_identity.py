from utils.get_ip_client import UNKNOWN_CLIENT, resolve_client
from utils.utils import _norm_ip


def test_trusted_header_wins():
    headers = {"cf-connecting-ip": "203.0.113.7", "x-forwarded-for": "198.51.100.1, 10.0.0.1"}
    assert resolve_client(headers, "127.0.0.1").identifier == "203.0.113.7"


def test_first_hop_of_forwarded_for():
    headers = {"x-forwarded-for": " 198.51.100.1 , 10.0.0.1, 10.0.0.2"}
    assert resolve_client(headers, "127.0.0.1").identifier == "198.51.100.1"


def test_falls_back_to_peer():
    assert resolve_client({}, "192.0.2.10").identifier == "192.0.2.10"


def test_invalid_values_are_skipped():
    headers = {"cf-connecting-ip": "not-an-ip", "x-forwarded-for": "garbage"}
    assert resolve_client(headers, "192.0.2.10").identifier == "192.0.2.10"
    # TestClient của Starlette dùng peer "testclient"
    assert resolve_client(headers, "testclient").identifier == UNKNOWN_CLIENT
    assert resolve_client({}, None).identifier == UNKNOWN_CLIENT


def test_custom_trusted_headers():
    headers = {"x-real-ip": "203.0.113.9", "cf-connecting-ip": "203.0.113.7"}
    identity = resolve_client(headers, None, trusted_headers=("X-Real-IP",))
    assert identity.identifier == "203.0.113.9"


def test_ipv6_is_normalized():
    identity = resolve_client({"x-forwarded-for": "2001:0db8:0000:0000:0000:0000:0000:0001"}, None)
    assert identity.identifier == "2001:db8::1"


def test_country_and_ray():
    identity = resolve_client({"cf-ipcountry": "vn", "cf-ray": "8a1b2c3d-SIN"}, "192.0.2.10")
    assert identity.country == "VN"
    assert identity.ray == "8a1b2c3d-SIN"

    bare = resolve_client({}, "192.0.2.10")
    assert bare.country is None
    assert bare.ray is None


def test_norm_ip():
    assert _norm_ip(" 10.0.0.1 ") == (True, "10.0.0.1")
    assert _norm_ip("") == (False, None)
    assert _norm_ip("abc") == (False, "abc")
