import pytest

from webscan.errors import InvalidProtocol, InvalidUrl, PrivateNetworkTarget
from webscan.scans.validation import is_private_host, parse_url, validate_url


@pytest.mark.parametrize("url", ["", "   ", "not a url", "example.com", "http://", "https:///path", None, 42])
def test_malformed_urls_rejected(url):
    with pytest.raises(InvalidUrl) as exc:
        validate_url(url)
    assert exc.value.code == "INVALID_URL"
    assert exc.value.http_status == 400


@pytest.mark.parametrize("url", ["ftp://example.com/file", "javascript:alert(1)", "file:///etc/passwd"])
def test_non_web_protocols_rejected(url):
    with pytest.raises(InvalidProtocol) as exc:
        validate_url(url)
    assert exc.value.code == "INVALID_PROTOCOL"
    assert exc.value.message == "Only HTTP and HTTPS URLs are supported"


def test_parse_extracts_lowercase_domain_and_port():
    target = parse_url("HTTPS://Example.COM:8443/login?next=/")
    assert target.scheme == "https"
    assert target.domain == "example.com"
    assert target.port == 8443
    assert target.url == "HTTPS://Example.COM:8443/login?next=/"


def test_invalid_port_is_invalid_url():
    with pytest.raises(InvalidUrl):
        validate_url("http://example.com:99999/")


@pytest.mark.parametrize("host", [
    "localhost", "LOCALHOST", "api.localhost",
    "127.0.0.1", "127.8.9.10",
    "10.0.0.5", "172.16.0.1", "172.31.255.254", "192.168.1.1",
    "169.254.169.254", "0.0.0.0",
    "::1", "fe80::1", "fd00::1", "::ffff:192.168.0.1",
])
def test_private_hosts(host):
    assert is_private_host(host)


@pytest.mark.parametrize("host", ["example.com", "8.8.8.8", "172.32.0.1", "172.15.255.255", "2606:4700::1111"])
def test_public_hosts(host):
    assert not is_private_host(host)


def test_private_target_only_rejected_in_production():
    # Development allows scanning local services
    assert validate_url("http://127.0.0.1:8080/").domain == "127.0.0.1"

    with pytest.raises(PrivateNetworkTarget) as exc:
        validate_url("http://127.0.0.1:8080/", production=True)
    assert exc.value.code == "PRIVATE_NETWORK"
    assert exc.value.http_status == 403


def test_ipv6_literal_in_production():
    with pytest.raises(PrivateNetworkTarget):
        validate_url("http://[::1]/", production=True)


def test_protocol_checked_before_network_policy():
    # ftp to a private address reports the protocol problem first
    with pytest.raises(InvalidProtocol):
        validate_url("ftp://192.168.0.1/", production=True)
