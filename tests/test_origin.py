import pytest

from page_loader import can_fetch_url, is_local_resource

PAGE = "https://a.test/p"


@pytest.mark.parametrize(
    "resource",
    [
        "https://a.test/x.css",
        "/x.css",
        "x.css",
        "../x.css",
        "//a.test/x.css",
        "http://a.test/x.css",
        "https://a.test:8443/x.css",
        "https://A.TEST/x.css",
    ],
)
def test_same_host_is_local(resource):
    assert is_local_resource(resource, PAGE)


@pytest.mark.parametrize(
    "resource",
    [
        "https://b.test/y.css",
        "https://cdn.a.test/y.css",
        "https://a.test.evil.com/y.css",
        "//b.test/y.css",
        "data:image/png;base64,AAAA",
        "mailto:someone@a.test",
        "ftp://a.test/y.css",
    ],
)
def test_other_hosts_are_not_local(resource):
    assert not is_local_resource(resource, PAGE)


def test_malformed_url_is_not_local():
    assert is_local_resource("http://[::1", PAGE) is False


@pytest.mark.parametrize(
    "value,expected",
    [
        ("/a.png", True),
        ("  /a.png ", True),
        ("", False),
        (None, False),
        ("   ", False),
        ("#top", False),
        ("javascript:void(0)", False),
        ("JavaScript:void(0)", False),
        ("data:,x", False),
        ("tel:123", False),
    ],
)
def test_can_fetch_url(value, expected):
    assert can_fetch_url(value) is expected


def test_unicode_and_punycode_host_match():
    assert is_local_resource("https://xn--e1afmkfd.xn--p1ai/a.png", "https://пример.рф/")
    assert not is_local_resource("https://тест.рф/a.png", "https://пример.рф/")
