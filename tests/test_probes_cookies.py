from webscan.scanner.base import ScanConfig
from webscan.scanner.probes.cookie_audit import CookieAuditProbe, analyse_cookie, parse_cookie_attributes

URL = "https://shop.example"


def _run(http, cookies):
    http.add(URL, set_cookies=cookies)
    return CookieAuditProbe().run(URL, ScanConfig(), http)


def test_no_cookies_is_a_pass(http):
    findings = _run(http, [])
    assert len(findings) == 1
    assert findings[0].outcome == "pass"
    assert findings[0].title == "No Cookies Set"
    assert findings[0].category == "A07"


def test_insecure_cookie_fails_all_three_checks(http):
    findings = _run(http, ["sessionid=abc123; Path=/"])

    assert [f.probe_name for f in findings] == [
        "cookie_secure_flag", "cookie_httponly_flag", "cookie_samesite_flag",
    ]
    assert {f.outcome for f in findings} == {"fail"}
    assert {f.severity for f in findings} == {"medium"}
    assert findings[0].title == "Cookie Missing Secure Flag: sessionid"


def test_hardened_cookie_passes(http):
    findings = _run(http, ["sessionid=abc123; Path=/; Secure; HttpOnly; SameSite=Lax"])
    assert len(findings) == 1
    assert findings[0].outcome == "pass"
    assert findings[0].title == "Cookie Security: sessionid"


def test_each_cookie_is_checked_independently(http):
    findings = _run(http, [
        "good=1; Secure; HttpOnly; SameSite=Strict",
        "bad=2; Expires=Wed, 21 Oct 2026 07:28:00 GMT; HttpOnly; SameSite=Lax",
    ])
    failed = [f for f in findings if f.outcome == "fail"]
    assert len(failed) == 1
    assert failed[0].probe_name == "cookie_secure_flag"
    assert failed[0].evidence["cookie_name"] == "bad"


def test_samesite_none_is_a_low_warning():
    findings = analyse_cookie("tracker=x; Secure; HttpOnly; SameSite=None")
    assert len(findings) == 1
    assert findings[0].outcome == "warning"
    assert findings[0].severity == "low"


def test_leading_dot_domain_is_flagged():
    findings = analyse_cookie("sid=1; Domain=.example.com; Secure; HttpOnly; SameSite=Strict")
    scope = [f for f in findings if f.probe_name == "cookie_domain_scope"]
    assert len(scope) == 1
    assert scope[0].severity == "low"
    assert scope[0].evidence["domain"] == ".example.com"


def test_attribute_parsing_is_case_insensitive():
    attrs = parse_cookie_attributes("a=b; secure; HTTPONLY; samesite=STRICT; Max-Age=3600; path=/app")
    assert attrs["secure"] is True
    assert attrs["httponly"] is True
    assert attrs["samesite"] == "strict"
    assert attrs["max_age"] == "3600"
    assert attrs["path"] == "/app"


def test_secure_must_be_an_attribute_not_part_of_the_value():
    attrs = parse_cookie_attributes("prefs=secure_mode; Path=/")
    assert attrs["secure"] is False
