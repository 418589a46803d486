# webscan/scanner/probes/cookie_audit.py
"""
Cookie security audit.

Inspects every Set-Cookie header returned by one fetch of the target. Each
cookie is checked independently for the Secure, HttpOnly and SameSite
attributes (one medium `fail` per missing attribute), SameSite=None and a
leading-dot Domain (low `warning`), and gets a `pass` finding when all three
attributes are set and SameSite is not None.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

import requests

from webscan.scanner.base import BaseProbe, FindingDraft, ScanConfig

logger = logging.getLogger(__name__)

_ATTR_FLAG_RE = {
    "secure": re.compile(r";\s*secure\s*(;|$)", re.IGNORECASE),
    "httponly": re.compile(r";\s*httponly\s*(;|$)", re.IGNORECASE),
}
_ATTR_VALUE_RE = {
    "samesite": re.compile(r";\s*samesite\s*=\s*([^;]+)", re.IGNORECASE),
    "domain": re.compile(r";\s*domain\s*=\s*([^;]+)", re.IGNORECASE),
    "path": re.compile(r";\s*path\s*=\s*([^;]+)", re.IGNORECASE),
    "expires": re.compile(r";\s*expires\s*=\s*([^;]+)", re.IGNORECASE),
    "max_age": re.compile(r";\s*max-age\s*=\s*([^;]+)", re.IGNORECASE),
}


class CookieAuditProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "cookie_security"

    @property
    def label(self) -> str:
        return "Cookie Security"

    def probe(self, url: str, config: ScanConfig, session: requests.Session) -> List[FindingDraft]:
        resp = self.fetch_target(url, config, session)
        cookies = set_cookie_values(resp)

        if not cookies:
            return [FindingDraft(
                probe_name="cookie_security",
                category="A07",
                severity="info",
                outcome="pass",
                title="No Cookies Set",
                description="No cookies are being set by the server.",
                confidence=95,
            )]

        findings: List[FindingDraft] = []
        for cookie in cookies:
            findings.extend(analyse_cookie(cookie))
        logger.debug(f"Cookie audit for {url}: {len(cookies)} cookie(s), {len(findings)} finding(s)")
        return findings


def set_cookie_values(resp: requests.Response) -> List[str]:
    """
    Every Set-Cookie header, unmerged.

    requests folds repeated headers into one comma-joined string, which
    breaks on Expires dates, so read the urllib3 headers when available.
    """
    raw_headers = getattr(getattr(resp, "raw", None), "headers", None)
    if raw_headers is not None and hasattr(raw_headers, "getlist"):
        return [c for c in raw_headers.getlist("Set-Cookie") if c and c.strip()]

    merged = resp.headers.get("Set-Cookie")
    return [merged] if merged else []


def parse_cookie_attributes(cookie: str) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {
        name: bool(pattern.search(cookie)) for name, pattern in _ATTR_FLAG_RE.items()
    }
    for name, pattern in _ATTR_VALUE_RE.items():
        m = pattern.search(cookie)
        attrs[name] = m.group(1).strip() if m else None
    if attrs["samesite"]:
        attrs["samesite"] = attrs["samesite"].lower()
    return attrs


def analyse_cookie(cookie: str) -> List[FindingDraft]:
    name = cookie.split("=", 1)[0].strip()
    attrs = parse_cookie_attributes(cookie)
    evidence = {"cookie_name": name, "cookie_string": cookie, "attributes": attrs}
    findings: List[FindingDraft] = []

    if not attrs["secure"]:
        findings.append(_fail(
            "cookie_secure_flag",
            f"Cookie Missing Secure Flag: {name}",
            "Cookie can be transmitted over unencrypted HTTP connections.",
            "Cookie values may be intercepted by attackers on insecure networks.",
            "Add the Secure flag to all cookies containing sensitive data.",
            "https://owasp.org/www-community/controls/SecureCookieAttribute",
            evidence,
        ))

    if not attrs["httponly"]:
        findings.append(_fail(
            "cookie_httponly_flag",
            f"Cookie Missing HttpOnly Flag: {name}",
            "Cookie can be accessed via client-side JavaScript.",
            "Vulnerable to XSS attacks that steal session cookies.",
            "Add the HttpOnly flag to prevent JavaScript access.",
            "https://owasp.org/www-community/HttpOnly",
            evidence,
        ))

    samesite: Optional[str] = attrs["samesite"]
    if not samesite:
        findings.append(_fail(
            "cookie_samesite_flag",
            f"Cookie Missing SameSite Attribute: {name}",
            "Cookie does not have SameSite protection against CSRF attacks.",
            "Vulnerable to Cross-Site Request Forgery (CSRF) attacks.",
            "Add SameSite=Strict or SameSite=Lax attribute.",
            "https://owasp.org/www-community/SameSite",
            evidence,
            confidence=90,
        ))
    elif samesite == "none":
        findings.append(FindingDraft(
            probe_name="cookie_samesite_flag",
            category="A07",
            severity="low",
            outcome="warning",
            title=f"Cookie SameSite=None: {name}",
            description="Cookie uses SameSite=None, which offers no CSRF protection.",
            impact="May be vulnerable to CSRF attacks in certain contexts.",
            recommendation="Use SameSite=Strict or SameSite=Lax if cross-site access is not required.",
            evidence=evidence,
            confidence=85,
        ))

    domain = attrs["domain"]
    if domain and domain.startswith("."):
        findings.append(FindingDraft(
            probe_name="cookie_domain_scope",
            category="A07",
            severity="low",
            outcome="warning",
            title=f"Cookie Broad Domain Scope: {name}",
            description=f"Cookie is scoped to {domain}, which includes every subdomain.",
            impact="Cookie may be readable by more subdomains than necessary.",
            recommendation="Restrict the cookie domain to the specific host if possible.",
            evidence={"cookie_name": name, "domain": domain, "cookie_string": cookie},
            confidence=75,
        ))

    if attrs["secure"] and attrs["httponly"] and samesite and samesite != "none":
        findings.append(FindingDraft(
            probe_name="cookie_security",
            category="A07",
            severity="info",
            outcome="pass",
            title=f"Cookie Security: {name}",
            description="Cookie has proper security attributes configured.",
            evidence={"cookie_name": name, "attributes": attrs},
            confidence=95,
        ))

    return findings


def _fail(probe_name, title, description, impact, recommendation, reference, evidence, confidence=95):
    return FindingDraft(
        probe_name=probe_name,
        category="A07",
        severity="medium",
        outcome="fail",
        title=title,
        description=description,
        impact=impact,
        recommendation=recommendation,
        references=[reference],
        evidence=evidence,
        confidence=confidence,
    )
