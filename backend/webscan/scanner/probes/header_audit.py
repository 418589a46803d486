# webscan/scanner/probes/header_audit.py
"""
Security header audit.

Fetches the target once and checks the response headers for best practice:

    Content-Security-Policy      missing → medium fail, unsafe sources → warning
    Strict-Transport-Security    missing → medium fail, max-age < 1 year → low warning
    X-Frame-Options              missing → medium fail, unknown value → low warning
    X-Content-Type-Options       not "nosniff" → low fail
    Referrer-Policy              missing → low fail, leaky policy → low warning
    Permissions-Policy           missing → info warning

Every header that is present and well-formed produces a `pass` finding, so
OWASP coverage in the report reflects what was verified.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

import requests

from webscan.scanner.base import BaseProbe, FindingDraft, ScanConfig

logger = logging.getLogger(__name__)

HSTS_MIN_MAX_AGE = 31536000  # 1 year

CSP_UNSAFE_SOURCES = ("'unsafe-inline'", "'unsafe-eval'", "data:")
# A bare * source in any directive
CSP_WILDCARD_RE = re.compile(r"(^|[\s;])\*($|[\s;])")

LEAKY_REFERRER_POLICIES = ("unsafe-url", "no-referrer-when-downgrade")

# Header checks: (header, probe_name, category, severity if missing, texts)
SECURITY_HEADERS: List[Dict[str, Any]] = [
    {
        "header": "Content-Security-Policy",
        "probe_name": "content_security_policy",
        "category": "A05",
        "severity": "medium",
        "missingTitle": "Missing Content Security Policy",
        "missingDesc": "The Content-Security-Policy header is not present, which allows unrestricted resource loading.",
        "impact": "Increases risk of XSS attacks and data injection.",
        "recommendation": "Implement a Content-Security-Policy header that restricts script-src, style-src, and default-src.",
        "references": [
            "https://owasp.org/www-project-secure-headers/#content-security-policy",
            "https://developer.mozilla.org/en-US/docs/Web/HTTP/CSP",
        ],
    },
    {
        "header": "Strict-Transport-Security",
        "probe_name": "hsts",
        "category": "A02",
        "severity": "medium",
        "missingTitle": "Missing HTTP Strict Transport Security",
        "missingDesc": "The Strict-Transport-Security header is not set.",
        "impact": "Vulnerable to protocol downgrade attacks and cookie hijacking.",
        "recommendation": "Add: Strict-Transport-Security: max-age=31536000; includeSubDomains",
        "references": [
            "https://owasp.org/www-project-secure-headers/#http-strict-transport-security",
        ],
    },
    {
        "header": "X-Frame-Options",
        "probe_name": "x_frame_options",
        "category": "A05",
        "severity": "medium",
        "missingTitle": "Missing X-Frame-Options header",
        "missingDesc": "No X-Frame-Options header found. The site can be embedded in iframes on other origins.",
        "impact": "Enables clickjacking attacks.",
        "recommendation": "Add: X-Frame-Options: DENY or X-Frame-Options: SAMEORIGIN",
        "references": [
            "https://owasp.org/www-project-secure-headers/#x-frame-options",
        ],
    },
    {
        "header": "X-Content-Type-Options",
        "probe_name": "x_content_type_options",
        "category": "A05",
        "severity": "low",
        "missingTitle": "Missing X-Content-Type-Options header",
        "missingDesc": "X-Content-Type-Options is not set to nosniff. Browsers may MIME-sniff content types.",
        "impact": "Uploaded or user-controlled files may be interpreted as scripts.",
        "recommendation": "Add: X-Content-Type-Options: nosniff",
        "references": [
            "https://owasp.org/www-project-secure-headers/#x-content-type-options",
        ],
    },
    {
        "header": "Referrer-Policy",
        "probe_name": "referrer_policy",
        "category": "A05",
        "severity": "low",
        "missingTitle": "Missing Referrer-Policy header",
        "missingDesc": "No Referrer-Policy header found. Full URLs, including query parameters, may be sent to other sites.",
        "impact": "Tokens or identifiers in URLs can leak through the Referer header.",
        "recommendation": "Add: Referrer-Policy: strict-origin-when-cross-origin",
        "references": [
            "https://owasp.org/www-project-secure-headers/#referrer-policy",
        ],
    },
    {
        "header": "Permissions-Policy",
        "probe_name": "permissions_policy",
        "category": "A05",
        "severity": "info",
        "missingTitle": "Missing Permissions-Policy header",
        "missingDesc": "No Permissions-Policy header found. Browser features like camera, microphone, and geolocation are not restricted.",
        "impact": "Third-party content may request powerful browser features.",
        "recommendation": "Add: Permissions-Policy: camera=(), microphone=(), geolocation=()",
        "references": [
            "https://owasp.org/www-project-secure-headers/#permissions-policy",
        ],
    },
]


class HeaderAuditProbe(BaseProbe):

    @property
    def name(self) -> str:
        return "security_headers"

    @property
    def label(self) -> str:
        return "Security Headers"

    def probe(self, url: str, config: ScanConfig, session: requests.Session) -> List[FindingDraft]:
        resp = self.fetch_target(url, config, session)
        headers = resp.headers
        logger.debug(f"Header audit for {url}: HTTP {resp.status_code}, {len(headers)} headers")
        return analyse_security_headers(headers)


def analyse_security_headers(headers: Mapping[str, str]) -> List[FindingDraft]:
    """Check a case-insensitive header mapping. One finding per header check."""
    lowered = {k.lower(): v for k, v in headers.items()}
    findings: List[FindingDraft] = []

    for check in SECURITY_HEADERS:
        header_name = check["header"].lower()
        value = lowered.get(header_name)

        if header_name == "content-security-policy" and not value:
            value = lowered.get("content-security-policy-report-only")

        if header_name == "x-content-type-options":
            if not value or value.strip().lower() != "nosniff":
                findings.append(_missing(check, lowered, value))
                continue
        elif not value:
            findings.append(_missing(check, lowered, value))
            continue

        weak = _check_weak(header_name, value)
        findings.append(weak or _passed(check, value))

    return findings


def _missing(check: Dict[str, Any], headers: Dict[str, str], value: Optional[str]) -> FindingDraft:
    outcome = "warning" if check["severity"] == "info" else "fail"
    evidence: Dict[str, Any] = {"headers_checked": sorted(headers.keys())}
    if value:
        evidence["value"] = value
    return FindingDraft(
        probe_name=check["probe_name"],
        category=check["category"],
        severity=check["severity"],
        outcome=outcome,
        title=check["missingTitle"],
        description=check["missingDesc"],
        impact=check["impact"],
        recommendation=check["recommendation"],
        references=list(check["references"]),
        evidence=evidence,
        confidence=95,
    )


def _passed(check: Dict[str, Any], value: str) -> FindingDraft:
    return FindingDraft(
        probe_name=check["probe_name"],
        category=check["category"],
        severity="info",
        outcome="pass",
        title=f"{check['header']} configured",
        description=f"The {check['header']} header is present and appears properly configured.",
        evidence={"value": value},
        confidence=90,
    )


def _check_weak(header_name: str, value: str) -> Optional[FindingDraft]:
    """Return a warning finding when a present header is weakly configured."""
    if header_name == "content-security-policy":
        lower = value.lower()
        unsafe = [s for s in CSP_UNSAFE_SOURCES if s in lower]
        if CSP_WILDCARD_RE.search(lower):
            unsafe.append("*")
        if unsafe:
            return FindingDraft(
                probe_name="content_security_policy",
                category="A05",
                severity="medium",
                outcome="warning",
                title="Content Security Policy Contains Unsafe Directives",
                description=f"CSP is present but allows unsafe sources: {', '.join(unsafe)}.",
                impact="Reduced protection against XSS and injection attacks.",
                recommendation="Review and tighten CSP directives, avoid unsafe-inline and unsafe-eval.",
                evidence={"csp_header": value, "unsafe_sources": unsafe},
                confidence=85,
            )

    elif header_name == "strict-transport-security":
        match = re.search(r"max-age\s*=\s*\"?(\d+)", value, re.IGNORECASE)
        max_age = int(match.group(1)) if match else 0
        if max_age < HSTS_MIN_MAX_AGE:
            return FindingDraft(
                probe_name="hsts",
                category="A02",
                severity="low",
                outcome="warning",
                title="HSTS Max-Age Too Short",
                description=(
                    f"HSTS max-age is set to {max_age} seconds ({max_age // 86400} days), "
                    f"less than the recommended 1 year."
                ),
                recommendation="Increase max-age to at least 31536000 seconds (1 year).",
                evidence={"hsts_header": value, "max_age": max_age},
                confidence=90,
            )

    elif header_name == "x-frame-options":
        val_upper = value.strip().upper()
        if val_upper not in ("DENY", "SAMEORIGIN") and not val_upper.startswith("ALLOW-FROM"):
            return FindingDraft(
                probe_name="x_frame_options",
                category="A05",
                severity="low",
                outcome="warning",
                title=f"Unusual X-Frame-Options value: {value}",
                description="Expected DENY or SAMEORIGIN. Browsers ignore unknown values.",
                recommendation="Set X-Frame-Options to DENY or SAMEORIGIN.",
                evidence={"value": value},
                confidence=85,
            )

    elif header_name == "referrer-policy":
        policies = [p.strip().lower() for p in value.split(",") if p.strip()]
        # Browsers apply the last policy they understand
        effective = policies[-1] if policies else ""
        if effective in LEAKY_REFERRER_POLICIES:
            return FindingDraft(
                probe_name="referrer_policy",
                category="A05",
                severity="low",
                outcome="warning",
                title=f"Weak Referrer-Policy: {effective}",
                description="The referrer policy sends full URLs to other origins.",
                recommendation="Use strict-origin-when-cross-origin or no-referrer.",
                evidence={"value": value},
                confidence=85,
            )

    return None
