# webscan/scanner/probes/exposure.py
"""
Sensitive path exposure probe.

Requests a fixed list of well-known sensitive files and directories relative
to the target URL. A path answering HTTP 200 is reported as exposed, with a
severity looked up from SEVERITY_RULES:

    credentials / config files    critical
    VCS, admin panels, backups    high
    diagnostic pages, logs        medium
    everything else               low

Each path follows at most MAX_REDIRECTS redirects, so a path that redirects
to a live page counts as exposed. 404s, other status codes, longer redirect
chains and network errors on individual paths mean "not exposed". Only a connection failure on the very first request (target
unreachable) is raised. Requests are spaced by a short delay so the target
isn't hammered.
"""

from __future__ import annotations

import logging
import re
import time
from typing import List, Optional, Tuple
from urllib.parse import urljoin

import requests

from webscan.errors import ProbeFetchError
from webscan.scanner.base import BaseProbe, FindingDraft, ScanConfig

logger = logging.getLogger(__name__)

REQUEST_DELAY_SECONDS = 0.1
# Per-path ceilings; the job's timeout applies when it is shorter
PATH_TIMEOUT_SECONDS = 5.0
MAX_REDIRECTS = 2
PREVIEW_CHARS = 200
PREVIEW_READ_BYTES = 4096


# ─────────────────────────────────────────────────────────────────────
# Path definitions
# ─────────────────────────────────────────────────────────────────────

SENSITIVE_PATHS: List[str] = [
    # -- Configuration files --
    ".env",
    ".env.local",
    ".env.production",
    "config.php",
    "config.yml",
    "config.json",
    "settings.php",
    "wp-config.php",

    # -- Version control --
    ".git/",
    ".git/config",
    ".git/HEAD",
    ".svn/",
    ".hg/",

    # -- Admin panels --
    "admin/",
    "administrator/",
    "wp-admin/",
    "phpmyadmin/",
    "adminer.php",

    # -- Backups / dumps --
    "backup/",
    "backups/",
    "dump.sql",
    "database.sql",
    "db.sql",

    # -- Dependency manifests --
    "composer.json",
    "package.json",
    "yarn.lock",
    "Gemfile",
    "requirements.txt",

    # -- Server diagnostics --
    "server-status",
    "server-info",
    "phpinfo.php",
    ".htaccess",
    "web.config",

    # -- Documentation --
    "README.md",
    "CHANGELOG.md",
    "docs/",

    # -- Logs --
    "logs/",
    "log/",
    "error.log",
    "access.log",

    # -- Common directories --
    "uploads/",
    "files/",
    "assets/",
    "static/",
    "tmp/",
    "temp/",
]

# First match wins. Patterns are matched against the path as listed above.
SEVERITY_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"^\.env(\.|$)"), "critical"),
    (re.compile(r"^\.git/config$"), "critical"),
    (re.compile(r"^(wp-)?config\.(php|yml|json)$"), "critical"),
    (re.compile(r"^settings\.php$"), "critical"),
    (re.compile(r"^(database|db)\.sql$"), "critical"),
    (re.compile(r"^\.(git|svn|hg)/"), "high"),
    (re.compile(r"^(admin|administrator|wp-admin|phpmyadmin)/$"), "high"),
    (re.compile(r"^adminer\.php$"), "high"),
    (re.compile(r"^backups?/$"), "high"),
    (re.compile(r"^dump\.sql$"), "high"),
    (re.compile(r"^(phpinfo\.php|server-status|server-info)$"), "medium"),
    (re.compile(r"^(\.htaccess|web\.config|composer\.json)$"), "medium"),
    (re.compile(r"^(logs?/|error\.log|access\.log)$"), "medium"),
]

# (pattern, description, impact, recommendation)
PATH_DETAILS: List[Tuple[re.Pattern, str, str, str]] = [
    (
        re.compile(r"\.env"),
        "Environment configuration file is publicly accessible.",
        "May expose database credentials, API keys, and other secrets.",
        "Block access to .env files in the web server configuration.",
    ),
    (
        re.compile(r"^\.(git|svn|hg)"),
        "Version control metadata is publicly accessible.",
        "Source code, commit history, and embedded secrets may be exposed.",
        "Block access to VCS directories in the web server configuration.",
    ),
    (
        re.compile(r"admin"),
        "Administrative interface is publicly accessible.",
        "May allow unauthorized access to administrative functions.",
        "Restrict admin panel access to authorized IP addresses only.",
    ),
    (
        re.compile(r"backup|\.sql$"),
        "Backup or database file is publicly accessible.",
        "May expose entire database contents including user data.",
        "Move backups outside the web root or put them behind access control.",
    ),
    (
        re.compile(r"config|settings"),
        "Application configuration file is publicly accessible.",
        "May expose credentials and internal infrastructure details.",
        "Move configuration files outside the web root.",
    ),
    (
        re.compile(r"phpinfo|server-(status|info)"),
        "Server diagnostic page is publicly accessible.",
        "Exposes server configuration and potentially sensitive environment variables.",
        "Remove diagnostic pages or restrict access to them.",
    ),
]

DEFAULT_DETAILS = (
    "Sensitive file or directory is publicly accessible.",
    "May expose sensitive information or system configuration.",
    "Review and restrict access to sensitive files and directories.",
)


def severity_for_path(path: str) -> str:
    for pattern, severity in SEVERITY_RULES:
        if pattern.search(path):
            return severity
    return "low"


def details_for_path(path: str) -> Tuple[str, str, str]:
    for pattern, description, impact, recommendation in PATH_DETAILS:
        if pattern.search(path):
            return description, impact, recommendation
    return DEFAULT_DETAILS


# ─────────────────────────────────────────────────────────────────────
# Probe
# ─────────────────────────────────────────────────────────────────────

class ExposureProbe(BaseProbe):

    def __init__(self, paths: Optional[List[str]] = None, delay: float = REQUEST_DELAY_SECONDS):
        self.paths = list(paths) if paths is not None else list(SENSITIVE_PATHS)
        self.delay = delay

    @property
    def name(self) -> str:
        return "directory_exposure"

    @property
    def label(self) -> str:
        return "Directory Exposure"

    def probe(self, url: str, config: ScanConfig, session: requests.Session) -> List[FindingDraft]:
        findings: List[FindingDraft] = []
        checked = 0

        session_max_redirects = session.max_redirects
        session.max_redirects = MAX_REDIRECTS
        try:
            for index, path in enumerate(self.paths):
                if index and self.delay:
                    time.sleep(self.delay)

                test_url = urljoin(url, path)
                checked += 1
                resp = self._fetch_path(test_url, config, session, first=(index == 0))
                if resp is None:
                    continue

                try:
                    if resp.status_code != 200:
                        continue
                    findings.append(self._exposed(path, test_url, resp))
                finally:
                    resp.close()
        finally:
            session.max_redirects = session_max_redirects

        if not findings:
            findings.append(FindingDraft(
                probe_name="directory_exposure",
                category="A05",
                severity="info",
                outcome="pass",
                title="No Sensitive Paths Exposed",
                description="Common sensitive paths and files are not publicly accessible.",
                evidence={
                    "checked_paths": checked,
                    "sample_paths": self.paths[:10],
                },
                confidence=85,
            ))

        logger.info(f"Exposure probe for {url}: {checked} path(s) checked, "
                    f"{sum(1 for f in findings if f.outcome == 'fail')} exposed")
        return findings

    def _fetch_path(
        self, url: str, config: ScanConfig, session: requests.Session, first: bool
    ) -> Optional[requests.Response]:
        """GET one path. None means "treat as not exposed"."""
        try:
            return session.get(
                url,
                timeout=min(config.timeout_seconds, PATH_TIMEOUT_SECONDS),
                allow_redirects=True,
                stream=True,
            )
        except requests.ConnectionError as e:
            if first:
                raise ProbeFetchError(url, e) from e
            logger.debug(f"Exposure check failed for {url}: {e}")
        except requests.RequestException as e:
            logger.debug(f"Exposure check failed for {url}: {e}")
        return None

    def _exposed(self, path: str, test_url: str, resp: requests.Response) -> FindingDraft:
        severity = severity_for_path(path)
        description, impact, recommendation = details_for_path(path)
        return FindingDraft(
            probe_name="directory_exposure",
            category="A05",
            severity=severity,
            outcome="fail",
            title=f"Exposed Path: {path}",
            description=description,
            impact=impact,
            recommendation=recommendation,
            references=[
                "https://owasp.org/Top10/A05_2021-Security_Misconfiguration/",
            ],
            evidence={
                "path": path,
                "url": test_url,
                "status_code": resp.status_code,
                "content_type": resp.headers.get("Content-Type"),
                "content_length": resp.headers.get("Content-Length"),
                "response_preview": _response_preview(resp),
            },
            confidence=95,
        )


def _response_preview(resp: requests.Response) -> str:
    content_type = (resp.headers.get("Content-Type") or "").lower()
    if content_type and not any(t in content_type for t in ("text", "json", "xml", "javascript")):
        return "[Non-text content]"

    try:
        chunk = next(resp.iter_content(chunk_size=PREVIEW_READ_BYTES), b"")
    except requests.RequestException:
        return ""
    text = chunk.decode("utf-8", errors="replace") if isinstance(chunk, bytes) else str(chunk)
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text
