# webscan/scanner/base.py
"""
Base classes for the scan pipeline.

Architecture:
    ScanOrchestrator runs a fixed, ordered tuple of probes against one URL.

BaseProbe:    Fetches the target (or paths under it) and turns what it sees
              into FindingDrafts. Each probe is independent of the others and
              can be tested with a stubbed HTTP session.

FindingDraft: A finding produced by a probe, not yet persisted. The
              orchestrator writes it as a ScanFinding row.

ScanConfig:   Per-job fetch options (timeout, user agent, redirects), carried
              in the queue payload and stored on the Scan row.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from webscan.errors import ProbeFetchError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3, "info": 4}
SEVERITIES = ("critical", "high", "medium", "low", "info")

# Outcomes that count as vulnerabilities in summaries and risk scoring
VULNERABLE_OUTCOMES = ("fail", "warning")

OWASP_CATEGORIES = {
    "A01": "Broken Access Control",
    "A02": "Cryptographic Failures",
    "A03": "Injection",
    "A04": "Insecure Design",
    "A05": "Security Misconfiguration",
    "A06": "Vulnerable and Outdated Components",
    "A07": "Identification and Authentication Failures",
    "A08": "Software and Data Integrity Failures",
    "A09": "Security Logging and Monitoring Failures",
    "A10": "Server-Side Request Forgery",
}


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_MS = 30000
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 300000
DEFAULT_MAX_REDIRECTS = 5
DEFAULT_USER_AGENT = "webscan/1.0 (+security scanner)"


@dataclass
class ScanConfig:
    """
    Fetch options for one scan job.

    Fields:
        timeout:          Per-request timeout in milliseconds (1000..300000)
        user_agent:       User-Agent sent with every probe request
        follow_redirects: Whether probes follow redirects on the main fetch
        max_redirects:    Redirect ceiling (0..10)
    """
    timeout: int = DEFAULT_TIMEOUT_MS
    user_agent: str = DEFAULT_USER_AGENT
    follow_redirects: bool = True
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "ScanConfig":
        """Build from a payload dict, clamping out-of-range values."""
        raw = raw or {}
        timeout = _as_int(raw.get("timeout"), DEFAULT_TIMEOUT_MS)
        max_redirects = _as_int(
            raw.get("max_redirects", raw.get("maxRedirects")), DEFAULT_MAX_REDIRECTS
        )
        user_agent = raw.get("user_agent") or raw.get("userAgent") or DEFAULT_USER_AGENT
        follow = raw.get("follow_redirects", raw.get("followRedirects", True))
        return cls(
            timeout=min(MAX_TIMEOUT_MS, max(MIN_TIMEOUT_MS, timeout)),
            user_agent=str(user_agent)[:500],
            follow_redirects=bool(follow),
            max_redirects=min(10, max(0, max_redirects)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeout": self.timeout,
            "user_agent": self.user_agent,
            "follow_redirects": self.follow_redirects,
            "max_redirects": self.max_redirects,
        }


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class FindingDraft:
    """
    A finding produced by a probe, ready to be persisted.

    Fields:
        probe_name:     Which check produced it, e.g. "hsts", "cookie_secure_flag"
        category:       OWASP Top-10 id, A01..A10
        severity:       One of: critical, high, medium, low, info
        outcome:        pass | fail | warning | error
        title:          Human-readable title shown in the report
        description:    What was observed
        impact:         What an attacker could do with it
        recommendation: How to fix it
        references:     URLs for more info
        evidence:       Raw observations backing the finding
        confidence:     0..100
    """
    probe_name: str
    category: str
    severity: str
    outcome: str
    title: str
    description: str = ""

    impact: Optional[str] = None
    recommendation: Optional[str] = None
    references: List[str] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)
    confidence: int = 100

    @property
    def is_vulnerability(self) -> bool:
        return self.outcome in VULNERABLE_OUTCOMES


# ---------------------------------------------------------------------------
# Abstract base class
# ---------------------------------------------------------------------------

class BaseProbe(ABC):
    """
    Abstract base for probes.

    To create a new probe:
        1. Subclass BaseProbe
        2. Set `name` (snake_case id) and `label` (human-readable)
        3. Implement `probe(url, config, session) -> List[FindingDraft]`
        4. Add it to PROBES in webscan.scanner.probes

    The base class handles timing and logging. It does NOT catch
    exceptions: a probe that raises is turned into an `error` finding by
    the orchestrator, so the other probes still run.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique probe identifier, used as probe_name on error findings."""
        ...

    @property
    @abstractmethod
    def label(self) -> str:
        """Human-readable name, used in progress events."""
        ...

    def run(
        self,
        url: str,
        config: Optional[ScanConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> List[FindingDraft]:
        """
        Execute the probe with timing.

        DO NOT OVERRIDE THIS METHOD. Override `probe()` instead.
        """
        config = config or ScanConfig()
        own_session = session is None
        if own_session:
            session = build_session(config)

        start = time.monotonic()
        try:
            drafts = self.probe(url, config, session)
        finally:
            if own_session:
                session.close()
            duration = round(time.monotonic() - start, 2)
            logger.debug(f"Probe '{self.name}' finished in {duration}s for {url}")

        return drafts

    @abstractmethod
    def probe(self, url: str, config: ScanConfig, session: requests.Session) -> List[FindingDraft]:
        """
        Perform the checks and return finding drafts.

        Raise ProbeFetchError (via fetch_target) when the target cannot be
        reached at all; tolerate everything else.
        """
        ...

    # -----------------------------------------------------------------------
    # HTTP helpers
    # -----------------------------------------------------------------------

    def fetch_target(self, url: str, config: ScanConfig, session: requests.Session) -> requests.Response:
        """
        The probe's first, required fetch. Any status code is a valid answer;
        a transport failure raises ProbeFetchError.
        """
        try:
            return session.get(
                url,
                timeout=config.timeout_seconds,
                allow_redirects=config.follow_redirects,
            )
        except requests.RequestException as e:
            raise ProbeFetchError(url, e) from e


def build_session(config: ScanConfig) -> requests.Session:
    """requests.Session carrying the job's user agent and redirect ceiling."""
    session = requests.Session()
    session.headers.update({
        "User-Agent": config.user_agent,
        "Accept": "text/html,*/*",
    })
    session.max_redirects = config.max_redirects
    return session
