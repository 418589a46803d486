# webscan/scanner/probes/__init__.py
"""
Probe modules.
Each probe fetches the target independently and returns FindingDrafts.
Probes do NOT persist anything; the orchestrator does.
"""
from webscan.scanner.probes.header_audit import HeaderAuditProbe
from webscan.scanner.probes.cookie_audit import CookieAuditProbe
from webscan.scanner.probes.exposure import ExposureProbe

# Registry of all available probes.
# ORDER MATTERS: the orchestrator runs them sequentially in this order,
# which keeps progress percentages monotonic and deterministic.
ALL_PROBES = {
    "security_headers": HeaderAuditProbe,
    "cookie_security": CookieAuditProbe,
    "directory_exposure": ExposureProbe,
}


def default_probes():
    """Fresh instances of every registered probe, in run order."""
    return tuple(cls() for cls in ALL_PROBES.values())


__all__ = [
    "HeaderAuditProbe", "CookieAuditProbe", "ExposureProbe",
    "ALL_PROBES", "default_probes",
]
