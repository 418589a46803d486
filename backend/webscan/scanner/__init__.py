# webscan/scanner/__init__.py
"""
Scan pipeline.

Usage:
    from webscan.scanner import ScanOrchestrator

    orchestrator = ScanOrchestrator(queue=queue)
    outcome = orchestrator.execute(job)

Architecture:
    Orchestrator
    ├── Probes (fetch the target, produce findings)
    │   ├── HeaderAuditProbe   HTTP security headers
    │   ├── CookieAuditProbe   Set-Cookie attributes
    │   └── ExposureProbe      publicly reachable sensitive paths
    │
    └── Report synthesizer (risk score, OWASP coverage, recommendations)
"""

from webscan.scanner.orchestrator import ScanOrchestrator, mark_scan_failed
