"""
Safety Guardian — Enforces strict read-only operation.
Validates all HTTP methods, blocks write attempts, and logs safety events.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

logger = logging.getLogger("membership_resolver.safety")

READ_METHODS = {"GET", "HEAD", "OPTIONS"}

# Action segments that mutate membership or accounts, whatever the method
BLOCKED_URL_PATTERNS = [
    re.compile(r"/members/\$ref", re.IGNORECASE),
    re.compile(r"/owners/\$ref", re.IGNORECASE),
    re.compile(r"/addMembers?$", re.IGNORECASE),
    re.compile(r"/removeMembers?$", re.IGNORECASE),
    re.compile(r"/resetPassword$", re.IGNORECASE),
    re.compile(r"/revokeSignInSessions$", re.IGNORECASE),
]


class SafetyViolation(Exception):
    """Raised when a write operation is attempted."""
    pass


class SafetyGuardian:
    """
    Validates every outbound HTTP request to ensure read-only operation.
    Keeps an audit log of checks and violations.
    """

    def __init__(self):
        self.violations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _utcnow()

    def validate_request(self, method: str, url: str) -> bool:
        """
        Validate that a request is read-only.
        Returns True if safe, raises SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        for pattern in BLOCKED_URL_PATTERNS:
            if pattern.search(url.split("?", 1)[0]):
                self._record_violation(method_upper, url, "Blocked write-pattern URL")
                raise SafetyViolation(
                    f"SAFETY VIOLATION: Write-pattern URL detected: {method_upper} {url}"
                )

        if method_upper not in READ_METHODS:
            self._record_violation(method_upper, url, "Write HTTP method blocked")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write method blocked: {method_upper} {url}"
            )

        return True

    def _record_violation(self, method: str, url: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": _utcnow(),
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason}: {method} {url}")

    def get_audit_record(self) -> dict:
        """Return the full safety audit record."""
        return {
            "safety_guardian": {
                "mode": "READ-ONLY",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
