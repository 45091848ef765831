"""
Change Guardian — Gatekeeper for every write sent to the tenant.
Only allow-listed write endpoints may be called, and in dry-run mode
writes are recorded instead of executed.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("forwarding_guard.safety")

# ─── Write Methods ───────────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Read-only POST endpoints (Graph and Exchange use POST for some queries)
READ_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),
]

# Exchange admin API cmdlets sent via InvokeCommand that only read
READ_CMDLET_PREFIXES = ("get-",)

# Writes this tool is allowed to perform
ALLOWED_WRITE_ENDPOINTS = [
    re.compile(r"/users/[^/]+$", re.IGNORECASE),                          # accountEnabled, marker, passwordProfile
    re.compile(r"/users/[^/]+/revokeSignInSessions$", re.IGNORECASE),
    re.compile(r"/users/[^/]+/authentication/requirements$", re.IGNORECASE),
    re.compile(r"/users/[^/]+/mailFolders/inbox/messageRules/[^/]+$", re.IGNORECASE),
    re.compile(r"/users/[^/]+/sendMail$", re.IGNORECASE),
    re.compile(r"/adminapi/beta/[^/]+/InvokeCommand$", re.IGNORECASE),
]

# Never allowed, regardless of the list above
BLOCKED_URL_PATTERNS = [
    re.compile(r"/directoryRoles", re.IGNORECASE),
    re.compile(r"/roleManagement/", re.IGNORECASE),
    re.compile(r"/applications", re.IGNORECASE),
    re.compile(r"/servicePrincipals", re.IGNORECASE),
    re.compile(r"/identity/conditionalAccess/", re.IGNORECASE),
]


class ChangeBlocked(Exception):
    """Raised when a write outside the allow-list is attempted."""
    pass


class ChangeGuardian:
    """
    Validates every outbound HTTP request.
    Read requests always pass. Writes must match the allow-list; in dry-run
    mode they are recorded and the caller skips sending them.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.violations: list[dict] = []
        self.suppressed: list[dict] = []
        self.writes_allowed: int = 0
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def is_write(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        method_upper = method.upper()
        if method_upper not in WRITE_METHODS:
            return False
        if method_upper == "POST":
            for pattern in READ_POST_ENDPOINTS:
                if pattern.search(url):
                    return False
            cmdlet = (body or {}).get("CmdletInput", {}).get("CmdletName", "")
            if cmdlet.lower().startswith(READ_CMDLET_PREFIXES):
                return False
        return True

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate a request.
        Returns True if it should be sent, False if dry-run suppressed it.
        Raises ChangeBlocked for writes outside the allow-list.
        """
        self.checks_performed += 1
        method_upper = method.upper()
        path = url.split("?", 1)[0]

        if not self.is_write(method_upper, path, body):
            return True

        for pattern in BLOCKED_URL_PATTERNS:
            if pattern.search(path):
                self._record_violation(method_upper, url, "Blocked URL pattern")
                raise ChangeBlocked(f"Write to protected resource blocked: {method_upper} {url}")

        if not any(p.search(path) for p in ALLOWED_WRITE_ENDPOINTS):
            self._record_violation(method_upper, url, "Write endpoint not allow-listed")
            raise ChangeBlocked(f"Write endpoint not allow-listed: {method_upper} {url}")

        if self.dry_run:
            self.suppressed.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "method": method_upper,
                "url": url,
                "body": _redact(body),
            })
            logger.info(f"DRY-RUN: would send {method_upper} {url}")
            return False

        self.writes_allowed += 1
        return True

    def _record_violation(self, method: str, url: str, reason: str):
        self.violations.append({
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "url": url,
            "reason": reason,
        })
        logger.critical(f"CHANGE BLOCKED: {reason} — {method} {url}")

    def get_audit_record(self) -> dict:
        return {
            "change_guardian": {
                "mode": "DRY-RUN" if self.dry_run else "ENFORCE",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "writes_allowed": self.writes_allowed,
                "writes_suppressed": len(self.suppressed),
                "violations_detected": len(self.violations),
                "violations": self.violations,
            }
        }


def _redact(body: Optional[dict]) -> Optional[dict]:
    """Mask password values before a request body is recorded."""
    if not isinstance(body, dict):
        return body
    redacted = {}
    for k, v in body.items():
        if "password" in k.lower():
            redacted[k] = "***"
        elif isinstance(v, dict):
            redacted[k] = _redact(v)
        else:
            redacted[k] = v
    return redacted
