"""
Configuration module for Forwarding Guard.
Defines tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Optional


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None
    organization: str = ""     # Initial domain, e.g. contoso.onmicrosoft.com


# ─── Graph / Exchange API Settings ───────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

EXCHANGE_BASE_URL = "https://outlook.office365.com/adminapi/beta"
EXCHANGE_SCOPE = "https://outlook.office365.com/.default"

# Rate limiting / throttling
MAX_CONCURRENT_REQUESTS = 4       # Parallel requests per client
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor
REQUEST_TIMEOUT_SECONDS = 60.0
CONNECT_TIMEOUT_SECONDS = 30.0

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops


# ─── Remediation Settings ────────────────────────────────────────────────────

MAIL_PROTOCOLS = ["ActiveSync", "EWS", "IMAP", "MAPI", "OWA", "POP", "SMTP"]


def check_protocols(protocols: list[str]) -> list[str]:
    """Return the protocol list, raising ValueError on names Set-CASMailbox does not know."""
    unknown = [p for p in protocols if p not in MAIL_PROTOCOLS]
    if unknown:
        raise ValueError(
            f"Unknown mail protocol(s) {', '.join(unknown)}; "
            f"expected some of {', '.join(MAIL_PROTOCOLS)}"
        )
    return list(protocols)


@dataclass
class RemediationConfig:
    """Controls for blocking, remediation and unblocking."""
    enabled: bool = False                 # Remediate duplicates during scan
    capacity: int = 10                    # Max identities remediated per run
    min_elapsed_minutes: int = 58         # Cooldown before auto-unblock
    disable_protocols: bool = True
    reset_password: bool = True
    remove_forwarding: bool = True
    disable_inbox_rules: bool = True
    enable_mfa: bool = True
    auto_unblock: bool = False            # Sweep blocked identities after scan
    marker_attribute: str = "extensionAttribute15"
    protocols: list[str] = field(default_factory=lambda: list(MAIL_PROTOCOLS))

    @property
    def min_elapsed(self) -> timedelta:
        return timedelta(minutes=self.min_elapsed_minutes)


# ─── Notification Settings ───────────────────────────────────────────────────

@dataclass
class NotifyConfig:
    """Summary email settings. Mail is sent through Graph as `sender`."""
    enabled: bool = False
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    subject_prefix: str = "[Forwarding Guard]"


# ─── Storage Settings ────────────────────────────────────────────────────────

@dataclass
class StoreConfig:
    """Where the forwarding history and run journal live."""
    data_dir: str = ""
    history_file: str = "forwarding_history.csv"
    journal_file: str = "journal.db"
    lookback_hours: int = 24              # "new since" window for scans

    def __post_init__(self):
        if not self.data_dir:
            self.data_dir = os.path.join(os.getcwd(), "forwarding_guard_data")

    @property
    def history_path(self) -> Path:
        return Path(self.data_dir) / self.history_file

    @property
    def journal_path(self) -> Path:
        return Path(self.data_dir) / self.journal_file


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class EngineConfig:
    """Top-level configuration for a run."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    remediation: RemediationConfig = field(default_factory=RemediationConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    dry_run: bool = False         # Log intended writes without sending them
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            config.auth.organization = auth_data.get("organization", "")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                    thumbprint=c.get("thumbprint", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        for section in ("remediation", "notify", "store"):
            target = getattr(config, section)
            for k, v in data.get(section, {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)
        config.remediation.protocols = check_protocols(config.remediation.protocols)
        config.dry_run = data.get("dry_run", False)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Permissions ───────────────────────────────────────────────────

REQUIRED_PERMISSIONS = {
    # Microsoft Graph
    "User.ReadWrite.All": "Block/unblock sign-in, write the disable marker attribute",
    "UserAuthenticationMethod.ReadWrite.All": "Reset passwords, enforce per-user MFA",
    "MailboxSettings.ReadWrite": "Read and disable forwarding inbox rules",
    "Mail.Send": "Send the summary email",
    "AuditLog.Read.All": "Retrieve directory audit and sign-in logs",
    # Exchange Online
    "Exchange.ManageAsApp": "Get-Mailbox, Set-Mailbox, Set-CASMailbox via the admin API",
}
