"""
Forwarding Guard
================
Detects Microsoft 365 mailboxes with new or duplicate SMTP forwarding,
keeps a persistent forwarding history, and optionally remediates the
affected accounts and re-enables them after a cooldown.

WARNING: With remediation enabled this tool MODIFIES the tenant
         (sign-in, passwords, mail protocols, forwarding, MFA).
         Use --dry-run to preview every write.
"""

__version__ = "1.0.0"
__author__ = "Forwarding Guard"
