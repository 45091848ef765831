"""
Account actions — every tenant-side change the remediation workflow makes,
plus enumeration of forwarding mailboxes.

Identities are addressed by user principal name (or Entra object id);
both Graph and the Exchange admin API accept either.
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..config import MAIL_PROTOCOLS, check_protocols
from ..exchange.client import ExchangeClient
from ..forwarding.models import ObservedForward, as_utc, canonical_guid, utcnow
from ..graph.client import GraphAPIError, GraphClient

logger = logging.getLogger("forwarding_guard.accounts")

# Set-CASMailbox parameter per protocol, and whether True means "enabled"
PROTOCOL_PARAMETERS = {
    "ActiveSync": ("ActiveSyncEnabled", True),
    "EWS": ("EwsEnabled", True),
    "IMAP": ("ImapEnabled", True),
    "MAPI": ("MAPIEnabled", True),
    "OWA": ("OWAEnabled", True),
    "POP": ("PopEnabled", True),
    "SMTP": ("SmtpClientAuthenticationDisabled", False),
}

FORWARDING_RULE_ACTIONS = ("forwardTo", "redirectTo", "forwardAsAttachmentTo")

PASSWORD_LENGTH = 20


class NotFound(Exception):
    """Raised when an identity does not exist in the tenant."""
    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"Identity not found: {identity}")


@dataclass
class InboxRule:
    """An enabled inbox rule that sends mail out of the mailbox."""
    id: str
    display_name: str
    targets: list[str] = field(default_factory=list)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password containing every character class Entra ID requires."""
    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits, "!@#$%^&*-_=+"]
    alphabet = "".join(classes)
    chars = [secrets.choice(c) for c in classes]
    chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def parse_marker(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 disable marker. Empty or malformed values read as absent."""
    if not value or not str(value).strip():
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Ignoring unparseable disable marker: {value!r}")
        return None


class AccountActions:
    """Graph + Exchange operations against a single identity."""

    def __init__(
        self,
        graph: GraphClient,
        exchange: ExchangeClient,
        marker_attribute: str = "extensionAttribute15",
        protocols: Optional[list[str]] = None,
    ):
        self.graph = graph
        self.exchange = exchange
        self.marker_attribute = marker_attribute
        self.protocols = check_protocols(protocols or MAIL_PROTOCOLS)

    # ── Lookup ──────────────────────────────────────────────────────────────

    async def exists(self, identity: str) -> bool:
        data = await self.graph.get(f"users/{identity}", params={"$select": "id"})
        return not data.get("_not_found")

    async def require(self, identity: str) -> None:
        if not await self.exists(identity):
            raise NotFound(identity)

    async def _patch_user(self, identity: str, body: dict, beta: bool = False) -> None:
        try:
            await self.graph.patch(f"users/{identity}", body, beta=beta)
        except GraphAPIError as e:
            if e.not_found:
                raise NotFound(identity) from e
            raise

    # ── Sign-in ─────────────────────────────────────────────────────────────

    async def block_sign_in(self, identity: str) -> None:
        await self._patch_user(identity, {"accountEnabled": False})
        logger.info(f"Sign-in blocked for {identity}")

    async def revoke_sessions(self, identity: str) -> None:
        """Invalidate refresh tokens so existing sessions must sign in again."""
        try:
            await self.graph.post(f"users/{identity}/revokeSignInSessions")
        except GraphAPIError as e:
            if e.not_found:
                raise NotFound(identity) from e
            raise
        logger.info(f"Sign-in sessions revoked for {identity}")

    async def unblock_sign_in(self, identity: str) -> None:
        await self._patch_user(identity, {"accountEnabled": True})
        logger.info(f"Sign-in enabled for {identity}")

    async def reset_password(self, identity: str) -> str:
        password = generate_password()
        await self._patch_user(identity, {
            "passwordProfile": {
                "forceChangePasswordNextSignIn": True,
                "password": password,
            }
        })
        logger.info(f"Password reset for {identity}")
        return password

    async def enable_mfa(self, identity: str) -> None:
        """Enforce legacy per-user MFA."""
        try:
            await self.graph.patch(
                f"users/{identity}/authentication/requirements",
                {"perUserMfaState": "enforced"},
                beta=True,
            )
        except GraphAPIError as e:
            if e.not_found:
                raise NotFound(identity) from e
            raise
        logger.info(f"Per-user MFA enforced for {identity}")

    # ── Mail protocols / forwarding ─────────────────────────────────────────

    async def set_protocols(self, identity: str, enabled: bool) -> None:
        params: dict = {"Identity": identity}
        for proto in self.protocols:
            name, positive = PROTOCOL_PARAMETERS[proto]
            params[name] = enabled if positive else not enabled
        await self._exchange_write("Set-CASMailbox", identity, params)
        logger.info(f"Mail protocols {'enabled' if enabled else 'disabled'} for {identity}")

    async def remove_forwarding(self, identity: str) -> None:
        await self._exchange_write("Set-Mailbox", identity, {
            "Identity": identity,
            "ForwardingSmtpAddress": None,
            "DeliverToMailboxAndForward": False,
        })
        logger.info(f"Mailbox forwarding removed for {identity}")

    async def _exchange_write(self, cmdlet: str, identity: str, params: dict) -> None:
        try:
            await self.exchange.invoke(cmdlet, params)
        except GraphAPIError as e:
            if e.not_found:
                raise NotFound(identity) from e
            raise

    async def list_forwarding_inbox_rules(self, identity: str) -> list[InboxRule]:
        try:
            rules = await self.graph.get_all_pages(
                f"users/{identity}/mailFolders/inbox/messageRules"
            )
        except GraphAPIError as e:
            if e.not_found:
                raise NotFound(identity) from e
            raise

        found = []
        for rule in rules:
            if not rule.get("isEnabled", True):
                continue
            actions = rule.get("actions") or {}
            targets = [
                (recipient.get("emailAddress") or {}).get("address", "")
                for key in FORWARDING_RULE_ACTIONS
                for recipient in (actions.get(key) or [])
            ]
            if targets:
                found.append(InboxRule(
                    id=rule["id"],
                    display_name=rule.get("displayName", ""),
                    targets=targets,
                ))
        return found

    async def disable_inbox_rule(self, identity: str, rule_id: str) -> None:
        await self.graph.patch(
            f"users/{identity}/mailFolders/inbox/messageRules/{rule_id}",
            {"isEnabled": False},
        )
        logger.info(f"Inbox rule {rule_id} disabled for {identity}")

    # ── Disable marker ──────────────────────────────────────────────────────

    async def get_disable_marker(self, identity: str) -> Optional[datetime]:
        data = await self.graph.get(
            f"users/{identity}",
            params={"$select": "id,onPremisesExtensionAttributes"},
        )
        if data.get("_not_found"):
            raise NotFound(identity)
        attrs = data.get("onPremisesExtensionAttributes") or {}
        return parse_marker(attrs.get(self.marker_attribute))

    async def set_disable_marker(self, identity: str, value: Optional[datetime]) -> None:
        serialized = as_utc(value).isoformat() if value is not None else None
        await self._patch_user(identity, {
            "onPremisesExtensionAttributes": {self.marker_attribute: serialized}
        })

    async def list_marked_identities(self) -> list[str]:
        """User principal names of every identity carrying a disable marker."""
        users = await self.graph.get_all_pages(
            "users",
            params={
                "$filter": f"onPremisesExtensionAttributes/{self.marker_attribute} ne null",
                "$count": "true",
                "$select": "id,userPrincipalName",
            },
        )
        return [u.get("userPrincipalName") or u["id"] for u in users]


class MailboxEnumerator:
    """Lists mailboxes with ForwardingSmtpAddress set, as one timestamped snapshot."""

    def __init__(self, exchange: ExchangeClient, clock: Callable[[], datetime] = utcnow):
        self.exchange = exchange
        self.clock = clock

    async def list_forwarding_mailboxes(self) -> list[ObservedForward]:
        observed_at = self.clock()
        mailboxes = await self.exchange.invoke("Get-Mailbox", {
            "ResultSize": "Unlimited",
            "Filter": "ForwardingSmtpAddress -ne $null",
        })

        snapshot = []
        for mbx in mailboxes:
            try:
                guid = canonical_guid(mbx.get("Guid") or mbx.get("ExchangeGuid") or "")
            except ValueError:
                logger.warning(f"Skipping mailbox without a valid Guid: {mbx.get('UserPrincipalName')}")
                continue
            snapshot.append(ObservedForward(
                name=mbx.get("UserPrincipalName") or mbx.get("Name", ""),
                display_name=mbx.get("DisplayName", ""),
                guid=guid,
                raw_forwarding_address=mbx.get("ForwardingSmtpAddress") or "",
                observed_at=observed_at,
            ))

        logger.info(f"Enumerated {len(snapshot)} mailboxes with SMTP forwarding")
        return snapshot
