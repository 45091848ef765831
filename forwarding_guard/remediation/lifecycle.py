"""
Block/unblock lifecycle.

An identity is "blocked" while it carries a disable marker: the UTC time
it was last blocked, stored in a user extension attribute. Unblocking is
refused until a minimum cooldown has elapsed since that time, unless forced.

    Active --block()--> Blocked(marker=T) --unblock(now >= T + min_elapsed)--> Active
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..accounts.actions import NotFound
from ..forwarding.models import utcnow
from ..graph.client import GraphAPIError

logger = logging.getLogger("forwarding_guard.remediation.lifecycle")

DEFAULT_MIN_ELAPSED = timedelta(minutes=58)

# Unblock outcome statuses
UNBLOCKED = "unblocked"
TOO_SOON = "too_soon"
NO_DISABLE_MARKER = "no_disable_marker"
NOT_FOUND = "not_found"
FAILED = "failed"


@dataclass
class BlockOutcome:
    identity: str
    blocked_at: datetime
    protocols_disabled: bool = False
    previous_marker: Optional[datetime] = None


@dataclass
class UnblockOutcome:
    """Result of one unblock attempt. Refusals are outcomes, not exceptions."""
    identity: str
    status: str
    blocked_at: Optional[datetime] = None
    eligible_at: Optional[datetime] = None
    remaining: Optional[timedelta] = None
    protocols_enabled: bool = False
    forced: bool = False
    error: str = ""
    warnings: list[str] = field(default_factory=list)

    @property
    def unblocked(self) -> bool:
        return self.status == UNBLOCKED

    def describe(self) -> str:
        if self.status == TOO_SOON and self.remaining is not None:
            minutes = int(self.remaining.total_seconds() // 60) + 1
            return f"too soon, eligible in ~{minutes} min ({self.eligible_at:%Y-%m-%d %H:%M} UTC)"
        if self.status == NO_DISABLE_MARKER:
            return "no disable marker (use --force to unblock anyway)"
        if self.error:
            return f"{self.status}: {self.error}"
        return self.status


class BlockLifecycle:
    """Time-gated block/unblock state machine over an AccountActions client."""

    def __init__(self, actions: Any, clock: Callable[[], datetime] = utcnow):
        self.actions = actions
        self.clock = clock

    async def block(self, identity: str, disable_protocols: bool = True) -> BlockOutcome:
        """
        Disable sign-in, stamp the marker, revoke sessions, then optionally
        disable mail protocols.
        The marker is written as soon as sign-in is off, so a later failure
        still leaves the identity visible to the unblock sweep.
        Re-blocking refreshes the marker, which extends the cooldown.
        Raises NotFound if the identity does not exist.
        """
        await self.actions.require(identity)
        previous = await self.actions.get_disable_marker(identity)

        await self.actions.block_sign_in(identity)
        blocked_at = self.clock()
        await self.actions.set_disable_marker(identity, blocked_at)
        await self.actions.revoke_sessions(identity)

        if disable_protocols:
            await self.actions.set_protocols(identity, False)

        if previous is not None:
            logger.info(f"{identity} was already blocked at {previous.isoformat()}; marker refreshed")
        logger.info(f"Blocked {identity} at {blocked_at.isoformat()}")
        return BlockOutcome(
            identity=identity,
            blocked_at=blocked_at,
            protocols_disabled=disable_protocols,
            previous_marker=previous,
        )

    async def unblock(
        self,
        identity: str,
        enable_protocols: bool = True,
        min_elapsed: timedelta = DEFAULT_MIN_ELAPSED,
        force: bool = False,
    ) -> UnblockOutcome:
        """
        Re-enable an identity once its cooldown has passed.
        Returns TOO_SOON / NO_DISABLE_MARKER outcomes instead of raising.
        Raises NotFound if the identity does not exist.
        """
        await self.actions.require(identity)
        blocked_at = await self.actions.get_disable_marker(identity)
        outcome = UnblockOutcome(identity=identity, status=UNBLOCKED, blocked_at=blocked_at, forced=force)

        if not force:
            if blocked_at is None:
                outcome.status = NO_DISABLE_MARKER
                logger.warning(f"Not unblocking {identity}: no disable marker")
                return outcome

            outcome.eligible_at = blocked_at + min_elapsed
            now = self.clock()
            if now < outcome.eligible_at:
                outcome.status = TOO_SOON
                outcome.remaining = outcome.eligible_at - now
                logger.info(f"Not unblocking {identity}: {outcome.describe()}")
                return outcome

        await self.actions.unblock_sign_in(identity)
        if enable_protocols:
            await self.actions.set_protocols(identity, True)
            outcome.protocols_enabled = True

        if blocked_at is None:
            outcome.warnings.append("disable marker already absent")
            logger.warning(f"{identity}: disable marker already absent, nothing to clear")
        else:
            await self.actions.set_disable_marker(identity, None)

        logger.info(f"Unblocked {identity}{' (forced)' if force else ''}")
        return outcome

    async def sweep(
        self,
        enable_protocols: bool = True,
        min_elapsed: timedelta = DEFAULT_MIN_ELAPSED,
        force: bool = False,
    ) -> list[UnblockOutcome]:
        """Try to unblock every identity currently carrying a disable marker."""
        identities = await self.actions.list_marked_identities()
        logger.info(f"Unblock sweep: {len(identities)} blocked identities")

        outcomes = []
        for identity in identities:
            try:
                outcomes.append(await self.unblock(
                    identity,
                    enable_protocols=enable_protocols,
                    min_elapsed=min_elapsed,
                    force=force,
                ))
            except NotFound as e:
                outcomes.append(UnblockOutcome(identity=identity, status=NOT_FOUND, error=str(e)))
            except GraphAPIError as e:
                logger.error(f"Unblock of {identity} failed: {e}")
                outcomes.append(UnblockOutcome(identity=identity, status=FAILED, error=str(e)))
        return outcomes
