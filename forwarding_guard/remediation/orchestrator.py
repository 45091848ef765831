"""
Remediation orchestrator — drives compromise response for duplicate forwards
under a per-run capacity, continuing past per-identity failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..accounts.actions import NotFound
from ..forwarding.models import ForwardingRecord
from ..graph.client import GraphAPIError
from ..safety.guardian import ChangeBlocked
from .lifecycle import BlockLifecycle

logger = logging.getLogger("forwarding_guard.remediation")

# Identity outcome statuses
REMEDIATED = "remediated"
PARTIAL = "partial"
NOT_FOUND = "not_found"
FAILED = "failed"
SIMULATED = "simulated"       # dry run: every step passed the change guard, nothing was sent

ALL_STEPS = ("block", "reset_password", "remove_forwarding", "disable_inbox_rules", "enable_mfa")


@dataclass
class StepOutcome:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class IdentityOutcome:
    identity: str
    guid: str = ""
    status: str = REMEDIATED
    steps: list[StepOutcome] = field(default_factory=list)
    error: str = ""
    new_password: Optional[str] = field(default=None, repr=False)

    def failed_steps(self) -> list[StepOutcome]:
        return [s for s in self.steps if not s.ok]

    def to_dict(self) -> dict:
        """Serializable form. The password is never included."""
        return {
            "identity": self.identity,
            "guid": self.guid,
            "status": self.status,
            "steps": [{"name": s.name, "ok": s.ok, "detail": s.detail} for s in self.steps],
            "error": self.error,
            "password_reset": self.new_password is not None,
        }


@dataclass
class RemediationReport:
    capacity: int
    outcomes: list[IdentityOutcome] = field(default_factory=list)
    overflow: list[ForwardingRecord] = field(default_factory=list)

    @property
    def capacity_exceeded(self) -> bool:
        return bool(self.overflow)

    @property
    def remediated(self) -> list[IdentityOutcome]:
        return [o for o in self.outcomes if o.status == REMEDIATED]

    @property
    def problems(self) -> list[IdentityOutcome]:
        return [o for o in self.outcomes if o.status not in (REMEDIATED, SIMULATED)]

    def summary(self) -> dict:
        counts: dict[str, int] = {}
        for o in self.outcomes:
            counts[o.status] = counts.get(o.status, 0) + 1
        return {
            "capacity": self.capacity,
            "attempted": len(self.outcomes),
            "by_status": counts,
            "unremediated": [r.name for r in self.overflow],
        }


RemediateFn = Callable[[ForwardingRecord], Awaitable[IdentityOutcome]]


async def remediate(
    duplicates: Sequence[ForwardingRecord],
    capacity: int,
    remediate_fn: RemediateFn,
) -> RemediationReport:
    """
    Remediate at most `capacity` identities, in query order.
    Candidates beyond the cap are reported in `overflow` for manual follow-up.
    Each identity is handled independently; failures never stop the batch.
    """
    if capacity < 0:
        raise ValueError("capacity must be >= 0")

    seen: set[str] = set()
    candidates = []
    for record in duplicates:
        if record.guid not in seen:
            seen.add(record.guid)
            candidates.append(record)

    report = RemediationReport(capacity=capacity, overflow=candidates[capacity:])
    if report.overflow:
        logger.warning(
            f"{len(candidates)} identities need remediation but capacity is {capacity}; "
            f"{len(report.overflow)} require manual follow-up: "
            + ", ".join(r.name for r in report.overflow)
        )

    for record in candidates[:capacity]:
        try:
            outcome = await remediate_fn(record)
        except NotFound as e:
            logger.warning(f"Skipping {record.name}: {e}")
            outcome = IdentityOutcome(identity=record.name, guid=record.guid, status=NOT_FOUND, error=str(e))
        except (GraphAPIError, ChangeBlocked) as e:
            logger.error(f"Remediation of {record.name} failed: {e}")
            outcome = IdentityOutcome(identity=record.name, guid=record.guid, status=FAILED, error=str(e))
        except Exception as e:
            logger.exception(f"Remediation of {record.name} failed unexpectedly")
            outcome = IdentityOutcome(
                identity=record.name, guid=record.guid, status=FAILED,
                error=f"{type(e).__name__}: {e}",
            )
        report.outcomes.append(outcome)

    logger.info(f"Remediation complete — {report.summary()['by_status']}")
    return report


class CompromiseResponse:
    """
    Default remediation for one identity: block, reset password, strip
    mailbox forwarding, disable forwarding inbox rules, enforce MFA.
    In a dry run a clean outcome is SIMULATED and no password is kept.
    A NotFound from the initial existence check aborts the identity;
    any other step failure is recorded and the remaining steps still run.
    """

    def __init__(
        self,
        actions: Any,
        lifecycle: BlockLifecycle,
        steps: Sequence[str] = ALL_STEPS,
        disable_protocols: bool = True,
        dry_run: bool = False,
    ):
        unknown = set(steps) - set(ALL_STEPS)
        if unknown:
            raise ValueError(f"Unknown remediation steps: {', '.join(sorted(unknown))}")
        self.actions = actions
        self.lifecycle = lifecycle
        self.steps = [s for s in ALL_STEPS if s in steps]
        self.disable_protocols = disable_protocols
        self.dry_run = dry_run

    async def __call__(self, record: ForwardingRecord) -> IdentityOutcome:
        identity = record.name
        await self.actions.require(identity)
        outcome = IdentityOutcome(identity=identity, guid=record.guid)

        for step in self.steps:
            try:
                detail = await getattr(self, f"_step_{step}")(identity, outcome)
                outcome.steps.append(StepOutcome(step, True, detail or ""))
            except (NotFound, GraphAPIError, ChangeBlocked) as e:
                logger.error(f"{identity}: step {step} failed: {e}")
                outcome.steps.append(StepOutcome(step, False, str(e)))

        if outcome.failed_steps():
            outcome.status = PARTIAL
        elif self.dry_run:
            outcome.status = SIMULATED
        return outcome

    async def _step_block(self, identity: str, outcome: IdentityOutcome) -> str:
        result = await self.lifecycle.block(identity, disable_protocols=self.disable_protocols)
        return f"blocked at {result.blocked_at.isoformat()}"

    async def _step_reset_password(self, identity: str, outcome: IdentityOutcome) -> str:
        password = await self.actions.reset_password(identity)
        if self.dry_run:
            return "password reset simulated"
        outcome.new_password = password
        return "password reset, change required at next sign-in"

    async def _step_remove_forwarding(self, identity: str, outcome: IdentityOutcome) -> str:
        await self.actions.remove_forwarding(identity)
        return "ForwardingSmtpAddress cleared"

    async def _step_disable_inbox_rules(self, identity: str, outcome: IdentityOutcome) -> str:
        rules = await self.actions.list_forwarding_inbox_rules(identity)
        for rule in rules:
            await self.actions.disable_inbox_rule(identity, rule.id)
        return f"{len(rules)} forwarding rule(s) disabled"

    async def _step_enable_mfa(self, identity: str, outcome: IdentityOutcome) -> str:
        await self.actions.enable_mfa(identity)
        return "per-user MFA enforced"
