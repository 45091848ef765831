"""
Run pipeline — one scan: enumerate, merge, persist, query, remediate, notify.

Ordering guarantees:
  - nothing is persisted if enumeration fails;
  - nothing is remediated if the history could not be saved;
  - a failed notification never undoes or hides remediation results.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from .forwarding.merge import merge
from .forwarding.models import ForwardingRecord, utcnow
from .forwarding.query import duplicates, new_since
from .graph.client import GraphAPIError
from .remediation.lifecycle import BlockLifecycle, UnblockOutcome
from .remediation.orchestrator import RemediateFn, RemediationReport, remediate
from .store.csv_store import CsvForwardingStore
from .store.journal import RunJournal

logger = logging.getLogger("forwarding_guard.pipeline")


@dataclass
class SweepOptions:
    enable_protocols: bool = True
    min_elapsed: timedelta = timedelta(minutes=58)
    force: bool = False


@dataclass
class ScanSummary:
    """Everything an operator needs to know about one scan."""
    run_id: str
    since: datetime
    observed: int = 0
    store_size: int = 0
    new_records: list[ForwardingRecord] = field(default_factory=list)
    duplicate_records: list[ForwardingRecord] = field(default_factory=list)
    fresh_duplicates: list[ForwardingRecord] = field(default_factory=list)
    remediation: Optional[RemediationReport] = None
    unblocks: list[UnblockOutcome] = field(default_factory=list)
    notified: bool = False
    notify_error: str = ""

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "since": self.since.isoformat(),
            "observed": self.observed,
            "store_size": self.store_size,
            "new": [r.to_dict() for r in self.new_records],
            "duplicates": [r.to_dict() for r in self.duplicate_records],
            "fresh_duplicates": [r.guid for r in self.fresh_duplicates],
            "remediation": (
                {**self.remediation.summary(),
                 "outcomes": [o.to_dict() for o in self.remediation.outcomes]}
                if self.remediation else None
            ),
            "unblocks": [{"identity": u.identity, "status": u.status} for u in self.unblocks],
            "notified": self.notified,
            "notify_error": self.notify_error,
        }


def _journal_remediation(journal: Optional[RunJournal], run_id: str, report: RemediationReport):
    if not journal:
        return
    for outcome in report.outcomes:
        journal.record_action(run_id, outcome.identity, "remediate", outcome.status, outcome.to_dict())
    for record in report.overflow:
        journal.record_action(run_id, record.name, "remediate", "over_capacity", {"guid": record.guid})


def _journal_unblocks(journal: Optional[RunJournal], run_id: str, outcomes: Sequence[UnblockOutcome]):
    if not journal:
        return
    for o in outcomes:
        journal.record_action(run_id, o.identity, "unblock", o.status, {
            "blocked_at": o.blocked_at,
            "remaining": o.remaining,
            "forced": o.forced,
            "error": o.error,
            "warnings": o.warnings,
        })


async def run_unblock_sweep(
    lifecycle: BlockLifecycle,
    options: SweepOptions,
    journal: Optional[RunJournal] = None,
    run_id: str = "",
) -> list[UnblockOutcome]:
    outcomes = await lifecycle.sweep(
        enable_protocols=options.enable_protocols,
        min_elapsed=options.min_elapsed,
        force=options.force,
    )
    _journal_unblocks(journal, run_id, outcomes)
    return outcomes


async def run_scan(
    enumerator: Any,
    persistence: CsvForwardingStore,
    since: datetime,
    run_id: str,
    remediate_fn: Optional[RemediateFn] = None,
    capacity: int = 10,
    lifecycle: Optional[BlockLifecycle] = None,
    sweep: Optional[SweepOptions] = None,
    notifier: Any = None,
    journal: Optional[RunJournal] = None,
    dry_run: bool = False,
) -> ScanSummary:
    """
    Execute one scan.
    Raises PersistenceRefused/StoreFormatError/TransientIOError before any
    remediation when the history cannot be trusted.
    """
    summary = ScanSummary(run_id=run_id, since=since)

    store = persistence.load()
    snapshot = await enumerator.list_forwarding_mailboxes()
    summary.observed = len(snapshot)

    merged = merge(store, snapshot)
    persistence.save(merged)
    summary.store_size = len(merged)

    summary.new_records = new_since(merged, since)
    summary.duplicate_records = duplicates(merged)
    summary.fresh_duplicates = duplicates(merged, since)
    logger.info(
        f"{len(summary.new_records)} new forwards, {len(summary.duplicate_records)} "
        f"duplicate-address records ({len(summary.fresh_duplicates)} fresh)"
    )

    if remediate_fn is not None and summary.fresh_duplicates:
        summary.remediation = await remediate(summary.fresh_duplicates, capacity, remediate_fn)
        _journal_remediation(journal, run_id, summary.remediation)
    elif remediate_fn is not None:
        summary.remediation = RemediationReport(capacity=capacity)

    if sweep is not None and lifecycle is not None:
        summary.unblocks = await run_unblock_sweep(lifecycle, sweep, journal, run_id)

    if notifier is not None:
        try:
            await notifier.send_summary(
                summary.new_records,
                summary.duplicate_records,
                summary.remediation,
                since,
                unblocks=summary.unblocks,
                dry_run=dry_run,
            )
            summary.notified = True
        except GraphAPIError as e:
            summary.notify_error = str(e)
            logger.error(f"Summary email failed: {e}")

    return summary


def default_since(lookback_hours: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(hours=lookback_hours)
