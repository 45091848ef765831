from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from forwarding_guard.graph.client import GraphAPIError, TransientIOError
from forwarding_guard.pipeline import SweepOptions, default_since, run_scan
from forwarding_guard.remediation import lifecycle as lc
from forwarding_guard.remediation.lifecycle import BlockLifecycle
from forwarding_guard.remediation.orchestrator import IdentityOutcome
from forwarding_guard.forwarding.models import ForwardingStore
from forwarding_guard.store import CsvForwardingStore, PersistenceRefused, RunJournal
from tests.helpers import T0, FakeActions, FakeClock, FakeEnumerator, guid, make_record, observe

SINCE = T0 - timedelta(hours=1)


class RecordingRemediator:
    def __init__(self):
        self.seen: list[str] = []

    async def __call__(self, record):
        self.seen.append(record.name)
        return IdentityOutcome(identity=record.name, guid=record.guid)


class FakeNotifier:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.sent: list[tuple] = []

    async def send_summary(self, new_records, duplicate_records, remediation, since, unblocks=(), dry_run=False):
        if self.error is not None:
            raise self.error
        self.sent.append((list(new_records), list(duplicate_records), remediation, dry_run))


def _snapshot():
    return [
        observe(1, "smtp:x@evil.test", T0),
        observe(2, "smtp:x@evil.test", T0),
        observe(3, "smtp:y@partner.test", T0),
    ]


@pytest.mark.asyncio
async def test_scan_merges_saves_remediates_and_notifies(tmp_path: Path) -> None:
    persistence = CsvForwardingStore(tmp_path / "history.csv")
    journal = RunJournal(tmp_path / "journal.db")
    remediator = RecordingRemediator()
    notifier = FakeNotifier()

    summary = await run_scan(
        FakeEnumerator(_snapshot()), persistence, SINCE, "run-1",
        remediate_fn=remediator, capacity=10, notifier=notifier, journal=journal,
    )

    assert summary.observed == 3
    assert persistence.count_on_disk() == 3
    assert {r.guid for r in summary.new_records} == {guid(1), guid(2), guid(3)}
    assert {r.guid for r in summary.duplicate_records} == {guid(1), guid(2)}
    assert sorted(remediator.seen) == ["user1@contoso.test", "user2@contoso.test"]
    assert summary.notified
    assert len(journal.get_actions(run_id="run-1")) == 2
    assert summary.to_dict()["remediation"]["attempted"] == 2


@pytest.mark.asyncio
async def test_old_duplicates_are_reported_but_not_remediated_again(tmp_path: Path) -> None:
    persistence = CsvForwardingStore(tmp_path / "history.csv")
    persistence.save(ForwardingStore.of([
        make_record(1, "x@evil.test", first_seen=T0 - timedelta(days=2)),
        make_record(2, "x@evil.test", first_seen=T0 - timedelta(days=2)),
    ]))
    remediator = RecordingRemediator()

    summary = await run_scan(
        FakeEnumerator([observe(1, "smtp:x@evil.test", T0), observe(2, "smtp:x@evil.test", T0)]),
        persistence, SINCE, "run-2", remediate_fn=remediator,
    )

    assert len(summary.duplicate_records) == 2
    assert summary.fresh_duplicates == []
    assert remediator.seen == []
    assert summary.remediation is not None and summary.remediation.outcomes == []


@pytest.mark.asyncio
async def test_refused_save_aborts_before_remediation(tmp_path: Path) -> None:
    persistence = CsvForwardingStore(tmp_path / "history.csv")
    persistence.save(ForwardingStore.of(make_record(n, f"a{n}@x.com") for n in range(1, 6)))
    remediator = RecordingRemediator()

    class ShrunkPersistence(CsvForwardingStore):
        def load(self):
            return ForwardingStore()

    with pytest.raises(PersistenceRefused):
        await run_scan(
            FakeEnumerator(_snapshot()), ShrunkPersistence(persistence.path), SINCE, "run-3",
            remediate_fn=remediator,
        )
    assert remediator.seen == []
    assert persistence.count_on_disk() == 5


@pytest.mark.asyncio
async def test_enumeration_failure_persists_nothing(tmp_path: Path) -> None:
    persistence = CsvForwardingStore(tmp_path / "history.csv")
    with pytest.raises(TransientIOError):
        await run_scan(
            FakeEnumerator(error=TransientIOError(503, "HTTP 503", "InvokeCommand")),
            persistence, SINCE, "run-4",
        )
    assert not persistence.exists()


@pytest.mark.asyncio
async def test_notification_failure_is_reported_not_raised(tmp_path: Path) -> None:
    summary = await run_scan(
        FakeEnumerator(_snapshot()), CsvForwardingStore(tmp_path / "history.csv"), SINCE, "run-5",
        notifier=FakeNotifier(GraphAPIError(403, "Mail.Send missing", "sendMail")),
    )
    assert not summary.notified
    assert "Mail.Send missing" in summary.notify_error


@pytest.mark.asyncio
async def test_scan_runs_unblock_sweep_when_requested(tmp_path: Path) -> None:
    actions = FakeActions(["old@contoso.test"])
    actions.markers["old@contoso.test"] = T0 - timedelta(hours=2)
    lifecycle = BlockLifecycle(actions, clock=FakeClock(T0))

    summary = await run_scan(
        FakeEnumerator([]), CsvForwardingStore(tmp_path / "history.csv"), SINCE, "run-6",
        lifecycle=lifecycle, sweep=SweepOptions(),
    )
    assert [u.status for u in summary.unblocks] == [lc.UNBLOCKED]


def test_default_since() -> None:
    assert default_since(24, now=T0) == T0 - timedelta(hours=24)
