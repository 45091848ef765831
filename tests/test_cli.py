from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest

import forwarding_guard.__main__ as cli
from forwarding_guard.auth.authenticator import AuthenticationError, Authenticator
from forwarding_guard.forwarding.models import ForwardingStore
from forwarding_guard.safety.guardian import ChangeGuardian
from forwarding_guard.store import CsvForwardingStore, RunJournal
from tests.helpers import T0, make_record


@pytest.fixture(autouse=True)
def no_saved_profiles(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "resolve_profile", lambda *args, **kwargs: None)


def _seed_history(data_dir: Path) -> None:
    CsvForwardingStore(data_dir / "forwarding_history.csv").save(ForwardingStore.of([
        make_record(1, "x@evil.test", first_seen=T0, last_seen=T0 + timedelta(days=1)),
        make_record(2, "X@evil.test", first_seen=T0 + timedelta(days=1)),
        make_record(3, "y@partner.test", first_seen=T0),
    ]))


@pytest.mark.asyncio
async def test_report_duplicates_as_json(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_history(tmp_path)
    code = await cli.main_async(["report", "--duplicates", "--json", "--data-dir", str(tmp_path)])

    assert code == 0
    rows = json.loads(capsys.readouterr().out)
    assert sorted(r["name"] for r in rows) == ["user1@contoso.test", "user2@contoso.test"]


@pytest.mark.asyncio
async def test_report_new_since_table(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _seed_history(tmp_path)
    code = await cli.main_async([
        "report", "--new-since", "2026-10-01T12:00:00Z", "--data-dir", str(tmp_path),
    ])
    out = capsys.readouterr().out
    assert code == 0
    assert "user2@contoso.test" in out
    assert "user3@contoso.test" not in out
    assert "1 record(s)" in out


@pytest.mark.asyncio
async def test_report_on_corrupt_history_fails(tmp_path: Path) -> None:
    (tmp_path / "forwarding_history.csv").write_text("Name\nbroken\n", encoding="utf-8")
    assert await cli.main_async(["report", "--data-dir", str(tmp_path)]) == 1


@pytest.mark.asyncio
async def test_history_lists_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    journal = RunJournal(tmp_path / "journal.db")
    journal.start_run("20261001_080000_abcd1234", "scan")
    journal.complete_run("20261001_080000_abcd1234")

    assert await cli.main_async(["history", "--data-dir", str(tmp_path)]) == 0
    assert "20261001_080000_abcd1234" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_tenant_command_without_credentials_fails(tmp_path: Path) -> None:
    assert await cli.main_async(["unblock", "--all", "--data-dir", str(tmp_path)]) == 1


@pytest.mark.asyncio
async def test_unblock_needs_a_target(tmp_path: Path) -> None:
    code = await cli.main_async([
        "unblock", "--tenant-id", "t", "--client-id", "c",
        "--organization", "contoso.onmicrosoft.com", "--data-dir", str(tmp_path),
    ])
    assert code == 1


@pytest.mark.asyncio
async def test_bad_protocol_in_config_file_fails(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"remediation": {"protocols": ["Imap"]}}), encoding="utf-8")
    assert await cli.main_async(["report", "--config", str(path), "--data-dir", str(tmp_path)]) == 1


def test_dry_run_lists_suppressed_writes(capsys: pytest.CaptureFixture[str]) -> None:
    guardian = ChangeGuardian(dry_run=True)
    guardian.validate_request("PATCH", "https://graph.microsoft.com/v1.0/users/u1", {"accountEnabled": False})

    cli._print_suppressed_writes(guardian)

    out = capsys.readouterr().out
    assert "1 write(s) not sent" in out
    assert "PATCH  https://graph.microsoft.com/v1.0/users/u1" in out
    assert '"accountEnabled": false' in out


def test_live_run_lists_no_writes(capsys: pytest.CaptureFixture[str]) -> None:
    guardian = ChangeGuardian()
    guardian.validate_request("PATCH", "https://graph.microsoft.com/v1.0/users/u1", {"accountEnabled": False})
    cli._print_suppressed_writes(guardian)
    assert capsys.readouterr().out == ""


class _RefusingAuthenticator(Authenticator):
    def acquire_token(self, scope: str) -> str:
        raise AuthenticationError("AADSTS7000215: invalid client secret")


@pytest.mark.asyncio
async def test_authentication_failure_lists_required_permissions(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli, "Authenticator", _RefusingAuthenticator)
    code = await cli.main_async([
        "block", "u@contoso.test", "--tenant-id", "t", "--client-id", "c",
        "--organization", "contoso.onmicrosoft.com", "--data-dir", str(tmp_path),
    ])
    out = capsys.readouterr().out
    assert code == 1
    assert "AADSTS7000215" in out
    assert "User.ReadWrite.All" in out
